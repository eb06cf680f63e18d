from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Hub ───────────────────────────────────────────────────
    HUB_BUFFER_SIZE: int = 1000
    HUB_OVERFLOW_POLICY: Literal[
        "fail-fast", "drop-newest", "drop-oldest", "block-producer"
    ] = "drop-oldest"
    WINDOW_SIZE: int = 10

    # ── Producer ──────────────────────────────────────────────
    # none: nothing pushes into the hub; websocket: FeedWorker; redis: live channel
    FEED_SOURCE: Literal["none", "websocket", "redis"] = "none"
    FEED_WS_URL: str = ""
    FEED_SUBSCRIBE_MESSAGE: str = ""
    FEED_RECONNECT_MAX_SEC: int = 60

    # ── Batch ingestion ───────────────────────────────────────
    INGEST_DESTINATION: str = ""
    INGEST_BACKEND: Literal["none", "sql", "redis"] = "none"
    INGEST_BATCH_SIZE: int = 100
    INGEST_MAX_RETRIES: int = 5
    INGEST_BACKOFF_BASE_SEC: float = 0.5
    INGEST_BACKOFF_MAX_SEC: float = 30.0
    BATCH_TIMEOUT_SEC: float = 1.0

    # ── Storage ───────────────────────────────────────────────
    DATABASE_URL: str = ""
    REDIS_ENABLED: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_LIVE_CHANNEL: str = "livehub:live"
    REDIS_STATS_KEY: str = "livehub:stats"
    REDIS_QUEUE_MAXLEN: int = 10000

    # ── API ───────────────────────────────────────────────────
    API_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    SSE_HEARTBEAT_SEC: float = 15.0


settings = Settings()
