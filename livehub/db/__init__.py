from livehub.db.database import AsyncSessionLocal, database_enabled, get_db, init_models
from livehub.db.models import Base, IngestedRecord

__all__ = [
    "AsyncSessionLocal",
    "database_enabled",
    "get_db",
    "init_models",
    "Base",
    "IngestedRecord",
]
