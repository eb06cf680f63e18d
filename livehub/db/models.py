from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase
import datetime


class Base(DeclarativeBase):
    pass


class IngestedRecord(Base):
    """
    One record written by the batch ingestion path.
    ``destination`` names the logical target the batch was addressed to.
    """
    __tablename__ = "ingested_records"

    id = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    destination = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    ingested_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
    )

    __table_args__ = (Index("idx_ingested_destination", "destination", "id"),)
