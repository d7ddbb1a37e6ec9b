"""Sync log model for tracking sync runs."""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey

from app.core.database import Base
from app.models.database import utc_now


class SyncLog(Base):
    """Log of sync runs, one row per invocation."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integration.id"), nullable=False, index=True)
    correlation_id = Column(String, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    status = Column(String, nullable=False)  # "success", "failed"
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
