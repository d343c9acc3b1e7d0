"""Notification outbox model definitions."""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func
from consultbook.database import Base


class NotificationOutbox(Base):
    """A notification queued in the same transaction as the change it reports."""
    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="pending", index=True)  # pending/delivered/failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    delivered_at = Column(DateTime)
