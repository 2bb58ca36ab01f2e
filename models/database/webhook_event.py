"""
Webhook event model - provider push notifications
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from database import Base
from models.database.generation_job import generate_id
from shared.utils import utcnow


class WebhookEvent(Base):
    """Raw provider callback, kept for auditing and replay"""

    __tablename__ = "webhook_events"

    id = Column(String(32), primary_key=True, default=generate_id)
    provider = Column(String(50), nullable=False, index=True)
    event_type = Column(String(100), nullable=True)
    job_id = Column(String(32), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
