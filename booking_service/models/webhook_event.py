"""
Webhook Event Log Model

Every inbound webhook delivery (Stripe or supplier) is recorded here before it
is applied. The (provider, event_id) pair is unique, which makes redelivered
events detectable, and failed events stay around for the worker to retry.
"""

import uuid
import enum
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, UniqueConstraint

from ..database import Base
from ..utils.clock import utcnow


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Duplicate delivery
    IGNORED = "ignored"  # Intentionally not processed


class WebhookEventLog(Base):
    __tablename__ = "webhook_event_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # "stripe", "booking.com", "skyscanner"
    provider = Column(String(50), nullable=False)

    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    external_id = Column(String(255), nullable=True)  # payment intent id or supplier booking id

    payload_json = Column(Text, nullable=False)
    payload_hash = Column(String(64), nullable=True)

    status = Column(String(20), default=WebhookEventStatus.RECEIVED.value)
    attempts = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    result_action = Column(String(50), nullable=True)
    result_booking_id = Column(String(36), nullable=True)

    received_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event"),
        Index("ix_webhook_event_status", "status", "received_at"),
        Index("ix_webhook_event_external", "provider", "external_id"),
    )

    def __repr__(self):
        return f"<WebhookEventLog {self.provider} {self.event_type} status={self.status}>"
