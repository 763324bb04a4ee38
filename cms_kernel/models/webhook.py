"""
Webhook Models

Outbound webhook subscriptions and their per-event delivery records.
"""

import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from cms_kernel.database import Base
from cms_kernel.utils.clock import utcnow


class WebhookDeliveryStatus(str, enum.Enum):
    QUEUED = "queued"
    RETRYING = "retrying"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"


class WebhookSubscription(Base):
    """
    A site's (or, with a null site, the network's) subscription of one
    endpoint to one domain event name.
    """

    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=True, index=True)
    event_name = Column(String(128), nullable=False, index=True)
    endpoint_url = Column(String(2048), nullable=False)
    secret = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    max_retries = Column(Integer, nullable=False, default=4)
    backoff_base_seconds = Column(Integer, nullable=False, default=30)
    headers = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    deliveries = relationship(
        "WebhookDelivery", back_populates="subscription", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (UniqueConstraint("site_id", "event_name", "endpoint_url", name="uq_webhook_subscription"),)

    def __repr__(self) -> str:
        return f"<WebhookSubscription(id={self.id}, event={self.event_name}, url={self.endpoint_url})>"


class WebhookDelivery(Base):
    """One event delivered (or being retried) to one subscription."""

    __tablename__ = "webhook_deliveries"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    subscription_id = Column(
        Integer, ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    site_id = Column(String(64), nullable=True, index=True)
    event_id = Column(String(64), nullable=False, index=True)
    event_name = Column(String(128), nullable=False)
    endpoint_url = Column(String(2048), nullable=False)
    status = Column(String(20), nullable=False, default=WebhookDeliveryStatus.QUEUED.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=4)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    request_body = Column(Text, nullable=False, default="")
    request_headers = Column(JSON, nullable=False, default=dict)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    subscription = relationship("WebhookSubscription", back_populates="deliveries")

    __table_args__ = (
        UniqueConstraint("subscription_id", "event_id", name="uq_webhook_delivery_event"),
        Index("ix_webhook_deliveries_status_due", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookDelivery(id={self.id}, status={self.status}, attempts={self.attempt_count})>"
