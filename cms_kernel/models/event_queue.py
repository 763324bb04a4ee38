"""
Event Queue Models

Durable queues for analytics and domain events. Both share one shape: the
normalized event as JSON, a status, an attempt counter and the time the row
becomes claimable again after a failure.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from cms_kernel.database import Base
from cms_kernel.utils.clock import utcnow


class QueueStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    DEAD_LETTER = "dead_letter"


def _new_id() -> str:
    return uuid.uuid4().hex


class EventQueueMixin:
    id = Column(String(32), primary_key=True, default=_new_id)
    event = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default=QueueStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    last_error = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id={self.id}, status={self.status}, attempts={self.attempts})>"


class AnalyticsEventQueueItem(EventQueueMixin, Base):
    __tablename__ = "analytics_event_queue"
    __table_args__ = (Index("ix_analytics_event_queue_status_due", "status", "available_at"),)


class DomainEventQueueItem(EventQueueMixin, Base):
    __tablename__ = "domain_event_queue"
    __table_args__ = (Index("ix_domain_event_queue_status_due", "status", "available_at"),)
