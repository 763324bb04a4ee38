"""
Communication Models

Outbound messages (email, sms, mms, com-x) and every provider attempt made
to deliver them.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from cms_kernel.database import Base
from cms_kernel.utils.clock import utcnow


class CommunicationStatus(str, enum.Enum):
    QUEUED = "queued"
    RETRYING = "retrying"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"
    LOGGED = "logged"


class CommunicationMessage(Base):
    __tablename__ = "communication_messages"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    site_id = Column(String(64), nullable=True, index=True)
    channel = Column(String(16), nullable=False)
    to = Column(String(512), nullable=False)
    subject = Column(String(512), nullable=True)
    body = Column(Text, nullable=False)
    category = Column(String(20), nullable=False, default="transactional")
    status = Column(String(20), nullable=False, default=CommunicationStatus.QUEUED.value, index=True)
    provider_id = Column(String(128), nullable=True)
    external_id = Column(String(255), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(DateTime, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes.
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_by_user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    attempts = relationship(
        "CommunicationAttempt",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CommunicationAttempt.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "channel": self.channel,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "category": self.category,
            "status": self.status,
            "provider_id": self.provider_id,
            "external_id": self.external_id,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error": self.last_error,
            "metadata": dict(self.meta or {}),
            "created_by_user_id": self.created_by_user_id,
        }

    def __repr__(self) -> str:
        return f"<CommunicationMessage(id={self.id}, channel={self.channel}, status={self.status})>"


class CommunicationAttempt(Base):
    __tablename__ = "communication_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(
        String(32), ForeignKey("communication_messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id = Column(String(128), nullable=False)
    event_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)
    response = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    message = relationship("CommunicationMessage", back_populates="attempts")

    __table_args__ = (UniqueConstraint("provider_id", "event_id", name="uq_communication_attempt_event"),)

    def __repr__(self) -> str:
        return f"<CommunicationAttempt(id={self.id}, provider={self.provider_id}, status={self.status})>"
