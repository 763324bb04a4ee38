"""
Webcallback Event Model

Audit trail of inbound callbacks routed to plugin handlers.
"""

import enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from cms_kernel.database import Base
from cms_kernel.utils.clock import utcnow


class WebcallbackStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class WebcallbackEvent(Base):
    __tablename__ = "webcallback_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=True, index=True)
    handler_id = Column(String(255), nullable=False, index=True)
    plugin_id = Column(String(128), nullable=True)
    status = Column(String(20), nullable=False, default=WebcallbackStatus.RECEIVED.value, index=True)
    request_body = Column(Text, nullable=False, default="")
    request_headers = Column(JSON, nullable=False, default=dict)
    request_query = Column(JSON, nullable=False, default=dict)
    response = Column(JSON, nullable=False, default=dict)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<WebcallbackEvent(id={self.id}, handler={self.handler_id}, status={self.status})>"
