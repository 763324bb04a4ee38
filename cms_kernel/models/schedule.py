"""
Scheduler Models

ScheduledAction: a recurring job owned by core, a plugin or a theme.
SchedulerLock:   single-row lease that keeps two cron runners from
                 processing due schedules at the same time.
"""

import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from cms_kernel.database import Base
from cms_kernel.utils.clock import utcnow


class ScheduleOwnerType(str, enum.Enum):
    CORE = "core"
    PLUGIN = "plugin"
    THEME = "theme"


class ScheduleRunStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class ScheduledAction(Base):
    __tablename__ = "scheduled_actions"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    owner_type = Column(String(16), nullable=False)
    owner_id = Column(String(128), nullable=False)
    site_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False)
    action_key = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    enabled = Column(Boolean, nullable=False, default=True)
    run_every_minutes = Column(Integer, nullable=False, default=60)
    next_run_at = Column(DateTime, nullable=False, default=utcnow)
    last_run_at = Column(DateTime, nullable=True)
    last_status = Column(String(16), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_scheduled_actions_due", "enabled", "next_run_at"),
        Index("ix_scheduled_actions_owner", "owner_type", "owner_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_type": self.owner_type,
            "owner_id": self.owner_id,
            "site_id": self.site_id,
            "name": self.name,
            "action_key": self.action_key,
            "payload": dict(self.payload or {}),
            "enabled": bool(self.enabled),
            "run_every_minutes": self.run_every_minutes,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_status": self.last_status,
            "last_error": self.last_error,
        }

    def __repr__(self) -> str:
        return f"<ScheduledAction(id={self.id}, owner={self.owner_type}:{self.owner_id}, action={self.action_key})>"


class SchedulerLock(Base):
    __tablename__ = "scheduler_locks"

    key = Column(String(128), primary_key=True)
    holder = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SchedulerLock(key={self.key}, holder={self.holder})>"
