"""
CMS Setting Model

Flat key/value store shared by the kernel and the host CMS. Extension state
lives here under well-known keys such as ``plugin_{id}_enabled`` and
``site_{siteId}_plugin_{id}_config``.
"""

from sqlalchemy import Column, DateTime, String, Text

from cms_kernel.database import Base
from cms_kernel.utils.clock import utcnow


class CmsSetting(Base):
    __tablename__ = "cms_settings"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<CmsSetting(key={self.key!r})>"
