import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, String, Text

from automations_backend.db import Base


class GmailConnection(Base):
    """OAuth credentials of the tenant's connected Gmail account."""

    __tablename__ = "gmail_connections"

    tenant_id: str = Column(String(64), primary_key=True)
    access_token: Optional[str] = Column(Text, nullable=True)
    refresh_token: Optional[str] = Column(Text, nullable=True)
    expires_at: Optional[datetime.datetime] = Column(DateTime(timezone=True), nullable=True)
    provider_email: Optional[str] = Column(String(255), nullable=True)
    updated_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )
