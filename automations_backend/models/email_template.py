import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Index, String, Text

from automations_backend.db import Base


class EmailTemplate(Base):
    """Tenant-scoped message template referenced by rule config.template_id."""

    __tablename__ = "email_templates"

    id: str = Column(String(64), primary_key=True)
    tenant_id: str = Column(String(64), nullable=False)
    name: Optional[str] = Column(String(255), nullable=True)
    subject: Optional[str] = Column(String(998), nullable=True)
    text: Optional[str] = Column(Text, nullable=True)
    html: Optional[str] = Column(Text, nullable=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_email_templates_tenant", "tenant_id"),)
