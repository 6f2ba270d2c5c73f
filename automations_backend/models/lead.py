from typing import Optional

from sqlalchemy import Column, Index, String

from automations_backend.db import Base


class Lead(Base):
    """Prospect record owned by the CRM screens; read-only here."""

    __tablename__ = "leads"

    id: str = Column(String(64), primary_key=True)
    tenant_id: str = Column(String(64), nullable=False)
    name: Optional[str] = Column(String(255), nullable=True)
    last_name: Optional[str] = Column(String(255), nullable=True)
    full_name: Optional[str] = Column(String(255), nullable=True)
    email: Optional[str] = Column(String(255), nullable=True)
    # Free-form date string; only the YYYY-MM-DD prefix is meaningful.
    birthday: Optional[str] = Column(String(32), nullable=True)

    __table_args__ = (Index("ix_leads_tenant", "tenant_id"),)
