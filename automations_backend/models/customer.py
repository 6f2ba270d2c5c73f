from typing import Optional

from sqlalchemy import Column, Index, String

from automations_backend.db import Base


class Customer(Base):
    """Customer (policy holder) record; read-only here."""

    __tablename__ = "customers"

    id: str = Column(String(64), primary_key=True)
    tenant_id: str = Column(String(64), nullable=False)
    name: Optional[str] = Column(String(255), nullable=True)
    last_name: Optional[str] = Column(String(255), nullable=True)
    full_name: Optional[str] = Column(String(255), nullable=True)
    email: Optional[str] = Column(String(255), nullable=True)
    birthday: Optional[str] = Column(String(32), nullable=True)

    __table_args__ = (Index("ix_customers_tenant", "tenant_id"),)
