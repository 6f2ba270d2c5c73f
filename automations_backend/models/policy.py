from typing import Optional

from sqlalchemy import Column, Index, String

from automations_backend.db import Base


class Policy(Base):
    """Insurance policy; joined to Customer in memory by customer_id."""

    __tablename__ = "policies"

    id: str = Column(String(64), primary_key=True)
    tenant_id: str = Column(String(64), nullable=False)
    policy_number: Optional[str] = Column(String(128), nullable=True)
    expiry_date: Optional[str] = Column(String(32), nullable=True)
    customer_id: Optional[str] = Column(String(64), nullable=True)

    __table_args__ = (Index("ix_policies_tenant", "tenant_id"),)
