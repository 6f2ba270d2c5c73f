import datetime
from typing import Any, Dict

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint

from automations_backend.db import Base
from automations_backend.models._types import JSONType


class AutomationRule(Base):
    """Per-tenant automation toggle with its optional JSON config."""

    __tablename__ = "automation_rules"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id: str = Column(String(64), index=True, nullable=False)
    rule_key: str = Column(String(64), nullable=False)
    enabled: bool = Column(Boolean, nullable=False, default=False, index=True)
    config: Dict[str, Any] = Column(JSONType, nullable=True)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )
    updated_at: datetime.datetime = Column(
        DateTime,
        default=datetime.datetime.utcnow,
        onupdate=datetime.datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "rule_key", name="uq_automation_rules_tenant_rule"),
    )
