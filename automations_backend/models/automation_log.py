import datetime
from typing import Any, Dict

from sqlalchemy import Column, Date, DateTime, Index, Integer, String, Text, UniqueConstraint

from automations_backend.db import Base
from automations_backend.models._types import JSONType

# Natural key of one outcome; the unique constraint below enforces it.
NATURAL_KEY_COLUMNS = ("tenant_id", "rule_key", "target_table", "target_id", "run_date")


class AutomationLog(Base):
    """One outcome per (tenant, rule, target, run date)."""

    __tablename__ = "automation_log"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id: str = Column(String(64), nullable=False)
    rule_key: str = Column(String(64), nullable=False)
    target_table: str = Column(String(32), nullable=False)
    target_id: str = Column(String(64), nullable=False)
    run_date: datetime.date = Column(Date, nullable=False)
    status: str = Column(String(16), nullable=False, index=True)
    message: str = Column(Text, nullable=False, default="")
    # "metadata" is reserved on declarative classes.
    meta: Dict[str, Any] = Column("metadata", JSONType, nullable=False, default=dict)
    created_at: datetime.datetime = Column(
        DateTime, default=datetime.datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(*NATURAL_KEY_COLUMNS, name="uq_automation_log_natural_key"),
        Index("ix_automation_log_tenant_created", "tenant_id", "created_at"),
    )
