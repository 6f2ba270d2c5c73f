from __future__ import annotations

import datetime
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger("automations.schemas")

DEFAULT_DAYS_BEFORE = 30
MIN_DAYS_BEFORE = 1
MAX_DAYS_BEFORE = 120


class RuleFamily(str, Enum):
    BIRTHDAY_PROSPECTS = "birthday_prospects"
    BIRTHDAY_CUSTOMERS = "birthday_customers"
    POLICY_RENEWAL = "policy_renewal"


class RuleChannel(str, Enum):
    EMAIL = "email"
    NOTIFY = "notify"


class TargetTable(str, Enum):
    """Collections a rule can target; values are the stored table names."""

    LEADS = "leads"
    CUSTOMERS = "customers"
    POLICIES = "policies"


class OutcomeStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


class RuleKey(str, Enum):
    """The closed set of automation rules a tenant can enable."""

    BIRTHDAY_PROSPECTS_EMAIL = "birthday_prospects_email"
    BIRTHDAY_CUSTOMERS_EMAIL = "birthday_customers_email"
    POLICY_RENEWAL_NOTICE_EMAIL = "policy_renewal_notice_email"
    BIRTHDAY_PROSPECTS_NOTIFY = "birthday_prospects_notify"
    BIRTHDAY_CUSTOMERS_NOTIFY = "birthday_customers_notify"
    POLICY_RENEWAL_NOTICE_NOTIFY = "policy_renewal_notice_notify"

    @property
    def family(self) -> RuleFamily:
        return _RULE_SHAPES[self][0]

    @property
    def channel(self) -> RuleChannel:
        return _RULE_SHAPES[self][1]

    @property
    def target_table(self) -> TargetTable:
        return FAMILY_TARGET_TABLE[self.family]

    @property
    def sends_email(self) -> bool:
        return self.channel is RuleChannel.EMAIL

    @classmethod
    def parse(cls, value: Any) -> Optional["RuleKey"]:
        """Return the RuleKey for a stored string, or None if it is not one."""
        try:
            return cls(str(value or "").strip())
        except ValueError:
            return None


_RULE_SHAPES: Dict[RuleKey, tuple[RuleFamily, RuleChannel]] = {
    RuleKey.BIRTHDAY_PROSPECTS_EMAIL: (RuleFamily.BIRTHDAY_PROSPECTS, RuleChannel.EMAIL),
    RuleKey.BIRTHDAY_PROSPECTS_NOTIFY: (RuleFamily.BIRTHDAY_PROSPECTS, RuleChannel.NOTIFY),
    RuleKey.BIRTHDAY_CUSTOMERS_EMAIL: (RuleFamily.BIRTHDAY_CUSTOMERS, RuleChannel.EMAIL),
    RuleKey.BIRTHDAY_CUSTOMERS_NOTIFY: (RuleFamily.BIRTHDAY_CUSTOMERS, RuleChannel.NOTIFY),
    RuleKey.POLICY_RENEWAL_NOTICE_EMAIL: (RuleFamily.POLICY_RENEWAL, RuleChannel.EMAIL),
    RuleKey.POLICY_RENEWAL_NOTICE_NOTIFY: (RuleFamily.POLICY_RENEWAL, RuleChannel.NOTIFY),
}

FAMILY_TARGET_TABLE: Dict[RuleFamily, TargetTable] = {
    RuleFamily.BIRTHDAY_PROSPECTS: TargetTable.LEADS,
    RuleFamily.BIRTHDAY_CUSTOMERS: TargetTable.CUSTOMERS,
    RuleFamily.POLICY_RENEWAL: TargetTable.POLICIES,
}


class RuleConfig(BaseModel):
    """Typed view of the automation_rules.config JSON column."""

    model_config = ConfigDict(extra="ignore")

    days_before: Optional[int] = Field(
        default=None,
        ge=MIN_DAYS_BEFORE,
        le=MAX_DAYS_BEFORE,
        description="Renewal rules: match policies expiring exactly this many days out.",
    )
    timezone: Optional[str] = Field(
        default=None,
        description="IANA timezone used to compute the tenant-local run date.",
    )
    template_id: Optional[str] = Field(
        default=None,
        description="Optional email template id owned by the same tenant.",
    )

    @field_validator("timezone", "template_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def effective_days_before(self) -> int:
        return self.days_before or DEFAULT_DAYS_BEFORE

    @classmethod
    def from_stored(cls, raw: Optional[Mapping[str, Any]]) -> "RuleConfig":
        """
        Lenient parse of a stored config blob.

        Values the tenant UI may have saved loosely (numeric strings, floats,
        out-of-range day counts) are coerced instead of rejected.
        """
        if not isinstance(raw, Mapping):
            return cls()

        cleaned: Dict[str, Any] = {
            "timezone": raw.get("timezone") if isinstance(raw.get("timezone"), str) else None,
            "template_id": raw.get("template_id"),
        }
        if isinstance(cleaned["template_id"], (dict, list, bool)):
            cleaned["template_id"] = None

        days = raw.get("days_before")
        # 0 and "" mean "not set" and fall back to the default.
        if days is not None and not isinstance(days, bool) and days not in (0, ""):
            try:
                cleaned["days_before"] = min(
                    max(int(float(days)), MIN_DAYS_BEFORE), MAX_DAYS_BEFORE
                )
            except (TypeError, ValueError):
                logger.warning("Ignoring unusable days_before=%r in rule config", days)

        return cls.model_validate(cleaned)


class Rule(BaseModel):
    """An enabled rule as the engine sees it."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    key: RuleKey
    enabled: bool = True
    config: RuleConfig = Field(default_factory=RuleConfig)


def default_automations(default_timezone: str) -> List[Dict[str, Any]]:
    """Catalog shown to tenants that never saved a rule."""
    items: List[Dict[str, Any]] = []
    for key in RuleKey:
        config: Dict[str, Any] = {"timezone": default_timezone}
        if key.family is RuleFamily.POLICY_RENEWAL:
            config["days_before"] = DEFAULT_DAYS_BEFORE
        items.append(
            {
                "key": key.value,
                "enabled": key.channel is RuleChannel.NOTIFY,
                "config": config,
            }
        )
    return items


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class AutomationUpsertIn(BaseModel):
    key: Optional[str] = None
    enabled: bool = False
    config: RuleConfig = Field(default_factory=RuleConfig)


class AutomationOut(BaseModel):
    key: RuleKey
    enabled: bool
    config: Dict[str, Any] = Field(default_factory=dict)


class AutomationLogOut(BaseModel):
    id: int
    automation_key: str
    target_table: str
    target_id: str
    status: str
    message: str
    run_date: datetime.date
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime.datetime


class RunSummary(BaseModel):
    ok: bool = True
    users: int = 0
    processed: int = 0
