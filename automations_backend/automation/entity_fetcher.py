from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from automations_backend.automation.templates import (
    CUSTOMER_FALLBACK_NAME,
    PROSPECT_FALLBACK_NAME,
    resolve_display_name,
)
from automations_backend.models import Customer, Lead, Policy
from automations_backend.schemas.automation import RuleFamily, RuleKey

logger = logging.getLogger("automations.entity_fetcher")


@dataclass(frozen=True)
class ProspectRecord:
    id: str
    display_name: str
    email: Optional[str]
    birthday: Optional[str]


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    display_name: str
    email: Optional[str]
    birthday: Optional[str]


@dataclass(frozen=True)
class PolicyRecord:
    id: str
    policy_number: Optional[str]
    expiry_date: Optional[str]
    customer_id: Optional[str]


@dataclass
class TenantRecords:
    """Snapshot of one tenant's candidate targets for one run."""

    prospects: List[ProspectRecord] = field(default_factory=list)
    customers: List[CustomerRecord] = field(default_factory=list)
    policies: List[PolicyRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.customers_by_id: Dict[str, CustomerRecord] = {c.id: c for c in self.customers}

    def customer_for(self, policy: PolicyRecord) -> Optional[CustomerRecord]:
        return self.customers_by_id.get(str(policy.customer_id or ""))


@dataclass(frozen=True)
class NeededCollections:
    prospects: bool = False
    customers: bool = False
    policies: bool = False

    @classmethod
    def for_rules(cls, keys: Iterable[RuleKey]) -> "NeededCollections":
        families = {k.family for k in keys}
        renewal = RuleFamily.POLICY_RENEWAL in families
        return cls(
            prospects=RuleFamily.BIRTHDAY_PROSPECTS in families,
            customers=RuleFamily.BIRTHDAY_CUSTOMERS in families or renewal,
            policies=renewal,
        )


class EntityFetcher:
    """Loads only the record collections the tenant's enabled rules need."""

    def __init__(self, session_factory: sessionmaker, limit: int = 5000) -> None:
        self._session_factory = session_factory
        self._limit = limit

    def fetch_prospects(self, tenant_id: str) -> List[ProspectRecord]:
        stmt = select(Lead).where(Lead.tenant_id == tenant_id).limit(self._limit)
        with self._session_factory() as session:
            return [
                ProspectRecord(
                    id=str(row.id),
                    display_name=resolve_display_name(
                        row.full_name, row.name, row.last_name, PROSPECT_FALLBACK_NAME
                    ),
                    email=row.email,
                    birthday=row.birthday,
                )
                for row in session.execute(stmt).scalars()
            ]

    def fetch_customers(self, tenant_id: str) -> List[CustomerRecord]:
        stmt = select(Customer).where(Customer.tenant_id == tenant_id).limit(self._limit)
        with self._session_factory() as session:
            return [
                CustomerRecord(
                    id=str(row.id),
                    display_name=resolve_display_name(
                        row.full_name, row.name, row.last_name, CUSTOMER_FALLBACK_NAME
                    ),
                    email=row.email,
                    birthday=row.birthday,
                )
                for row in session.execute(stmt).scalars()
            ]

    def fetch_policies(self, tenant_id: str) -> List[PolicyRecord]:
        stmt = select(Policy).where(Policy.tenant_id == tenant_id).limit(self._limit)
        with self._session_factory() as session:
            return [
                PolicyRecord(
                    id=str(row.id),
                    policy_number=row.policy_number,
                    expiry_date=row.expiry_date,
                    customer_id=str(row.customer_id) if row.customer_id is not None else None,
                )
                for row in session.execute(stmt).scalars()
            ]

    async def fetch(
        self,
        tenant_id: str,
        keys: Sequence[RuleKey],
        timeout: float,
    ) -> TenantRecords:
        """Run the needed queries concurrently; each is bounded by timeout."""
        needed = NeededCollections.for_rules(keys)

        async def _maybe(enabled: bool, fn) -> list:
            if not enabled:
                return []
            return await asyncio.wait_for(asyncio.to_thread(fn, tenant_id), timeout)

        prospects, customers, policies = await asyncio.gather(
            _maybe(needed.prospects, self.fetch_prospects),
            _maybe(needed.customers, self.fetch_customers),
            _maybe(needed.policies, self.fetch_policies),
        )
        logger.debug(
            "Fetched tenant=%s prospects=%d customers=%d policies=%d",
            tenant_id,
            len(prospects),
            len(customers),
            len(policies),
        )
        return TenantRecords(prospects=prospects, customers=customers, policies=policies)
