"""Tests for loading enabled rules and the records they need."""

import pytest
from sqlalchemy.exc import OperationalError

from automations_backend.automation.entity_fetcher import EntityFetcher, NeededCollections
from automations_backend.automation.rule_store import RuleStore, RuleStoreError
from automations_backend.schemas.automation import RuleConfig, RuleKey


def test_enabled_rules_grouped_by_tenant(session_factory, seed):
    seed.rule("t1", "birthday_prospects_notify")
    seed.rule("t1", "policy_renewal_notice_email", config={"days_before": 15})
    seed.rule("t2", "birthday_customers_email")
    seed.rule("t3", "birthday_customers_notify", enabled=False)

    rules = RuleStore(session_factory).load_enabled_rules()

    assert set(rules) == {"t1", "t2"}
    assert [r.key for r in rules["t1"]] == [
        RuleKey.BIRTHDAY_PROSPECTS_NOTIFY,
        RuleKey.POLICY_RENEWAL_NOTICE_EMAIL,
    ]
    assert rules["t1"][1].config.effective_days_before == 15


def test_unknown_keys_are_skipped(session_factory, seed, caplog):
    seed.rule("t1", "anniversary_sms")
    seed.rule("t1", "birthday_prospects_notify")

    rules = RuleStore(session_factory).load_enabled_rules()

    assert [r.key for r in rules["t1"]] == [RuleKey.BIRTHDAY_PROSPECTS_NOTIFY]
    assert "anniversary_sms" in caplog.text


def test_tenant_filter(session_factory, seed):
    seed.rule("t1", "birthday_prospects_notify")
    seed.rule("t2", "birthday_prospects_notify")

    rules = RuleStore(session_factory).load_enabled_rules(["t2"])

    assert list(rules) == ["t2"]


def test_store_failure_raises_rule_store_error():
    def broken_factory():
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    with pytest.raises(RuleStoreError):
        RuleStore(broken_factory).load_enabled_rules()


@pytest.mark.parametrize(
    "raw, expected_days, expected_tz, expected_template",
    [
        (None, 30, None, None),
        ({"days_before": "45"}, 45, None, None),
        ({"days_before": 500}, 120, None, None),
        ({"days_before": 0}, 30, None, None),
        ({"days_before": ""}, 30, None, None),
        ({"days_before": -4}, 1, None, None),
        ({"days_before": "soon"}, 30, None, None),
        ({"timezone": "  ", "template_id": ""}, 30, None, None),
        ({"timezone": "Asia/Tokyo", "template_id": 12}, 30, "Asia/Tokyo", "12"),
    ],
)
def test_stored_config_is_parsed_leniently(raw, expected_days, expected_tz, expected_template):
    config = RuleConfig.from_stored(raw)

    assert config.effective_days_before == expected_days
    assert config.timezone == expected_tz
    assert config.template_id == expected_template


def test_needed_collections():
    assert NeededCollections.for_rules([RuleKey.BIRTHDAY_PROSPECTS_EMAIL]) == NeededCollections(
        prospects=True
    )
    assert NeededCollections.for_rules([RuleKey.POLICY_RENEWAL_NOTICE_NOTIFY]) == NeededCollections(
        customers=True, policies=True
    )
    assert NeededCollections.for_rules([]) == NeededCollections()


@pytest.mark.asyncio
async def test_fetch_loads_only_needed_collections(session_factory, seed):
    seed.lead("t1", id="lead-1", name="Ana", last_name="Pérez", birthday="1990-03-15")
    seed.lead("t2", id="lead-2", full_name="Otro Tenant")
    seed.customer("t1", id="cust-1", full_name="Luis Gómez")

    fetcher = EntityFetcher(session_factory)
    records = await fetcher.fetch("t1", [RuleKey.BIRTHDAY_PROSPECTS_NOTIFY], timeout=5)

    assert [(p.id, p.display_name) for p in records.prospects] == [("lead-1", "Ana Pérez")]
    assert records.customers == []
    assert records.policies == []


@pytest.mark.asyncio
async def test_fetch_joins_policies_to_customers(session_factory, seed):
    seed.customer("t1", id="cust-1", full_name="Luis Gómez", email="luis@example.com")
    seed.policy("t1", id="pol-1", policy_number="P-1", expiry_date="2024-04-14", customer_id="cust-1")
    seed.policy("t1", id="pol-2", policy_number="P-2", expiry_date="2024-04-14", customer_id="ghost")

    fetcher = EntityFetcher(session_factory)
    records = await fetcher.fetch("t1", [RuleKey.POLICY_RENEWAL_NOTICE_EMAIL], timeout=5)

    by_id = {p.id: p for p in records.policies}
    assert records.customer_for(by_id["pol-1"]).email == "luis@example.com"
    assert records.customer_for(by_id["pol-2"]) is None


def test_fetch_limit(session_factory, seed):
    for i in range(5):
        seed.lead("t1", id=f"lead-{i}")

    assert len(EntityFetcher(session_factory, limit=3).fetch_prospects("t1")) == 3
