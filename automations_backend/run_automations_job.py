from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from automations_backend.automation.rule_store import RuleStoreError
from automations_backend.automation.runner import AutomationRunner
from automations_backend.config import ConfigurationError, settings
from automations_backend.db import get_session_factory, init_db
from automations_backend.logging_config import configure_logging
from automations_backend.schemas.automation import RunSummary

logger = logging.getLogger("automations.job")


def run_automations(tenant_ids: Optional[List[str]] = None) -> RunSummary:
    """Run one invocation outside the web process (cron, one-off reruns)."""
    try:
        init_db()
        runner = AutomationRunner.from_session_factory(get_session_factory(), settings)
        return asyncio.run(runner.run(tenant_ids=tenant_ids))
    except (ConfigurationError, RuleStoreError) as exc:
        logger.error("Automation job failed: %s", exc)
        raise


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Evaluate every enabled automation rule once and dispatch notifications."
    )
    parser.add_argument(
        "--tenant",
        action="append",
        dest="tenants",
        metavar="TENANT_ID",
        help="Restrict the run to this tenant (repeatable).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run.",
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        summary = run_automations(tenant_ids=args.tenants)
    except (ConfigurationError, RuleStoreError) as exc:
        print(json.dumps({"ok": False, "error": str(exc)}))
        return 1

    print(json.dumps(summary.model_dump()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
