from __future__ import annotations

import logging

from automations_backend.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str | None = None) -> None:
    """
    Configure root logging once for the API process or the CLI job.

    Must run before uvicorn.run() so workers inherit the handlers.
    """
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format=LOG_FORMAT,
    )
    # One INFO line per Gmail request otherwise.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("automations.logging").debug("Logging configured at %s", resolved)
