"""
Models package for the automations backend.

Imports and exposes ORM models so they are registered with Base.metadata.
"""

from automations_backend.db import Base
from .automation_log import AutomationLog  # noqa: F401
from .automation_rule import AutomationRule  # noqa: F401
from .customer import Customer  # noqa: F401
from .email_template import EmailTemplate  # noqa: F401
from .gmail_connection import GmailConnection  # noqa: F401
from .lead import Lead  # noqa: F401
from .policy import Policy  # noqa: F401

__all__ = [
    "Base",
    "AutomationLog",
    "AutomationRule",
    "Customer",
    "EmailTemplate",
    "GmailConnection",
    "Lead",
    "Policy",
]
