import logging
from typing import Optional

from pydantic import BaseModel

from automations_backend.config import settings

logger = logging.getLogger("automations.email.config")

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GmailSettings(BaseModel):
    """
    Gmail API configuration derived from Settings.
    Client credentials are only needed when a stored access token must be refreshed.
    """

    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    send_url: str = GMAIL_SEND_URL
    token_url: str = GOOGLE_TOKEN_URL

    token_timeout_seconds: float = 15.0
    send_timeout_seconds: float = 20.0

    # Stored access tokens are reused only with more validity than this left.
    token_refresh_margin_seconds: int = 30


_gmail_settings: Optional[GmailSettings] = None


def init_gmail_settings() -> GmailSettings:
    """
    Initialize the global GmailSettings instance from automations_backend.config.settings.
    Safe to call multiple times; initialization is idempotent.
    """
    global _gmail_settings

    if _gmail_settings is not None:
        return _gmail_settings

    _gmail_settings = GmailSettings(
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
        token_timeout_seconds=settings.token_timeout_seconds,
        send_timeout_seconds=settings.send_timeout_seconds,
    )

    if not _gmail_settings.client_id:
        logger.warning(
            "GMAIL_CLIENT_ID is not set; expired Gmail tokens cannot be refreshed."
        )
    logger.info(
        "GmailSettings initialized (token_timeout=%ss, send_timeout=%ss)",
        _gmail_settings.token_timeout_seconds,
        _gmail_settings.send_timeout_seconds,
    )
    return _gmail_settings


def get_gmail_settings() -> GmailSettings:
    """
    Accessor used by the token provider and the gateway.
    Ensures settings are initialized before returning.
    """
    return init_gmail_settings()
