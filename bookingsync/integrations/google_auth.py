"""
Booking Sync — Google Calendar Authentication.

The sync runs unattended, so credentials come from a service account key
(preferred) or from a previously stored authorized-user token. There is no
interactive consent flow here.
"""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from bookingsync.ports.calendar_port import ProviderAuthError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


def load_credentials():
    """Return Google credentials for the shared calendar.

    Flow:
    1. Service account key file, if present.
    2. Otherwise a stored authorized-user token, refreshed when expired and
       written back to disk.
    3. Otherwise ProviderAuthError: the cycle cannot talk to the provider.
    """
    from bookingsync.config import settings

    sa_path = Path(settings.GOOGLE_SERVICE_ACCOUNT_FILE)
    token_path = Path(settings.GOOGLE_TOKEN_PATH)

    if sa_path.exists():
        creds = service_account.Credentials.from_service_account_file(
            str(sa_path), scopes=SCOPES
        )
        logger.debug("Loaded service account credentials from %s", sa_path)
        return creds

    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        logger.debug("Loaded existing token from %s", token_path)
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                raise ProviderAuthError(f"Token refresh failed: {exc}") from exc
            token_path.write_text(creds.to_json())
            logger.info("Token refreshed successfully")
        return creds

    raise ProviderAuthError(
        f"No Google credentials found: neither {sa_path} nor {token_path} exists. "
        "Create a service account key in the Google Cloud Console and share "
        "the calendar with it."
    )


def build_calendar_service(credentials):
    """Build a Google Calendar API v3 service object."""
    service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
    logger.info("Google Calendar service built successfully")
    return service
