"""Bearer tokens for the sheet proxy.

The proxy may sit behind an Azure AD app registration. When no token or MSAL
client is configured the proxy is called without an ``Authorization`` header.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import msal

from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

AUTHORITY = os.getenv(
    "STUDIO_TIMETABLE_AUTHORITY", "https://login.microsoftonline.com/common"
)
CLIENT_ID = os.getenv("STUDIO_TIMETABLE_CLIENT_ID", "")
# Reserved scopes (``offline_access``, ``openid``, ``profile``) are added by
# MSAL itself and must not be requested for the device flow.
SCOPES = [
    s for s in os.getenv("STUDIO_TIMETABLE_SCOPES", "").split(",") if s.strip()
]
CACHE_PATH = Path(os.path.expanduser("~/.cache/studio_timetable/msal_cache.bin"))


def _load_cache() -> msal.SerializableTokenCache:
    cache = msal.SerializableTokenCache()
    if CACHE_PATH.exists():
        try:
            cache.deserialize(CACHE_PATH.read_text())
        except ValueError as exc:  # pragma: no cover - corruption is rare
            logger.warning("Ignoring unreadable token cache: %s", exc)
    return cache


def _save_cache(cache: msal.SerializableTokenCache) -> None:
    CACHE_PATH.parent.mkdir(parents=True, exist_ok=True)
    CACHE_PATH.write_text(cache.serialize())


def msal_configured() -> bool:
    return bool(CLIENT_ID and SCOPES)


def acquire_token() -> Optional[str]:
    """Token for the proxy, or ``None`` when no credentials are configured."""
    token = os.getenv("STUDIO_TIMETABLE_ACCESS_TOKEN")
    if token:
        return token
    if not msal_configured():
        logger.debug("No proxy credentials configured, sending unauthenticated requests")
        return None

    cache = _load_cache()
    app = msal.PublicClientApplication(CLIENT_ID, authority=AUTHORITY, token_cache=cache)

    accounts = app.get_accounts()
    result = app.acquire_token_silent(SCOPES, account=accounts[0]) if accounts else None

    if not result:
        flow = app.initiate_device_flow(scopes=SCOPES)
        if flow and "user_code" in flow:
            print(flow["message"])
            result = app.acquire_token_by_device_flow(flow)
        else:
            logger.error("Device flow init failed: %s", flow.get("error_description"))

    if result and "access_token" in result:
        if cache.has_state_changed:
            _save_cache(cache)
        return result["access_token"]

    raise UpstreamUnavailable(
        "could not obtain a proxy token; set STUDIO_TIMETABLE_ACCESS_TOKEN or unset the MSAL client"
    )
