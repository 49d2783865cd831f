"""API client for the roster sheet proxy."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, List

import requests

from . import auth
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

BASE_URL = os.getenv("STUDIO_TIMETABLE_API_URL", "http://localhost:5001/api/sheets")
READ_ENDPOINT = "/read"
WRITE_ENDPOINT = "/write"
BATCH_ENDPOINT = "/batch-update"

# One retry, so at most two attempts per read.
READ_ATTEMPTS = 2
BACKOFF_SECONDS = 1.0


class APIClient:
    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = BASE_URL,
        dump_json: bool = False,
        offline: bool = False,
        json_dir: Path | str = "out/json",
        timeout: float = 30,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.dump_json = dump_json
        self.offline = offline
        self.timeout = timeout
        self.session = requests.Session()
        self.json_dir = Path(json_dir)
        if dump_json or offline:
            self.json_dir.mkdir(parents=True, exist_ok=True)

    def _json_path(self, sheet_range: str) -> Path:
        name = re.sub(r"[^\w\-]+", "_", sheet_range).strip("_") + ".json"
        return self.json_dir / name

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _refresh_token(self) -> None:
        self.token = auth.acquire_token()
        if self.token is None:
            raise UpstreamUnavailable("proxy requires a token and none is configured")

    def read_range(self, sheet_range: str) -> List[List[str]]:
        """Return the cell values of ``sheet_range`` as a list of rows."""
        if self.offline:
            with self._json_path(sheet_range).open("r", encoding="utf-8") as f:
                return json.load(f)
        url = self.base_url + READ_ENDPOINT
        refreshed = False
        attempt = 0
        while attempt < READ_ATTEMPTS:
            try:
                resp = self.session.get(
                    url,
                    params={"range": sheet_range},
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                if resp.status_code == 401 and not refreshed:
                    logger.info("Token expired, refreshing")
                    self._refresh_token()
                    refreshed = True
                    continue
                if resp.status_code >= 500:
                    raise requests.HTTPError(
                        f"{resp.status_code} from {url}", response=resp
                    )
                resp.raise_for_status()
                values = resp.json().get("values", [])
                if self.dump_json:
                    with self._json_path(sheet_range).open("w", encoding="utf-8") as f:
                        json.dump(values, f, ensure_ascii=False)
                return values
            except requests.RequestException as exc:
                status = getattr(exc.response, "status_code", None)
                if status is not None and status < 500:
                    raise UpstreamUnavailable(f"Read of {sheet_range} rejected: {exc}") from exc
                attempt += 1
                if attempt >= READ_ATTEMPTS:
                    raise UpstreamUnavailable(
                        f"Failed to read {sheet_range}: {exc}"
                    ) from exc
                logger.warning("Request error: %s; retrying", exc)
                time.sleep(BACKOFF_SECONDS * 2 ** (attempt - 1))
        raise UpstreamUnavailable(f"Failed to read {sheet_range}")

    def write_range(self, sheet_range: str, values: List[List[Any]]) -> None:
        """Write ``values`` into ``sheet_range``.

        Writes are sent once: a timeout may still have landed on the sheet, so
        the caller decides whether to re-read and try again.
        """
        self._post(WRITE_ENDPOINT, {"range": sheet_range, "values": values})

    def batch_update(self, updates: List[dict]) -> None:
        self._post(BATCH_ENDPOINT, {"updates": updates})

    def _post(self, endpoint: str, payload: dict) -> None:
        if self.offline:
            logger.info("Offline mode, skipping %s", endpoint)
            return
        url = self.base_url + endpoint
        try:
            resp = self.session.post(
                url, json=payload, headers=self._headers(), timeout=self.timeout
            )
            if resp.status_code == 401:
                # Rejected before anything was written, safe to send again.
                logger.info("Token expired, refreshing")
                self._refresh_token()
                resp = self.session.post(
                    url, json=payload, headers=self._headers(), timeout=self.timeout
                )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Write to {endpoint} failed: {exc}") from exc
