"""HTTP calls the core makes against a launcher server."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

HEALTH_PATH = "/api/updates/health"
SERVER_NAME_PATH = "/api/settings/server-name"


class ServerApi:
    """Health and server-name endpoints, run off the event loop.

    Failures never raise: the health check answers False and the name
    lookup answers None.
    """

    def __init__(self, timeout: float = 2.0):
        self.timeout = float(timeout)

    def check_health_sync(self, base_url: str) -> bool:
        url = f"{base_url.rstrip('/')}{HEALTH_PATH}"
        try:
            r = requests.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.debug("[ServerApi] Health check %s failed: %s", url, exc)
            return False
        return r.status_code == 200

    def get_server_name_sync(self, base_url: str) -> Optional[str]:
        url = f"{base_url.rstrip('/')}{SERVER_NAME_PATH}"
        try:
            r = requests.get(url, timeout=self.timeout)
            r.raise_for_status()
            payload: Any = r.json()
        except (requests.RequestException, ValueError) as exc:
            logger.debug("[ServerApi] Server name lookup %s failed: %s", url, exc)
            return None
        return _extract_name(payload)

    async def check_health(self, base_url: str) -> bool:
        return await asyncio.to_thread(self.check_health_sync, base_url)

    async def get_server_name(self, base_url: str) -> Optional[str]:
        return await asyncio.to_thread(self.get_server_name_sync, base_url)


def _extract_name(payload: Any) -> Optional[str]:
    # Servers answer either {"serverName": ...} or {"data": {"serverName": ...}}.
    if isinstance(payload, str):
        return payload or None
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("data"), (dict, str)):
        return _extract_name(payload["data"])
    for key in ("serverName", "name", "value"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None
