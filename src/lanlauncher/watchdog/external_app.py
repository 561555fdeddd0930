"""Steam "RunningAppID" lookup.

Steam publishes the app id of the game it is currently running:

- Windows: ``HKCU\\Software\\Valve\\Steam`` value ``RunningAppID`` (DWORD)
- Linux:   ``RunningAppID`` inside ``~/.steam/registry.vdf``

``"0"``, a missing value and any read failure all mean "no external app".
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from typing import Optional

logger = logging.getLogger(__name__)

STEAM_REGISTRY_KEY = r"Software\Valve\Steam"
RUNNING_APP_VALUE = "RunningAppID"

_VDF_RUNNING_APP = re.compile(r'"RunningAppID"\s+"(\d*)"', re.IGNORECASE)


def _normalize_app_id(raw: object) -> Optional[str]:
    value = str(raw).strip() if raw is not None else ""
    if not value or value == "0":
        return None
    return value


def read_windows_running_app_id() -> Optional[str]:
    import winreg

    try:
        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, STEAM_REGISTRY_KEY) as key:
            value, _kind = winreg.QueryValueEx(key, RUNNING_APP_VALUE)
    except OSError as exc:
        logger.debug("[Watchdog] Steam registry key unavailable: %s", exc)
        return None
    return _normalize_app_id(value)


def parse_registry_vdf(text: str) -> Optional[str]:
    match = _VDF_RUNNING_APP.search(text)
    if match is None:
        return None
    return _normalize_app_id(match.group(1))


def read_vdf_running_app_id(path: str) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            return parse_registry_vdf(fh.read())
    except OSError as exc:
        logger.debug("[Watchdog] Cannot read %s: %s", path, exc)
        return None


class SteamAppProbe:
    """Reports Steam's running app id for the current platform."""

    def __init__(self, registry_path: str, platform: Optional[str] = None):
        self._registry_path = registry_path
        self._platform = platform or sys.platform

    def read(self) -> Optional[str]:
        if self._platform == "win32":
            return read_windows_running_app_id()
        if self._platform.startswith("linux"):
            return read_vdf_running_app_id(self._registry_path)
        return None

    async def __call__(self) -> Optional[str]:
        return await asyncio.to_thread(self.read)
