"""
Process watchdog — is a catalog game running right now?

Answers two questions for the reconciler:
- which process images are running (psutil snapshot, taken off the loop)
- which Steam app id is currently reported, if any

Executable names are compared after normalization so that
``C:\\Games\\Foo\\foo.exe``, ``/games/foo/foo.exe`` and ``foo.exe`` all refer
to the same process image.  Names are truncated to the length the OS
reports (``tasklist`` keeps 25 characters on Windows, ``/proc/<pid>/comm``
keeps 15 on Linux) and case-folded where the filesystem is case-insensitive.

Usage::

    watchdog = ProcessWatchdog(WatchdogConfig())
    names = await watchdog.list_running_process_names()
    if names is not None and watchdog.is_game_running(game, names):
        ...
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Optional

import psutil

from lanlauncher.config import WatchdogConfig
from lanlauncher.models import GameRecord
from lanlauncher.watchdog.external_app import SteamAppProbe

logger = logging.getLogger(__name__)

PROCESS_NAME_LIMIT = {
    "win32": 25,
    "linux": 15,
}

_CASE_INSENSITIVE_PLATFORMS = ("win32", "darwin")
_SEPARATORS = re.compile(r"[\\/]")

ProcessSnapshot = Callable[[], Iterable[str]]
ExternalAppProbe = Callable[[], Awaitable[Optional[str]]]


def _platform_key(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    return "linux" if platform.startswith("linux") else platform


def process_name_limit(platform: Optional[str] = None) -> Optional[int]:
    return PROCESS_NAME_LIMIT.get(_platform_key(platform))


def is_case_insensitive(platform: Optional[str] = None) -> bool:
    return _platform_key(platform) in _CASE_INSENSITIVE_PLATFORMS


def normalize_executable(
    name: str,
    limit: Optional[int] = None,
    case_insensitive: bool = False,
) -> str:
    """Bare, OS-comparable image name for ``name``."""
    base = _SEPARATORS.split(name.strip())[-1]
    if limit:
        base = base[:limit]
    if case_insensitive:
        base = base.casefold()
    return base


def snapshot_process_names() -> List[str]:
    """Image names of every running process (blocking)."""
    names: List[str] = []
    for proc in psutil.process_iter(["name"]):
        name = proc.info.get("name")
        if name:
            names.append(name)
    return names


class ProcessWatchdog:
    """Process and external-app observer for the reconciler."""

    def __init__(
        self,
        config: Optional[WatchdogConfig] = None,
        snapshot: Optional[ProcessSnapshot] = None,
        external_app_probe: Optional[ExternalAppProbe] = None,
        platform: Optional[str] = None,
    ):
        self._config = config or WatchdogConfig()
        self._snapshot = snapshot or snapshot_process_names
        self._limit = process_name_limit(platform)
        self._case_insensitive = is_case_insensitive(platform)
        if external_app_probe is None and self._config.detect_external_apps:
            external_app_probe = SteamAppProbe(self._config.steam_registry_path, platform)
        self._external_app_probe = external_app_probe

    def normalize(self, name: str) -> str:
        return normalize_executable(name, self._limit, self._case_insensitive)

    async def list_running_process_names(self) -> Optional[FrozenSet[str]]:
        """Normalized names of running processes, or None if listing failed."""
        try:
            raw = await asyncio.to_thread(lambda: list(self._snapshot()))
        except (psutil.Error, OSError) as exc:
            logger.warning("[Watchdog] Process listing failed: %s", exc)
            return None
        return frozenset(self.normalize(name) for name in raw if name)

    async def current_external_app_id(self) -> Optional[str]:
        if self._external_app_probe is None:
            return None
        try:
            return await self._external_app_probe()
        except Exception as exc:
            logger.debug("[Watchdog] External app probe failed: %s", exc)
            return None

    def executables_to_monitor(self, game: GameRecord) -> List[str]:
        declared = list(game.executables)
        if game.executable:
            declared.append(game.executable)
        monitored: List[str] = []
        for exe in declared:
            name = self.normalize(exe)
            if name and name not in monitored:
                monitored.append(name)
        return monitored

    def is_game_running(self, game: GameRecord, names: FrozenSet[str]) -> bool:
        return any(exe in names for exe in self.executables_to_monitor(game))

    def find_running(self, games: Iterable[GameRecord], names: FrozenSet[str]) -> Optional[GameRecord]:
        """First game in ``games`` with a running executable."""
        for game in games:
            if self.is_game_running(game, names):
                return game
        return None
