"""Process watchdog: running executables and the platform store's running app."""

from lanlauncher.watchdog.external_app import SteamAppProbe, parse_registry_vdf
from lanlauncher.watchdog.processes import (
    PROCESS_NAME_LIMIT,
    ProcessWatchdog,
    normalize_executable,
    snapshot_process_names,
)

__all__ = [
    "PROCESS_NAME_LIMIT",
    "ProcessWatchdog",
    "SteamAppProbe",
    "normalize_executable",
    "parse_registry_vdf",
    "snapshot_process_names",
]
