"""Stable per-machine client id.

The raw platform id (Linux ``machine-id``, Windows ``MachineGuid``, macOS
``IOPlatformUUID``) is hashed with SHA-256 so the value sent to the server
does not expose the original identifier.  When none is readable the MAC
address is hashed instead.
"""

from __future__ import annotations

import hashlib
import logging
import re
import subprocess
import sys
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

LINUX_MACHINE_ID_PATHS = ("/var/lib/dbus/machine-id", "/etc/machine-id")

_IOREG_UUID = re.compile(r'"IOPlatformUUID"\s*=\s*"([^"]+)"')


def _read_linux_machine_id() -> Optional[str]:
    for path in LINUX_MACHINE_ID_PATHS:
        try:
            with open(path, "r", encoding="ascii") as fh:
                value = fh.read().strip()
        except OSError:
            continue
        if value:
            return value
    return None


def _read_windows_machine_guid() -> Optional[str]:
    import winreg

    try:
        with winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE,
            r"SOFTWARE\Microsoft\Cryptography",
            0,
            winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
        ) as key:
            value, _kind = winreg.QueryValueEx(key, "MachineGuid")
    except OSError as exc:
        logger.debug("[Identity] MachineGuid unavailable: %s", exc)
        return None
    return str(value).strip() or None


def _read_macos_platform_uuid() -> Optional[str]:
    try:
        out = subprocess.run(
            ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
            capture_output=True, text=True, timeout=5, check=False,
        ).stdout
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("[Identity] ioreg failed: %s", exc)
        return None
    match = _IOREG_UUID.search(out)
    return match.group(1) if match else None


def read_raw_machine_id(platform: Optional[str] = None) -> Optional[str]:
    platform = platform or sys.platform
    if platform == "win32":
        return _read_windows_machine_guid()
    if platform == "darwin":
        return _read_macos_platform_uuid()
    return _read_linux_machine_id()


def hash_machine_id(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def get_machine_id(platform: Optional[str] = None) -> str:
    raw = read_raw_machine_id(platform)
    if raw is None:
        logger.warning("[Identity] No platform machine id, falling back to MAC address")
        raw = f"{uuid.getnode():012x}"
    return hash_machine_id(raw)
