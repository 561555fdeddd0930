"""Runtime configuration for the launcher core.

Every knob has a sensible default and can be overridden through a
``LANLAUNCHER_*`` environment variable, so a kiosk machine can be tuned
without touching code::

    LANLAUNCHER_DISCOVERY_CEILING=8 LANLAUNCHER_DISCOVERY_LOCALHOST=1 lanlauncher discover

Configs are plain dataclasses; tests build them directly with explicit values.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Tuple

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "y", "on", "enable", "enabled"}


class LauncherConfigError(ValueError):
    """Raised when an environment override cannot be parsed."""


def _env_raw(name: str) -> str:
    return str(os.getenv(name, "")).strip()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = _env_raw(name).lower()
    if not raw:
        return bool(default)
    return raw in _TRUTHY


def _env_float(name: str, default: float) -> float:
    raw = _env_raw(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise LauncherConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise LauncherConfigError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_raw(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise LauncherConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise LauncherConfigError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_ports(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    raw = _env_raw(name)
    if not raw:
        return default
    ports = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ports.append(int(part))
        except ValueError as exc:
            raise LauncherConfigError(f"{name} contains a non-numeric port: {part!r}") from exc
    return tuple(ports)


# ─────────────────────────────────────────────────────────────────
# Discovery
# ─────────────────────────────────────────────────────────────────


@dataclass
class DiscoveryConfig:
    """Broadcast discovery settings."""

    probe_token: bytes = b"lanLauncher://get_ip"
    server_port: int = field(default_factory=lambda: _env_int("LANLAUNCHER_DISCOVERY_PORT", 50000))
    reply_port: int = field(default_factory=lambda: _env_int("LANLAUNCHER_DISCOVERY_REPLY_PORT", 50001))
    resend_interval: float = 1.0          # seconds between probe rounds
    settle_window: float = field(default_factory=lambda: _env_float("LANLAUNCHER_DISCOVERY_SETTLE", 2.0))
    ceiling: float = field(default_factory=lambda: _env_float("LANLAUNCHER_DISCOVERY_CEILING", 5.0))
    include_localhost: bool = field(default_factory=lambda: _env_flag("LANLAUNCHER_DISCOVERY_LOCALHOST"))
    localhost_ports: Tuple[int, ...] = field(
        default_factory=lambda: _env_ports("LANLAUNCHER_LOCALHOST_PORTS", (3000, 8080))
    )
    localhost_timeout: float = 1.0
    max_misses: int = 5                   # scans a candidate may miss before eviction
    monitor_interval: float = field(default_factory=lambda: _env_float("LANLAUNCHER_DISCOVERY_INTERVAL", 10.0))


# ─────────────────────────────────────────────────────────────────
# Session channel
# ─────────────────────────────────────────────────────────────────


@dataclass
class ChannelConfig:
    """Session channel and reconnect policy."""

    base_delay: float = 1.0               # seconds, doubled per attempt
    max_delay: float = 30.0
    max_attempts: int = field(default_factory=lambda: _env_int("LANLAUNCHER_RECONNECT_ATTEMPTS", 10))
    cooldown: float = field(default_factory=lambda: _env_float("LANLAUNCHER_RECONNECT_COOLDOWN", 60.0))
    connect_timeout: float = 5.0
    status_timeout: float = 5.0           # check_my_session round trip
    room: str = "game-sessions"


# ─────────────────────────────────────────────────────────────────
# Watchdog / reconciler
# ─────────────────────────────────────────────────────────────────


@dataclass
class WatchdogConfig:
    """Process watchdog settings."""

    detect_external_apps: bool = field(
        default_factory=lambda: _env_flag("LANLAUNCHER_EXTERNAL_APPS", default=True)
    )
    steam_registry_path: str = field(
        default_factory=lambda: _env_raw("LANLAUNCHER_STEAM_REGISTRY")
        or os.path.expanduser("~/.steam/registry.vdf")
    )


@dataclass
class ReconcilerConfig:
    """Control-loop cadence."""

    tick_interval: float = field(default_factory=lambda: _env_float("LANLAUNCHER_TICK_INTERVAL", 1.0))
    cross_check_interval: float = field(
        default_factory=lambda: _env_float("LANLAUNCHER_CROSS_CHECK_INTERVAL", 60.0)
    )


@dataclass
class LauncherConfig:
    """All component configs plus the address and identity overrides."""

    server_url: str = field(default_factory=lambda: _env_raw("LANLAUNCHER_SERVER_URL").rstrip("/"))
    client_id: str = field(default_factory=lambda: _env_raw("LANLAUNCHER_CLIENT_ID"))
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)

    @classmethod
    def from_env(cls) -> "LauncherConfig":
        config = cls()
        logger.debug(
            "[Config] server_url=%s ceiling=%.1fs tick=%.1fs cross_check=%.1fs",
            config.server_url or "<discover>",
            config.discovery.ceiling,
            config.reconciler.tick_interval,
            config.reconciler.cross_check_interval,
        )
        return config
