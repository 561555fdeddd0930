"""Launcher runtime — builds the core components once and owns their lifecycle.

Usage::

    runtime = LauncherRuntime(catalog=lambda: games)
    await runtime.start()
    ...
    runtime.reconciler.track_launch(game)
    ...
    await runtime.stop()

Or as an async context manager::

    async with LauncherRuntime(catalog=load_games) as runtime:
        ...
"""

from __future__ import annotations

import logging
from typing import Optional

from lanlauncher.config import LauncherConfig
from lanlauncher.discovery.candidates import CandidateMonitor, CandidateRegistry
from lanlauncher.discovery.probe import DiscoveryProbe
from lanlauncher.identity import get_machine_id
from lanlauncher.reconciler import CatalogProvider, KeyReleaseHook, SessionReconciler
from lanlauncher.session.channel import ClientFactory, SessionChannel
from lanlauncher.watchdog.processes import ProcessWatchdog

logger = logging.getLogger(__name__)


class LauncherRuntime:
    """Discovery probe, session channel, watchdog and reconciler, wired together."""

    def __init__(
        self,
        config: Optional[LauncherConfig] = None,
        catalog: Optional[CatalogProvider] = None,
        on_key_release: Optional[KeyReleaseHook] = None,
        client_id: Optional[str] = None,
        probe: Optional[DiscoveryProbe] = None,
        watchdog: Optional[ProcessWatchdog] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or LauncherConfig.from_env()
        self.client_id = client_id or self.config.client_id or get_machine_id()
        self._selected_address: Optional[str] = self.config.server_url or None

        self.probe = probe or DiscoveryProbe(self.config.discovery)
        self.monitor = CandidateMonitor(
            self.probe,
            CandidateRegistry(self.config.discovery.max_misses),
            interval=self.config.discovery.monitor_interval,
        )
        self.channel = SessionChannel(
            self.resolve_server_address,
            self.client_id,
            self.config.channel,
            client_factory=client_factory,
        )
        self.watchdog = watchdog or ProcessWatchdog(self.config.watchdog)
        self.reconciler = SessionReconciler(
            self.channel,
            self.watchdog,
            catalog or (lambda: []),
            self.config.reconciler,
            on_key_release=on_key_release,
        )
        self._started = False

    @property
    def server_address(self) -> Optional[str]:
        return self._selected_address

    async def resolve_server_address(self) -> Optional[str]:
        """Selected server, else the monitor's freshest candidate, else discovery."""
        if self._selected_address:
            return self._selected_address
        candidate = None
        if self.monitor.running:
            candidate = next(
                (c for c in self.monitor.registry.candidates if c.miss_count == 0), None
            )
        if candidate is None:
            candidate = await self.probe.discover_one()
        if candidate is None:
            logger.warning("[Runtime] No launcher server found on the network")
            return None
        logger.info(
            "[Runtime] Using discovered server %s (%s)",
            candidate.address, candidate.server_name or "unnamed",
        )
        self._selected_address = candidate.address
        return candidate.address

    async def select_server(self, address: Optional[str]) -> bool:
        """Switch to ``address`` (None = rediscover) and reconnect the channel."""
        self._selected_address = address.rstrip("/") if address else None
        logger.info("[Runtime] Switching server to %s", self._selected_address or "<discover>")
        await self.channel.disconnect()
        return await self.channel.connect()

    async def start(self, watch_candidates: bool = False) -> None:
        if self._started:
            return
        self._started = True
        if watch_candidates:
            self.monitor.start()
        await self.channel.connect()
        await self.reconciler.initial_scan()
        self.reconciler.start()
        logger.info("[Runtime] Started (client=%s)", self.client_id)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.reconciler.stop()
        await self.monitor.stop()
        self.probe.stop()
        await self.channel.disconnect()
        logger.info("[Runtime] Stopped")

    async def __aenter__(self) -> "LauncherRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
