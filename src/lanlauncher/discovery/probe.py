"""UDP broadcast discovery of launcher servers.

One datagram endpoint is opened per local interface, each bound to its own
reply port (``reply_port + index``) so that one interface's outbound port
never collides with another's listener.  Every endpoint sends the probe
token to its subnet broadcast address and to 255.255.255.255, then again
once per second while the scan is open.

Scan window:

- the first reply starts a short settle countdown so the other interfaces
  get a chance to answer;
- with no reply at all the scan ends at the ceiling;
- teardown closes every transport and cancels every timer before
  ``discover()`` returns, including on cancellation and ``stop()``.

A ``discover()`` or ``discover_one()`` issued while a scan is in flight
joins that scan instead of opening a second one: the reply ports are fixed
per interface, so two scans at once would fail to bind.  The scan is torn
down when its last caller leaves.

Usage::

    probe = DiscoveryProbe(DiscoveryConfig())
    candidates = await probe.discover()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from lanlauncher.config import DiscoveryConfig
from lanlauncher.discovery.interfaces import list_interfaces
from lanlauncher.discovery.localhost import LocalhostProbe
from lanlauncher.models import NetworkInterface, ServerCandidate

logger = logging.getLogger(__name__)

UNIVERSAL_BROADCAST = "255.255.255.255"

InterfaceProvider = Callable[[], Sequence[NetworkInterface]]
CandidateMatcher = Callable[[ServerCandidate], bool]


def parse_reply(data: bytes, source_ip: str) -> Optional[ServerCandidate]:
    """Turn a reply datagram into a candidate, or None when malformed."""
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("[Discovery] Malformed reply from %s: %s", source_ip, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("[Discovery] Reply from %s is not an object", source_ip)
        return None

    port = payload.get("port")
    if isinstance(port, str) and port.isdigit():
        port = int(port)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        logger.warning("[Discovery] Reply from %s has no usable port: %r", source_ip, port)
        return None

    protocol = str(payload.get("protocol") or "http").strip().lower()
    name = payload.get("serverName")
    version = payload.get("version")
    return ServerCandidate(
        address=f"{protocol}://{source_ip}:{port}",
        server_name=str(name) if name else None,
        protocol_version=str(version) if version is not None else None,
    )


class _ProbeProtocol(asyncio.DatagramProtocol):
    """Datagram endpoint for a single interface."""

    def __init__(self, scan: "_Scan", iface: NetworkInterface):
        self._scan = scan
        self.iface = iface
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport
        self.send_probe()

    def datagram_received(self, data: bytes, addr) -> None:
        self._scan.on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("[Discovery] Socket error on %s: %s", self.iface.name, exc)

    def send_probe(self) -> None:
        if self.transport is None or self.transport.is_closing():
            return
        targets = [self.iface.broadcast]
        if UNIVERSAL_BROADCAST not in targets:
            targets.append(UNIVERSAL_BROADCAST)
        for target in targets:
            try:
                self.transport.sendto(self._scan.token, (target, self._scan.server_port))
            except OSError as exc:
                logger.warning(
                    "[Discovery] Send to %s via %s failed: %s", target, self.iface.name, exc
                )


class _Scan:
    """State of one discovery scan: endpoints, timers and replies."""

    def __init__(
        self,
        config: DiscoveryConfig,
        ceiling: float,
    ):
        self._config = config
        self._loop = asyncio.get_running_loop()
        self.token = config.probe_token
        self.server_port = config.server_port
        self.ceiling = ceiling
        self.done = asyncio.Event()
        self.closed = False
        self.participants = 0
        self.localhost_task: Optional[asyncio.Task] = None
        self.endpoints: List[_ProbeProtocol] = []
        self.transports: List[asyncio.DatagramTransport] = []
        self._results: Dict[str, ServerCandidate] = {}
        self._resend_handle: Optional[asyncio.TimerHandle] = None
        self._ceiling_handle: Optional[asyncio.TimerHandle] = None
        self._settle_handle: Optional[asyncio.TimerHandle] = None
        self._watchers: List[Tuple[CandidateMatcher, asyncio.Event]] = []

    # ── Endpoints ───────────────────────────────────────────────

    async def open(self, interfaces: Sequence[NetworkInterface]) -> None:
        for index, iface in enumerate(interfaces):
            if self.closed:
                return
            port = self._config.reply_port + index if self._config.reply_port else 0
            try:
                transport, protocol = await self._loop.create_datagram_endpoint(
                    lambda iface=iface: _ProbeProtocol(self, iface),
                    local_addr=(iface.address, port),
                    allow_broadcast=True,
                )
            except OSError as exc:
                logger.warning(
                    "[Discovery] Cannot bind %s:%d on %s, skipping: %s",
                    iface.address, port, iface.name, exc,
                )
                continue
            if self.closed:
                # stop() ran while we were binding
                transport.close()
                return
            self.transports.append(transport)
            self.endpoints.append(protocol)
            logger.debug("[Discovery] Probing from %s (%s:%d)", iface.name, iface.address, port)

        if not self.closed:
            self._schedule_resend()
            if not self._results:
                self._ceiling_handle = self._loop.call_later(self.ceiling, self._on_ceiling)

    # ── Timers ──────────────────────────────────────────────────

    def _schedule_resend(self) -> None:
        if self._resend_handle is not None:
            self._resend_handle.cancel()
        self._resend_handle = self._loop.call_later(self._config.resend_interval, self._resend)

    def _resend(self) -> None:
        self._resend_handle = None
        if self.closed:
            return
        logger.debug("[Discovery] No answer yet, resending probe")
        for endpoint in self.endpoints:
            endpoint.send_probe()
        self._schedule_resend()

    def _on_ceiling(self) -> None:
        self._ceiling_handle = None
        if not self._results:
            logger.info("[Discovery] No server answered within %.1fs", self.ceiling)
        self.finish()

    def _on_settled(self) -> None:
        self._settle_handle = None
        self.finish()

    def finish(self) -> None:
        self.done.set()
        for _, event in self._watchers:
            event.set()
        self._watchers.clear()

    def pending_timers(self) -> int:
        handles = (self._resend_handle, self._ceiling_handle, self._settle_handle)
        return sum(1 for h in handles if h is not None and not h.cancelled())

    # ── Replies ─────────────────────────────────────────────────

    def on_datagram(self, data: bytes, addr) -> None:
        if self.closed:
            return
        candidate = parse_reply(data, addr[0])
        if candidate is not None:
            self.add(candidate)

    def add(self, candidate: ServerCandidate) -> None:
        if self.closed:
            return
        if candidate.address in self._results:
            return
        self._results[candidate.address] = candidate
        logger.info(
            "[Discovery] Found server %s (%s)",
            candidate.address, candidate.server_name or "unnamed",
        )

        if self._settle_handle is None and len(self._results) == 1:
            if self._ceiling_handle is not None:
                self._ceiling_handle.cancel()
                self._ceiling_handle = None
            self._settle_handle = self._loop.call_later(self._config.settle_window, self._on_settled)

        for matcher, event in list(self._watchers):
            if matcher(candidate):
                event.set()
                self._watchers.remove((matcher, event))

    def watch(self, matcher: CandidateMatcher) -> asyncio.Event:
        """Event set on the first reply ``matcher`` accepts, or when the scan ends."""
        event = asyncio.Event()
        if self.done.is_set() or any(matcher(c) for c in self._results.values()):
            event.set()
        else:
            self._watchers.append((matcher, event))
        return event

    @property
    def candidates(self) -> List[ServerCandidate]:
        return list(self._results.values())

    # ── Teardown ────────────────────────────────────────────────

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for attr in ("_resend_handle", "_ceiling_handle", "_settle_handle"):
            handle = getattr(self, attr)
            if handle is not None:
                handle.cancel()
                setattr(self, attr, None)
        for transport in self.transports:
            transport.close()
        self.finish()
        logger.debug("[Discovery] Scan closed (%d endpoints)", len(self.transports))


class DiscoveryProbe:
    """Broadcast-and-collect discovery of launcher servers."""

    def __init__(
        self,
        config: Optional[DiscoveryConfig] = None,
        interface_provider: Optional[InterfaceProvider] = None,
        localhost_probe: Optional[LocalhostProbe] = None,
    ):
        self._config = config or DiscoveryConfig()
        self._interfaces = interface_provider or list_interfaces
        self._localhost = localhost_probe or LocalhostProbe(
            self._config.localhost_ports, host="127.0.0.1"
        )
        self._scans: Set[_Scan] = set()
        self._active: Optional[_Scan] = None
        self.last_scan: Optional[_Scan] = None

    @property
    def scanning(self) -> bool:
        return bool(self._scans)

    async def discover(
        self,
        timeout: Optional[float] = None,
        include_localhost: Optional[bool] = None,
    ) -> List[ServerCandidate]:
        """Run one scan and return every distinct server, in reply order."""
        scan = await self._run(timeout, include_localhost)
        return scan.candidates

    async def discover_one(
        self,
        preferred: Optional[str] = None,
        timeout: Optional[float] = None,
        include_localhost: Optional[bool] = None,
    ) -> Optional[ServerCandidate]:
        """Auto-connect mode: resolve on the first (preferred) server."""
        preferred = preferred.rstrip("/") if preferred else None

        def matches(candidate: ServerCandidate) -> bool:
            return preferred is None or candidate.address == preferred

        scan = await self._run(timeout, include_localhost, matcher=matches)
        found = scan.candidates
        if not found:
            return None
        for candidate in found:
            if matches(candidate):
                return candidate
        logger.info("[Discovery] Remembered server %s not seen, using %s", preferred, found[0].address)
        return found[0]

    def stop(self) -> None:
        """Close every open scan's sockets and timers right now."""
        for scan in list(self._scans):
            scan.close()

    async def _run(
        self,
        timeout: Optional[float],
        include_localhost: Optional[bool],
        matcher: Optional[CandidateMatcher] = None,
    ) -> _Scan:
        ceiling = self._config.ceiling if timeout is None else timeout
        if include_localhost is None:
            include_localhost = self._config.include_localhost

        scan = self._active
        owner = scan is None or scan.closed
        if owner:
            scan = _Scan(self._config, ceiling)
            self._active = scan
            self._scans.add(scan)
            self.last_scan = scan
        else:
            logger.debug("[Discovery] Joining the scan already in flight")

        scan.participants += 1
        try:
            if owner:
                try:
                    await self._open(scan, include_localhost)
                except asyncio.CancelledError:
                    scan.close()
                    raise
            waiter = scan.watch(matcher) if matcher is not None else scan.done
            if owner:
                await waiter.wait()
            else:
                # the owner's ceiling drives the scan; bound ours separately
                try:
                    await asyncio.wait_for(waiter.wait(), timeout=ceiling)
                except asyncio.TimeoutError:
                    pass
            return scan
        finally:
            scan.participants -= 1
            if scan.participants == 0:
                await self._release(scan)

    async def _open(self, scan: _Scan, include_localhost: bool) -> None:
        interfaces = list(self._interfaces())
        logger.info(
            "[Discovery] Scanning on %d interface(s): %s",
            len(interfaces), ", ".join(i.name for i in interfaces),
        )
        await scan.open(interfaces)

        if include_localhost and not scan.closed:
            scan.localhost_task = asyncio.create_task(self._probe_localhost(scan))

        if not scan.endpoints and scan.localhost_task is None:
            logger.warning("[Discovery] No interface could be bound, nothing to scan")
            scan.close()

    async def _release(self, scan: _Scan) -> None:
        scan.close()
        self._scans.discard(scan)
        if self._active is scan:
            self._active = None
        task, scan.localhost_task = scan.localhost_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        # closed transports drop their sockets on the next loop iteration
        await asyncio.sleep(0)

    async def _probe_localhost(self, scan: _Scan) -> None:
        for candidate in await self._localhost.probe():
            scan.add(candidate)
        if not scan.endpoints and not scan.candidates:
            scan.finish()
