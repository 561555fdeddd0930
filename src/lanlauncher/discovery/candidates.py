"""Long-lived server candidate list with miss-count aging.

A server that drops a single broadcast should not flicker out of the list:
every scan resets the miss counter of the candidates it saw and bumps it for
the ones it did not, and a candidate is only evicted once it has missed
``max_misses`` scans in a row.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional

from lanlauncher.models import ServerCandidate

logger = logging.getLogger(__name__)

DEFAULT_MAX_MISSES = 5


class CandidateRegistry:
    """Persistent map of server candidates keyed by address."""

    def __init__(self, max_misses: int = DEFAULT_MAX_MISSES):
        self._max_misses = max_misses
        self._candidates: Dict[str, ServerCandidate] = {}

    def merge(self, results: Iterable[ServerCandidate]) -> List[str]:
        """Fold one scan's results in; return the evicted addresses."""
        seen: Dict[str, ServerCandidate] = {}
        for found in results:
            seen.setdefault(found.address, found)

        evicted: List[str] = []
        for address in list(self._candidates):
            current = self._candidates[address]
            found = seen.get(address)
            if found is not None:
                current.miss_count = 0
                current.server_name = found.server_name or current.server_name
                current.protocol_version = found.protocol_version or current.protocol_version
                continue
            current.miss_count += 1
            if current.miss_count >= self._max_misses:
                del self._candidates[address]
                evicted.append(address)
                logger.info(
                    "[Discovery] Evicted %s after %d missed scans", address, current.miss_count
                )

        for address, found in seen.items():
            if address not in self._candidates:
                self._candidates[address] = ServerCandidate(
                    address=found.address,
                    server_name=found.server_name,
                    protocol_version=found.protocol_version,
                )
                logger.info("[Discovery] New candidate %s", address)
        return evicted

    def get(self, address: str) -> Optional[ServerCandidate]:
        return self._candidates.get(address.rstrip("/"))

    @property
    def candidates(self) -> List[ServerCandidate]:
        return list(self._candidates.values())

    def __len__(self) -> int:
        return len(self._candidates)

    def __contains__(self, address: object) -> bool:
        return address in self._candidates


class CandidateMonitor:
    """Runs repeated scans and keeps a :class:`CandidateRegistry` current."""

    def __init__(
        self,
        probe,
        registry: Optional[CandidateRegistry] = None,
        interval: float = 10.0,
        on_change: Optional[Callable[[List[ServerCandidate]], None]] = None,
    ):
        self._probe = probe
        self.registry = registry if registry is not None else CandidateRegistry()
        self._interval = interval
        self._on_change = on_change
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def scan_once(self) -> List[ServerCandidate]:
        before = [c.address for c in self.registry.candidates]
        results = await self._probe.discover()
        self.registry.merge(results)
        after = self.registry.candidates
        if self._on_change is not None and [c.address for c in after] != before:
            try:
                self._on_change(after)
            except Exception as exc:
                logger.error("[Discovery] Candidate change callback error: %s", exc)
        return after

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("[Discovery] Candidate monitor started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        # The probe is shared; only this loop's scan participation ends here.
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[Discovery] Candidate monitor stopped")

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("[Discovery] Scan cycle error: %s", exc)
            await asyncio.sleep(self._interval)
