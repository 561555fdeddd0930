"""Same-machine server lookup for development setups."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from lanlauncher.models import ServerCandidate
from lanlauncher.server_api import ServerApi

logger = logging.getLogger(__name__)


class LocalhostProbe:
    """Check a few well-known localhost ports for a running server."""

    def __init__(
        self,
        ports: Sequence[int],
        api: Optional[ServerApi] = None,
        host: str = "127.0.0.1",
    ):
        self._ports = list(ports)
        self._api = api or ServerApi(timeout=1.0)
        self._host = host

    async def probe(self) -> List[ServerCandidate]:
        """Return a candidate for every port that passes the health check."""
        if not self._ports:
            return []
        results = await asyncio.gather(*(self._probe_port(p) for p in self._ports))
        found = [c for c in results if c is not None]
        if found:
            logger.info("[Discovery] Localhost servers: %s", [c.address for c in found])
        return found

    async def _probe_port(self, port: int) -> Optional[ServerCandidate]:
        url = f"http://{self._host}:{port}"
        if not await self._api.check_health(url):
            return None
        name = await self._api.get_server_name(url)
        return ServerCandidate(address=url, server_name=name)
