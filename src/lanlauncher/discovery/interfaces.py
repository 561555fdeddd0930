"""Local IPv4 interface enumeration for broadcast discovery."""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Dict, List, Optional

import psutil

from lanlauncher.models import NetworkInterface

logger = logging.getLogger(__name__)

# Adapters that never lead to a LAN game server.
VIRTUAL_ADAPTER_PATTERNS = [
    r"^lo\d*$",
    r"loopback",
    r"^docker",
    r"^veth",
    r"^br-",
    r"^virbr",
    r"^vmnet",
    r"vethernet",
    r"virtualbox",
    r"vmware",
    r"hyper-v",
    r"^tun\d*",
    r"^tap\d*",
    r"^utun\d*",
    r"^zt",
    r"^tailscale",
    r"^wg\d*",
]

_VIRTUAL_RE = re.compile("|".join(VIRTUAL_ADAPTER_PATTERNS), re.IGNORECASE)

LOOPBACK_FALLBACK = NetworkInterface(
    name="lo",
    address="127.0.0.1",
    netmask="255.0.0.0",
    broadcast="127.255.255.255",
)


def is_virtual_adapter(name: str) -> bool:
    return bool(_VIRTUAL_RE.search(name))


def broadcast_address(address: str, netmask: str) -> str:
    """Compute the directed broadcast address of ``address``/``netmask``."""
    network = ipaddress.IPv4Network(f"{address}/{netmask}", strict=False)
    return str(network.broadcast_address)


def list_interfaces(
    addrs: Optional[Dict[str, list]] = None,
    stats: Optional[Dict[str, object]] = None,
) -> List[NetworkInterface]:
    """List usable interfaces, falling back to loopback when none remain.

    ``addrs``/``stats`` default to ``psutil.net_if_addrs()`` and
    ``psutil.net_if_stats()``; tests pass their own tables.
    """
    if addrs is None:
        try:
            addrs = psutil.net_if_addrs()
        except (OSError, psutil.Error) as exc:
            logger.warning("[Discovery] Interface enumeration failed: %s", exc)
            addrs = {}
    if stats is None:
        try:
            stats = psutil.net_if_stats()
        except (OSError, psutil.Error) as exc:
            logger.debug("[Discovery] Interface stats unavailable: %s", exc)
            stats = {}

    interfaces: List[NetworkInterface] = []
    for name, entries in addrs.items():
        if is_virtual_adapter(name):
            logger.debug("[Discovery] Skipping virtual adapter %s", name)
            continue
        stat = stats.get(name)
        if stat is not None and not getattr(stat, "isup", True):
            logger.debug("[Discovery] Skipping interface %s (down)", name)
            continue
        for entry in entries:
            if entry.family != socket.AF_INET or not entry.address or not entry.netmask:
                continue
            if ipaddress.IPv4Address(entry.address).is_loopback:
                continue
            try:
                bcast = broadcast_address(entry.address, entry.netmask)
            except ValueError as exc:
                logger.warning("[Discovery] Bad address on %s: %s", name, exc)
                continue
            interfaces.append(NetworkInterface(name, entry.address, entry.netmask, bcast))

    if not interfaces:
        logger.info("[Discovery] No usable interfaces, using loopback only")
        return [LOOPBACK_FALLBACK]
    return interfaces
