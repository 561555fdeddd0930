"""LAN server discovery: interface enumeration, broadcast probe, candidate aging."""

from lanlauncher.discovery.candidates import CandidateMonitor, CandidateRegistry
from lanlauncher.discovery.interfaces import list_interfaces
from lanlauncher.discovery.localhost import LocalhostProbe
from lanlauncher.discovery.probe import DiscoveryProbe, parse_reply

__all__ = [
    "CandidateMonitor",
    "CandidateRegistry",
    "DiscoveryProbe",
    "LocalhostProbe",
    "list_interfaces",
    "parse_reply",
]
