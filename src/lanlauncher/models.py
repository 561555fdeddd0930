"""Shared data types for the launcher core."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class NetworkInterface:
    """A local IPv4 interface and its subnet broadcast address."""

    name: str
    address: str
    netmask: str
    broadcast: str


@dataclass
class ServerCandidate:
    """A server that answered a discovery probe."""

    address: str                      # canonical base URL, e.g. http://10.0.0.5:3000
    server_name: Optional[str] = None
    protocol_version: Optional[str] = None
    miss_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "serverName": self.server_name,
            "version": self.protocol_version,
            "missCount": self.miss_count,
        }


class GameType(str, Enum):
    ARCHIVE = "archive"
    SHORTCUT = "shortcut"
    STEAM = "steam"


@dataclass
class GameRecord:
    """A catalog entry as handed to the core by the game catalog.

    ``executables`` is the list of process images that count as "this game is
    running"; ``executable`` is the older single-field form some catalog
    entries still carry.
    """

    id: int
    name: str
    type: GameType
    executables: List[str] = field(default_factory=list)
    executable: Optional[str] = None
    needs_key: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameRecord":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or f"game {data['id']}"),
            type=GameType(data.get("type", GameType.ARCHIVE.value)),
            executables=[str(e) for e in data.get("executables") or [] if e],
            executable=data.get("executable") or None,
            needs_key=bool(data.get("needsKey", False)),
        )


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ReconcileVerdict(str, Enum):
    IN_SYNC = "in_sync"
    LOCAL_ONLY = "local_only"
    SERVER_ONLY = "server_only"
    CONFLICTING = "conflicting"


@dataclass
class ReconcileReport:
    """Outcome of one server cross-check."""

    verdict: ReconcileVerdict
    action: str = "none"
    local_game_id: Optional[int] = None
    server_game_id: Optional[int] = None
