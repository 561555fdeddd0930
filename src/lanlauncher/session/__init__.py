"""Realtime session channel to the launcher server."""

from lanlauncher.session.backoff import ReconnectBackoff, ReconnectDelay
from lanlauncher.session.channel import SessionChannel
from lanlauncher.session.protocol import (
    UNRESOLVED_GAME_ID,
    ClientEvent,
    GameSession,
    RemoteSessionStatus,
    ServerEvent,
)

__all__ = [
    "ClientEvent",
    "GameSession",
    "ReconnectBackoff",
    "ReconnectDelay",
    "RemoteSessionStatus",
    "ServerEvent",
    "SessionChannel",
    "UNRESOLVED_GAME_ID",
]
