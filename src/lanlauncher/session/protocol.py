"""Session channel wire format.

Transport: Socket.IO, JSON payloads, camelCase keys as the server expects.

Client → server: ``join``, ``game_session_started``, ``game_session_ended``,
``check_my_session``.
Server → client: ``session_started``, ``session_ended``, ``session_updated``,
``active_sessions_updated``, ``my_session_status``, ``session_error``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Game id used when the server has to resolve the game from an external app id.
UNRESOLVED_GAME_ID = 0


class ClientEvent(str, Enum):
    JOIN = "join"
    SESSION_STARTED = "game_session_started"
    SESSION_ENDED = "game_session_ended"
    CHECK_MY_SESSION = "check_my_session"


class ServerEvent(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    SESSION_UPDATED = "session_updated"
    ACTIVE_SESSIONS_UPDATED = "active_sessions_updated"
    MY_SESSION_STATUS = "my_session_status"
    SESSION_ERROR = "session_error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class GameSession:
    """One continuous play interval for a client and a game."""

    client_id: str
    game_id: int
    start_time: str
    is_active: bool = True
    end_time: Optional[str] = None
    duration_seconds: Optional[int] = None
    id: Optional[int] = None
    external_app_id: Optional[str] = None

    @classmethod
    def open(
        cls,
        client_id: str,
        game_id: int,
        external_app_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "GameSession":
        return cls(
            client_id=client_id,
            game_id=game_id,
            start_time=format_timestamp(now or utc_now()),
            external_app_id=external_app_id,
        )

    def closed(self, now: Optional[datetime] = None) -> "GameSession":
        """Return the ended copy of this session with its duration filled in."""
        end = now or utc_now()
        try:
            elapsed = int((end - parse_timestamp(self.start_time)).total_seconds())
        except ValueError:
            elapsed = 0
        return replace(
            self,
            is_active=False,
            end_time=format_timestamp(end),
            duration_seconds=max(0, elapsed),
        )

    @property
    def is_external(self) -> bool:
        return self.game_id == UNRESOLVED_GAME_ID

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "clientId": self.client_id,
            "gameId": self.game_id,
            "startTime": self.start_time,
            "isActive": 1 if self.is_active else 0,
        }
        if self.id is not None:
            payload["id"] = self.id
        if self.end_time is not None:
            payload["endTime"] = self.end_time
        if self.duration_seconds is not None:
            payload["durationSeconds"] = self.duration_seconds
        if self.external_app_id is not None:
            payload["steamAppId"] = self.external_app_id
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GameSession":
        raw_id = data.get("id")
        app_id = data.get("steamAppId")
        return cls(
            client_id=str(data.get("clientId", "")),
            game_id=int(data.get("gameId") or UNRESOLVED_GAME_ID),
            start_time=str(data.get("startTime") or format_timestamp(utc_now())),
            is_active=bool(data.get("isActive", 1)),
            end_time=data.get("endTime"),
            duration_seconds=data.get("durationSeconds"),
            id=int(raw_id) if raw_id is not None else None,
            external_app_id=str(app_id) if app_id else None,
        )


@dataclass
class RemoteSessionStatus:
    """The server's answer to ``check_my_session``."""

    has_session: bool
    session: Optional[GameSession] = None

    @classmethod
    def from_payload(cls, data: Any) -> "RemoteSessionStatus":
        if not isinstance(data, dict):
            return cls(has_session=False)
        raw = data.get("session")
        session = GameSession.from_payload(raw) if isinstance(raw, dict) else None
        has_session = bool(data.get("hasSession")) and session is not None
        return cls(has_session=has_session, session=session if has_session else None)
