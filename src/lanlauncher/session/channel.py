"""Session channel — the realtime connection to the launcher server.

Handles:
- Connect / disconnect / reconnect state machine
- Exponential backoff with a cooldown instead of giving up
- Game session start / end / status query
- Status-change and server-event subscriptions

State machine::

    DISCONNECTED --connect()--> CONNECTING --ok--> CONNECTED
    CONNECTED --drop--> RECONNECTING --delay--> CONNECTING
    CONNECTING --fail--> RECONNECTING        (while auto-reconnect is on)
    * --disconnect()--> DISCONNECTED         (auto-reconnect off until connect())

The channel owns the local :class:`GameSession`; other components read it
through ``current_session`` and change it only through the session calls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

import socketio

from lanlauncher.config import ChannelConfig
from lanlauncher.models import ConnectionState
from lanlauncher.session.backoff import ReconnectBackoff
from lanlauncher.session.protocol import (
    ClientEvent,
    GameSession,
    RemoteSessionStatus,
    ServerEvent,
)

logger = logging.getLogger(__name__)

AddressProvider = Callable[[], Awaitable[Optional[str]]]
ClientFactory = Callable[[], Any]
StatusCallback = Callable[[ConnectionState], None]
ServerEventCallback = Callable[[str, Any], None]

_CONNECT_ERRORS = (socketio.exceptions.SocketIOError, OSError, asyncio.TimeoutError)

T = TypeVar("T")


def default_client_factory() -> socketio.AsyncClient:
    # Reconnection is driven by the channel's own backoff, not the library's.
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class Subscribers(Generic[T]):
    """Callback list whose unsubscribe handles are safe to call any time."""

    def __init__(self, name: str):
        self._name = name
        self._callbacks: List[T] = []

    def add(self, callback: T) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def notify(self, *args: Any) -> None:
        # Snapshot: callbacks may unsubscribe themselves while being called.
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception as exc:
                logger.error(
                    "[SessionChannel] %s callback %s error: %s",
                    self._name, getattr(callback, "__name__", repr(callback)), exc,
                )

    def __len__(self) -> int:
        return len(self._callbacks)


def _same_session(a: GameSession, b: GameSession) -> bool:
    if a.id is not None and b.id is not None:
        return a.id == b.id
    return a.game_id == b.game_id and a.start_time == b.start_time


class SessionChannel:
    """Socket.IO client for game session bookkeeping."""

    def __init__(
        self,
        address_provider: AddressProvider,
        client_id: str,
        config: Optional[ChannelConfig] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._address_provider = address_provider
        self._client_id = client_id
        self._config = config or ChannelConfig()
        self._client_factory = client_factory or default_client_factory

        self._state = ConnectionState.DISCONNECTED
        self._client: Any = None
        self._auto_reconnect = True
        self._backoff = ReconnectBackoff(
            base=self._config.base_delay,
            cap=self._config.max_delay,
            max_attempts=self._config.max_attempts,
            cooldown=self._config.cooldown,
        )
        self._reconnect_task: Optional[asyncio.Task] = None
        self._open_lock = asyncio.Lock()

        self._current: Optional[GameSession] = None
        self._pending_status: Optional[asyncio.Future] = None

        self._status_listeners: Subscribers[StatusCallback] = Subscribers("status")
        self._event_listeners: Subscribers[ServerEventCallback] = Subscribers("server event")

    # ── Accessors ───────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def current_session(self) -> Optional[GameSession]:
        return self._current

    @property
    def is_session_active(self) -> bool:
        return self._current is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._backoff.attempts

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    # ── Subscriptions ───────────────────────────────────────────

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Call ``callback(state)`` on every state transition."""
        return self._status_listeners.add(callback)

    def on_server_event(self, callback: ServerEventCallback) -> Callable[[], None]:
        """Call ``callback(event_name, data)`` for broadcast session events."""
        return self._event_listeners.add(callback)

    # ── Connection lifecycle ────────────────────────────────────

    async def connect(self) -> bool:
        """Connect (or reconnect now) and re-enable auto-reconnect."""
        if self.connected:
            logger.debug("[SessionChannel] Already connected")
            return True
        self._auto_reconnect = True
        self._cancel_reconnect()
        return await self._open()

    async def disconnect(self) -> None:
        """Close the channel and stop reconnecting until ``connect()``."""
        self._auto_reconnect = False
        self._cancel_reconnect()
        self._backoff.reset()
        self._resolve_pending_status(None)

        client, self._client = self._client, None
        if client is not None:
            await self._close_client(client)
            logger.info("[SessionChannel] Disconnected")
        self._current = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _open(self) -> bool:
        async with self._open_lock:
            if self.connected:
                return True
            self._set_state(ConnectionState.CONNECTING)

            url = await self._resolve_address()
            if not url:
                logger.error("[SessionChannel] No server address available")
                self._on_connect_failed()
                return False

            if self._client is not None:
                stale, self._client = self._client, None
                await self._close_client(stale)

            client = self._client_factory()
            self._register_handlers(client)
            self._client = client
            logger.info("[SessionChannel] Connecting to %s", url)
            try:
                await client.connect(
                    url,
                    transports=["websocket"],
                    wait_timeout=self._config.connect_timeout,
                )
            except asyncio.CancelledError:
                self._client = None
                await self._close_client(client)
                raise
            except _CONNECT_ERRORS as exc:
                logger.error("[SessionChannel] Connection error: %s", exc)
                if self._client is client:
                    self._client = None
                await self._close_client(client)
                self._on_connect_failed()
                return False

            await self._handle_connected(client)
            return self.connected

    async def _resolve_address(self) -> Optional[str]:
        try:
            url = await self._address_provider()
        except Exception as exc:
            logger.error("[SessionChannel] Address lookup failed: %s", exc)
            return None
        return url.rstrip("/") if url else None

    async def _close_client(self, client: Any) -> None:
        try:
            await client.disconnect()
        except _CONNECT_ERRORS as exc:
            logger.debug("[SessionChannel] Error closing client: %s", exc)

    def _on_connect_failed(self) -> None:
        if self._auto_reconnect:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _handle_connected(self, client: Any) -> None:
        if client is not self._client or self._state is ConnectionState.CONNECTED:
            return
        self._backoff.reset()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("[SessionChannel] Connected")
        if await self._emit(ClientEvent.JOIN, self._config.room):
            logger.debug("[SessionChannel] Joined %s room", self._config.room)

    async def _handle_disconnected(self, client: Any, reason: Any = None) -> None:
        if client is not self._client:
            return
        self._client = None
        self._resolve_pending_status(None)
        logger.warning("[SessionChannel] Connection lost (%s)", reason or "transport closed")
        if self._auto_reconnect:
            self._schedule_reconnect()
        else:
            self._set_state(ConnectionState.DISCONNECTED)

    # ── Reconnect ───────────────────────────────────────────────

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _schedule_reconnect(self) -> None:
        if not self._auto_reconnect:
            return
        self._cancel_reconnect()
        delay = self._backoff.next_delay()
        if delay.cooldown:
            logger.info(
                "[SessionChannel] Max reconnection attempts reached, waiting %.0fs before resetting",
                delay.seconds,
            )
        else:
            logger.info(
                "[SessionChannel] Scheduling reconnection attempt %d/%d in %.0fms",
                delay.attempt, self._backoff.max_attempts, delay.seconds * 1000,
            )
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay.seconds))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        if not self._auto_reconnect:
            return
        logger.info(
            "[SessionChannel] Attempting to reconnect (attempt %d/%d)",
            self._backoff.attempts, self._backoff.max_attempts,
        )
        await self._open()

    # ── Session operations ──────────────────────────────────────

    async def start_session(self, game_id: int, external_app_id: Optional[str] = None) -> bool:
        """Open a session; an already open one is ended first."""
        if not self.connected:
            logger.warning("[SessionChannel] Not connected, cannot start game session")
            return False

        if self._current is not None:
            logger.info("[SessionChannel] Ending existing session before starting new one")
            await self.end_session()

        session = GameSession.open(self._client_id, game_id, external_app_id)
        self._current = session
        if not await self._emit(ClientEvent.SESSION_STARTED, session.to_payload()):
            self._current = None
            return False
        logger.info(
            "[SessionChannel] Game session started: game=%s%s",
            game_id, f" app={external_app_id}" if external_app_id else "",
        )
        return True

    async def end_session(self, record: Optional[GameSession] = None) -> bool:
        """End the local session, or ``record`` when retiring a server session."""
        target = record if record is not None else self._current
        if target is None:
            logger.warning("[SessionChannel] No current session to end")
            return False
        is_local = self._current is not None and (
            record is None or _same_session(record, self._current)
        )

        if not self.connected:
            if is_local:
                logger.warning("[SessionChannel] Not connected, clearing local session only")
                self._current = None
            else:
                logger.warning("[SessionChannel] Not connected, cannot end server session")
            return False

        ended = target.closed()
        ok = await self._emit(ClientEvent.SESSION_ENDED, ended.to_payload())
        if is_local:
            self._current = None
        if ok:
            logger.info(
                "[SessionChannel] Game session ended: game=%s duration=%ss",
                ended.game_id, ended.duration_seconds,
            )
        return ok

    async def check_session_with_server(self) -> Optional[RemoteSessionStatus]:
        """Ask the server what it believes this client is playing.

        Returns None when not connected, when no answer arrives in time, or
        when the answer cannot be parsed.
        """
        if not self.connected:
            return None

        self._resolve_pending_status(None)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_status = future
        try:
            if not await self._emit(ClientEvent.CHECK_MY_SESSION, {"clientId": self._client_id}):
                return None
            return await asyncio.wait_for(future, timeout=self._config.status_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[SessionChannel] Session status query timed out after %.1fs",
                self._config.status_timeout,
            )
            return None
        finally:
            if self._pending_status is future:
                self._pending_status = None

    def adopt_session(self, session: GameSession) -> None:
        """Take over a session the server already has for this client."""
        if self._current is not None:
            logger.warning(
                "[SessionChannel] Replacing local session (game %s) with server session (game %s)",
                self._current.game_id, session.game_id,
            )
        self._current = session

    def clear_local_session(self) -> None:
        if self._current is not None:
            logger.info("[SessionChannel] Clearing local session for game %s", self._current.game_id)
        self._current = None

    # ── Transport helpers ───────────────────────────────────────

    async def _emit(self, event: ClientEvent, data: Any) -> bool:
        client = self._client
        if client is None:
            return False
        try:
            await client.emit(event.value, data)
        except _CONNECT_ERRORS as exc:
            logger.error("[SessionChannel] Emit %s failed: %s", event.value, exc)
            return False
        return True

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.debug("[SessionChannel] %s -> %s", previous.value, state.value)
        self._status_listeners.notify(state)

    def _resolve_pending_status(self, value: Optional[RemoteSessionStatus]) -> None:
        future, self._pending_status = self._pending_status, None
        if future is not None and not future.done():
            future.set_result(value)

    # ── Server events ───────────────────────────────────────────

    def _register_handlers(self, client: Any) -> None:
        async def on_connect() -> None:
            await self._handle_connected(client)

        async def on_disconnect(*args: Any) -> None:
            await self._handle_disconnected(client, args[0] if args else None)

        async def on_connect_error(data: Any = None) -> None:
            logger.debug("[SessionChannel] connect_error: %s", data)

        client.on("connect", on_connect)
        client.on("disconnect", on_disconnect)
        client.on("connect_error", on_connect_error)
        client.on(ServerEvent.SESSION_STARTED.value, self._on_session_started)
        client.on(ServerEvent.MY_SESSION_STATUS.value, self._on_session_status)
        client.on(ServerEvent.SESSION_ERROR.value, self._on_session_error)
        for event in (
            ServerEvent.SESSION_ENDED,
            ServerEvent.SESSION_UPDATED,
            ServerEvent.ACTIVE_SESSIONS_UPDATED,
        ):
            client.on(event.value, self._make_forwarder(event))

    def _make_forwarder(self, event: ServerEvent) -> Callable[..., Awaitable[None]]:
        async def forward(data: Any = None) -> None:
            logger.debug("[SessionChannel] Received %s: %s", event.value, data)
            self._event_listeners.notify(event.value, data)

        return forward

    async def _on_session_started(self, data: Any = None) -> None:
        logger.debug("[SessionChannel] Received session_started: %s", data)
        current = self._current
        if current is not None and isinstance(data, dict) and data.get("clientId") == current.client_id:
            raw_id = data.get("id")
            if raw_id is not None:
                try:
                    current.id = int(raw_id)
                except (TypeError, ValueError):
                    logger.warning("[SessionChannel] Server sent unusable session id %r", raw_id)
        self._event_listeners.notify(ServerEvent.SESSION_STARTED.value, data)

    async def _on_session_status(self, data: Any = None) -> None:
        future = self._pending_status
        if future is None or future.done():
            logger.debug("[SessionChannel] Ignoring late session status reply")
            return
        self._pending_status = None
        try:
            status: Optional[RemoteSessionStatus] = RemoteSessionStatus.from_payload(data)
        except (TypeError, ValueError) as exc:
            logger.warning("[SessionChannel] Malformed session status %r: %s", data, exc)
            status = None
        future.set_result(status)

    async def _on_session_error(self, data: Any = None) -> None:
        logger.error("[SessionChannel] Server reported session error: %s", data)
        self._event_listeners.notify(ServerEvent.SESSION_ERROR.value, data)
