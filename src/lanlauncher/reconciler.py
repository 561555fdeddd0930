"""
Session reconciler — keeps the server's view of "what is this machine
playing" in line with what is actually running.

Two cadences, one loop task:

- every ``tick_interval`` (1 s): follow the Steam app id, confirm launch
  intents, end sessions for games that stopped, pick up games started
  outside the launcher, re-open the session after a reconnect;
- every ``cross_check_interval`` (60 s): ask the server for its record
  and repair disagreements.

Cross-check decisions::

    local  server   action
    -----  ------   ------------------------------------------------------
    none   none     nothing
    G      none     G still running -> start G again, else drop local
    none   H        H running here -> adopt H, else end H on the server
    G      H        G running -> end H, start G, else drop local, keep H

A tick and a cross-check never run at the same time (shared lock).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, FrozenSet, Iterable, List, Optional

from lanlauncher.config import ReconcilerConfig
from lanlauncher.models import (
    ConnectionState,
    GameRecord,
    GameType,
    ReconcileReport,
    ReconcileVerdict,
)
from lanlauncher.session.protocol import UNRESOLVED_GAME_ID, GameSession

logger = logging.getLogger(__name__)

CatalogProvider = Callable[[], Iterable[GameRecord]]
KeyReleaseHook = Callable[[GameRecord], Any]

# Game types that can be started without the launcher's help.
EXTERNALLY_LAUNCHABLE = (GameType.SHORTCUT, GameType.STEAM)


def compute_verdict(
    local: Optional[GameSession],
    server: Optional[GameSession],
) -> ReconcileVerdict:
    if local is None and server is None:
        return ReconcileVerdict.IN_SYNC
    if server is None:
        return ReconcileVerdict.LOCAL_ONLY
    if local is None:
        return ReconcileVerdict.SERVER_ONLY
    # The server resolves external app ids to its own game id.
    if local.is_external or local.game_id == server.game_id:
        return ReconcileVerdict.IN_SYNC
    return ReconcileVerdict.CONFLICTING


class SessionReconciler:
    """Control loop over the session channel and the process watchdog."""

    def __init__(
        self,
        channel,
        watchdog,
        catalog: CatalogProvider,
        config: Optional[ReconcilerConfig] = None,
        on_key_release: Optional[KeyReleaseHook] = None,
    ):
        self._channel = channel
        self._watchdog = watchdog
        self._catalog = catalog
        self._config = config or ReconcilerConfig()
        self._on_key_release = on_key_release

        self._tracked: Optional[GameRecord] = None
        self._confirmed = False
        self._external_app_id: Optional[str] = None
        self._resync_pending = False

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ── Accessors ───────────────────────────────────────────────

    @property
    def tracked_game(self) -> Optional[GameRecord]:
        return self._tracked

    @property
    def is_confirmed(self) -> bool:
        return self._tracked is not None and self._confirmed

    @property
    def external_app_id(self) -> Optional[str]:
        return self._external_app_id

    @property
    def resync_pending(self) -> bool:
        return self._resync_pending

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ───────────────────────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        self._unsubscribe = self._channel.on_status_change(self._on_channel_status)
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "[Reconciler] Started (tick=%.1fs, cross_check=%.1fs)",
            self._config.tick_interval, self._config.cross_check_interval,
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[Reconciler] Stopped")

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_cross_check = loop.time() + self._config.cross_check_interval
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("[Reconciler] Tick error: %s", exc)

            if loop.time() >= next_cross_check:
                next_cross_check = loop.time() + self._config.cross_check_interval
                try:
                    await self.cross_check()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("[Reconciler] Cross-check error: %s", exc)

            await asyncio.sleep(self._config.tick_interval)

    def _on_channel_status(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self._resync_pending = True

    # ── Launch intent / startup ─────────────────────────────────

    def track_launch(self, game: GameRecord) -> bool:
        """Register that ``game`` is being launched; its session opens once seen."""
        if self.is_confirmed:
            if self._tracked.id == game.id:
                return True
            logger.warning(
                "[Reconciler] Ignoring launch of %s while %s is running",
                game.name, self._tracked.name,
            )
            return False
        self._tracked = game
        self._confirmed = False
        logger.info("[Reconciler] Waiting for %s to start", game.name)
        return True

    async def initial_scan(self) -> Optional[GameRecord]:
        """Pick up a game that was already running before we started."""
        async with self._lock:
            app_id = await self._watchdog.current_external_app_id()
            if app_id is not None:
                logger.info("[Reconciler] External app %s already running", app_id)
                self._external_app_id = app_id
                await self._channel.start_session(UNRESOLVED_GAME_ID, app_id)
                return None

            names = await self._watchdog.list_running_process_names()
            if names is None:
                return None
            game = self._watchdog.find_running(self._catalog_games(), names)
            if game is not None:
                logger.info("[Reconciler] %s already running", game.name)
                await self._confirm(game)
            return game

    # ── Primary lifecycle ───────────────────────────────────────

    async def tick(self) -> None:
        async with self._lock:
            names = await self._watchdog.list_running_process_names()
            if names is None:
                return

            await self._follow_external_app()

            tracked = self._tracked
            if tracked is not None:
                running = self._watchdog.is_game_running(tracked, names)
                if not self._confirmed and running:
                    logger.info("[Reconciler] %s detected running", tracked.name)
                    await self._confirm(tracked)
                elif self._confirmed and not running:
                    await self._game_stopped(tracked)

            if not self._confirmed and self._external_app_id is None:
                await self._detect_external_launch(names)

            if self._resync_pending and self._channel.connected:
                self._resync_pending = False
                await self._resync()

    async def _follow_external_app(self) -> None:
        if self.is_confirmed:
            return
        app_id = await self._watchdog.current_external_app_id()
        if app_id == self._external_app_id:
            return

        previous = self._external_app_id
        if previous is not None:
            logger.info("[Reconciler] External app %s stopped", previous)
            self._external_app_id = None
            session = self._channel.current_session
            if session is not None and session.is_external:
                await self._channel.end_session()

        if app_id is not None:
            logger.info("[Reconciler] External app %s started", app_id)
            self._external_app_id = app_id
            await self._channel.start_session(UNRESOLVED_GAME_ID, app_id)

    async def _confirm(self, game: GameRecord) -> None:
        self._tracked = game
        self._confirmed = True
        # An executable-tracked game replaces any followed external app.
        self._external_app_id = None
        await self._channel.start_session(game.id)

    async def _game_stopped(self, game: GameRecord) -> None:
        logger.info("[Reconciler] %s stopped", game.name)
        session = self._channel.current_session
        if session is not None and session.game_id == game.id:
            await self._channel.end_session()
        self._tracked = None
        self._confirmed = False
        if game.needs_key:
            await self._release_key(game)

    async def _release_key(self, game: GameRecord) -> None:
        if self._on_key_release is None:
            return
        try:
            result = self._on_key_release(game)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("[Reconciler] Key release for %s failed: %s", game.name, exc)

    async def _detect_external_launch(self, names: FrozenSet[str]) -> None:
        candidates = [
            game for game in self._catalog_games()
            if game.type in EXTERNALLY_LAUNCHABLE
        ]
        game = self._watchdog.find_running(candidates, names)
        if game is None:
            return
        logger.info("[Reconciler] Detected externally launched game %s", game.name)
        await self._confirm(game)

    async def _resync(self) -> None:
        if self._channel.current_session is not None:
            return
        if self.is_confirmed:
            logger.info("[Reconciler] Re-opening session for %s after reconnect", self._tracked.name)
            await self._channel.start_session(self._tracked.id)
        elif self._external_app_id is not None:
            logger.info("[Reconciler] Re-opening session for app %s after reconnect", self._external_app_id)
            await self._channel.start_session(UNRESOLVED_GAME_ID, self._external_app_id)

    # ── Server cross-check ──────────────────────────────────────

    async def cross_check(self) -> Optional[ReconcileReport]:
        """Compare local, server and watchdog state and repair any drift."""
        async with self._lock:
            if not self._channel.connected:
                logger.debug("[Reconciler] Skipping cross-check, channel not connected")
                return None
            status = await self._channel.check_session_with_server()
            if status is None:
                logger.debug("[Reconciler] No session status from server")
                return None

            local = self._channel.current_session
            server = status.session if status.has_session else None
            verdict = compute_verdict(local, server)
            report = ReconcileReport(
                verdict=verdict,
                local_game_id=local.game_id if local else None,
                server_game_id=server.game_id if server else None,
            )
            if verdict is ReconcileVerdict.IN_SYNC:
                return report

            logger.warning(
                "[Reconciler] Session mismatch (%s): local=%s server=%s",
                verdict.value, report.local_game_id, report.server_game_id,
            )
            names = await self._watchdog.list_running_process_names()
            if names is None:
                report.action = "skipped"
                return report

            if verdict is ReconcileVerdict.LOCAL_ONLY:
                report.action = await self._repair_local_only(local, names)
            elif verdict is ReconcileVerdict.SERVER_ONLY:
                report.action = await self._repair_server_only(server, names)
            else:
                report.action = await self._repair_conflict(local, server, names)
            logger.info("[Reconciler] Cross-check action: %s", report.action)
            return report

    async def _repair_local_only(self, local: GameSession, names: FrozenSet[str]) -> str:
        if local.is_external:
            app_id = await self._watchdog.current_external_app_id()
            if app_id is not None:
                self._channel.clear_local_session()
                self._external_app_id = app_id
                await self._channel.start_session(UNRESOLVED_GAME_ID, app_id)
                return "reissued"
            self._external_app_id = None
            self._channel.clear_local_session()
            return "cleared_local"

        game = self._lookup(local.game_id)
        if game is not None and self._watchdog.is_game_running(game, names):
            self._channel.clear_local_session()
            self._tracked = game
            self._confirmed = True
            await self._channel.start_session(game.id)
            return "reissued"

        self._channel.clear_local_session()
        self._forget(local.game_id)
        return "cleared_local"

    async def _repair_server_only(self, server: GameSession, names: FrozenSet[str]) -> str:
        if server.external_app_id:
            app_id = await self._watchdog.current_external_app_id()
            if app_id is not None and app_id == server.external_app_id:
                self._external_app_id = app_id
                self._channel.adopt_session(server)
                return "adopted"

        game = self._lookup(server.game_id)
        if game is not None and self._watchdog.is_game_running(game, names):
            self._tracked = game
            self._confirmed = True
            self._channel.adopt_session(server)
            return "adopted"

        await self._channel.end_session(server)
        return "ended_server"

    async def _repair_conflict(
        self,
        local: GameSession,
        server: GameSession,
        names: FrozenSet[str],
    ) -> str:
        game = self._lookup(local.game_id)
        if game is not None and self._watchdog.is_game_running(game, names):
            await self._channel.end_session(server)
            self._channel.clear_local_session()
            await self._channel.start_session(game.id)
            return "replaced_server"

        self._channel.clear_local_session()
        self._forget(local.game_id)
        return "dropped_local"

    # ── Helpers ─────────────────────────────────────────────────

    def _catalog_games(self) -> List[GameRecord]:
        try:
            return list(self._catalog())
        except Exception as exc:
            logger.error("[Reconciler] Game catalog unavailable: %s", exc)
            return []

    def _lookup(self, game_id: int) -> Optional[GameRecord]:
        if self._tracked is not None and self._tracked.id == game_id:
            return self._tracked
        for game in self._catalog_games():
            if game.id == game_id:
                return game
        return None

    def _forget(self, game_id: int) -> None:
        if self._tracked is not None and self._tracked.id == game_id:
            self._tracked = None
            self._confirmed = False
