"""Tests for the session reconciler.

Coverage:
- Launch intents confirmed on first sighting, sessions ended on exit
- Key release hook for needsKey games
- Externally launched shortcut/steam games
- Steam app id follow / switch / stop, no preemption of tracked games
- Post-reconnect resync
- Startup scan
- Server cross-check decision table
- Loop start/stop
"""

from __future__ import annotations

import asyncio

import pytest

from lanlauncher.config import ReconcilerConfig, WatchdogConfig
from lanlauncher.models import (
    ConnectionState,
    GameRecord,
    GameType,
    ReconcileVerdict,
)
from lanlauncher.reconciler import SessionReconciler, compute_verdict
from lanlauncher.session.protocol import GameSession, RemoteSessionStatus
from lanlauncher.watchdog.processes import ProcessWatchdog


class FakeChannel:
    """Records session calls; mirrors SessionChannel's local-session rules."""

    def __init__(self, connected=True):
        self.connected = connected
        self.current_session = None
        self.status = None
        self.calls = []
        self._listeners = []

    def on_status_change(self, callback):
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def emit_status(self, state):
        for callback in list(self._listeners):
            callback(state)

    async def start_session(self, game_id, external_app_id=None):
        self.calls.append(("start", game_id, external_app_id))
        if not self.connected:
            return False
        if self.current_session is not None:
            await self.end_session()
        self.current_session = GameSession.open("client-1", game_id, external_app_id)
        return True

    async def end_session(self, record=None):
        target = record if record is not None else self.current_session
        if target is None:
            return False
        self.calls.append(("end", target.game_id))
        if record is None or record is self.current_session:
            self.current_session = None
        return self.connected

    async def check_session_with_server(self):
        return self.status

    def adopt_session(self, session):
        self.calls.append(("adopt", session.game_id))
        self.current_session = session

    def clear_local_session(self):
        self.calls.append(("clear",))
        self.current_session = None


class Machine:
    """Mutable process table and Steam app id behind a real ProcessWatchdog."""

    def __init__(self):
        self.processes = ["systemd", "bash"]
        self.app_id = None

    def watchdog(self):
        async def probe():
            return self.app_id

        return ProcessWatchdog(
            WatchdogConfig(detect_external_apps=False, steam_registry_path=""),
            snapshot=lambda: list(self.processes),
            external_app_probe=probe,
            platform="linux",
        )


ARCHIVE = GameRecord(3, "Quake", GameType.ARCHIVE, executables=["C:\\Games\\Quake\\quake.exe"])
SHORTCUT = GameRecord(5, "Doom", GameType.SHORTCUT, executables=["/games/doom/doom.exe"])
STEAM = GameRecord(9, "Portal", GameType.STEAM, executable="portal.exe")
KEYED = GameRecord(11, "Keyed", GameType.ARCHIVE, executables=["keyed.exe"], needs_key=True)
CATALOG = [ARCHIVE, SHORTCUT, STEAM, KEYED]


def _setup(connected=True, catalog=CATALOG, on_key_release=None, **config):
    machine = Machine()
    channel = FakeChannel(connected=connected)
    reconciler = SessionReconciler(
        channel,
        machine.watchdog(),
        lambda: list(catalog),
        ReconcilerConfig(
            tick_interval=config.get("tick_interval", 1.0),
            cross_check_interval=config.get("cross_check_interval", 60.0),
        ),
        on_key_release=on_key_release,
    )
    return machine, channel, reconciler


# ═══════════════════════════════════════════════════════════════════
# Verdicts
# ═══════════════════════════════════════════════════════════════════


class TestComputeVerdict:

    def test_table(self):
        g3 = GameSession.open("c", 3)
        g5 = GameSession.open("c", 5)
        ext = GameSession.open("c", 0, external_app_id="440")

        assert compute_verdict(None, None) is ReconcileVerdict.IN_SYNC
        assert compute_verdict(g3, None) is ReconcileVerdict.LOCAL_ONLY
        assert compute_verdict(None, g5) is ReconcileVerdict.SERVER_ONLY
        assert compute_verdict(g3, GameSession.open("c", 3)) is ReconcileVerdict.IN_SYNC
        assert compute_verdict(g3, g5) is ReconcileVerdict.CONFLICTING
        assert compute_verdict(ext, g5) is ReconcileVerdict.IN_SYNC


# ═══════════════════════════════════════════════════════════════════
# Primary lifecycle
# ═══════════════════════════════════════════════════════════════════


class TestLaunchIntent:

    @pytest.mark.asyncio
    async def test_session_starts_when_process_appears(self):
        machine, channel, reconciler = _setup()
        assert reconciler.track_launch(ARCHIVE)

        await reconciler.tick()
        assert channel.calls == []
        assert not reconciler.is_confirmed

        machine.processes.append("quake.exe")
        await reconciler.tick()

        assert channel.calls == [("start", 3, None)]
        assert reconciler.is_confirmed
        assert channel.current_session.game_id == 3

    @pytest.mark.asyncio
    async def test_session_ends_when_process_exits(self):
        machine, channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("quake.exe")
        await reconciler.tick()

        machine.processes.remove("quake.exe")
        await reconciler.tick()

        assert channel.calls[-1] == ("end", 3)
        assert channel.current_session is None
        assert reconciler.tracked_game is None

    @pytest.mark.asyncio
    async def test_still_running_is_steady(self):
        machine, channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("quake.exe")
        for _ in range(3):
            await reconciler.tick()
        assert channel.calls == [("start", 3, None)]

    @pytest.mark.asyncio
    async def test_refused_while_other_game_confirmed(self):
        machine, channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("quake.exe")
        await reconciler.tick()

        assert not reconciler.track_launch(KEYED)
        assert reconciler.track_launch(ARCHIVE)
        assert reconciler.tracked_game is ARCHIVE

    @pytest.mark.asyncio
    async def test_new_intent_replaces_pending_one(self):
        _machine, _channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        assert reconciler.track_launch(KEYED)
        assert reconciler.tracked_game is KEYED


class TestKeyRelease:

    @pytest.mark.asyncio
    async def test_async_hook_called_for_keyed_game(self):
        released = []

        async def release(game):
            released.append(game.id)

        machine, _channel, reconciler = _setup(on_key_release=release)
        reconciler.track_launch(KEYED)
        machine.processes.append("keyed.exe")
        await reconciler.tick()
        machine.processes.remove("keyed.exe")
        await reconciler.tick()

        assert released == [11]

    @pytest.mark.asyncio
    async def test_sync_hook_and_unkeyed_game(self):
        released = []
        machine, _channel, reconciler = _setup(on_key_release=lambda g: released.append(g.id))
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("quake.exe")
        await reconciler.tick()
        machine.processes.remove("quake.exe")
        await reconciler.tick()

        assert released == []

    @pytest.mark.asyncio
    async def test_hook_failure_is_contained(self):
        def release(_game):
            raise RuntimeError("key server down")

        machine, channel, reconciler = _setup(on_key_release=release)
        reconciler.track_launch(KEYED)
        machine.processes.append("keyed.exe")
        await reconciler.tick()
        machine.processes.remove("keyed.exe")
        await reconciler.tick()

        assert reconciler.tracked_game is None
        assert channel.current_session is None


class TestExternalLaunch:

    @pytest.mark.asyncio
    async def test_shortcut_game_detected(self):
        machine, channel, reconciler = _setup()
        machine.processes.append("doom.exe")

        await reconciler.tick()

        assert channel.calls == [("start", 5, None)]
        assert reconciler.tracked_game is SHORTCUT
        assert reconciler.is_confirmed

    @pytest.mark.asyncio
    async def test_steam_game_legacy_executable_detected(self):
        machine, channel, reconciler = _setup()
        machine.processes.append("portal.exe")
        await reconciler.tick()
        assert channel.calls == [("start", 9, None)]

    @pytest.mark.asyncio
    async def test_archive_game_not_picked_up_by_tick(self):
        machine, channel, reconciler = _setup()
        machine.processes.append("quake.exe")
        await reconciler.tick()
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_pending_intent_does_not_block_detection(self):
        machine, channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("doom.exe")

        await reconciler.tick()

        assert channel.calls == [("start", 5, None)]
        assert reconciler.tracked_game is SHORTCUT

    @pytest.mark.asyncio
    async def test_catalog_failure_is_contained(self):
        def broken():
            raise RuntimeError("catalog offline")

        machine = Machine()
        channel = FakeChannel()
        reconciler = SessionReconciler(channel, machine.watchdog(), broken, ReconcilerConfig(1.0, 60.0))
        machine.processes.append("doom.exe")

        await reconciler.tick()

        assert channel.calls == []


class TestExternalApp:

    @pytest.mark.asyncio
    async def test_follow_switch_and_stop(self):
        machine, channel, reconciler = _setup()

        machine.app_id = "440"
        await reconciler.tick()
        assert channel.calls == [("start", 0, "440")]
        assert reconciler.external_app_id == "440"

        await reconciler.tick()
        assert len(channel.calls) == 1

        machine.app_id = "570"
        await reconciler.tick()
        assert channel.calls[1:] == [("end", 0), ("start", 0, "570")]

        machine.app_id = None
        await reconciler.tick()
        assert channel.calls[-1] == ("end", 0)
        assert channel.current_session is None
        assert reconciler.external_app_id is None

    @pytest.mark.asyncio
    async def test_no_preemption_of_tracked_game(self):
        machine, channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("quake.exe")
        await reconciler.tick()

        machine.app_id = "440"
        await reconciler.tick()

        assert channel.calls == [("start", 3, None)]
        assert channel.current_session.game_id == 3

    @pytest.mark.asyncio
    async def test_app_picked_up_after_tracked_game_exits(self):
        machine, channel, reconciler = _setup()
        reconciler.track_launch(ARCHIVE)
        machine.processes.append("quake.exe")
        await reconciler.tick()
        machine.app_id = "440"
        machine.processes.remove("quake.exe")

        await reconciler.tick()
        await reconciler.tick()

        assert ("start", 0, "440") in channel.calls
        assert channel.current_session.external_app_id == "440"

    @pytest.mark.asyncio
    async def test_external_app_suppresses_executable_scan(self):
        machine, channel, reconciler = _setup()
        machine.app_id = "400"
        machine.processes.append("portal.exe")

        await reconciler.tick()

        assert channel.calls == [("start", 0, "400")]


class TestResync:

    @pytest.mark.asyncio
    async def test_reconnect_reopens_session(self):
        machine, channel, reconciler = _setup()
        reconciler.start()
        try:
            reconciler.track_launch(ARCHIVE)
            machine.processes.append("quake.exe")
            await reconciler.tick()

            # connection dropped: the local record went with it
            channel.current_session = None
            channel.emit_status(ConnectionState.CONNECTED)
            assert reconciler.resync_pending

            await reconciler.tick()
        finally:
            await reconciler.stop()

        assert channel.calls.count(("start", 3, None)) == 2
        assert channel.current_session.game_id == 3
        assert not reconciler.resync_pending

    @pytest.mark.asyncio
    async def test_resync_waits_for_connection(self):
        machine, channel, reconciler = _setup(connected=False)
        reconciler._on_channel_status(ConnectionState.CONNECTED)

        await reconciler.tick()

        assert reconciler.resync_pending

    @pytest.mark.asyncio
    async def test_resync_external_app(self):
        machine, channel, reconciler = _setup(connected=False)
        machine.app_id = "440"
        await reconciler.tick()
        assert channel.current_session is None

        channel.connected = True
        reconciler._on_channel_status(ConnectionState.CONNECTED)
        await reconciler.tick()

        assert channel.current_session.external_app_id == "440"


class TestInitialScan:

    @pytest.mark.asyncio
    async def test_finds_running_archive_game(self):
        machine, channel, reconciler = _setup()
        machine.processes.append("quake.exe")

        game = await reconciler.initial_scan()

        assert game is ARCHIVE
        assert reconciler.is_confirmed
        assert channel.calls == [("start", 3, None)]

    @pytest.mark.asyncio
    async def test_running_external_app_wins(self):
        machine, channel, reconciler = _setup()
        machine.app_id = "440"
        machine.processes.append("quake.exe")

        assert await reconciler.initial_scan() is None
        assert channel.calls == [("start", 0, "440")]

    @pytest.mark.asyncio
    async def test_nothing_running(self):
        _machine, channel, reconciler = _setup()
        assert await reconciler.initial_scan() is None
        assert channel.calls == []


# ═══════════════════════════════════════════════════════════════════
# Server cross-check
# ═══════════════════════════════════════════════════════════════════


def _server(game_id, external_app_id=None):
    record = GameSession.open("client-1", game_id, external_app_id)
    record.id = 100 + game_id
    return RemoteSessionStatus(has_session=True, session=record)


NO_SESSION = RemoteSessionStatus(has_session=False)


class TestCrossCheck:

    @pytest.mark.asyncio
    async def test_both_empty(self):
        _machine, channel, reconciler = _setup()
        channel.status = NO_SESSION

        report = await reconciler.cross_check()

        assert report.verdict is ReconcileVerdict.IN_SYNC
        assert report.action == "none"
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_skipped_when_disconnected(self):
        _machine, channel, reconciler = _setup(connected=False)
        channel.status = NO_SESSION
        assert await reconciler.cross_check() is None

    @pytest.mark.asyncio
    async def test_skipped_without_answer(self):
        _machine, channel, reconciler = _setup()
        assert await reconciler.cross_check() is None

    @pytest.mark.asyncio
    async def test_local_only_running_reissues_start(self):
        machine, channel, reconciler = _setup()
        channel.current_session = GameSession.open("client-1", 3)
        channel.status = NO_SESSION
        machine.processes.append("quake.exe")

        report = await reconciler.cross_check()

        assert report.verdict is ReconcileVerdict.LOCAL_ONLY
        assert report.action == "reissued"
        assert ("start", 3, None) in channel.calls
        assert channel.current_session.game_id == 3
        assert reconciler.tracked_game is ARCHIVE

    @pytest.mark.asyncio
    async def test_local_only_not_running_clears(self):
        _machine, channel, reconciler = _setup()
        channel.current_session = GameSession.open("client-1", 3)
        channel.status = NO_SESSION

        report = await reconciler.cross_check()

        assert report.action == "cleared_local"
        assert channel.current_session is None
        assert not any(call[0] == "start" for call in channel.calls)

    @pytest.mark.asyncio
    async def test_local_only_external_app_still_running(self):
        machine, channel, reconciler = _setup()
        machine.app_id = "440"
        channel.current_session = GameSession.open("client-1", 0, "440")
        channel.status = NO_SESSION

        report = await reconciler.cross_check()

        assert report.action == "reissued"
        assert channel.calls[-1] == ("start", 0, "440")

    @pytest.mark.asyncio
    async def test_server_only_not_running_ends_server_record(self):
        _machine, channel, reconciler = _setup()
        channel.status = _server(5)

        report = await reconciler.cross_check()

        assert report.verdict is ReconcileVerdict.SERVER_ONLY
        assert report.action == "ended_server"
        assert channel.calls == [("end", 5)]
        assert channel.current_session is None

    @pytest.mark.asyncio
    async def test_server_only_running_is_adopted(self):
        machine, channel, reconciler = _setup()
        machine.processes.append("doom.exe")
        channel.status = _server(5)

        report = await reconciler.cross_check()

        assert report.action == "adopted"
        assert channel.calls == [("adopt", 5)]
        assert channel.current_session.id == 105
        assert reconciler.tracked_game is SHORTCUT
        assert reconciler.is_confirmed

    @pytest.mark.asyncio
    async def test_server_only_external_app_adopted(self):
        machine, channel, reconciler = _setup()
        machine.app_id = "440"
        channel.status = _server(42, external_app_id="440")

        report = await reconciler.cross_check()

        assert report.action == "adopted"
        assert reconciler.external_app_id == "440"

    @pytest.mark.asyncio
    async def test_server_only_unknown_game_ends_record(self):
        _machine, channel, reconciler = _setup()
        channel.status = _server(77)

        report = await reconciler.cross_check()

        assert report.action == "ended_server"

    @pytest.mark.asyncio
    async def test_conflict_local_running_replaces_server(self):
        machine, channel, reconciler = _setup()
        machine.processes.append("quake.exe")
        channel.current_session = GameSession.open("client-1", 3)
        channel.status = _server(5)

        report = await reconciler.cross_check()

        assert report.verdict is ReconcileVerdict.CONFLICTING
        assert report.action == "replaced_server"
        assert channel.calls == [("end", 5), ("clear",), ("start", 3, None)]
        assert channel.current_session.game_id == 3

    @pytest.mark.asyncio
    async def test_conflict_local_not_running_drops_local(self):
        _machine, channel, reconciler = _setup()
        channel.current_session = GameSession.open("client-1", 3)
        channel.status = _server(5)

        report = await reconciler.cross_check()

        assert report.action == "dropped_local"
        assert channel.calls == [("clear",)]
        assert channel.current_session is None

    @pytest.mark.asyncio
    async def test_external_local_with_server_record_in_sync(self):
        _machine, channel, reconciler = _setup()
        channel.current_session = GameSession.open("client-1", 0, "440")
        channel.status = _server(42, external_app_id="440")

        report = await reconciler.cross_check()

        assert report.verdict is ReconcileVerdict.IN_SYNC
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_report_carries_game_ids(self):
        _machine, channel, reconciler = _setup()
        channel.current_session = GameSession.open("client-1", 3)
        channel.status = _server(5)

        report = await reconciler.cross_check()

        assert (report.local_game_id, report.server_game_id) == (3, 5)


# ═══════════════════════════════════════════════════════════════════
# Loop
# ═══════════════════════════════════════════════════════════════════


class TestLoop:

    @pytest.mark.asyncio
    async def test_loop_ticks_and_cross_checks(self):
        machine, channel, reconciler = _setup(tick_interval=0.01, cross_check_interval=0.03)
        channel.status = NO_SESSION
        checks = []
        original = channel.check_session_with_server

        async def counting():
            checks.append(1)
            return await original()

        channel.check_session_with_server = counting
        machine.processes.append("doom.exe")

        reconciler.start()
        reconciler.start()
        await asyncio.sleep(0.15)
        await reconciler.stop()

        assert not reconciler.running
        assert channel.calls[0] == ("start", 5, None)
        assert len(checks) >= 1
        assert channel._listeners == []

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        _machine, _channel, reconciler = _setup()
        await reconciler.stop()
        assert not reconciler.running
