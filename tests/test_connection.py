"""Tests for ConnectionManager: reuse, idempotent teardown and the reconnect grace."""

import asyncio

import pytest

from conftest import GRACE, settle_tasks
from core.errors import PlaybackFault, TransportFault
from core.states import ConnectionState, PlaybackState
from core.transport import LinkStatus


class TestConnect:
    """connect() joins once and reuses the live handle."""

    @pytest.mark.asyncio
    async def test_connect_joins_and_plays(self, connection, transport, player, playback):
        assert await connection.connect() is True

        assert transport.join_calls == 1
        assert connection.state is ConnectionState.CONNECTED
        assert connection.handle is transport.handles[0]
        assert player.link is transport.handles[0]
        assert player.plays == 1
        assert playback.is_playing

    @pytest.mark.asyncio
    async def test_connect_without_play(self, connection, player):
        assert await connection.connect(play=False) is True
        assert player.attached
        assert player.plays == 0

    @pytest.mark.asyncio
    async def test_connect_while_connected_reuses_handle(self, connection, transport, player):
        await connection.connect()
        assert await connection.connect() is True

        assert transport.join_calls == 1
        assert len(transport.live_handles) == 1
        assert player.plays == 1

    @pytest.mark.asyncio
    async def test_reuse_restarts_stopped_playback(self, connection, player, playback):
        await connection.connect(play=False)
        await connection.connect()
        assert player.plays == 1
        assert playback.is_playing

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_join(self, connection, transport, player):
        transport.gate = asyncio.Event()

        first = asyncio.create_task(connection.connect())
        second = asyncio.create_task(connection.connect())
        await settle_tasks()
        transport.gate.set()

        assert await asyncio.gather(first, second) == [True, True]
        assert transport.join_calls == 1
        assert len(transport.live_handles) == 1
        assert player.plays == 1

    @pytest.mark.asyncio
    async def test_join_waiter_asking_to_play_wins(self, connection, transport, player, playback):
        transport.gate = asyncio.Event()

        quiet = asyncio.create_task(connection.connect(play=False))
        await settle_tasks()
        loud = asyncio.create_task(connection.connect())
        await settle_tasks()
        transport.gate.set()

        assert await asyncio.gather(quiet, loud) == [True, True]
        assert transport.join_calls == 1
        assert player.plays == 1
        assert playback.is_playing

    @pytest.mark.asyncio
    async def test_transport_fault_returns_false(self, connection, transport, player):
        transport.fail = TransportFault("missing connect permission")

        assert await connection.connect() is False
        assert connection.state is ConnectionState.IDLE
        assert connection.handle is None
        assert player.plays == 0

        # Failure leaves the manager usable
        transport.fail = None
        assert await connection.connect() is True
        assert transport.join_calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, connection, transport):
        transport.fail = RuntimeError("region unavailable")
        assert await connection.connect() is False
        assert connection.state is ConnectionState.IDLE


class TestDisconnect:
    """disconnect() is idempotent and safe from concurrent callers."""

    @pytest.mark.asyncio
    async def test_disconnect_tears_down(self, connection, transport, player, playback):
        await connection.connect()
        handle = connection.handle

        assert await connection.disconnect() is True

        assert handle.destroy_calls == 1
        assert handle.destroyed
        assert connection.handle is None
        assert connection.state is ConnectionState.IDLE
        assert player.stops == 1
        assert not player.attached
        assert not playback.is_playing

    @pytest.mark.asyncio
    async def test_disconnect_when_idle_is_noop(self, connection):
        assert await connection.disconnect() is False

    @pytest.mark.asyncio
    async def test_second_disconnect_is_noop(self, connection):
        await connection.connect()
        handle = connection.handle

        assert await connection.disconnect() is True
        assert await connection.disconnect() is False
        assert handle.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_disconnects_destroy_once(self, connection):
        await connection.connect()
        handle = connection.handle

        results = await asyncio.gather(
            connection.disconnect(),
            connection.disconnect(),
            connection.disconnect(),
        )

        assert sorted(results) == [False, False, True]
        assert handle.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_disconnect_during_join_discards_new_handle(self, connection, transport, player):
        transport.gate = asyncio.Event()

        joining = asyncio.create_task(connection.connect())
        await settle_tasks()
        assert connection.state is ConnectionState.CONNECTING

        assert await connection.disconnect() is True
        transport.gate.set()

        assert await joining is False
        assert transport.handles[0].destroyed
        assert connection.handle is None
        assert connection.state is ConnectionState.IDLE
        assert player.plays == 0

    @pytest.mark.asyncio
    async def test_connect_after_disconnect_during_join_resumes_it(self, connection, transport, player):
        transport.gate = asyncio.Event()

        first = asyncio.create_task(connection.connect())
        await settle_tasks()
        assert await connection.disconnect() is True

        second = asyncio.create_task(connection.connect())
        await settle_tasks()
        assert transport.join_calls == 1
        assert connection.state is ConnectionState.CONNECTING

        transport.gate.set()
        assert await asyncio.gather(first, second) == [True, True]

        assert transport.join_calls == 1
        assert len(transport.live_handles) == 1
        assert connection.handle is transport.handles[0]
        assert connection.state is ConnectionState.CONNECTED
        assert player.plays == 1

    @pytest.mark.asyncio
    async def test_resumed_join_failure_allows_fresh_join(self, connection, transport):
        transport.gate = asyncio.Event()
        transport.fail = TransportFault("voice server unreachable")

        first = asyncio.create_task(connection.connect())
        await settle_tasks()
        await connection.disconnect()
        second = asyncio.create_task(connection.connect())
        await settle_tasks()
        transport.gate.set()

        assert await asyncio.gather(first, second) == [False, False]
        assert connection.state is ConnectionState.IDLE

        transport.fail = None
        assert await connection.connect() is True
        assert transport.join_calls == 2

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect(self, connection, transport):
        await connection.connect()
        await connection.disconnect()
        await connection.connect()

        assert transport.join_calls == 2
        assert len(transport.live_handles) == 1
        assert connection.handle is transport.handles[1]


class TestReconnectGrace:
    """Unexpected drops get one fresh grace window each."""

    @pytest.mark.asyncio
    async def test_drop_without_recovery_destroys_once(self, connection, playback):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DISCONNECTED)
        await settle_tasks()
        assert connection.state is ConnectionState.DISCONNECTED

        await asyncio.sleep(GRACE / 2)
        assert handle.destroy_calls == 0

        await asyncio.sleep(GRACE * 1.5)
        await settle_tasks()
        assert handle.destroy_calls == 1
        assert connection.state is ConnectionState.IDLE
        assert connection.handle is None
        assert not playback.is_playing

    @pytest.mark.asyncio
    async def test_reconnecting_inside_grace_keeps_handle(self, connection):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DISCONNECTED)
        await settle_tasks()
        handle.set_status(LinkStatus.CONNECTING)
        await asyncio.sleep(GRACE * 2)

        assert handle.destroy_calls == 0
        assert connection.state is ConnectionState.CONNECTING

        handle.set_status(LinkStatus.READY)
        await settle_tasks()
        assert connection.state is ConnectionState.CONNECTED
        assert connection.handle is handle

    @pytest.mark.asyncio
    async def test_ready_inside_grace_keeps_handle(self, connection):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DISCONNECTED)
        await settle_tasks()
        handle.set_status(LinkStatus.READY)
        await asyncio.sleep(GRACE * 2)

        assert handle.destroy_calls == 0
        assert connection.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_each_drop_gets_fresh_window(self, connection):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DISCONNECTED)
        await asyncio.sleep(GRACE * 0.6)
        handle.set_status(LinkStatus.CONNECTING)
        handle.set_status(LinkStatus.READY)
        handle.set_status(LinkStatus.DISCONNECTED)
        await asyncio.sleep(GRACE * 0.6)

        # 1.2 grace since the first drop, 0.6 since the second
        assert handle.destroy_calls == 0

        await asyncio.sleep(GRACE)
        await settle_tasks()
        assert handle.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_destroyed_link_tears_down_immediately(self, connection, player):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DESTROYED)
        await settle_tasks()

        assert connection.state is ConnectionState.IDLE
        assert connection.handle is None
        assert handle.destroy_calls == 1
        assert not player.attached

    @pytest.mark.asyncio
    async def test_connect_after_forced_teardown_opens_new_handle(self, connection, transport):
        await connection.connect()
        connection.handle.set_status(LinkStatus.DISCONNECTED)
        await asyncio.sleep(GRACE * 2)
        await settle_tasks()

        assert await connection.connect() is True
        assert transport.join_calls == 2
        assert len(transport.live_handles) == 1

    @pytest.mark.asyncio
    async def test_events_from_old_handle_are_ignored(self, connection, transport):
        await connection.connect()
        old = connection.handle
        await connection.disconnect()
        await connection.connect()

        old.set_status(LinkStatus.DISCONNECTED)
        await asyncio.sleep(GRACE * 2)

        assert connection.state is ConnectionState.CONNECTED
        assert transport.handles[1].destroy_calls == 0

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_grace(self, connection):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DISCONNECTED)
        await settle_tasks()
        await connection.disconnect()
        await asyncio.sleep(GRACE * 2)

        assert handle.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_recovery_restarts_loop_that_died_during_drop(self, connection, player, playback):
        await connection.connect()
        handle = connection.handle

        handle.set_status(LinkStatus.DISCONNECTED)
        await settle_tasks()

        # The clip ends while the link is down and the restart is refused
        player.fail_create = PlaybackFault("stream refused")
        player.finish()
        assert playback.state is PlaybackState.STOPPED
        assert player.plays == 1

        player.fail_create = None
        handle.set_status(LinkStatus.READY)
        await settle_tasks()

        assert connection.state is ConnectionState.CONNECTED
        assert player.plays == 2
        assert playback.is_playing
