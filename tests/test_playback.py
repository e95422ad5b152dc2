"""Tests for PlaybackController: looping, flat error retry and the playing guard."""

import asyncio

import pytest

from conftest import RETRY, FakeHandle, settle_tasks
from core.errors import PlaybackFault
from core.states import PlaybackState


@pytest.fixture
def attached(player):
    """Player routed to a live handle."""
    handle = FakeHandle()
    handle.subscribe(player)
    return handle


class TestStart:
    """start() / ensure_playing() / stop()."""

    def test_start_without_connection_fails_quietly(self, playback, player):
        assert playback.start() is False
        assert player.plays == 0
        assert playback.state is PlaybackState.STOPPED

    def test_start_plays_once(self, playback, player, attached):
        assert playback.start() is True
        assert player.plays == 1
        assert playback.state is PlaybackState.PLAYING

    def test_start_while_playing_is_skipped(self, playback, player, attached):
        playback.start()
        assert playback.start() is True
        assert playback.ensure_playing() is True
        assert player.plays == 1

    def test_resource_failure_is_logged_not_raised(self, playback, player, attached):
        player.fail_create = PlaybackFault("ffmpeg missing")

        assert playback.start() is False
        assert playback.state is PlaybackState.STOPPED

        # Next attempt works once the fault is gone
        player.fail_create = None
        assert playback.start() is True
        assert player.plays == 1

    def test_stop(self, playback, player, attached):
        playback.start()
        playback.stop()

        assert playback.state is PlaybackState.STOPPED
        assert player.stops == 1

        # The stream ending after stop() must not restart it
        player.finish()
        assert player.plays == 1


class TestLoop:
    """Idle restarts immediately."""

    def test_idle_restarts_exactly_once(self, playback, player, attached):
        playback.start()

        player.finish()

        assert player.plays == 2
        assert playback.state is PlaybackState.PLAYING

    def test_many_loops(self, playback, player, attached):
        playback.start()
        for _ in range(5):
            player.finish()
        assert player.plays == 6

    def test_detach_stops_looping(self, playback, player, attached):
        playback.start()

        player.detach(attached)

        assert player.plays == 1
        assert playback.state is PlaybackState.STOPPED


class TestErrorRetry:
    """Errors get one flat retry after error_retry_delay."""

    @pytest.mark.asyncio
    async def test_error_retries_after_delay(self, playback, player, attached):
        playback.start()

        player.fail(RuntimeError("decoder died"))
        assert playback.state is PlaybackState.ERROR

        await asyncio.sleep(RETRY / 2)
        assert player.plays == 1

        await asyncio.sleep(RETRY * 1.5)
        assert player.plays == 2
        assert playback.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_each_error_gets_its_own_delay(self, playback, player, attached):
        playback.start()

        player.fail(RuntimeError("first"))
        await asyncio.sleep(RETRY * 1.5)
        assert player.plays == 2

        player.fail(RuntimeError("second"))
        await asyncio.sleep(RETRY / 2)
        assert player.plays == 2
        await asyncio.sleep(RETRY * 1.5)
        assert player.plays == 3

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_retry(self, playback, player, attached):
        playback.start()
        player.fail(RuntimeError("boom"))

        playback.stop()
        await asyncio.sleep(RETRY * 2)

        assert player.plays == 1
        assert playback.state is PlaybackState.STOPPED

    @pytest.mark.asyncio
    async def test_manual_start_supersedes_retry(self, playback, player, attached):
        playback.start()
        player.fail(RuntimeError("boom"))

        assert playback.start() is True
        assert player.plays == 2

        await asyncio.sleep(RETRY * 2)
        await settle_tasks()
        assert player.plays == 2

    @pytest.mark.asyncio
    async def test_retry_without_connection_gives_up(self, playback, player, attached):
        playback.start()
        player.fail(RuntimeError("boom"))
        player.detach(attached)

        await asyncio.sleep(RETRY * 2)

        assert player.plays == 1
        assert playback.state is PlaybackState.STOPPED
