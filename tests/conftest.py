"""Test fixtures for the voice core: in-memory transport, handle and player."""

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from core.connection import ConnectionManager
from core.occupancy import OccupancyMonitor
from core.playback import PlaybackController
from core.timing import Timings
from core.transport import LinkStatus, PlayerStatus, StatusEmitter, VoiceEndpointRef


GRACE = 0.05
RETRY = 0.05
SETTLE = 0.03


class FakeHandle(StatusEmitter):
    """ConnectionHandle whose status is driven by the test."""

    def __init__(self) -> None:
        super().__init__()
        self.status = LinkStatus.READY
        self.player = None
        self.destroy_calls = 0

    @property
    def destroyed(self) -> bool:
        return self.status is LinkStatus.DESTROYED

    def set_status(self, status: LinkStatus) -> None:
        self.status = status
        self._emit(status)

    def subscribe(self, player) -> None:
        self.player = player
        player.attach(self)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self.player is not None:
            self.player.detach(self)
            self.player = None
        if self.destroyed:
            return
        await asyncio.sleep(0)
        self.set_status(LinkStatus.DESTROYED)


class FakeTransport:
    """Transport handing out FakeHandles.

    fail: exception to raise from join()
    gate: when set, join() waits for the event before returning
    """

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.join_calls = 0
        self.fail: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    @property
    def live_handles(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.destroyed]

    async def join(self, endpoint: VoiceEndpointRef) -> FakeHandle:
        self.join_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        handle = FakeHandle()
        self.handles.append(handle)
        return handle


class FakePlayer(StatusEmitter):
    """AudioPlayer recording every call; stream end/error is triggered by the test."""

    def __init__(self) -> None:
        super().__init__()
        self.status = PlayerStatus.IDLE
        self.link = None
        self.plays = 0
        self.stops = 0
        self.fail_create: Optional[Exception] = None

    @property
    def attached(self) -> bool:
        return self.link is not None

    def attach(self, link) -> None:
        self.link = link

    def detach(self, link) -> None:
        if self.link is not link:
            return
        self.link = None
        if self.status is PlayerStatus.PLAYING:
            self._set(PlayerStatus.IDLE)

    def create_resource(self, source: Path) -> object:
        if self.fail_create is not None:
            raise self.fail_create
        return object()

    def play(self, resource) -> None:
        self.plays += 1
        self._set(PlayerStatus.PLAYING)

    def stop(self) -> None:
        self.stops += 1
        self._set(PlayerStatus.IDLE)

    # Test drivers

    def finish(self) -> None:
        """Current stream reached its end."""
        self.status = PlayerStatus.IDLE
        self._emit(PlayerStatus.IDLE, None)

    def fail(self, error: Exception) -> None:
        """Current stream died."""
        self.status = PlayerStatus.ERROR
        self._emit(PlayerStatus.ERROR, error)

    def _set(self, status: PlayerStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self._emit(status, None)


@pytest.fixture
def timings() -> Timings:
    """Real delays scaled down to milliseconds."""
    return Timings(reconnect_grace=GRACE, error_retry_delay=RETRY, settle_delay=SETTLE)


@pytest.fixture
def endpoint() -> VoiceEndpointRef:
    return VoiceEndpointRef(channel_id=1234, guild_id=42)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()


@pytest.fixture
def playback(player: FakePlayer, timings: Timings) -> PlaybackController:
    return PlaybackController(player, Path("around_the_world.mp3"), timings)


@pytest.fixture
def connection(transport, endpoint, playback, timings) -> ConnectionManager:
    return ConnectionManager(transport, endpoint, playback, timings)


@pytest.fixture
def occupancy(connection, playback, timings) -> OccupancyMonitor:
    return OccupancyMonitor(connection, playback, timings)


async def settle_tasks() -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)
