# Copyright (C) 2026 grodz
#
# This file is part of Carousel.
#
# Carousel is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Collaborator Interfaces

The voice core never touches discord.py directly. It talks to three
collaborators through the protocols below:

- Transport: joins a voice endpoint and hands back a ConnectionHandle
- ConnectionHandle: one live voice session, emits LinkStatus changes
- AudioPlayer: the single output pipeline, emits PlayerStatus changes

systems/voice_link.py and systems/loop_player.py implement them on top of
discord.py; tests/conftest.py implements them as in-memory fakes.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from loguru import logger


@dataclass(frozen=True, slots=True)
class VoiceEndpointRef:
    """Target voice channel, supplied once at startup."""
    channel_id: int
    guild_id: Optional[int] = None


class LinkStatus(Enum):
    """Transport-level status of a ConnectionHandle."""
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class PlayerStatus(Enum):
    """Status of the shared audio player."""
    IDLE = "idle"
    PLAYING = "playing"
    ERROR = "error"


class StatusEmitter:
    """Fan-out of status changes to registered listeners.

    Listeners are plain callables invoked on the event loop thread. A
    listener that raises is logged and skipped so one bad subscriber
    can't starve the others.
    """

    def __init__(self) -> None:
        self._listeners: list[Callable[..., Any]] = []

    def add_listener(self, callback: Callable[..., Any]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[..., Any]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def _emit(self, *args: Any) -> None:
        # Snapshot: listeners may unsubscribe while being notified
        for callback in list(self._listeners):
            try:
                callback(*args)
            except Exception:
                logger.opt(exception=True).error(f"status listener failed for {args[0] if args else '?'}")


class AudioPlayer(Protocol):
    """Player primitive (created once, reused across connections)."""

    status: PlayerStatus

    @property
    def attached(self) -> bool: ...

    def add_listener(self, callback: Callable[[PlayerStatus, Optional[BaseException]], Any]) -> None: ...

    def remove_listener(self, callback: Callable[..., Any]) -> None: ...

    def attach(self, handle: "ConnectionHandle") -> None: ...

    def detach(self, handle: "ConnectionHandle") -> None: ...

    def create_resource(self, source: Path) -> Any: ...

    def play(self, resource: Any) -> None: ...

    def stop(self) -> None: ...


class ConnectionHandle(Protocol):
    """A single live transport session."""

    status: LinkStatus

    def add_listener(self, callback: Callable[[LinkStatus], Any]) -> None: ...

    def remove_listener(self, callback: Callable[..., Any]) -> None: ...

    def subscribe(self, player: AudioPlayer) -> None: ...

    async def destroy(self) -> None: ...


class Transport(Protocol):
    """Joins voice endpoints. Raises TransportFault on any failure."""

    async def join(self, endpoint: VoiceEndpointRef) -> ConnectionHandle: ...
