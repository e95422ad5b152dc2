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
Connection and Playback State Machines

Pure, synchronous transition tables. Each incoming event is dispatched to a
machine which updates its state and returns the commands the owning manager
must carry out. Machines never await and never touch a handle, so every
transition can be tested without an event loop.

Events that make no sense in the current state are ignored (no commands).
"""

from enum import Enum, auto

from loguru import logger


# =============================================================================
# CONNECTION
# =============================================================================

class ConnectionState(Enum):
    """
    Lifecycle of the single voice connection.

    IDLE: No handle exists
    CONNECTING: Join in flight, or transport renegotiating after a drop
    CONNECTED: Handle live and ready
    DISCONNECTED: Link dropped unexpectedly, grace window running

    A destroyed handle puts the machine straight back to IDLE.
    """
    IDLE = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    DISCONNECTED = auto()


class ConnectionEvent(Enum):
    CONNECT_REQUESTED = auto()
    CONNECT_SUCCEEDED = auto()
    CONNECT_FAILED = auto()
    DISCONNECT_REQUESTED = auto()
    LINK_CONNECTING = auto()
    LINK_READY = auto()
    LINK_DISCONNECTED = auto()
    LINK_DESTROYED = auto()
    GRACE_EXPIRED = auto()


class ConnectionCommand(Enum):
    JOIN = auto()            # Ask the transport for a new handle
    ATTACH = auto()          # Keep the new handle, watch it, subscribe the player
    ENSURE_PLAYING = auto()  # Start playback unless already playing
    START_GRACE = auto()     # Arm the reconnect grace timer
    CANCEL_GRACE = auto()    # Disarm it
    CLEAR_HANDLE = auto()    # Stop watching and forget the handle
    STOP_PLAYER = auto()     # Stop the shared player
    DESTROY = auto()         # Tear the (old) handle down
    DISCARD = auto()         # Tear down a handle nobody wants anymore
    RESUME_JOIN = auto()     # Take back a cancelled join that is still in flight


# Synchronous commands come first so the handle reference is cleared before
# DESTROY reaches its first suspension point.
_TEARDOWN = [ConnectionCommand.CANCEL_GRACE, ConnectionCommand.CLEAR_HANDLE, ConnectionCommand.DESTROY]


class ConnectionMachine:
    """State machine for ConnectionManager.

    Transitions:
        IDLE --connect--> CONNECTING --ok--> CONNECTED
        CONNECTING --fail--> IDLE
        CONNECTED --link drop--> DISCONNECTED (grace armed)
        DISCONNECTED --link connecting--> CONNECTING --ready--> CONNECTED
        DISCONNECTED --grace expired / destroyed--> IDLE (forced teardown)
        any --disconnect--> IDLE
        IDLE (join still in flight) --connect--> CONNECTING, same join resumed

    join_pending stays set from JOIN until the join resolves, even across a
    disconnect, so a transport join is never started twice.
    """

    def __init__(self) -> None:
        self.state = ConnectionState.IDLE
        # True once a handle exists for the current session
        self.has_handle = False
        # True from JOIN until CONNECT_SUCCEEDED/CONNECT_FAILED
        self.join_pending = False

    def dispatch(self, event: ConnectionEvent) -> list[ConnectionCommand]:
        previous = self.state
        commands = self._transition(event)
        if self.state is not previous:
            logger.debug(f"connection: {previous.name} -> {self.state.name} on {event.name}")
        return commands

    def _transition(self, event: ConnectionEvent) -> list[ConnectionCommand]:
        state = self.state
        E, C, S = ConnectionEvent, ConnectionCommand, ConnectionState

        if event is E.CONNECT_REQUESTED:
            if state is S.IDLE:
                self.state = S.CONNECTING
                if self.join_pending:
                    # Disconnected while joining, then asked again: reuse that join
                    return [C.RESUME_JOIN]
                self.join_pending = True
                return [C.JOIN]
            # Already connected or joining: reuse, never open a second handle
            return []

        if event is E.CONNECT_SUCCEEDED:
            self.join_pending = False
            if state is S.CONNECTING and not self.has_handle:
                self.state = S.CONNECTED
                self.has_handle = True
                return [C.ATTACH, C.ENSURE_PLAYING]
            # disconnect() won the race while the join was in flight
            return [C.DISCARD]

        if event is E.CONNECT_FAILED:
            self.join_pending = False
            if state is S.CONNECTING and not self.has_handle:
                self.state = S.IDLE
            return []

        if event is E.DISCONNECT_REQUESTED:
            if state is S.IDLE:
                return []
            had_handle = self.has_handle
            self._reset()
            if not had_handle:
                # Join still in flight; CONNECT_SUCCEEDED will discard its handle
                return []
            return [C.CANCEL_GRACE, C.CLEAR_HANDLE, C.STOP_PLAYER, C.DESTROY]

        # Everything below concerns an existing handle
        if not self.has_handle:
            return []

        if event is E.LINK_DISCONNECTED:
            if state in (S.CONNECTED, S.CONNECTING):
                self.state = S.DISCONNECTED
                return [C.START_GRACE]
            return []

        if event is E.LINK_CONNECTING:
            if state is S.DISCONNECTED:
                self.state = S.CONNECTING
                return [C.CANCEL_GRACE]
            if state is S.CONNECTED:
                self.state = S.CONNECTING
            return []

        if event is E.LINK_READY:
            if state in (S.CONNECTING, S.DISCONNECTED):
                self.state = S.CONNECTED
                # The loop may have died on the dead link (play refused)
                return [C.CANCEL_GRACE, C.ENSURE_PLAYING]
            return []

        if event in (E.LINK_DESTROYED, E.GRACE_EXPIRED):
            if event is E.GRACE_EXPIRED and state is not S.DISCONNECTED:
                return []
            self._reset()
            return list(_TEARDOWN)

        return []

    def _reset(self) -> None:
        self.state = ConnectionState.IDLE
        self.has_handle = False


# =============================================================================
# PLAYBACK
# =============================================================================

class PlaybackState(Enum):
    """
    State of the looping audio.

    STOPPED: Nothing should be playing
    PLAYING: A stream is playing (or being started)
    ERROR: Stream faulted, flat retry armed

    An idle event restarts the stream in the same dispatch, so the machine
    never rests in an idle state.
    """
    STOPPED = auto()
    PLAYING = auto()
    ERROR = auto()


class PlaybackEvent(Enum):
    START_REQUESTED = auto()
    START_FAILED = auto()
    STOP_REQUESTED = auto()
    PLAYER_PLAYING = auto()
    PLAYER_IDLE = auto()
    PLAYER_ERROR = auto()
    RETRY_DUE = auto()


class PlaybackCommand(Enum):
    PLAY = auto()            # Build a fresh resource and play it
    SCHEDULE_RETRY = auto()  # Arm the flat error retry
    CANCEL_RETRY = auto()    # Disarm it
    STOP_PLAYER = auto()     # Stop the player


class PlaybackMachine:
    """State machine for PlaybackController.

    Transitions:
        STOPPED --start--> PLAYING
        PLAYING --idle--> PLAYING  (immediate restart = the loop)
        PLAYING --error--> ERROR --retry due--> PLAYING
        any --stop--> STOPPED

    A start request while PLAYING is skipped. Moving to PLAYING as soon as
    PLAY is issued (rather than waiting for the player to confirm) keeps two
    close triggers from building two resources.
    """

    def __init__(self) -> None:
        self.state = PlaybackState.STOPPED

    def dispatch(self, event: PlaybackEvent) -> list[PlaybackCommand]:
        previous = self.state
        commands = self._transition(event)
        if self.state is not previous:
            logger.debug(f"playback: {previous.name} -> {self.state.name} on {event.name}")
        return commands

    def _transition(self, event: PlaybackEvent) -> list[PlaybackCommand]:
        state = self.state
        E, C, S = PlaybackEvent, PlaybackCommand, PlaybackState

        if event is E.START_REQUESTED:
            if state is S.PLAYING:
                return []
            commands = [C.CANCEL_RETRY] if state is S.ERROR else []
            self.state = S.PLAYING
            return commands + [C.PLAY]

        if event is E.START_FAILED:
            if state is S.PLAYING:
                self.state = S.STOPPED
            return []

        if event is E.STOP_REQUESTED:
            self.state = S.STOPPED
            return [C.CANCEL_RETRY, C.STOP_PLAYER]

        if event is E.PLAYER_PLAYING:
            if state is S.STOPPED:
                return []
            self.state = S.PLAYING
            return [C.CANCEL_RETRY] if state is S.ERROR else []

        if event is E.PLAYER_IDLE:
            # Only a stream that was meant to be playing loops; an idle after
            # stop() or after an error is expected and ignored
            if state is not S.PLAYING:
                return []
            logger.debug("playback: stream ended, looping")
            return [C.PLAY]

        if event is E.PLAYER_ERROR:
            if state is S.STOPPED:
                return []
            self.state = S.ERROR
            return [C.SCHEDULE_RETRY]

        if event is E.RETRY_DUE:
            if state is not S.ERROR:
                return []
            self.state = S.PLAYING
            return [C.PLAY]

        return []
