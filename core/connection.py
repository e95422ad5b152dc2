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
Connection Manager

Owns the one possible voice connection.

connect():
    Re-entrant safe. While connected the live handle is reused, while a join
    is in flight callers await that same join. Never raises: transport
    faults are logged and reported as False.

disconnect():
    Idempotent. The handle reference is cleared synchronously before the
    first await, so command, auto-leave and shutdown paths racing each other
    tear down exactly once.

Unexpected drops:
    A DISCONNECTED link arms a grace timer (Timings.reconnect_grace). If the
    transport starts reconnecting inside the window the timer is cancelled
    and nothing else happens. If the window elapses, or the link reports
    DESTROYED, the handle is destroyed and the manager goes back to IDLE.
    Every drop gets its own fresh window.
"""

import asyncio
import functools
from typing import Optional

from loguru import logger

from core.playback import PlaybackController
from core.states import ConnectionCommand, ConnectionEvent, ConnectionMachine, ConnectionState
from core.timing import GenerationTimer, Timings
from core.transport import ConnectionHandle, LinkStatus, Transport, VoiceEndpointRef


_LINK_EVENTS = {
    LinkStatus.CONNECTING: ConnectionEvent.LINK_CONNECTING,
    LinkStatus.READY: ConnectionEvent.LINK_READY,
    LinkStatus.DISCONNECTED: ConnectionEvent.LINK_DISCONNECTED,
    LinkStatus.DESTROYED: ConnectionEvent.LINK_DESTROYED,
}


class ConnectionManager:
    """Drives ConnectionMachine against a Transport."""

    def __init__(
        self,
        transport: Transport,
        endpoint: VoiceEndpointRef,
        playback: PlaybackController,
        timings: Timings = Timings(),
    ) -> None:
        self.transport = transport
        self.endpoint = endpoint
        self.playback = playback
        self.timings = timings

        self._machine = ConnectionMachine()
        self._handle: Optional[ConnectionHandle] = None
        self._listener = None
        self._join_task: Optional[asyncio.Task] = None
        # Whether the in-flight join should start playback (any waiter may raise it)
        self._join_play = False
        self._grace = GenerationTimer("reconnect grace")

        # Teardowns started from status listeners (kept to prevent GC)
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def handle(self) -> Optional[ConnectionHandle]:
        return self._handle

    @property
    def is_connected(self) -> bool:
        """True while a handle exists or a join is in flight."""
        return self._machine.state is not ConnectionState.IDLE

    # =========================================================================
    # Public API
    # =========================================================================

    async def connect(self, *, play: bool = True) -> bool:
        """Join the target channel (or reuse the live connection).

        Args:
            play: Start the clip once connected (ensure_playing)

        Returns:
            True if a connection exists when the call resolves
        """
        commands = self._machine.dispatch(ConnectionEvent.CONNECT_REQUESTED)

        if ConnectionCommand.RESUME_JOIN in commands:
            # Requests made before the disconnect were cancelled with it
            logger.debug("resuming join that was cancelled while in flight")
            self._join_play = play
            return await asyncio.shield(self._join_task)

        if ConnectionCommand.JOIN not in commands:
            if self._join_task is not None and not self._join_task.done():
                logger.debug("join already in flight, waiting for it")
                self._join_play = self._join_play or play
                return await asyncio.shield(self._join_task)
            logger.debug("already connected, reusing connection")
            if play and self._handle is not None:
                self.playback.ensure_playing()
            return self._handle is not None

        self._join_play = play
        task = asyncio.get_running_loop().create_task(self._join())
        self._join_task = task
        return await asyncio.shield(task)

    async def disconnect(self) -> bool:
        """Tear down the connection. No-op (returns False) when not connected."""
        if self._machine.state is ConnectionState.IDLE:
            logger.debug("disconnect: not connected")
            return False

        handle = self._handle
        logger.info("leaving voice channel")
        await self._execute(self._machine.dispatch(ConnectionEvent.DISCONNECT_REQUESTED), handle)
        return True

    # =========================================================================
    # Join
    # =========================================================================

    async def _join(self) -> bool:
        logger.info(f"joining voice channel {self.endpoint.channel_id}")
        try:
            handle = await self.transport.join(self.endpoint)
        except Exception as e:
            logger.error(f"voice connection failed: {e}")
            self._machine.dispatch(ConnectionEvent.CONNECT_FAILED)
            return False

        commands = self._machine.dispatch(ConnectionEvent.CONNECT_SUCCEEDED)
        if not self._join_play:
            commands = [c for c in commands if c is not ConnectionCommand.ENSURE_PLAYING]
        await self._execute(commands, handle)
        return ConnectionCommand.ATTACH in commands

    # =========================================================================
    # Link events
    # =========================================================================

    def _on_link_status(self, handle: ConnectionHandle, status: LinkStatus) -> None:
        if handle is not self._handle:
            return  # Stale handle

        if status is LinkStatus.DISCONNECTED:
            logger.warning("voice link dropped, waiting for reconnect")
        elif status is LinkStatus.CONNECTING:
            logger.info("voice link reconnecting")

        commands = self._machine.dispatch(_LINK_EVENTS[status])
        if not commands:
            return

        task = asyncio.get_running_loop().create_task(self._execute(commands, handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_grace_expired(self) -> None:
        handle = self._handle
        commands = self._machine.dispatch(ConnectionEvent.GRACE_EXPIRED)
        if commands:
            logger.error(
                f"voice link did not recover within {self.timings.reconnect_grace:g}s, tearing down"
            )
            await self._execute(commands, handle)

    # =========================================================================
    # Commands
    # =========================================================================

    async def _execute(self, commands: list[ConnectionCommand], handle: Optional[ConnectionHandle]) -> None:
        """Carry out machine commands against handle, in order."""
        C = ConnectionCommand
        for command in commands:
            try:
                if command is C.ATTACH:
                    self._attach(handle)
                elif command is C.ENSURE_PLAYING:
                    self.playback.ensure_playing()
                elif command is C.START_GRACE:
                    self._grace.schedule(self.timings.reconnect_grace, self._on_grace_expired)
                elif command is C.CANCEL_GRACE:
                    self._grace.cancel()
                elif command is C.CLEAR_HANDLE:
                    self._clear(handle)
                elif command is C.STOP_PLAYER:
                    self.playback.stop()
                elif command in (C.DESTROY, C.DISCARD):
                    if command is C.DISCARD:
                        logger.info("disconnect requested during join, dropping new connection")
                    await self._destroy(handle)
            except Exception:
                logger.opt(exception=True).error(f"connection command {command.name} failed")

    def _attach(self, handle: ConnectionHandle) -> None:
        self._handle = handle
        self._listener = functools.partial(self._on_link_status, handle)
        handle.add_listener(self._listener)
        handle.subscribe(self.playback.player)
        logger.info("connected to voice channel")

    def _clear(self, handle: Optional[ConnectionHandle]) -> None:
        if handle is not None and self._listener is not None:
            handle.remove_listener(self._listener)
        self._listener = None
        if self._handle is handle:
            self._handle = None

    async def _destroy(self, handle: Optional[ConnectionHandle]) -> None:
        if handle is None:
            return
        try:
            await handle.destroy()
        except Exception as e:
            logger.warning(f"voice teardown error (ignored): {e}")
