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
Playback Controller

Owns the looping clip on the shared AudioPlayer:
- start()/ensure_playing(): play the clip unless already playing
- player idle: restart immediately (this is the loop)
- player error: one flat retry after Timings.error_retry_delay
- stop(): stop and cancel any pending retry

Faults are logged here and reported as a False return; nothing escapes
into the event loop.
"""

from pathlib import Path
from typing import Optional

from loguru import logger

from core.states import PlaybackCommand, PlaybackEvent, PlaybackMachine, PlaybackState
from core.timing import GenerationTimer, Timings
from core.transport import AudioPlayer, PlayerStatus


_PLAYER_EVENTS = {
    PlayerStatus.PLAYING: PlaybackEvent.PLAYER_PLAYING,
    PlayerStatus.IDLE: PlaybackEvent.PLAYER_IDLE,
    PlayerStatus.ERROR: PlaybackEvent.PLAYER_ERROR,
}


class PlaybackController:
    """Drives PlaybackMachine against a real (or fake) AudioPlayer."""

    def __init__(self, player: AudioPlayer, source: Path, timings: Timings = Timings()) -> None:
        self.player = player
        self.source = source
        self.timings = timings
        self._machine = PlaybackMachine()
        self._retry = GenerationTimer("playback retry")
        self.player.add_listener(self._on_player_status)

    @property
    def state(self) -> PlaybackState:
        return self._machine.state

    @property
    def is_playing(self) -> bool:
        return self._machine.state is PlaybackState.PLAYING

    def start(self) -> bool:
        """Play the clip. Skipped (returns True) when already playing.

        Returns:
            False if playback could not be started
        """
        if self.is_playing:
            logger.debug("already playing, start skipped")
            return True
        return self._execute(self._machine.dispatch(PlaybackEvent.START_REQUESTED))

    def ensure_playing(self) -> bool:
        """Entry point for the connection layer after a successful join."""
        return self.start()

    def stop(self) -> None:
        """Stop playback and cancel a pending error retry."""
        self._execute(self._machine.dispatch(PlaybackEvent.STOP_REQUESTED))

    # =========================================================================
    # Player events
    # =========================================================================

    def _on_player_status(self, status: PlayerStatus, error: Optional[BaseException] = None) -> None:
        if status is PlayerStatus.ERROR:
            logger.error(f"audio player error: {error}")
        elif status is PlayerStatus.PLAYING:
            logger.info("clip playing")

        event = _PLAYER_EVENTS.get(status)
        if event is not None:
            self._execute(self._machine.dispatch(event))

    def _on_retry_due(self) -> None:
        logger.info("retrying playback after error")
        self._execute(self._machine.dispatch(PlaybackEvent.RETRY_DUE))

    # =========================================================================
    # Commands
    # =========================================================================

    def _execute(self, commands: list[PlaybackCommand]) -> bool:
        ok = True
        for command in commands:
            if command is PlaybackCommand.PLAY:
                ok = self._play()
            elif command is PlaybackCommand.SCHEDULE_RETRY:
                delay = self.timings.error_retry_delay
                logger.warning(f"playback faulted, retrying in {delay:g}s")
                self._retry.schedule(delay, self._on_retry_due)
            elif command is PlaybackCommand.CANCEL_RETRY:
                self._retry.cancel()
            elif command is PlaybackCommand.STOP_PLAYER:
                try:
                    self.player.stop()
                except Exception:
                    logger.opt(exception=True).warning("player stop failed")
        return ok

    def _play(self) -> bool:
        # Only play while a live connection holds the player
        if not self.player.attached:
            logger.debug("no voice connection attached, playback not started")
            self._machine.dispatch(PlaybackEvent.START_FAILED)
            return False

        try:
            resource = self.player.create_resource(self.source)
            self.player.play(resource)
        except Exception as e:
            logger.error(f"failed to start playback: {e}")
            self._machine.dispatch(PlaybackEvent.START_FAILED)
            return False

        logger.debug(f"streaming {self.source.name}")
        return True
