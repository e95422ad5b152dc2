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
Loop Player - discord.py audio output

The single PlayerHandle for the process. Created once at startup and
re-attached to every new VoiceLink.

Status events:
- PLAYING: emitted as soon as voice_client.play() accepts a stream
- IDLE: stream finished (or output detached)
- ERROR: stream finished with an error from the audio thread
"""

import asyncio
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from time import monotonic as _now
from typing import Optional

import discord
from loguru import logger

from core.errors import PlaybackFault
from core.transport import PlayerStatus, StatusEmitter


_SESSION_IDS = count(1)

FFMPEG_BEFORE_OPTIONS = "-nostdin"
FFMPEG_OPTIONS = "-vn"


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes the after-callback to a specific play() call.

    Callbacks from a session that was cancelled (stop/detach) or superseded
    by a newer play() exit without emitting anything.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class LoopPlayer(StatusEmitter):
    """AudioPlayer backed by a discord.py VoiceClient."""

    def __init__(self, volume: float = 0.5) -> None:
        super().__init__()
        self.volume = volume
        self.status = PlayerStatus.IDLE
        self._link = None  # VoiceLink currently holding us
        self._session: Optional[PlaybackSession] = None

    @property
    def attached(self) -> bool:
        return self._link is not None

    # =========================================================================
    # Subscription
    # =========================================================================

    def attach(self, link) -> None:
        """Route output to link's voice client (replaces any previous link)."""
        if self._link is not None and self._link is not link:
            self.detach(self._link)
        self._link = link
        logger.debug("player attached to voice link")

    def detach(self, link) -> None:
        """Drop link if it is the current output. Emits IDLE if a stream was live."""
        if self._link is not link:
            return
        self._cancel_session()
        self._link = None
        logger.debug("player detached from voice link")
        if self.status is PlayerStatus.PLAYING:
            self._set_status(PlayerStatus.IDLE)

    # =========================================================================
    # Playback
    # =========================================================================

    def create_resource(self, source: Path) -> discord.AudioSource:
        """Build a volume-controlled FFmpeg stream for source."""
        if not source.is_file():
            raise PlaybackFault(f"audio file not found: {source}")
        try:
            audio = discord.FFmpegPCMAudio(
                str(source),
                before_options=FFMPEG_BEFORE_OPTIONS,
                options=FFMPEG_OPTIONS,
            )
        except discord.ClientException as e:
            # Raised when the ffmpeg executable can't be found
            raise PlaybackFault(f"cannot open {source.name}: {e}") from e
        return discord.PCMVolumeTransformer(audio, volume=self.volume)

    def play(self, resource: discord.AudioSource) -> None:
        if self._link is None:
            resource.cleanup()
            raise PlaybackFault("not attached to a voice connection")

        voice_client = self._link.voice_client
        loop = asyncio.get_running_loop()

        self._cancel_session()
        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()  # Its callback belongs to the cancelled session
        session = PlaybackSession()
        self._session = session

        def after_stream(error: Optional[Exception]) -> None:
            # Runs on discord.py's audio thread: hop back onto the loop
            loop.call_soon_threadsafe(self._on_stream_end, session, error)

        try:
            voice_client.play(resource, after=after_stream)
        except (discord.ClientException, discord.opus.OpusNotLoaded) as e:
            session.cancel()
            self._session = None
            resource.cleanup()
            raise PlaybackFault(f"voice client refused stream: {e}") from e

        self._set_status(PlayerStatus.PLAYING)

    def stop(self) -> None:
        self._cancel_session()
        if self._link is not None:
            voice_client = self._link.voice_client
            try:
                if voice_client.is_playing() or voice_client.is_paused():
                    voice_client.stop()
            except (AttributeError, RuntimeError) as e:
                logger.debug(f"voice client stop failed: {e}")
        self._set_status(PlayerStatus.IDLE)

    # =========================================================================
    # Internals
    # =========================================================================

    def _on_stream_end(self, session: PlaybackSession, error: Optional[Exception]) -> None:
        if session.cancelled or session is not self._session:
            logger.debug(f"ignoring callback from superseded session #{session.id}")
            return

        self._session = None
        elapsed = _now() - session.started_at
        if error:
            logger.debug(f"session #{session.id} failed after {elapsed:.1f}s")
            self.status = PlayerStatus.ERROR
            self._emit(PlayerStatus.ERROR, error)
        else:
            logger.debug(f"session #{session.id} finished after {elapsed:.1f}s")
            self.status = PlayerStatus.IDLE
            self._emit(PlayerStatus.IDLE, None)

    def _cancel_session(self) -> None:
        if self._session is not None:
            self._session.cancel()
        self._session = None

    def _set_status(self, status: PlayerStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self._emit(status, None)
