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
Occupancy Monitor

Auto-join/leave driven by the number of humans in the target channel.

Timeline when someone arrives in an empty channel:
- 0s: connect() (without autoplay)
- +settle_delay: start() once the transport has finished negotiating

When the last human leaves: disconnect() right away.

Rapid join/leave bursts are absorbed by the connection and playback guards;
a newer transition also supersedes a settle that is still pending.
"""

from loguru import logger

from core.connection import ConnectionManager
from core.playback import PlaybackController
from core.timing import GenerationTimer, Timings


class OccupancyMonitor:
    """Turns occupancy counts into connect/start/disconnect calls."""

    def __init__(
        self,
        connection: ConnectionManager,
        playback: PlaybackController,
        timings: Timings = Timings(),
        enabled: bool = True,
    ) -> None:
        self.connection = connection
        self.playback = playback
        self.timings = timings
        self.enabled = enabled
        self.count = 0
        self._settle = GenerationTimer("settle")

    async def sync(self, count: int) -> None:
        """Adopt a freshly observed count (startup, gateway reconnect).

        Joins if the channel is occupied, leaves if it is empty while
        connected, regardless of the previously stored count.
        """
        logger.debug(f"occupancy sync: {count} listener(s)")
        self.count = max(0, count)

        if not self.enabled:
            return

        if self.count > 0:
            await self._on_occupied()
        elif self.connection.is_connected:
            await self._on_vacated()

    async def update(self, count: int) -> None:
        """Handle a recomputed occupancy count for the target channel."""
        previous, self.count = self.count, max(0, count)

        if not self.enabled:
            return

        if previous == 0 and self.count > 0:
            await self._on_occupied()
        elif previous > 0 and self.count == 0:
            await self._on_vacated()

    async def _on_occupied(self) -> None:
        if self.connection.is_connected:
            logger.debug("listener arrived, already connected")
            return

        logger.info("listener arrived, joining")
        self._settle.cancel()
        if not await self.connection.connect(play=False):
            return

        # Channel may have emptied again while the join was in flight
        if self.count == 0:
            return
        self._settle.schedule(self.timings.settle_delay, self._on_settled)

    def _on_settled(self) -> None:
        if not self.connection.is_connected:
            logger.debug("settle elapsed but no longer connected")
            return
        self.playback.start()

    async def _on_vacated(self) -> None:
        self._settle.cancel()
        if not self.connection.is_connected:
            return
        logger.info("channel empty, leaving")
        await self.connection.disconnect()
