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
Reconnect and Retry Policy

Fixed delays (no backoff growth, no attempt cap) plus the timer used to
schedule them. Every disconnect gets its own fresh grace window and every
player error gets its own flat retry delay.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from loguru import logger


@dataclass(frozen=True, slots=True)
class Timings:
    """Delays used by the voice core, in seconds."""
    reconnect_grace: float = 5.0    # Wait for the transport to self-heal after a drop
    error_retry_delay: float = 5.0  # Wait before restarting after a player error
    settle_delay: float = 1.5       # Wait after joining before the first play


class GenerationTimer:
    """Single-slot cancellable timer keyed by a generation counter.

    Scheduling replaces whatever was pending. Cancelling bumps the
    generation, so a callback whose sleep already finished still sees it
    is stale and exits without firing.

    Usage:
        timer = GenerationTimer("playback retry")
        timer.schedule(5.0, controller.retry)
        timer.cancel()  # superseding event
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay: float, callback: Callable[[], Any]) -> int:
        """Run callback after delay, superseding any pending run. Returns its generation."""
        self.cancel()
        generation = self.generation
        self._task = asyncio.get_running_loop().create_task(self._run(generation, delay, callback))
        logger.debug(f"{self.name}: scheduled in {delay:.2f}s (gen {generation})")
        return generation

    def cancel(self) -> None:
        """Invalidate the pending run, if any."""
        self.generation += 1
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, generation: int, delay: float, callback: Callable[[], Any]) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        if generation != self.generation:
            logger.debug(f"{self.name}: stale timer (gen {generation}), skipping")
            return

        # Detach before firing so a cancel() from inside the callback
        # doesn't cancel the task that is running it
        self._task = None
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.opt(exception=True).error(f"{self.name}: callback failed")
