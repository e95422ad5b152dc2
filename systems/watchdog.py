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
Link Watchdog

Polls a VoiceLink's voice client and reports what discord.py does not
announce itself:
- READY link whose client stopped being connected: DISCONNECTED
- DISCONNECTED/CONNECTING link whose client is connected again: READY

Exits once the link is destroyed.
"""

import asyncio

from loguru import logger

from core.transport import LinkStatus


async def link_watchdog(link, interval: float) -> None:
    """Keep link.status in step with link.voice_client.is_connected()."""
    logger.debug("link watchdog started")

    while link.status is not LinkStatus.DESTROYED:
        try:
            await asyncio.sleep(interval)

            if link.status is LinkStatus.DESTROYED:
                break

            connected = link.voice_client.is_connected()
            if link.status is LinkStatus.READY and not connected:
                link.mark(LinkStatus.DISCONNECTED)
            elif link.status is not LinkStatus.READY and connected:
                link.mark(LinkStatus.READY)

        except asyncio.CancelledError:
            logger.debug("link watchdog cancelled, shutting down")
            break
        except Exception:
            logger.exception("link watchdog error")

    logger.debug("link watchdog stopped")
