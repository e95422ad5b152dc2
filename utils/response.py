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
Interaction replies for the voice cogs.

Every user-facing reply is a messages.yaml key. A key with enabled: false
still acknowledges the interaction (so Discord doesn't report "interaction
failed") but leaves nothing visible behind.
"""

import asyncio
from typing import Optional

import discord
from loguru import logger

# Delayed deletes of followup replies (held so they aren't garbage collected)
_pending_deletes: set[asyncio.Task] = set()


async def _delete_later(interaction: discord.Interaction, delay: float) -> None:
    try:
        await asyncio.sleep(delay)
        await interaction.delete_original_response()
    except asyncio.CancelledError:
        pass  # Shutdown
    except discord.HTTPException as e:
        logger.debug(f"reply already gone: {e}")


class ResponseMixin:
    """Adds respond() to a cog. Expects self.bot.config_manager."""

    def msg(self, key: str, **kwargs) -> str:
        return self.bot.config_manager.msg(key, **kwargs)

    def _reply_lifetime(self) -> Optional[float]:
        seconds = self.bot.config_manager.get("ui", {}).get("brief_auto_delete", 10)
        return seconds if seconds > 0 else None

    async def respond(self, interaction: discord.Interaction, key: str, **kwargs) -> None:
        """Reply with messages.yaml[key] as an ephemeral message.

        Works both before and after the interaction was deferred. Replies
        vanish after ui.brief_auto_delete seconds (0 keeps them).
        """
        if not self.bot.config_manager.is_enabled(key):
            await self._acknowledge_silently(interaction)
            return

        text = self.msg(key, **kwargs)
        lifetime = self._reply_lifetime()

        if not interaction.response.is_done():
            await interaction.response.send_message(text, ephemeral=True, delete_after=lifetime)
            return

        # Deferred: followups have no delete_after
        await interaction.followup.send(text, ephemeral=True)
        if lifetime:
            task = asyncio.create_task(_delete_later(interaction, lifetime))
            _pending_deletes.add(task)
            task.add_done_callback(_pending_deletes.discard)

    async def _acknowledge_silently(self, interaction: discord.Interaction) -> None:
        if not interaction.response.is_done():
            await interaction.response.defer(ephemeral=True)
        try:
            await interaction.delete_original_response()
        except discord.NotFound:
            pass
