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

"""Voice commands and membership events for Carousel."""

import discord
from discord import app_commands
from discord.ext import commands
from loguru import logger

from utils.permissions import require_permission
from utils.response import ResponseMixin


def count_listeners(channel) -> int:
    """Humans in channel (bots, including ourselves, don't count)."""
    if channel is None:
        return 0
    return sum(1 for m in channel.members if not m.bot)


class Voice(ResponseMixin, commands.Cog):
    """/join, /quit and occupancy-driven auto join/leave."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def channel_id(self) -> int:
        return self.bot.connection.endpoint.channel_id

    def target_channel(self):
        return self.bot.get_channel(self.channel_id)

    # =========================================================================
    # Commands
    # =========================================================================

    @app_commands.command(name="join", description="join the voice channel and start the loop")
    @app_commands.guild_only()
    @require_permission("join")
    async def join(self, interaction: discord.Interaction) -> None:
        # Joining can take a few seconds; avoid the 3s interaction timeout
        await interaction.response.defer(ephemeral=True)

        logger.info(f"/join by {interaction.user.display_name}")
        if await self.bot.connection.connect():
            await self.respond(interaction, "joined")
        else:
            await self.respond(interaction, "join_failed")

    @app_commands.command(name="quit", description="leave the voice channel")
    @app_commands.guild_only()
    @require_permission("quit")
    async def quit(self, interaction: discord.Interaction) -> None:
        logger.info(f"/quit by {interaction.user.display_name}")
        await interaction.response.defer(ephemeral=True)
        if await self.bot.connection.disconnect():
            await self.respond(interaction, "left")
        else:
            await self.respond(interaction, "not_connected")

    async def cog_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError
    ) -> None:
        command = interaction.command.name if interaction.command else "?"
        original = getattr(error, "original", error)
        logger.opt(exception=original).error(f"/{command} failed: {original}")
        try:
            await self.respond(interaction, "error_generic")
        except discord.HTTPException as e:
            logger.debug(f"could not report /{command} error: {e}")

    # =========================================================================
    # Events
    # =========================================================================

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        """Prime occupancy from the cache (startup and full gateway reconnects)."""
        channel = self.target_channel()
        if channel is None:
            logger.warning(f"voice channel {self.channel_id} not in cache, auto-join waits for activity")
            return
        await self.bot.occupancy.sync(count_listeners(channel))

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ) -> None:
        """Track our own link state and the number of listeners in the target channel."""
        if member.id == self.bot.user.id:
            handle = self.bot.connection.handle
            if handle is not None:
                handle.observe_voice_state(before, after)
            return

        if member.bot:
            return

        before_id = before.channel.id if before.channel else None
        after_id = after.channel.id if after.channel else None
        if before_id == after_id:
            return  # Mute/deafen toggles
        if self.channel_id not in (before_id, after_id):
            return

        channel = after.channel if after_id == self.channel_id else before.channel
        count = count_listeners(channel)
        logger.debug(f"{member.display_name} {'joined' if after_id == self.channel_id else 'left'}, {count} listener(s)")
        await self.bot.occupancy.update(count)


async def setup(bot: commands.Bot) -> None:
    """Load the Voice cog."""
    await bot.add_cog(Voice(bot))
