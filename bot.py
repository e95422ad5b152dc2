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
Carousel Loop Bot
========================================================
VERSION: 1.0.0
========================================================

Sits in one voice channel and loops a single clip while anyone is
listening. Built on discord.py.
"""

import asyncio
import os
import signal
import sys

import discord
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from core.connection import ConnectionManager
from core.errors import ConfigurationFault
from core.occupancy import OccupancyMonitor
from core.playback import PlaybackController
from systems.loop_player import LoopPlayer
from systems.voice_link import DiscordTransport
from utils.config import ConfigManager, default_config_path, validate_configuration
from utils.log import custom_exception_handler, setup_logging
from utils.permissions import PermissionManager


VERSION = "1.0.0"

EXTENSIONS = (
    "cogs.voice",
    "cogs.triggers",
)


class CarouselBot(commands.Bot):
    """Bot owning the single player, playback loop and voice connection."""

    def __init__(self, config_manager: ConfigManager, permission_manager: PermissionManager) -> None:
        intents = discord.Intents.default()
        intents.message_content = True  # Text triggers
        intents.voice_states = True
        intents.members = True  # Occupancy counts need the member cache

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
        )

        self.config_manager = config_manager
        self.permission_manager = permission_manager

        timings = config_manager.timings()
        timing = config_manager.get("timing")

        self.player = LoopPlayer(volume=config_manager.volume)
        self.playback = PlaybackController(self.player, config_manager.audio_path(), timings)
        self.transport = DiscordTransport(
            self,
            connect_timeout=timing["connect_timeout"],
            monitor_interval=timing["link_check_interval"],
        )
        self.connection = ConnectionManager(self.transport, config_manager.endpoint(), self.playback, timings)
        self.occupancy = OccupancyMonitor(
            self.connection,
            self.playback,
            timings,
            enabled=config_manager.get("auto_join"),
        )

        self._is_shutting_down = False
        self._shutdown_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        """Runs once before login: loop handler, cogs, command sync."""
        asyncio.get_running_loop().set_exception_handler(custom_exception_handler)

        for extension in EXTENSIONS:
            await self.load_extension(extension)
            logger.debug(f"loaded {extension}")

        # Guild sync is instant; global sync can take up to an hour
        guild_id = os.getenv("GUILD_ID")
        try:
            if guild_id:
                guild = discord.Object(id=int(guild_id))
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
            else:
                synced = await self.tree.sync()
            logger.info(f"synced {len(synced)} command(s)")
        except discord.HTTPException as e:
            logger.error(f"command sync failed: {e}")

    async def on_ready(self) -> None:
        logger.log("NOTICE", f"Carousel v{VERSION} - Copyright (C) 2026 grodz")
        logger.info("Licensed under GPL 3.0 - See LICENSE.md for details")
        logger.log("NOTICE", f"connected as {self.user}")
        logger.info("Press Ctrl+C or send SIGTERM to shutdown")

    async def shutdown(self) -> None:
        """Leave voice, then close the gateway. Safe to call more than once."""
        if self._is_shutting_down:
            return
        self._is_shutting_down = True

        logger.info("initiating graceful shutdown")
        try:
            await self.connection.disconnect()
        except Exception:
            logger.opt(exception=True).error("error leaving voice during shutdown")

        logger.info("closing bot connection")
        await self.close()
        logger.info("shutdown complete")

    def handle_shutdown_signal(self, signum: int) -> None:
        """SIGINT (Ctrl+C) / SIGTERM (systemd stop) -> shutdown() on the loop."""
        logger.info(f"received {signal.Signals(signum).name}, shutting down")
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown())


def install_signal_handlers(bot: CarouselBot) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.handle_shutdown_signal, sig)
        except NotImplementedError:
            # Windows: no loop signal support, hop over from the signal handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(bot.handle_shutdown_signal, signum))


async def main() -> int:
    load_dotenv()

    # Provisional level until settings.yaml is read
    setup_logging(os.getenv("LOG_LEVEL", "verbose").lower())

    config_path = default_config_path()
    config_manager = ConfigManager(config_path)
    await config_manager.load()
    setup_logging(config_manager.get("logging")["level"])

    try:
        validate_configuration(config_manager)
    except ConfigurationFault as fault:
        for error in fault.errors:
            logger.error(error)
        return 1

    permission_manager = PermissionManager(config_path)
    await permission_manager.load()

    bot = CarouselBot(config_manager, permission_manager)
    install_signal_handlers(bot)

    logger.info("starting bot")
    async with bot:
        try:
            await bot.start(os.environ["DISCORD_TOKEN"].strip())
        except discord.LoginFailure as e:
            logger.critical(f"login failed: {e}")
            return 1
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Bot stopped by user (Ctrl+C)")
    except Exception:
        logger.opt(exception=True).critical("Bot crashed")
        sys.exit(1)


if __name__ == '__main__':
    run()
