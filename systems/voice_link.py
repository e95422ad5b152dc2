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
Voice Link - discord.py transport

DiscordTransport.join() resolves the configured channel, checks permissions
and opens a VoiceClient. The result is wrapped in a VoiceLink, which reports
LinkStatus changes to the ConnectionManager.

discord.py has no public per-connection status events, so VoiceLink learns
about drops two ways:
- the bot's own voice state updates (kicked, moved), fed in by the voice cog
- a watchdog polling voice_client.is_connected() (see systems/watchdog.py)

discord.py's own reconnect logic (reconnect=True) does the actual
renegotiation; VoiceLink only observes it.
"""

import asyncio
from typing import Optional

import discord
from loguru import logger

from core.errors import TransportFault
from core.transport import LinkStatus, StatusEmitter, VoiceEndpointRef
from systems.watchdog import link_watchdog


def has_voice_permissions(channel) -> bool:
    """Check the bot can connect and speak in channel.

    Note:
        Falls back to False if guild.me is None (rare startup race).
    """
    me = channel.guild.me
    if me is None:
        return False
    perms = channel.permissions_for(me)
    return bool(perms and perms.connect and perms.speak)


class VoiceLink(StatusEmitter):
    """ConnectionHandle around a single discord.py VoiceClient."""

    def __init__(self, voice_client: discord.VoiceClient) -> None:
        super().__init__()
        self.voice_client = voice_client
        self.status = LinkStatus.READY
        self._player = None
        self._monitor: Optional[asyncio.Task] = None

    @property
    def channel(self):
        return self.voice_client.channel

    def mark(self, status: LinkStatus) -> None:
        """Record a status change and notify listeners (duplicates dropped)."""
        if self.status is LinkStatus.DESTROYED or status is self.status:
            return
        logger.debug(f"voice link: {self.status.value} -> {status.value}")
        self.status = status
        self._emit(status)

    def observe_voice_state(self, before, after) -> None:
        """Feed the bot's own VoiceState changes in from on_voice_state_update."""
        if after.channel is None:
            # Kicked, or the server dropped us; discord.py may or may not recover
            self.mark(LinkStatus.DISCONNECTED)
        elif before.channel is None or before.channel.id != after.channel.id:
            if self.voice_client.is_connected():
                self.mark(LinkStatus.READY)
            else:
                self.mark(LinkStatus.CONNECTING)

    def start_monitor(self, interval: float) -> None:
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.get_running_loop().create_task(link_watchdog(self, interval))

    def subscribe(self, player) -> None:
        """Route player output through this link."""
        if self._player is not None and self._player is not player:
            self._player.detach(self)
        self._player = player
        player.attach(self)

    async def destroy(self) -> None:
        """Disconnect and release. Safe to call more than once."""
        if self.status is LinkStatus.DESTROYED:
            return

        if self._monitor is not None and self._monitor is not asyncio.current_task():
            self._monitor.cancel()
        self._monitor = None

        if self._player is not None:
            self._player.detach(self)
            self._player = None

        try:
            await self.voice_client.disconnect(force=True)
        except (discord.ClientException, discord.HTTPException) as e:
            logger.debug(f"voice disconnect failed (non-critical): {e}")
        except Exception as e:
            # aiohttp transport errors during shutdown
            logger.debug(f"voice disconnect failed with transport error (non-critical): {e}")

        self.mark(LinkStatus.DESTROYED)


class DiscordTransport:
    """Transport that opens discord.py voice connections."""

    def __init__(self, bot, connect_timeout: float = 30.0, monitor_interval: float = 2.0) -> None:
        self.bot = bot
        self.connect_timeout = connect_timeout
        self.monitor_interval = monitor_interval

    async def resolve_channel(self, endpoint: VoiceEndpointRef):
        channel = self.bot.get_channel(endpoint.channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(endpoint.channel_id)
            except discord.NotFound as e:
                raise TransportFault(f"voice channel {endpoint.channel_id} does not exist") from e
            except discord.Forbidden as e:
                raise TransportFault(f"no access to channel {endpoint.channel_id}") from e
            except discord.HTTPException as e:
                raise TransportFault(f"could not fetch channel {endpoint.channel_id}: {e}") from e

        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise TransportFault(f"channel {endpoint.channel_id} is not a voice channel")
        if endpoint.guild_id is not None and channel.guild.id != endpoint.guild_id:
            raise TransportFault(f"channel {endpoint.channel_id} is not in guild {endpoint.guild_id}")
        return channel

    async def join(self, endpoint: VoiceEndpointRef) -> VoiceLink:
        channel = await self.resolve_channel(endpoint)

        if not has_voice_permissions(channel):
            raise TransportFault(f"missing connect/speak permission in #{channel.name}")

        # A leftover client (e.g. from a crashed session) blocks connect()
        stale = channel.guild.voice_client
        if stale is not None:
            logger.debug("dropping stale voice client before joining")
            try:
                await stale.disconnect(force=True)
            except Exception as e:
                logger.debug(f"stale voice client disconnect failed (continuing): {e}")

        try:
            voice_client = await channel.connect(
                timeout=self.connect_timeout,
                reconnect=True,
                self_deaf=True,
            )
        except asyncio.TimeoutError as e:
            raise TransportFault(f"voice connect timed out after {self.connect_timeout:g}s") from e
        except discord.ClientException as e:
            raise TransportFault(f"voice connect refused: {e}") from e
        except discord.DiscordException as e:
            raise TransportFault(f"voice connect failed: {e}") from e

        logger.info(f"connected to #{channel.name}")
        link = VoiceLink(voice_client)
        link.start_monitor(self.monitor_interval)
        return link
