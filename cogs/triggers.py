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

"""Text triggers: reply in chat when a message matches a configured pattern."""

import re
from dataclasses import dataclass
from typing import Optional

import discord
from discord.ext import commands
from loguru import logger


@dataclass(frozen=True)
class TriggerRule:
    pattern: re.Pattern
    reply: str


def compile_rules(rules: list[dict]) -> list[TriggerRule]:
    """Compile {pattern, reply} dicts (case-insensitive). Bad patterns are skipped."""
    compiled = []
    for rule in rules:
        try:
            compiled.append(TriggerRule(re.compile(rule["pattern"], re.IGNORECASE), rule["reply"]))
        except re.error as e:
            logger.warning(f"invalid trigger pattern {rule['pattern']!r}: {e}")
    return compiled


def match_reply(rules: list[TriggerRule], content: str) -> Optional[str]:
    """Reply of the first rule matching content, or None."""
    for rule in rules:
        if rule.pattern.search(content):
            return rule.reply
    return None


class Triggers(commands.Cog):
    """Replies to chat messages matching trigger rules."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        config = bot.config_manager
        triggers = config.get("triggers", {})
        self.enabled = triggers.get("enabled", True)
        self.channel_id: Optional[int] = config.get("text_channel_id")
        self.rules = compile_rules(triggers.get("rules", []))
        logger.debug(f"{len(self.rules)} trigger rule(s) loaded")

    def should_handle(self, message: discord.Message) -> bool:
        if not self.enabled or message.author.bot:
            return False
        if self.channel_id is not None and message.channel.id != self.channel_id:
            return False
        return True

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if not self.should_handle(message):
            return

        reply = match_reply(self.rules, message.content)
        if reply is None:
            return

        try:
            await message.reply(reply, mention_author=False, allowed_mentions=discord.AllowedMentions.none())
        except (discord.Forbidden, discord.HTTPException) as e:
            logger.debug(f"could not send trigger reply: {e}")


async def setup(bot: commands.Bot) -> None:
    """Load the Triggers cog."""
    await bot.add_cog(Triggers(bot))
