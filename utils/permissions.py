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

"""Permission system for Carousel."""

import asyncio
import functools
import os
from pathlib import Path
from typing import Any, Callable

import discord
import yaml
from loguru import logger


# =============================================================================
# DEFAULT PERMISSIONS SCHEMA
# =============================================================================
# Role-based permission system with two tiers:
#
#   listener - Available to everyone (no role required)
#   operator - Requires operator_role_id role OR manage_guild/administrator
#
# Fields:
#   enabled          - If False, all permissions bypass (everyone can use everything)
#   operator_role_id - Discord role ID (get via Developer Mode > right-click role)
#   tiers            - Maps tier name to list of command names
#
# Commands not listed in any tier default to "listener" (most permissive).
# Admins always have access to all tiers.
# =============================================================================

DEFAULT_PERMISSIONS = {
    "enabled": False,
    "operator_role_id": None,
    "tiers": {
        "listener": [],
        "operator": ["join", "quit"],
    }
}

DEFAULT_PERMISSIONS_FILE = """# Carousel Permission System
# Set enabled: true to activate role-based permissions

enabled: false

# Discord role ID for the operator tier
# Get this by enabling Developer Mode and right-clicking the role
operator_role_id: null

# Command tier assignments (only these 2 tiers are supported)
# listener: Available to everyone
# operator: Requires operator role or admin/manage_guild permission
tiers:
  listener: []
  operator:
    - join
    - quit
"""


def _is_admin(member) -> bool:
    perms = getattr(member, "guild_permissions", None)
    return bool(perms and (perms.manage_guild or perms.administrator))


class PermissionManager:
    """Manages role-based permission checks for commands.

    The permission system is optional - when disabled, all commands are available
    to everyone. When enabled, operator commands need the operator role or admin.

    Configuration loaded from permissions.yaml, with env var overrides:
    - ENABLE_PERMISSIONS=true enables the system
    - OPERATOR_ROLE_ID=123 sets the operator role
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path / "permissions.yaml"
        self.enabled = False
        self.operator_role_id: int | None = None
        self.tiers: dict[str, list[str]] = dict(DEFAULT_PERMISSIONS["tiers"])

    async def load(self) -> None:
        """Load permissions from permissions.yaml (created if missing), then env overrides."""
        if not self.config_path.exists():
            await self._create_default()

        try:
            content = await asyncio.to_thread(self.config_path.read_text, encoding='utf-8')
            config = yaml.safe_load(content) or {}

            self.enabled = bool(config.get("enabled", False))
            self.operator_role_id = config.get("operator_role_id")
            tiers = config.get("tiers")
            self.tiers = tiers if isinstance(tiers, dict) else dict(DEFAULT_PERMISSIONS["tiers"])

        except Exception:
            logger.opt(exception=True).error("failed to load permissions")
            self.enabled = False
            self.tiers = dict(DEFAULT_PERMISSIONS["tiers"])

        self._apply_env_overrides()

        if self.enabled:
            logger.info("permissions enabled")
            if not self.operator_role_id:
                logger.warning("operator role not configured, operator commands are admin-only")
        else:
            logger.info("permissions not enabled")

    def _apply_env_overrides(self) -> None:
        if os.getenv("ENABLE_PERMISSIONS", "").lower() == "true":
            self.enabled = True

        if role_id := os.getenv("OPERATOR_ROLE_ID"):
            try:
                self.operator_role_id = int(role_id)
            except ValueError:
                logger.warning(f"invalid operator_role_id: {role_id}")

    async def _create_default(self) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self.config_path.write_text, DEFAULT_PERMISSIONS_FILE, encoding='utf-8')
        logger.debug(f"generated {self.config_path.name}")

    def get_tier(self, command_name: str) -> str:
        """Tier for a command; "listener" if it isn't listed anywhere."""
        for tier, commands in self.tiers.items():
            if command_name in (commands or []):
                return tier
        return "listener"

    def check_permission(self, interaction: discord.Interaction, command_name: str) -> bool:
        """Check if the invoking user may run command_name.

        Always True when permissions are disabled.
        """
        if not self.enabled:
            return True

        tier = self.get_tier(command_name)
        member = interaction.user

        if tier == "listener":
            return True

        if tier == "operator":
            if _is_admin(member):
                logger.debug(f"{command_name} allowed for {member.display_name} (admin)")
                return True

            if not self.operator_role_id:
                logger.debug(f"{command_name} denied for {member.display_name} (operator role not set)")
                return False

            if self.operator_role_id in [r.id for r in getattr(member, "roles", [])]:
                logger.debug(f"{command_name} allowed for {member.display_name} (operator)")
                return True

            logger.debug(f"{command_name} denied for {member.display_name} (missing operator role)")
            return False

        # Unknown tier in permissions.yaml
        logger.warning(f"unknown permission tier {tier!r} for {command_name}, allowing")
        return True


def require_permission(command_name: str) -> Callable:
    """Decorator to check permissions before command execution.

    If denied, replies with the "no_permission" message and returns early.

    Usage:
        @require_permission("join")
        async def join(self, interaction):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, interaction: discord.Interaction, *args, **kwargs) -> Any:
            perm_manager = getattr(self.bot, 'permission_manager', None)

            if perm_manager and not perm_manager.check_permission(interaction, command_name):
                await self.respond(interaction, "no_permission")
                return

            return await func(self, interaction, *args, **kwargs)
        return wrapper
    return decorator
