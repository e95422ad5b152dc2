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

"""Configuration management for Carousel."""

import asyncio
import copy
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from loguru import logger

from core.errors import ConfigurationFault
from core.timing import Timings
from core.transport import VoiceEndpointRef


PROJECT_ROOT = Path(__file__).parent.parent


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Voice Settings:
#   voice_channel_id       - Channel the bot joins and loops in (required)
#   text_channel_id        - Restrict text triggers to this channel (None = any)
#   audio_file             - Clip to loop, relative to the project root or absolute
#   volume                 - Playback volume (0-100)
#   auto_join              - Join when someone enters the channel, leave when empty
#
# Timing Settings (timing.*), all in seconds:
#   reconnect_grace        - How long a dropped link may take to start reconnecting
#   error_retry_delay      - Wait before replaying after a stream error
#   settle_delay           - Wait between auto-join and starting playback
#   connect_timeout        - Give up on a voice connect after this long
#   link_check_interval    - How often the link watchdog polls the voice client
#
# Trigger Settings (triggers.*):
#   enabled                - Reply to text triggers in chat
#   rules                  - List of {pattern, reply}; patterns are case-insensitive regex
#
# UI Settings (ui.*):
#   brief_auto_delete      - Seconds before auto-deleting simple responses (0 = never)
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "voice_channel_id": None,
    "text_channel_id": None,
    "audio_file": "around_the_world.mp3",
    "volume": 50,
    "auto_join": True,
    "timing": {
        "reconnect_grace": 5.0,
        "error_retry_delay": 5.0,
        "settle_delay": 1.5,
        "connect_timeout": 15.0,
        "link_check_interval": 1.0,
    },
    "triggers": {
        "enabled": True,
        "rules": [
            {"pattern": r"around\s*the\s*world", "reply": "Around the World 🌍🎶"},
        ],
    },
    # UI behavior
    "ui": {
        "brief_auto_delete": 10,  # seconds, 0 to disable
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

# (min, max) per timing key; max None = unbounded
TIMING_BOUNDS = {
    "reconnect_grace": (0.0, None),
    "error_retry_delay": (0.0, None),
    "settle_delay": (0.0, None),
    "connect_timeout": (1.0, None),
    "link_check_interval": (0.1, 60.0),
}

LOG_LEVELS = ("minimal", "verbose", "debug")

# =============================================================================
# DEFAULT MESSAGES SCHEMA
# =============================================================================
# Bot responses with per-message enable/disable control.
# Each message has two fields:
#   text    - The message template (supports {variables} for formatting)
#   enabled - Whether to show this message (True) or acknowledge silently (False)
#
# The respond() helper in ResponseMixin checks the enabled flag before sending.
# =============================================================================

DEFAULT_MESSAGES = {
    # Voice
    "joined": {"text": "Joined the voice channel!", "enabled": True},
    "join_failed": {"text": "Failed to join the voice channel.", "enabled": True},
    "left": {"text": "Left the voice channel.", "enabled": True},
    "not_connected": {"text": "I'm not in a voice channel.", "enabled": True},

    # Permissions
    "no_permission": {"text": "You don't have permission to do that.", "enabled": True},

    # Errors
    "error_generic": {"text": "Something went wrong, try again.", "enabled": True},
}


def deep_merge(user: dict, defaults: dict, _path: str = "") -> dict:
    """Layer user values over a copy of defaults, section by section.

    Keys that defaults don't know are dropped with a warning.
    """
    merged = copy.deepcopy(defaults)
    for key, value in user.items():
        if key not in defaults:
            logger.warning(f"unknown config key: {_path}{key}")
            continue
        if isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(value, merged[key], f"{_path}{key}.")
        else:
            merged[key] = value
    return merged


def load_yaml(path: Path, defaults: dict) -> dict:
    """Read path and merge it over defaults. Unreadable files fall back to defaults."""
    if not path.exists():
        return copy.deepcopy(defaults)

    try:
        user = yaml.safe_load(path.read_text(encoding='utf-8'))
    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}, using defaults")
        return copy.deepcopy(defaults)

    if user is None:
        user = {}
    if not isinstance(user, dict):
        logger.warning(f"{path.name} is not a mapping, using defaults")
        return copy.deepcopy(defaults)
    return deep_merge(user, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Write data to path atomically: dump to a sibling temp file, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix='.tmp')
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as out:
            out.write(header)
            yaml.dump(data, out, default_flow_style=False, sort_keys=False, allow_unicode=True)
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _parse_bool(x: str) -> bool:
    return x.strip().lower() in ("true", "1", "yes", "on")


def _parse_channel_id(value: Any) -> Optional[int]:
    """Snowflake from int or numeric string. None/empty -> None, junk -> ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a channel id: {value!r}")
    return int(str(value).strip())


def default_config_path() -> Path:
    return Path(os.getenv("CONFIG_PATH") or str(PROJECT_ROOT / "config"))


# ENV_VAR -> (dotted settings key, parser). Negative floats are clamped to 0.
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "VOICE_CHANNEL_ID": ("voice_channel_id", _parse_channel_id),
    "TEXT_CHANNEL_ID": ("text_channel_id", _parse_channel_id),
    "AUDIO_FILE": ("audio_file", str),
    "VOLUME": ("volume", int),
    "AUTO_JOIN": ("auto_join", _parse_bool),
    "LOG_LEVEL": ("logging.level", str),
    "RECONNECT_GRACE": ("timing.reconnect_grace", float),
    "ERROR_RETRY_DELAY": ("timing.error_retry_delay", float),
    "SETTLE_DELAY": ("timing.settle_delay", float),
    "CONNECT_TIMEOUT": ("timing.connect_timeout", float),
    "TRIGGERS_ENABLED": ("triggers.enabled", _parse_bool),
}


def _set_dotted(settings: dict, dotted: str, value: Any) -> bool:
    """settings["a"]["b"] = value for "a.b". False if a section along the way isn't a dict."""
    *sections, leaf = dotted.split(".")
    target = settings
    for name in sections:
        target = target.setdefault(name, {})
        if not isinstance(target, dict):
            return False
    target[leaf] = value
    return True


class ConfigManager:
    """settings.yaml + messages.yaml, with environment overrides on top.

    Layers, lowest first: DEFAULT_SETTINGS / DEFAULT_MESSAGES, the YAML
    files in config_path, then ENV_OVERRIDES. After loading, every value
    has been validated, so callers can index sections directly.

    Besides raw get()/msg()/is_enabled(), it builds the typed values the
    voice core is constructed from: timings(), endpoint(), audio_path()
    and volume.
    """

    SETTINGS_HEADER = "# Carousel Settings\n# Edit these values to customize behavior\n\n"
    MESSAGES_HEADER = "# Carousel Responses\n# Set enabled: false to acknowledge silently\n\n"

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = {}
        self.messages: dict = {}

    async def load(self) -> None:
        """Read both YAML files (writing defaults for missing ones), then env, then validate."""
        self.settings = await self._load_file("settings.yaml", DEFAULT_SETTINGS, self.SETTINGS_HEADER)
        self.messages = await self._load_file("messages.yaml", DEFAULT_MESSAGES, self.MESSAGES_HEADER)

        self._apply_env_overrides()
        self._validate_settings()
        logger.debug(f"config loaded from {self.config_path}")

    async def _load_file(self, name: str, defaults: dict, header: str) -> dict:
        path = self.config_path / name
        if not path.exists():
            await asyncio.to_thread(save_yaml, path, defaults, header)
            logger.debug(f"generated {name}")
            return copy.deepcopy(defaults)
        return await asyncio.to_thread(load_yaml, path, defaults)

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        Validation steps:
        1. Null-restore: YAML "key:" with no value becomes None. Restores
           defaults for null top-level keys and null nested section keys.
           voice_channel_id/text_channel_id may legitimately stay None.
        2. Channel ids: coerced to int; junk is dropped (None) with a warning.
        3. Volume: clamped to 0-100.
        4. Timing: each value coerced to float and clamped to TIMING_BOUNDS.
        5. Triggers: rules must be a list of dicts with string pattern/reply.
        6. Logging level: must be one of LOG_LEVELS.
        """
        nullable = ("voice_channel_id", "text_channel_id")
        for key in list(self.settings):
            if self.settings[key] is None and key in DEFAULT_SETTINGS and key not in nullable:
                self.settings[key] = copy.deepcopy(DEFAULT_SETTINGS[key])
        for section in ("timing", "triggers", "ui", "logging"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} section invalid, using defaults")
                self.settings[section] = copy.deepcopy(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = copy.deepcopy(defaults[key])

        for key in nullable:
            value = self.settings.get(key)
            try:
                self.settings[key] = _parse_channel_id(value)
            except (ValueError, TypeError):
                logger.warning(f"{key}={value!r} is not a channel id, ignoring")
                self.settings[key] = None

        volume = self.settings.get("volume")
        try:
            v = int(volume)
            clamped = max(0, min(100, v))
            if clamped != v:
                logger.warning(f"volume={v} out of range, clamped to {clamped} (valid: 0-100)")
            self.settings["volume"] = clamped
        except (ValueError, TypeError):
            logger.warning(f"volume={volume!r} invalid, using default")
            self.settings["volume"] = DEFAULT_SETTINGS["volume"]

        if not isinstance(self.settings.get("auto_join"), bool):
            logger.warning(f"auto_join={self.settings.get('auto_join')!r} invalid, using default")
            self.settings["auto_join"] = DEFAULT_SETTINGS["auto_join"]

        timing = self.settings["timing"]
        for key, (min_val, max_val) in TIMING_BOUNDS.items():
            value = timing.get(key)
            try:
                v = float(value)
                clamped = max(min_val, v if max_val is None else min(max_val, v))
                if clamped != v:
                    range_str = f"{min_val:g}-{max_val:g}" if max_val is not None else f"{min_val:g}+"
                    logger.warning(f"timing.{key}={v:g} out of range, clamped to {clamped:g} (valid: {range_str})")
                timing[key] = clamped
            except (ValueError, TypeError):
                logger.warning(f"timing.{key}={value!r} invalid, using default")
                timing[key] = DEFAULT_SETTINGS["timing"][key]

        triggers = self.settings["triggers"]
        rules = triggers.get("rules")
        if not isinstance(rules, list):
            logger.warning("triggers.rules must be a list, using defaults")
            triggers["rules"] = copy.deepcopy(DEFAULT_SETTINGS["triggers"]["rules"])
        else:
            valid = []
            for rule in rules:
                if (isinstance(rule, dict) and isinstance(rule.get("pattern"), str)
                        and isinstance(rule.get("reply"), str)):
                    valid.append(rule)
                else:
                    logger.warning(f"trigger rule {rule!r} needs string pattern and reply, skipping")
            triggers["rules"] = valid

        ui = self.settings["ui"]
        delete_after = ui.get("brief_auto_delete")
        try:
            ui["brief_auto_delete"] = max(0, int(delete_after))
        except (ValueError, TypeError):
            logger.warning(f"ui.brief_auto_delete={delete_after!r} invalid, using default")
            ui["brief_auto_delete"] = DEFAULT_SETTINGS["ui"]["brief_auto_delete"]

        log = self.settings["logging"]
        level = str(log.get("level", "")).lower()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level={log.get('level')!r} invalid, using default")
            level = DEFAULT_SETTINGS["logging"]["level"]
        log["level"] = level

    def _apply_env_overrides(self) -> None:
        """Apply ENV_OVERRIDES. Unparseable values are warned about and skipped."""
        for env_key, (dotted, parse) in ENV_OVERRIDES.items():
            raw = os.getenv(env_key)
            if not raw:
                continue
            try:
                value = parse(raw)
            except (ValueError, TypeError) as e:
                logger.warning(f"invalid env var {env_key}: {e}")
                continue
            if isinstance(value, float) and value < 0:
                logger.warning(f"{env_key}={value:g} out of range, clamped to 0 (valid: 0+)")
                value = 0.0
            if _set_dotted(self.settings, dotted, value):
                logger.debug(f"{env_key} overrides {dotted}")
            else:
                logger.warning(f"cannot apply {env_key}: {dotted.rsplit('.', 1)[0]} is not a section")

    def get(self, key: str, default=None) -> Any:
        return self.settings.get(key, default)

    def _message_entry(self, key: str) -> dict:
        entry = self.messages.get(key, DEFAULT_MESSAGES.get(key))
        if isinstance(entry, dict):
            return entry
        # Plain "key: text" lines are accepted as always-enabled messages
        return {"text": key if entry is None else str(entry), "enabled": True}

    def msg(self, key: str, **kwargs) -> str:
        """Text for messages.yaml[key] with {placeholders} filled (the key itself if unknown)."""
        template = str(self._message_entry(key).get("text", key))
        try:
            return template.format(**kwargs)
        except (KeyError, IndexError):
            return template

    def is_enabled(self, key: str) -> bool:
        """False means the reply should be an invisible acknowledgement."""
        return bool(self._message_entry(key).get("enabled", True))

    # =========================================================================
    # Typed views for the voice core
    # =========================================================================

    def timings(self) -> Timings:
        timing = self.settings.get("timing", DEFAULT_SETTINGS["timing"])
        return Timings(
            reconnect_grace=timing["reconnect_grace"],
            error_retry_delay=timing["error_retry_delay"],
            settle_delay=timing["settle_delay"],
        )

    def endpoint(self) -> VoiceEndpointRef:
        channel_id = self.settings.get("voice_channel_id")
        if channel_id is None:
            raise ConfigurationFault(["voice_channel_id not set"])
        guild_id = os.getenv("GUILD_ID")
        return VoiceEndpointRef(
            channel_id=channel_id,
            guild_id=int(guild_id) if guild_id and guild_id.strip().isdigit() else None,
        )

    def audio_path(self) -> Path:
        path = Path(self.settings.get("audio_file") or DEFAULT_SETTINGS["audio_file"]).expanduser()
        if not path.is_absolute():
            path = PROJECT_ROOT / path
        return path

    @property
    def volume(self) -> float:
        """Volume as a PCMVolumeTransformer factor (0.0-1.0)."""
        return self.settings.get("volume", DEFAULT_SETTINGS["volume"]) / 100


def validate_configuration(config_manager: ConfigManager) -> None:
    """Pre-flight check before the bot logs in.

    Checks performed:
    - DISCORD_TOKEN is set and has valid format (3 dot-separated sections)
    - voice_channel_id is set (settings.yaml or VOICE_CHANNEL_ID)
    - the audio file exists

    Also warns (non-fatal) if GUILD_ID is not set.

    Raises:
        ConfigurationFault: listing every problem found
    """
    errors = []

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the environment")
    else:
        parts = token.strip().split(".")
        if len(parts) != 3:
            errors.append(
                "DISCORD_TOKEN format appears invalid (expected three dot-separated sections). "
                "Get a fresh token from: https://discord.com/developers/applications"
            )
        elif any(not part for part in parts):
            errors.append(
                "DISCORD_TOKEN has empty sections. "
                "Get a fresh token from: https://discord.com/developers/applications"
            )

    if config_manager.get("voice_channel_id") is None:
        errors.append("voice channel not configured - set VOICE_CHANNEL_ID or voice_channel_id in settings.yaml")

    audio = config_manager.audio_path()
    if not audio.is_file():
        errors.append(f"audio file not found: {audio}")

    guild_id = os.getenv("GUILD_ID")
    if not guild_id:
        logger.warning("GUILD_ID not set - commands may take up to 1 hour to show up")
    elif not guild_id.strip().isdigit():
        errors.append(f"GUILD_ID={guild_id!r} is not numeric")

    if errors:
        raise ConfigurationFault(errors)
