# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

import discord

from common.constants import PLACEHOLDER_PREFIX


class EntityType(IntEnum):
    TEXT = 0
    DM = 1
    VOICE = 2
    GROUP_DM = 3
    CATEGORY = 4
    NEWS = 5
    NEWS_THREAD = 10
    PUBLIC_THREAD = 11
    PRIVATE_THREAD = 12
    STAGE = 13
    FORUM = 15

    @classmethod
    def coerce(cls, value: Any) -> "EntityType":
        """
        Accepts an int, a numeric string, a discord.ChannelType or a type name
        ("text", "GUILD_TEXT", "forum", ...). Raises ValueError otherwise.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, discord.ChannelType):
            return cls(int(value.value))
        if isinstance(value, bool):
            raise ValueError(f"not a channel type: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            raw = value.strip()
            if raw.lstrip("-").isdigit():
                return cls(int(raw))
            hit = _NAMES.get(raw.lower())
            if hit is not None:
                return hit
        raise ValueError(f"not a channel type: {value!r}")

    @classmethod
    def try_coerce(cls, value: Any) -> Optional["EntityType"]:
        """None for channel kinds this system does not mirror (media, directory, ...)."""
        try:
            return cls.coerce(value)
        except ValueError:
            return None

    @property
    def is_thread(self) -> bool:
        return 10 <= int(self) <= 12

    @property
    def is_category(self) -> bool:
        return self is EntityType.CATEGORY

    @property
    def is_voice_like(self) -> bool:
        return self in (EntityType.VOICE, EntityType.STAGE)

    @property
    def is_text_like(self) -> bool:
        return self in (EntityType.TEXT, EntityType.NEWS)


_NAMES = {
    "text": EntityType.TEXT,
    "guild_text": EntityType.TEXT,
    "dm": EntityType.DM,
    "private": EntityType.DM,
    "voice": EntityType.VOICE,
    "guild_voice": EntityType.VOICE,
    "group_dm": EntityType.GROUP_DM,
    "group": EntityType.GROUP_DM,
    "category": EntityType.CATEGORY,
    "guild_category": EntityType.CATEGORY,
    "news": EntityType.NEWS,
    "announcement": EntityType.NEWS,
    "guild_news": EntityType.NEWS,
    "guild_announcement": EntityType.NEWS,
    "news_thread": EntityType.NEWS_THREAD,
    "announcement_thread": EntityType.NEWS_THREAD,
    "guild_news_thread": EntityType.NEWS_THREAD,
    "public_thread": EntityType.PUBLIC_THREAD,
    "guild_public_thread": EntityType.PUBLIC_THREAD,
    "private_thread": EntityType.PRIVATE_THREAD,
    "guild_private_thread": EntityType.PRIVATE_THREAD,
    "stage": EntityType.STAGE,
    "stage_voice": EntityType.STAGE,
    "guild_stage_voice": EntityType.STAGE,
    "forum": EntityType.FORUM,
    "guild_forum": EntityType.FORUM,
}


def are_compatible(a: Any, b: Any) -> bool:
    """
    Text and news are interchangeable, as are any two thread variants.
    Every other pair must match exactly. Unknown kinds match nothing.
    """
    ta, tb = EntityType.try_coerce(a), EntityType.try_coerce(b)
    if ta is None or tb is None:
        return False
    if ta == tb:
        return True
    if ta.is_text_like and tb.is_text_like:
        return True
    return ta.is_thread and tb.is_thread


def is_placeholder(mirror_id: Any) -> bool:
    """'pending' and 'pending_<sourceId>' mark an in-flight or failed creation."""
    if mirror_id is None:
        return False
    s = str(mirror_id)
    return s == PLACEHOLDER_PREFIX or s.startswith(PLACEHOLDER_PREFIX + "_")


def placeholder_for(source_id: int) -> str:
    return f"{PLACEHOLDER_PREFIX}_{int(source_id)}"


def _opt_int(v) -> Optional[int]:
    if v in (None, ""):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


@dataclass
class SourceEntity:
    """Snapshot of a source-side channel, category or thread."""

    id: int
    name: str
    type: EntityType
    guild_id: Optional[int] = None
    parent_id: Optional[int] = None
    topic: Optional[str] = None
    nsfw: bool = False
    position: Optional[int] = None
    bitrate: Optional[int] = None
    user_limit: Optional[int] = None

    @classmethod
    def from_payload(cls, data: dict) -> "SourceEntity":
        """Build from a raw REST channel object."""
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            type=EntityType.coerce(data.get("type", 0)),
            guild_id=_opt_int(data.get("guild_id")),
            parent_id=_opt_int(data.get("parent_id")),
            topic=data.get("topic"),
            nsfw=bool(data.get("nsfw", False)),
            position=_opt_int(data.get("position")),
            bitrate=_opt_int(data.get("bitrate")),
            user_limit=_opt_int(data.get("user_limit")),
        )

    @classmethod
    def from_channel(cls, ch) -> "SourceEntity":
        """Build from a live py-cord channel or thread."""
        guild = getattr(ch, "guild", None)
        parent_id = getattr(ch, "parent_id", None)
        if parent_id is None:
            parent_id = getattr(ch, "category_id", None)
        return cls(
            id=int(ch.id),
            name=str(getattr(ch, "name", "") or ""),
            type=EntityType.coerce(ch.type),
            guild_id=int(guild.id) if guild is not None else None,
            parent_id=_opt_int(parent_id),
            topic=getattr(ch, "topic", None),
            nsfw=bool(getattr(ch, "nsfw", False)),
            position=_opt_int(getattr(ch, "position", None)),
            bitrate=_opt_int(getattr(ch, "bitrate", None)),
            user_limit=_opt_int(getattr(ch, "user_limit", None)),
        )
