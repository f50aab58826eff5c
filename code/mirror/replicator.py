# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
from typing import Callable, Optional

import discord
from discord import CategoryChannel, ChannelType, Guild

from common.constants import (
    FORUM_FALLBACK_PREFIX,
    MAX_CATEGORIES,
    MAX_CHANNELS_PER_CATEGORY,
    MAX_GUILD_CHANNELS,
)
from common.entities import EntityType, SourceEntity, are_compatible
from common.errors import CreationFailed
from common.rate_limiter import ActionType, RateLimitManager

logger = logging.getLogger("mirror.replicator")

THREAD_ARCHIVE_MINUTES = 1440


def has_community(guild: Guild) -> bool:
    return "COMMUNITY" in (guild.features or [])


def forum_fallback_name(name: str) -> str:
    return f"{FORUM_FALLBACK_PREFIX}{name}"


class StructuralReplicator:
    """
    Creates mirror-side categories, channels, threads and forum posts.
    Only the resolver and the session handlers call into this.
    """

    def __init__(self, ratelimit: RateLimitManager):
        self.ratelimit = ratelimit

    # ---------- lookups ----------
    def can_manage_channels(self, guild: Guild) -> bool:
        me = guild.me
        return bool(me and me.guild_permissions.manage_channels)

    def find_existing(
        self,
        guild: Guild,
        name: str,
        entity_type: EntityType,
        *,
        taken: Optional[Callable[[int], bool]] = None,
    ) -> Optional[discord.abc.GuildChannel]:
        """
        A live channel with this exact name and a compatible type. Channels
        for which `taken(channel_id)` is true are skipped.
        """
        free = (lambda ch: not taken(ch.id)) if taken is not None else (lambda ch: True)
        for ch in guild.channels:
            if ch.name == name and are_compatible(ch.type, entity_type) and free(ch):
                return ch
        if entity_type is EntityType.FORUM:
            fallback = forum_fallback_name(name)
            for ch in guild.text_channels:
                if ch.name == fallback and free(ch):
                    return ch
        return None

    def find_category(self, guild: Guild, name: str) -> Optional[CategoryChannel]:
        return discord.utils.get(guild.categories, name=name)

    def find_thread(self, parent, name: str) -> Optional[discord.Thread]:
        for th in getattr(parent, "threads", None) or []:
            if th.name == name:
                return th
        return None

    def _can_create_in_category(self, guild: Guild, category: Optional[CategoryChannel]) -> bool:
        if len(guild.channels) >= MAX_GUILD_CHANNELS:
            return False
        if category is None:
            return True
        return len(category.channels) < MAX_CHANNELS_PER_CATEGORY

    # ---------- creation ----------
    async def ensure_category(self, guild: Guild, name: str) -> CategoryChannel:
        existing = self.find_category(guild, name)
        if existing:
            return existing
        if len(guild.categories) >= MAX_CATEGORIES or len(guild.channels) >= MAX_GUILD_CHANNELS:
            raise CreationFailed(f"guild {guild.id} is at category capacity")
        try:
            await self.ratelimit.acquire(ActionType.CREATE_CHANNEL, key=guild.id)
            cat = await guild.create_category(name)
        except discord.HTTPException as e:
            raise CreationFailed(f"could not create category '{name}': {e}") from e
        logger.info("[➕] Created category '%s' #%s", name, cat.id)
        return cat

    async def create_channel(
        self,
        guild: Guild,
        entity: SourceEntity,
        category: Optional[CategoryChannel] = None,
    ) -> discord.abc.GuildChannel:
        """
        Create the mirror counterpart of `entity`. Degrades instead of failing
        where the guild lacks a feature: news stays text without NEWS, stage
        becomes voice and forum becomes a pinned-name text channel without
        COMMUNITY. Raises CreationFailed otherwise.
        """
        if entity.type.is_thread:
            raise CreationFailed("threads are created under a parent, not as guild channels")
        if entity.type.is_category:
            return await self.ensure_category(guild, entity.name)
        if entity.type in (EntityType.DM, EntityType.GROUP_DM):
            raise CreationFailed(f"cannot mirror private channel type {entity.type.name}")

        if not self._can_create_in_category(guild, category):
            if len(guild.channels) >= MAX_GUILD_CHANNELS:
                raise CreationFailed(f"guild {guild.id} is at channel capacity")
            logger.warning(
                "[⚠️] Category %s full; creating '%s' as standalone",
                category.name if category else "<root>",
                entity.name,
            )
            category = None

        try:
            if entity.type is EntityType.FORUM:
                return await self.create_forum(guild, entity, category)
            if entity.type.is_voice_like:
                return await self._create_voice(guild, entity, category)
            return await self._create_text(guild, entity, category)
        except discord.HTTPException as e:
            raise CreationFailed(f"could not create '{entity.name}': {e}") from e

    async def _create_text(self, guild: Guild, entity: SourceEntity, category):
        await self.ratelimit.acquire(ActionType.CREATE_CHANNEL, key=guild.id)
        ch = await guild.create_text_channel(
            name=entity.name,
            category=category,
            topic=entity.topic or None,
            nsfw=entity.nsfw,
        )
        logger.info("[➕] Created %s channel '%s' #%s", "text", entity.name, ch.id)

        if entity.type is EntityType.NEWS:
            if "NEWS" in guild.features or has_community(guild):
                try:
                    await self.ratelimit.acquire(ActionType.EDIT_CHANNEL, key=guild.id)
                    await ch.edit(type=ChannelType.news)
                    logger.info("[✏️] Converted '%s' #%d to Announcement", entity.name, ch.id)
                except discord.HTTPException as e:
                    logger.warning(
                        "[⚠️] Could not convert '%s' to Announcement: %s; left as text",
                        entity.name,
                        e,
                    )
            else:
                logger.warning(
                    "[⚠️] Guild %s doesn’t support NEWS; '%s' left as text",
                    guild.id,
                    entity.name,
                )
        return ch

    async def _create_voice(self, guild: Guild, entity: SourceEntity, category):
        if entity.type is EntityType.STAGE and has_community(guild):
            await self.ratelimit.acquire(ActionType.CREATE_CHANNEL, key=guild.id)
            ch = await guild.create_stage_channel(name=entity.name, category=category)
            logger.info("[➕] Created %s channel '%s' #%s", "stage", entity.name, ch.id)
            return ch
        if entity.type is EntityType.STAGE:
            logger.warning(
                "[⚠️] Guild %s lacks COMMUNITY; stage '%s' created as voice", guild.id, entity.name
            )

        kwargs = {}
        if entity.bitrate:
            kwargs["bitrate"] = min(int(entity.bitrate), int(guild.bitrate_limit))
        if entity.user_limit:
            kwargs["user_limit"] = min(int(entity.user_limit), 99)
        await self.ratelimit.acquire(ActionType.CREATE_CHANNEL, key=guild.id)
        ch = await guild.create_voice_channel(name=entity.name, category=category, **kwargs)
        logger.info("[➕] Created %s channel '%s' #%s", "voice", entity.name, ch.id)
        return ch

    async def create_forum(self, guild: Guild, entity: SourceEntity, category):
        """Forum channel, or a text channel named '📌│<name>' when forums are unavailable."""
        if has_community(guild):
            try:
                await self.ratelimit.acquire(ActionType.CREATE_CHANNEL, key=guild.id)
                ch = await guild.create_forum_channel(name=entity.name, category=category)
                logger.info("[➕] Created %s channel '%s' #%s", "forum", entity.name, ch.id)
                return ch
            except discord.HTTPException as e:
                logger.warning(
                    "[⚠️] Forum creation for '%s' refused (%s); falling back to text", entity.name, e
                )
        else:
            logger.warning(
                "[⚠️] Guild %s lacks forum support; '%s' mirrored as text", guild.id, entity.name
            )

        await self.ratelimit.acquire(ActionType.CREATE_CHANNEL, key=guild.id)
        ch = await guild.create_text_channel(
            name=forum_fallback_name(entity.name), category=category, topic=entity.topic or None
        )
        logger.info("[➕] Created %s channel '%s' #%s", "forum-fallback", ch.name, ch.id)
        return ch

    async def create_thread(self, parent, name: str, *, content: Optional[str] = None):
        """A forum post under a forum parent, else a public thread."""
        try:
            await self.ratelimit.acquire(ActionType.THREAD, key=parent.guild.id)
            if isinstance(parent, discord.ForumChannel):
                th = await parent.create_thread(
                    name=name,
                    content=content or f"📌 {name}",
                    auto_archive_duration=THREAD_ARCHIVE_MINUTES,
                )
            else:
                th = await parent.create_thread(
                    name=name,
                    type=ChannelType.public_thread,
                    auto_archive_duration=THREAD_ARCHIVE_MINUTES,
                )
                if content:
                    await th.send(content)
        except discord.HTTPException as e:
            raise CreationFailed(f"could not create thread '{name}': {e}") from e
        logger.info("[🧵] Created thread '%s' #%s under #%s", name, th.id, parent.id)
        return th

    async def rename(self, channel, name: str) -> bool:
        """Best-effort rename; never raises."""
        if channel.name == name:
            return False
        old = channel.name
        try:
            await self.ratelimit.acquire(ActionType.EDIT_CHANNEL, key=channel.guild.id)
            await channel.edit(name=name)
        except Exception as e:
            logger.warning("[⚠️] Rename of #%s to %r failed: %s", channel.id, name, e)
            return False
        logger.info("[✏️] Renamed channel #%d: %r → %r", channel.id, old, name)
        return True
