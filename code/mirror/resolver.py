# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import contextlib
import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

import discord

from common.caches import BoundedCache, ExpiringSet, PendingLocks
from common.constants import (
    CHANNEL_CACHE_MAX,
    NOTIFY_DEDUP_TTL_SECONDS,
    PENDING_LOCK_THRESHOLD,
    ROLE_CACHE_MAX,
)
from common.db import DBManager
from common.entities import EntityType, SourceEntity, is_placeholder
from common.errors import CreationFailed, FetchError, MirrorError, PermissionDenied
from mirror.notifier import NOT_FOUND, PERMISSION_DENIED, ErrorNotifier, EventLog
from mirror.replicator import StructuralReplicator, forum_fallback_name

logger = logging.getLogger("mirror.resolver")


class AutoRecovery(Protocol):
    def is_recovering(self, source_id: int, mirror_guild_id: int) -> bool: ...

    async def start_recovery(
        self,
        source_id: int,
        source_guild_id: Optional[int],
        mirror_guild_id: int,
        notification_message_id: Optional[int],
    ) -> None: ...


class SourceAccess(Protocol):
    """What the resolver needs from the session layer for one mirror guild."""

    def credential_for(self, mirror_guild_id: int) -> Optional[str]: ...

    def source_guild_for(self, mirror_guild_id: int) -> Optional[discord.Guild]: ...


# (mirror_guild_id, source_id, entity_type, mirror_channel)
CreatedHook = Callable[[int, int, EntityType, Any], None]


@dataclass
class _Creation:
    mirror_id: Optional[int] = None
    locked: bool = False
    denied: bool = False
    name: Optional[str] = None


class CorrespondenceResolver:
    """
    Maps source channel ids to mirror channel ids for every paired guild.

    Lookup order: cache, store, auto-creation, thread-parent search, forced
    resync. Anything still unresolved is reported once per hour per key.
    Public methods return None instead of raising on expected failures.
    """

    def __init__(
        self,
        bot: discord.Client,
        db: DBManager,
        replicator: StructuralReplicator,
        rest,
        notifier: Optional[ErrorNotifier] = None,
        *,
        event_log: Optional[EventLog] = None,
        auto_recovery: Optional[AutoRecovery] = None,
        sessions: Optional[SourceAccess] = None,
        maintenance_interval: float = 1800.0,
    ):
        self.bot = bot
        self.db = db
        self.replicator = replicator
        self.rest = rest
        self.notifier = notifier
        self.event_log = event_log
        self.auto_recovery = auto_recovery
        self.sessions = sessions
        self.maintenance_interval = maintenance_interval

        self.channel_cache: BoundedCache[tuple[int, int], int] = BoundedCache(CHANNEL_CACHE_MAX)
        self.role_cache: BoundedCache[tuple[int, int], int] = BoundedCache(ROLE_CACHE_MAX)
        self.pending = PendingLocks(PENDING_LOCK_THRESHOLD)
        self.notified = ExpiringSet(NOTIFY_DEDUP_TTL_SECONDS)

        self.resync: Optional[Callable[[int], Awaitable[Any]]] = None
        self.on_created: Optional[CreatedHook] = None

        self.counters: Counter = Counter()
        self._tasks: set[asyncio.Task] = set()
        self._maintenance_task: asyncio.Task | None = None

    def attach_sessions(self, sessions: SourceAccess) -> None:
        self.sessions = sessions

    # ------------------------------------------------------------------ helpers
    def _credential(self, mirror_guild_id: int) -> Optional[str]:
        return self.sessions.credential_for(mirror_guild_id) if self.sessions else None

    def _source_guild(self, mirror_guild_id: int) -> Optional[discord.Guild]:
        return self.sessions.source_guild_for(mirror_guild_id) if self.sessions else None

    @staticmethod
    def _live_channel(guild: discord.Guild, mirror_id) -> Optional[Any]:
        if mirror_id is None or is_placeholder(mirror_id):
            return None
        try:
            return guild.get_channel_or_thread(int(mirror_id))
        except (TypeError, ValueError):
            return None

    def owned_elsewhere(self, source_id: int, source_guild_id: int) -> Callable[[int], bool]:
        """Predicate for find_existing: mirror channels already mapped to another source."""
        return lambda mirror_id: self.db.mirror_owned_elsewhere(mirror_id, source_id, source_guild_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _fire_created(self, mirror_guild_id: int, source_id: int, etype: EntityType, channel) -> None:
        if self.on_created is None:
            return
        try:
            self.on_created(mirror_guild_id, source_id, etype, channel)
        except Exception:
            logger.exception("[⛔] on_created hook failed for source #%s", source_id)

    # --------------------------------------------------------------- resolution
    async def resolve_mirror_channel(
        self,
        source_id: int,
        source_guild_id: int,
        mirror_guild_id: int,
        *,
        allow_create: bool = True,
    ) -> Optional[int]:
        """
        Mirror channel id for `source_id`, or None.

        With allow_create=False this is a pure lookup: no creation, no resync
        and no notification.
        """
        try:
            return await self._resolve(
                int(source_id), int(source_guild_id), int(mirror_guild_id), allow_create
            )
        except Exception:
            logger.exception("[⛔] Resolution of source #%s failed unexpectedly", source_id)
            return None

    async def _resolve(
        self, source_id: int, source_guild_id: int, mirror_guild_id: int, allow_create: bool
    ) -> Optional[int]:
        key = (source_id, mirror_guild_id)
        cached = self.channel_cache.get(key)
        if cached is not None:
            self.counters["cache_hits"] += 1
            return cached

        guild = self.bot.get_guild(mirror_guild_id)
        if guild is None:
            logger.debug("Mirror guild %s not available; cannot resolve #%s", mirror_guild_id, source_id)
            return None

        row = self.db.get_channel_mapping(source_id, source_guild_id)
        if row is not None and row["blacklisted"]:
            return None
        if row is not None and row["mirror_id"] and not is_placeholder(row["mirror_id"]):
            live = self._live_channel(guild, row["mirror_id"])
            if live is not None:
                await self._check_rename(row, live, mirror_guild_id)
                self.channel_cache.set(key, live.id)
                self.counters["store_hits"] += 1
                return live.id
            logger.warning(
                "[⚠️] Mapping for source #%s points at missing mirror #%s; treating as unmapped",
                source_id,
                row["mirror_id"],
            )

        name = row["name"] if row is not None and row["name"] else None

        if allow_create:
            created = await self._auto_create(source_id, source_guild_id, mirror_guild_id)
            if created.locked or created.denied:
                return None
            if created.mirror_id is not None:
                self.channel_cache.set(key, created.mirror_id)
                return created.mirror_id
            name = name or created.name

        thread_id = await self._resolve_thread_by_parent(
            source_id, source_guild_id, mirror_guild_id, guild
        )
        if thread_id is not None:
            self.channel_cache.set(key, thread_id)
            return thread_id

        if not allow_create:
            return None

        discovered, locked = await self._discover_with_resync(
            source_id, source_guild_id, mirror_guild_id, guild
        )
        if locked:
            return None
        if discovered is not None:
            self.channel_cache.set(key, discovered)
            return discovered

        self.counters["unresolved"] += 1
        await self._notify_failure(mirror_guild_id, source_id, source_guild_id, name, NOT_FOUND)
        return None

    async def _check_rename(self, row: sqlite3.Row, live, mirror_guild_id: int) -> None:
        """Persist a source-side rename, then try to rename the mirror to match."""
        source_guild = self._source_guild(mirror_guild_id)
        if source_guild is None:
            return
        src = source_guild.get_channel_or_thread(int(row["source_id"]))
        if src is None:
            return
        current = src.name
        if not current or current == row["name"]:
            return

        self.db.update_channel_name(row["source_id"], row["source_guild_id"], current)
        logger.info(
            "[✏️] Source #%s renamed %r → %r", row["source_id"], row["name"], current
        )
        self.counters["renames"] += 1

        target = current
        if (
            EntityType.try_coerce(src.type) is EntityType.FORUM
            and EntityType.try_coerce(live.type) is not EntityType.FORUM
        ):
            target = forum_fallback_name(current)
        await self.replicator.rename(live, target)

    # ------------------------------------------------------------ auto-creation
    async def auto_create(
        self, source_id: int, source_guild_id: int, mirror_guild_id: int
    ) -> Optional[dict]:
        """Create (or adopt) the mirror counterpart and return its mapping row."""
        try:
            created = await self._auto_create(int(source_id), int(source_guild_id), int(mirror_guild_id))
        except Exception:
            logger.exception("[⛔] Auto-creation of source #%s failed unexpectedly", source_id)
            return None
        if created.mirror_id is None:
            return None
        self.channel_cache.set((int(source_id), int(mirror_guild_id)), created.mirror_id)
        row = self.db.get_channel_mapping(source_id, source_guild_id)
        return dict(row) if row is not None else None

    async def _auto_create(
        self, source_id: int, source_guild_id: int, mirror_guild_id: int
    ) -> _Creation:
        with self.pending.claim((source_id, mirror_guild_id)) as acquired:
            if not acquired:
                logger.debug(
                    "Creation for source #%s in guild %s already in flight; retry later",
                    source_id,
                    mirror_guild_id,
                )
                return _Creation(locked=True)
            return await self._create_locked(source_id, source_guild_id, mirror_guild_id)

    async def _create_locked(
        self, source_id: int, source_guild_id: int, mirror_guild_id: int
    ) -> _Creation:
        row = self.db.get_channel_mapping(source_id, source_guild_id)
        if row is not None and row["blacklisted"]:
            return _Creation(denied=True)
        if row is not None and row["mirror_id"] and not is_placeholder(row["mirror_id"]):
            # another caller may have finished while we waited for the store
            guild = self.bot.get_guild(mirror_guild_id)
            live = self._live_channel(guild, row["mirror_id"]) if guild else None
            if live is not None:
                return _Creation(mirror_id=live.id, name=row["name"])

        guild = self.bot.get_guild(mirror_guild_id)
        if guild is None:
            return _Creation()

        entity, denied = await self._fetch_source_entity(
            source_id, source_guild_id, mirror_guild_id, check_access=True
        )
        if denied:
            return _Creation(denied=True)
        if entity is None:
            return _Creation(name=row["name"] if row is not None else None)

        if entity.type.is_thread:
            mirror_id = await self._create_thread_for(entity, source_guild_id, mirror_guild_id, guild)
            return _Creation(mirror_id=mirror_id, name=entity.name)

        existing = self.replicator.find_existing(
            guild, entity.name, entity.type, taken=self.owned_elsewhere(source_id, source_guild_id)
        )
        if existing is not None:
            self.register_mapping(
                source_id,
                source_guild_id,
                entity.name,
                existing.id,
                channel_type=entity.type,
                category_id=entity.parent_id,
                mirror_category_id=getattr(existing, "category_id", None),
                mirror_guild_id=mirror_guild_id,
            )
            logger.info(
                "[🔗] Adopted existing mirror #%s for source '%s' #%s",
                existing.id,
                entity.name,
                source_id,
            )
            return _Creation(mirror_id=existing.id, name=entity.name)

        if not self.replicator.can_manage_channels(guild):
            logger.warning(
                "[⚠️] No Manage Channels permission in guild %s; cannot create '%s'",
                mirror_guild_id,
                entity.name,
            )
            return _Creation(name=entity.name)

        category = None
        if entity.parent_id:
            category = await self.ensure_mirror_category(
                entity.parent_id, source_guild_id, mirror_guild_id
            )
        try:
            ch = await self.replicator.create_channel(guild, entity, category)
        except CreationFailed as e:
            logger.warning("[⚠️] Auto-creation of '%s' #%s failed: %s", entity.name, source_id, e)
            return _Creation(name=entity.name)

        self.register_mapping(
            source_id,
            source_guild_id,
            entity.name,
            ch.id,
            channel_type=entity.type,
            category_id=entity.parent_id,
            mirror_category_id=category.id if category else None,
            mirror_guild_id=mirror_guild_id,
        )
        self.counters["created"] += 1
        if self.event_log:
            self.event_log.log_new_room(
                mirror_guild_id, source_id, entity.name, ch.id, kind=entity.type.name.lower(), via="resolver"
            )
        self._fire_created(mirror_guild_id, source_id, entity.type, ch)
        return _Creation(mirror_id=ch.id, name=entity.name)

    async def _fetch_source_entity(
        self,
        source_id: int,
        source_guild_id: int,
        mirror_guild_id: int,
        *,
        check_access: bool = False,
    ) -> tuple[Optional[SourceEntity], bool]:
        """
        (entity, denied). A 403 on the access check or on the metadata fetch
        blacklists the key and sends a permission_denied notification; any
        other failure just yields no entity.
        """
        credential = self._credential(mirror_guild_id)

        if check_access and credential and self.rest is not None:
            try:
                await self.rest.test_channel_access(source_id, credential)
            except PermissionDenied:
                await self._deny(source_id, source_guild_id, mirror_guild_id)
                return None, True
            except MirrorError as e:
                logger.debug("Access check for #%s inconclusive: %s", source_id, e)

        source_guild = self._source_guild(mirror_guild_id)
        if source_guild is not None:
            ch = source_guild.get_channel_or_thread(source_id)
            if ch is not None:
                if EntityType.try_coerce(ch.type) is None:
                    logger.debug("Source #%s is a %s channel; not mirrored", source_id, ch.type)
                    return None, False
                return SourceEntity.from_channel(ch), False

        if not credential or self.rest is None:
            return None, False
        try:
            entity = await self.rest.fetch_channel(source_id, credential)
        except PermissionDenied:
            await self._deny(source_id, source_guild_id, mirror_guild_id)
            return None, True
        except (FetchError, MirrorError) as e:
            logger.info("[⚠️] Source #%s metadata unavailable: %s", source_id, e)
            return None, False
        if entity.guild_id is not None and entity.guild_id != source_guild_id:
            logger.warning(
                "[⚠️] Source #%s belongs to guild %s, not %s; ignoring",
                source_id,
                entity.guild_id,
                source_guild_id,
            )
            return None, False
        return entity, False

    async def _deny(self, source_id: int, source_guild_id: int, mirror_guild_id: int) -> None:
        name = f"inaccessible-{str(source_id)[-6:]}"
        self.db.blacklist_channel(source_id, source_guild_id, name, PERMISSION_DENIED)
        row = self.db.get_channel_mapping(source_id, source_guild_id)
        if row is not None and row["name"]:
            name = row["name"]
        self.invalidate(source_id)
        self.counters["blacklisted"] += 1
        logger.warning("[⛔] Source #%s is not readable; blacklisted as '%s'", source_id, name)
        await self._notify_failure(
            mirror_guild_id, source_id, source_guild_id, name, PERMISSION_DENIED
        )

    async def _create_thread_for(
        self,
        entity: SourceEntity,
        source_guild_id: int,
        mirror_guild_id: int,
        guild: discord.Guild,
    ) -> Optional[int]:
        if not entity.parent_id:
            return None
        parent_mirror_id = await self._resolve(
            entity.parent_id, source_guild_id, mirror_guild_id, True
        )
        parent = guild.get_channel(parent_mirror_id) if parent_mirror_id else None
        if parent is None:
            logger.info("[⚠️] Parent of thread '%s' #%s has no mirror; skipping", entity.name, entity.id)
            return None

        th = self.replicator.find_thread(parent, entity.name)
        created = th is None
        if created:
            try:
                th = await self.replicator.create_thread(parent, entity.name)
            except CreationFailed as e:
                logger.warning("[⚠️] Thread creation for '%s' failed: %s", entity.name, e)
                return None

        self.register_mapping(
            entity.id,
            source_guild_id,
            entity.name,
            th.id,
            channel_type=entity.type,
            category_id=entity.parent_id,
            mirror_category_id=parent.id,
            mirror_guild_id=mirror_guild_id,
        )
        if created:
            self.counters["created"] += 1
            if self.event_log:
                self.event_log.log_new_room(
                    mirror_guild_id, entity.id, entity.name, th.id, kind="thread", via="resolver"
                )
            self._fire_created(mirror_guild_id, entity.id, entity.type, th)
        return th.id

    async def ensure_mirror_category(
        self,
        source_category_id: int,
        source_guild_id: int,
        mirror_guild_id: int,
        *,
        name: Optional[str] = None,
    ) -> Optional[discord.CategoryChannel]:
        """Mirror category for a source category: mapped, found by name, or created."""
        guild = self.bot.get_guild(int(mirror_guild_id))
        if guild is None:
            return None
        row = self.db.get_channel_mapping(source_category_id, source_guild_id)
        if row is not None and row["mirror_id"] and not is_placeholder(row["mirror_id"]):
            live = self._live_channel(guild, row["mirror_id"])
            if live is not None:
                return live

        if not name:
            name = row["name"] if row is not None and row["name"] else None
        if not name:
            entity, _ = await self._fetch_source_entity(
                source_category_id, source_guild_id, mirror_guild_id
            )
            name = entity.name if entity else None
        if not name:
            return None

        try:
            cat = await self.replicator.ensure_category(guild, name)
        except CreationFailed as e:
            logger.warning("[⚠️] Category '%s' unavailable: %s", name, e)
            return None
        self.register_mapping(
            source_category_id,
            source_guild_id,
            name,
            cat.id,
            channel_type=EntityType.CATEGORY,
            mirror_guild_id=mirror_guild_id,
        )
        return cat

    # -------------------------------------------------------- fallback paths
    async def _resolve_thread_by_parent(
        self,
        source_id: int,
        source_guild_id: int,
        mirror_guild_id: int,
        guild: discord.Guild,
    ) -> Optional[int]:
        """Find the mirror thread under the mapped parent by exact name."""
        src = None
        source_guild = self._source_guild(mirror_guild_id)
        if source_guild is not None:
            src = source_guild.get_thread(source_id)
        if src is not None:
            entity = SourceEntity.from_channel(src)
        else:
            credential = self._credential(mirror_guild_id)
            if not credential or self.rest is None:
                return None
            try:
                entity = await self.rest.fetch_channel(source_id, credential)
            except MirrorError:
                return None
        if not entity.type.is_thread or not entity.parent_id:
            return None

        parent_row = self.db.get_channel_mapping(entity.parent_id, source_guild_id)
        if parent_row is None or parent_row["blacklisted"]:
            return None
        parent = self._live_channel(guild, parent_row["mirror_id"])
        if parent is None:
            return None
        th = self.replicator.find_thread(parent, entity.name)
        if th is None:
            return None
        self.register_mapping(
            source_id,
            source_guild_id,
            entity.name,
            th.id,
            channel_type=entity.type,
            category_id=entity.parent_id,
            mirror_category_id=parent.id,
            mirror_guild_id=mirror_guild_id,
        )
        logger.info("[🧵] Matched thread '%s' #%s under mirror #%s", entity.name, th.id, parent.id)
        return th.id

    async def _discover_with_resync(
        self,
        source_id: int,
        source_guild_id: int,
        mirror_guild_id: int,
        guild: discord.Guild,
    ) -> tuple[Optional[int], bool]:
        """(mirror_id, locked). Runs one forced resync, then re-reads the store."""
        with self.pending.claim((source_id, mirror_guild_id)) as acquired:
            if not acquired:
                return None, True
            try:
                await self.force_sync(mirror_guild_id)
            except Exception as e:
                logger.warning("[⚠️] Forced resync for guild %s failed: %s", mirror_guild_id, e)
            row = self.db.get_channel_mapping(source_id, source_guild_id)
            if row is None or row["blacklisted"]:
                return None, False
            live = self._live_channel(guild, row["mirror_id"])
            return (live.id if live is not None else None), False

    async def force_sync(self, mirror_guild_id: int) -> dict:
        """Run the configured resync hook, or a name-match pass over the source guild."""
        if self.resync is not None:
            result = await self.resync(int(mirror_guild_id))
            return result if isinstance(result, dict) else {}

        guild = self.bot.get_guild(int(mirror_guild_id))
        if guild is None:
            return {}
        source_guild = self._source_guild(mirror_guild_id)
        if source_guild is not None:
            channels = [
                SourceEntity.from_channel(ch)
                for ch in source_guild.channels
                if not isinstance(ch, discord.Thread)
                and EntityType.try_coerce(ch.type) is not None
            ]
            roles = [(r.id, r.name) for r in source_guild.roles]
            return self.sync_mappings(source_guild.id, channels, guild, roles)

        source_guild_id = self.db.get_source_guild_id(mirror_guild_id)
        credential = self._credential(mirror_guild_id)
        if not source_guild_id or not credential or self.rest is None:
            return {}
        channels = await self.rest.fetch_guild_channels(source_guild_id, credential)
        raw_roles = await self.rest.fetch_guild_roles(source_guild_id, credential)
        roles = [(int(r["id"]), r.get("name", "")) for r in raw_roles]
        return self.sync_mappings(source_guild_id, channels, guild, roles)

    def sync_mappings(
        self,
        source_guild_id: int,
        source_channels: Iterable[SourceEntity],
        mirror_guild: discord.Guild,
        source_roles: Iterable[tuple[int, str]] = (),
    ) -> dict:
        """
        Name-match pass: register any unmapped source channel or role whose
        name (and compatible type) already exists on the mirror.
        """
        channels = roles = 0
        for entity in source_channels:
            if entity.type.is_thread or entity.type in (EntityType.DM, EntityType.GROUP_DM):
                continue
            row = self.db.get_channel_mapping(entity.id, source_guild_id)
            if row is not None and row["blacklisted"]:
                continue
            if row is not None and self._live_channel(mirror_guild, row["mirror_id"]) is not None:
                continue
            match = self.replicator.find_existing(
                mirror_guild,
                entity.name,
                entity.type,
                taken=self.owned_elsewhere(entity.id, source_guild_id),
            )
            if match is None:
                continue
            if self.register_mapping(
                entity.id,
                source_guild_id,
                entity.name,
                match.id,
                channel_type=entity.type,
                category_id=entity.parent_id,
                mirror_category_id=getattr(match, "category_id", None),
                mirror_guild_id=mirror_guild.id,
            ):
                channels += 1

        for role_id, role_name in source_roles:
            if not role_name or role_name == "@everyone":
                continue
            row = self.db.get_role_mapping(role_id, source_guild_id)
            if row is not None and row["mirror_id"] and mirror_guild.get_role(int(row["mirror_id"])):
                continue
            match = discord.utils.get(mirror_guild.roles, name=role_name)
            if match is None:
                continue
            self.register_role_mapping(role_id, source_guild_id, role_name, match.id, mirror_guild_id=mirror_guild.id)
            roles += 1

        if channels or roles:
            logger.info(
                "[🔄] Name-match sync for guild %s: %d channel(s), %d role(s) mapped",
                mirror_guild.id,
                channels,
                roles,
            )
        return {"channels": channels, "roles": roles}

    # ----------------------------------------------------------- notification
    async def _notify_failure(
        self,
        mirror_guild_id: int,
        source_id: int,
        source_guild_id: Optional[int],
        name: Optional[str],
        reason: str,
    ) -> None:
        key = (source_id, mirror_guild_id)
        if key in self.notified:
            return
        # marked before sending so recovery re-entering here stays quiet
        self.notified.add(key)
        self.counters["notified"] += 1

        message_id = None
        if self.notifier is not None:
            try:
                message_id = await self.notifier.send_error_notification(
                    mirror_guild_id, source_id, name, reason
                )
            except Exception as e:
                logger.debug("Error notification for #%s failed: %s", source_id, e)

        if reason == PERMISSION_DENIED or self.auto_recovery is None:
            return
        if self.auto_recovery.is_recovering(source_id, mirror_guild_id):
            logger.debug("Recovery already running for #%s; not starting another", source_id)
            return
        source_guild_id = source_guild_id or self.db.get_source_guild_id(mirror_guild_id)
        self._spawn(
            self.auto_recovery.start_recovery(source_id, source_guild_id, mirror_guild_id, message_id)
        )

    # ------------------------------------------------------------ registration
    def register_mapping(
        self,
        source_id: int,
        source_guild_id: int,
        name: str,
        mirror_id,
        *,
        channel_type=None,
        category_id: Optional[int] = None,
        mirror_category_id: Optional[int] = None,
        mirror_guild_id: Optional[int] = None,
    ) -> Optional[dict]:
        """
        Upsert by (source_id, source_guild_id); a taken mirror id is merged, not
        rejected, and the previous owner's cached resolution is dropped.
        """
        previous = None
        if mirror_id is not None and not is_placeholder(mirror_id):
            previous = self.db.get_channel_mapping_by_mirror_id(mirror_id)
        try:
            row = self.db.upsert_channel_mapping(
                source_id,
                source_guild_id,
                name,
                mirror_id,
                channel_type=int(EntityType.coerce(channel_type)) if channel_type is not None else None,
                category_id=category_id,
                mirror_category_id=mirror_category_id,
            )
        except sqlite3.Error as e:
            logger.error("[⛔] Could not persist mapping for source #%s: %s", source_id, e)
            return None

        self.invalidate(source_id)
        if previous is not None and int(previous["source_id"]) != int(source_id):
            self.invalidate(previous["source_id"])
        if mirror_guild_id is not None and mirror_id is not None and not is_placeholder(mirror_id):
            self.channel_cache.set((int(source_id), int(mirror_guild_id)), int(mirror_id))
        return dict(row) if row is not None else None

    def update_channel_name(self, source_id: int, source_guild_id: int, new_name: str) -> bool:
        updated = self.db.update_channel_name(source_id, source_guild_id, new_name)
        self.invalidate(source_id)
        return updated

    def invalidate(self, source_id: int, mirror_guild_id: Optional[int] = None) -> int:
        sid = int(source_id)
        if mirror_guild_id is not None:
            return 1 if self.channel_cache.pop((sid, int(mirror_guild_id))) is not None else 0
        return self.channel_cache.discard_where(lambda k: k[0] == sid)

    # ------------------------------------------------------------------- roles
    def resolve_mirror_role(
        self,
        source_role_id: int,
        source_guild_id: int,
        mirror_guild_id: int,
        *,
        role_name: Optional[str] = None,
    ) -> Optional[int]:
        """Mirror role id via cache, store, then a name match against live roles."""
        key = (int(source_role_id), int(mirror_guild_id))
        cached = self.role_cache.get(key)
        if cached is not None:
            return cached
        guild = self.bot.get_guild(int(mirror_guild_id))
        if guild is None:
            return None

        row = self.db.get_role_mapping(source_role_id, source_guild_id)
        if row is not None and row["mirror_id"]:
            role = guild.get_role(int(row["mirror_id"]))
            if role is not None:
                self.role_cache.set(key, role.id)
                return role.id

        name = role_name or (row["name"] if row is not None else None)
        if not name:
            source_guild = self._source_guild(mirror_guild_id)
            src_role = source_guild.get_role(int(source_role_id)) if source_guild else None
            name = src_role.name if src_role else None
        if not name or name == "@everyone":
            return None

        role = discord.utils.get(guild.roles, name=name)
        if role is None:
            return None
        self.register_role_mapping(source_role_id, source_guild_id, name, role.id, mirror_guild_id=mirror_guild_id)
        return role.id

    def register_role_mapping(
        self,
        source_id: int,
        source_guild_id: int,
        name: str,
        mirror_id: int,
        *,
        mirror_guild_id: Optional[int] = None,
    ) -> bool:
        try:
            self.db.upsert_role_mapping(source_id, source_guild_id, name, mirror_id)
        except sqlite3.Error as e:
            logger.error("[⛔] Could not persist role mapping for #%s: %s", source_id, e)
            return False
        sid = int(source_id)
        self.role_cache.discard_where(lambda k: k[0] == sid)
        if mirror_guild_id is not None and mirror_id:
            self.role_cache.set((sid, int(mirror_guild_id)), int(mirror_id))
        return True

    # ------------------------------------------------------------- maintenance
    def sweep(self) -> dict:
        notified = len(self.notified)
        self.notified.clear()
        channels = self.channel_cache.trim()
        roles = self.role_cache.trim()
        forced = self.pending.force_clear_if_oversized()
        if forced:
            logger.warning(
                "[🧹] Pending-creation set exceeded %d entries; force-cleared",
                self.pending.threshold,
            )
        logger.debug(
            "[🧹] Sweep: cleared %d notified marker(s), evicted %d channel / %d role cache entries",
            notified,
            channels,
            roles,
        )
        return {
            "notified_cleared": notified,
            "channels_evicted": channels,
            "roles_evicted": roles,
            "pending_forced": forced,
        }

    def start_maintenance(self) -> None:
        if self._maintenance_task and not self._maintenance_task.done():
            return
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("[⛔] Maintenance sweep failed")

    async def stop_maintenance(self) -> None:
        t, self._maintenance_task = self._maintenance_task, None
        if t and not t.done():
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict:
        return {
            "channel_cache": len(self.channel_cache),
            "role_cache": len(self.role_cache),
            "pending": len(self.pending),
            "notified": len(self.notified),
            **dict(self.counters),
        }
