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
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import aiohttp
import discord

from common.constants import CONNECTION_RESET_MARKERS
from common.db import DBManager
from common.entities import EntityType, SourceEntity, is_placeholder, placeholder_for
from common.errors import CreationFailed
from common.logging_setup import register_secret
from common.websockets import AdminBus
from listener.backfill import BackfillRunner
from listener.queue import WorkspaceQueue

logger = logging.getLogger("listener.sessions")


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    STOPPED = "stopped"


class Health(Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DEAD = "dead"


class MessageProcessor(Protocol):
    async def process_message(self, message: Any, mirror_channel: Any, source_guild: Any) -> Any: ...

    async def process_message_update(
        self, before: Any, after: Any, mirror_channel: Any, source_guild: Any
    ) -> Any: ...


RESET_EXCEPTIONS = (
    ConnectionResetError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerDisconnectedError,
    discord.ConnectionClosed,
    asyncio.TimeoutError,
)


def is_connection_reset(exc: BaseException) -> bool:
    """True for the connection-reset family, including wrapped causes."""
    seen = 0
    while exc is not None and seen < 4:
        if isinstance(exc, RESET_EXCEPTIONS):
            return True
        text = str(exc)
        if any(marker in text for marker in CONNECTION_RESET_MARKERS):
            return True
        exc = exc.__cause__ or exc.__context__
        seen += 1
    return False


def default_client_factory() -> discord.Client:
    intents = discord.Intents.default()
    intents.guilds = True
    intents.messages = True
    intents.message_content = True
    return discord.Client(intents=intents)


@dataclass
class WorkspaceSession:
    mirror_guild_id: int
    source_guild_id: int
    token: str
    queue: WorkspaceQueue
    state: SessionState = SessionState.DISCONNECTED
    client: Optional[discord.Client] = None
    source_guild: Optional[discord.Guild] = None
    listeners: list = field(default_factory=list)
    runner: Optional[asyncio.Task] = None
    heartbeat: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None
    generation: int = 0
    reconnects: int = 0
    dead: bool = False
    last_error: Optional[str] = None
    events: Counter = field(default_factory=Counter)

    @property
    def health(self) -> Health:
        if self.dead or self.state is SessionState.STOPPED:
            return Health.DEAD
        if self.state is SessionState.READY:
            return Health.CONNECTED
        return Health.RECONNECTING


class SessionManager:
    """
    Registry of source-guild listeners, one per mirror guild.

    Each session owns a gateway client whose events are pushed onto that
    guild's WorkspaceQueue. Disconnects tear the client down completely and
    build a new one after a fixed delay; only one rebuild is ever pending per
    guild.
    """

    def __init__(
        self,
        bot: discord.Client,
        db: DBManager,
        resolver,
        replicator,
        rest,
        *,
        processor: Optional[MessageProcessor] = None,
        event_log=None,
        bus: Optional[AdminBus] = None,
        backfill: Optional[BackfillRunner] = None,
        client_factory: Callable[[], discord.Client] = default_client_factory,
        default_token: Optional[str] = None,
        auto_create_on_message: bool = True,
        enable_backfill: bool = True,
        reconnect_error_delay: float = 30.0,
        reconnect_disconnect_delay: float = 15.0,
        rebuild_pause: float = 5.0,
        heartbeat_interval: float = 30.0,
    ):
        self.bot = bot
        self.db = db
        self.resolver = resolver
        self.replicator = replicator
        self.rest = rest
        self.processor = processor
        self.event_log = event_log
        self.bus = bus
        self.backfill = backfill or BackfillRunner(rest, db, processor)
        self.client_factory = client_factory
        self.default_token = default_token
        self.auto_create_on_message = auto_create_on_message
        self.enable_backfill = enable_backfill

        self.reconnect_error_delay = reconnect_error_delay
        self.reconnect_disconnect_delay = reconnect_disconnect_delay
        self.rebuild_pause = rebuild_pause
        self.heartbeat_interval = heartbeat_interval

        self.sessions: dict[int, WorkspaceSession] = {}
        self._reconnecting: set[int] = set()
        self._tasks: set[asyncio.Task] = set()

        resolver.attach_sessions(self)
        resolver.on_created = self._on_entity_created

    # ------------------------------------------------------------ source access
    def credential_for(self, mirror_guild_id: int) -> Optional[str]:
        s = self.sessions.get(int(mirror_guild_id))
        if s is None or s.state is SessionState.STOPPED:
            return None
        return s.token

    def source_guild_for(self, mirror_guild_id: int) -> Optional[discord.Guild]:
        s = self.sessions.get(int(mirror_guild_id))
        return s.source_guild if s is not None else None

    def state_of(self, mirror_guild_id: int) -> Optional[SessionState]:
        s = self.sessions.get(int(mirror_guild_id))
        return s.state if s is not None else None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ---------------------------------------------------------------- lifecycle
    async def start(
        self, mirror_guild_id: int, source_guild_id: int, token: Optional[str] = None
    ) -> Optional[WorkspaceSession]:
        mid = int(mirror_guild_id)
        token = token or self.default_token
        if not token:
            logger.error("[⛔] No source credential for mirror guild %s; session not started", mid)
            return None

        existing = self.sessions.get(mid)
        if existing is not None and existing.state is not SessionState.STOPPED:
            logger.debug("Session for mirror guild %s already running", mid)
            return existing

        register_secret(token)
        session = WorkspaceSession(
            mirror_guild_id=mid,
            source_guild_id=int(source_guild_id),
            token=token,
            queue=WorkspaceQueue(label=str(mid)),
        )
        self.sessions[mid] = session
        session.queue.start()
        await self._connect(session)
        return session

    async def start_all(self) -> int:
        started = 0
        for row in self.db.get_all_guild_mappings():
            s = await self.start(
                row["mirror_guild_id"], row["source_guild_id"], row["source_token"]
            )
            if s is not None:
                started += 1
        logger.info("[🔌] %d source session(s) started", started)
        return started

    async def stop(self, mirror_guild_id: int) -> bool:
        """Operator stop. STOPPED is terminal; only a new start() brings the guild back."""
        mid = int(mirror_guild_id)
        session = self.sessions.get(mid)
        if session is None:
            return False
        session.state = SessionState.STOPPED
        self._reconnecting.discard(mid)
        t = session.reconnect_task
        if t is not None and not t.done() and t is not asyncio.current_task():
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
        await self._teardown(session)
        await session.queue.stop()
        logger.info("[🔌] Session for mirror guild %s stopped", mid)
        self._publish_status(session)
        return True

    async def stop_all(self) -> None:
        for mid in list(self.sessions):
            with contextlib.suppress(Exception):
                await self.stop(mid)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _connect(self, session: WorkspaceSession) -> None:
        session.state = SessionState.CONNECTING
        session.generation += 1
        client = self.client_factory()
        session.client = client
        session.source_guild = None
        self._subscribe(session, client)
        session.runner = asyncio.create_task(self._run_client(session, client))
        session.heartbeat = asyncio.create_task(self._heartbeat_loop(session, client))
        logger.info(
            "[🔌] Connecting source session for mirror guild %s (generation %d)",
            session.mirror_guild_id,
            session.generation,
        )

    def _subscribe(self, session: WorkspaceSession, client: discord.Client) -> None:
        async def on_ready():
            await self._on_ready(session, client)

        async def on_disconnect():
            self._on_disconnect(session, client)

        async def on_guild_channel_create(channel):
            if self._accepts(session, client, getattr(channel, "guild", None)):
                session.queue.submit("channel_create", self.handle_new_channel, session, channel)

        async def on_thread_create(thread):
            if self._accepts(session, client, getattr(thread, "guild", None)):
                session.queue.submit("thread_create", self.handle_new_thread, session, thread)

        async def on_message(message):
            if self._accepts(session, client, getattr(message, "guild", None)):
                session.queue.submit("message", self.handle_message, session, message)

        async def on_message_edit(before, after):
            if self._accepts(session, client, getattr(after, "guild", None)):
                session.queue.submit("message_edit", self.handle_message_update, session, before, after)

        for fn in (
            on_ready,
            on_disconnect,
            on_guild_channel_create,
            on_thread_create,
            on_message,
            on_message_edit,
        ):
            client.add_listener(fn, fn.__name__)
            session.listeners.append((fn.__name__, fn))

    def _unsubscribe(self, session: WorkspaceSession, client: discord.Client) -> None:
        for name, fn in session.listeners:
            with contextlib.suppress(Exception):
                client.remove_listener(fn, name)
        session.listeners.clear()

    def _accepts(self, session: WorkspaceSession, client, guild) -> bool:
        if client is not session.client or session.state is SessionState.STOPPED:
            return False
        return guild is not None and int(guild.id) == session.source_guild_id

    async def _teardown(self, session: WorkspaceSession) -> None:
        """Unsubscribe every handler first, then release the connection."""
        client, session.client = session.client, None
        hb, session.heartbeat = session.heartbeat, None
        runner, session.runner = session.runner, None
        if hb is not None and not hb.done():
            hb.cancel()
        if client is not None:
            self._unsubscribe(session, client)
            with contextlib.suppress(Exception):
                await client.close()
        if runner is not None and not runner.done() and runner is not asyncio.current_task():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await runner
        session.source_guild = None

    async def _run_client(self, session: WorkspaceSession, client: discord.Client) -> None:
        try:
            await client.start(session.token, reconnect=False)
        except asyncio.CancelledError:
            raise
        except discord.LoginFailure as e:
            if client is not session.client:
                return
            session.dead = True
            session.state = SessionState.DISCONNECTED
            session.last_error = str(e)
            logger.error(
                "[⛔] Source credential for mirror guild %s was rejected: %s",
                session.mirror_guild_id,
                e,
            )
            self._publish_status(session)
            return
        except Exception as e:
            if client is not session.client or session.state is SessionState.STOPPED:
                return
            session.last_error = f"{type(e).__name__}: {e}"
            if is_connection_reset(e):
                self.schedule_reconnect(
                    session.mirror_guild_id, self.reconnect_error_delay, f"connection reset ({e})"
                )
            else:
                session.dead = True
                session.state = SessionState.DISCONNECTED
                logger.exception(
                    "[⛔] Source session for mirror guild %s died", session.mirror_guild_id
                )
                self._publish_status(session)
            return

        if client is session.client and session.state is not SessionState.STOPPED:
            self.schedule_reconnect(
                session.mirror_guild_id, self.reconnect_disconnect_delay, "gateway closed"
            )

    def _on_disconnect(self, session: WorkspaceSession, client) -> None:
        if client is not session.client or session.state is SessionState.STOPPED:
            return
        session.events["disconnects"] += 1
        self.schedule_reconnect(
            session.mirror_guild_id, self.reconnect_disconnect_delay, "disconnected"
        )

    def schedule_reconnect(self, mirror_guild_id: int, delay: float, reason: str) -> bool:
        """Schedule one full rebuild; further calls are ignored until it has run."""
        mid = int(mirror_guild_id)
        session = self.sessions.get(mid)
        if session is None or session.state is SessionState.STOPPED:
            return False
        if mid in self._reconnecting:
            logger.debug("Reconnect for mirror guild %s already scheduled (%s)", mid, reason)
            return False
        self._reconnecting.add(mid)
        session.state = SessionState.RECONNECT_SCHEDULED
        logger.warning(
            "[🔌] Source session for mirror guild %s lost (%s); rebuilding in %ss",
            mid,
            reason,
            delay,
        )
        session.reconnect_task = asyncio.create_task(self._reconnect_after(session, delay))
        self._publish_status(session)
        return True

    async def _reconnect_after(self, session: WorkspaceSession, delay: float) -> None:
        mid = session.mirror_guild_id
        try:
            await asyncio.sleep(delay)
            if session.state is SessionState.STOPPED or self.sessions.get(mid) is not session:
                return
            await self._teardown(session)
            if self.rebuild_pause > 0:
                await asyncio.sleep(self.rebuild_pause)
            if session.state is SessionState.STOPPED:
                return
            session.reconnects += 1
            await self._connect(session)
        except asyncio.CancelledError:
            raise
        except Exception:
            session.dead = True
            logger.exception("[⛔] Rebuild of source session for mirror guild %s failed", mid)
        finally:
            self._reconnecting.discard(mid)

    async def _heartbeat_loop(self, session: WorkspaceSession, client: discord.Client) -> None:
        """Observe only; recovery happens exclusively through schedule_reconnect."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if client is not session.client:
                return
            if session.state is not SessionState.READY:
                continue
            if client.is_closed() or not client.is_ready():
                logger.warning(
                    "[💓] Source session for mirror guild %s is not ready (closed=%s)",
                    session.mirror_guild_id,
                    client.is_closed(),
                )
            else:
                logger.debug(
                    "[💓] mirror guild %s ok, latency %.0fms",
                    session.mirror_guild_id,
                    (client.latency or 0) * 1000,
                )

    async def _on_ready(self, session: WorkspaceSession, client: discord.Client) -> None:
        if client is not session.client:
            return
        guild = client.get_guild(session.source_guild_id)
        session.source_guild = guild
        session.state = SessionState.READY
        session.dead = False
        session.events["ready"] += 1
        if guild is None:
            logger.error(
                "[⛔] Source credential for mirror guild %s cannot see source guild %s",
                session.mirror_guild_id,
                session.source_guild_id,
            )
        else:
            self.db.upsert_guild_mapping(
                session.mirror_guild_id, session.source_guild_id, guild.name
            )
            logger.info(
                "[🤖] Listening to %s for mirror guild %s as %s",
                guild.name,
                session.mirror_guild_id,
                client.user,
            )
        self._publish_status(session)

    def _publish_status(self, session: WorkspaceSession) -> None:
        if self.bus is None:
            return
        self._spawn(
            self.bus.status(
                mirror_guild_id=str(session.mirror_guild_id),
                state=session.state.value,
                health=session.health.value,
                reconnects=session.reconnects,
            )
        )

    # ---------------------------------------------------------------- handlers
    def _already_mirrored(self, source_id: int, source_guild_id: int, guild) -> bool:
        row = self.db.get_channel_mapping(source_id, source_guild_id)
        if row is None:
            return False
        if row["blacklisted"]:
            return True
        mid = row["mirror_id"]
        if not mid or is_placeholder(mid):
            return False
        return guild.get_channel_or_thread(int(mid)) is not None

    async def handle_new_channel(self, session: WorkspaceSession, channel) -> None:
        session.events["channel_create"] += 1
        mid, sgid = session.mirror_guild_id, session.source_guild_id
        guild = self.bot.get_guild(mid)
        if guild is None:
            return
        if EntityType.try_coerce(channel.type) is None:
            logger.debug("Ignoring create of %s channel #%s; kind not mirrored", channel.type, channel.id)
            return
        entity = SourceEntity.from_channel(channel)
        if entity.type.is_thread:
            await self.handle_new_thread(session, channel)
            return
        if entity.type in (EntityType.DM, EntityType.GROUP_DM):
            return
        if self._already_mirrored(entity.id, sgid, guild):
            logger.debug("Channel '%s' #%s already mirrored; ignoring create event", entity.name, entity.id)
            return

        if entity.type.is_category:
            cat = await self.resolver.ensure_mirror_category(entity.id, sgid, mid, name=entity.name)
            if cat is not None and self.event_log:
                self.event_log.log_new_room(mid, entity.id, entity.name, cat.id, kind="category")
            return

        if not self.replicator.can_manage_channels(guild):
            logger.warning("[⚠️] Cannot create '%s' in guild %s: missing Manage Channels", entity.name, mid)
            return

        category = None
        if entity.parent_id:
            parent = getattr(channel, "category", None)
            category = await self.resolver.ensure_mirror_category(
                entity.parent_id, sgid, mid, name=getattr(parent, "name", None)
            )

        ch = self.replicator.find_existing(
            guild, entity.name, entity.type, taken=self.resolver.owned_elsewhere(entity.id, sgid)
        )
        created = ch is None
        if created:
            try:
                ch = await self.replicator.create_channel(guild, entity, category)
            except CreationFailed as e:
                logger.warning("[⚠️] Mirror of new channel '%s' #%s failed: %s", entity.name, entity.id, e)
                self.resolver.register_mapping(
                    entity.id,
                    sgid,
                    entity.name,
                    placeholder_for(entity.id),
                    channel_type=entity.type,
                    category_id=entity.parent_id,
                )
                return

        self.resolver.register_mapping(
            entity.id,
            sgid,
            entity.name,
            ch.id,
            channel_type=entity.type,
            category_id=entity.parent_id,
            mirror_category_id=category.id if category else None,
            mirror_guild_id=mid,
        )
        if created:
            if self.event_log:
                self.event_log.log_new_room(
                    mid, entity.id, entity.name, ch.id, kind=entity.type.name.lower(), via="event"
                )
            self._on_entity_created(mid, entity.id, entity.type, ch)

    async def handle_new_thread(self, session: WorkspaceSession, thread) -> None:
        session.events["thread_create"] += 1
        parent = getattr(thread, "parent", None)
        if parent is None:
            return
        if EntityType.try_coerce(parent.type) is EntityType.FORUM:
            await self.handle_new_forum_post(session, thread, parent)
            return
        await self.resolver.resolve_mirror_channel(
            thread.id, session.source_guild_id, session.mirror_guild_id, allow_create=True
        )

    async def handle_new_forum_post(self, session: WorkspaceSession, thread, forum) -> None:
        mid, sgid = session.mirror_guild_id, session.source_guild_id
        guild = self.bot.get_guild(mid)
        if guild is None:
            return
        if self._already_mirrored(thread.id, sgid, guild):
            return

        forum_entity = SourceEntity.from_channel(forum)
        forum_mirror = None
        row = self.db.get_channel_mapping(forum.id, sgid)
        if row is not None and row["mirror_id"] and not is_placeholder(row["mirror_id"]):
            forum_mirror = guild.get_channel(int(row["mirror_id"]))
        if forum_mirror is None:
            forum_mirror = self.replicator.find_existing(
                guild,
                forum_entity.name,
                EntityType.FORUM,
                taken=self.resolver.owned_elsewhere(forum.id, sgid),
            )
            created_forum = forum_mirror is None
            category = None
            if created_forum:
                if forum_entity.parent_id:
                    category = await self.resolver.ensure_mirror_category(
                        forum_entity.parent_id, sgid, mid
                    )
                try:
                    forum_mirror = await self.replicator.create_channel(guild, forum_entity, category)
                except CreationFailed as e:
                    logger.warning("[⚠️] Forum '%s' could not be mirrored: %s", forum_entity.name, e)
                    return
            self.resolver.register_mapping(
                forum.id,
                sgid,
                forum_entity.name,
                forum_mirror.id,
                channel_type=EntityType.FORUM,
                category_id=forum_entity.parent_id,
                mirror_category_id=category.id if category else None,
                mirror_guild_id=mid,
            )
            if created_forum and self.event_log:
                self.event_log.log_new_room(mid, forum.id, forum_entity.name, forum_mirror.id, kind="forum")

        content, starter_id = await self._starter_message(thread)
        post = self.replicator.find_thread(forum_mirror, thread.name)
        created = post is None
        if created:
            try:
                post = await self.replicator.create_thread(forum_mirror, thread.name, content=content)
            except CreationFailed as e:
                logger.warning("[⚠️] Forum post '%s' could not be mirrored: %s", thread.name, e)
                self.resolver.register_mapping(
                    thread.id,
                    sgid,
                    thread.name,
                    placeholder_for(thread.id),
                    channel_type=EntityType.coerce(thread.type),
                    category_id=forum.id,
                )
                return
            if starter_id is not None:
                self.db.mark_message_processed(starter_id, thread.id, post.id, mid)

        self.resolver.register_mapping(
            thread.id,
            sgid,
            thread.name,
            post.id,
            channel_type=EntityType.coerce(thread.type),
            category_id=forum.id,
            mirror_category_id=forum_mirror.id,
            mirror_guild_id=mid,
        )
        if created:
            if self.event_log:
                self.event_log.log_new_room(mid, thread.id, thread.name, post.id, kind="forum_post")
                self.event_log.log_admin_action(
                    mid, "forum_post_mirrored", source_id=str(thread.id), forum=forum_entity.name
                )
            self._on_entity_created(mid, thread.id, EntityType.coerce(thread.type), post)

    async def _starter_message(self, thread) -> tuple[Optional[str], Optional[int]]:
        try:
            async for m in thread.history(limit=1, oldest_first=True):
                if m.content:
                    return m.content[:2000], m.id
        except discord.HTTPException as e:
            logger.debug("Starter message of thread #%s unavailable: %s", thread.id, e)
        return None, None

    async def handle_message(self, session: WorkspaceSession, message) -> None:
        session.events["messages"] += 1
        if self.db.is_message_processed(message.id):
            return
        mid = session.mirror_guild_id
        mirror_id = await self.resolver.resolve_mirror_channel(
            message.channel.id,
            session.source_guild_id,
            mid,
            allow_create=self.auto_create_on_message,
        )
        if mirror_id is None:
            return
        if self.processor is None:
            logger.debug("No message processor configured; message %s not relayed", message.id)
            return
        guild = self.bot.get_guild(mid)
        mirror_channel = guild.get_channel_or_thread(mirror_id) if guild else None
        if mirror_channel is None:
            return
        await self.processor.process_message(message, mirror_channel, session.source_guild)
        self.db.mark_message_processed(message.id, message.channel.id, mirror_id, mid)
        session.events["relayed"] += 1

    async def handle_message_update(self, session: WorkspaceSession, before, after) -> None:
        session.events["message_edits"] += 1
        if self.processor is None:
            return
        mid = session.mirror_guild_id
        mirror_id = await self.resolver.resolve_mirror_channel(
            after.channel.id, session.source_guild_id, mid, allow_create=False
        )
        if mirror_id is None:
            return
        guild = self.bot.get_guild(mid)
        mirror_channel = guild.get_channel_or_thread(mirror_id) if guild else None
        if mirror_channel is None:
            return
        await self.processor.process_message_update(before, after, mirror_channel, session.source_guild)

    # ----------------------------------------------------------------- backfill
    def _on_entity_created(self, mirror_guild_id: int, source_id: int, etype: EntityType, mirror_channel) -> None:
        if not self.enable_backfill:
            return
        if etype.is_text_like or etype.is_thread:
            self.schedule_backfill(mirror_guild_id, source_id, mirror_channel)

    def schedule_backfill(self, mirror_guild_id: int, source_id: int, mirror_channel) -> Optional[asyncio.Task]:
        session = self.sessions.get(int(mirror_guild_id))
        if session is None or session.state is SessionState.STOPPED:
            return None
        return self._spawn(
            self.backfill.run(
                session.mirror_guild_id,
                int(source_id),
                mirror_channel,
                session.source_guild,
                session.token,
            )
        )

    def backfill_recovered(self, mirror_guild_id: int, source_id: int, mirror_id: int) -> None:
        guild = self.bot.get_guild(int(mirror_guild_id))
        channel = guild.get_channel_or_thread(int(mirror_id)) if guild else None
        if channel is not None and self.enable_backfill:
            self.schedule_backfill(mirror_guild_id, source_id, channel)

    # ------------------------------------------------------------------ status
    def status(self) -> dict:
        return {
            str(mid): {
                "source_guild_id": str(s.source_guild_id),
                "state": s.state.value,
                "health": s.health.value,
                "generation": s.generation,
                "reconnects": s.reconnects,
                "queued": len(s.queue),
                "last_error": s.last_error,
                "events": dict(s.events),
            }
            for mid, s in self.sessions.items()
        }

    def is_healthy(self) -> bool:
        live = [s for s in self.sessions.values() if s.state is not SessionState.STOPPED]
        return bool(live) and all(s.health is Health.CONNECTED for s in live)
