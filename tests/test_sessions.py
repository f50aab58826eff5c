import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import discord
import pytest

from common.entities import placeholder_for
from common.errors import CreationFailed
from listener.queue import WorkspaceQueue
from listener.sessions import (
    Health,
    SessionManager,
    SessionState,
    WorkspaceSession,
    is_connection_reset,
)
from conftest import FakeChannel, fake_bot

S, M = 1, 2
MEDIA = discord.enums.try_enum(discord.ChannelType, 16)
HANDLERS = {
    "on_ready",
    "on_disconnect",
    "on_guild_channel_create",
    "on_thread_create",
    "on_message",
    "on_message_edit",
}


class FakeClient:
    def __init__(self):
        self.listeners = {}
        self.log = []
        self.guilds = {}
        self.user = "listener#0001"
        self.latency = 0.05
        self._stop = asyncio.get_running_loop().create_future()

    def add_listener(self, fn, name):
        self.listeners.setdefault(name, []).append(fn)

    def remove_listener(self, fn, name):
        self.listeners[name].remove(fn)
        self.log.append("remove")

    async def start(self, token, *, reconnect=True):
        self.token = token
        self.reconnect = reconnect
        await self._stop

    async def close(self):
        self.log.append("close")
        if not self._stop.done():
            self._stop.set_result(None)

    def fail(self, exc):
        if not self._stop.done():
            self._stop.set_exception(exc)

    def get_guild(self, gid):
        return self.guilds.get(gid)

    def is_closed(self):
        return self._stop.done()

    def is_ready(self):
        return not self._stop.done()

    async def dispatch(self, name, *args):
        for fn in list(self.listeners.get(name, [])):
            await fn(*args)


async def until(predicate, tries=200):
    for _ in range(tries):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


async def settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def parts(db, mirror_guild):
    clients = []

    def factory():
        client = FakeClient()
        clients.append(client)
        return client

    resolver = SimpleNamespace(
        attach_sessions=MagicMock(),
        on_created=None,
        resolve_mirror_channel=AsyncMock(return_value=None),
        ensure_mirror_category=AsyncMock(return_value=None),
        register_mapping=MagicMock(),
        owned_elsewhere=MagicMock(),
    )
    replicator = SimpleNamespace(
        can_manage_channels=MagicMock(return_value=True),
        find_existing=MagicMock(return_value=None),
        create_channel=AsyncMock(),
        find_thread=MagicMock(return_value=None),
        create_thread=AsyncMock(),
    )
    processor = SimpleNamespace(process_message=AsyncMock(), process_message_update=AsyncMock())
    manager = SessionManager(
        fake_bot(mirror_guild),
        db,
        resolver,
        replicator,
        SimpleNamespace(),
        processor=processor,
        event_log=MagicMock(),
        backfill=SimpleNamespace(run=AsyncMock()),
        client_factory=factory,
        reconnect_error_delay=0,
        reconnect_disconnect_delay=0,
        rebuild_pause=0,
        heartbeat_interval=3600,
    )
    return SimpleNamespace(
        manager=manager, clients=clients, resolver=resolver, replicator=replicator, processor=processor
    )


def idle_session(parts, source_guild):
    session = WorkspaceSession(M, S, "tok", WorkspaceQueue(str(M)))
    session.source_guild = source_guild
    parts.manager.sessions[M] = session
    return session


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_subscribes_and_connects(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        await settle()

        client = parts.clients[0]
        assert set(client.listeners) == HANDLERS
        assert client.token == "tok"
        assert client.reconnect is False
        assert mgr.state_of(M) is SessionState.CONNECTING
        assert mgr.credential_for(M) == "tok"
        parts.resolver.attach_sessions.assert_called_once_with(mgr)
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_ready_captures_snapshot(self, parts, db, source_guild):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        client = parts.clients[0]
        client.guilds[S] = source_guild

        await client.dispatch("on_ready")

        assert mgr.state_of(M) is SessionState.READY
        assert mgr.source_guild_for(M) is source_guild
        assert mgr.sessions[M].health is Health.CONNECTED
        assert db.get_guild_mapping(M)["source_guild_name"] == "source"
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_start_all_uses_stored_pairings(self, parts, db):
        db.upsert_guild_mapping(M, S, source_token="tok")
        db.upsert_guild_mapping(3, S)
        assert await parts.manager.start_all() == 1
        assert 3 not in parts.manager.sessions
        await parts.manager.stop_all()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, parts):
        first = await parts.manager.start(M, S, "tok")
        second = await parts.manager.start(M, S, "tok")
        assert first is second
        assert len(parts.clients) == 1
        await parts.manager.stop_all()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_error_and_disconnect_schedule_one_rebuild(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        await settle()
        old = parts.clients[0]

        await old.dispatch("on_disconnect")
        old.fail(ConnectionResetError("read ECONNRESET"))

        assert await until(lambda: mgr.state_of(M) is SessionState.CONNECTING and len(parts.clients) == 2)
        await settle()
        assert len(parts.clients) == 2
        assert mgr.sessions[M].reconnects == 1
        assert mgr.sessions[M].client is parts.clients[1]
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_schedule_reconnect_is_guarded(self, parts):
        mgr = parts.manager
        mgr.reconnect_disconnect_delay = 3600
        await mgr.start(M, S, "tok")
        assert mgr.schedule_reconnect(M, 3600, "first")
        assert not mgr.schedule_reconnect(M, 0, "second")
        assert mgr.state_of(M) is SessionState.RECONNECT_SCHEDULED
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_rebuild_unsubscribes_before_close(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        await settle()
        old = parts.clients[0]

        old.fail(ConnectionResetError("socket hang up"))
        assert await until(lambda: len(parts.clients) == 2)

        assert old.log == ["remove"] * len(HANDLERS) + ["close"]
        assert all(not fns for fns in old.listeners.values())
        assert set(parts.clients[1].listeners) == HANDLERS
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_events_on_old_client_are_ignored(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        old = parts.clients[0]
        handler = old.listeners["on_message"][0]
        old.fail(ConnectionResetError("ECONNRESET"))
        assert await until(lambda: len(parts.clients) == 2)

        await handler(SimpleNamespace(id=1, guild=SimpleNamespace(id=S), channel=SimpleNamespace(id=5)))

        assert len(mgr.sessions[M].queue) == 0
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_login_failure_is_fatal(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "bad")
        await settle()
        parts.clients[0].fail(discord.LoginFailure("Improper token has been passed."))
        await settle()

        session = mgr.sessions[M]
        assert session.dead
        assert session.health is Health.DEAD
        assert len(parts.clients) == 1
        await mgr.stop_all()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_is_terminal(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        await settle()
        client = parts.clients[0]

        assert await mgr.stop(M)

        assert mgr.state_of(M) is SessionState.STOPPED
        assert client.log[-1] == "close"
        assert mgr.credential_for(M) is None
        assert not mgr.schedule_reconnect(M, 0, "late error")
        await settle()
        assert len(parts.clients) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_rebuild(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        mgr.schedule_reconnect(M, 3600, "disconnected")

        await mgr.stop(M)
        await settle()

        assert mgr.state_of(M) is SessionState.STOPPED
        assert len(parts.clients) == 1

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        await mgr.stop(M)
        await mgr.start(M, S, "tok")
        assert mgr.state_of(M) is SessionState.CONNECTING
        assert len(parts.clients) == 2
        await mgr.stop_all()


class TestRouting:
    @pytest.mark.asyncio
    async def test_other_guild_events_are_dropped(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        client = parts.clients[0]

        await client.dispatch(
            "on_message", SimpleNamespace(id=1, guild=SimpleNamespace(id=99), channel=SimpleNamespace(id=5))
        )
        await client.dispatch("on_message", SimpleNamespace(id=2, guild=None, channel=SimpleNamespace(id=5)))
        await settle()

        parts.resolver.resolve_mirror_channel.assert_not_awaited()
        await mgr.stop_all()

    @pytest.mark.asyncio
    async def test_message_event_is_relayed(self, parts, db, source_guild, mirror_guild):
        mgr = parts.manager
        mirror = mirror_guild.channel("general", id=500)
        parts.resolver.resolve_mirror_channel.return_value = 500
        await mgr.start(M, S, "tok")
        client = parts.clients[0]
        msg = SimpleNamespace(id=42, guild=SimpleNamespace(id=S), channel=SimpleNamespace(id=111))

        await client.dispatch("on_message", msg)
        await mgr.sessions[M].queue.join()

        parts.resolver.resolve_mirror_channel.assert_awaited_once_with(111, S, M, allow_create=True)
        parts.processor.process_message.assert_awaited_once()
        assert parts.processor.process_message.await_args.args[1] is mirror
        assert db.is_message_processed(42)
        await mgr.stop_all()


class TestHandlers:
    @pytest.mark.asyncio
    async def test_processed_message_is_skipped(self, parts, db, source_guild):
        session = idle_session(parts, source_guild)
        db.mark_message_processed(42)
        await parts.manager.handle_message(
            session, SimpleNamespace(id=42, channel=SimpleNamespace(id=111))
        )
        parts.resolver.resolve_mirror_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_message_resolution_honours_auto_create_flag(self, parts, source_guild):
        session = idle_session(parts, source_guild)
        parts.manager.auto_create_on_message = False
        await parts.manager.handle_message(session, SimpleNamespace(id=42, channel=SimpleNamespace(id=111)))
        parts.resolver.resolve_mirror_channel.assert_awaited_once_with(111, S, M, allow_create=False)
        parts.processor.process_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_edit_never_creates(self, parts, source_guild, mirror_guild):
        session = idle_session(parts, source_guild)
        mirror_guild.channel("general", id=500)
        parts.resolver.resolve_mirror_channel.return_value = 500
        after = SimpleNamespace(id=42, channel=SimpleNamespace(id=111))

        await parts.manager.handle_message_update(session, SimpleNamespace(id=42), after)

        parts.resolver.resolve_mirror_channel.assert_awaited_once_with(111, S, M, allow_create=False)
        parts.processor.process_message_update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_new_channel_is_mirrored_and_backfilled(self, parts, source_guild, mirror_guild):
        session = idle_session(parts, source_guild)
        src = source_guild.channel("announcements", discord.ChannelType.news, id=111)
        created = mirror_guild.channel("announcements", id=500)
        parts.replicator.create_channel.return_value = created

        await parts.manager.handle_new_channel(session, src)
        await settle()

        kwargs = parts.resolver.register_mapping.call_args.kwargs
        assert parts.resolver.register_mapping.call_args.args == (111, S, "announcements", 500)
        assert kwargs["mirror_guild_id"] == M
        parts.manager.event_log.log_new_room.assert_called_once()
        parts.manager.backfill.run.assert_awaited_once_with(M, 111, created, source_guild, "tok")

    @pytest.mark.asyncio
    async def test_already_mirrored_channel_is_ignored(self, parts, db, source_guild, mirror_guild):
        session = idle_session(parts, source_guild)
        src = source_guild.channel("general", id=111)
        mirror_guild.channel("general", id=500)
        db.upsert_channel_mapping(111, S, "general", 500)

        await parts.manager.handle_new_channel(session, src)

        parts.replicator.create_channel.assert_not_awaited()
        parts.resolver.register_mapping.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_creation_leaves_placeholder(self, parts, source_guild):
        session = idle_session(parts, source_guild)
        src = source_guild.channel("general", id=111)
        parts.replicator.create_channel.side_effect = CreationFailed("missing access")

        await parts.manager.handle_new_channel(session, src)

        assert parts.resolver.register_mapping.call_args.args[3] == placeholder_for(111)
        parts.manager.backfill.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unmirrored_kind_is_ignored(self, parts, source_guild):
        session = idle_session(parts, source_guild)
        src = source_guild.channel("gallery", MEDIA, id=111)

        await parts.manager.handle_new_channel(session, src)

        parts.replicator.find_existing.assert_not_called()
        parts.replicator.create_channel.assert_not_awaited()
        parts.resolver.register_mapping.assert_not_called()

    @pytest.mark.asyncio
    async def test_adoption_skips_mirror_channels_owned_elsewhere(self, parts, source_guild):
        session = idle_session(parts, source_guild)
        src = source_guild.channel("general", id=111)
        parts.replicator.create_channel.side_effect = CreationFailed("missing access")

        await parts.manager.handle_new_channel(session, src)

        parts.resolver.owned_elsewhere.assert_called_once_with(111, S)
        assert parts.replicator.find_existing.call_args.kwargs["taken"] is parts.resolver.owned_elsewhere.return_value

    @pytest.mark.asyncio
    async def test_voice_channel_is_not_backfilled(self, parts, source_guild, mirror_guild):
        session = idle_session(parts, source_guild)
        src = source_guild.channel("lounge", discord.ChannelType.voice, id=111)
        parts.replicator.create_channel.return_value = mirror_guild.channel("lounge", discord.ChannelType.voice)

        await parts.manager.handle_new_channel(session, src)
        await settle()

        parts.manager.backfill.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_category_is_mapped(self, parts, source_guild):
        session = idle_session(parts, source_guild)
        cat = source_guild.channel("Info", discord.ChannelType.category, id=10)
        parts.resolver.ensure_mirror_category.return_value = SimpleNamespace(id=600)

        await parts.manager.handle_new_channel(session, cat)

        parts.resolver.ensure_mirror_category.assert_awaited_once_with(10, S, M, name="Info")
        parts.replicator.create_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_plain_thread_goes_through_resolver(self, parts, source_guild):
        session = idle_session(parts, source_guild)
        parent = source_guild.channel("general", id=111)
        thread = source_guild.thread("release", parent, id=222)

        await parts.manager.handle_new_thread(session, thread)

        parts.resolver.resolve_mirror_channel.assert_awaited_once_with(222, S, M, allow_create=True)

    @pytest.mark.asyncio
    async def test_forum_post_is_mirrored(self, parts, db, source_guild, mirror_guild):
        session = idle_session(parts, source_guild)
        forum = source_guild.channel("help", discord.ChannelType.forum, id=300)
        thread = source_guild.thread("how do I", forum, id=301)

        async def history(limit=None, oldest_first=None):
            yield SimpleNamespace(id=4242, content="first post")

        thread.history = history
        mirror_forum = mirror_guild.channel("📌│help", id=700)
        post = FakeChannel(701, "how do I", discord.ChannelType.public_thread, mirror_guild)
        parts.replicator.create_channel.return_value = mirror_forum
        parts.replicator.create_thread.return_value = post

        await parts.manager.handle_new_thread(session, thread)
        await settle()

        parts.replicator.create_thread.assert_awaited_once_with(mirror_forum, "how do I", content="first post")
        registered = [c.args[0] for c in parts.resolver.register_mapping.call_args_list]
        assert registered == [300, 301]
        assert db.is_message_processed(4242)
        parts.manager.event_log.log_admin_action.assert_called_once()
        parts.manager.backfill.run.assert_awaited_once_with(M, 301, post, source_guild, "tok")


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_reports_every_session(self, parts):
        mgr = parts.manager
        await mgr.start(M, S, "tok")
        status = mgr.status()
        assert status[str(M)]["state"] == "connecting"
        assert status[str(M)]["health"] == "reconnecting"
        assert not mgr.is_healthy()
        await mgr.stop_all()


class TestConnectionReset:
    @pytest.mark.parametrize(
        "exc",
        [
            ConnectionResetError(),
            aiohttp.ServerDisconnectedError(),
            asyncio.TimeoutError(),
            RuntimeError("read ECONNRESET"),
            OSError("other side closed"),
        ],
    )
    def test_reset_family(self, exc):
        assert is_connection_reset(exc)

    def test_wrapped_cause(self):
        try:
            try:
                raise ConnectionResetError("peer")
            except ConnectionResetError as inner:
                raise RuntimeError("gateway failed") from inner
        except RuntimeError as outer:
            assert is_connection_reset(outer)

    def test_other_errors(self):
        assert not is_connection_reset(ValueError("bad payload"))


class TestWorkspaceQueue:
    @pytest.mark.asyncio
    async def test_runs_in_order_and_survives_failures(self):
        queue = WorkspaceQueue("2")
        queue.start()
        seen = []

        async def job(n):
            await asyncio.sleep(0)
            if n == 2:
                raise RuntimeError("boom")
            seen.append(n)

        for n in range(5):
            queue.submit("job", job, n)
        await queue.join()

        assert seen == [0, 1, 3, 4]
        assert queue.processed == 4 and queue.failed == 1
        await queue.stop()
