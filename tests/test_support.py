import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock

import discord
import pytest

from common.config import Config
from common.logging_setup import GuildContextFilter, RedactFilter, log_context, register_secret
from common.rate_limiter import ActionType, RateLimitManager
from common.websockets import AdminBus
from mirror.discord_hooks import map_bucket
from mirror.notifier import PERMISSION_DENIED, ErrorNotifier, EventLog, find_error_channel, render_error
from conftest import FakeGuild, fake_bot, fake_ratelimit, http_error


def record(msg, *args):
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


class TestRateLimitManager:
    @pytest.mark.asyncio
    async def test_buckets_are_per_key(self):
        rl = RateLimitManager()
        rl.penalize(ActionType.CREATE_CHANNEL, 60, key=2)
        assert rl.remaining(ActionType.CREATE_CHANNEL, key=2) > 0
        assert rl.remaining(ActionType.CREATE_CHANNEL, key=3) == 0

    def test_penalize_without_key_hits_every_bucket(self):
        rl = RateLimitManager()
        rl.remaining(ActionType.THREAD, key=2)
        rl.remaining(ActionType.THREAD, key=3)
        rl.penalize(ActionType.THREAD, 30)
        assert rl.remaining(ActionType.THREAD, key=2) > 0
        assert rl.remaining(ActionType.THREAD, key=3) > 0
        assert rl.remaining(ActionType.EDIT_CHANNEL, key=2) == 0

    @pytest.mark.asyncio
    async def test_acquire_within_allowance(self):
        rl = RateLimitManager({ActionType.NOTIFY: (5, 10.0)})
        for _ in range(3):
            await rl.acquire(ActionType.NOTIFY, key=2)
        await rl.acquire(ActionType.CREATE_CHANNEL)
        rl.reset(ActionType.NOTIFY, key=2)
        assert rl.remaining(ActionType.NOTIFY, key=2) == 0


class TestConfig:
    def test_env_and_db_layering(self, db, monkeypatch):
        monkeypatch.setenv("BACKFILL_LIMIT", "500")
        monkeypatch.setenv("ENABLE_BACKFILL", "no")
        monkeypatch.setenv("RECONNECT_DELAY_ERROR", "12.5")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        db.set_config("ENABLE_BACKFILL", "yes")

        cfg = Config(db=db)

        assert cfg.BACKFILL_LIMIT == 50
        assert cfg.ENABLE_BACKFILL is True
        assert cfg.RECONNECT_DELAY_ERROR == 12.5
        assert cfg.LOG_LEVEL == "DEBUG"

    def test_bad_numbers_fall_back(self, db, monkeypatch):
        monkeypatch.setenv("HEARTBEAT_INTERVAL", "soon")
        monkeypatch.setenv("MIRROR_GUILD_ID", "abc")
        cfg = Config(db=db)
        assert cfg.HEARTBEAT_INTERVAL == 30.0
        assert cfg.mirror_guild_id == 0

    def test_seed_guild_mapping(self, db, monkeypatch):
        monkeypatch.setenv("MIRROR_GUILD_ID", "2")
        monkeypatch.setenv("SOURCE_GUILD_ID", "1")
        cfg = Config(db=db)
        assert cfg.seed_guild_mapping()
        assert not cfg.seed_guild_mapping()
        assert db.get_guild_mapping(2)["source_guild_id"] == 1


class TestLogging:
    def test_registered_secret_is_redacted(self):
        register_secret("s3cr3t-token")
        rec = record("connecting with %s", "Bot s3cr3t-token")
        RedactFilter().filter(rec)
        assert "s3cr3t-token" not in rec.getMessage()

    def test_guild_label_prefix(self):
        rec = record("handler failed")
        with log_context("2"):
            GuildContextFilter().filter(rec)
        assert rec.msg == "[2] handler failed"

        rec = record("outside")
        GuildContextFilter().filter(rec)
        assert rec.msg == "outside"


def maintenance_guild():
    guild = FakeGuild(2, "mirror")
    cat = guild.channel("🛠️ Maintenance", discord.ChannelType.category)
    error = guild.channel("error", category=cat)
    return guild, error


class TestNotifier:
    def test_find_error_channel(self):
        guild, error = maintenance_guild()
        assert find_error_channel(guild) is error
        assert find_error_channel(FakeGuild(3)) is None

    def test_render_permission_reason(self):
        text = render_error(111, "secret", PERMISSION_DENIED)
        assert "**#secret** (111)" in text
        assert "denied" in text

    @pytest.mark.asyncio
    async def test_posts_into_error_channel(self):
        guild, error = maintenance_guild()
        notifier = ErrorNotifier(fake_bot(guild), fake_ratelimit())

        msg_id = await notifier.send_error_notification(2, 111, "general")

        assert msg_id == error.sent[0].id
        assert "Channel mapping unresolved" in error.sent[0].content

    @pytest.mark.asyncio
    async def test_missing_channel_or_http_error(self):
        notifier = ErrorNotifier(fake_bot(FakeGuild(2)), fake_ratelimit())
        assert await notifier.send_error_notification(2, 111) is None

        guild, error = maintenance_guild()
        error.send = AsyncMock(side_effect=http_error(403))
        notifier = ErrorNotifier(fake_bot(guild), fake_ratelimit())
        assert await notifier.send_error_notification(2, 111) is None

    @pytest.mark.asyncio
    async def test_reply(self):
        guild, error = maintenance_guild()
        original = SimpleNamespace(reply=AsyncMock())
        error.fetch_message = AsyncMock(return_value=original)
        notifier = ErrorNotifier(fake_bot(guild), fake_ratelimit())

        assert await notifier.reply(2, 555, "recovered")

        error.fetch_message.assert_awaited_once_with(555)
        original.reply.assert_awaited_once_with("recovered")


class TestEventLog:
    @pytest.mark.asyncio
    async def test_publishes_to_bus(self):
        bus = SimpleNamespace(publish=AsyncMock(return_value=True))
        log = EventLog(bus)

        log.log_new_room(2, 111, "general", 500, kind="text")
        log.log_admin_action(2, "forum_post_mirrored", source_id="301")
        await log.drain()

        kinds = [c.args[0] for c in bus.publish.await_args_list]
        assert kinds == ["new_room", "admin_action"]
        assert bus.publish.await_args_list[0].args[1]["mirror_id"] == "500"

    def test_without_bus_or_loop(self):
        EventLog().log_new_room(2, 111, "general", 500)
        EventLog(SimpleNamespace(publish=AsyncMock())).log_admin_action(2, "noop")


class TestAdminBus:
    @pytest.mark.asyncio
    async def test_no_url_is_a_noop(self):
        bus = AdminBus("mirror")
        assert not await bus.status(state="ready")
        assert not await bus.log("hello")

    @pytest.mark.asyncio
    async def test_envelope_and_counters(self):
        bus = AdminBus("listener", admin_ws_url="ws://admin:8080/bus")
        bus.sender.send = AsyncMock(side_effect=[True, False])

        assert await bus.status(state="ready")
        assert not await bus.publish("new_room", "plain text")

        frame = bus.sender.send.await_args_list[0].args[0]
        assert frame["kind"] == "status" and frame["role"] == "listener"
        assert frame["payload"] == {"state": "ready"}
        assert bus.sender.send.await_args_list[1].args[0]["payload"] == {"text": "plain text"}
        assert (bus.published, bus.dropped) == (1, 1)


class TestRateLimitWatcher:
    @pytest.mark.parametrize(
        "route, action",
        [
            ("POST:/guilds/{guild_id}/channels", ActionType.CREATE_CHANNEL),
            ("PATCH:/channels/{channel_id}", ActionType.EDIT_CHANNEL),
            ("POST:/channels/{channel_id}/messages", ActionType.NOTIFY),
            ("POST:/channels/{channel_id}/messages/{message_id}/threads", ActionType.THREAD),
            ("GET:/users/@me", None),
        ],
    )
    def test_map_bucket(self, route, action):
        assert map_bucket(f"123:{route}")[0] is action
