import itertools
import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "code"))

from common.db import DBManager  # noqa: E402

_ids = itertools.count(900_000)

TEXT_TYPES = (discord.ChannelType.text, discord.ChannelType.news)


class FakeChannel:
    """Enough of a py-cord guild channel / thread for the resolver and replicator."""

    def __init__(self, id, name, type=discord.ChannelType.text, guild=None, *, category=None, parent=None):
        self.id = id
        self.name = name
        self.type = type
        self.guild = guild
        self.category = category
        self.category_id = category.id if category is not None else None
        self.parent = parent
        self.parent_id = parent.id if parent is not None else None
        self.topic = None
        self.nsfw = False
        self.position = 0
        self.bitrate = None
        self.user_limit = None
        self.threads = []
        self.channels = []
        self.sent = []
        self.edit = AsyncMock(side_effect=self._edit)

    async def _edit(self, **kwargs):
        if "name" in kwargs:
            self.name = kwargs["name"]
        if "type" in kwargs:
            self.type = kwargs["type"]

    @property
    def text_channels(self):
        return [c for c in self.channels if c.type in TEXT_TYPES]

    async def create_thread(self, name, **kwargs):
        th = FakeChannel(next(_ids), name, discord.ChannelType.public_thread, self.guild, parent=self)
        th.create_kwargs = kwargs
        self.threads.append(th)
        if self.guild is not None:
            self.guild.add(th)
            self.guild.created.append(th)
        return th

    async def send(self, content):
        msg = SimpleNamespace(id=next(_ids), content=content)
        self.sent.append(msg)
        return msg


class FakeGuild:
    def __init__(self, id, name="guild", *, features=(), manage_channels=True):
        self.id = id
        self.name = name
        self.features = list(features)
        self.bitrate_limit = 96000
        self.me = SimpleNamespace(guild_permissions=SimpleNamespace(manage_channels=manage_channels))
        self.roles = []
        self.created = []
        self._channels = {}
        self._threads = {}

    # ---------- cache views ----------
    def add(self, ch):
        ch.guild = self
        if ch.type in (
            discord.ChannelType.public_thread,
            discord.ChannelType.private_thread,
            discord.ChannelType.news_thread,
        ):
            self._threads[ch.id] = ch
        else:
            self._channels[ch.id] = ch
            if ch.category is not None:
                ch.category.channels.append(ch)
        return ch

    def channel(self, name, type=discord.ChannelType.text, *, id=None, category=None):
        return self.add(FakeChannel(id or next(_ids), name, type, self, category=category))

    def thread(self, name, parent, *, id=None):
        th = FakeChannel(id or next(_ids), name, discord.ChannelType.public_thread, self, parent=parent)
        parent.threads.append(th)
        return self.add(th)

    @property
    def channels(self):
        return list(self._channels.values())

    @property
    def text_channels(self):
        return [c for c in self._channels.values() if c.type in TEXT_TYPES]

    @property
    def categories(self):
        return [c for c in self._channels.values() if c.type == discord.ChannelType.category]

    def get_channel(self, id):
        return self._channels.get(int(id))

    def get_thread(self, id):
        return self._threads.get(int(id))

    def get_channel_or_thread(self, id):
        return self._channels.get(int(id)) or self._threads.get(int(id))

    def get_role(self, id):
        return next((r for r in self.roles if r.id == int(id)), None)

    # ---------- mutations ----------
    async def _create(self, name, type, category=None, **kwargs):
        ch = FakeChannel(next(_ids), name, type, self, category=category)
        ch.create_kwargs = kwargs
        self.add(ch)
        self.created.append(ch)
        return ch

    async def create_category(self, name):
        return await self._create(name, discord.ChannelType.category)

    async def create_text_channel(self, name, category=None, **kwargs):
        return await self._create(name, discord.ChannelType.text, category, **kwargs)

    async def create_voice_channel(self, name, category=None, **kwargs):
        return await self._create(name, discord.ChannelType.voice, category, **kwargs)

    async def create_stage_channel(self, name, category=None, **kwargs):
        return await self._create(name, discord.ChannelType.stage_voice, category, **kwargs)

    async def create_forum_channel(self, name, category=None, **kwargs):
        return await self._create(name, discord.ChannelType.forum, category, **kwargs)


def http_error(status=400, text="nope"):
    return discord.HTTPException(SimpleNamespace(status=status, reason="Bad Request"), text)


def fake_bot(*guilds):
    by_id = {g.id: g for g in guilds}
    return SimpleNamespace(get_guild=lambda gid: by_id.get(int(gid)), user="mirror#0001")


def fake_ratelimit():
    return SimpleNamespace(acquire=AsyncMock(), penalize=MagicMock())


def fake_sessions(source_guild, token="source-token"):
    return SimpleNamespace(
        credential_for=lambda mid: token,
        source_guild_for=lambda mid: source_guild,
    )


@pytest.fixture
def db(tmp_path):
    manager = DBManager(str(tmp_path / "data.db"))
    yield manager
    manager.close()


@pytest.fixture
def source_guild():
    return FakeGuild(1, "source")


@pytest.fixture
def mirror_guild():
    return FakeGuild(2, "mirror")
