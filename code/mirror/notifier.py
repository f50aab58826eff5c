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
import logging
import time
from typing import Optional

import discord

from common.rate_limiter import ActionType, RateLimitManager
from common.websockets import AdminBus

logger = logging.getLogger("mirror.notifier")

NOT_FOUND = "not_found"
PERMISSION_DENIED = "permission_denied"


def find_error_channel(guild: discord.Guild) -> Optional[discord.TextChannel]:
    """The `error` text channel inside the first category whose name contains 'maintenance'."""
    category = next(
        (c for c in guild.categories if "maintenance" in (c.name or "").lower()),
        None,
    )
    if category is None:
        return None
    return next((ch for ch in category.text_channels if ch.name == "error"), None)


def render_error(source_id: int, name: Optional[str], reason: str) -> str:
    label = f"**#{name}** ({source_id})" if name else f"ID `{source_id}`"
    if reason == PERMISSION_DENIED:
        problem = "🚫 **Problem:** access to the source channel was denied (missing permissions)"
        hints = (
            "💡 **Possible causes:**\n"
            "• the source credential cannot see this channel\n"
            "• the channel is private or restricted to some roles\n"
            "• this channel has been blacklisted automatically"
        )
    else:
        problem = "⚠️ **Problem:** no matching mirror channel was found"
        hints = (
            "💡 **Possible causes:**\n"
            "• the channel has not been created on the mirror yet\n"
            "• the mapping is missing from the database\n"
            "• the mirror channel was deleted"
        )
    return (
        "🚨 **Channel mapping unresolved**\n\n"
        f"📍 **Source channel:** {label}\n"
        f"🔍 **Source ID:** `{source_id}`\n"
        f"{problem}\n"
        f"🕐 **Timestamp:** <t:{int(time.time())}:f>\n\n"
        f"{hints}"
    )


class ErrorNotifier:
    """Posts unresolved-mapping alerts into the mirror guild's maintenance/#error channel."""

    def __init__(self, bot: discord.Client, ratelimit: RateLimitManager):
        self.bot = bot
        self.ratelimit = ratelimit

    async def send_error_notification(
        self,
        mirror_guild_id: int,
        source_id: int,
        name: Optional[str] = None,
        reason: str = NOT_FOUND,
    ) -> Optional[int]:
        guild = self.bot.get_guild(int(mirror_guild_id))
        if guild is None:
            return None
        channel = find_error_channel(guild)
        if channel is None:
            logger.debug("No maintenance/#error channel in guild %s; notification dropped", mirror_guild_id)
            return None
        try:
            await self.ratelimit.acquire(ActionType.NOTIFY, key=mirror_guild_id)
            msg = await channel.send(render_error(source_id, name, reason))
            return msg.id
        except discord.HTTPException as e:
            logger.warning("[⚠️] Could not post error notification for #%s: %s", source_id, e)
            return None

    async def reply(self, mirror_guild_id: int, message_id: int, text: str) -> bool:
        """Reply under an earlier notification; used by auto-recovery to report progress."""
        guild = self.bot.get_guild(int(mirror_guild_id))
        channel = find_error_channel(guild) if guild else None
        if channel is None:
            return False
        try:
            await self.ratelimit.acquire(ActionType.NOTIFY, key=mirror_guild_id)
            original = await channel.fetch_message(int(message_id))
            await original.reply(text)
            return True
        except discord.HTTPException as e:
            logger.debug("Reply to notification %s failed: %s", message_id, e)
            return False


class EventLog:
    """
    Append-only audit trail of structural changes. Calls return immediately;
    the admin bus publish runs in a background task.
    """

    def __init__(self, bus: Optional[AdminBus] = None):
        self.bus = bus
        self._tasks: set[asyncio.Task] = set()

    def _publish(self, kind: str, payload: dict) -> None:
        if self.bus is None:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.bus.publish(kind, payload))
        except RuntimeError:
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def log_new_room(
        self,
        mirror_guild_id: int,
        source_id: int,
        name: str,
        mirror_id: int,
        *,
        kind: str = "channel",
        via: str = "event",
    ) -> None:
        logger.info(
            "[🆕] New %s '%s' source #%s → mirror #%s (guild %s, via %s)",
            kind, name, source_id, mirror_id, mirror_guild_id, via,
        )
        self._publish(
            "new_room",
            {
                "mirror_guild_id": str(mirror_guild_id),
                "source_id": str(source_id),
                "mirror_id": str(mirror_id),
                "name": name,
                "kind": kind,
                "via": via,
            },
        )

    def log_admin_action(self, mirror_guild_id: int, action: str, **details) -> None:
        logger.info("[🛠️] %s (guild %s) %s", action, mirror_guild_id, details or "")
        self._publish(
            "admin_action",
            {"mirror_guild_id": str(mirror_guild_id), "action": action, "details": details},
        )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
