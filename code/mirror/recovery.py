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
from collections import Counter
from typing import Callable, Optional

from common.caches import ExpiringSet

logger = logging.getLogger("mirror.recovery")

RETRY_DELAYS = (1.0, 3.0, 10.0)
RECENTLY_RECOVERED_SECONDS = 300


class AutoRecoveryService:
    """
    Background retries for channels the resolver gave up on.

    Attempt 1 forces a resync, attempt 2 runs auto-creation, attempt 3 forces
    one more resync. Progress is replied under the original #error message.
    """

    def __init__(self, resolver, notifier=None):
        self.resolver = resolver
        self.notifier = notifier
        self.delays = list(RETRY_DELAYS)
        self.on_recovered: Optional[Callable[[int, int, int], None]] = None

        self._active: set[tuple[int, int]] = set()
        self._recent = ExpiringSet(RECENTLY_RECOVERED_SECONDS)
        self._metrics: Counter = Counter()

    def is_recovering(self, source_id: int, mirror_guild_id: int) -> bool:
        return (int(source_id), int(mirror_guild_id)) in self._active

    async def start_recovery(
        self,
        source_id: int,
        source_guild_id: Optional[int],
        mirror_guild_id: int,
        notification_message_id: Optional[int] = None,
    ) -> Optional[int]:
        key = (int(source_id), int(mirror_guild_id))
        if key in self._recent:
            logger.info("[♻️] #%s was recovered recently; skipping", source_id)
            return None
        if key in self._active:
            return None
        if not source_guild_id:
            logger.warning("[⚠️] No source guild known for mirror %s; cannot recover #%s", mirror_guild_id, source_id)
            return None

        self._active.add(key)
        self._metrics["total"] += 1
        try:
            for attempt, delay in enumerate(self.delays, start=1):
                await asyncio.sleep(delay)
                if attempt == 1:
                    await self._reply(mirror_guild_id, notification_message_id,
                                      f"🔄 **Automatic recovery started**\nAttempt 1/{len(self.delays)}: forced resync")
                logger.info("[♻️] Recovery attempt %d/%d for #%s", attempt, len(self.delays), source_id)
                mirror_id = await self._attempt(attempt, int(source_id), int(source_guild_id), int(mirror_guild_id))
                if mirror_id:
                    self._metrics["success"] += 1
                    self._recent.add(key)
                    self.resolver.notified.discard(key)
                    logger.info("[♻️] Recovered #%s → mirror #%s", source_id, mirror_id)
                    await self._reply(mirror_guild_id, notification_message_id,
                                      f"✅ **Recovered** → <#{mirror_id}>")
                    if self.on_recovered is not None:
                        self.on_recovered(int(mirror_guild_id), int(source_id), int(mirror_id))
                    return mirror_id

            self._metrics["failed"] += 1
            logger.error("[⛔] Recovery of #%s failed after %d attempts", source_id, len(self.delays))
            await self._reply(mirror_guild_id, notification_message_id,
                              "❌ **Automatic recovery failed**\nMap the channel manually.")
            return None
        finally:
            self._active.discard(key)

    async def _attempt(
        self, attempt: int, source_id: int, source_guild_id: int, mirror_guild_id: int
    ) -> Optional[int]:
        if attempt == 2:
            mapping = await self.resolver.auto_create(source_id, source_guild_id, mirror_guild_id)
            return int(mapping["mirror_id"]) if mapping and mapping.get("mirror_id") else None
        try:
            await self.resolver.force_sync(mirror_guild_id)
        except Exception as e:
            logger.warning("[⚠️] Resync during recovery failed: %s", e)
        return await self.resolver.resolve_mirror_channel(
            source_id, source_guild_id, mirror_guild_id, allow_create=False
        )

    async def _reply(self, mirror_guild_id: int, message_id: Optional[int], text: str) -> None:
        if self.notifier is None or not message_id:
            return
        try:
            await self.notifier.reply(mirror_guild_id, message_id, text)
        except Exception as e:
            logger.debug("Recovery status reply failed: %s", e)

    def metrics(self) -> dict:
        total = self._metrics["total"]
        rate = (self._metrics["success"] / total * 100) if total else 0.0
        return {
            "total": total,
            "success": self._metrics["success"],
            "failed": self._metrics["failed"],
            "success_rate": f"{rate:.1f}%",
            "active": len(self._active),
        }
