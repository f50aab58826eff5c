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
from dataclasses import dataclass
from typing import Any, Optional

from common.constants import BACKFILL_HARD_LIMIT
from common.db import DBManager
from common.errors import MirrorError

logger = logging.getLogger("listener.backfill")


@dataclass
class BackfillResult:
    fetched: int = 0
    replayed: int = 0
    skipped: int = 0
    failed: int = 0


def normalize_message(raw: dict, source_guild_id: Optional[int] = None) -> dict:
    """Flatten a REST message object into the payload handed to the processor."""
    author = raw.get("author") or {}
    return {
        "id": int(raw["id"]),
        "channel_id": int(raw["channel_id"]) if raw.get("channel_id") else None,
        "guild_id": source_guild_id,
        "content": raw.get("content") or "",
        "author": {
            "id": int(author["id"]) if author.get("id") else None,
            "username": author.get("username"),
            "global_name": author.get("global_name"),
            "avatar": author.get("avatar"),
            "bot": bool(author.get("bot", False)),
        },
        "attachments": list(raw.get("attachments") or []),
        "embeds": list(raw.get("embeds") or []),
        "timestamp": raw.get("timestamp"),
        "edited_timestamp": raw.get("edited_timestamp"),
        "type": raw.get("type", 0),
        "message_reference": raw.get("message_reference"),
        "backfill": True,
    }


class BackfillRunner:
    """
    Replays up to the last 50 source messages into a freshly created mirror
    channel, oldest first, skipping anything already processed.
    """

    def __init__(
        self,
        rest,
        db: DBManager,
        processor=None,
        *,
        limit: int = BACKFILL_HARD_LIMIT,
        delay: float = 0.3,
    ):
        self.rest = rest
        self.db = db
        self.processor = processor
        self.limit = max(1, min(int(limit), BACKFILL_HARD_LIMIT))
        self.delay = delay
        self._running: set[tuple[int, int]] = set()

    async def run(
        self,
        mirror_guild_id: int,
        source_id: int,
        mirror_channel: Any,
        source_guild: Any,
        credential: Optional[str],
    ) -> Optional[BackfillResult]:
        key = (int(source_id), int(mirror_guild_id))
        if key in self._running:
            logger.debug("Backfill for #%s already running; skipped", source_id)
            return None
        if self.processor is None or not credential:
            logger.debug("Backfill for #%s skipped (no processor or credential)", source_id)
            return None

        self._running.add(key)
        try:
            return await self._run(mirror_guild_id, int(source_id), mirror_channel, source_guild, credential)
        finally:
            self._running.discard(key)

    async def _run(
        self, mirror_guild_id: int, source_id: int, mirror_channel, source_guild, credential: str
    ) -> BackfillResult:
        result = BackfillResult()
        try:
            raw = await self.rest.fetch_channel_messages(source_id, credential, limit=self.limit)
        except MirrorError as e:
            logger.warning("[📥] Backfill fetch for #%s failed: %s", source_id, e)
            return result

        # newest `limit` messages, replayed oldest first; snowflakes sort by time
        ordered = sorted(raw, key=lambda m: int(m["id"]))[-self.limit:]
        result.fetched = len(ordered)
        todo_ids = self.db.filter_unprocessed(int(m["id"]) for m in ordered)
        todo = [m for m in ordered if int(m["id"]) in todo_ids]
        result.skipped = len(ordered) - len(todo)

        guild_id = getattr(source_guild, "id", None)
        for i, raw_msg in enumerate(todo):
            if i and self.delay > 0:
                await asyncio.sleep(self.delay)
            payload = normalize_message(raw_msg, guild_id)
            try:
                await self.processor.process_message(payload, mirror_channel, source_guild)
            except Exception as e:
                result.failed += 1
                logger.warning(
                    "[📥] Backfill replay of message %s in #%s failed: %s", payload["id"], source_id, e
                )
                continue
            self.db.mark_message_processed(
                payload["id"], source_id, getattr(mirror_channel, "id", None), mirror_guild_id
            )
            result.replayed += 1

        logger.info(
            "[📥] Backfill #%s → mirror #%s: %d fetched, %d replayed, %d skipped, %d failed",
            source_id,
            getattr(mirror_channel, "id", "?"),
            result.fetched,
            result.replayed,
            result.skipped,
            result.failed,
        )
        return result
