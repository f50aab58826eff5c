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
import random
import socket
from typing import Any, Optional

import aiohttp

from common.caches import FailedEntityCache
from common.constants import (
    ACCEPT_ENCODINGS,
    ACCEPT_LANGUAGES,
    DEFAULT_MAX_RETRIES,
    DISCORD_API_BASE,
    FAILED_ENTITY_TTL_SECONDS,
    RATE_LIMIT_RETRY_DELAY,
    TRANSIENT_RETRY_DELAY,
    USER_AGENTS,
)
from common.entities import SourceEntity
from common.errors import FetchError, MirrorError, RateLimited, TransientNetworkError

logger = logging.getLogger("listener.rest")

RETRYABLE_STATUSES = frozenset({429, 503})

# ClientConnectorError covers refused connections and DNS failures.
TRANSIENT_EXCEPTIONS = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    ConnectionResetError,
    ConnectionRefusedError,
    socket.gaierror,
    asyncio.TimeoutError,
)


def random_headers(credential: str) -> dict[str, str]:
    return {
        "Authorization": f"Bot {credential}",
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": "*/*",
        "Accept-Language": random.choice(ACCEPT_LANGUAGES),
        "Accept-Encoding": random.choice(ACCEPT_ENCODINGS),
        "Cache-Control": "no-cache",
        "DNT": "1",
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "same-origin",
    }


class SourceRestClient:
    """
    Thin REST reader for the source guild. Every call goes through
    `fetch_with_retry`; each wrapper keeps its own delay and retry count.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        api_base: str = DISCORD_API_BASE,
        timeout: float = 15.0,
    ):
        self.session = session
        self.api_base = api_base.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.failed = FailedEntityCache(FAILED_ENTITY_TTL_SECONDS)
        self.rate_limit_delay = RATE_LIMIT_RETRY_DELAY
        self.retry_delay = TRANSIENT_RETRY_DELAY
        self.jitter_scale = 1.0

    # ---------- lifecycle ----------
    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    # ---------- core ----------
    async def smart_delay(self, base_ms: float) -> None:
        """Sleep base_ms scaled by a uniform 0.5x-1.5x jitter."""
        delay = (base_ms / 1000.0) * random.uniform(0.5, 1.5) * self.jitter_scale
        if delay > 0:
            await asyncio.sleep(delay)

    async def fetch_with_retry(
        self,
        url: str,
        credential: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        *,
        base_delay_ms: float = 150,
    ) -> Any:
        """
        GET `url` and return the parsed JSON body.

        429/503 and connection-level failures are retried up to `max_retries`
        times (3s after a 429, 1.5s otherwise). Any other error status raises
        FetchError immediately, so 403/404 reach the caller on the first try.
        """
        await self.smart_delay(base_delay_ms)
        session = self._ensure_session()
        attempt = 0
        while True:
            try:
                async with session.get(
                    url, headers=random_headers(credential), timeout=self.timeout
                ) as resp:
                    status = resp.status
                    if 200 <= status < 300:
                        if status == 204:
                            return None
                        return await resp.json(content_type=None)
                    body = await resp.text()
            except TRANSIENT_EXCEPTIONS as e:
                if attempt >= max_retries:
                    logger.warning(
                        "[🌐] %s failed after %d attempt(s): %s", url, attempt + 1, e
                    )
                    raise TransientNetworkError(f"{type(e).__name__}: {e}") from e
                attempt += 1
                logger.debug(
                    "[🌐] transient error on %s (%s); retry %d/%d in %.1fs",
                    url, type(e).__name__, attempt, max_retries, self.retry_delay,
                )
                await asyncio.sleep(self.retry_delay)
                continue

            if status in RETRYABLE_STATUSES:
                if attempt >= max_retries:
                    logger.warning("[🌐] %s still HTTP %d after %d attempt(s)", url, status, attempt + 1)
                    if status == 429:
                        raise RateLimited(f"rate limited on {url}", status=status)
                    raise TransientNetworkError(f"HTTP {status} on {url}", status=status)
                attempt += 1
                delay = self.rate_limit_delay if status == 429 else self.retry_delay
                logger.debug(
                    "[🌐] HTTP %d on %s; retry %d/%d in %.1fs",
                    status, url, attempt, max_retries, delay,
                )
                await asyncio.sleep(delay)
                continue

            raise FetchError.for_status(status, url, (body or "")[:200])

    # ---------- call sites ----------
    async def fetch_channel(self, channel_id: int, credential: str) -> SourceEntity:
        """
        Metadata for one channel or thread. A cached 403/404 from the last 30
        minutes is re-raised without touching the network.
        """
        cached = self.failed.get(channel_id)
        if cached is not None:
            logger.debug("Channel %s short-circuited by failed cache (%s)", channel_id, cached)
            raise FetchError.for_status(cached, f"{self.api_base}/channels/{channel_id}", "cached failure")
        try:
            data = await self.fetch_with_retry(
                f"{self.api_base}/channels/{int(channel_id)}", credential, base_delay_ms=150
            )
        except FetchError as e:
            if e.status in (403, 404):
                self.failed.record(channel_id, e.status)
            raise
        self.failed.forget(channel_id)
        try:
            return SourceEntity.from_payload(data)
        except (KeyError, ValueError) as e:
            raise MirrorError(f"channel {channel_id} is not a mirrorable kind: {e}") from e

    async def fetch_channel_messages(
        self, channel_id: int, credential: str, limit: int = 50
    ) -> list[dict]:
        limit = max(1, min(int(limit), 100))
        data = await self.fetch_with_retry(
            f"{self.api_base}/channels/{int(channel_id)}/messages?limit={limit}",
            credential,
            base_delay_ms=100,
        )
        return list(data or [])

    async def fetch_guild_channels(self, guild_id: int, credential: str) -> list[SourceEntity]:
        data = await self.fetch_with_retry(
            f"{self.api_base}/guilds/{int(guild_id)}/channels",
            credential,
            max_retries=1,
            base_delay_ms=200,
        )
        out = []
        for raw in data or []:
            try:
                out.append(SourceEntity.from_payload(raw))
            except (KeyError, ValueError):
                logger.debug("Skipping channel payload with unknown shape: %r", raw.get("id"))
        return out

    async def fetch_guild_roles(self, guild_id: int, credential: str) -> list[dict]:
        data = await self.fetch_with_retry(
            f"{self.api_base}/guilds/{int(guild_id)}/roles",
            credential,
            max_retries=1,
            base_delay_ms=220,
        )
        return list(data or [])

    async def test_channel_access(self, channel_id: int, credential: str) -> bool:
        """
        Test read access with a one-message fetch; raises PermissionDenied /
        NotFound. Shares the failed cache with fetch_channel.
        """
        url = f"{self.api_base}/channels/{int(channel_id)}/messages?limit=1"
        cached = self.failed.get(channel_id)
        if cached is not None:
            logger.debug("Access check for %s short-circuited by failed cache (%s)", channel_id, cached)
            raise FetchError.for_status(cached, url, "cached failure")
        try:
            await self.fetch_with_retry(url, credential, base_delay_ms=100)
        except FetchError as e:
            if e.status in (403, 404):
                self.failed.record(channel_id, e.status)
            raise
        return True

    def prune_failed(self) -> int:
        return self.failed.prune()
