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
import json
import logging
import random
import time
import uuid
from typing import Any, Optional
import websockets

logger = logging.getLogger(__name__)


def _json(obj: Any) -> str:
    try:
        return json.dumps(obj, separators=(",", ":"), default=str)
    except Exception as e:
        return f'{{"ok":false,"error":"json-dumps-failed:{e!r}"}}'


class BusSender:
    """
    Delivers one JSON frame per short-lived connection to the admin /bus
    endpoint. Delivery is best effort: connection errors are retried with
    capped exponential backoff, anything else drops the frame.
    """

    def __init__(
        self,
        url: Optional[str],
        logger: Optional[logging.Logger] = None,
        *,
        attempts: int = 3,
        timeout: float = 5.0,
        backoff: float = 0.5,
        backoff_cap: float = 4.0,
    ):
        self.url = url
        self.logger = logger or logging.getLogger("BusSender")
        self.attempts = attempts
        self.timeout = timeout
        self.backoff = backoff
        self.backoff_cap = backoff_cap
        self._closing = False

    def begin_shutdown(self) -> None:
        """One attempt with a short timeout from here on, so exit is not held up."""
        self._closing = True

    def _delay(self, attempt: int) -> float:
        base = min(self.backoff_cap, self.backoff * (2 ** (attempt - 1)))
        return base * (1 + random.random() * 0.2)

    async def _deliver(self, text: str, timeout: float) -> None:
        async with websockets.connect(
            self.url, max_size=None, ping_interval=None, open_timeout=timeout
        ) as ws:
            await asyncio.wait_for(ws.send(text), timeout)

    async def send(self, frame: dict) -> bool:
        if not self.url:
            return False
        attempts, timeout = (1, 0.25) if self._closing else (self.attempts, self.timeout)
        text = _json(frame)
        kind = frame.get("kind", "(none)")

        for attempt in range(1, attempts + 1):
            t0 = time.monotonic()
            try:
                await asyncio.wait_for(self._deliver(text, timeout), timeout * 2)
            except (asyncio.TimeoutError, OSError) as e:
                last = attempt >= attempts
                (self.logger.debug if last else self.logger.info)(
                    "[WS] %s not delivered (%d/%d): %s", kind, attempt, attempts, e
                )
                if last:
                    return False
                await asyncio.sleep(self._delay(attempt))
            except Exception as e:
                self.logger.debug("[WS] %s dropped: %s", kind, e)
                return False
            else:
                self.logger.debug(
                    "[WS] %s delivered in %.1fms", kind, (time.monotonic() - t0) * 1000
                )
                return True
        return False


class AdminBus:
    """
    Publishes status and event envelopes for one process role
    ("mirror", "listener") to the admin bus. With no URL configured every
    publish is a no-op that returns False.
    """

    def __init__(
        self,
        role: str,
        logger: Optional[logging.Logger] = None,
        admin_ws_url: Optional[str] = None,
    ):
        self.role = role
        self.logger = logger or logging.getLogger(f"AdminBus[{role}]")
        self.sender = BusSender(admin_ws_url, logger=self.logger)
        self.published = 0
        self.dropped = 0

    def begin_shutdown(self) -> None:
        self.sender.begin_shutdown()

    def envelope(self, kind: str, payload: Any) -> dict:
        if not isinstance(payload, dict):
            payload = {"text": str(payload)}
        return {
            "kind": kind or "log",
            "role": self.role,
            "rid": str(uuid.uuid4()),
            "ts": time.time(),
            "payload": payload,
        }

    async def publish(self, kind: str, payload: Any) -> bool:
        if not self.sender.url:
            return False
        try:
            ok = await self.sender.send(self.envelope(kind, payload))
        except Exception as e:
            self.logger.info("publish failed during %s: %s", kind, e)
            ok = False
        if ok:
            self.published += 1
        else:
            self.dropped += 1
        return ok

    async def status(self, **fields) -> bool:
        return await self.publish("status", fields)

    async def log(self, text: str) -> bool:
        return await self.publish("log", {"text": text})
