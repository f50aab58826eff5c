# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio, time
from enum import Enum
from typing import Tuple, Dict, Optional


class ActionType(Enum):
    CREATE_CHANNEL = "create_channel"
    EDIT_CHANNEL = "edit_channel"
    THREAD = "thread"
    NOTIFY = "notify"


class RateLimiter:
    def __init__(self, max_rate: int, time_window: float):
        self._max_rate = max_rate
        self._time_window = time_window
        self._allowance = max_rate
        self._last_check = time.monotonic()
        self._lock = asyncio.Lock()
        self._cooldown_until = 0.0

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()

            if now < self._cooldown_until:
                await asyncio.sleep(self._cooldown_until - now)
                now = time.monotonic()

            elapsed = now - self._last_check
            self._last_check = now

            # Refill tokens
            self._allowance = min(
                self._max_rate,
                self._allowance + elapsed * (self._max_rate / self._time_window),
            )

            if self._allowance < 1.0:
                wait = (1.0 - self._allowance) * (self._time_window / self._max_rate)
                if wait > 0:
                    await asyncio.sleep(wait)
                self._last_check = time.monotonic()
                self._allowance = 0.0
            else:
                self._allowance -= 1.0

    def backoff(self, seconds: float):
        now = time.monotonic()
        candidate_end = now + max(0.0, seconds)
        if candidate_end > self._cooldown_until:
            self._cooldown_until = candidate_end

    def reset(self):
        self._cooldown_until = 0.0

    def remaining_cooldown(self) -> float:
        return max(0.0, self._cooldown_until - time.monotonic())


class RateLimitManager:
    """
    One token bucket per action, or per (action, key) when a key is given.
    Keys are mirror guild ids, so one busy workspace cannot starve another.
    """

    def __init__(self, config: Dict[ActionType, Tuple[int, float]] = None):
        self._config = config or {
            ActionType.CREATE_CHANNEL: (2, 15.0),
            ActionType.EDIT_CHANNEL: (3, 15.0),
            ActionType.THREAD: (2, 5.0),
            ActionType.NOTIFY: (5, 10.0),
        }
        self._limiters: Dict[Tuple[ActionType, Optional[str]], RateLimiter] = {}

    def _get(self, action: ActionType, key=None) -> Optional[RateLimiter]:
        cfg = self._config.get(action)
        if cfg is None:
            return None
        slot = (action, str(key) if key is not None else None)
        lim = self._limiters.get(slot)
        if lim is None:
            lim = RateLimiter(*cfg)
            self._limiters[slot] = lim
        return lim

    async def acquire(self, action: ActionType, key=None):
        lim = self._get(action, key)
        if lim:
            await lim.acquire()

    def penalize(self, action: ActionType, seconds: float, key=None):
        """Apply a cooldown to the given bucket, or to every bucket of `action` when key is None."""
        if key is None:
            targets = [l for (a, _), l in self._limiters.items() if a is action]
            base = self._get(action)
            if base and base not in targets:
                targets.append(base)
        else:
            lim = self._get(action, key)
            targets = [lim] if lim else []
        for lim in targets:
            lim.backoff(seconds)

    def reset(self, action: ActionType, key=None):
        lim = self._get(action, key)
        if lim:
            lim.reset()

    def remaining(self, action: ActionType, key=None) -> float:
        lim = self._get(action, key)
        return lim.remaining_cooldown() if lim else 0.0
