# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import logging, re
from typing import Optional, Tuple
from common.rate_limiter import ActionType, RateLimitManager

log = logging.getLogger("mirror.discord_hooks")

FIXED_COOLDOWN_SECONDS = 300

_ROUTE_MAP: Tuple[Tuple[re.Pattern, ActionType], ...] = (
    (re.compile(r"/channels/\{channel_id\}/threads"), ActionType.THREAD),
    (re.compile(r"/channels/\{channel_id\}/messages/\{message_id\}/threads"), ActionType.THREAD),
    (re.compile(r"/guilds/\{guild_id\}/channels"), ActionType.CREATE_CHANNEL),
    (re.compile(r"/channels/\{channel_id\}/messages"), ActionType.NOTIFY),
    (re.compile(r"/channels/\{channel_id\}$"), ActionType.EDIT_CHANNEL),
)


def map_bucket(bucket: str) -> tuple[Optional[ActionType], str]:
    route = bucket.split(":")[-1]
    for pat, act in _ROUTE_MAP:
        if pat.search(route):
            return act, route
    return None, route


class DiscordHTTPRLHandler(logging.Handler):
    """
    Watches py-cord's "retrying in X seconds" warnings and puts the matching
    action bucket on a safety cooldown.
    """

    _rx = re.compile(r"[Rr]etrying in ([\d.]+) seconds.*bucket \"([^\"]+)\"")

    def __init__(self, ratelimit_mgr: RateLimitManager):
        super().__init__(level=logging.WARNING)
        self.rlm = ratelimit_mgr

    def emit(self, record: logging.LogRecord):
        try:
            m = self._rx.search(record.getMessage())
            if not m:
                return
            action, route = map_bucket(m.group(2))
            if not action:
                log.debug("No ActionType mapping for route=%s; no penalty applied", route)
                return
            self.rlm.penalize(action, FIXED_COOLDOWN_SECONDS)
            log.warning(
                "[❗] Discord rate limit detected; applying %ss safety net cooldown before next %s action",
                FIXED_COOLDOWN_SECONDS,
                action.name,
            )
        except Exception as e:
            log.exception("[⛔] Error in DiscordHTTPRLHandler.emit: %s", e)


def install_discord_rl_watcher(ratelimit_mgr: RateLimitManager) -> bool:
    http_log = logging.getLogger("discord.http")
    if any(isinstance(h, DiscordHTTPRLHandler) for h in http_log.handlers):
        log.debug("DiscordHTTPRLHandler already installed on 'discord.http'")
        return False
    http_log.addHandler(DiscordHTTPRLHandler(ratelimit_mgr))
    log.debug("Installed DiscordHTTPRLHandler on 'discord.http' logger")
    return True
