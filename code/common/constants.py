# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across the mirror and listener services."""

REDACT_KEYS = {"SERVER_TOKEN", "CLIENT_TOKEN"}

DISCORD_API_BASE = "https://discord.com/api/v10"

# --- Resolver bounded state ---
CHANNEL_CACHE_MAX = 2000
ROLE_CACHE_MAX = 500
PENDING_LOCK_THRESHOLD = 50
NOTIFY_DEDUP_TTL_SECONDS = 3600
FAILED_ENTITY_TTL_SECONDS = 1800
FAILED_ENTITY_PRUNE_SECONDS = 600

# --- Store retention ---
RETENTION_DAYS = 15

# --- Fetch layer ---
RATE_LIMIT_RETRY_DELAY = 3.0
TRANSIENT_RETRY_DELAY = 1.5
DEFAULT_MAX_RETRIES = 2

# --- Backfill ---
BACKFILL_HARD_LIMIT = 50

# --- Mirror guild capacity ---
MAX_GUILD_CHANNELS = 500
MAX_CATEGORIES = 50
MAX_CHANNELS_PER_CATEGORY = 50

FORUM_FALLBACK_PREFIX = "📌│"
PLACEHOLDER_PREFIX = "pending"

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

ACCEPT_LANGUAGES = [
    "en-US,en;q=0.9",
    "en-GB,en;q=0.9,en-US;q=0.8",
    "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7",
    "de-DE,de;q=0.9,en;q=0.8",
    "es-ES,es;q=0.9,en;q=0.8",
]

ACCEPT_ENCODINGS = [
    "gzip, deflate, br",
    "gzip, deflate",
    "br, gzip, deflate",
]

# Substrings that mark an exception as part of the connection-reset family.
CONNECTION_RESET_MARKERS = (
    "ECONNRESET",
    "Connection reset",
    "other side closed",
    "socket hang up",
)
