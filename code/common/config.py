# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

from common.constants import BACKFILL_HARD_LIMIT
from common.db import DBManager

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.0.0"


class Config:
    def __init__(self, logger: Optional[logging.Logger] = None, db: Optional[DBManager] = None):
        self.DB_PATH = os.getenv("DB_PATH", "/data/data.db")
        self.db = db or DBManager(self.DB_PATH)

        # --- prefer DB value if set, else environment ---
        def _get_from_db(key: str):
            try:
                return self.db.get_config(key)
            except Exception:
                return None

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = _get_from_db(key)
            if v is None or (isinstance(v, str) and v.strip() == ""):
                v = os.getenv(key, env_default)
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                try:
                    return float(env_default)
                except Exception:
                    return 0.0

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        # --- Tokens / IDs / URLs  ---
        self.SERVER_TOKEN = _str("SERVER_TOKEN")
        self.CLIENT_TOKEN = _str("CLIENT_TOKEN")

        self.MIRROR_GUILD_ID = _str("MIRROR_GUILD_ID", "0") or "0"
        self.SOURCE_GUILD_ID = _str("SOURCE_GUILD_ID", "0") or "0"

        self.ADMIN_WS_URL = _str(
            "ADMIN_WS_URL",
            f"ws://{os.getenv('ADMIN_HOST', 'admin')}:{os.getenv('ADMIN_PORT', '8080')}/bus",
        )

        # --- Feature flags  ---
        self.ENABLE_AUTO_CREATE = _bool("ENABLE_AUTO_CREATE", "true")
        self.ENABLE_BACKFILL = _bool("ENABLE_BACKFILL", "true")
        self.ENABLE_AUTO_RECOVERY = _bool("ENABLE_AUTO_RECOVERY", "true")

        # --- Session timing ---
        self.RECONNECT_DELAY_ERROR = _float("RECONNECT_DELAY_ERROR", "30")
        self.RECONNECT_DELAY_DISCONNECT = _float("RECONNECT_DELAY_DISCONNECT", "15")
        self.HEARTBEAT_INTERVAL = _float("HEARTBEAT_INTERVAL", "30")
        self.MAINTENANCE_INTERVAL = _float("MAINTENANCE_INTERVAL", "1800")

        # --- Backfill / REST ---
        self.BACKFILL_LIMIT = max(1, min(_int("BACKFILL_LIMIT", "50"), BACKFILL_HARD_LIMIT))
        self.BACKFILL_DELAY = _float("BACKFILL_DELAY", "0.3")
        self.REQUEST_TIMEOUT = _float("REQUEST_TIMEOUT", "15")

        # --- Logging / misc ---
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()
        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    @property
    def mirror_guild_id(self) -> int:
        try:
            return int(self.MIRROR_GUILD_ID)
        except (TypeError, ValueError):
            return 0

    @property
    def source_guild_id(self) -> int:
        try:
            return int(self.SOURCE_GUILD_ID)
        except (TypeError, ValueError):
            return 0

    def seed_guild_mapping(self) -> bool:
        """
        Persist the single env-configured pair (MIRROR_GUILD_ID/SOURCE_GUILD_ID)
        so it is started alongside any pairs already stored.
        """
        if not self.mirror_guild_id or not self.source_guild_id:
            return False
        existing = self.db.get_guild_mapping(self.mirror_guild_id)
        if existing and int(existing["source_guild_id"]) == self.source_guild_id:
            return False
        self.db.upsert_guild_mapping(self.mirror_guild_id, self.source_guild_id)
        self.logger.info(
            "[⚙️] Seeded guild pairing mirror=%s source=%s from environment",
            self.mirror_guild_id,
            self.source_guild_id,
        )
        return True
