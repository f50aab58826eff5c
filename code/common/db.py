# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import logging
import sqlite3, threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional

logger = logging.getLogger("common.db")


def _id_or_none(v) -> Optional[int]:
    return int(v) if v not in (None, "") else None


def _mirror_text(v) -> Optional[str]:
    # mirror_id is TEXT so that 'pending' placeholders share the column
    return str(v) if v not in (None, "") else None


class DBManager:
    def __init__(self, db_path: str):
        self.path = db_path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA foreign_keys = ON;")
        self.conn.execute("PRAGMA journal_mode = DELETE;")
        self.conn.execute("PRAGMA synchronous = FULL;")
        self.conn.execute("PRAGMA busy_timeout = 5000;")
        self.lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """
        Creates the mapping, processed-message, guild pairing and config tables
        together with their lookup indexes.
        """
        c = self.conn.cursor()

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS app_config(
        key           TEXT PRIMARY KEY,
        value         TEXT NOT NULL DEFAULT '',
        last_updated  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS channel_mappings(
        source_id           INTEGER NOT NULL,
        source_guild_id     INTEGER NOT NULL,
        mirror_id           TEXT,
        name                TEXT NOT NULL DEFAULT '',
        channel_type        INTEGER NOT NULL DEFAULT 0,
        category_id         INTEGER,
        mirror_category_id  INTEGER,
        blacklisted         INTEGER NOT NULL DEFAULT 0,
        blacklist_reason    TEXT,
        last_synced         TIMESTAMP,
        last_updated        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY(source_id, source_guild_id)
        );
        """
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS ix_channel_mappings_guild "
            "ON channel_mappings(source_guild_id);"
        )
        c.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_channel_mappings_mirror "
            "ON channel_mappings(mirror_id) "
            "WHERE mirror_id IS NOT NULL AND mirror_id NOT LIKE 'pending%';"
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS role_mappings(
        source_id        INTEGER NOT NULL,
        source_guild_id  INTEGER NOT NULL,
        mirror_id        INTEGER,
        name             TEXT NOT NULL DEFAULT '',
        synced           INTEGER NOT NULL DEFAULT 0,
        last_updated     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY(source_id, source_guild_id)
        );
        """
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS ix_role_mappings_guild "
            "ON role_mappings(source_guild_id);"
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS processed_messages(
        message_id         INTEGER PRIMARY KEY,
        source_channel_id  INTEGER,
        mirror_channel_id  INTEGER,
        mirror_guild_id    INTEGER,
        processed_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS guild_mappings(
        mirror_guild_id    INTEGER PRIMARY KEY,
        source_guild_id    INTEGER NOT NULL,
        source_guild_name  TEXT,
        source_token       TEXT,
        enabled            INTEGER NOT NULL DEFAULT 1,
        last_updated       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )

        c.execute(
            """
        CREATE TRIGGER IF NOT EXISTS trg_channel_mappings_touch
        AFTER UPDATE ON channel_mappings
        FOR EACH ROW WHEN NEW.last_updated = OLD.last_updated
        BEGIN
            UPDATE channel_mappings SET last_updated = CURRENT_TIMESTAMP
            WHERE source_id = OLD.source_id AND source_guild_id = OLD.source_guild_id;
        END;
        """
        )
        self.conn.commit()

    # ------------------------------------------------------------------ config
    def set_config(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO app_config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )

    def get_config(self, key: str, default: str = "") -> str:
        row = self.conn.execute(
            "SELECT value FROM app_config WHERE key=?", (key,)
        ).fetchone()
        return row["value"] if row else default

    # -------------------------------------------------------- channel mappings
    def get_channel_mapping(
        self, source_id: int, source_guild_id: int
    ) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM channel_mappings WHERE source_id=? AND source_guild_id=?",
            (int(source_id), int(source_guild_id)),
        ).fetchone()

    def get_channel_mapping_by_mirror_id(self, mirror_id) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM channel_mappings WHERE mirror_id=?",
            (_mirror_text(mirror_id),),
        ).fetchone()

    def mirror_owned_elsewhere(self, mirror_id, source_id: int, source_guild_id: int) -> bool:
        """True when `mirror_id` is already mapped to a different source entity."""
        owner = self.get_channel_mapping_by_mirror_id(mirror_id)
        if owner is None:
            return False
        return (int(owner["source_id"]), int(owner["source_guild_id"])) != (
            int(source_id),
            int(source_guild_id),
        )

    def get_channel_mappings_for_guild(self, source_guild_id: int) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM channel_mappings WHERE source_guild_id=?",
            (int(source_guild_id),),
        ).fetchall()

    def count_channel_mappings(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM channel_mappings").fetchone()[0]

    def upsert_channel_mapping(
        self,
        source_id: int,
        source_guild_id: int,
        name: str,
        mirror_id=None,
        channel_type: Optional[int] = None,
        category_id: Optional[int] = None,
        mirror_category_id: Optional[int] = None,
    ) -> sqlite3.Row:
        """
        Upsert by (source_id, source_guild_id). When `mirror_id` already belongs
        to another row, that row is re-pointed at this source entity instead of
        failing, so each mirror id stays owned by exactly one row.
        """
        params = (
            int(source_id),
            int(source_guild_id),
            _mirror_text(mirror_id),
            name or "",
            int(channel_type) if channel_type is not None else None,
            _id_or_none(category_id),
            _id_or_none(mirror_category_id),
        )
        with self.lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO channel_mappings (
                            source_id, source_guild_id, mirror_id, name,
                            channel_type, category_id, mirror_category_id, last_synced
                        )
                        VALUES (?, ?, ?, ?, COALESCE(?, 0), ?, ?, CURRENT_TIMESTAMP)
                        ON CONFLICT(source_id, source_guild_id) DO UPDATE SET
                        mirror_id          = COALESCE(excluded.mirror_id, channel_mappings.mirror_id),
                        name               = CASE WHEN excluded.name != '' THEN excluded.name
                                                  ELSE channel_mappings.name END,
                        channel_type       = COALESCE(?, channel_mappings.channel_type),
                        category_id        = COALESCE(excluded.category_id, channel_mappings.category_id),
                        mirror_category_id = COALESCE(excluded.mirror_category_id,
                                                      channel_mappings.mirror_category_id),
                        blacklisted        = 0,
                        blacklist_reason   = NULL,
                        last_synced        = CURRENT_TIMESTAMP
                        """,
                        params + (params[4],),
                    )
            except sqlite3.IntegrityError:
                self._merge_into_mirror_owner(*params)
            return self.get_channel_mapping(source_id, source_guild_id)

    def _merge_into_mirror_owner(
        self,
        source_id: int,
        source_guild_id: int,
        mirror_id: str,
        name: str,
        channel_type: Optional[int],
        category_id: Optional[int],
        mirror_category_id: Optional[int],
    ) -> None:
        owner = self.get_channel_mapping_by_mirror_id(mirror_id)
        if owner is None:
            raise sqlite3.IntegrityError(
                f"channel mapping conflict for mirror id {mirror_id} with no owner row"
            )
        logger.info(
            "[🔀] Mirror #%s already mapped to source #%s; re-pointing to source #%s",
            mirror_id,
            owner["source_id"],
            source_id,
        )
        with self.lock, self.conn:
            self.conn.execute(
                "DELETE FROM channel_mappings WHERE source_id=? AND source_guild_id=? "
                "AND (mirror_id IS NULL OR mirror_id != ?)",
                (source_id, source_guild_id, mirror_id),
            )
            self.conn.execute(
                """
                UPDATE channel_mappings SET
                    source_id          = ?,
                    source_guild_id    = ?,
                    name               = CASE WHEN ? != '' THEN ? ELSE name END,
                    channel_type       = COALESCE(?, channel_type),
                    category_id        = COALESCE(?, category_id),
                    mirror_category_id = COALESCE(?, mirror_category_id),
                    blacklisted        = 0,
                    blacklist_reason   = NULL,
                    last_synced        = CURRENT_TIMESTAMP
                WHERE mirror_id = ?
                """,
                (
                    source_id,
                    source_guild_id,
                    name,
                    name,
                    channel_type,
                    category_id,
                    mirror_category_id,
                    mirror_id,
                ),
            )

    def blacklist_channel(
        self,
        source_id: int,
        source_guild_id: int,
        name: str,
        reason: str,
        channel_type: Optional[int] = None,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO channel_mappings (
                    source_id, source_guild_id, name, channel_type,
                    blacklisted, blacklist_reason, last_synced
                )
                VALUES (?, ?, ?, COALESCE(?, 0), 1, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(source_id, source_guild_id) DO UPDATE SET
                    name             = CASE WHEN channel_mappings.name != ''
                                            THEN channel_mappings.name
                                            ELSE excluded.name END,
                    blacklisted      = 1,
                    blacklist_reason = excluded.blacklist_reason,
                    last_synced      = CURRENT_TIMESTAMP
                """,
                (int(source_id), int(source_guild_id), name, channel_type, reason),
            )

    def update_channel_name(self, source_id: int, source_guild_id: int, name: str) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute(
                "UPDATE channel_mappings SET name=?, last_synced=CURRENT_TIMESTAMP "
                "WHERE source_id=? AND source_guild_id=?",
                (name, int(source_id), int(source_guild_id)),
            )
            return cur.rowcount > 0

    # ----------------------------------------------------------- role mappings
    def get_role_mapping(self, source_id: int, source_guild_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM role_mappings WHERE source_id=? AND source_guild_id=?",
            (int(source_id), int(source_guild_id)),
        ).fetchone()

    def upsert_role_mapping(
        self,
        source_id: int,
        source_guild_id: int,
        name: str,
        mirror_id: Optional[int],
        synced: bool = True,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """INSERT INTO role_mappings
                    (source_id, source_guild_id, mirror_id, name, synced)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(source_id, source_guild_id) DO UPDATE SET
                    mirror_id    = COALESCE(excluded.mirror_id, role_mappings.mirror_id),
                    name         = excluded.name,
                    synced       = excluded.synced,
                    last_updated = CURRENT_TIMESTAMP
                """,
                (
                    int(source_id),
                    int(source_guild_id),
                    _id_or_none(mirror_id),
                    name or "",
                    1 if synced else 0,
                ),
            )

    # ------------------------------------------------------ processed messages
    def is_message_processed(self, message_id: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM processed_messages WHERE message_id=?", (int(message_id),)
        ).fetchone()
        return row is not None

    def filter_unprocessed(self, message_ids: Iterable[int]) -> set[int]:
        ids = [int(m) for m in message_ids]
        if not ids:
            return set()
        marks = ",".join("?" * len(ids))
        seen = {
            int(r[0])
            for r in self.conn.execute(
                f"SELECT message_id FROM processed_messages WHERE message_id IN ({marks})",
                ids,
            ).fetchall()
        }
        return {m for m in ids if m not in seen}

    def mark_message_processed(
        self,
        message_id: int,
        source_channel_id: Optional[int] = None,
        mirror_channel_id: Optional[int] = None,
        mirror_guild_id: Optional[int] = None,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO processed_messages "
                "(message_id, source_channel_id, mirror_channel_id, mirror_guild_id) "
                "VALUES (?, ?, ?, ?)",
                (
                    int(message_id),
                    _id_or_none(source_channel_id),
                    _id_or_none(mirror_channel_id),
                    _id_or_none(mirror_guild_id),
                ),
            )

    def purge_processed_before(self, cutoff: datetime) -> int:
        """Drop processed-message records older than `cutoff`; returns the count removed."""
        if cutoff.tzinfo is not None:
            cutoff = cutoff.astimezone(timezone.utc).replace(tzinfo=None)
        with self.lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM processed_messages WHERE processed_at < ?",
                (cutoff.strftime("%Y-%m-%d %H:%M:%S"),),
            )
            return cur.rowcount

    # ---------------------------------------------------------- guild pairings
    def upsert_guild_mapping(
        self,
        mirror_guild_id: int,
        source_guild_id: int,
        source_guild_name: Optional[str] = None,
        source_token: Optional[str] = None,
        enabled: bool = True,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO guild_mappings
                    (mirror_guild_id, source_guild_id, source_guild_name, source_token, enabled)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(mirror_guild_id) DO UPDATE SET
                    source_guild_id   = excluded.source_guild_id,
                    source_guild_name = COALESCE(excluded.source_guild_name,
                                                 guild_mappings.source_guild_name),
                    source_token      = COALESCE(excluded.source_token,
                                                 guild_mappings.source_token),
                    enabled           = excluded.enabled,
                    last_updated      = CURRENT_TIMESTAMP
                """,
                (
                    int(mirror_guild_id),
                    int(source_guild_id),
                    source_guild_name,
                    source_token,
                    1 if enabled else 0,
                ),
            )

    def get_guild_mapping(self, mirror_guild_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM guild_mappings WHERE mirror_guild_id=?", (int(mirror_guild_id),)
        ).fetchone()

    def get_all_guild_mappings(self, enabled_only: bool = True) -> List[sqlite3.Row]:
        sql = "SELECT * FROM guild_mappings"
        if enabled_only:
            sql += " WHERE enabled=1"
        return self.conn.execute(sql).fetchall()

    def get_source_guild_id(self, mirror_guild_id: int) -> Optional[int]:
        row = self.get_guild_mapping(mirror_guild_id)
        return int(row["source_guild_id"]) if row else None

    def get_mirror_guild_ids(self, source_guild_id: int) -> list[int]:
        rows = self.conn.execute(
            "SELECT mirror_guild_id FROM guild_mappings WHERE source_guild_id=?",
            (int(source_guild_id),),
        ).fetchall()
        return [int(r[0]) for r in rows]

    def close(self) -> None:
        with self.lock:
            self.conn.close()
