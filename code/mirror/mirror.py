# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio
import contextlib
import logging
import signal
from datetime import datetime, timedelta, timezone
from typing import Optional

import discord

from common.config import Config, CURRENT_VERSION
from common.constants import FAILED_ENTITY_PRUNE_SECONDS, RETENTION_DAYS
from common.db import DBManager
from common.logging_setup import register_secret, setup_logging
from common.rate_limiter import RateLimitManager
from common.websockets import AdminBus
from listener.backfill import BackfillRunner
from listener.rest import SourceRestClient
from listener.sessions import MessageProcessor, SessionManager
from mirror.discord_hooks import install_discord_rl_watcher
from mirror.notifier import ErrorNotifier, EventLog
from mirror.recovery import AutoRecoveryService
from mirror.replicator import StructuralReplicator
from mirror.resolver import CorrespondenceResolver

logger = logging.getLogger("mirror")


class MirrorService:
    def __init__(
        self,
        config: Optional[Config] = None,
        processor: Optional[MessageProcessor] = None,
    ):
        self.config = config or Config(logger=logger)
        self.db: DBManager = self.config.db
        register_secret(self.config.SERVER_TOKEN)
        register_secret(self.config.CLIENT_TOKEN)

        self.bot = discord.Bot(intents=discord.Intents.all())
        self.bot.event(self.on_ready)
        self.bus = AdminBus(role="mirror", logger=logger, admin_ws_url=self.config.ADMIN_WS_URL)

        self.ratelimit = RateLimitManager()
        install_discord_rl_watcher(self.ratelimit)

        self.replicator = StructuralReplicator(self.ratelimit)
        self.rest = SourceRestClient(timeout=self.config.REQUEST_TIMEOUT)
        self.notifier = ErrorNotifier(self.bot, self.ratelimit)
        self.event_log = EventLog(self.bus)
        self.resolver = CorrespondenceResolver(
            self.bot,
            self.db,
            self.replicator,
            self.rest,
            self.notifier,
            event_log=self.event_log,
            maintenance_interval=self.config.MAINTENANCE_INTERVAL,
        )
        self.recovery: Optional[AutoRecoveryService] = None
        if self.config.ENABLE_AUTO_RECOVERY:
            self.recovery = AutoRecoveryService(self.resolver, self.notifier)
            self.resolver.auto_recovery = self.recovery

        self.backfill = BackfillRunner(
            self.rest,
            self.db,
            processor,
            limit=self.config.BACKFILL_LIMIT,
            delay=self.config.BACKFILL_DELAY,
        )
        self.sessions = SessionManager(
            self.bot,
            self.db,
            self.resolver,
            self.replicator,
            self.rest,
            processor=processor,
            event_log=self.event_log,
            bus=self.bus,
            backfill=self.backfill,
            default_token=self.config.CLIENT_TOKEN,
            auto_create_on_message=self.config.ENABLE_AUTO_CREATE,
            enable_backfill=self.config.ENABLE_BACKFILL,
            reconnect_error_delay=self.config.RECONNECT_DELAY_ERROR,
            reconnect_disconnect_delay=self.config.RECONNECT_DELAY_DISCONNECT,
            heartbeat_interval=self.config.HEARTBEAT_INTERVAL,
        )
        if self.recovery is not None:
            self.recovery.on_recovered = self.sessions.backfill_recovered

        self._prune_task: asyncio.Task | None = None
        self._started = False
        self._shutting_down = False

    async def on_ready(self):
        """Runs on every mirror-bot (re)connect; sessions are only started once."""
        logger.info("[🤖] Logged in as %s (%s)", self.bot.user, self.bot.user.id)
        mid = self.config.mirror_guild_id
        if mid and self.bot.get_guild(mid) is None:
            logger.error(
                "[⛔] Bot is not a member of mirror guild %s; that pairing will not resolve",
                mid,
            )

        if self._started:
            return
        self._started = True

        self.config.seed_guild_mapping()
        for row in self.db.get_all_guild_mappings():
            if self.bot.get_guild(int(row["mirror_guild_id"])) is None:
                logger.warning(
                    "[⚠️] Bot is not in mirror guild %s (source %s)",
                    row["mirror_guild_id"],
                    row["source_guild_id"],
                )

        started = await self.sessions.start_all()
        self.resolver.start_maintenance()
        self._prune_task = asyncio.create_task(self._prune_loop())
        with contextlib.suppress(Exception):
            await self.bus.status(running=True, status="Ready", sessions=started)

    def prune(self) -> tuple[int, int]:
        """Expire failed-entity entries and processed-message records past retention."""
        failed = self.rest.prune_failed()
        if failed:
            logger.debug("[🧹] Pruned %d expired failed-entity entries", failed)
        cutoff = datetime.now(timezone.utc) - timedelta(days=RETENTION_DAYS)
        processed = self.db.purge_processed_before(cutoff)
        if processed:
            logger.info("[🧹] Purged %d processed-message record(s) older than %d days", processed, RETENTION_DAYS)
        return failed, processed

    async def _prune_loop(self):
        while True:
            await asyncio.sleep(FAILED_ENTITY_PRUNE_SECONDS)
            try:
                self.prune()
            except Exception:
                logger.exception("[⛔] Prune pass failed")

    async def _shutdown(self):
        """
        Stop sessions first (handlers are unsubscribed before each client
        closes), then maintenance, then the REST session and the bot.
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down mirror...")
        self.bus.begin_shutdown()
        with contextlib.suppress(Exception, asyncio.TimeoutError):
            await asyncio.wait_for(self.bus.status(running=False, status="Stopped"), 0.4)

        with contextlib.suppress(Exception):
            await self.sessions.stop_all()
        with contextlib.suppress(Exception):
            await self.resolver.stop_maintenance()

        t, self._prune_task = self._prune_task, None
        if t is not None:
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t

        with contextlib.suppress(Exception):
            await self.event_log.drain()
        try:
            await self.rest.close()
        except Exception:
            logger.debug("[shutdown] REST session close failed", exc_info=True)
        try:
            if not self.bot.is_closed():
                await self.bot.close()
        except Exception:
            logger.debug("[shutdown] bot close failed", exc_info=True)
        self.db.close()
        logger.info("Shutdown complete.")

    def run(self):
        logger.info("[✨] Starting mirror %s", CURRENT_VERSION)
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))

        try:
            loop.run_until_complete(self.bot.start(self.config.SERVER_TOKEN))
        finally:
            pending = asyncio.all_tasks(loop=loop)
            for task in pending:
                task.cancel()
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()


def main():
    config = Config()
    setup_logging("mirror", config.LOG_LEVEL)
    MirrorService(config).run()


if __name__ == "__main__":
    main()
