# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import contextlib
import contextvars
import logging
import os
from typing import Iterable, Optional

from common.constants import REDACT_KEYS

guild_label = contextvars.ContextVar("guild_label", default=None)

_extra_secrets: set[str] = set()


def register_secret(value: Optional[str]) -> None:
    """Per-workspace source tokens live in the DB, not the env; register them here."""
    if value:
        _extra_secrets.add(str(value))


def _secrets() -> Iterable[str]:
    for k in REDACT_KEYS:
        v = os.getenv(k)
        if v:
            yield v
    yield from _extra_secrets


def _redact_value(val):
    try:
        s = str(val)
        for secret in _secrets():
            if secret in s:
                s = s.replace(secret, "***REDACTED***")
        return s
    except Exception:
        return "<unprintable>"


class RedactFilter(logging.Filter):
    """Redacts tokens appearing in the message or its string args."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            if isinstance(record.args, dict):
                record.args = {
                    k: (_redact_value(v) if isinstance(v, str) else v)
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, (tuple, list)):
                new_args = [_redact_value(a) if isinstance(a, str) else a for a in record.args]
                record.args = (
                    tuple(new_args) if isinstance(record.args, tuple) else new_args
                )
            if isinstance(record.msg, str):
                record.msg = _redact_value(record.msg)
        except Exception:
            pass
        return True


class GuildContextFilter(logging.Filter):
    """Prefixes records with "[<label>] " when a workspace label is set for this task."""

    def filter(self, record: logging.LogRecord) -> bool:
        label = guild_label.get()
        if label and isinstance(record.msg, str) and not record.msg.startswith(f"[{label}]"):
            record.msg = f"[{label}] {record.msg}"
        return True


@contextlib.contextmanager
def log_context(label: Optional[str]):
    token = guild_label.set(label)
    try:
        yield
    finally:
        guild_label.reset(token)


def setup_logging(name: str, level_name: Optional[str] = None) -> logging.Logger:
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-5s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, "_mirror_handler", False) for h in root.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        ch.setLevel(level)
        ch.addFilter(GuildContextFilter())
        ch.addFilter(RedactFilter())
        ch._mirror_handler = True
        root.addHandler(ch)

    for lib in ("websockets.client", "websockets.protocol"):
        logging.getLogger(lib).setLevel(logging.WARNING)
    for lib in ("discord", "discord.gateway", "discord.http"):
        logging.getLogger(lib).setLevel(logging.WARNING)
    for lib in ("discord.state", "discord.client"):
        logging.getLogger(lib).setLevel(logging.ERROR)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
