# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
from typing import Optional


class MirrorError(Exception):
    """Base class for every error raised by the mirror and listener services."""


class FetchError(MirrorError):
    """A non-retryable HTTP status from the source REST API."""

    def __init__(self, status: int, url: str = "", message: str = ""):
        self.status = int(status)
        self.url = url
        super().__init__(message or f"HTTP {self.status} for {url or '<unknown>'}")

    @classmethod
    def for_status(cls, status: int, url: str = "", message: str = "") -> "FetchError":
        if status == 403:
            return PermissionDenied(status, url, message)
        if status == 404:
            return NotFound(status, url, message)
        return cls(status, url, message)


class PermissionDenied(FetchError):
    pass


class NotFound(FetchError):
    pass


class TransientNetworkError(MirrorError):
    """Retries exhausted on a transient network signature."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class RateLimited(TransientNetworkError):
    pass


class CreationFailed(MirrorError):
    """The mirror-side entity could not be created."""
