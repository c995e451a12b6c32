"""
Error taxonomy for the sync engine.

Configuration and local-state errors are fatal for a tenant's run.
Remote entity errors are recorded against the entity and the run
continues with its siblings.
"""

from __future__ import annotations

from typing import Optional


class NewoSyncError(Exception):
    """Base class for every error raised by newosync."""


class ConfigError(NewoSyncError):
    """Tenant or settings configuration is missing or invalid."""


class AuthError(NewoSyncError):
    """Base class for authentication failures."""


class CredentialError(AuthError):
    """The tenant has no usable credential secret."""


class AuthExchangeError(AuthError):
    """Exchanging the API key for a token failed."""


class RefreshError(AuthError):
    """Refreshing an access token failed."""


class TransportError(NewoSyncError):
    """Network-level failure talking to the remote API."""


class UnauthorizedError(TransportError):
    """The remote rejected a request even after re-authenticating."""


class RemoteEntityError(NewoSyncError):
    """A create/update/delete/fetch for one entity failed remotely.

    Attributes:
        entity: Human-readable entity label (e.g. ``skill proj/agent/flow/greet``).
        status_code: HTTP status, when the remote answered.
        detail: Message extracted from the response body.
    """

    def __init__(
        self,
        entity: str,
        status_code: Optional[int] = None,
        detail: str = "",
    ):
        self.entity = entity
        self.status_code = status_code
        self.detail = detail
        msg = f"{entity}: "
        msg += f"HTTP {status_code}" if status_code is not None else "request failed"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class LocalStateError(NewoSyncError):
    """The Hash Store or Identity Map is missing, unreadable or corrupt."""


class LocalChangeError(NewoSyncError):
    """A local edit that push refuses to apply as it stands."""
