"""
Token Manager -- API-key exchange, refresh and per-tenant token storage.

Fallback chain for ``get_valid_access_token``:

    stored & unexpired  ->  use it
    stored & expired    ->  refresh  --(fails)-->  exchange API key
    nothing stored      ->  exchange API key

A revoked refresh token therefore costs one extra round trip, never a
failed run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from .config import SyncSettings
from .errors import AuthExchangeError, CredentialError, RefreshError
from .layout import TenantLayout, write_atomic
from .models import Tenant, TokenRecord, now_ms

logger = logging.getLogger("newosync.auth")

DEFAULT_TTL_SECONDS = 3600
EXCHANGE_PATH = "/api/v1/auth/api-key/token"


def normalize_token_response(data: Any) -> tuple[str, str, int]:
    """Pull (access, refresh, ttl_seconds) out of any known response shape.

    Raises:
        ValueError: No access token in the payload.
    """
    if not isinstance(data, dict):
        raise ValueError("token response is not an object")
    access = data.get("access_token") or data.get("token") or data.get("accessToken")
    if not access:
        raise ValueError("missing access token")
    refresh = data.get("refresh_token") or data.get("refreshToken") or ""
    ttl = data.get("expires_in") or data.get("expiresIn") or DEFAULT_TTL_SECONDS
    try:
        ttl = int(ttl)
    except (TypeError, ValueError):
        ttl = DEFAULT_TTL_SECONDS
    return str(access), str(refresh), ttl


class TokenManager:
    """Acquires, refreshes and persists tokens for any number of tenants.

    Each tenant's record lives in its own ``tokens.json``; nothing is
    shared between tenants except the HTTP client.
    """

    def __init__(
        self,
        settings: SyncSettings,
        client: httpx.AsyncClient,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.client = client
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, tenant: Tenant) -> asyncio.Lock:
        return self._locks.setdefault(tenant.idn, asyncio.Lock())

    def _path(self, tenant: Tenant):
        return TenantLayout(self.settings.root, tenant.idn).tokens_path

    def load(self, tenant: Tenant) -> Optional[TokenRecord]:
        """Stored token record, or None when absent or unreadable."""
        path = self._path(tenant)
        if not path.exists():
            return None
        try:
            return TokenRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", path, exc)
            return None

    def _save(self, tenant: Tenant, record: TokenRecord) -> TokenRecord:
        write_atomic(self._path(tenant), record.model_dump_json(indent=2) + "\n")
        return record

    async def _post(self, url: str, **kwargs) -> Any:
        response = await self.client.post(url, **kwargs)
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code}", request=response.request, response=response
            )
        return response.json()

    async def exchange_credential_for_token(self, tenant: Tenant) -> TokenRecord:
        """Trade the tenant's API key for a fresh token pair.

        Raises:
            CredentialError: The tenant has no API key.
            AuthExchangeError: The exchange failed or returned no access token.
        """
        if not tenant.api_key:
            raise CredentialError(f"Customer '{tenant.idn}' has no API key configured")
        url = f"{self.settings.base_url}{EXCHANGE_PATH}"
        try:
            data = await self._post(
                url,
                json={},
                headers={"x-api-key": tenant.api_key, "accept": "application/json"},
            )
            access, refresh, ttl = normalize_token_response(data)
        except (httpx.HTTPError, ValueError, json.JSONDecodeError) as exc:
            raise AuthExchangeError(
                f"Failed to exchange API key for customer '{tenant.idn}': {exc}"
            ) from exc

        record = TokenRecord(
            access_token=access,
            refresh_token=refresh,
            expires_at=self.clock() + ttl * 1000,
        )
        logger.info("Obtained access token for %s (ttl %ss)", tenant.idn, ttl)
        return self._save(tenant, record)

    async def refresh_token(self, tenant: Tenant, stored_refresh_token: str) -> TokenRecord:
        """Exchange a refresh token for a new access token.

        Keeps the old refresh token when the server does not reissue one.

        Raises:
            RefreshError: No refresh URL/token, network failure or rejection.
        """
        if not self.settings.refresh_url:
            raise RefreshError("NEWO_REFRESH_URL not set")
        if not stored_refresh_token:
            raise RefreshError(f"No refresh token stored for customer '{tenant.idn}'")
        try:
            data = await self._post(
                self.settings.refresh_url,
                json={"refresh_token": stored_refresh_token},
                headers={"accept": "application/json"},
            )
            access, refresh, ttl = normalize_token_response(data)
        except (httpx.HTTPError, ValueError, json.JSONDecodeError) as exc:
            raise RefreshError(
                f"Failed to refresh token for customer '{tenant.idn}': {exc}"
            ) from exc

        record = TokenRecord(
            access_token=access,
            refresh_token=refresh or stored_refresh_token,
            expires_at=self.clock() + ttl * 1000,
        )
        logger.info("Refreshed access token for %s", tenant.idn)
        return self._save(tenant, record)

    async def get_valid_access_token(self, tenant: Tenant) -> str:
        """Return a usable access token, refreshing or re-exchanging as needed."""
        async with self._lock(tenant):
            record = self.load(tenant)
            if record and record.access_token and not record.is_expired(self.clock()):
                return record.access_token

            if record and record.access_token:
                try:
                    return (await self.refresh_token(tenant, record.refresh_token)).access_token
                except RefreshError as exc:
                    logger.warning("%s; falling back to API key exchange", exc)

            return (await self.exchange_credential_for_token(tenant)).access_token

    async def force_reauth(self, tenant: Tenant) -> str:
        """Unconditionally re-exchange the API key, bypassing any stored token."""
        async with self._lock(tenant):
            return (await self.exchange_credential_for_token(tenant)).access_token
