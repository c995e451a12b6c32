"""
Authenticated Transport -- bearer token on every request, one retry on 401.

The "already retried" flag lives on the request itself (a fresh
``RetryMarker`` in ``httpx.Request.extensions``), so concurrent requests
for the same tenant can never consume each other's retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .auth import TokenManager
from .errors import TransportError, UnauthorizedError
from .models import Tenant

logger = logging.getLogger("newosync.transport")

RETRY_EXTENSION = "newosync.retry"


@dataclass
class RetryMarker:
    """Per-request record of whether the 401 retry has been spent."""

    retried: bool = False


class AuthenticatedTransport:
    """Sends requests for one tenant through a shared ``httpx.AsyncClient``."""

    def __init__(self, tenant: Tenant, tokens: TokenManager, client: httpx.AsyncClient):
        self.tenant = tenant
        self.tokens = tokens
        self.client = client

    async def _send(self, request: httpx.Request, token: str) -> httpx.Response:
        request.headers["Authorization"] = f"Bearer {token}"
        logger.debug("-> %s %s", request.method, request.url)
        try:
            response = await self.client.send(request)
        except httpx.TransportError as exc:
            raise TransportError(f"{request.method} {request.url} failed: {exc}") from exc
        logger.debug("<- %s %s %s", response.status_code, request.method, request.url)
        return response

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one logical request; non-401 responses pass through untouched.

        Raises:
            UnauthorizedError: 401 again after re-authenticating once.
            TransportError: Network-level failure.
        """
        request = self.client.build_request(method, url, **kwargs)
        marker = RetryMarker()
        request.extensions[RETRY_EXTENSION] = marker

        token = await self.tokens.get_valid_access_token(self.tenant)
        response = await self._send(request, token)

        if response.status_code == 401 and not marker.retried:
            marker.retried = True
            logger.info("401 on %s %s; re-authenticating %s", method, url, self.tenant.idn)
            token = await self.tokens.force_reauth(self.tenant)
            response = await self._send(request, token)

        if response.status_code == 401:
            raise UnauthorizedError(
                f"{method} {url} rejected for customer '{self.tenant.idn}' "
                "after re-authentication"
            )
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
