"""Shared plumbing for REST control planes reached over httpx.

Status code mapping onto the error taxonomy:

    404          -> NotFoundError
    409          -> ConflictError (create) / VersionConflictError (replace)
    401, 403     -> AuthenticationError
    5xx, network -> PlatformUnavailableError
    other 4xx    -> RequestRejectedError

Nothing here retries: fatal categories surface to the run driver.
"""

from __future__ import annotations

import abc
import logging
from enum import Enum
from typing import Any

import httpx

from ..errors import (
    AuthenticationError,
    ConflictError,
    InstallerError,
    NotFoundError,
    PlatformUnavailableError,
    VersionConflictError,
)
from ..platform import Platform

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

# Longest response body quoted in an error message
MAX_ERROR_BODY_CHARS = 500


class RequestRejectedError(InstallerError):
    """Raised when a platform rejects a request as invalid (4xx)."""

    def __init__(self, platform: str, status_code: int, detail: str) -> None:
        self.platform = platform
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{platform} rejected request ({status_code}): {detail}")


class OnConflict(str, Enum):
    """How a 409 response is reported."""

    EXISTS = "exists"
    STALE = "stale"


class RestPlatform(Platform):
    """Platform reached through an authenticated ``httpx.AsyncClient``.

    Subclasses implement ``_authenticate`` returning a bearer token; it is
    called lazily before the first request.
    """

    def __init__(
        self,
        base_url: str,
        verify_tls: bool = True,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            verify=verify_tls,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self._token: str | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    @abc.abstractmethod
    async def _authenticate(self) -> str:
        """Obtain a bearer token."""

    async def _auth_headers(self) -> dict[str, str]:
        if self._token is None:
            self._token = await self._authenticate()
        return {"Authorization": f"Bearer {self._token}"}

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send without authentication, translating transport failures only."""
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise PlatformUnavailableError(self.name, f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise PlatformUnavailableError(self.name, f"{method} {url}: {e}") from e

    async def _request(
        self,
        method: str,
        url: str,
        *,
        kind: str,
        key: str,
        on_conflict: OnConflict = OnConflict.EXISTS,
        version_token: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Authenticated request returning the decoded JSON body (or None)."""
        headers = {**kwargs.pop("headers", {}), **await self._auth_headers()}
        response = await self._send(method, url, headers=headers, **kwargs)
        self._raise_for_status(response, kind, key, on_conflict, version_token)
        if not response.content:
            return None
        return response.json()

    def _raise_for_status(
        self,
        response: httpx.Response,
        kind: str,
        key: str,
        on_conflict: OnConflict = OnConflict.EXISTS,
        version_token: str | None = None,
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = response.text[:MAX_ERROR_BODY_CHARS]
        logger.debug(
            f"{self.name} returned {status}",
            extra={"kind": kind, "key": key, "status_code": status},
        )
        if status == 404:
            raise NotFoundError(kind, key)
        if status == 409:
            if on_conflict == OnConflict.STALE:
                raise VersionConflictError(kind, key, version_token)
            raise ConflictError(kind, key, detail)
        if status in (401, 403):
            raise AuthenticationError(self.name, f"{status} on {response.request.url}")
        if status >= 500:
            raise PlatformUnavailableError(self.name, f"{status}: {detail}")
        raise RequestRejectedError(self.name, status, detail)
