"""Cache invalidation against Varnish front-ends.

For every configured target a ``PURGE`` request is sent for the changed
path. Requests to all targets run concurrently and a failing target never
affects its siblings:

    PURGE {url_prefix without trailing "/"}{path}
    Host: {host override, or the host of the request URL}
    Authorization: Basic {iRODS username:password}
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from purgeman.errors import PurgeRequestError
from purgeman.observability.metrics import record_purge_request

logger = logging.getLogger(__name__)

PURGE_METHOD = "PURGE"


@dataclass(frozen=True, slots=True)
class CacheTarget:
    """A cache front-end addressed by URL prefix and optional virtual host."""

    url_prefix: str
    host_override: str | None = None

    def request_url(self, path: str) -> str:
        """Join prefix and path by plain concatenation."""
        return self.url_prefix.rstrip("/") + path


@dataclass(frozen=True, slots=True)
class PurgeResult:
    """Outcome of a PURGE request to one target."""

    target: CacheTarget
    url: str
    host: str = ""
    status_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PurgeDispatcher:
    """Sends PURGE requests for a path to every cache target.

    Holds no state besides the HTTP connection pool; concurrent calls to
    ``purge`` are independent.
    """

    def __init__(
        self,
        targets: list[CacheTarget],
        username: str,
        password: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.targets = list(targets)
        self._auth = httpx.BasicAuth(username, password)
        self._timeout = timeout
        self._client = client
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client.

        Requests sent after closing fail instead of opening a new client.
        """
        self._closed = True
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def purge(self, path: str, targets: list[CacheTarget] | None = None) -> list[PurgeResult]:
        """Purge a path on every target.

        Returns once all requests have finished, whatever their outcome.
        """
        targets = self.targets if targets is None else targets
        logger.info(f"Purging a cache for {path}")

        results = await asyncio.gather(
            *(self._purge_target(target, path) for target in targets),
            return_exceptions=True,
        )

        outcomes: list[PurgeResult] = []
        for target, result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error purging {target.url_prefix}: {result}")
                outcomes.append(
                    PurgeResult(target=target, url=target.request_url(path), error=str(result))
                )
            else:
                outcomes.append(result)
        return outcomes

    async def _purge_target(self, target: CacheTarget, path: str) -> PurgeResult:
        request_url = target.request_url(path)
        host = ""
        try:
            host = resolve_host(target, request_url)
            logger.info(f"Sending a PURGE request to '{request_url}' for host '{host}'")
            status_code = await self._send(target, request_url, host)
        except PurgeRequestError as e:
            logger.error(str(e))
            record_purge_request(success=False)
            return PurgeResult(target=target, url=request_url, host=host, error=e.reason)

        record_purge_request(success=True)
        return PurgeResult(target=target, url=request_url, host=host, status_code=status_code)

    async def _send(self, target: CacheTarget, request_url: str, host: str) -> int:
        if self._closed:
            raise PurgeRequestError(request_url, host, "dispatcher is closed")

        headers = {}
        if target.host_override:
            headers["Host"] = target.host_override

        try:
            response = await self._get_client().request(
                PURGE_METHOD,
                request_url,
                headers=headers,
                auth=self._auth,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise PurgeRequestError(request_url, host, f"request failed: {e}") from e

        if not response.is_success:
            raise PurgeRequestError(
                request_url,
                host,
                f"unexpected response {response.status_code} {response.reason_phrase}",
            )
        return response.status_code


def resolve_host(target: CacheTarget, request_url: str) -> str:
    """Return the Host a request is addressed to.

    Raises:
        PurgeRequestError: If the URL cannot be parsed.
    """
    if target.host_override:
        return target.host_override

    try:
        url = httpx.URL(request_url)
    except httpx.InvalidURL as e:
        raise PurgeRequestError(request_url, "", f"failed to parse the request url: {e}") from e

    netloc = url.netloc.decode("ascii")
    if not netloc:
        raise PurgeRequestError(request_url, "", "request url has no host")
    return netloc
