"""HTTP plumbing shared by the provider adapters.

Adapters compose an :class:`HttpTransport` instead of inheriting one: the
transport owns the ``httpx.AsyncClient``, header construction, per-call
timeouts and error classification, while each adapter supplies its auth
scheme and its wire translation.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from agent_router.errors import ProviderError
from agent_router.providers._errors import error_from_response, wrap_transport_error
from agent_router.providers._sse import iter_sse_events

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000


class AuthScheme(Protocol):
    """Produces the authentication headers and query parameters for one provider."""

    def headers(self, api_key: str | None) -> dict[str, str]: ...  # noqa: D102

    def params(self, api_key: str | None) -> dict[str, str]: ...  # noqa: D102


@dataclass(frozen=True)
class BearerAuth:
    """``Authorization: Bearer <key>``."""

    def headers(self, api_key: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def params(self, api_key: str | None) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class HeaderKeyAuth:
    """A provider-specific key header plus fixed headers (e.g. an API version)."""

    header: str
    fixed: Mapping[str, str] = field(default_factory=dict)

    def headers(self, api_key: str | None) -> dict[str, str]:
        headers = dict(self.fixed)
        if api_key:
            headers[self.header] = api_key
        return headers

    def params(self, api_key: str | None) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class QueryKeyAuth:
    """The key as a query parameter (``?key=<key>``)."""

    param: str = "key"

    def headers(self, api_key: str | None) -> dict[str, str]:
        return {}

    def params(self, api_key: str | None) -> dict[str, str]:
        return {self.param: api_key} if api_key else {}


class HttpTransport:
    """One provider's HTTP client, headers and error mapping.

    Requests in flight keep the client open: :meth:`aclose` called while any
    are running only marks the transport, and the last one to finish closes
    the client.
    """

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        auth: AuthScheme,
        api_key: str | None = None,
        provider_type: str | None = None,
        extra_headers: Mapping[str, str] | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.provider_type = provider_type or provider
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.api_key = api_key
        self.extra_headers = dict(extra_headers or {})
        self.default_timeout_ms = default_timeout_ms
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._in_flight = 0
        self._close_pending = False

    def build_headers(self) -> dict[str, str]:
        """Content type, auth headers, then configured extras (extras win)."""
        headers = {"Content-Type": "application/json"}
        headers.update(self.auth.headers(self.api_key))
        headers.update(self.extra_headers)
        return headers

    def build_params(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        params = dict(extra or {})
        params.update(self.auth.params(self.api_key))
        return params

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
            self._owns_client = True
        return self._client

    @asynccontextmanager
    async def _checkout(self) -> AsyncIterator[httpx.AsyncClient]:
        client = self._get_client()
        self._in_flight += 1
        try:
            yield client
        finally:
            self._in_flight -= 1
            if self._close_pending and self._in_flight == 0:
                await self._release()

    def _timeout(self, timeout_ms: int | None) -> tuple[int, httpx.Timeout]:
        effective = timeout_ms if timeout_ms is not None else self.default_timeout_ms
        return effective, httpx.Timeout(effective / 1000)

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> Any:
        """Issue one request and return the decoded JSON body.

        The response is fully read (and so released) before this returns or
        raises.
        """
        effective_ms, timeout = self._timeout(timeout_ms)
        async with self._checkout() as client:
            try:
                response = await client.request(
                    method,
                    self.url(path),
                    json=body,
                    params=self.build_params(params) or None,
                    headers=self.build_headers(),
                    timeout=timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise wrap_transport_error(
                    e, provider=self.provider, timeout_ms=effective_ms
                ) from e

        if not response.is_success:
            log.debug(
                "%s %s returned HTTP %s",
                method,
                path,
                response.status_code,
                extra={"provider": self.provider},
            )
            raise error_from_response(
                response, provider=self.provider, provider_type=self.provider_type
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.provider} returned a non-JSON body",
                provider=self.provider,
                status_code=response.status_code,
            ) from e

    @asynccontextmanager
    async def stream_events(
        self,
        path: str,
        *,
        body: dict[str, Any],
        params: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        """POST *body* and yield an iterator over the SSE JSON events.

        The response is closed when the block exits, whether the stream was
        drained, abandoned, cancelled, or failed.
        """
        effective_ms, timeout = self._timeout(timeout_ms)
        async with self._checkout() as client:
            request = client.build_request(
                "POST",
                self.url(path),
                json=body,
                params=self.build_params(params) or None,
                headers=self.build_headers(),
                timeout=timeout,
            )
            try:
                response = await client.send(request, stream=True)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise wrap_transport_error(
                    e, provider=self.provider, timeout_ms=effective_ms
                ) from e

            try:
                if not response.is_success:
                    await response.aread()
                    raise error_from_response(
                        response, provider=self.provider, provider_type=self.provider_type
                    )
                body_bytes = self._read_body(response, effective_ms)
                async with aclosing(
                    iter_sse_events(body_bytes, provider=self.provider)
                ) as events:
                    yield events
            finally:
                await response.aclose()

    async def _read_body(
        self, response: httpx.Response, timeout_ms: int
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise wrap_transport_error(
                e, provider=self.provider, timeout_ms=timeout_ms
            ) from e

    async def aclose(self) -> None:
        """Close the underlying client when this transport created it.

        With requests in flight the close is deferred until the last one
        finishes.
        """
        if self._in_flight:
            self._close_pending = True
            log.debug(
                "Deferring client close until %d in-flight request(s) finish",
                self._in_flight,
                extra={"provider": self.provider},
            )
            return
        await self._release()

    async def _release(self) -> None:
        self._close_pending = False
        client = self._client
        if client is None:
            return
        self._client = None
        if self._owns_client:
            await client.aclose()
