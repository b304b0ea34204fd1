"""Streaming client for the Anthropic Messages API.

Thin wrapper over httpx.AsyncClient: builds auth headers, POSTs a
streaming request and yields decoded SSE events.  No retries happen here;
rate-limit and overload errors surface to the caller as exceptions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator

import httpx

from parley.api.errors import (
    HTTPError,
    Overloaded,
    RateLimited,
    TransportError,
    parse_retry_after,
)
from parley.api.models import ApiRequest
from parley.api.sse import MessageStop, SSEDecoder, StreamEvent
from parley.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"
_OAT_MARKER = "sk-ant-oat"


def build_headers(settings: Settings) -> dict[str, str]:
    """Default headers, including auth, for the configured credential."""
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }

    # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers.
    # Regular API keys use x-api-key.
    api_key = settings.anthropic_api_key or ""
    auth_token = settings.anthropic_auth_token or ""

    if auth_token:
        headers["authorization"] = f"Bearer {auth_token}"
        if _OAT_MARKER in auth_token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        if _OAT_MARKER in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        else:
            headers["x-api-key"] = api_key
    else:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "API calls will fail"
        )
    return headers


class AnthropicClient:
    """Owns the httpx client used for Messages API calls."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_headers(settings),
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )

        credential = settings.anthropic_auth_token or settings.anthropic_api_key
        if _OAT_MARKER in credential:
            auth_type = "OAT/subscription"
        elif settings.anthropic_auth_token:
            auth_type = "Bearer token"
        else:
            auth_type = "API key"
        logger.info("httpx client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> AnthropicClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        request: ApiRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """POST a streaming request and yield events in wire order.

        Stops after message_stop, when the connection closes, or as soon as
        ``cancel_event`` is set.  Leaving the ``async with`` block closes the
        underlying connection.

        Raises:
            RateLimited: on HTTP 429.
            Overloaded: on HTTP 529.
            HTTPError: on any other non-2xx status.
            TransportError: when the connection fails.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = request.to_payload()
        decoder = SSEDecoder()
        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code == 429:
                    raise RateLimited(parse_retry_after(response.headers.get("retry-after")))
                if response.status_code == 529:
                    raise Overloaded()
                if not response.is_success:
                    body = await self._read_error_body(response)
                    raise HTTPError(response.status_code, body)

                async for line in response.aiter_lines():
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info("Stream cancelled by caller")
                        return
                    for event in decoder.feed(line):
                        yield event
                        if isinstance(event, MessageStop):
                            return

                for event in decoder.flush():
                    yield event
        except httpx.HTTPError as e:
            raise TransportError(f"Connection to API failed: {e}") from e

    async def _read_error_body(self, response: httpx.Response) -> str:
        limit = self._settings.error_body_max_bytes
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if size >= limit:
                break
        return b"".join(chunks)[:limit].decode("utf-8", errors="replace")
