"""HTTP transports that carry a :class:`ProviderRequest` to a back-end.

A transport only moves bytes: it opens the request, surfaces non-2xx
statuses as :class:`TransportError`, and hands back a response whose
body can be read incrementally.  Neither transport retries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from switchboard.errors import TransportError

if TYPE_CHECKING:
    from switchboard.descriptor import ProviderDescriptor
    from switchboard.translate import ProviderRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0


class CancellationToken:
    """Cooperative cancellation flag shared between caller and request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ProviderResponse(Protocol):
    status_code: int

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aread(self) -> bytes:
        ...


class Transport(Protocol):
    def open(self, request: ProviderRequest):
        """Async context manager yielding a :class:`ProviderResponse`."""
        ...


# ----------------------------------------------------------------------
# httpx
# ----------------------------------------------------------------------

class HttpxTransport:
    """Sends requests with ``httpx.AsyncClient.stream``.

    Args:
        client: Shared client to reuse.  When omitted a client is created
            and closed for every request.
        timeout: Per-request timeout in seconds for owned clients.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT):
        self._client = client
        self.timeout = timeout

    @asynccontextmanager
    async def open(self, request: ProviderRequest):
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST", request.url, headers=request.headers, json=request.body,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.warning(
                        f"{request.provider_id} returned HTTP {response.status_code}: {body[:500]}"
                    )
                    raise TransportError(
                        f"{request.provider_id} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                        body=body,
                    )
                yield response
        except httpx.HTTPError as e:
            logger.warning(f"Network error talking to {request.provider_id}: {e}")
            raise TransportError(f"Network error talking to {request.provider_id}: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()


# ----------------------------------------------------------------------
# openai SDK
# ----------------------------------------------------------------------

class _SDKResponse:
    """Adapts the SDK's raw streaming response to :class:`ProviderResponse`."""

    def __init__(self, raw) -> None:
        self._raw = raw

    @property
    def status_code(self) -> int:
        return self._raw.status_code

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._raw.iter_bytes()

    async def aread(self) -> bytes:
        return await self._raw.read()


class OpenAITransport:
    """Sends ``openai-chat`` requests through the official SDK.

    The body built by the translator is passed straight to
    ``chat.completions.create`` and the raw byte stream is read back,
    so decoding stays shared with every other back-end.
    """

    def __init__(self, client: AsyncOpenAI | None = None, timeout: float = DEFAULT_TIMEOUT):
        self._client = client
        self.timeout = timeout

    def _make_client(self, request: ProviderRequest) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=request.api_key,
            base_url=request.base_url or None,
            max_retries=0,
            timeout=self.timeout,
        )

    @asynccontextmanager
    async def open(self, request: ProviderRequest):
        client = self._client or self._make_client(request)
        extra_headers = {
            k: v for k, v in request.headers.items()
            if k.lower() not in ("authorization", "content-type")
        }
        try:
            async with client.chat.completions.with_streaming_response.create(
                **request.body, extra_headers=extra_headers or None,
            ) as raw:
                yield _SDKResponse(raw)
        except openai.APIStatusError as e:
            logger.warning(f"{request.provider_id} returned HTTP {e.status_code}: {e.message}")
            raise TransportError(
                f"{request.provider_id} returned HTTP {e.status_code}: {e.message}",
                status_code=e.status_code,
                body=str(e.body or ""),
            ) from e
        except openai.APIConnectionError as e:
            logger.warning(f"Network error talking to {request.provider_id}: {e}")
            raise TransportError(f"Network error talking to {request.provider_id}: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Stream from {request.provider_id} failed: {e}")
            raise TransportError(f"Network error talking to {request.provider_id}: {e}") from e
        finally:
            if self._client is None:
                await client.close()


def default_transport(descriptor: ProviderDescriptor) -> Transport:
    """The SDK for OpenAI itself, plain httpx for everything else."""
    if descriptor.id == "openai":
        return OpenAITransport()
    return HttpxTransport()
