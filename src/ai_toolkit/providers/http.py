"""Shared aiohttp plumbing for HTTP provider adapters.

Adapters subclass :class:`HTTPProviderClient` and describe only their own
wire format: endpoint, headers, payload, response parsing and stream events.
Status mapping, timeouts, stream reading and chunk assembly live here so every
provider surfaces the same error taxonomy.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import aiohttp

from ..config import ProviderSettings
from ..errors import (
    AuthenticationFailed,
    InvalidRequest,
    ProviderUnavailable,
    RateLimited,
    ResponseParseError,
    StreamInterrupted,
    ToolkitError,
)
from ..llm_client import FunctionCall, GenerationRequest, GenerationResult, LLMClient, StreamChunk, Usage

logger = logging.getLogger(__name__)

_INVALID_STATUSES = {400, 404, 409, 413, 422}


@dataclass
class StreamEvent:
    """Provider-neutral view of one decoded stream event."""
    text: str = ""
    done: bool = False
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    function_calls: Tuple[FunctionCall, ...] = ()


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Read a retry hint in seconds from ``retry-after-ms`` or ``retry-after``."""
    millis = headers.get("retry-after-ms")
    if millis:
        try:
            return max(0.0, float(millis) / 1000.0)
        except ValueError:
            pass
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def extract_error_message(body: str) -> str:
    """Pull the human-readable message out of a provider error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body.strip()[:500]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return body.strip()[:500]


def error_for_status(
    status: int,
    message: str,
    headers: Mapping[str, str],
    provider: str,
) -> ToolkitError:
    """Map an HTTP error status onto the toolkit error taxonomy."""
    detail = f"{provider} returned HTTP {status}: {message}" if message else f"{provider} returned HTTP {status}"
    if status in (401, 403):
        return AuthenticationFailed(detail, provider=provider)
    if status == 429:
        return RateLimited(detail, retry_after=parse_retry_after(headers), provider=provider)
    if status in _INVALID_STATUSES:
        return InvalidRequest(detail, status=status, provider=provider)
    if status == 408 or status >= 500:
        return ProviderUnavailable(detail, status=status, provider=provider)
    return InvalidRequest(detail, status=status, provider=provider)


async def iter_sse(
    response: aiohttp.ClientResponse, provider: Optional[str] = None
) -> AsyncIterator[Tuple[Optional[str], str]]:
    """Yield ``(event, data)`` pairs from a server-sent events body."""
    event: Optional[str] = None
    data_lines: List[str] = []
    async for raw in response.content:
        try:
            line = raw.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError as exc:
            raise ResponseParseError(f"Stream line is not valid UTF-8: {exc}", provider=provider) from exc
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


async def iter_ndjson(
    response: aiohttp.ClientResponse, provider: Optional[str] = None
) -> AsyncIterator[Dict[str, Any]]:
    """Yield one decoded object per non-empty line."""
    async for raw in response.content:
        line = raw.strip()
        if not line:
            continue
        try:
            decoded = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ResponseParseError(f"Malformed stream line: {exc}", provider=provider) from exc
        yield decoded


def load_json_data(data: str, provider: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"Malformed stream event: {exc}", provider=provider) from exc
    if not isinstance(decoded, dict):
        raise ResponseParseError("Stream event is not a JSON object", provider=provider)
    return decoded


def decode_arguments(raw: str, name: str, provider: str) -> Dict[str, Any]:
    """Parse the JSON argument string of a tool call."""
    try:
        arguments = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"Tool call '{name}' has malformed arguments", provider=provider) from exc
    if not isinstance(arguments, dict):
        raise ResponseParseError(f"Tool call '{name}' arguments are not an object", provider=provider)
    return arguments


class HTTPProviderClient(LLMClient):
    """Base class for adapters that talk to a provider over HTTP."""

    provider_name = "http"
    endpoint = ""

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        max_tokens: int = 4096,
        temperature: Optional[float] = 0.7,
        max_concurrent_requests: int = 3,
    ) -> None:
        super().__init__(
            settings.resolved_model,
            max_tokens=max_tokens,
            temperature=temperature,
            max_concurrent_requests=max_concurrent_requests,
        )
        self.base_url = settings.resolved_base_url
        self.api_key = settings.api_key
        self.timeout = settings.timeout
        self._session = session
        self._owns_session = session is None

    @property
    def credential_id(self) -> str:
        if not self.api_key:
            return "anonymous"
        return hashlib.sha256(self.api_key.encode("utf-8")).hexdigest()[:16]

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    def _headers(self) -> Dict[str, str]:
        return {"content-type": "application/json"}

    def _build_payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, data: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        raise NotImplementedError

    def _stream_events(self, response: aiohttp.ClientResponse) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return
        try:
            body = await response.text()
        except (aiohttp.ClientError, UnicodeDecodeError):
            body = ""
        raise error_for_status(
            response.status,
            extract_error_message(body) or (response.reason or ""),
            response.headers,
            self.provider_name,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        payload = self._build_payload(request, stream=False)
        session = await self._get_session()
        logger.debug("POST %s model=%s request_id=%s", self.url, request.model, request.request_id)
        try:
            async with session.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                await self._raise_for_status(response)
                try:
                    data = await response.json(content_type=None)
                except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                    raise ResponseParseError(
                        f"{self.provider_name} returned a body that is not UTF-8 JSON", provider=self.provider_name
                    ) from exc
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable(
                f"{self.provider_name} request timed out after {self.timeout}s", provider=self.provider_name
            ) from exc
        except aiohttp.ClientError as exc:
            raise ProviderUnavailable(
                f"{self.provider_name} connection failed: {exc}", provider=self.provider_name
            ) from exc

        if not isinstance(data, dict):
            raise ResponseParseError("Response body is not a JSON object", provider=self.provider_name)
        return self._parse_response(data, request)

    async def generate_streaming(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        payload = self._build_payload(request, stream=True)
        session = await self._get_session()
        received: List[str] = []
        pending: Optional[str] = None
        index = 0

        logger.debug("POST %s (stream) model=%s request_id=%s", self.url, request.model, request.request_id)
        try:
            async with session.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout),
            ) as response:
                await self._raise_for_status(response)
                async for event in self._stream_events(response):
                    if event.text:
                        if pending is not None:
                            yield StreamChunk(index=index, text=pending)
                            index += 1
                        pending = event.text
                        received.append(event.text)
                    if event.done:
                        yield StreamChunk(
                            index=index,
                            text=pending or "",
                            is_final=True,
                            finish_reason=event.finish_reason,
                            usage=event.usage,
                            function_calls=event.function_calls,
                        )
                        return
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            if received:
                raise StreamInterrupted(
                    f"{self.provider_name} stream failed: {exc!r}",
                    partial_text="".join(received),
                    chunks_received=len(received),
                    provider=self.provider_name,
                ) from exc
            raise ProviderUnavailable(
                f"{self.provider_name} stream failed before any content: {exc!r}",
                provider=self.provider_name,
            ) from exc
        except ToolkitError as exc:
            if received and not isinstance(exc, StreamInterrupted):
                raise StreamInterrupted(
                    f"{self.provider_name} stream failed: {exc}",
                    partial_text="".join(received),
                    chunks_received=len(received),
                    provider=self.provider_name,
                ) from exc
            raise

        if received:
            raise StreamInterrupted(
                f"{self.provider_name} stream ended without a completion event",
                partial_text="".join(received),
                chunks_received=len(received),
                provider=self.provider_name,
            )
        raise ProviderUnavailable(
            f"{self.provider_name} stream closed before any content", provider=self.provider_name
        )

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
