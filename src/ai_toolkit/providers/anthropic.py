"""Chat-style adapter for the Anthropic Messages API."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from ..errors import AuthenticationFailed, InvalidRequest, ProviderUnavailable, RateLimited, ToolkitError
from ..llm_client import FunctionCall, GenerationRequest, GenerationResult, Usage
from .http import HTTPProviderClient, StreamEvent, decode_arguments, iter_sse, load_json_data

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
API_KEY_PREFIX = "sk-ant-"


def stream_error(error: Any, provider: str) -> ToolkitError:
    """Map an in-stream ``error`` event onto the error taxonomy."""
    if not isinstance(error, dict):
        return ProviderUnavailable(f"{provider} stream error: {error}", provider=provider)
    error_type = error.get("type", "")
    message = f"{provider} stream error ({error_type}): {error.get('message', '')}"
    if error_type == "rate_limit_error":
        return RateLimited(message, provider=provider)
    if error_type in ("authentication_error", "permission_error"):
        return AuthenticationFailed(message, provider=provider)
    if error_type in ("invalid_request_error", "not_found_error", "request_too_large"):
        return InvalidRequest(message, provider=provider)
    return ProviderUnavailable(message, provider=provider)


class AnthropicClient(HTTPProviderClient):
    """Client for Anthropic's ``/messages`` endpoint."""

    provider_name = "anthropic"
    endpoint = "/messages"
    text_separator = ""

    def __init__(self, settings, **kwargs: Any) -> None:
        super().__init__(settings, **kwargs)
        if self.api_key and not self.api_key.startswith(API_KEY_PREFIX):
            logger.warning(
                "Anthropic API key doesn't start with the expected prefix '%s'; "
                "check the key if authentication fails",
                API_KEY_PREFIX,
            )

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["x-api-key"] = self.api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    def _tools(self, request: GenerationRequest) -> List[Dict[str, Any]]:
        return [
            {"name": fn.name, "description": fn.description, "input_schema": fn.parameters}
            for fn in request.functions
        ]

    def _build_payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        tools = self._tools(request)
        if tools:
            payload["tools"] = tools
        return payload

    def _parse_response(self, data: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        texts: List[str] = []
        calls: List[FunctionCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(
                    FunctionCall(id=block.get("id"), name=block.get("name", ""), arguments=block.get("input") or {})
                )
        usage = data.get("usage") or {}
        return GenerationResult(
            text=self.text_separator.join(texts),
            model=data.get("model") or request.model,
            provider=self.provider_name,
            finish_reason=data.get("stop_reason"),
            usage=Usage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            ),
            function_calls=tuple(calls),
        )

    async def _stream_events(self, response: aiohttp.ClientResponse) -> AsyncIterator[StreamEvent]:
        input_tokens = 0
        output_tokens = 0
        stop_reason: Optional[str] = None
        # tool_use blocks by content index; input arrives as partial JSON.
        tool_blocks: Dict[int, Dict[str, Any]] = {}
        async for event, data in iter_sse(response, self.provider_name):
            payload = load_json_data(data, self.provider_name)
            kind = event or payload.get("type")
            if kind == "message_start":
                usage = (payload.get("message") or {}).get("usage") or {}
                input_tokens = int(usage.get("input_tokens") or 0)
                output_tokens = int(usage.get("output_tokens") or 0)
            elif kind == "content_block_start":
                block = payload.get("content_block") or {}
                if block.get("type") == "tool_use":
                    tool_blocks[payload.get("index", 0)] = {
                        "id": block.get("id"),
                        "name": block.get("name", ""),
                        "input": block.get("input") or {},
                        "partial": "",
                    }
            elif kind == "content_block_delta":
                delta = payload.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield StreamEvent(text=delta["text"])
                elif delta.get("type") == "input_json_delta":
                    block = tool_blocks.get(payload.get("index", 0))
                    if block is not None:
                        block["partial"] += delta.get("partial_json") or ""
            elif kind == "message_delta":
                stop_reason = (payload.get("delta") or {}).get("stop_reason") or stop_reason
                usage = payload.get("usage") or {}
                output_tokens = int(usage.get("output_tokens") or output_tokens)
            elif kind == "message_stop":
                yield StreamEvent(
                    done=True,
                    finish_reason=stop_reason,
                    usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
                    function_calls=tuple(
                        FunctionCall(
                            id=block["id"],
                            name=block["name"],
                            arguments=(
                                decode_arguments(block["partial"], block["name"], self.provider_name)
                                if block["partial"]
                                else block["input"]
                            ),
                        )
                        for _, block in sorted(tool_blocks.items())
                    ),
                )
                return
            elif kind == "error":
                raise stream_error(payload.get("error"), self.provider_name)
