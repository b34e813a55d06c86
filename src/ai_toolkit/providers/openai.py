"""Chat-style adapter for OpenAI-compatible ``/chat/completions`` endpoints."""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp

from ..errors import ProviderUnavailable, ResponseParseError
from ..llm_client import FunctionCall, GenerationRequest, GenerationResult, Usage
from .http import HTTPProviderClient, StreamEvent, decode_arguments, iter_sse, load_json_data


def _usage(data: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not data:
        return None
    return Usage(
        input_tokens=int(data.get("prompt_tokens") or 0),
        output_tokens=int(data.get("completion_tokens") or 0),
    )


class OpenAIClient(HTTPProviderClient):
    """Client for OpenAI and API-compatible chat completion services."""

    provider_name = "openai"
    endpoint = "/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.functions:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": fn.name,
                        "description": fn.description,
                        "parameters": fn.parameters,
                    },
                }
                for fn in request.functions
            ]
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _parse_response(self, data: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        choices = data.get("choices") or []
        if not choices:
            raise ResponseParseError("Response contained no choices", provider=self.provider_name)
        choice = choices[0]
        message = choice.get("message") or {}

        calls: List[FunctionCall] = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            name = function.get("name", "")
            arguments = decode_arguments(function.get("arguments") or "", name, self.provider_name)
            calls.append(FunctionCall(id=call.get("id"), name=name, arguments=arguments))

        return GenerationResult(
            text=message.get("content") or "",
            model=data.get("model") or request.model,
            provider=self.provider_name,
            finish_reason=choice.get("finish_reason"),
            usage=_usage(data.get("usage")),
            function_calls=tuple(calls),
        )

    def _stream_calls(self, pending: Dict[int, Dict[str, Any]]) -> Tuple[FunctionCall, ...]:
        return tuple(
            FunctionCall(
                id=slot["id"],
                name=slot["name"],
                arguments=decode_arguments(slot["arguments"], slot["name"], self.provider_name),
            )
            for _, slot in sorted(pending.items())
        )

    async def _stream_events(self, response: aiohttp.ClientResponse) -> AsyncIterator[StreamEvent]:
        finish_reason: Optional[str] = None
        usage: Optional[Usage] = None
        # Tool calls arrive as fragments keyed by their index.
        pending: Dict[int, Dict[str, Any]] = {}
        async for _event, data in iter_sse(response, self.provider_name):
            if data.strip() == "[DONE]":
                yield StreamEvent(
                    done=True, finish_reason=finish_reason, usage=usage, function_calls=self._stream_calls(pending)
                )
                return
            payload = load_json_data(data, self.provider_name)
            if payload.get("error"):
                error = payload["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ProviderUnavailable(f"openai stream error: {message}", provider=self.provider_name)
            if payload.get("usage"):
                usage = _usage(payload["usage"])
            for choice in payload.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    yield StreamEvent(text=delta["content"])
                for call in delta.get("tool_calls") or []:
                    slot = pending.setdefault(call.get("index", 0), {"id": None, "name": "", "arguments": ""})
                    function = call.get("function") or {}
                    slot["id"] = call.get("id") or slot["id"]
                    slot["name"] = function.get("name") or slot["name"]
                    slot["arguments"] += function.get("arguments") or ""
                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
        if finish_reason is not None:
            yield StreamEvent(
                done=True, finish_reason=finish_reason, usage=usage, function_calls=self._stream_calls(pending)
            )
