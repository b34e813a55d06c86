"""Completion-style adapter for Ollama's ``/api/generate`` endpoint."""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict

import aiohttp

from ..errors import InvalidRequest, ProviderUnavailable
from ..llm_client import GenerationRequest, GenerationResult, Usage
from .http import HTTPProviderClient, StreamEvent, iter_ndjson


def _usage(data: Dict[str, Any]) -> Usage:
    return Usage(
        input_tokens=int(data.get("prompt_eval_count") or 0),
        output_tokens=int(data.get("eval_count") or 0),
    )


class OllamaClient(HTTPProviderClient):
    """Client for a local or remote Ollama server. No credential required."""

    provider_name = "ollama"
    endpoint = "/api/generate"

    def _build_payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        if request.functions:
            raise InvalidRequest(
                "ollama completion endpoint does not support function calling", provider=self.provider_name
            )
        options: Dict[str, Any] = {"num_predict": request.max_tokens}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        return {
            "model": request.model,
            "prompt": request.prompt,
            "stream": stream,
            "options": options,
        }

    def _parse_response(self, data: Dict[str, Any], request: GenerationRequest) -> GenerationResult:
        if data.get("error"):
            raise ProviderUnavailable(f"ollama error: {data['error']}", provider=self.provider_name)
        return GenerationResult(
            text=data.get("response") or "",
            model=data.get("model") or request.model,
            provider=self.provider_name,
            finish_reason=data.get("done_reason") or ("stop" if data.get("done") else None),
            usage=_usage(data),
        )

    async def _stream_events(self, response: aiohttp.ClientResponse) -> AsyncIterator[StreamEvent]:
        async for line in iter_ndjson(response, self.provider_name):
            if line.get("error"):
                raise ProviderUnavailable(f"ollama stream error: {line['error']}", provider=self.provider_name)
            if line.get("response"):
                yield StreamEvent(text=line["response"])
            if line.get("done"):
                yield StreamEvent(
                    done=True,
                    finish_reason=line.get("done_reason") or "stop",
                    usage=_usage(line),
                )
                return
