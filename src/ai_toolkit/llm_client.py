"""Abstract LLM client interface for provider-agnostic usage.

This module defines the request/response types shared by every provider and
the async interface the stage orchestrator expects. Concrete provider clients
live in :mod:`ai_toolkit.providers`.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import json
import re
import uuid
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .concurrency import ConcurrencyManager
from .errors import ResponseParseError


class FunctionDefinition(BaseModel):
    """A tool the model may call, described by a JSON schema."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class GenerationOptions(BaseModel):
    """Per-call overrides. Anything left unset falls back to client defaults."""

    model: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    functions: Optional[List[FunctionDefinition]] = None


class GenerationRequest(BaseModel):
    """Fully resolved, immutable generation request."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    model: str
    max_tokens: int
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    functions: tuple[FunctionDefinition, ...] = ()
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    def cache_key(self) -> str:
        """SHA-256 over every field that can change the model output.

        ``request_id`` is for tracing only and never participates.
        """
        payload = self.model_dump(mode="json", exclude={"request_id"})
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class FunctionCall(BaseModel):
    id: Optional[str] = None
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    """Completed output of one provider call."""

    model_config = ConfigDict(frozen=True)

    text: str
    model: str = ""
    provider: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    function_calls: tuple[FunctionCall, ...] = ()

    def size_bytes(self) -> int:
        return len(self.model_dump_json().encode("utf-8"))


class StreamChunk(BaseModel):
    """One fragment of a streamed response.

    Indices increase from 0. ``is_final`` is set on exactly one chunk, the
    last, which also carries the finish reason, usage and any tool calls.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    text: str = ""
    is_final: bool = False
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    function_calls: tuple[FunctionCall, ...] = ()


def split_into_chunks(text: str, pieces: int = 8) -> List[str]:
    """Split text on word boundaries into at most ``pieces`` fragments."""
    if not text:
        return [""]
    words = re.findall(r"\S+\s*|\s+", text)
    size = max(1, -(-len(words) // pieces))
    return ["".join(words[i:i + size]) for i in range(0, len(words), size)]


def _strip_code_fence(text: str) -> str:
    match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    return match.group(1).strip() if match else text.strip()


class LLMClient(abc.ABC):
    """Abstract base class for all LLM clients.

    Concrete implementations receive their provider settings and hold the
    model and sampling defaults used by :meth:`build_request`.
    """

    provider_name = "base"

    def __init__(
        self,
        model: str,
        *,
        max_tokens: int = 4096,
        temperature: Optional[float] = 0.7,
        max_concurrent_requests: int = 3,
    ) -> None:
        self.model = model
        self.default_max_tokens = max_tokens
        self.default_temperature = temperature
        self.max_concurrent_requests = max_concurrent_requests

    @property
    def credential_id(self) -> str:
        """Non-secret identifier of the credential in use."""
        return "anonymous"

    def build_request(self, prompt: str, options: Optional[GenerationOptions] = None) -> GenerationRequest:
        options = options or GenerationOptions()
        return GenerationRequest(
            prompt=prompt,
            model=options.model or self.model,
            max_tokens=options.max_tokens or self.default_max_tokens,
            temperature=options.temperature if options.temperature is not None else self.default_temperature,
            top_p=options.top_p,
            functions=tuple(options.functions or ()),
        )

    @abc.abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Perform one provider call and return the complete result.

        Raises:
            AuthenticationFailed, RateLimited, InvalidRequest,
            ProviderUnavailable: mapped from the provider's response.
        """

    async def generate_streaming(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Default streaming implementation: simulate by chunking full response."""
        result = await self.generate(request)
        pieces = split_into_chunks(result.text)
        for index, piece in enumerate(pieces):
            is_final = index == len(pieces) - 1
            yield StreamChunk(
                index=index,
                text=piece,
                is_final=is_final,
                finish_reason=result.finish_reason if is_final else None,
                usage=result.usage if is_final else None,
                function_calls=result.function_calls if is_final else (),
            )

    async def generate_with_options(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        return await self.generate(self.build_request(prompt, options))

    def generate_streaming_with_options(self, prompt: str, options: GenerationOptions) -> AsyncIterator[StreamChunk]:
        return self.generate_streaming(self.build_request(prompt, options))

    async def generate_json(self, prompt: str, options: Optional[GenerationOptions] = None) -> Any:
        """Generate and parse the response text as JSON.

        Raises:
            ResponseParseError: If the text is not valid JSON.
        """
        result = await self.generate(self.build_request(prompt, options))
        if result.function_calls:
            return result.function_calls[0].arguments
        try:
            return json.loads(_strip_code_fence(result.text))
        except json.JSONDecodeError as exc:
            raise ResponseParseError(
                f"Response is not valid JSON: {exc}", provider=self.provider_name
            ) from exc

    async def call_function(
        self,
        prompt: str,
        function: FunctionDefinition,
        options: Optional[GenerationOptions] = None,
    ) -> Dict[str, Any]:
        """Ask the model to call ``function`` and return its arguments."""
        base = (options or GenerationOptions()).model_copy(update={"functions": [function]})
        data = await self.generate_json(prompt, base)
        if not isinstance(data, dict):
            raise ResponseParseError(
                f"Expected an object of arguments for '{function.name}'", provider=self.provider_name
            )
        return data

    async def generate_multiple(self, prompts: Iterable[str]) -> List[GenerationResult]:
        """Generate completions for several prompts, bounded by ``max_concurrent_requests``."""
        manager = ConcurrencyManager(max_concurrent=self.max_concurrent_requests)
        return await manager.gather_with_limit(self.generate(self.build_request(p)) for p in prompts)

    def generate_sync(self, prompt: str, options: Optional[GenerationOptions] = None) -> GenerationResult:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            raise RuntimeError(
                "generate_sync() called inside an active event loop. Use the async method instead."
            )

        async def _run() -> GenerationResult:
            try:
                return await self.generate(self.build_request(prompt, options))
            finally:
                await self.aclose()

        return asyncio.run(_run())

    async def aclose(self) -> None:
        """Release network resources. Safe to call more than once."""
