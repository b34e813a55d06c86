"""Shared pytest fixtures for the toolkit test suite."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from ai_toolkit.cache import ResponseCache
from ai_toolkit.errors import StreamInterrupted
from ai_toolkit.llm_client import FunctionCall, GenerationRequest, GenerationResult, LLMClient, StreamChunk, Usage
from ai_toolkit.pipeline.orchestrator import StageOrchestrator
from ai_toolkit.pipeline.stages import stage_names
from ai_toolkit.project_store import InMemoryProjectStore
from ai_toolkit.rate_limiter import RateLimiter, RateLimitPolicy
from ai_toolkit.templates import TemplateRenderer


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays and advances the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


# =============================================================================
# Provider double
# =============================================================================


class FakeClient(LLMClient):
    """Scripted LLM client that records every request it receives."""

    provider_name = "fake"

    def __init__(self, text: str = "generated text") -> None:
        super().__init__("fake-model", max_tokens=1000, temperature=0.5)
        self.text = text
        self.calls: List[GenerationRequest] = []
        self.stream_calls: List[GenerationRequest] = []
        self.errors: List[BaseException] = []
        self.gate: Optional[asyncio.Event] = None
        self.stream_pieces: Optional[List[str]] = None
        self.interrupt_after: Optional[int] = None
        self.function_calls: Tuple[FunctionCall, ...] = ()

    @property
    def total_calls(self) -> int:
        return len(self.calls) + len(self.stream_calls)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return GenerationResult(
            text=self.text,
            model=request.model,
            provider=self.provider_name,
            finish_reason="stop",
            usage=Usage(input_tokens=10, output_tokens=5),
            function_calls=self.function_calls,
        )

    async def generate_streaming(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        self.stream_calls.append(request)
        if self.errors:
            raise self.errors.pop(0)
        pieces = self.stream_pieces or [self.text]
        for index, piece in enumerate(pieces):
            if self.interrupt_after is not None and index == self.interrupt_after:
                raise StreamInterrupted(
                    "connection reset",
                    partial_text="".join(pieces[:index]),
                    chunks_received=index,
                    provider=self.provider_name,
                )
            is_final = index == len(pieces) - 1
            yield StreamChunk(
                index=index,
                text=piece,
                is_final=is_final,
                finish_reason="stop" if is_final else None,
                function_calls=self.function_calls if is_final else (),
            )
            await asyncio.sleep(0)


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


# =============================================================================
# Orchestration
# =============================================================================


@pytest.fixture
def store() -> InMemoryProjectStore:
    store = InMemoryProjectStore()
    store.create_project(
        "Recipe Planner",
        "Plan weekly meals from a pantry list",
        idea="A mobile app that turns a pantry inventory into a weekly meal plan",
        project_id="recipes",
        stages=stage_names(),
    )
    return store


@pytest.fixture
def cache(clock: FakeClock) -> ResponseCache:
    return ResponseCache(max_entries=100, clock=clock)


@pytest.fixture
def limiter(clock: FakeClock, fake_sleep: FakeSleep) -> RateLimiter:
    return RateLimiter("fake", RateLimitPolicy(requests_per_period=100), clock=clock, sleep=fake_sleep)


@pytest.fixture
def orchestrator(fake_client, cache, limiter, store) -> StageOrchestrator:
    return StageOrchestrator(fake_client, cache, limiter, store, TemplateRenderer())


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def serve() -> Callable:
    """Return an async context manager that serves an aiohttp app locally.

    Yields the base URL of the running server.
    """

    @asynccontextmanager
    async def _serve(app: web.Application) -> AsyncIterator[str]:
        server = TestServer(app)
        await server.start_server()
        try:
            yield f"http://{server.host}:{server.port}"
        finally:
            await server.close()

    return _serve
