"""Stage orchestrator.

Runs one planning stage end to end: dependency gate, context, template,
cache, rate-limited provider call, persistence. Errors are annotated with the
stage id and re-raised as the same object so callers see exactly what the
provider or renderer reported.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..cache import ResponseCache
from ..concurrency import ConcurrencyManager
from ..errors import DependencyNotMet, MissingTemplateVariable, StreamInterrupted, ToolkitError
from ..llm_client import (
    FunctionDefinition,
    GenerationOptions,
    GenerationRequest,
    GenerationResult,
    LLMClient,
    StreamChunk,
    split_into_chunks,
)
from ..models import StageStatus
from ..project_store import ProjectStore
from ..rate_limiter import RateLimiter
from ..templates import TemplateRenderer
from .stages import STAGES, StageContext, StageDefinition, StageId, dependency_levels, get_stage

logger = logging.getLogger(__name__)

StageRef = Union[int, str, StageId]


@dataclass
class RunOptions:
    """Caller-supplied knobs for one stage run."""
    overrides: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    functions: Optional[List[FunctionDefinition]] = None
    use_cache: bool = True
    cache_ttl: Optional[float] = None

    def generation_options(self, definition: StageDefinition) -> GenerationOptions:
        return GenerationOptions(
            model=self.model,
            max_tokens=self.max_tokens or definition.max_tokens,
            temperature=self.temperature if self.temperature is not None else definition.temperature,
            top_p=self.top_p,
            functions=self.functions,
        )


@dataclass
class StageRunResult:
    project_id: str
    stage_id: StageId
    text: str
    result: GenerationResult
    source: str = "miss"

    @property
    def cached(self) -> bool:
        return self.source in ("hit", "shared")


class StageStream:
    """Async iterator over the chunks of a streamed stage run.

    ``result`` is set once the final chunk has been produced, by which time
    the output is already persisted and the stage is completed. Closing the
    stream early leaves the stage incomplete.
    """

    def __init__(self, make_chunks: Callable[["StageStream"], AsyncIterator[StreamChunk]]) -> None:
        self.result: Optional[StageRunResult] = None
        self._chunks = make_chunks(self)

    def __aiter__(self) -> "StageStream":
        return self

    async def __anext__(self) -> StreamChunk:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        await self._chunks.aclose()  # type: ignore[attr-defined]

    async def __aenter__(self) -> "StageStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(self) -> StageRunResult:
        """Drain the stream and return the final result."""
        async for _ in self:
            pass
        if self.result is None:
            raise StreamInterrupted("Stream finished without a result")
        return self.result


class StageOrchestrator:
    """Coordinate stage runs over shared client, cache, limiter and store."""

    def __init__(
        self,
        client: LLMClient,
        cache: Optional[ResponseCache],
        limiter: RateLimiter,
        store: ProjectStore,
        renderer: TemplateRenderer,
        *,
        max_concurrent: int = 3,
    ) -> None:
        self.client = client
        self.cache = cache
        self.limiter = limiter
        self.store = store
        self.renderer = renderer
        self.max_concurrent = max_concurrent
        self._status: Dict[Tuple[str, StageId], StageStatus] = {}

    # State

    def status(self, project_id: str, stage: StageRef) -> StageStatus:
        stage_id = get_stage(stage).id
        status = self._status.get((project_id, stage_id))
        if status is not None:
            return status
        if self.store.is_completed(project_id, stage_id):
            return StageStatus.COMPLETED
        return StageStatus.PENDING

    def _set_status(self, project_id: str, stage_id: StageId, status: StageStatus, error: Optional[ToolkitError] = None) -> None:
        self._status[(project_id, stage_id)] = status
        # A completed output stays in the store until a new one replaces it.
        if status != StageStatus.COMPLETED and not self.store.is_completed(project_id, stage_id):
            self.store.set_stage_status(project_id, stage_id, status, error.to_dict() if error else None)
        logger.info("Stage %d of %s: %s", stage_id, project_id, status)

    def _fail(self, project_id: str, definition: StageDefinition, exc: BaseException) -> None:
        error: Optional[ToolkitError] = None
        if isinstance(exc, ToolkitError):
            if exc.stage_id is None:
                exc.stage_id = int(definition.id)
            error = exc
        else:
            error = ToolkitError(repr(exc), stage_id=int(definition.id))
        logger.error("Stage %d (%s) failed: %s", definition.id, definition.name, exc)
        self._set_status(project_id, definition.id, StageStatus.FAILED, error)

    def _reset(self, project_id: str, definition: StageDefinition, previous: StageStatus) -> None:
        """Undo a Running transition for a run that was abandoned."""
        restored = StageStatus.PENDING if previous == StageStatus.RUNNING else previous
        self._set_status(project_id, definition.id, restored)

    def _complete(self, project_id: str, definition: StageDefinition, result: GenerationResult, source: str) -> StageRunResult:
        self.store.set_stage_output(project_id, definition.id, result.text)
        self._set_status(project_id, definition.id, StageStatus.COMPLETED)
        return StageRunResult(
            project_id=project_id, stage_id=definition.id, text=result.text, result=result, source=source
        )

    # Preparation

    def check_dependencies(self, project_id: str, definition: StageDefinition) -> None:
        """Raise DependencyNotMet for the first prerequisite that is not completed."""
        for dep in definition.dependencies:
            if not self.store.is_completed(project_id, dep):
                raise DependencyNotMet(
                    f"Stage {int(definition.id)} ({definition.name}) requires stage {int(dep)} "
                    f"({STAGES[dep].name}) to be completed first",
                    missing_stage=int(dep),
                    stage_id=int(definition.id),
                )

    def build_context(self, project_id: str, definition: StageDefinition, options: RunOptions) -> StageContext:
        project = self.store.get_project(project_id)
        outputs: Dict[str, str] = {}
        # Only earlier stages feed a prompt.
        for other in STAGES.values():
            if other.id >= definition.id:
                continue
            text = self.store.get_stage_output(project_id, other.id)
            if text is not None:
                outputs[other.key] = text
        context = StageContext.build(project, outputs, options.overrides)
        missing = [name for name in definition.required_inputs if not context.has(name)]
        if missing:
            raise MissingTemplateVariable(
                f"Stage {int(definition.id)} ({definition.name}) needs user input: {', '.join(missing)}",
                stage_id=int(definition.id),
            )
        return context

    def prepare_request(self, project_id: str, definition: StageDefinition, options: RunOptions) -> GenerationRequest:
        context = self.build_context(project_id, definition, options)
        prompt = self.renderer.render(definition.template_name, context)
        return self.client.build_request(prompt, options.generation_options(definition))

    # Generation

    async def _call_provider(self, request: GenerationRequest) -> GenerationResult:
        return await self.limiter.execute(lambda: self.client.generate(request))

    async def _generate(self, request: GenerationRequest, options: RunOptions) -> Tuple[GenerationResult, str]:
        if self.cache is None:
            return await self._call_provider(request), "uncached"
        key = request.cache_key()
        if not options.use_cache:
            result = await self._call_provider(request)
            await self.cache.store(key, result, options.cache_ttl)
            return result, "uncached"
        return await self.cache.get_or_compute(key, lambda: self._call_provider(request), options.cache_ttl)

    async def run_stage(
        self,
        project_id: str,
        stage: StageRef,
        options: Optional[RunOptions] = None,
    ) -> StageRunResult:
        """Run one stage and return its completed output.

        Raises:
            DependencyNotMet: A prerequisite stage is not completed. Raised
                before any state change or provider call.
            ToolkitError: Any provider, template or cache error, unchanged
                apart from ``stage_id`` being filled in.
        """
        definition = get_stage(stage)
        options = options or RunOptions()
        self.check_dependencies(project_id, definition)

        previous = self.status(project_id, definition.id)
        self._set_status(project_id, definition.id, StageStatus.RUNNING)
        try:
            request = self.prepare_request(project_id, definition, options)
            result, source = await self._generate(request, options)
            run = self._complete(project_id, definition, result, source)
        except asyncio.CancelledError:
            self._reset(project_id, definition, previous)
            raise
        except Exception as exc:
            self._fail(project_id, definition, exc)
            raise
        logger.info("Stage %d (%s) completed for %s [%s]", definition.id, definition.name, project_id, source)
        return run

    async def run_stage_streaming(
        self,
        project_id: str,
        stage: StageRef,
        options: Optional[RunOptions] = None,
    ) -> StageStream:
        """Start a streamed stage run.

        The dependency gate runs immediately; everything else happens as the
        returned stream is iterated.
        """
        definition = get_stage(stage)
        options = options or RunOptions()
        self.check_dependencies(project_id, definition)
        return StageStream(lambda stream: self._stream_chunks(stream, project_id, definition, options))

    async def _stream_chunks(
        self,
        stream: StageStream,
        project_id: str,
        definition: StageDefinition,
        options: RunOptions,
    ) -> AsyncIterator[StreamChunk]:
        previous = self.status(project_id, definition.id)
        self._set_status(project_id, definition.id, StageStatus.RUNNING)
        leading = False
        key = ""
        try:
            request = self.prepare_request(project_id, definition, options)
            key = request.cache_key()

            replay: Optional[GenerationResult] = None
            source = "uncached"
            if self.cache is not None and options.use_cache:
                while True:
                    flight = await self.cache.claim(key)
                    if flight.entry is not None:
                        replay, source = flight.entry.value, "hit"
                        break
                    if flight.leader:
                        leading, source = True, "miss"
                        break
                    replay = await flight.wait()
                    if replay is not None:
                        source = "shared"
                        break

            if replay is not None:
                pieces = split_into_chunks(replay.text)
                for index, piece in enumerate(pieces[:-1]):
                    yield StreamChunk(index=index, text=piece)
                run = self._complete(project_id, definition, replay, source)
                stream.result = run
                yield StreamChunk(
                    index=len(pieces) - 1,
                    text=pieces[-1],
                    is_final=True,
                    finish_reason=replay.finish_reason,
                    usage=replay.usage,
                    function_calls=replay.function_calls,
                )
                return

            parts: List[str] = []
            async with aclosing(self.limiter.stream(lambda: self.client.generate_streaming(request))) as chunks:
                async for chunk in chunks:
                    parts.append(chunk.text)
                    if not chunk.is_final:
                        yield chunk
                        continue
                    result = GenerationResult(
                        text="".join(parts),
                        model=request.model,
                        provider=self.client.provider_name,
                        finish_reason=chunk.finish_reason,
                        usage=chunk.usage,
                        function_calls=chunk.function_calls,
                    )
                    if leading:
                        leading = False
                        self.cache.complete(key, result, options.cache_ttl)  # type: ignore[union-attr]
                    elif self.cache is not None:
                        await self.cache.store(key, result, options.cache_ttl)
                    run = self._complete(project_id, definition, result, source)
                    stream.result = run
                    logger.info("Stage %d (%s) streamed to completion for %s", definition.id, definition.name, project_id)
                    yield chunk
                    return
            raise StreamInterrupted(
                "Provider stream ended without a final chunk",
                partial_text="".join(parts),
                chunks_received=len(parts),
                provider=self.client.provider_name,
            )
        except Exception as exc:
            if leading:
                self.cache.fail(key, exc)  # type: ignore[union-attr]
            self._fail(project_id, definition, exc)
            raise
        except BaseException:
            if leading:
                self.cache.abandon(key)  # type: ignore[union-attr]
            if self.status(project_id, definition.id) == StageStatus.RUNNING:
                self._reset(project_id, definition, previous)
            raise

    async def run_stages(
        self,
        project_id: str,
        stages: Optional[Iterable[StageRef]] = None,
        options: Optional[RunOptions] = None,
        *,
        skip_completed: bool = False,
    ) -> Dict[StageId, StageRunResult]:
        """Run several stages in dependency order.

        Stages whose dependencies are met run concurrently, bounded by
        ``max_concurrent``. When ``stages`` is omitted every stage runs,
        except those that need user input the options do not provide and
        those downstream of a skipped stage that has no stored output.
        """
        options = options or RunOptions()
        if stages is None:
            selected = []
            skipped = set()
            for definition in STAGES.values():
                missing = [name for name in definition.required_inputs if name not in options.overrides]
                blocked = [
                    dep for dep in definition.dependencies
                    if dep in skipped and not self.store.is_completed(project_id, dep)
                ]
                if missing or blocked:
                    reason = ", ".join(missing) if missing else f"stage {int(blocked[0])}"
                    logger.info("Skipping stage %d (%s): needs %s", definition.id, definition.name, reason)
                    skipped.add(definition.id)
                    continue
                selected.append(definition.id)
        else:
            selected = [get_stage(s).id for s in stages]
        if skip_completed:
            selected = [s for s in selected if not self.store.is_completed(project_id, s)]

        manager = ConcurrencyManager(max_concurrent=self.max_concurrent)
        return await manager.run_levels(
            dependency_levels(selected), lambda stage_id: self.run_stage(project_id, stage_id, options)
        )
