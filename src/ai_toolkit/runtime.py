"""Construction of the shared handles a process works with.

Everything is built once from the immutable :class:`Config` and then passed
explicitly; nothing here is looked up globally at call time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from .cache import ResponseCache
from .config import Config
from .llm_client import LLMClient
from .pipeline.orchestrator import StageOrchestrator
from .project_store import JsonProjectStore
from .providers import create_client
from .rate_limiter import RateLimiter, RateLimiterRegistry, RateLimitPolicy
from .templates import TemplateRenderer

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    client: LLMClient
    cache: Optional[ResponseCache]
    limiter: RateLimiter
    store: JsonProjectStore
    renderer: TemplateRenderer
    limiters: RateLimiterRegistry = field(default_factory=RateLimiterRegistry)

    def orchestrator(self) -> StageOrchestrator:
        return StageOrchestrator(
            self.client,
            self.cache,
            self.limiter,
            self.store,
            self.renderer,
            max_concurrent=self.config.max_concurrent_requests,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def build_runtime(
    config: Config,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    limiters: Optional[RateLimiterRegistry] = None,
) -> Runtime:
    """Build client, cache, limiter, store and renderer from ``config``."""
    client = create_client(
        config.provider,
        generation=config.generation,
        max_concurrent_requests=config.max_concurrent_requests,
        session=session,
    )
    cache = None
    if config.cache.enabled:
        cache = ResponseCache(
            max_entries=config.cache.max_entries,
            max_bytes=config.cache.max_bytes,
            default_ttl=config.cache.ttl_seconds,
        )
    limiters = limiters or RateLimiterRegistry()
    limiter = limiters.for_client(client, RateLimitPolicy.from_settings(config.provider.rate_limit))
    logger.debug(
        "Runtime ready: provider=%s model=%s cache=%s rpm=%d",
        client.provider_name,
        client.model,
        "on" if cache else "off",
        limiter.policy.requests_per_period,
    )
    return Runtime(
        config=config,
        client=client,
        cache=cache,
        limiter=limiter,
        store=JsonProjectStore(config.projects_dir),
        renderer=TemplateRenderer(config.templates_dir),
        limiters=limiters,
    )
