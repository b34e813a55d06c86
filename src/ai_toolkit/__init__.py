"""Staged, AI-assisted project planning.

A project moves through five planning stages. Each stage renders a prompt
template, sends it to a provider through a shared response cache and rate
limiter, and persists the answer for the stages that follow.
"""

from .cache import ResponseCache, get_default_cache
from .config import Config, load_config
from .errors import ToolkitError
from .llm_client import GenerationOptions, GenerationRequest, GenerationResult, LLMClient, StreamChunk
from .pipeline import RunOptions, StageId, StageOrchestrator
from .rate_limiter import RateLimiter, RateLimiterRegistry, RateLimitPolicy
from .runtime import Runtime, build_runtime

__version__ = "0.1.0"

__all__ = [
    "Config",
    "GenerationOptions",
    "GenerationRequest",
    "GenerationResult",
    "LLMClient",
    "RateLimitPolicy",
    "RateLimiter",
    "RateLimiterRegistry",
    "ResponseCache",
    "RunOptions",
    "Runtime",
    "StageId",
    "StageOrchestrator",
    "StreamChunk",
    "ToolkitError",
    "build_runtime",
    "get_default_cache",
    "load_config",
]
