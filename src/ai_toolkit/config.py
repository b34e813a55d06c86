"""Configuration management for the toolkit.

Configuration is resolved once at process start from built-in defaults, an
optional JSON file and environment variables, and is immutable afterwards.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

DEFAULT_HOME = Path.home() / ".ai-toolkit"

# Per-provider defaults: base URL, model, requests per minute.
PROVIDER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "anthropic": {
        "base_url": "https://api.anthropic.com/v1",
        "model": "claude-3-5-sonnet-latest",
        "requests_per_minute": 30,
    },
    "anthropic_enhanced": {
        "base_url": "https://api.anthropic.com/v1",
        "model": "claude-3-5-sonnet-latest",
        "requests_per_minute": 30,
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o",
        "requests_per_minute": 60,
    },
    "ollama": {
        "base_url": "http://localhost:11434",
        "model": "llama3.1",
        "requests_per_minute": 30,
    },
}

_KEY_ENV_FALLBACKS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "anthropic_enhanced": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass(frozen=True)
class RateLimitSettings:
    """Admission budget and backoff parameters for one provider."""
    requests_per_minute: int = 30
    warn_threshold: float = 0.8
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0
    max_retries: int = 3


@dataclass(frozen=True)
class ProviderSettings:
    """Which provider to talk to and how."""
    provider: str = "anthropic"
    api_key: str = ""
    base_url: Optional[str] = None
    model: Optional[str] = None
    timeout: float = 300.0
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        defaults = PROVIDER_DEFAULTS.get(self.provider)
        if not defaults:
            raise ConfigError(f"No base URL configured for provider '{self.provider}'")
        return defaults["base_url"]

    @property
    def resolved_model(self) -> str:
        if self.model:
            return self.model
        defaults = PROVIDER_DEFAULTS.get(self.provider)
        if not defaults:
            raise ConfigError(f"No model configured for provider '{self.provider}'")
        return defaults["model"]


@dataclass(frozen=True)
class CacheSettings:
    enabled: bool = True
    ttl_seconds: float = 3600.0
    max_entries: int = 1000
    max_size_mb: float = 50.0

    @property
    def max_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)


@dataclass(frozen=True)
class GenerationDefaults:
    max_tokens: int = 4096
    temperature: Optional[float] = 0.7


@dataclass(frozen=True)
class Config:
    """Main configuration object."""
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    generation: GenerationDefaults = field(default_factory=GenerationDefaults)
    projects_dir: Path = DEFAULT_HOME / "projects"
    templates_dir: Optional[Path] = None
    max_concurrent_requests: int = 3
    log_level: str = "INFO"


def mask_api_key(api_key: str) -> str:
    """Return a display-safe version of an API key."""
    if not api_key:
        return "<unset>"
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be a number, got {value!r}") from exc


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from exc


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def _rate_limit_from(provider: str, data: Mapping[str, Any]) -> RateLimitSettings:
    rpm_default = PROVIDER_DEFAULTS.get(provider, {}).get("requests_per_minute", 30)
    settings = RateLimitSettings(
        requests_per_minute=_as_int("requests_per_minute", data.get("requests_per_minute", rpm_default)),
        warn_threshold=_as_float("warn_threshold", data.get("warn_threshold", 0.8)),
        base_delay=_as_float("base_delay", data.get("base_delay", 1.0)),
        backoff_factor=_as_float("backoff_factor", data.get("backoff_factor", 2.0)),
        max_delay=_as_float("max_delay", data.get("max_delay", 60.0)),
        max_retries=_as_int("max_retries", data.get("max_retries", 3)),
    )
    if settings.requests_per_minute <= 0:
        raise ConfigError("requests_per_minute must be positive")
    if not 0 < settings.warn_threshold <= 1:
        raise ConfigError("warn_threshold must be within (0, 1]")
    if settings.max_retries < 0:
        raise ConfigError("max_retries must not be negative")
    return settings


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration with defaults.

    Values are layered as defaults, then the JSON file, then environment
    variables.

    Args:
        path: Explicit config file. Defaults to ``$AI_TOOLKIT_CONFIG`` or
            ``~/.ai-toolkit/config.json`` when that file exists.
        env: Environment mapping, ``os.environ`` when omitted.

    Returns:
        Immutable Config.

    Raises:
        ConfigError: If a value is malformed or the file is unreadable JSON.
    """
    env = os.environ if env is None else env

    if path is None:
        env_path = env.get("AI_TOOLKIT_CONFIG")
        path = Path(env_path) if env_path else DEFAULT_HOME / "config.json"
        data = _read_file(path) if path.exists() else {}
    else:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        data = _read_file(path)

    provider_data: Dict[str, Any] = dict(data.get("provider") or {})
    cache_data: Dict[str, Any] = dict(data.get("cache") or {})
    generation_data: Dict[str, Any] = dict(data.get("generation") or {})

    provider_name = (env.get("AI_TOOLKIT_PROVIDER") or provider_data.get("provider") or "anthropic").lower()
    if provider_name not in PROVIDER_DEFAULTS:
        raise ConfigError(
            f"Unsupported provider '{provider_name}'. Choose one of: {', '.join(sorted(PROVIDER_DEFAULTS))}"
        )

    api_key = env.get("AI_TOOLKIT_API_KEY") or provider_data.get("api_key") or ""
    if not api_key and provider_name in _KEY_ENV_FALLBACKS:
        api_key = env.get(_KEY_ENV_FALLBACKS[provider_name], "")

    rate_data: Dict[str, Any] = dict(provider_data.get("rate_limit") or {})
    if env.get("AI_TOOLKIT_RPM"):
        rate_data["requests_per_minute"] = env["AI_TOOLKIT_RPM"]

    provider = ProviderSettings(
        provider=provider_name,
        api_key=api_key,
        base_url=env.get("AI_TOOLKIT_BASE_URL") or provider_data.get("base_url"),
        model=env.get("AI_TOOLKIT_MODEL") or provider_data.get("model"),
        timeout=_as_float("timeout", env.get("AI_TOOLKIT_TIMEOUT") or provider_data.get("timeout", 300.0)),
        rate_limit=_rate_limit_from(provider_name, rate_data),
    )

    cache = CacheSettings(
        enabled=bool(cache_data.get("enabled", True)),
        ttl_seconds=_as_float("ttl_seconds", cache_data.get("ttl_seconds", 3600.0)),
        max_entries=_as_int("max_entries", cache_data.get("max_entries", 1000)),
        max_size_mb=_as_float("max_size_mb", cache_data.get("max_size_mb", 50.0)),
    )
    if cache.ttl_seconds <= 0 or cache.max_entries <= 0 or cache.max_size_mb <= 0:
        raise ConfigError("cache ttl_seconds, max_entries and max_size_mb must be positive")

    temperature = generation_data.get("temperature", 0.7)
    generation = GenerationDefaults(
        max_tokens=_as_int("max_tokens", generation_data.get("max_tokens", 4096)),
        temperature=None if temperature is None else _as_float("temperature", temperature),
    )

    projects_dir = env.get("AI_TOOLKIT_PROJECTS_DIR") or data.get("projects_dir")
    templates_dir = env.get("AI_TOOLKIT_TEMPLATES_DIR") or data.get("templates_dir")

    config = Config(
        provider=provider,
        cache=cache,
        generation=generation,
        max_concurrent_requests=_as_int("max_concurrent_requests", data.get("max_concurrent_requests", 3)),
        log_level=str(env.get("AI_TOOLKIT_LOG_LEVEL") or data.get("log_level", "INFO")).upper(),
    )
    if projects_dir:
        config = replace(config, projects_dir=Path(projects_dir).expanduser())
    if templates_dir:
        config = replace(config, templates_dir=Path(templates_dir).expanduser())
    return config
