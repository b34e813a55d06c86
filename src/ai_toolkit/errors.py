"""Error taxonomy shared by providers, the cache, the rate limiter and stages.

Every error raised by the toolkit derives from :class:`ToolkitError` and
carries a stable ``kind`` plus optional ``stage_id`` / ``provider`` fields so
callers can report failures in a structured way. Orchestration annotates the
error in place and re-raises the same object; nothing is translated.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ToolkitError(Exception):
    """Base class for all toolkit errors."""

    kind = "toolkit_error"
    retryable = False

    def __init__(
        self,
        detail: str = "",
        *,
        stage_id: Optional[int] = None,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.stage_id = stage_id
        self.provider = provider

    def __str__(self) -> str:
        return self.detail or self.kind

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind,
            "detail": self.detail,
            "stage_id": self.stage_id,
            "provider": self.provider,
        }
        data.update(self.extra())
        return data


# Provider errors


class AuthenticationFailed(ToolkitError):
    kind = "authentication_failed"


class InvalidRequest(ToolkitError):
    """The provider rejected the request itself; retrying cannot help."""

    kind = "invalid_request"

    def __init__(self, detail: str = "", *, status: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(detail, **kwargs)
        self.status = status

    def extra(self) -> Dict[str, Any]:
        return {"status": self.status}


class RateLimited(ToolkitError):
    """The provider throttled the caller.

    ``retry_after`` is the provider's suggested wait in seconds, if it sent one.
    """

    kind = "rate_limited"
    retryable = True

    def __init__(self, detail: str = "", *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        super().__init__(detail, **kwargs)
        self.retry_after = retry_after

    def extra(self) -> Dict[str, Any]:
        return {"retry_after": self.retry_after}


class ProviderUnavailable(ToolkitError):
    kind = "provider_unavailable"
    retryable = True

    def __init__(self, detail: str = "", *, status: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(detail, **kwargs)
        self.status = status

    def extra(self) -> Dict[str, Any]:
        return {"status": self.status}


class StreamInterrupted(ToolkitError):
    """A stream failed after it had started delivering content."""

    kind = "stream_interrupted"

    def __init__(
        self,
        detail: str = "",
        *,
        partial_text: str = "",
        chunks_received: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(detail, **kwargs)
        self.partial_text = partial_text
        self.chunks_received = chunks_received

    def extra(self) -> Dict[str, Any]:
        return {"partial_text": self.partial_text, "chunks_received": self.chunks_received}


class ResponseParseError(ToolkitError):
    kind = "response_parse_error"


# Orchestration errors


class DependencyNotMet(ToolkitError):
    kind = "dependency_not_met"

    def __init__(self, detail: str = "", *, missing_stage: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(detail, **kwargs)
        self.missing_stage = missing_stage

    def extra(self) -> Dict[str, Any]:
        return {"missing_stage": self.missing_stage}


class UnknownStage(ToolkitError):
    kind = "unknown_stage"


class ProjectNotFound(ToolkitError):
    kind = "project_not_found"


# Template errors


class TemplateNotFound(ToolkitError):
    kind = "template_not_found"


class TemplateSyntaxError(ToolkitError):
    kind = "template_syntax_error"

    def __init__(self, detail: str = "", *, lineno: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(detail, **kwargs)
        self.lineno = lineno

    def extra(self) -> Dict[str, Any]:
        return {"lineno": self.lineno}


class MissingTemplateVariable(ToolkitError):
    kind = "missing_template_variable"


# Internal errors


class CacheCorruption(ToolkitError):
    """Cache bookkeeping no longer matches its contents. Not recoverable."""

    kind = "cache_corruption"


class ConfigError(ToolkitError):
    kind = "config_error"
