"""Anthropic adapter with built-in function calling.

Requests that declare no functions of their own get the default code
analysis tool attached, so the model can answer with a structured call.
"""

from __future__ import annotations

from typing import Any, Dict, List

from ..llm_client import FunctionDefinition, GenerationRequest
from .anthropic import AnthropicClient

ENHANCED_MAX_TOKENS = 4000

DEFAULT_TOOLS = (
    FunctionDefinition(
        name="analyze_code",
        description="Analyze code for improvements, bugs, and optimization opportunities",
        parameters={
            "type": "object",
            "properties": {
                "language": {
                    "type": "string",
                    "description": "The programming language of the code",
                },
                "code": {
                    "type": "string",
                    "description": "The code to analyze",
                },
            },
            "required": ["language", "code"],
        },
    ),
)


class EnhancedAnthropicClient(AnthropicClient):
    """Anthropic client that always offers tools to the model."""

    provider_name = "anthropic_enhanced"
    text_separator = "\n"

    def __init__(self, settings, **kwargs: Any) -> None:
        kwargs.setdefault("max_tokens", ENHANCED_MAX_TOKENS)
        super().__init__(settings, **kwargs)

    def _tools(self, request: GenerationRequest) -> List[Dict[str, Any]]:
        functions = request.functions or DEFAULT_TOOLS
        return [
            {"name": fn.name, "description": fn.description, "input_schema": fn.parameters}
            for fn in functions
        ]

    def _build_payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        payload = super()._build_payload(request, stream)
        payload["tool_choice"] = {"type": "auto"}
        return payload
