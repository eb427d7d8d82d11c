"""
Couche LLM: gateway provider, stratégie structured → freeform, parsing JSON tolérant.
"""

from deeploom.llm.gateway import (
    ChatRequest,
    ChatResult,
    ICapabilityResolver,
    ILLMGateway,
    OpenAIChatGateway,
    StaticCapabilityResolver,
)
from deeploom.llm.json_parsing import parse_json_response
from deeploom.llm.structured import CompilerCaller

__all__ = [
    "ChatRequest",
    "ChatResult",
    "ICapabilityResolver",
    "ILLMGateway",
    "OpenAIChatGateway",
    "StaticCapabilityResolver",
    "parse_json_response",
    "CompilerCaller",
]
