"""
LLM Call Gateway
================

Frontière requête/réponse JSON avec le provider LLM.

- ILLMGateway: interface consommée par le compilateur (chat_json)
- OpenAIChatGateway: implémentation AsyncOpenAI (OpenAI ou API compatible)
- ICapabilityResolver / StaticCapabilityResolver: le couple provider+modèle
  supporte-t-il response_format=json_schema ?

Le gateway ne décide pas du retry: il signale seulement un refus du
mécanisme de schéma via SchemaRejectedError (voir llm.structured).
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

from deeploom.common.cancellation import CancellationSignal, run_cancellable
from deeploom.common.errors import (
    CompilationCancelled,
    CompilerResponseError,
    SchemaRejectedError,
)

logger = logging.getLogger(__name__)

# Erreurs provider indiquant que json_schema n'est pas supporté
SCHEMA_REJECTION_PATTERN = re.compile(
    r"response_format|structured_outputs|not supported", re.IGNORECASE
)


def is_schema_rejection(error: BaseException) -> bool:
    """True si l'erreur provider vise le mécanisme structured outputs."""
    return bool(SCHEMA_REJECTION_PATTERN.search(str(error)))


@dataclass
class ChatRequest:
    """Requête chat JSON (schema=None → response_format json_object)."""

    messages: List[Dict[str, str]]
    max_tokens: int = 16000
    schema: Optional[Dict[str, Any]] = None
    schema_name: Optional[str] = None
    strict: bool = False
    signal: Optional[CancellationSignal] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def response_format(self) -> Dict[str, Any]:
        if self.schema is None:
            return {"type": "json_object"}
        return {
            "type": "json_schema",
            "json_schema": {
                "name": self.schema_name or "deeploom_response",
                "strict": self.strict,
                "schema": self.schema,
            },
        }


@dataclass
class ChatResult:
    text: str
    raw: Optional[Any] = None
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ILLMGateway(Protocol):
    """Interface du gateway LLM consommée par les passes."""

    async def chat_json(self, request: ChatRequest) -> ChatResult:
        ...


class ICapabilityResolver(Protocol):
    async def supports_structured_outputs(self, provider: str, model: str) -> bool:
        ...


class StaticCapabilityResolver:
    """Résolution depuis une liste de modèles connus (préfixes acceptés: gpt-4o-2024-08-06 ⊂ gpt-4o)."""

    def __init__(
        self,
        structured_models: Iterable[str],
        structured_providers: Iterable[str] = ("openai",),
    ):
        self.structured_models = [m.lower() for m in structured_models]
        self.structured_providers = {p.lower() for p in structured_providers}

    async def supports_structured_outputs(self, provider: str, model: str) -> bool:
        if provider.lower() not in self.structured_providers:
            return False
        model_name = model.lower().split("/")[-1]
        return any(
            model_name == known or model_name.startswith(f"{known}-")
            for known in self.structured_models
        )


class OpenAIChatGateway:
    """Gateway AsyncOpenAI (chat.completions) avec response_format JSON."""

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ):
        from deeploom.config.settings import get_settings

        settings = get_settings()
        if client is None:
            from deeploom.common.clients.openai_client import get_async_openai_client
            client = get_async_openai_client()
        self.client = client
        self.model = model or settings.llm_model
        self.temperature = settings.llm_temperature if temperature is None else temperature

    async def chat_json(self, request: ChatRequest) -> ChatResult:
        stage = request.meta.get("stage", "?")
        try:
            response = await run_cancellable(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=request.messages,
                    temperature=self.temperature,
                    max_tokens=request.max_tokens,
                    response_format=request.response_format(),
                ),
                request.signal,
            )
        except CompilationCancelled:
            raise
        except Exception as e:
            if request.schema is not None and is_schema_rejection(e):
                raise SchemaRejectedError(str(e)) from e
            logger.error(f"[LLM_GATEWAY] {stage} call to {self.model} failed: {e}")
            raise

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        if not content.strip():
            raise CompilerResponseError("Empty compiler response.")

        result = ChatResult(text=content, raw=response, model=self.model)
        if response.usage:
            result.prompt_tokens = response.usage.prompt_tokens
            result.completion_tokens = response.usage.completion_tokens
            logger.info(
                f"[TOKENS:ASYNC] {self.model} [{stage}] - Input: {result.prompt_tokens}, "
                f"Output: {result.completion_tokens}"
            )
        return result


def build_capability_resolver() -> StaticCapabilityResolver:
    from deeploom.config.settings import get_settings

    return StaticCapabilityResolver(get_settings().structured_models)
