"""
Stratégie d'appel structured → freeform
=======================================

Deux tentatives explicites, testables séparément:

1. attempt_structured(): response_format json_schema (si le provider le supporte)
2. attempt_freeform(): response_format json_object, sans schéma

La seconde n'est jouée que si la première a été refusée *à cause du
mécanisme de schéma* (StructuredAttempt.rejected). Toute autre erreur
remonte à l'étape appelante, qui la convertit en échec d'étape.

Chaque tentative passe par le throttle global.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from deeploom.common.cancellation import CancellationSignal
from deeploom.common.errors import SchemaRejectedError
from deeploom.common.throttle import CallThrottle
from deeploom.llm.gateway import ChatRequest, ChatResult, ILLMGateway

logger = logging.getLogger(__name__)

SYSTEM_MESSAGE = "Return JSON only."


@dataclass
class StructuredAttempt:
    """Résultat d'une tentative json_schema: soit un résultat, soit un refus du schéma."""

    result: Optional[ChatResult] = None
    rejected: bool = False
    rejection_reason: Optional[str] = None


@dataclass
class CallOutcome:
    result: ChatResult
    used_schema: bool
    fell_back: bool = False


def build_messages(prompt: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_MESSAGE},
        {"role": "user", "content": prompt},
    ]


class CompilerCaller:
    """Point d'entrée unique des passes vers le gateway (throttle + capacité + retry)."""

    def __init__(
        self,
        gateway: ILLMGateway,
        throttle: CallThrottle,
        structured_outputs: bool = False,
        max_tokens: int = 16000,
        strict_schema: bool = False,
    ):
        self.gateway = gateway
        self.throttle = throttle
        self.structured_outputs = structured_outputs
        self.max_tokens = max_tokens
        self.strict_schema = strict_schema
        self.calls = 0
        self.schema_fallbacks = 0

    async def _send(self, request: ChatRequest) -> ChatResult:
        await self.throttle.acquire(request.signal)
        self.calls += 1
        return await self.gateway.chat_json(request)

    async def attempt_structured(
        self,
        messages: List[Dict[str, str]],
        schema_name: str,
        schema: Dict[str, Any],
        signal: Optional[CancellationSignal] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StructuredAttempt:
        request = ChatRequest(
            messages=messages,
            max_tokens=self.max_tokens,
            schema=schema,
            schema_name=schema_name,
            strict=self.strict_schema,
            signal=signal,
            meta=meta or {},
        )
        try:
            return StructuredAttempt(result=await self._send(request))
        except SchemaRejectedError as e:
            return StructuredAttempt(rejected=True, rejection_reason=str(e))

    async def attempt_freeform(
        self,
        messages: List[Dict[str, str]],
        signal: Optional[CancellationSignal] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> ChatResult:
        request = ChatRequest(
            messages=messages,
            max_tokens=self.max_tokens,
            signal=signal,
            meta=meta or {},
        )
        return await self._send(request)

    async def call(
        self,
        prompt: str,
        schema_name: str,
        schema: Optional[Dict[str, Any]],
        signal: Optional[CancellationSignal] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> CallOutcome:
        """Appel complet: structured si possible, freeform sinon ou après refus du schéma."""
        messages = build_messages(prompt)

        if self.structured_outputs and schema is not None:
            attempt = await self.attempt_structured(messages, schema_name, schema, signal, meta)
            if not attempt.rejected:
                return CallOutcome(result=attempt.result, used_schema=True)
            self.schema_fallbacks += 1
            logger.warning(
                f"[LLM_GATEWAY] Structured outputs rejected for {schema_name}, "
                f"retrying with json_object: {attempt.rejection_reason}"
            )
            result = await self.attempt_freeform(messages, signal, meta)
            return CallOutcome(result=result, used_schema=False, fell_back=True)

        result = await self.attempt_freeform(messages, signal, meta)
        return CallOutcome(result=result, used_schema=False)
