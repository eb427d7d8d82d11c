"""
DeepLoom - Exécution d'une passe LLM
====================================

Une passe = prompt → CompilerCaller (throttle, structured/freeform) →
parsing taggé pydantic. Toute erreur autre que l'annulation est capturée
et rendue dans PassCallResult.error: l'orchestrateur décide ensuite de
sauter, retomber ou dégrader.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel

from deeploom.common.cancellation import CancellationSignal
from deeploom.common.errors import CompilationCancelled
from deeploom.llm.structured import CompilerCaller
from deeploom.studio.pass_models import get_schema_for_pass, parse_pass_response

logger = logging.getLogger(__name__)

SCHEMA_PREFIX = "deeploom"


def schema_name_for(pass_name: str, phase_id: str) -> str:
    """Nom de schéma provider: deeploom_<passe>_<phase> (tirets → underscores)."""
    return f"{SCHEMA_PREFIX}_{pass_name}_{phase_id.replace('-', '_')}"


@dataclass
class PassCallResult:
    """Trace d'un appel de passe (succès: output, échec: error)."""

    pass_name: str
    phase_id: str
    schema_name: str
    request_name: str
    output: Optional[BaseModel] = None
    error: Optional[str] = None
    duration_ms: int = 0
    used_schema: bool = False
    fell_back: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.output is not None and self.error is None


class PassRunner:
    """Exécute une passe et convertit ses échecs en PassCallResult."""

    def __init__(self, caller: CompilerCaller):
        self.caller = caller
        self._schemas: Dict[str, Dict[str, Any]] = {}

    def schema_for(self, pass_name: str) -> Dict[str, Any]:
        if pass_name not in self._schemas:
            self._schemas[pass_name] = get_schema_for_pass(pass_name)
        return self._schemas[pass_name]

    async def run(
        self,
        pass_name: str,
        prompt: str,
        phase_id: str,
        signal: Optional[CancellationSignal] = None,
        schema_name: Optional[str] = None,
        request_name: Optional[str] = None,
    ) -> PassCallResult:
        result = PassCallResult(
            pass_name=pass_name,
            phase_id=phase_id,
            schema_name=schema_name or schema_name_for(pass_name, phase_id),
            request_name=request_name or pass_name,
        )
        start = time.monotonic()
        try:
            outcome = await self.caller.call(
                prompt,
                schema_name=result.schema_name,
                schema=self.schema_for(pass_name),
                signal=signal,
                meta={"stage": pass_name, "phaseId": phase_id, "requestName": result.request_name},
            )
            result.used_schema = outcome.used_schema
            result.fell_back = outcome.fell_back
            result.output = parse_pass_response(pass_name, outcome.result.text)
        except CompilationCancelled:
            raise
        except Exception as e:
            result.error = str(e) or e.__class__.__name__
            logger.warning(f"[DEEPLOOM:Pass] {pass_name} failed for {phase_id}: {result.error}")
        finally:
            result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    @staticmethod
    def skipped(pass_name: str, phase_id: str, reason: str) -> PassCallResult:
        """Étape non jouée faute de prérequis (enregistrée comme erreur d'étape)."""
        logger.info(f"[DEEPLOOM:Pass] Skipping {pass_name} for {phase_id}: {reason}")
        return PassCallResult(
            pass_name=pass_name,
            phase_id=phase_id,
            schema_name=schema_name_for(pass_name, phase_id),
            request_name=pass_name,
            error=reason,
            skipped=True,
        )
