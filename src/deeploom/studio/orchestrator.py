"""
DeepLoom - Orchestrateur de phase
=================================

Machine à états par phase:

    pending → decomposition → sense → alignment → layout → assembled
    pending → assembled                         (chemin dégradé)

Chaque étape est optionnelle et dégradable indépendamment: une étape qui
échoue est capturée, l'orchestrateur continue avec les sorties déjà
obtenues. Prérequis:
- sense: decomposition
- alignment: decomposition + traduction de référence non vide
- layout: decomposition

Sans decomposition, un appel monolithique demande la PhaseView complète;
s'il échoue aussi, la phase est dégradée.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from deeploom.common.cancellation import CancellationSignal, check_cancelled
from deeploom.studio.dictionary import DictionaryCache, DictionaryFetch
from deeploom.studio.models import CanonicalSegment, PhaseView, ValidationIssue
from deeploom.studio.pass_models import (
    AlignmentPass,
    DecompositionPass,
    Handoff,
    LayoutPass,
    MonolithicPhasePass,
    SenseAssignmentPass,
)
from deeploom.studio.passes import PassCallResult, PassRunner
from deeploom.studio.prompts import (
    build_alignment_prompt,
    build_decomposition_prompt,
    build_layout_prompt,
    build_monolithic_prompt,
    build_phase_state_envelope,
    build_sense_prompt,
)
from deeploom.studio.rehydrator import (
    PhaseSource,
    build_degraded_phase,
    fallback_senses,
    rehydrate_monolithic,
    rehydrate_phase,
)
from deeploom.studio.retrieval import build_retrieval_context
from deeploom.studio.segment_cache import SegmentOutputCache, phase_text_key
from deeploom.studio.tokenizer import tokenize_english

logger = logging.getLogger(__name__)


class PhaseStage(str, Enum):
    PENDING = "pending"
    DECOMPOSITION = "decomposition"
    SENSE = "sense"
    ALIGNMENT = "alignment"
    LAYOUT = "layout"
    ASSEMBLED = "assembled"


STAGE_ORDER = [
    PhaseStage.PENDING,
    PhaseStage.DECOMPOSITION,
    PhaseStage.SENSE,
    PhaseStage.ALIGNMENT,
    PhaseStage.LAYOUT,
    PhaseStage.ASSEMBLED,
]


class InvalidStageTransition(RuntimeError):
    pass


@dataclass
class PhaseRun:
    """État et traces d'une phase en cours de compilation."""

    source: PhaseSource
    stage: PhaseStage = PhaseStage.PENDING
    calls: Dict[str, PassCallResult] = field(default_factory=dict)
    view: Optional[PhaseView] = None
    issues: List[ValidationIssue] = field(default_factory=list)
    dictionary: Optional[DictionaryFetch] = None
    from_cache: bool = False
    used_monolithic: bool = False
    duration_ms: int = 0

    def advance(self, stage: PhaseStage) -> None:
        if STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.stage):
            raise InvalidStageTransition(f"{self.source.phase_id}: {self.stage.value} → {stage.value}")
        self.stage = stage

    def output(self, pass_name: str):
        call = self.calls.get(pass_name)
        return call.output if call is not None and call.ok else None

    @property
    def completed(self) -> List[str]:
        return [name for name, call in self.calls.items() if call.ok]

    @property
    def stage_errors(self) -> Dict[str, str]:
        return {name: call.error for name, call in self.calls.items() if call.error}


class PhaseOrchestrator:
    """Enchaîne les quatre passes d'une phase puis l'assemblage."""

    def __init__(
        self,
        runner: PassRunner,
        dictionary: Optional[DictionaryCache] = None,
        segment_cache: Optional[SegmentOutputCache] = None,
        retrieval_window_size: int = 2,
        retrieval_max_segments: int = 6,
        render_defaults: Optional[Dict[str, object]] = None,
    ):
        self.runner = runner
        self.dictionary = dictionary
        self.segment_cache = segment_cache
        self.retrieval_window_size = retrieval_window_size
        self.retrieval_max_segments = retrieval_max_segments
        self.render_defaults = render_defaults or {}

    # ------------------------------------------------------------------
    # Étapes
    # ------------------------------------------------------------------

    def _envelope(self, run: PhaseRun, work_id: str, stage: PhaseStage) -> str:
        return build_phase_state_envelope(
            work_id,
            run.source.phase_id,
            run.source.sliced_segments,
            stage.value,
            run.completed,
        )

    async def _decomposition(self, run, work_id, retrieval, signal) -> None:
        run.advance(PhaseStage.DECOMPOSITION)
        prompt = build_decomposition_prompt(
            run.source.phase_id,
            run.source.sliced_segments,
            self._envelope(run, work_id, PhaseStage.DECOMPOSITION),
            retrieval,
        )
        run.calls["decomposition"] = await self.runner.run("decomposition", prompt, run.source.phase_id, signal)

    async def _sense(self, run, work_id, retrieval, signal) -> None:
        run.advance(PhaseStage.SENSE)
        decomposition: Optional[DecompositionPass] = run.output("decomposition")
        if decomposition is None:
            run.calls["sense"] = PassRunner.skipped("sense", run.source.phase_id, "decomposition unavailable")
            return

        words = [(word.id, word.surface) for word in decomposition.words]
        if self.dictionary is not None:
            run.dictionary = await self.dictionary.fetch(words, signal)
        else:
            run.dictionary = DictionaryFetch(entries={word_id: None for word_id, _ in words})

        prompt = build_sense_prompt(
            run.source.phase_id,
            run.source.sliced_segments,
            self._envelope(run, work_id, PhaseStage.SENSE),
            decomposition,
            run.dictionary.found,
            retrieval,
        )
        call = await self.runner.run("sense", prompt, run.source.phase_id, signal)
        if call.ok:
            call.output = self._lower_confidence(call.output, decomposition, run.dictionary)
        run.calls["sense"] = call

    @staticmethod
    def _lower_confidence(
        senses: SenseAssignmentPass,
        decomposition: DecompositionPass,
        fetch: DictionaryFetch,
    ) -> SenseAssignmentPass:
        """Mots sans entrée de dictionnaire: sens inférés, confiance abaissée à low."""
        missing = fetch.missing_word_ids
        if not missing:
            return senses
        surface_of = {word.id: word.surface for word in decomposition.words}
        handoff = senses.handoff or Handoff()
        listed = list(handoff.missing_definitions)
        for word_id in missing:
            surface = surface_of.get(word_id, word_id)
            if surface not in listed:
                listed.append(surface)
        logger.info(
            f"[DICTIONARY] {decomposition.id or '?'}: {len(missing)} words without dictionary entry, "
            f"senses inferred with low confidence"
        )
        return senses.model_copy(update={
            "handoff": handoff.model_copy(update={"confidence": "low", "missing_definitions": listed})
        })

    async def _alignment(self, run, work_id, signal) -> None:
        run.advance(PhaseStage.ALIGNMENT)
        decomposition: Optional[DecompositionPass] = run.output("decomposition")
        english = run.source.english_text.strip()
        if decomposition is None:
            run.calls["alignment"] = PassRunner.skipped("alignment", run.source.phase_id, "decomposition unavailable")
            return
        if not english:
            run.calls["alignment"] = PassRunner.skipped("alignment", run.source.phase_id, "no reference translation")
            return

        senses = run.output("sense") or fallback_senses(decomposition)
        prompt = build_alignment_prompt(
            run.source.phase_id,
            run.source.sliced_segments,
            self._envelope(run, work_id, PhaseStage.ALIGNMENT),
            decomposition,
            senses,
            tokenize_english(english),
        )
        run.calls["alignment"] = await self.runner.run("alignment", prompt, run.source.phase_id, signal)

    async def _layout(self, run, work_id, signal) -> None:
        run.advance(PhaseStage.LAYOUT)
        decomposition: Optional[DecompositionPass] = run.output("decomposition")
        if decomposition is None:
            run.calls["layout"] = PassRunner.skipped("layout", run.source.phase_id, "decomposition unavailable")
            return
        prompt = build_layout_prompt(
            run.source.phase_id,
            run.source.sliced_segments,
            self._envelope(run, work_id, PhaseStage.LAYOUT),
            decomposition,
            run.output("alignment"),
        )
        run.calls["layout"] = await self.runner.run("layout", prompt, run.source.phase_id, signal)

    # ------------------------------------------------------------------
    # Assemblage
    # ------------------------------------------------------------------

    async def _assemble(self, run: PhaseRun, work_id: str, retrieval: Optional[str], signal) -> None:
        decomposition: Optional[DecompositionPass] = run.output("decomposition")
        if decomposition is not None:
            result = rehydrate_phase(
                run.source,
                decomposition,
                senses=run.output("sense"),
                alignment=run.output("alignment"),
                english_tokens=tokenize_english(run.source.english_text.strip()),
                layout=run.output("layout"),
            )
            run.view = result.view
            run.issues.extend(result.issues)
            return

        logger.warning(
            f"[DEEPLOOM:Phase] {run.source.phase_id}: decomposition and sense unavailable, "
            f"trying monolithic pass"
        )
        run.used_monolithic = True
        prompt = build_monolithic_prompt(
            run.source.phase_id,
            run.source.sliced_segments,
            self.render_defaults,
            retrieval_context=retrieval,
        )
        call = await self.runner.run("monolithic", prompt, run.source.phase_id, signal)
        run.calls["monolithic"] = call
        if call.ok:
            mono: MonolithicPhasePass = call.output  # type: ignore[assignment]
            if mono.pali_words:
                result = rehydrate_monolithic(run.source, mono)
                run.view = result.view
                run.issues.extend(result.issues)
                return
            call.error = "Monolithic response has no words."

        reasons = "; ".join(f"{name}: {error}" for name, error in run.stage_errors.items())
        run.view = build_degraded_phase(run.source, reasons or "Phase compilation failed.")

    # ------------------------------------------------------------------
    # Point d'entrée
    # ------------------------------------------------------------------

    async def run_phase(
        self,
        source: PhaseSource,
        work_id: str,
        canonical_segments: Sequence[CanonicalSegment],
        allow_cross_boundary: bool = False,
        signal: Optional[CancellationSignal] = None,
    ) -> PhaseRun:
        start = time.monotonic()
        run = PhaseRun(source=source)
        check_cancelled(signal)

        retrieval = build_retrieval_context(
            canonical_segments,
            source.segments,
            window_size=self.retrieval_window_size,
            max_segments=self.retrieval_max_segments,
            allow_cross_boundary=allow_cross_boundary,
        )

        cache_key = phase_text_key(source.pali_text, source.english_text)
        cached = self.segment_cache.get(cache_key, source.phase_id) if self.segment_cache else None

        if cached is not None:
            run.from_cache = True
            for stage in (PhaseStage.DECOMPOSITION, PhaseStage.SENSE, PhaseStage.ALIGNMENT, PhaseStage.LAYOUT):
                run.advance(stage)
                if stage.value in cached:
                    run.calls[stage.value] = PassCallResult(
                        pass_name=stage.value,
                        phase_id=source.phase_id,
                        schema_name="cache",
                        request_name=stage.value,
                        output=cached[stage.value],
                    )
        else:
            await self._decomposition(run, work_id, retrieval, signal)
            await self._sense(run, work_id, retrieval, signal)
            await self._alignment(run, work_id, signal)
            await self._layout(run, work_id, signal)
            if self.segment_cache is not None:
                self.segment_cache.store(
                    cache_key,
                    source.phase_id,
                    {name: run.output(name) for name in ("decomposition", "sense", "alignment", "layout")},
                )

        await self._assemble(run, work_id, retrieval, signal)
        run.advance(PhaseStage.ASSEMBLED)
        run.duration_ms = int((time.monotonic() - start) * 1000)

        errors = run.stage_errors
        logger.info(
            f"[DEEPLOOM:Phase] {source.phase_id} assembled in {run.duration_ms}ms "
            f"(cache={run.from_cache}, monolithic={run.used_monolithic}, "
            f"degraded={bool(run.view and run.view.degraded)}, stage errors={len(errors)})"
        )
        return run
