"""
DeepLoom - Packet Compiler
==========================

Pipeline complet d'une compilation:

    Segment Source → Skeleton Planner
        → pour chaque phase: Orchestrateur → Rehydrator → Validator (phase)
        → Validator (packet) → état terminal

Le packet est livré incrémentalement via le callback de progression
(stages: init, skeleton, phase, complete, error) puis retourné.

Seule l'annulation (CompilationCancelled) remonte à l'appelant: toute
autre erreur inattendue termine le packet en état "error" avec une
validationIssue.
"""

import inspect
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from deeploom.common.cancellation import CancellationSignal, check_cancelled
from deeploom.common.errors import CompilationCancelled
from deeploom.common.kv_store import IKVStore, build_kv_store
from deeploom.common.throttle import CallThrottle
from deeploom.config.settings import Settings, get_settings
from deeploom.llm.gateway import ICapabilityResolver, ILLMGateway, StaticCapabilityResolver
from deeploom.llm.structured import CompilerCaller
from deeploom.studio.dictionary import DictionaryCache, IDictionaryLookup
from deeploom.studio.models import (
    CanonicalSegment,
    CompilerMeta,
    IssueLevel,
    Packet,
    PacketSource,
    Progress,
    ProgressState,
    RenderDefaults,
    SkeletonPhase,
    ValidationIssue,
)
from deeploom.studio.orchestrator import PhaseOrchestrator
from deeploom.studio.passes import PassRunner
from deeploom.studio.prompts import PROMPT_VERSION
from deeploom.studio.rehydrator import PhaseSource
from deeploom.studio.segment_cache import SegmentOutputCache
from deeploom.studio.skeleton import SkeletonPlanner
from deeploom.studio.sources import ISegmentSource, build_boundaries
from deeploom.studio.telemetry import PhaseDurationTracker
from deeploom.studio.text import djb2_digest
from deeploom.studio.validator import VALIDATOR_VERSION, validate_packet, validate_phase

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Packet], Optional[Awaitable[None]]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def compute_source_digest(segments: Sequence[CanonicalSegment]) -> str:
    return djb2_digest(seg.pali for seg in segments)


def build_packet_id(work_key: str, digest: str) -> str:
    return f"deeploom-{work_key}-{digest}"


class PacketCompiler:
    """
    Compilateur de packets d'étude.

    Les caches partagés (dictionnaire, durées de phase) sont des IKVStore
    injectés; à défaut ils sont construits selon DEEPLOOM_CACHE_BACKEND.
    """

    def __init__(
        self,
        gateway: ILLMGateway,
        segment_source: ISegmentSource,
        settings: Optional[Settings] = None,
        capability_resolver: Optional[ICapabilityResolver] = None,
        dictionary_lookup: Optional[IDictionaryLookup] = None,
        dictionary_store: Optional[IKVStore] = None,
        telemetry_store: Optional[IKVStore] = None,
        throttle: Optional[CallThrottle] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.segment_source = segment_source
        self.capability_resolver = capability_resolver or StaticCapabilityResolver(
            self.settings.structured_models
        )
        self.dictionary = None
        if dictionary_lookup is not None:
            self.dictionary = DictionaryCache(
                dictionary_lookup,
                dictionary_store if dictionary_store is not None else build_kv_store("dictionary"),
            )
        self.telemetry = PhaseDurationTracker(
            telemetry_store if telemetry_store is not None else build_kv_store("telemetry")
        )
        self.throttle = throttle or CallThrottle(self.settings.llm_min_call_gap_ms)

    async def _emit(self, on_progress: Optional[ProgressCallback], stage: str, packet: Packet) -> None:
        if on_progress is None:
            return
        try:
            outcome = on_progress(stage, packet)
            if inspect.isawaitable(outcome):
                await outcome
        except CompilationCancelled:
            raise
        except Exception as e:
            logger.warning(f"[DEEPLOOM:Compiler] Progress callback failed at '{stage}': {e}")

    def _new_packet(self, work_ids: List[str], segments: List[CanonicalSegment]) -> Packet:
        work_key = "+".join(work_ids)
        digest = compute_source_digest(segments)
        return Packet(
            packet_id=build_packet_id(work_key, digest),
            source=PacketSource(work_id=work_key, work_ids=work_ids),
            canonical_segments=segments,
            progress=Progress(
                state=ProgressState.BUILDING,
                total_segments=len(segments),
                last_progress_at=_now_iso(),
            ),
            render_defaults=RenderDefaults(),
            compiler=CompilerMeta(
                provider=self.settings.llm_provider,
                model=self.settings.llm_model,
                prompt_version=PROMPT_VERSION,
                source_digest=digest,
            ),
        )

    async def _fetch(self, work_ids: List[str], author: Optional[str], signal) -> List[List[CanonicalSegment]]:
        bundles = []
        for work_id in work_ids:
            check_cancelled(signal)
            bundles.append(await self.segment_source.fetch_segments(work_id, author))
        return bundles

    async def compile(
        self,
        work_ids: Union[str, Sequence[str]],
        author: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        signal: Optional[CancellationSignal] = None,
        allow_cross_boundary: bool = False,
        debug_max_phases: Optional[int] = None,
    ) -> Packet:
        """
        Compile une ou plusieurs œuvres (dans l'ordre) en un packet.

        Args:
            work_ids: identifiant d'œuvre ou liste ordonnée
            author: auteur de la traduction de référence (transmis à la source)
            on_progress: callback(stage, packet), sync ou async
            signal: annulation coopérative
            allow_cross_boundary: autoriser des phases à cheval sur deux œuvres
            debug_max_phases: ne compiler que les K premières phases (état "incomplete")

        Raises:
            CompilationCancelled: le signal a été déclenché
        """
        ids = [work_ids] if isinstance(work_ids, str) else list(dict.fromkeys(work_ids))
        work_key = "+".join(ids)
        max_phases = debug_max_phases if debug_max_phases is not None else self.settings.debug_max_phases
        logger.info(f"[DEEPLOOM:Compiler] Starting compilation for {work_key}")

        try:
            bundles = await self._fetch(ids, author, signal)
        except CompilationCancelled:
            raise
        except Exception as e:
            logger.error(f"[DEEPLOOM:Compiler] Segment fetch failed for {work_key}: {e}")
            packet = self._new_packet(ids, [])
            return await self._fail(packet, on_progress, f"Segment fetch failed: {e}")

        segments = [
            seg.model_copy(update={"order": index})
            for index, seg in enumerate(s for bundle in bundles for s in bundle)
        ]
        boundaries = build_boundaries(bundles)
        packet = self._new_packet(ids, segments)
        await self._emit(on_progress, "init", packet)

        try:
            return await self._run(
                packet, work_key, segments, boundaries, on_progress, signal,
                allow_cross_boundary, max_phases,
            )
        except CompilationCancelled:
            logger.info(f"[DEEPLOOM:Compiler] Compilation cancelled for {work_key}")
            raise
        except Exception as e:
            logger.exception(f"[DEEPLOOM:Compiler] Compilation failed for {work_key}")
            return await self._fail(packet, on_progress, str(e) or e.__class__.__name__)

    async def _fail(self, packet: Packet, on_progress, message: str) -> Packet:
        packet.validation_issues.append(ValidationIssue(
            level=IssueLevel.ERROR,
            code="compilation_failed",
            message=message,
            phase_id=packet.progress.current_phase_id,
        ))
        packet.progress.state = ProgressState.ERROR
        packet.progress.last_progress_at = _now_iso()
        await self._emit(on_progress, "error", packet)
        return packet

    async def _run(
        self,
        packet: Packet,
        work_key: str,
        segments: List[CanonicalSegment],
        boundaries,
        on_progress,
        signal,
        allow_cross_boundary: bool,
        max_phases: Optional[int],
    ) -> Packet:
        settings = self.settings
        structured = await self.capability_resolver.supports_structured_outputs(
            settings.llm_provider, settings.llm_model
        )
        logger.info(f"[DEEPLOOM:Compiler] Structured outputs supported: {structured}")

        caller = CompilerCaller(
            self.gateway,
            self.throttle,
            structured_outputs=structured,
            max_tokens=settings.llm_max_tokens,
            strict_schema=settings.llm_strict_schema,
        )
        runner = PassRunner(caller)
        planner = SkeletonPlanner(runner, settings.skeleton_chunk_size, settings.skeleton_fallback_size)
        orchestrator = PhaseOrchestrator(
            runner,
            dictionary=self.dictionary,
            segment_cache=SegmentOutputCache(),
            retrieval_window_size=settings.retrieval_window_size,
            retrieval_max_segments=settings.retrieval_max_segments,
            render_defaults=packet.render_defaults.to_wire(),
        )

        # === Skeleton ===
        skeleton = await planner.plan(segments, boundaries, allow_cross_boundary, signal)
        phases: List[SkeletonPhase] = skeleton.phases
        truncated = max_phases is not None and len(phases) > max_phases
        if truncated:
            logger.warning(
                f"[DEEPLOOM:Compiler] debug_max_phases={max_phases}: compiling {max_phases}/{len(phases)} phases"
            )
            packet.validation_issues.append(ValidationIssue(
                level=IssueLevel.WARN,
                code="phases_truncated",
                message=f"Only the first {max_phases} of {len(phases)} phases were compiled (debug_max_phases).",
            ))
            phases = phases[:max_phases]

        progress = packet.progress
        progress.total_phases = len(phases)
        progress.avg_phase_ms = self.telemetry.average(work_key)
        progress.eta_ms = progress.avg_phase_ms * len(phases) if progress.avg_phase_ms and phases else None
        progress.last_progress_at = _now_iso()
        await self._emit(on_progress, "skeleton", packet)

        # === Phases ===
        by_id = {seg.segment_id: seg for seg in segments}
        work_of = {seg.segment_id: seg.work_id for seg in segments}
        ready_segments = set()

        for index, phase in enumerate(phases):
            check_cancelled(signal)
            progress.current_phase_id = phase.id
            logger.info(f"[DEEPLOOM:Compiler] Compiling {phase.id} ({index + 1}/{len(phases)})")

            source = PhaseSource(phase=phase, segments=[by_id[sid] for sid in phase.segment_ids if sid in by_id])
            phase_work = work_of.get(phase.segment_ids[0], work_key) if phase.segment_ids else work_key
            run = await orchestrator.run_phase(source, phase_work, segments, allow_cross_boundary, signal)

            view = run.view
            packet.validation_issues.extend(run.issues)
            packet.validation_issues.extend(validate_phase(view))
            packet.phases.append(view)

            self.telemetry.record(work_key, run.duration_ms)
            ready_segments.update(source.segment_ids)
            progress.ready_phases = index + 1
            progress.ready_segments = len(ready_segments)
            progress.last_phase_ms = run.duration_ms
            progress.avg_phase_ms = self.telemetry.average(work_key) or run.duration_ms
            progress.eta_ms = progress.avg_phase_ms * (len(phases) - (index + 1))
            progress.last_progress_at = _now_iso()
            await self._emit(on_progress, "phase", packet)

        # === Validation globale ===
        expected = None
        if truncated:
            expected = list(dict.fromkeys(sid for phase in phases for sid in phase.segment_ids))
        result = validate_packet(packet, expected_segment_ids=expected)
        packet.validation_issues.extend(result.issues)
        packet.compiler.validator_version = VALIDATOR_VERSION

        progress.state = ProgressState.INCOMPLETE if truncated else ProgressState.COMPLETE
        progress.eta_ms = 0
        progress.last_progress_at = _now_iso()
        logger.info(
            f"[DEEPLOOM:Compiler] {packet.packet_id} {progress.state.value}: "
            f"{len(packet.phases)} phases, {len(packet.validation_issues)} issues "
            f"(valid={result.valid}, llm calls={caller.calls}, skeleton fallbacks={skeleton.fallback_chunks})"
        )
        await self._emit(on_progress, "complete", packet)
        return packet
