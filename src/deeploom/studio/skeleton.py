"""
DeepLoom - Skeleton Planner
===========================

Regroupe les segments canoniques en phases d'étude.

Stratégie:
1. Fenêtres de `chunk_size` segments (50 par défaut), un appel LLM par fenêtre
2. Validation de couverture: chaque segment de la fenêtre exactement une fois
3. Toute violation (ids manquants, doublons, wordRange invalide, JSON invalide,
   réponse vide, erreur transport) → la fenêtre entière est remplacée par un
   découpage déterministe de `fallback_size` segments
4. Concaténation puis renumérotation phase-1..N

Ne lève jamais d'exception, sauf annulation.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from deeploom.common.cancellation import CancellationSignal, check_cancelled
from deeploom.studio.models import BoundaryNote, CanonicalSegment, SkeletonPhase
from deeploom.studio.pass_models import SkeletonPhaseDraft, SkeletonResponse
from deeploom.studio.passes import SCHEMA_PREFIX, PassRunner
from deeploom.studio.prompts import build_skeleton_prompt

logger = logging.getLogger(__name__)


class SkeletonCoverageError(ValueError):
    """Une fenêtre ne couvre pas ses segments exactement une fois."""


@dataclass
class SkeletonChunkResult:
    chunk_index: int
    chunk_count: int
    segment_count: int
    fallback_used: bool
    schema_name: str
    request_name: str = "skeleton"
    phases: List[SkeletonPhase] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def phase_id(self) -> str:
        return f"chunk-{self.chunk_index + 1}"


@dataclass
class SkeletonRunResult:
    phases: List[SkeletonPhase]
    chunks: List[SkeletonChunkResult]

    @property
    def fallback_chunks(self) -> int:
        return sum(1 for chunk in self.chunks if chunk.fallback_used)


def chunk_phases(
    segments: Sequence[CanonicalSegment],
    size: int = 8,
    boundary_starts: Optional[Set[str]] = None,
) -> List[SkeletonPhase]:
    """
    Découpage déterministe: phases de ≤ size segments, nouvelle phase à
    chaque début d'œuvre listé dans boundary_starts.
    """
    size = max(1, size)
    phases: List[SkeletonPhase] = []
    buffer: List[str] = []

    def flush() -> None:
        if buffer:
            phases.append(SkeletonPhase(id=f"phase-{len(phases) + 1}", segment_ids=list(buffer)))
            buffer.clear()

    for seg in segments:
        if boundary_starts and seg.segment_id in boundary_starts and buffer:
            flush()
        buffer.append(seg.segment_id)
        if len(buffer) >= size:
            flush()
    flush()
    return phases


def check_word_ranges(drafts: Sequence[SkeletonPhaseDraft]) -> None:
    """
    Sous-tranches d'un segment: 0 <= start < end, sans chevauchement.

    Raises:
        SkeletonCoverageError: tranche vide, inversée, négative ou chevauchante
    """
    slices: Dict[str, List[Tuple[int, int]]] = {}
    for draft in drafts:
        if draft.word_range is None or len(draft.segment_ids) != 1:
            continue
        start, end = draft.word_range
        sid = draft.segment_ids[0]
        if not 0 <= start < end:
            raise SkeletonCoverageError(f"Invalid wordRange [{start}, {end}] for {sid}; falling back to chunking.")
        slices.setdefault(sid, []).append((start, end))

    for sid, ranges in slices.items():
        ranges.sort()
        for (_, previous_end), (start, end) in zip(ranges, ranges[1:]):
            if start < previous_end:
                raise SkeletonCoverageError(
                    f"Overlapping wordRange [{start}, {end}] for {sid}; falling back to chunking."
                )


def validate_chunk_phases(
    drafts: Sequence[SkeletonPhaseDraft],
    window_ids: Sequence[str],
) -> List[SkeletonPhase]:
    """
    Filtre les ids hors fenêtre, retire les phases vides puis exige une
    couverture exacte. Un segment découpé en sous-tranches (wordRange sur
    une phase mono-segment) peut apparaître dans plusieurs phases.

    Raises:
        SkeletonCoverageError: réponse vide, ids manquants ou dupliqués,
            wordRange invalide
    """
    allowed = set(window_ids)
    kept: List[SkeletonPhaseDraft] = []
    for draft in drafts:
        ids = [sid for sid in draft.segment_ids if sid in allowed]
        if ids:
            kept.append(draft.model_copy(update={"segment_ids": ids}))
    if not kept:
        raise SkeletonCoverageError("Skeleton chunk response missing phases.")

    counts = Counter(sid for draft in kept for sid in draft.segment_ids)
    unsliced = Counter(
        sid
        for draft in kept
        if draft.word_range is None or len(draft.segment_ids) > 1
        for sid in draft.segment_ids
    )
    duplicates = [sid for sid, n in counts.items() if n > 1 and unsliced[sid] > 0]
    missing = [sid for sid in window_ids if sid not in counts]
    if duplicates or missing:
        raise SkeletonCoverageError(
            f"Skeleton chunk missing {len(missing)} or duplicate {len(duplicates)} segments; "
            f"falling back to chunking."
        )
    check_word_ranges(kept)

    return [
        SkeletonPhase(
            id=draft.id or f"phase-{i + 1}",
            title=(draft.title or "").strip() or None,
            segment_ids=list(dict.fromkeys(draft.segment_ids)),
            word_range=draft.word_range if len(draft.segment_ids) == 1 else None,
        )
        for i, draft in enumerate(kept)
    ]


def renumber_phases(phases: Sequence[SkeletonPhase]) -> List[SkeletonPhase]:
    return [
        phase.model_copy(update={"id": f"phase-{index + 1}"})
        for index, phase in enumerate(phases)
    ]


class SkeletonPlanner:
    """Planification des phases par fenêtres, avec repli déterministe par fenêtre."""

    def __init__(
        self,
        runner: PassRunner,
        chunk_size: int = 50,
        fallback_size: int = 8,
    ):
        self.runner = runner
        self.chunk_size = chunk_size
        self.fallback_size = fallback_size

    async def plan(
        self,
        segments: Sequence[CanonicalSegment],
        boundaries: Sequence[BoundaryNote] = (),
        allow_cross_boundary: bool = False,
        signal: Optional[CancellationSignal] = None,
    ) -> SkeletonRunResult:
        if not segments:
            return SkeletonRunResult(phases=[], chunks=[])

        size = max(1, min(self.chunk_size, len(segments)))
        chunk_count = (len(segments) + size - 1) // size
        phases: List[SkeletonPhase] = []
        chunks: List[SkeletonChunkResult] = []

        for chunk_index in range(chunk_count):
            check_cancelled(signal)
            window = list(segments[chunk_index * size:(chunk_index + 1) * size])
            window_ids = [seg.segment_id for seg in window]
            window_set = set(window_ids)
            window_boundaries = [b for b in boundaries if b.start_segment_id in window_set]
            boundary_starts = (
                {b.start_segment_id for b in window_boundaries}
                if not allow_cross_boundary and window_boundaries
                else None
            )
            chunk = SkeletonChunkResult(
                chunk_index=chunk_index,
                chunk_count=chunk_count,
                segment_count=len(window),
                fallback_used=False,
                schema_name=f"{SCHEMA_PREFIX}_skeleton_{chunk_index + 1}",
            )

            prompt = build_skeleton_prompt(window, window_boundaries, allow_cross_boundary)
            call = await self.runner.run(
                "skeleton",
                prompt,
                phase_id=chunk.phase_id,
                signal=signal,
                schema_name=chunk.schema_name,
                request_name=chunk.request_name,
            )
            try:
                if call.error:
                    raise SkeletonCoverageError(call.error)
                response: SkeletonResponse = call.output  # type: ignore[assignment]
                chunk.phases = validate_chunk_phases(response.phases, window_ids)
            except SkeletonCoverageError as e:
                chunk.error = str(e)
                chunk.fallback_used = True
                chunk.phases = chunk_phases(window, self.fallback_size, boundary_starts)
                logger.warning(
                    f"[DEEPLOOM:Skeleton] Chunk {chunk_index + 1}/{chunk_count} fallback "
                    f"({len(chunk.phases)} phases): {chunk.error}"
                )
            else:
                logger.info(
                    f"[DEEPLOOM:Skeleton] Chunk {chunk_index + 1}/{chunk_count}: "
                    f"{len(chunk.phases)} phases for {len(window)} segments"
                )

            phases.extend(chunk.phases)
            chunks.append(chunk)

        return SkeletonRunResult(phases=renumber_phases(phases), chunks=chunks)
