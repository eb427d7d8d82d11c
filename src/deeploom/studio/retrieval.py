"""
Contexte de voisinage d'une phase (segments adjacents) injecté dans les prompts.
"""

from typing import List, Optional, Sequence

from deeploom.studio.models import CanonicalSegment
from deeploom.studio.prompts import segment_lines


def build_retrieval_context(
    canonical_segments: Sequence[CanonicalSegment],
    phase_segments: Sequence[CanonicalSegment],
    window_size: int = 2,
    max_segments: int = 6,
    allow_cross_boundary: bool = False,
) -> Optional[str]:
    """
    Jusqu'à `window_size` segments avant et après la phase, limités à
    `max_segments`. Restreint à l'œuvre de la phase si elle n'en couvre
    qu'une et que le franchissement de frontière est interdit.

    Returns:
        Lignes "id | pali: ... | english: ..." ou None si aucun voisin
    """
    if not canonical_segments or not phase_segments:
        return None

    index_of = {seg.segment_id: i for i, seg in enumerate(canonical_segments)}
    indices = [index_of[seg.segment_id] for seg in phase_segments if seg.segment_id in index_of]
    if not indices:
        return None

    first, last = min(indices), max(indices)
    work_ids = {seg.work_id for seg in phase_segments}
    restrict_to = None if allow_cross_boundary or len(work_ids) != 1 else next(iter(work_ids))

    neighbours: List[CanonicalSegment] = list(canonical_segments[max(0, first - window_size):first])
    neighbours.extend(canonical_segments[last + 1:last + 1 + window_size])
    if restrict_to is not None:
        neighbours = [seg for seg in neighbours if seg.work_id == restrict_to]

    limited = neighbours[:max_segments]
    if not limited:
        return None
    return segment_lines(limited)
