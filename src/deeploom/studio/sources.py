"""
Sources de segments canoniques (le fetch depuis l'archive amont est externe).
"""

import logging
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from deeploom.common.errors import DeepLoomError
from deeploom.studio.models import BoundaryNote, CanonicalSegment, SourceRef

logger = logging.getLogger(__name__)


class ISegmentSource(Protocol):
    async def fetch_segments(self, work_id: str, author: Optional[str] = None) -> List[CanonicalSegment]:
        ...


class InMemorySegmentSource:
    """Segments déjà chargés (fichier, tests), indexés par œuvre."""

    def __init__(self, works: Mapping[str, Sequence[CanonicalSegment]]):
        self._works: Dict[str, List[CanonicalSegment]] = {k: list(v) for k, v in works.items()}

    @classmethod
    def from_records(cls, records: Sequence[Mapping], default_work_id: str, provider: str = "suttacentral"):
        """
        Construit la source depuis des enregistrements bruts:
        {segmentId, pali|sourceText, baseEnglish|referenceTranslation?, workId?}
        """
        works: Dict[str, List[CanonicalSegment]] = {}
        for order, record in enumerate(records):
            work_id = record.get("workId") or record.get("work_id") or default_work_id
            segment_id = record.get("segmentId") or record.get("segment_id") or record.get("id")
            if not segment_id:
                raise DeepLoomError(f"Segment record {order} has no segment id")
            payload = {key: value for key, value in record.items() if key not in ("workId", "work_id", "segmentId", "segment_id", "id")}
            segment = CanonicalSegment.model_validate({
                **payload,
                "ref": SourceRef(provider=provider, work_id=work_id, segment_id=segment_id),
                "order": order,
            })
            works.setdefault(work_id, []).append(segment)
        return cls(works)

    @property
    def work_ids(self) -> List[str]:
        return list(self._works)

    async def fetch_segments(self, work_id: str, author: Optional[str] = None) -> List[CanonicalSegment]:
        if work_id not in self._works:
            raise DeepLoomError(f"Unknown work: {work_id}")
        return list(self._works[work_id])


def build_boundaries(works: Sequence[Sequence[CanonicalSegment]]) -> List[BoundaryNote]:
    """Une note par œuvre à partir de la deuxième (afterSegmentId = dernier segment précédent)."""
    boundaries: List[BoundaryNote] = []
    previous: Optional[CanonicalSegment] = None
    for index, segments in enumerate(works):
        if not segments:
            continue
        if index > 0 and previous is not None:
            boundaries.append(BoundaryNote(
                work_id=segments[0].work_id,
                start_segment_id=segments[0].segment_id,
                after_segment_id=previous.segment_id,
            ))
        previous = segments[-1]
    return boundaries
