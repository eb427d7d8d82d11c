"""
Cache des sorties de passes par texte source (un run de compilation).

Les refrains répétés (même pali normalisé, même traduction de référence)
réutilisent les sorties des passes d'une phase précédente, id de phase
réécrit.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from pydantic import BaseModel

from deeploom.studio.text import djb2_digest, normalize_source_text

logger = logging.getLogger(__name__)

CACHED_PASSES = ("decomposition", "sense", "alignment", "layout")


def phase_text_key(pali: str, english: str = "") -> str:
    return djb2_digest([normalize_source_text(pali), english.strip().lower()])


@dataclass
class SegmentCacheEntry:
    key: str
    source_phase_id: str
    outputs: Dict[str, BaseModel] = field(default_factory=dict)


class SegmentOutputCache:
    """Cache en mémoire, jamais partagé entre deux compilations."""

    def __init__(self) -> None:
        self._entries: Dict[str, SegmentCacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, phase_id: str) -> Optional[Dict[str, BaseModel]]:
        """Sorties réutilisables pour `key`, avec l'id réécrit en `phase_id`."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        logger.info(f"[DEEPLOOM:Cache] {phase_id} reuses outputs of {entry.source_phase_id}")
        return {
            name: output.model_copy(update={"id": phase_id}, deep=True)
            for name, output in entry.outputs.items()
        }

    def store(self, key: str, phase_id: str, outputs: Dict[str, Optional[BaseModel]]) -> None:
        """Enregistre les sorties réussies; une phase sans décomposition n'est pas cachée."""
        kept = {name: out for name, out in outputs.items() if name in CACHED_PASSES and out is not None}
        if "decomposition" not in kept or key in self._entries:
            return
        self._entries[key] = SegmentCacheEntry(key=key, source_phase_id=phase_id, outputs=kept)
