"""
DeepLoom - Cache dictionnaire
=============================

Recherche des entrées de dictionnaire par forme de surface normalisée:
- hits du cache résolus de façon synchrone
- misses interrogés en parallèle (asyncio.gather)
- réponses réécrites en une seule écriture set_many

Valeurs stockées: {"entry": <entrée brute ou null>}. Une entrée absente
(None) est mise en cache; une erreur de lookup ne l'est pas.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from deeploom.common.cancellation import CancellationSignal, check_cancelled
from deeploom.common.errors import CompilationCancelled
from deeploom.common.kv_store import IKVStore
from deeploom.studio.text import strip_punctuation

logger = logging.getLogger(__name__)


class IDictionaryLookup(Protocol):
    """Service de dictionnaire externe (implémentation hors périmètre)."""

    async def lookup(self, surface: str) -> Optional[Any]:
        ...


def normalize_surface(surface: str) -> str:
    return strip_punctuation(surface).lower()


@dataclass
class DictionaryFetch:
    """Entrées par word_id (None si introuvable) + compteurs."""

    entries: Dict[str, Optional[Any]] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0
    failures: int = 0

    @property
    def found(self) -> Dict[str, Any]:
        return {word_id: entry for word_id, entry in self.entries.items() if entry is not None}

    @property
    def missing_word_ids(self) -> List[str]:
        return [word_id for word_id, entry in self.entries.items() if entry is None]


class DictionaryCache:
    """Lookup dictionnaire avec cache KV injecté."""

    def __init__(self, lookup: IDictionaryLookup, store: IKVStore):
        self.lookup = lookup
        self.store = store

    async def _lookup_one(self, surface: str) -> Tuple[str, Optional[Any], bool]:
        try:
            return surface, await self.lookup.lookup(surface), True
        except (CompilationCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.warning(f"[DICTIONARY] Lookup failed for '{surface}': {e}")
            return surface, None, False

    async def fetch(
        self,
        words: Sequence[Tuple[str, str]],
        signal: Optional[CancellationSignal] = None,
    ) -> DictionaryFetch:
        """
        Args:
            words: paires (word_id, surface)

        Returns:
            DictionaryFetch avec une entrée (ou None) par word_id
        """
        check_cancelled(signal)
        result = DictionaryFetch()
        resolved: Dict[str, Optional[Any]] = {}
        to_fetch: List[str] = []

        for _, surface in words:
            key = normalize_surface(surface)
            if not key or key in resolved or key in to_fetch:
                continue
            cached = self.store.get(key)
            if isinstance(cached, dict) and "entry" in cached:
                resolved[key] = cached["entry"]
                result.hits += 1
            else:
                to_fetch.append(key)

        if to_fetch:
            result.misses = len(to_fetch)
            fetched = await asyncio.gather(*(self._lookup_one(key) for key in to_fetch))
            check_cancelled(signal)
            writes: Dict[str, Any] = {}
            for key, entry, ok in fetched:
                resolved[key] = entry
                if ok:
                    writes[key] = {"entry": entry}
                else:
                    result.failures += 1
            if writes:
                self.store.set_many(writes)

        for word_id, surface in words:
            result.entries[word_id] = resolved.get(normalize_surface(surface))

        logger.debug(
            f"[DICTIONARY] {len(words)} words: {result.hits} hits, {result.misses} misses, "
            f"{result.failures} failures"
        )
        return result
