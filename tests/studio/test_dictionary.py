"""
Tests du cache dictionnaire et du cache des sorties par texte source.
"""

import pytest

from deeploom.common.cancellation import CancellationSignal
from deeploom.common.errors import CompilationCancelled
from deeploom.common.kv_store import InMemoryKVStore
from deeploom.studio.dictionary import DictionaryCache, normalize_surface
from deeploom.studio.pass_models import parse_pass_response
from deeploom.studio.segment_cache import SegmentOutputCache, phase_text_key

from conftest import decomposition_json, layout_json


class StubLookup:
    """Dictionnaire scripté: surface → entrée, exception ou absent."""

    def __init__(self, entries=None, failing=()):
        self.entries = entries or {}
        self.failing = set(failing)
        self.calls = []

    async def lookup(self, surface):
        self.calls.append(surface)
        if surface in self.failing:
            raise ConnectionError("dictionary offline")
        return self.entries.get(surface)


class TestDictionaryCache:
    """Hits synchrones, misses en parallèle, écriture unique."""

    @pytest.mark.asyncio
    async def test_misses_are_fetched_and_cached_in_one_write(self):
        store = InMemoryKVStore()
        lookup = StubLookup({"evaṁ": {"pos": "ind"}})
        cache = DictionaryCache(lookup, store)

        fetch = await cache.fetch([("p1", "Evaṁ"), ("p2", "me"), ("p3", "sutaṁ—")])

        assert fetch.misses == 3 and fetch.hits == 0
        assert fetch.found == {"p1": {"pos": "ind"}}
        assert fetch.missing_word_ids == ["p2", "p3"]
        assert store.writes == 1
        assert store.get("sutaṁ") == {"entry": None}

    @pytest.mark.asyncio
    async def test_second_fetch_hits_cache(self):
        store = InMemoryKVStore()
        lookup = StubLookup({"me": {"pos": "pron"}})
        cache = DictionaryCache(lookup, store)
        await cache.fetch([("p1", "me")])

        fetch = await cache.fetch([("p7", "Me")])

        assert fetch.hits == 1 and fetch.misses == 0
        assert fetch.entries == {"p7": {"pos": "pron"}}
        assert lookup.calls == ["me"]

    @pytest.mark.asyncio
    async def test_repeated_surfaces_are_looked_up_once(self):
        lookup = StubLookup()
        cache = DictionaryCache(lookup, InMemoryKVStore())

        fetch = await cache.fetch([("p1", "ca"), ("p2", "ca"), ("p3", "ca,")])

        assert lookup.calls == ["ca"]
        assert set(fetch.entries) == {"p1", "p2", "p3"}

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        store = InMemoryKVStore()
        cache = DictionaryCache(StubLookup({"me": {"pos": "pron"}}, failing={"sutaṁ"}), store)

        fetch = await cache.fetch([("p1", "me"), ("p2", "sutaṁ")])

        assert fetch.failures == 1
        assert fetch.entries["p2"] is None
        assert "sutaṁ" not in store
        assert "me" in store

    @pytest.mark.asyncio
    async def test_cancelled_before_lookup(self):
        signal = CancellationSignal()
        signal.cancel()
        lookup = StubLookup()

        with pytest.raises(CompilationCancelled):
            await DictionaryCache(lookup, InMemoryKVStore()).fetch([("p1", "me")], signal)
        assert lookup.calls == []

    def test_normalize_surface(self):
        assert normalize_surface("Sutaṁ—") == "sutaṁ"


class TestSegmentOutputCache:
    """Réutilisation des sorties pour un texte source répété."""

    def _outputs(self, phase_id):
        return {
            "decomposition": parse_pass_response("decomposition", decomposition_json(phase_id, [("evaṁ", ["evaṁ"])])),
            "layout": parse_pass_response("layout", layout_json(phase_id, [["p1"]])),
            "alignment": None,
        }

    def test_key_ignores_case_spacing_and_punctuation(self):
        assert phase_text_key("Evaṁ me sutaṁ—", "Thus") == phase_text_key("evaṁ  me sutaṁ", " thus ")
        assert phase_text_key("Evaṁ me sutaṁ", "Thus") != phase_text_key("Evaṁ me sutaṁ", "So")

    def test_get_rewrites_phase_id(self):
        cache = SegmentOutputCache()
        cache.store("k", "phase-1", self._outputs("phase-1"))

        reused = cache.get("k", "phase-9")

        assert set(reused) == {"decomposition", "layout"}
        assert reused["decomposition"].id == "phase-9"
        assert cache.get("k", "phase-10")["decomposition"].id == "phase-10"
        assert cache.hits == 2

    def test_cached_copy_is_isolated(self):
        cache = SegmentOutputCache()
        cache.store("k", "phase-1", self._outputs("phase-1"))

        reused = cache.get("k", "phase-2")
        reused["decomposition"].words[0].surface = "changed"

        assert cache.get("k", "phase-3")["decomposition"].words[0].surface == "evaṁ"

    def test_without_decomposition_nothing_is_stored(self):
        cache = SegmentOutputCache()
        cache.store("k", "phase-1", {"decomposition": None, "layout": self._outputs("phase-1")["layout"]})

        assert len(cache) == 0
        assert cache.get("k", "phase-2") is None
        assert cache.misses == 1
