"""
Tests du Skeleton Planner: fenêtres, validation de couverture, repli déterministe.
"""

import json
from collections import Counter

import pytest

from deeploom.common.cancellation import CancellationSignal
from deeploom.common.errors import CompilationCancelled, CompilerResponseError
from deeploom.studio.models import BoundaryNote
from deeploom.studio.pass_models import SkeletonPhaseDraft
from deeploom.studio.skeleton import (
    SkeletonCoverageError,
    SkeletonPlanner,
    chunk_phases,
    validate_chunk_phases,
)

from conftest import (
    FakeGateway,
    make_runner,
    make_segment,
    segment_ids_in_prompt,
    skeleton_json,
)


def _segments(work_id: str, count: int, start_order: int = 0):
    return [
        make_segment(f"{work_id}:1.{i}", f"word{i} alpha beta", f"English {i}", order=start_order + i - 1)
        for i in range(1, count + 1)
    ]


def one_phase_per_segment(request) -> str:
    return skeleton_json([("", [sid]) for sid in segment_ids_in_prompt(request)])


def _planner(gateway, chunk_size=50, fallback_size=8) -> SkeletonPlanner:
    return SkeletonPlanner(make_runner(gateway), chunk_size=chunk_size, fallback_size=fallback_size)


def _coverage(phases):
    return Counter(sid for phase in phases for sid in phase.segment_ids)


class TestSkeletonPlanner:
    """Planification par fenêtres."""

    @pytest.mark.asyncio
    async def test_valid_grouping_is_kept(self):
        segments = _segments("mn10", 4)
        gateway = FakeGateway({"skeleton": skeleton_json([
            ("Title Block", ["mn10:1.1", "mn10:1.2"]),
            ("", ["mn10:1.3"]),
            ("Setting", ["mn10:1.4"]),
        ])})

        result = await _planner(gateway).plan(segments)

        assert [p.id for p in result.phases] == ["phase-1", "phase-2", "phase-3"]
        assert result.phases[0].title == "Title Block"
        assert result.phases[1].title is None
        assert result.fallback_chunks == 0
        assert gateway.requests[0].schema_name == "deeploom_skeleton_1"

    @pytest.mark.asyncio
    async def test_missing_ids_fall_back_to_chunking(self):
        """Fenêtre de 20 segments, 3 ids omis → phases de 8 segments."""
        segments = _segments("mn10", 20)
        ids = [s.segment_id for s in segments]
        partial = [("", [sid]) for sid in ids if sid not in {"mn10:1.4", "mn10:1.9", "mn10:1.17"}]
        gateway = FakeGateway({"skeleton": skeleton_json(partial)})

        result = await _planner(gateway).plan(segments)

        assert [len(p.segment_ids) for p in result.phases] == [8, 8, 4]
        assert [p.id for p in result.phases] == ["phase-1", "phase-2", "phase-3"]
        assert _coverage(result.phases) == Counter(ids)
        assert result.chunks[0].fallback_used is True
        assert "missing 3" in result.chunks[0].error

    @pytest.mark.asyncio
    async def test_full_window_missing_ids_falls_back(self):
        """Fenêtre par défaut de 50 segments, 3 ids omis → 6 phases de 8 puis 2."""
        segments = _segments("mn10", 50)
        ids = [s.segment_id for s in segments]
        omitted = {"mn10:1.7", "mn10:1.23", "mn10:1.50"}
        gateway = FakeGateway({"skeleton": skeleton_json([("", [sid]) for sid in ids if sid not in omitted])})

        result = await _planner(gateway).plan(segments)

        assert len(gateway.requests) == 1
        assert segment_ids_in_prompt(gateway.requests[0]) == ids
        assert [len(p.segment_ids) for p in result.phases] == [8, 8, 8, 8, 8, 8, 2]
        assert _coverage(result.phases) == Counter(ids)
        assert result.fallback_chunks == 1

    @pytest.mark.parametrize("count", [1, 8, 49, 50, 51, 120])
    @pytest.mark.asyncio
    async def test_garbage_responses_still_cover_every_segment(self, count):
        segments = _segments("mn10", count)
        gateway = FakeGateway({"skeleton": '{"phases": [{"segmentIds": ["nope"]}], "extra": '})

        result = await _planner(gateway).plan(segments)

        assert _coverage(result.phases) == Counter(s.segment_id for s in segments)
        assert all(len(p.segment_ids) <= 8 for p in result.phases)
        assert result.fallback_chunks == len(result.chunks) == (count + 49) // 50
        assert [p.id for p in result.phases] == [f"phase-{i}" for i in range(1, len(result.phases) + 1)]

    @pytest.mark.asyncio
    async def test_duplicate_ids_fall_back(self):
        segments = _segments("mn10", 3)
        gateway = FakeGateway({"skeleton": skeleton_json([
            ("", ["mn10:1.1", "mn10:1.2"]),
            ("", ["mn10:1.2", "mn10:1.3"]),
        ])})

        result = await _planner(gateway).plan(segments)

        assert result.fallback_chunks == 1
        assert [p.segment_ids for p in result.phases] == [["mn10:1.1", "mn10:1.2", "mn10:1.3"]]

    @pytest.mark.asyncio
    async def test_foreign_ids_are_ignored(self):
        segments = _segments("mn10", 2)
        gateway = FakeGateway({"skeleton": skeleton_json([
            ("", ["mn10:1.1", "mn99:1.1"]),
            ("", ["mn10:1.2"]),
        ])})

        result = await _planner(gateway).plan(segments)

        assert result.fallback_chunks == 0
        assert [p.segment_ids for p in result.phases] == [["mn10:1.1"], ["mn10:1.2"]]

    @pytest.mark.parametrize("handler", [
        '{"phases": []}',
        "not json at all",
        CompilerResponseError("Empty compiler response."),
        RuntimeError("connection reset"),
    ])
    @pytest.mark.asyncio
    async def test_any_failure_falls_back(self, handler):
        segments = _segments("mn10", 10)
        gateway = FakeGateway({"skeleton": handler})

        result = await _planner(gateway).plan(segments)

        assert result.chunks[0].fallback_used is True
        assert [len(p.segment_ids) for p in result.phases] == [8, 2]

    @pytest.mark.asyncio
    async def test_windows_are_planned_independently(self):
        segments = _segments("mn10", 12)

        def second_window_broken(request):
            ids = segment_ids_in_prompt(request)
            if ids[0] == "mn10:1.6":
                return skeleton_json([("", ids[:2])])
            return one_phase_per_segment(request)

        gateway = FakeGateway({"skeleton": second_window_broken})

        result = await _planner(gateway, chunk_size=5).plan(segments)

        assert [c.segment_count for c in result.chunks] == [5, 5, 2]
        assert [c.fallback_used for c in result.chunks] == [False, True, False]
        assert [r.schema_name for r in gateway.requests] == [
            "deeploom_skeleton_1", "deeploom_skeleton_2", "deeploom_skeleton_3",
        ]
        assert [r.meta["phaseId"] for r in gateway.requests] == ["chunk-1", "chunk-2", "chunk-3"]
        assert len(result.phases) == 5 + 1 + 2
        assert [p.id for p in result.phases] == [f"phase-{i}" for i in range(1, 9)]
        assert _coverage(result.phases) == Counter(s.segment_id for s in segments)

    @pytest.mark.asyncio
    async def test_fallback_restarts_at_boundary(self):
        segments = _segments("mn10", 6) + _segments("mn11", 4, start_order=6)
        boundaries = [BoundaryNote(work_id="mn11", start_segment_id="mn11:1.1", after_segment_id="mn10:1.6")]
        gateway = FakeGateway({"skeleton": '{"phases": []}'})

        strict = await _planner(gateway).plan(segments, boundaries)
        relaxed = await _planner(gateway).plan(segments, boundaries, allow_cross_boundary=True)

        assert [len(p.segment_ids) for p in strict.phases] == [6, 4]
        assert [len(p.segment_ids) for p in relaxed.phases] == [8, 2]
        assert "mn11 begins at mn11:1.1" in gateway.requests[0].messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_sliced_segment_across_phases(self):
        segments = _segments("mn10", 2)
        gateway = FakeGateway({"skeleton": json.dumps({"phases": [
            {"id": "a", "segmentIds": ["mn10:1.1"], "wordRange": [0, 2]},
            {"id": "b", "segmentIds": ["mn10:1.1"], "wordRange": [2, 3]},
            {"id": "c", "segmentIds": ["mn10:1.2"]},
        ]})})

        result = await _planner(gateway).plan(segments)

        assert result.fallback_chunks == 0
        assert [p.word_range for p in result.phases] == [(0, 2), (2, 3), None]

    @pytest.mark.parametrize("first, second", [
        ([2, 1], None),
        ([0, 0], None),
        ([-1, 2], None),
        ([0, 2], [1, 3]),
    ])
    @pytest.mark.asyncio
    async def test_bad_word_range_falls_back(self, first, second):
        """Tranche inversée, vide, négative ou chevauchante → repli, jamais d'exception."""
        segments = _segments("mn10", 2)
        phases = [{"segmentIds": ["mn10:1.1"], "wordRange": first}]
        if second is not None:
            phases.append({"segmentIds": ["mn10:1.1"], "wordRange": second})
        phases.append({"segmentIds": ["mn10:1.2"]})
        gateway = FakeGateway({"skeleton": json.dumps({"phases": phases})})

        result = await _planner(gateway).plan(segments)

        assert result.chunks[0].fallback_used is True
        assert "wordRange" in result.chunks[0].error
        assert [p.segment_ids for p in result.phases] == [["mn10:1.1", "mn10:1.2"]]
        assert all(p.word_range is None for p in result.phases)

    @pytest.mark.asyncio
    async def test_empty_input(self):
        gateway = FakeGateway()

        result = await _planner(gateway).plan([])

        assert result.phases == [] and gateway.requests == []

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        signal = CancellationSignal()
        signal.cancel("stop")
        gateway = FakeGateway({"skeleton": one_phase_per_segment})

        with pytest.raises(CompilationCancelled):
            await _planner(gateway).plan(_segments("mn10", 3), signal=signal)
        assert gateway.requests == []


class TestChunkingHelpers:
    """Découpage déterministe et validation de couverture."""

    def test_chunk_phases_sizes(self):
        phases = chunk_phases(_segments("mn10", 17), size=8)

        assert [len(p.segment_ids) for p in phases] == [8, 8, 1]

    def test_chunk_phases_boundary(self):
        segments = _segments("mn10", 3) + _segments("mn11", 3)

        phases = chunk_phases(segments, size=8, boundary_starts={"mn11:1.1"})

        assert [p.segment_ids[0] for p in phases] == ["mn10:1.1", "mn11:1.1"]

    def test_validate_requires_exact_coverage(self):
        drafts = [SkeletonPhaseDraft(segment_ids=["a"])]

        with pytest.raises(SkeletonCoverageError):
            validate_chunk_phases(drafts, ["a", "b"])

    def test_validate_accepts_adjacent_slices(self):
        drafts = [
            SkeletonPhaseDraft(segment_ids=["a"], word_range=(2, 4)),
            SkeletonPhaseDraft(segment_ids=["a"], word_range=(0, 2)),
            SkeletonPhaseDraft(segment_ids=["b"]),
        ]

        phases = validate_chunk_phases(drafts, ["a", "b"])

        assert [p.word_range for p in phases] == [(2, 4), (0, 2), None]

    def test_validate_rejects_overlapping_slices(self):
        drafts = [
            SkeletonPhaseDraft(segment_ids=["a"], word_range=(0, 3)),
            SkeletonPhaseDraft(segment_ids=["a"], word_range=(2, 4)),
        ]

        with pytest.raises(SkeletonCoverageError, match="Overlapping"):
            validate_chunk_phases(drafts, ["a"])

    def test_validate_rejects_sliced_segment_grouped_with_others(self):
        drafts = [
            SkeletonPhaseDraft(segment_ids=["a"], word_range=(0, 2)),
            SkeletonPhaseDraft(segment_ids=["a", "b"]),
        ]

        with pytest.raises(SkeletonCoverageError):
            validate_chunk_phases(drafts, ["a", "b"])
