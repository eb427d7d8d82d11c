"""
Tests du contexte de voisinage injecté dans les prompts.
"""

from deeploom.studio.retrieval import build_retrieval_context

from conftest import make_segment


def _canonical():
    segments = [make_segment(f"mn10:1.{i}", f"pali {i}", f"english {i}", order=i) for i in range(1, 7)]
    segments += [make_segment(f"mn11:1.{i}", f"pali b{i}", order=6 + i) for i in range(1, 4)]
    return segments


def _ids(context):
    return [line.split(" | ")[0] for line in context.splitlines()]


class TestRetrievalContext:
    """Fenêtre avant/après, limite, frontière d'œuvre."""

    def test_window_before_and_after(self):
        canonical = _canonical()

        context = build_retrieval_context(canonical, canonical[3:4], window_size=2)

        assert _ids(context) == ["mn10:1.2", "mn10:1.3", "mn10:1.5", "mn10:1.6"]
        assert "mn10:1.2 | pali: pali 2 | english: english 2" in context

    def test_max_segments(self):
        canonical = _canonical()

        context = build_retrieval_context(canonical, canonical[3:4], window_size=2, max_segments=3)

        assert _ids(context) == ["mn10:1.2", "mn10:1.3", "mn10:1.5"]

    def test_restricted_to_phase_work(self):
        canonical = _canonical()

        context = build_retrieval_context(canonical, canonical[5:6], window_size=2)

        assert _ids(context) == ["mn10:1.4", "mn10:1.5"]

    def test_cross_boundary_allowed(self):
        canonical = _canonical()

        context = build_retrieval_context(canonical, canonical[5:6], window_size=2, allow_cross_boundary=True)

        assert _ids(context) == ["mn10:1.4", "mn10:1.5", "mn11:1.1", "mn11:1.2"]

    def test_no_neighbours(self):
        single = [make_segment("mn10:1.1", "pali")]

        assert build_retrieval_context(single, single) is None
        assert build_retrieval_context(_canonical(), _canonical()[:1], window_size=0) is None

    def test_unknown_phase_segments(self):
        assert build_retrieval_context(_canonical(), [make_segment("sn1:1.1", "x")]) is None
