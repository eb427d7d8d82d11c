"""
Tests du Validator: réparations par phase et contrôles globaux du packet.
"""

from deeploom.studio.models import (
    CompilerMeta,
    EnglishToken,
    IssueLevel,
    Packet,
    PacketSource,
    PaliWord,
    PhaseView,
    SegmentRelation,
    Sense,
    ValidationIssue,
    WordSegment,
)
from deeploom.studio.validator import validate_packet, validate_phase

from conftest import make_segment


def _word(word_id, text, segment_id=None, senses=("x",), relation=None):
    return PaliWord(
        id=word_id,
        segments=[WordSegment(id=f"{word_id}s1", text=text, relation=relation)],
        senses=[Sense(english=s) for s in senses],
        canonical_segment_id=segment_id,
    )


def _view(phase_id, segment_ids, words=(), english=(), word_range=None, degraded=False):
    return PhaseView(
        id=phase_id,
        canonical_segment_ids=list(segment_ids),
        pali_words=list(words),
        english_structure=list(english),
        word_range=word_range,
        degraded=degraded,
        degraded_reason="all stages failed" if degraded else None,
    )


def _packet(segments, phases, issues=()):
    return Packet(
        packet_id="deeploom-mn10-test",
        source=PacketSource(work_id="mn10", work_ids=["mn10"]),
        canonical_segments=list(segments),
        phases=list(phases),
        compiler=CompilerMeta(provider="openai", model="gpt-4o-mini", prompt_version="v", source_digest="0"),
        validation_issues=list(issues),
    )


def _opening_view(phase_id="phase-1", english=None):
    return _view(
        phase_id,
        ["mn10:1.1"],
        words=[_word("p1", "Evaṁ", "mn10:1.1"), _word("p2", "me", "mn10:1.1"), _word("p3", "sutaṁ", "mn10:1.1")],
        english=english if english is not None else [
            EnglishToken(id="e0", label="Thus", linked_pali_id="p1"),
            EnglishToken(id="e2", label="have", is_ghost=True),
            EnglishToken(id="e4", label="I", linked_pali_id="p2"),
            EnglishToken(id="e6", label="heard", linked_pali_id="p3"),
        ],
    )


def _codes(issues):
    return sorted(issue.code for issue in issues)


class TestValidatePhase:
    """Réparation structurelle en place."""

    def test_clean_phase(self):
        assert validate_phase(_opening_view()) == []

    def test_placeholders_for_empty_segments_and_senses(self):
        word = PaliWord(id="p1", segments=[], senses=[])
        view = _view("phase-1", ["mn10:1.1"], words=[word])

        issues = validate_phase(view)

        assert _codes(issues) == ["segments_empty", "senses_empty"]
        assert word.segments[0].text == "…"
        assert word.senses[0].nuance == "unspecified"
        assert all(issue.level == IssueLevel.WARN for issue in issues)

    def test_segment_senses_are_enough(self):
        word = PaliWord(id="p1", segments=[WordSegment(id="p1s1", text="me", senses=[Sense(english="me")])])

        assert validate_phase(_view("phase-1", ["a"], words=[word])) == []

    def test_dangling_relation_is_removed(self):
        view = _view("phase-1", ["a"], words=[
            _word("p1", "a", relation=SegmentRelation(target_word_id="p9", type="ownership")),
            _word("p2", "b", relation=SegmentRelation(target_segment_id="p1s1", type="action")),
        ])

        issues = validate_phase(view)

        assert _codes(issues) == ["relation_target_missing"]
        assert issues[0].word_id == "p1" and issues[0].segment_index == 0
        assert view.pali_words[0].segments[0].relation is None
        assert view.pali_words[1].segments[0].relation is not None

    def test_dangling_english_link_is_cleared(self):
        view = _opening_view(english=[
            EnglishToken(id="e1", label="Thus", linked_pali_id="p7"),
            EnglishToken(id="e2", label="heard", linked_segment_id="p3s1"),
        ])

        issues = validate_phase(view)

        assert _codes(issues) == ["linked_pali_missing"]
        assert view.english_structure[0].linked_pali_id is None
        assert view.english_structure[1].linked_segment_id == "p3s1"

    def test_duplicate_ids_are_reported(self):
        view = _view("phase-1", ["a"], words=[_word("p1", "a"), _word("p1", "b")], english=[
            EnglishToken(id="e1", label="x", linked_pali_id="p1"),
            EnglishToken(id="e1", label="y", is_ghost=True),
        ])

        assert _codes(validate_phase(view)) == ["english_token_duplicate", "word_id_duplicate"]

    def test_layout_unknown_ids_dropped(self):
        view = _opening_view()
        view.layout_blocks = [["p1", "p8"], ["p9"]]

        validate_phase(view)

        assert view.layout_blocks == [["p1"]]


class TestValidatePacket:
    """Couverture, intégrité pali, contenu anglais."""

    def test_clean_packet(self, mn10_opening):
        segments = [mn10_opening[0]]
        english = [
            EnglishToken(id="e0", label="Thus", linked_pali_id="p1"),
            EnglishToken(id="e2", label="have", linked_pali_id="p2"),
            EnglishToken(id="e4", label="I", linked_pali_id="p3"),
            EnglishToken(id="e6", label="heard", is_ghost=True),
        ]
        packet = _packet(segments, [_opening_view(english=english)])

        result = validate_packet(packet)

        assert result.valid is True
        assert _codes(result.issues) == ["english_content_missing"]
        assert "heard" in result.issues[0].message

    def test_missing_segment_is_an_error(self, mn10_opening):
        result = validate_packet(_packet(mn10_opening, [_opening_view()]))

        assert result.valid is False
        assert result.stats.missing_segments == 1
        missing = [i for i in result.issues if i.code == "canonical_segment_missing"]
        assert missing[0].canonical_segment_id == "mn10:1.2"

    def test_expected_ids_restrict_coverage(self, mn10_opening):
        result = validate_packet(_packet(mn10_opening, [_opening_view()]), expected_segment_ids=["mn10:1.1"])

        assert "canonical_segment_missing" not in _codes(result.issues)

    def test_split_segment_is_a_warning(self):
        segment = make_segment("mn10:3.1", "aa bb", "x y")
        phases = [
            _view("phase-1", ["mn10:3.1"], words=[_word("p1", "aa", "mn10:3.1")],
                  english=[EnglishToken(id="e1", label="x", linked_pali_id="p1")], word_range=(0, 1)),
            _view("phase-2", ["mn10:3.1"], words=[_word("p1", "bb", "mn10:3.1")],
                  english=[EnglishToken(id="e1", label="y", linked_pali_id="p1")], word_range=(1, 2)),
        ]

        result = validate_packet(_packet([segment], phases))

        assert _codes(result.issues) == ["canonical_segment_duplicate"]
        assert result.valid is True
        assert result.stats.duplicate_segments == 1

    def test_regrouped_segment_is_an_error(self):
        segment = make_segment("mn10:3.1", "aa")
        phases = [
            _view("phase-1", ["mn10:3.1"], words=[_word("p1", "aa", "mn10:3.1")]),
            _view("phase-2", ["mn10:3.1"], words=[_word("p1", "aa", "mn10:3.1")]),
        ]

        result = validate_packet(_packet([segment], phases))

        assert "canonical_segment_regrouped" in _codes(result.issues)
        assert "pali_text_mismatch" in _codes(result.issues)
        assert result.valid is False

    def test_pali_mismatch(self):
        segment = make_segment("mn10:1.1", "Evaṁ me sutaṁ—")
        view = _view("phase-1", ["mn10:1.1"], words=[_word("p1", "Evaṁ", "mn10:1.1"), _word("p2", "me", "mn10:1.1")])

        result = validate_packet(_packet([segment], [view]))

        mismatch = [i for i in result.issues if i.code == "pali_text_mismatch"]
        assert mismatch and mismatch[0].level == IssueLevel.ERROR
        assert 'expected "evaṁmesutaṁ"' in mismatch[0].message

    def test_degraded_phase_skips_integrity_checks(self, mn10_opening):
        degraded = _view("phase-1", ["mn10:1.1"], words=[_word("p1", "???", "mn10:1.1")], degraded=True)

        result = validate_packet(_packet(mn10_opening[:1], [degraded]))

        assert _codes(result.issues) == ["phase_degraded"]
        assert "all stages failed" in result.issues[0].message

    def test_duplicate_mappings_are_counted(self, mn10_opening):
        english = [
            EnglishToken(id="e0", label="Thus", linked_pali_id="p1"),
            EnglishToken(id="e2", label="have", linked_pali_id="p1"),
            EnglishToken(id="e4", label="I heard", linked_pali_id="p2"),
        ]
        earlier = ValidationIssue(level=IssueLevel.WARN, code="english_mapping_duplicate", message="dropped")
        packet = _packet(mn10_opening[:1], [_opening_view(english=english)], issues=[earlier])

        result = validate_packet(packet)

        assert result.stats.duplicate_mappings == 2
        assert "english_mapping_duplicate" in _codes(result.issues)
        assert result.stats.to_wire()["duplicateMappings"] == 2

    def test_packet_is_not_modified(self, mn10_opening):
        packet = _packet(mn10_opening, [_opening_view()])

        validate_packet(packet)

        assert packet.validation_issues == []
