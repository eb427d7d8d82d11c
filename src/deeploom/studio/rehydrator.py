"""
DeepLoom - Rehydrator
=====================

Assemblage déterministe (sans LLM) d'une PhaseView à partir des sorties
de passes qui ont réussi:

1. Mots + segments (Anatomist), relation: première par segment source
2. Sens par mot et par segment (Lexicographer), ou sens de repli
3. englishStructure depuis l'alignement (Weaver), ou synthèse sans ghost
   depuis le premier sens de chaque mot
4. Blocs de layout (Typesetter)
5. Affectation des mots aux segments canoniques (contrôle d'intégrité)

Fournit aussi la normalisation de la passe monolithique et la phase
dégradée.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from deeploom.studio.models import (
    CanonicalSegment,
    EnglishToken,
    GhostKind,
    IssueLevel,
    PaliWord,
    PhaseView,
    SegmentRelation,
    SegmentType,
    Sense,
    SkeletonPhase,
    SourceRef,
    ValidationIssue,
    WordSegment,
)
from deeploom.studio.pass_models import (
    MAX_LAYOUT_BLOCK_SIZE,
    AlignmentPass,
    DecompositionPass,
    LayoutPass,
    MonolithicPhasePass,
    SenseAssignmentPass,
    WordSenses,
)
from deeploom.studio.text import (
    PLACEHOLDER_TEXT,
    normalize_source_text,
    slice_source_text,
)
from deeploom.studio.tokenizer import EnglishTokenInput, tokenize_english, word_tokens

logger = logging.getLogger(__name__)

FALLBACK_NUANCE = "No translation available"
PLACEHOLDER_NUANCE = "unspecified"


# ============================================================================
# SOURCE D'UNE PHASE
# ============================================================================

@dataclass
class PhaseSource:
    """Phase planifiée + ses segments canoniques (tranchés si wordRange)."""

    phase: SkeletonPhase
    segments: List[CanonicalSegment]

    @property
    def phase_id(self) -> str:
        return self.phase.id

    @property
    def source_span(self) -> List[SourceRef]:
        return [seg.ref for seg in self.segments]

    @property
    def segment_ids(self) -> List[str]:
        return [seg.segment_id for seg in self.segments]

    @property
    def work_ids(self) -> List[str]:
        return list(dict.fromkeys(seg.work_id for seg in self.segments))

    @property
    def sliced_segments(self) -> List[CanonicalSegment]:
        """Segments vus par les prompts: seule la tranche wordRange du pali est conservée."""
        if self.phase.word_range is None:
            return list(self.segments)
        return [
            seg.model_copy(update={"pali": slice_source_text(seg.pali, self.phase.word_range)})
            for seg in self.segments
        ]

    @property
    def pali_text(self) -> str:
        return " ".join(seg.pali for seg in self.sliced_segments)

    @property
    def english_text(self) -> str:
        return " ".join(seg.base_english for seg in self.segments if seg.base_english)


@dataclass
class RehydrationResult:
    view: PhaseView
    issues: List[ValidationIssue] = field(default_factory=list)


def _base_view(source: PhaseSource) -> PhaseView:
    return PhaseView(
        id=source.phase_id,
        title=source.phase.title,
        source_span=source.source_span,
        canonical_segment_ids=source.segment_ids,
        word_range=source.phase.word_range,
    )


# ============================================================================
# AFFECTATION AUX SEGMENTS CANONIQUES
# ============================================================================

def assign_canonical_segments(words: Sequence[PaliWord], segments: Sequence[CanonicalSegment]) -> None:
    """
    Parcours glouton du texte normalisé: chaque mot est affecté au segment
    courant, on passe au suivant dès que la longueur cible est atteinte.
    """
    targets = [(seg.segment_id, len(normalize_source_text(seg.pali))) for seg in segments]
    if not targets:
        return
    index, filled = 0, 0
    for word in words:
        while index < len(targets) - 1 and targets[index][1] == 0:
            index += 1
        word.canonical_segment_id = targets[index][0]
        filled += len(normalize_source_text(word.surface))
        if filled >= targets[index][1] and index < len(targets) - 1:
            index += 1
            filled = 0


# ============================================================================
# ENGLISH STRUCTURE
# ============================================================================

def collapse_adjacent(tokens: Sequence[EnglishToken]) -> List[EnglishToken]:
    """Deux entrées adjacentes de même texte (casse ignorée) n'en font qu'une."""
    collapsed: List[EnglishToken] = []
    for token in tokens:
        label = (token.label or "").strip().lower()
        if collapsed and label and label == (collapsed[-1].label or "").strip().lower():
            continue
        collapsed.append(token)
    return collapsed


def fill_missing_labels(tokens: Sequence[EnglishToken], words: Sequence[PaliWord]) -> List[EnglishToken]:
    """
    Token non-ghost sans label: premier sens du segment lié, sinon du mot
    (lié directement ou propriétaire du segment).
    """
    word_sense: Dict[str, str] = {}
    segment_sense: Dict[str, str] = {}
    for word in words:
        first = next((s.english for s in word.senses if s.english), None)
        if first:
            word_sense[word.id] = first
        for seg in word.segments:
            own = next((s.english for s in seg.senses if s.english), None)
            if own or first:
                segment_sense[seg.id] = own or first

    filled: List[EnglishToken] = []
    for token in tokens:
        label = None
        if not token.is_ghost and not (token.label or "").strip():
            if token.linked_segment_id:
                label = segment_sense.get(token.linked_segment_id)
            if label is None and token.linked_pali_id:
                label = word_sense.get(token.linked_pali_id)
        filled.append(token.model_copy(update={"label": label}) if label else token)
    return filled


def english_from_alignment(
    phase_id: str,
    alignment: AlignmentPass,
    english_tokens: Sequence[EnglishTokenInput],
) -> Tuple[List[EnglishToken], List[ValidationIssue]]:
    """Tokens mots seulement; première occurrence gardée par cible non-ghost."""
    by_index = {t.index: t for t in english_tokens}
    used_targets: Dict[str, int] = {}
    structure: List[EnglishToken] = []
    issues: List[ValidationIssue] = []

    for token in alignment.tokens:
        original = by_index.get(token.token_index)
        if original is None:
            logger.debug(f"[DEEPLOOM:Rehydrator] {phase_id}: unknown token index {token.token_index}")
            continue
        if not original.is_word:
            continue

        target = token.target_id
        if target and not token.is_ghost:
            if target in used_targets:
                issues.append(ValidationIssue(
                    level=IssueLevel.WARN,
                    code="english_mapping_duplicate",
                    message=(
                        f"Token {token.token_index} (\"{original.text}\") repeats target {target} "
                        f"already linked by token {used_targets[target]}; dropped"
                    ),
                    phase_id=phase_id,
                    token_id=f"e{token.token_index}",
                ))
                continue
            used_targets[target] = token.token_index

        structure.append(EnglishToken(
            id=f"e{token.token_index}",
            label=original.text,
            linked_segment_id=None if token.is_ghost else token.linked_segment_id,
            linked_pali_id=None if token.is_ghost else token.linked_pali_id,
            is_ghost=token.is_ghost,
            ghost_kind=(token.ghost_kind or GhostKind.INTERPRETIVE) if token.is_ghost else None,
        ))
    return structure, issues


def english_from_senses(words: Sequence[PaliWord]) -> List[EnglishToken]:
    """Synthèse sans ghost: premier sens de chaque mot, dans l'ordre source."""
    structure: List[EnglishToken] = []
    for word in words:
        senses = word.senses or next((seg.senses for seg in word.segments if seg.senses), [])
        if not senses:
            continue
        structure.append(EnglishToken(
            id=f"e{len(structure) + 1}",
            label=senses[0].english,
            linked_pali_id=word.id,
        ))
    return structure


def _cap_blocks(blocks: Optional[Sequence[Sequence[str]]], known: set) -> Optional[List[List[str]]]:
    if not blocks:
        return None
    capped: List[List[str]] = []
    for block in blocks:
        ids = [wid for wid in block if wid in known]
        for start in range(0, len(ids), MAX_LAYOUT_BLOCK_SIZE):
            capped.append(ids[start:start + MAX_LAYOUT_BLOCK_SIZE])
    return capped or None


# ============================================================================
# REHYDRATATION
# ============================================================================

def fallback_senses(decomposition: DecompositionPass) -> SenseAssignmentPass:
    """Sens de repli quand le Lexicographer a échoué: la surface elle-même."""
    return SenseAssignmentPass(
        id=decomposition.id,
        senses=[
            WordSenses(
                word_id=word.id,
                word_class=word.word_class,
                senses=[Sense(english=word.surface, nuance=FALLBACK_NUANCE)],
            )
            for word in decomposition.words
        ],
    )


def rehydrate_phase(
    source: PhaseSource,
    decomposition: DecompositionPass,
    senses: Optional[SenseAssignmentPass] = None,
    alignment: Optional[AlignmentPass] = None,
    english_tokens: Optional[Sequence[EnglishTokenInput]] = None,
    layout: Optional[LayoutPass] = None,
) -> RehydrationResult:
    view = _base_view(source)
    issues: List[ValidationIssue] = []

    if senses is None:
        senses = fallback_senses(decomposition)
    senses_by_word = {entry.word_id: entry.senses for entry in senses.senses}
    senses_by_segment = {entry.segment_id: entry.senses for entry in senses.segment_senses}

    relation_of: Dict[str, SegmentRelation] = {}
    for rel in decomposition.relations:
        if rel.from_segment_id in relation_of:
            logger.debug(
                f"[DEEPLOOM:Rehydrator] Multiple relations for segment {rel.from_segment_id}; keeping first"
            )
            continue
        relation_of[rel.from_segment_id] = SegmentRelation(
            target_word_id=rel.target_word_id,
            target_segment_id=rel.target_segment_id,
            type=rel.type,
            label=rel.label,
            status=rel.status,
        )

    for word in decomposition.words:
        segments = [
            WordSegment(
                id=seg.id,
                text=seg.text,
                type=seg.type,
                tooltips=list(seg.tooltips),
                morph=seg.morph,
                relation=relation_of.get(seg.id),
                senses=list(senses_by_segment.get(seg.id, [])),
            )
            for seg in decomposition.segments_for(word)
        ]
        if not segments:
            segments = [WordSegment(id=f"{word.id}s1", text=word.surface or PLACEHOLDER_TEXT)]

        view.pali_words.append(PaliWord(
            id=word.id,
            segments=segments,
            senses=list(senses_by_word.get(word.id, [])),
            is_anchor=word.is_anchor,
            word_class=word.word_class,
        ))

    if alignment is not None and english_tokens:
        structure, mapping_issues = english_from_alignment(source.phase_id, alignment, english_tokens)
        issues.extend(mapping_issues)
        english_source = "alignment"
    else:
        structure = english_from_senses(view.pali_words)
        english_source = "senses"
    view.english_structure = collapse_adjacent(structure)

    known = {word.id for word in view.pali_words}
    view.layout_blocks = _cap_blocks(layout.layout_blocks if layout else None, known)

    assign_canonical_segments(view.pali_words, source.sliced_segments)
    logger.debug(
        f"[DEEPLOOM:Rehydrator] {source.phase_id}: {len(view.pali_words)} words, "
        f"english from {english_source} ({len(view.english_structure)} tokens)"
    )
    return RehydrationResult(view=view, issues=issues)


def rehydrate_monolithic(source: PhaseSource, draft: MonolithicPhasePass) -> RehydrationResult:
    """Normalise une PhaseView complète produite en un seul appel."""
    view = _base_view(source)
    if draft.title and not view.title:
        view.title = draft.title
    word_ids = {word.id for word in draft.pali_words}

    for word in draft.pali_words:
        segments: List[WordSegment] = []
        for index, seg in enumerate(word.segments):
            relation = None
            if seg.relation is not None:
                in_words = seg.relation.target_id in word_ids
                relation = SegmentRelation(
                    target_word_id=seg.relation.target_id if in_words else None,
                    target_segment_id=None if in_words else seg.relation.target_id,
                    type=seg.relation.type,
                    label=seg.relation.label,
                    status=seg.relation.status,
                )
            segments.append(WordSegment(
                id=f"{word.id}s{index + 1}",
                text=seg.text,
                type=seg.type,
                tooltips=list(seg.tooltips)[:3],
                morph=seg.morph,
                relation=relation,
            ))
        view.pali_words.append(PaliWord(
            id=word.id,
            segments=segments,
            senses=list(word.senses),
            is_anchor=word.is_anchor,
        ))

    view.english_structure = collapse_adjacent(fill_missing_labels(draft.english_structure, view.pali_words))
    view.layout_blocks = _cap_blocks(draft.layout_blocks, word_ids)
    assign_canonical_segments(view.pali_words, source.sliced_segments)
    return RehydrationResult(view=view)


def build_degraded_phase(source: PhaseSource, reason: str) -> PhaseView:
    """
    Phase de repli sans LLM: un mot "stem" par token pali (au moins un par
    segment), anglais en ghosts interprétatifs.
    """
    view = _base_view(source)
    view.degraded = True
    view.degraded_reason = reason or "Phase compilation failed."

    for seg in source.sliced_segments:
        for surface in seg.pali.split() or [PLACEHOLDER_TEXT]:
            word_id = f"p{len(view.pali_words) + 1}"
            view.pali_words.append(PaliWord(
                id=word_id,
                segments=[WordSegment(id=f"{word_id}s1", text=surface, type=SegmentType.STEM)],
                senses=[Sense(english=PLACEHOLDER_TEXT, nuance=PLACEHOLDER_NUANCE)],
                canonical_segment_id=seg.segment_id,
            ))

    english_words = word_tokens(tokenize_english(source.english_text))
    view.english_structure = [
        EnglishToken(
            id=f"e{index + 1}",
            label=token.text,
            is_ghost=True,
            ghost_kind=GhostKind.INTERPRETIVE,
        )
        for index, token in enumerate(english_words)
    ]
    logger.warning(
        f"[DEEPLOOM:Rehydrator] {source.phase_id} degraded: {view.degraded_reason} "
        f"({len(view.pali_words)} placeholder words)"
    )
    return view
