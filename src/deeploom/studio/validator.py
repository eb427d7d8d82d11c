"""
DeepLoom - Validator
====================

Deux niveaux:

- validate_phase(): réparation structurelle en place d'une PhaseView avant
  son ajout au packet. Produit uniquement des warnings.
- validate_packet(): contrôles globaux une fois toutes les phases
  compilées (couverture des segments, intégrité du texte pali, contenu
  anglais, phases dégradées). Ne modifie pas le packet.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from deeploom.studio.models import (
    IssueLevel,
    Packet,
    PhaseView,
    SegmentType,
    Sense,
    ValidationIssue,
    WordSegment,
)
from deeploom.studio.text import PLACEHOLDER_TEXT, extract_english_words, normalize_source_text

logger = logging.getLogger(__name__)

VALIDATOR_VERSION = "1.0.0"
ENGLISH_SAMPLE_SIZE = 3


def _warn(code: str, message: str, **kwargs) -> ValidationIssue:
    return ValidationIssue(level=IssueLevel.WARN, code=code, message=message, **kwargs)


def _error(code: str, message: str, **kwargs) -> ValidationIssue:
    return ValidationIssue(level=IssueLevel.ERROR, code=code, message=message, **kwargs)


# ============================================================================
# PER-PHASE
# ============================================================================

def validate_phase(view: PhaseView) -> List[ValidationIssue]:
    """
    Répare la phase en place.

    - mots dupliqués: conservés, signalés
    - mot sans segment: segment "…" (stem) inséré
    - relation vers une cible inconnue: retirée
    - mot sans aucun sens: sens "…" (unspecified) inséré
    - token anglais lié à un id inconnu: lien retiré
    - ids de tokens anglais dupliqués: signalés
    """
    issues: List[ValidationIssue] = []
    phase_id = view.id

    word_counts = Counter(word.id for word in view.pali_words)
    for word_id, count in word_counts.items():
        if count > 1:
            issues.append(_warn(
                "word_id_duplicate",
                f"Word id {word_id} appears {count} times in {phase_id}",
                phase_id=phase_id,
                word_id=word_id,
            ))

    for word in view.pali_words:
        if not word.segments:
            word.segments = [WordSegment(id=f"{word.id}s1", text=PLACEHOLDER_TEXT, type=SegmentType.STEM)]
            issues.append(_warn(
                "segments_empty",
                f"Word {word.id} has no segments; placeholder inserted",
                phase_id=phase_id,
                word_id=word.id,
            ))

    word_ids = set(word_counts)
    segment_ids = {seg.id for word in view.pali_words for seg in word.segments if seg.id}

    for word in view.pali_words:
        for index, seg in enumerate(word.segments):
            rel = seg.relation
            if rel is None:
                continue
            resolves = (
                (rel.target_word_id is not None and rel.target_word_id in word_ids)
                or (rel.target_segment_id is not None and rel.target_segment_id in segment_ids)
            )
            if not resolves:
                target = rel.target_word_id or rel.target_segment_id or "(none)"
                seg.relation = None
                issues.append(_warn(
                    "relation_target_missing",
                    f"Relation on {word.id} segment {index} targets unknown id {target}; removed",
                    phase_id=phase_id,
                    word_id=word.id,
                    segment_index=index,
                ))

        if not word.senses and not any(seg.senses for seg in word.segments):
            word.senses = [Sense(english=PLACEHOLDER_TEXT, nuance="unspecified")]
            issues.append(_warn(
                "senses_empty",
                f"Word {word.id} has no senses; placeholder inserted",
                phase_id=phase_id,
                word_id=word.id,
            ))

    for token in view.english_structure:
        dangling = []
        if token.linked_pali_id and token.linked_pali_id not in word_ids:
            dangling.append(token.linked_pali_id)
            token.linked_pali_id = None
        if token.linked_segment_id and token.linked_segment_id not in segment_ids:
            dangling.append(token.linked_segment_id)
            token.linked_segment_id = None
        if dangling:
            issues.append(_warn(
                "linked_pali_missing",
                f"English token {token.id} links to unknown id {', '.join(dangling)}",
                phase_id=phase_id,
                token_id=token.id,
            ))

    token_counts = Counter(token.id for token in view.english_structure)
    for token_id, count in token_counts.items():
        if count > 1:
            issues.append(_warn(
                "english_token_duplicate",
                f"English token id {token_id} appears {count} times in {phase_id}",
                phase_id=phase_id,
                token_id=token_id,
            ))

    if view.layout_blocks:
        blocks = [[wid for wid in block if wid in word_ids] for block in view.layout_blocks]
        view.layout_blocks = [block for block in blocks if block] or None

    if issues:
        logger.debug(f"[DEEPLOOM:Validator] {phase_id}: {len(issues)} repairs")
    return issues


# ============================================================================
# PER-PACKET
# ============================================================================

@dataclass
class PacketValidationStats:
    total_phases: int = 0
    duplicate_segments: int = 0
    missing_segments: int = 0
    duplicate_mappings: int = 0

    def to_wire(self) -> Dict[str, int]:
        return {
            "totalPhases": self.total_phases,
            "duplicateSegments": self.duplicate_segments,
            "missingSegments": self.missing_segments,
            "duplicateMappings": self.duplicate_mappings,
        }


@dataclass
class PacketValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)
    stats: PacketValidationStats = field(default_factory=PacketValidationStats)

    @property
    def valid(self) -> bool:
        return not any(issue.level == IssueLevel.ERROR for issue in self.issues)


def _duplicate_targets(view: PhaseView) -> Dict[str, int]:
    counts = Counter(
        token.linked_segment_id or token.linked_pali_id
        for token in view.english_structure
        if not token.is_ghost and (token.linked_segment_id or token.linked_pali_id)
    )
    return {target: n for target, n in counts.items() if n > 1}


def validate_packet(
    packet: Packet,
    expected_segment_ids: Optional[Iterable[str]] = None,
) -> PacketValidationResult:
    """
    Contrôles globaux du packet.

    Args:
        packet: packet assemblé (phases + segments canoniques)
        expected_segment_ids: segments devant être couverts (défaut: tous les
            segments canoniques; restreint lors d'une troncature debug)
    """
    result = PacketValidationResult()
    stats = result.stats
    stats.total_phases = len(packet.phases)
    issues = result.issues

    occurrences: Dict[str, List[PhaseView]] = defaultdict(list)
    for view in packet.phases:
        for segment_id in view.canonical_segment_ids:
            occurrences[segment_id].append(view)

    # 1. Segments présents dans plusieurs phases
    for segment_id, views in occurrences.items():
        if len(views) < 2:
            continue
        stats.duplicate_segments += 1
        phase_ids = ", ".join(v.id for v in views)
        if all(v.word_range is not None for v in views):
            issues.append(_warn(
                "canonical_segment_duplicate",
                f"Segment {segment_id} is split across {len(views)} phases: {phase_ids}",
                canonical_segment_id=segment_id,
            ))
        else:
            issues.append(_error(
                "canonical_segment_regrouped",
                f"Segment {segment_id} appears in {len(views)} phases without sub-range markers: {phase_ids}",
                canonical_segment_id=segment_id,
            ))

    # 2. Segments manquants
    expected = (
        list(expected_segment_ids)
        if expected_segment_ids is not None
        else [seg.segment_id for seg in packet.canonical_segments]
    )
    for segment_id in expected:
        if segment_id not in occurrences:
            stats.missing_segments += 1
            issues.append(_error(
                "canonical_segment_missing",
                f"Source segment {segment_id} not found in output",
                canonical_segment_id=segment_id,
            ))

    # 3. Phases dégradées
    for view in packet.phases:
        if view.degraded:
            issues.append(_error(
                "phase_degraded",
                f"Phase {view.id} is degraded: {view.degraded_reason or 'unknown reason'}",
                phase_id=view.id,
            ))

    # 4. Mappings anglais dupliqués (ceux déjà retirés au rehydrate comptent aussi)
    stats.duplicate_mappings = sum(
        1 for issue in packet.validation_issues if issue.code == "english_mapping_duplicate"
    )
    for view in packet.phases:
        for target, count in _duplicate_targets(view).items():
            stats.duplicate_mappings += 1
            issues.append(_warn(
                "english_mapping_duplicate",
                f"{target} is linked by {count} English tokens in phase {view.id}",
                phase_id=view.id,
            ))

    # 5. Intégrité pali / anglais (phases non dégradées)
    for seg in packet.canonical_segments:
        views = occurrences.get(seg.segment_id, [])
        healthy = [v for v in views if not v.degraded]
        if not healthy:
            continue

        expected_pali = normalize_source_text(seg.pali)
        if expected_pali and len(healthy) == len(views):
            produced = normalize_source_text("".join(
                s.text
                for view in healthy
                for word in view.pali_words
                if word.canonical_segment_id == seg.segment_id
                for s in word.segments
            ))
            if produced != expected_pali:
                issues.append(_error(
                    "pali_text_mismatch",
                    f"Pali mismatch for {seg.segment_id}: got \"{produced[:40]}\" "
                    f"expected \"{expected_pali[:40]}\"",
                    canonical_segment_id=seg.segment_id,
                ))

        reference_words = list(dict.fromkeys(extract_english_words(seg.base_english or "")))
        if reference_words:
            produced_words = {
                w
                for view in healthy
                for token in view.english_structure
                if not token.is_ghost
                for w in extract_english_words(token.label or "")
            }
            missing = [w for w in reference_words if w not in produced_words]
            if missing:
                issues.append(_warn(
                    "english_content_missing",
                    f"Missing {len(missing)}/{len(reference_words)} English words for "
                    f"{seg.segment_id}: {', '.join(missing[:ENGLISH_SAMPLE_SIZE])}",
                    canonical_segment_id=seg.segment_id,
                ))

    logger.info(
        f"[DEEPLOOM:Validator] Packet {packet.packet_id}: {len(issues)} issues "
        f"(valid={result.valid}, duplicates={stats.duplicate_segments}, "
        f"missing={stats.missing_segments}, mappings={stats.duplicate_mappings})"
    )
    return result
