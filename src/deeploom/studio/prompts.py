"""
DeepLoom - Prompts des passes
=============================

Contexte commun + contexte par passe + enveloppe d'état de phase +
exemple JSON (à ne pas copier) + données de la phase.

Les prompts sont en anglais: la sortie (sens, tokens) est de l'anglais.
"""

import json
from typing import Dict, List, Mapping, Optional, Sequence

from deeploom.studio.models import BoundaryNote, CanonicalSegment
from deeploom.studio.pass_models import (
    AlignmentPass,
    DecompositionPass,
    SenseAssignmentPass,
)
from deeploom.studio.tokenizer import EnglishTokenInput, build_token_list_for_prompt

PROMPT_VERSION = "deeploom-v5"

COMPILER_PERSONA = "You are DeepLoomCompiler."


# ============================================================================
# CONTEXTES
# ============================================================================

BASE_CONTEXT = """
Context:
- Pali is a fusional, synthetic language: relationships are encoded in word endings (inflections), not word order.
- English is analytic and forces specificity; avoid collapsing polysemy into a single meaning.
- This output is for *study*, not just translation. Preserve ambiguity when justified.
- Ghost words exist to show English glue (zero copula, prepositions); they are scaffolding, not source truth.
- If unsure, keep output minimal and mark relations as pending rather than guessing.
""".strip()

SKELETON_CONTEXT = """
Skeleton guidance:
- Group segments into SMALL study phases for focused learning.
- HARD LIMIT: Maximum 8 Pali words per phase.
- Default: one segment per phase.

GROUPING RULES (in priority order):
1. Title block: collection name + sutta title (a title line with its subtitle line) go TOGETHER in one phase called "Title Block".
2. Opening formula ("Evaṁ me sutaṁ...") gets its own phase called "Opening Formula".
3. Enumerations: each parallel list item stays in its own phase.
4. Direct speech markers ("...ti" quotation closers) stay with the quoted content.

If a boundary map is provided, do not cross work boundaries unless explicitly allowed.
""".strip()

DECOMPOSITION_CONTEXT = """
Anatomist pass:
- Goal: Pali word segmentation + morphology + relations + etymological tooltips. Do NOT add English senses.
- CRITICAL: Each space-separated Pali token is ONE word. "Evaṁ me sutaṁ" = 3 words (p1, p2, p3), NOT 1 word.

SEGMENT IDs: wordId + "s" + index (p1s1, p1s2, p2s1). Every segment has a unique id.

WORD CLASS: "content" (nouns, verbs, adjectives, adverbs) or "function" (particles, pronouns, connectives).

SEGMENT TYPES: "root" (√ roots), "prefix" (vi-, sam-, pa-, upa-), "suffix" (case/tense/voice endings), "stem" (unsegmented or unclear).

TOOLTIPS (1-3 per segment): "√root: meaning / meaning", "Prefix: function", "Case (number): grammatical function".

RELATIONS: attach to the segment carrying the grammatical marker (usually the suffix).
- targetWordId for segment-to-word, targetSegmentId for segment-to-segment inside compounds.
- Types: ownership (genitive), direction (dative), location (locative), action (instrumental).
""".strip()

SENSE_CONTEXT = """
Lexicographer pass:
- Goal: contextual senses only (no segmentation, no English mapping).
- Content words: exactly 3 senses. Function words: 1-2 senses.
- Use dictionary data if provided; do not invent etymology.
- If dictionary data is missing, infer from context, say so in notes and lower handoff.confidence.
- Compounds: when segments carry distinct meanings, use segmentSenses (segmentId → senses) and leave the word-level senses empty.
""".strip()

ALIGNMENT_CONTEXT = """
Weaver pass:
- Goal: map pre-tokenized English tokens to Pali segments or words. Do NOT reword or reorder.
- Prefer linkedSegmentId (segment-level), especially for compounds; use linkedPaliId for simple words.
- A given segment or word id may be the target of at most ONE non-ghost token.
- Ghosts (English words with NO Pali source):
  - "required": grammatically necessary (articles, verb helpers, case-implied prepositions)
  - "interpretive": added for clarity
- Whitespace and punctuation tokens are not listed and must not be mapped.
""".strip()

LAYOUT_CONTEXT = """
Typesetter pass:
- Goal: arrange Pali word ids into layout blocks, max 5 words per block.
- Keep words of the same canonical segment in the same block.
- Follow the English reading order; keep grammatically related words close.
- If unsure, use source order chunked into groups of at most 5.
""".strip()

PHASE_CONTEXT = """
Phase guidance:
- Provide multiple senses when a term is polysemous.
- Encode relationships via suffix segments (genitive → ownership, dative → direction, locative → location, instrumental → action).
- Use ghost tokens for zero copula ("is/are") and English prepositions implied by Pali endings.
- Do not repeat the same English token twice in a row.
- Provide layoutBlocks with a max of 5 words each.
""".strip()


# ============================================================================
# EXEMPLES (NE PAS COPIER LES IDS)
# ============================================================================

SKELETON_EXAMPLE = {
    "phases": [
        {"id": "phase-1", "title": "Title Block", "segmentIds": ["mn10:0.1", "mn10:0.2"]},
        {"id": "phase-2", "title": "Opening Formula", "segmentIds": ["mn10:1.1"]},
        {"id": "phase-3", "title": "Setting", "segmentIds": ["mn10:1.2"]},
        {"id": "phase-4", "title": "Benefit: Grief & Lamentation", "segmentIds": ["mn10:2.2"]},
        {"id": "phase-5", "title": "Benefit: Pain & Sadness", "segmentIds": ["mn10:2.3"]},
    ]
}

DECOMPOSITION_EXAMPLE = {
    "id": "phase-x",
    "words": [
        {"id": "p1", "surface": "sattānaṁ", "wordClass": "content", "segmentIds": ["p1s1", "p1s2"]},
        {"id": "p2", "surface": "visuddhiyā", "wordClass": "content", "segmentIds": ["p2s1", "p2s2", "p2s3"], "isAnchor": True},
    ],
    "segments": [
        {"id": "p1s1", "wordId": "p1", "text": "satt", "type": "root", "tooltips": ["√sat: To be / Living being"]},
        {"id": "p1s2", "wordId": "p1", "text": "ānaṁ", "type": "suffix", "tooltips": ["Genitive plural: of the (many)"],
         "morph": {"case": "gen", "number": "pl", "note": "Marks belonging"}},
        {"id": "p2s1", "wordId": "p2", "text": "vi", "type": "prefix", "tooltips": ["vi-: Intensive / Apart"]},
        {"id": "p2s2", "wordId": "p2", "text": "suddhi", "type": "root", "tooltips": ["√sudh: Purity / Cleansing"]},
        {"id": "p2s3", "wordId": "p2", "text": "yā", "type": "suffix", "tooltips": ["Dative: For the purpose of"]},
    ],
    "relations": [
        {"id": "r1", "fromSegmentId": "p1s2", "targetWordId": "p2", "type": "ownership", "label": "Possessor of", "status": "confirmed"}
    ],
    "handoff": {"confidence": "high", "segmentationIssues": [], "notes": ""},
}

SENSE_EXAMPLE = {
    "id": "phase-x",
    "senses": [
        {"wordId": "p1", "wordClass": "content", "senses": [
            {"english": "beings", "nuance": "living entities"},
            {"english": "creatures", "nuance": "sentient life"},
            {"english": "persons", "nuance": "individuals"},
        ]},
        {"wordId": "p2", "wordClass": "function", "senses": [{"english": "thus", "nuance": "narrative opener"}]},
    ],
    "handoff": {"confidence": "medium", "missingDefinitions": [], "notes": ""},
}

ALIGNMENT_EXAMPLE = {
    "id": "phase-x",
    "tokens": [
        {"tokenIndex": 0, "text": "Thus", "linkedPaliId": "p1", "isGhost": False},
        {"tokenIndex": 2, "text": "have", "isGhost": True, "ghostKind": "required"},
        {"tokenIndex": 4, "text": "I", "linkedPaliId": "p2", "isGhost": False},
        {"tokenIndex": 6, "text": "heard", "linkedSegmentId": "p3s1", "isGhost": False},
    ],
    "handoff": {"confidence": "high", "notes": ""},
}

LAYOUT_EXAMPLE = {
    "id": "phase-x",
    "layoutBlocks": [["p1", "p2"], ["p3", "p4", "p5"]],
    "handoff": {"confidence": "high", "notes": ""},
}

PHASE_EXAMPLE = {
    "id": "phase-x",
    "title": "Example Only",
    "layoutBlocks": [["p1", "p2"]],
    "paliWords": [
        {"id": "p1", "segments": [
            {"text": "satt", "type": "root", "tooltips": ["√sat: To be / Living being"]},
            {"text": "ānaṁ", "type": "suffix", "tooltips": ["Genitive plural"],
             "relation": {"targetId": "p2", "type": "ownership", "label": "Possessor of", "status": "confirmed"}},
        ], "senses": [{"english": "beings", "nuance": "living entities"}]},
        {"id": "p2", "segments": [{"text": "visuddhiyā", "type": "stem"}],
         "senses": [{"english": "purification", "nuance": "spiritual cleansing"}]},
    ],
    "englishStructure": [
        {"id": "g1", "label": "for the", "isGhost": True, "ghostKind": "required"},
        {"id": "e1", "label": "purification", "linkedPaliId": "p2"},
        {"id": "g2", "label": "of", "isGhost": True, "ghostKind": "required"},
        {"id": "e2", "label": "beings", "linkedPaliId": "p1"},
    ],
}


def _example(payload: Mapping) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


# ============================================================================
# BLOCS COMMUNS
# ============================================================================

STAGE_LABELS = [
    ("decomposition", "Anatomist"),
    ("sense", "Lexicographer"),
    ("alignment", "Weaver"),
    ("layout", "Typesetter"),
]


def segment_lines(segments: Sequence[CanonicalSegment]) -> str:
    lines = []
    for seg in segments:
        english = f" | english: {seg.base_english}" if seg.base_english else ""
        lines.append(f"{seg.segment_id} | pali: {seg.pali}{english}")
    return "\n".join(lines)


def retrieval_block(retrieval_context: Optional[str]) -> str:
    if not retrieval_context:
        return ""
    return (
        "\nReference context (adjacent segments; use to disambiguate, do not copy):\n"
        f"{retrieval_context}\n"
    )


def build_phase_state_envelope(
    work_id: str,
    phase_id: str,
    segments: Sequence[CanonicalSegment],
    current_stage: str,
    completed: Sequence[str] = (),
) -> str:
    """Enveloppe lecture seule: position de la phase, checklist des étapes, invariants."""
    start = segments[0].segment_id if segments else "n/a"
    end = segments[-1].segment_id if segments else start
    labels = dict(STAGE_LABELS)
    position = [key for key, _ in STAGE_LABELS].index(current_stage) + 1 if current_stage in labels else 0

    status_lines = []
    for key, label in STAGE_LABELS:
        done = key in completed
        if done:
            state = "complete"
        elif key == current_stage:
            state = "IN PROGRESS"
        else:
            state = "pending"
        status_lines.append(f"{'[x]' if done else '[ ]'} {label}: {state}")

    current_label = f"{labels.get(current_stage, current_stage)} ({position}/4)" if position else current_stage
    return "\n".join([
        "=== PHASE STATE (READ ONLY) ===",
        f"• Work: {work_id}",
        f"• Phase: {phase_id}",
        f"• Segments: {start} to {end}",
        f"• Current Stage: {current_label}",
        "",
        "STATUS CHECK:",
        *status_lines,
        "",
        "INVARIANTS:",
        "1) Do NOT add/remove Pali IDs (p1, p2...).",
        "2) Segment texts must concatenate to the surface text exactly.",
        "3) Preserve source word order and spelling (no normalization).",
        "===============================",
    ])


def build_boundary_context(boundaries: Sequence[BoundaryNote], allow_cross_boundary: bool) -> str:
    if not boundaries:
        return ""
    lines = []
    for b in boundaries:
        if b.after_segment_id:
            lines.append(f"- {b.work_id} begins at {b.start_segment_id} (after {b.after_segment_id})")
        else:
            lines.append(f"- {b.work_id} begins at {b.start_segment_id}")
    if allow_cross_boundary:
        rule = "Boundary map provided (cross-chapter phases are allowed)."
    else:
        rule = "Boundary map provided: do not place segments from different works in the same phase."
    return f"\n{rule}\n" + "\n".join(lines) + "\n"


# ============================================================================
# PROMPTS
# ============================================================================

def build_skeleton_prompt(
    segments: Sequence[CanonicalSegment],
    boundaries: Sequence[BoundaryNote] = (),
    allow_cross_boundary: bool = False,
) -> str:
    example_segment = segments[0].segment_id if segments else "mn1:1.1"
    prefix = example_segment.split(":")[0] or "mn1"
    return (
        f"{COMPILER_PERSONA}\n\n{BASE_CONTEXT}\n\n{SKELETON_CONTEXT}\n"
        f"{build_boundary_context(boundaries, allow_cross_boundary)}\n"
        "Task: Group the following segments into SMALL study phases.\n\n"
        "CRITICAL RULES:\n"
        "- MAXIMUM 8 Pali words per phase (count space-separated tokens).\n"
        "- Each segment must appear exactly once.\n"
        "- Keep the original order.\n\n"
        "Return JSON ONLY with this shape:\n"
        '{\n  "phases": [\n'
        f'    {{ "id": "phase-1", "title": "<short title or empty>", "segmentIds": ["{prefix}:1.1", "{prefix}:1.2"] }}\n'
        "  ]\n}\n\n"
        f"EXAMPLE (do NOT copy ids):\n{_example(SKELETON_EXAMPLE)}\n\n"
        f"Segments:\n{segment_lines(segments)}"
    )


def build_decomposition_prompt(
    phase_id: str,
    segments: Sequence[CanonicalSegment],
    phase_state: str,
    retrieval_context: Optional[str] = None,
) -> str:
    word_count = sum(len(seg.pali.split()) for seg in segments)
    return (
        f"{COMPILER_PERSONA}\n\n{BASE_CONTEXT}\n\n{DECOMPOSITION_CONTEXT}\n\n{phase_state}\n\n"
        "Task: Build the Anatomist JSON for the segment list below.\n\n"
        "CRITICAL WORD BOUNDARY RULE:\n"
        "- Each SPACE-SEPARATED Pali token = ONE word entry.\n"
        "- NEVER combine multiple space-separated tokens into one word.\n"
        f"- Expected word count for this input: approximately {word_count} words.\n\n"
        "Rules:\n"
        "- Output JSON ONLY.\n"
        f"- Use the exact phase id: {phase_id}.\n"
        "- Create word IDs p1, p2, ... in surface order.\n"
        "- Create segment IDs <wordId>s1, <wordId>s2, ... and list them in word.segmentIds in order.\n"
        "- Concatenation of segment texts must equal word.surface exactly.\n"
        "- Do NOT add English senses or tokens.\n\n"
        f"EXAMPLE (do NOT copy ids):\n{_example(DECOMPOSITION_EXAMPLE)}\n"
        f"{retrieval_block(retrieval_context)}\n"
        f"Segments:\n{segment_lines(segments)}"
    )


def build_sense_prompt(
    phase_id: str,
    segments: Sequence[CanonicalSegment],
    phase_state: str,
    decomposition: DecompositionPass,
    dictionary_entries: Mapping[str, object],
    retrieval_context: Optional[str] = None,
) -> str:
    words = []
    for word in decomposition.words:
        pieces = "".join(seg.text for seg in decomposition.segments_for(word))
        words.append(f"{word.id} | {word.surface} | {word.word_class.value} | segments: {pieces}")

    dictionary_lines = [
        f"- {word_id}: {json.dumps(entry, ensure_ascii=False)}"
        for word_id, entry in dictionary_entries.items()
    ]
    return (
        f"{COMPILER_PERSONA}\n\n{BASE_CONTEXT}\n\n{SENSE_CONTEXT}\n\n{phase_state}\n\n"
        "Task: Build the Lexicographer JSON for the words below.\n\n"
        "Rules:\n"
        "- Output JSON ONLY.\n"
        f"- Use the exact phase id: {phase_id}.\n"
        "- Provide senses for every wordId listed.\n"
        "- Content words must have exactly 3 senses. Function words must have 1-2 senses.\n"
        "- If dictionary data is present, use it to ground meanings.\n\n"
        f"EXAMPLE (do NOT copy ids):\n{_example(SENSE_EXAMPLE)}\n\n"
        "Words:\n" + "\n".join(words) + "\n\n"
        "Dictionary entries (raw; do not copy verbatim):\n"
        + ("\n".join(dictionary_lines) or "(none)") + "\n"
        f"{retrieval_block(retrieval_context)}\n"
        f"Segment context:\n{segment_lines(segments)}"
    )


def build_alignment_prompt(
    phase_id: str,
    segments: Sequence[CanonicalSegment],
    phase_state: str,
    decomposition: DecompositionPass,
    senses: SenseAssignmentPass,
    english_tokens: List[EnglishTokenInput],
) -> str:
    segment_text = {seg.id: seg.text for seg in decomposition.segments}
    senses_by_word = {entry.word_id: entry.senses for entry in senses.senses}

    lines = []
    for word in decomposition.words:
        sense_str = " / ".join(s.english for s in senses_by_word.get(word.id, [])) or "(no senses)"
        seg_str = ", ".join(f'{sid}="{segment_text.get(sid, "?")}"' for sid in word.segment_ids)
        marker = " [COMPOUND]" if len(word.segment_ids) > 1 else ""
        lines.append(f"{word.id} | {word.surface}{marker} | segments: {seg_str} | senses: {sense_str}")

    english_text = " ".join(seg.base_english for seg in segments if seg.base_english)
    return (
        f"{COMPILER_PERSONA}\n\n{BASE_CONTEXT}\n\n{ALIGNMENT_CONTEXT}\n\n{phase_state}\n\n"
        "Task: Map the English tokens below to Pali segment or word IDs.\n\n"
        "Rules:\n"
        "- Output JSON ONLY.\n"
        f"- Use the exact phase id: {phase_id}.\n"
        "- Provide one entry per listed token, keeping its tokenIndex and text unchanged.\n"
        "- Linked tokens: set linkedSegmentId or linkedPaliId and isGhost: false.\n"
        "- Scaffolding tokens: isGhost: true with ghostKind.\n\n"
        f"EXAMPLE (do NOT copy):\n{_example(ALIGNMENT_EXAMPLE)}\n\n"
        f'English sentence: "{english_text}"\n\n'
        f"Tokenized English (index:text):\n{build_token_list_for_prompt(english_tokens)}\n\n"
        "Pali words (id | surface | segments | senses):\n" + "\n".join(lines)
    )


def english_reading_order(decomposition: DecompositionPass, alignment: Optional[AlignmentPass]) -> List[str]:
    """Ids de mots pali dans l'ordre de lecture anglais (tokens non-ghost liés)."""
    if alignment is None:
        return []
    word_of_segment = {seg.id: seg.word_id for seg in decomposition.segments}
    order: List[str] = []
    for token in alignment.tokens:
        if token.is_ghost or not token.target_id:
            continue
        word_id = token.linked_pali_id or word_of_segment.get(token.linked_segment_id, token.linked_segment_id)
        if word_id and word_id not in order:
            order.append(word_id)
    return order


def build_layout_prompt(
    phase_id: str,
    segments: Sequence[CanonicalSegment],
    phase_state: str,
    decomposition: DecompositionPass,
    alignment: Optional[AlignmentPass],
    word_segment_map: Optional[Dict[str, str]] = None,
) -> str:
    owner = {seg.id: seg.word_id for seg in decomposition.segments}
    lines = []
    for word in decomposition.words:
        relations = [
            f"→{rel.target_word_id or rel.target_segment_id} ({rel.type.value})"
            for rel in decomposition.relations
            if owner.get(rel.from_segment_id) == word.id
        ]
        canonical = f" | segment: {word_segment_map[word.id]}" if word_segment_map and word.id in word_segment_map else ""
        rel_str = f" | relations: {', '.join(relations)}" if relations else ""
        lines.append(f"{word.id} | {word.surface}{canonical}{rel_str}")

    order = " → ".join(english_reading_order(decomposition, alignment))
    canonical_info = "\n".join(f'{seg.segment_id}: "{seg.pali.strip()}"' for seg in segments)
    return (
        f"{COMPILER_PERSONA}\n\n{BASE_CONTEXT}\n\n{LAYOUT_CONTEXT}\n\n{phase_state}\n\n"
        "Task: Arrange the Pali words into layout blocks.\n\n"
        "Rules:\n"
        "- Output JSON ONLY.\n"
        f"- Use the exact phase id: {phase_id}.\n"
        "- Each block has at most 5 word IDs.\n"
        "- Words from the same canonical segment stay in the SAME block.\n"
        "- Follow the English reading order; keep related words in the same or adjacent blocks.\n\n"
        f"Canonical segments:\n{canonical_info or '(not available)'}\n\n"
        f"EXAMPLE (do NOT copy):\n{_example(LAYOUT_EXAMPLE)}\n\n"
        "Pali words (id | surface | relations):\n" + "\n".join(lines) + "\n\n"
        f"English reading order (Pali IDs):\n{order or '(no mapping available)'}"
    )


def build_monolithic_prompt(
    phase_id: str,
    segments: Sequence[CanonicalSegment],
    render_defaults: Mapping[str, object],
    phase_state: Optional[str] = None,
    retrieval_context: Optional[str] = None,
) -> str:
    state_block = f"\n{phase_state}\n" if phase_state else ""
    defaults = ", ".join(f"{key}={value}" for key, value in render_defaults.items())
    return (
        f"{COMPILER_PERSONA}\n\n{BASE_CONTEXT}\n\n{PHASE_CONTEXT}\n{state_block}\n"
        "Task: Build a PhaseView JSON for the segment list below.\n\n"
        "Rules:\n"
        "- Output JSON ONLY.\n"
        f"- Use the exact phase id: {phase_id}.\n"
        "- Create paliWords (one per space-separated token, ids p1, p2, ...) with segments "
        '(type: root|suffix|prefix|stem). If unsure, use a single "stem" segment.\n'
        "- Segment texts must concatenate to the word exactly.\n"
        "- Provide at least 1 sense per word; give 2-3 senses with short nuance labels when possible.\n"
        "- englishStructure is the ordered English token list: label + linkedPaliId, "
        "plus ghost tokens (isGhost true, ghostKind) for English glue.\n"
        "- Avoid markdown or extra commentary.\n\n"
        f"EXAMPLE (do NOT copy ids):\n{_example(PHASE_EXAMPLE)}\n\n"
        f"Render defaults for context: {defaults}."
        f"{retrieval_block(retrieval_context)}\n"
        f"Segments:\n{segment_lines(segments)}"
    )
