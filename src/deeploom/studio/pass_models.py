"""
DeepLoom - Schemas Pydantic des passes spécialistes
===================================================

Chaque passe est une variante taggée (champ `kind`) validée dès la frontière
de parsing JSON: aucune étape aval ne consomme de dict brut.

- decomposition (Anatomist): mots, segments morphologiques, relations
- sense (Lexicographer): sens par mot / par segment
- alignment (Weaver): tokens anglais → segment/mot pali ou ghost
- layout (Typesetter): blocs de ≤5 mots
- monolithic: PhaseView complète en un seul appel (fallback)
- skeleton: regroupement des segments en phases

Le champ `kind` n'est jamais demandé au LLM: il est imposé au parsing et
retiré du JSON schema envoyé en response_format.
"""

import copy
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from deeploom.common.errors import CompilerResponseError
from deeploom.llm.json_parsing import parse_json_response
from deeploom.studio.models import (
    EnglishToken,
    GhostKind,
    Morph,
    RelationStatus,
    RelationType,
    SegmentType,
    Sense,
    StudioModel,
    WordClass,
)

logger = logging.getLogger(__name__)

MAX_LAYOUT_BLOCK_SIZE = 5


class Handoff(StudioModel):
    """Note de passation d'une passe à la suivante."""
    confidence: Optional[Literal["high", "medium", "low"]] = None
    notes: Optional[str] = None
    segmentation_issues: List[str] = Field(default_factory=list)
    missing_definitions: List[str] = Field(default_factory=list)
    unmapped_tokens: List[int] = Field(default_factory=list)


# ============================================================================
# SKELETON
# ============================================================================

class SkeletonPhaseDraft(StudioModel):
    id: Optional[str] = None
    title: Optional[str] = None
    segment_ids: List[str] = Field(default_factory=list)
    word_range: Optional[Tuple[int, int]] = None


class SkeletonResponse(StudioModel):
    kind: Literal["skeleton"] = "skeleton"
    phases: List[SkeletonPhaseDraft] = Field(default_factory=list)


# ============================================================================
# DECOMPOSITION (ANATOMIST)
# ============================================================================

class DecompositionWord(StudioModel):
    id: str
    surface: str
    word_class: WordClass = Field(
        default=WordClass.CONTENT,
        validation_alias=AliasChoices("wordClass", "class", "word_class"),
    )
    segment_ids: List[str] = Field(default_factory=list)
    is_anchor: Optional[bool] = None


class DecompositionSegment(StudioModel):
    id: str
    word_id: str
    text: str
    type: SegmentType = SegmentType.STEM
    tooltips: List[str] = Field(default_factory=list)
    morph: Optional[Morph] = None

    @field_validator("type", mode="before")
    @classmethod
    def unknown_type_is_stem(cls, v: Any) -> Any:
        """Type de segment inconnu → stem (morphologie incertaine)."""
        if isinstance(v, str) and v.lower() not in {t.value for t in SegmentType}:
            return SegmentType.STEM
        return v.lower() if isinstance(v, str) else v

    @field_validator("tooltips")
    @classmethod
    def cap_tooltips(cls, v: List[str]) -> List[str]:
        return [t for t in v if t.strip()][:3]


class DecompositionRelation(StudioModel):
    id: str
    from_segment_id: str
    target_word_id: Optional[str] = None
    target_segment_id: Optional[str] = None
    type: RelationType
    label: str = ""
    status: RelationStatus = RelationStatus.PENDING


class DecompositionPass(StudioModel):
    kind: Literal["decomposition"] = "decomposition"
    id: Optional[str] = None
    words: List[DecompositionWord]
    segments: List[DecompositionSegment] = Field(default_factory=list)
    relations: List[DecompositionRelation] = Field(default_factory=list)
    handoff: Optional[Handoff] = None

    def segments_for(self, word: DecompositionWord) -> List[DecompositionSegment]:
        by_id = {seg.id: seg for seg in self.segments}
        return [by_id[sid] for sid in word.segment_ids if sid in by_id]


# ============================================================================
# SENSE ASSIGNMENT (LEXICOGRAPHER)
# ============================================================================

class WordSenses(StudioModel):
    word_id: str
    word_class: WordClass = Field(
        default=WordClass.CONTENT,
        validation_alias=AliasChoices("wordClass", "class", "word_class"),
    )
    senses: List[Sense] = Field(default_factory=list)


class SegmentSenses(StudioModel):
    segment_id: str
    senses: List[Sense] = Field(default_factory=list)


class SenseAssignmentPass(StudioModel):
    kind: Literal["sense"] = "sense"
    id: Optional[str] = None
    senses: List[WordSenses]
    segment_senses: List[SegmentSenses] = Field(default_factory=list)
    handoff: Optional[Handoff] = None


# ============================================================================
# ALIGNMENT (WEAVER)
# ============================================================================

class AlignmentToken(StudioModel):
    token_index: int
    text: str
    linked_segment_id: Optional[str] = None
    linked_pali_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("linkedPaliId", "linkedWordId", "linked_pali_id"),
    )
    is_ghost: bool = False
    ghost_kind: Optional[GhostKind] = None

    @property
    def target_id(self) -> Optional[str]:
        return self.linked_segment_id or self.linked_pali_id


class AlignmentPass(StudioModel):
    kind: Literal["alignment"] = "alignment"
    id: Optional[str] = None
    tokens: List[AlignmentToken]
    handoff: Optional[Handoff] = None


# ============================================================================
# LAYOUT (TYPESETTER)
# ============================================================================

class LayoutPass(StudioModel):
    kind: Literal["layout"] = "layout"
    id: Optional[str] = None
    layout_blocks: List[List[str]]
    handoff: Optional[Handoff] = None

    @field_validator("layout_blocks")
    @classmethod
    def cap_block_size(cls, v: List[List[str]]) -> List[List[str]]:
        """Blocs vides retirés, blocs > 5 redécoupés."""
        blocks: List[List[str]] = []
        for block in v:
            for start in range(0, len(block), MAX_LAYOUT_BLOCK_SIZE):
                chunk = block[start:start + MAX_LAYOUT_BLOCK_SIZE]
                if chunk:
                    blocks.append(chunk)
        return blocks


# ============================================================================
# MONOLITHIC (FALLBACK PHASE VIEW)
# ============================================================================

class DraftRelation(StudioModel):
    target_id: str
    type: RelationType
    label: str = ""
    status: Optional[RelationStatus] = None


class DraftSegment(StudioModel):
    text: str
    type: SegmentType = SegmentType.STEM
    tooltips: List[str] = Field(default_factory=list)
    morph: Optional[Morph] = None
    relation: Optional[DraftRelation] = None

    @field_validator("type", mode="before")
    @classmethod
    def unknown_type_is_stem(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() not in {t.value for t in SegmentType}:
            return SegmentType.STEM
        return v.lower() if isinstance(v, str) else v


class DraftWord(StudioModel):
    id: str
    segments: List[DraftSegment] = Field(default_factory=list)
    senses: List[Sense] = Field(default_factory=list)
    is_anchor: Optional[bool] = None


class MonolithicPhasePass(StudioModel):
    kind: Literal["monolithic"] = "monolithic"
    id: Optional[str] = None
    title: Optional[str] = None
    pali_words: List[DraftWord]
    english_structure: List[EnglishToken] = Field(default_factory=list)
    layout_blocks: Optional[List[List[str]]] = None


StudioPass = Annotated[
    Union[
        DecompositionPass,
        SenseAssignmentPass,
        AlignmentPass,
        LayoutPass,
        MonolithicPhasePass,
    ],
    Field(discriminator="kind"),
]


# ============================================================================
# REGISTRY DES SCHEMAS PAR PASSE
# ============================================================================

PASS_REGISTRY: Dict[str, Type[BaseModel]] = {
    "skeleton": SkeletonResponse,
    "decomposition": DecompositionPass,
    "sense": SenseAssignmentPass,
    "alignment": AlignmentPass,
    "layout": LayoutPass,
    "monolithic": MonolithicPhasePass,
}


def get_model_for_pass(kind: str) -> Type[BaseModel]:
    model = PASS_REGISTRY.get(kind)
    if model is None:
        raise ValueError(f"Unknown pass: {kind}")
    return model


def get_schema_for_pass(kind: str) -> Dict[str, Any]:
    """
    JSON schema envoyé au provider (response_format json_schema).

    Le tag `kind` est retiré: il est imposé côté parsing.
    """
    schema = copy.deepcopy(get_model_for_pass(kind).model_json_schema(by_alias=True))
    schema.get("properties", {}).pop("kind", None)
    if "required" in schema:
        schema["required"] = [name for name in schema["required"] if name != "kind"]
    return schema


def parse_pass_payload(kind: str, payload: Any) -> BaseModel:
    """
    Valide un payload déjà décodé contre la variante `kind`.

    Raises:
        CompilerResponseError: payload non-objet ou non conforme au schéma
    """
    if not isinstance(payload, dict):
        raise CompilerResponseError(f"{kind} response is not a JSON object.")
    model = get_model_for_pass(kind)
    try:
        return model.model_validate({**payload, "kind": kind})
    except ValidationError as e:
        logger.warning(f"[LLM_SCHEMAS] Parse failed for {kind}: {e.error_count()} errors")
        raise CompilerResponseError(f"{kind} response failed validation: {e}") from e


def parse_pass_response(kind: str, raw: str) -> BaseModel:
    """Texte LLM → variante taggée validée (fences, équilibrage, pydantic)."""
    return parse_pass_payload(kind, parse_json_response(raw))
