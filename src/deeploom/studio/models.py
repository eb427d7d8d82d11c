"""
DeepLoom - Modèles du packet d'étude
====================================

Contrat de données consommé par le viewer: champs camelCase sur le fil
(model_dump(by_alias=True)), attributs snake_case côté Python.

Cycle de vie:
- CanonicalSegment, SkeletonPhase: immuables (frozen)
- PhaseView: ajoutée au Packet dès que sa phase est terminée
- Packet: progress muté à chaque phase, validation_issues additif
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class StudioModel(BaseModel):
    """Base: alias camelCase + population par nom Python."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# ENUMS
# ============================================================================

class WordClass(str, Enum):
    """Classe de mot (code couleur du viewer)."""
    CONTENT = "content"
    FUNCTION = "function"


class SegmentType(str, Enum):
    ROOT = "root"
    SUFFIX = "suffix"
    PREFIX = "prefix"
    STEM = "stem"


class RelationType(str, Enum):
    """Relations grammaticales (génitif, datif, locatif, instrumental)."""
    OWNERSHIP = "ownership"
    DIRECTION = "direction"
    LOCATION = "location"
    ACTION = "action"


class RelationStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"


class GhostKind(str, Enum):
    """required: glue grammaticale anglaise; interpretive: ajout de clarté."""
    REQUIRED = "required"
    INTERPRETIVE = "interpretive"


class IssueLevel(str, Enum):
    WARN = "warn"
    ERROR = "error"


class ProgressState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"  # troncature debug (debug_max_phases)
    ERROR = "error"


# ============================================================================
# SOURCE
# ============================================================================

class SourceRef(StudioModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    provider: str = "suttacentral"
    work_id: str
    segment_id: str


class CanonicalSegment(StudioModel):
    """Segment canonique: texte pali + traduction de référence optionnelle."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    ref: SourceRef
    order: int = 0
    pali: str = Field(default="", validation_alias=AliasChoices("pali", "sourceText", "source_text"))
    base_english: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "baseEnglish", "base_english", "referenceTranslation", "reference_translation"
        ),
    )

    @property
    def segment_id(self) -> str:
        return self.ref.segment_id

    @property
    def work_id(self) -> str:
        return self.ref.work_id


class BoundaryNote(StudioModel):
    """Point où une œuvre se termine et la suivante commence."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    work_id: str
    start_segment_id: str
    after_segment_id: Optional[str] = None


class SkeletonPhase(StudioModel):
    """
    Regroupement de segments pour une phase d'étude.

    word_range: tranche [start, end) des tokens pali d'un segment unique
    découpé sur plusieurs phases.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    id: str
    title: Optional[str] = None
    segment_ids: List[str]
    word_range: Optional[Tuple[int, int]] = None

    @field_validator("segment_ids")
    @classmethod
    def unique_segment_ids(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("segment ids must be unique within a phase")
        return v

    @field_validator("word_range")
    @classmethod
    def ordered_range(cls, v: Optional[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
        if v is not None and not (0 <= v[0] < v[1]):
            raise ValueError("word_range must satisfy 0 <= start < end")
        return v


# ============================================================================
# PHASE VIEW
# ============================================================================

class Morph(StudioModel):
    case: Optional[str] = None
    number: Optional[str] = None
    note: Optional[str] = None


class Sense(StudioModel):
    id: Optional[str] = None
    english: str
    nuance: str = ""
    notes: Optional[str] = None


class SegmentRelation(StudioModel):
    target_word_id: Optional[str] = None
    target_segment_id: Optional[str] = None
    type: RelationType
    label: str = ""
    status: Optional[RelationStatus] = None


class WordSegment(StudioModel):
    id: Optional[str] = None
    text: str
    type: SegmentType = SegmentType.STEM
    tooltips: List[str] = Field(default_factory=list)
    morph: Optional[Morph] = None
    relation: Optional[SegmentRelation] = None
    senses: List[Sense] = Field(default_factory=list)


class PaliWord(StudioModel):
    id: str
    segments: List[WordSegment] = Field(default_factory=list)
    senses: List[Sense] = Field(default_factory=list)
    is_anchor: Optional[bool] = None
    word_class: Optional[WordClass] = None
    canonical_segment_id: Optional[str] = None

    @property
    def surface(self) -> str:
        return "".join(seg.text for seg in self.segments)


class EnglishToken(StudioModel):
    id: str
    label: Optional[str] = None
    linked_pali_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("linkedPaliId", "linkedWordId", "linked_pali_id"),
    )
    linked_segment_id: Optional[str] = None
    is_ghost: bool = False
    ghost_kind: Optional[GhostKind] = None


class PhaseView(StudioModel):
    """Unité durable du packet: une phase assemblée (ou dégradée)."""

    id: str
    title: Optional[str] = None
    source_span: List[SourceRef] = Field(default_factory=list)
    canonical_segment_ids: List[str] = Field(default_factory=list)
    word_range: Optional[Tuple[int, int]] = None
    pali_words: List[PaliWord] = Field(default_factory=list)
    english_structure: List[EnglishToken] = Field(default_factory=list)
    layout_blocks: Optional[List[List[str]]] = None
    degraded: bool = False
    degraded_reason: Optional[str] = None


# ============================================================================
# PACKET
# ============================================================================

class ValidationIssue(StudioModel):
    level: IssueLevel
    code: str
    message: str
    phase_id: Optional[str] = None
    word_id: Optional[str] = None
    segment_index: Optional[int] = None
    token_id: Optional[str] = None
    canonical_segment_id: Optional[str] = None


class Progress(StudioModel):
    total_phases: int = 0
    ready_phases: int = 0
    total_segments: int = 0
    ready_segments: int = 0
    state: ProgressState = ProgressState.IDLE
    current_phase_id: Optional[str] = None
    last_progress_at: Optional[str] = None
    last_phase_ms: Optional[int] = None
    avg_phase_ms: Optional[int] = None
    eta_ms: Optional[int] = None


class RenderDefaults(StudioModel):
    ghost_opacity: float = 0.3
    english_visible: bool = True
    study_toggle_default: bool = True


class CompilerMeta(StudioModel):
    provider: str
    model: str
    prompt_version: str
    created_at_iso: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        alias="createdAtISO",
    )
    source_digest: str
    validator_version: Optional[str] = None


class PacketSource(StudioModel):
    provider: str = "suttacentral"
    work_id: str
    work_ids: List[str] = Field(default_factory=list)


class Packet(StudioModel):
    packet_id: str
    source: PacketSource
    canonical_segments: List[CanonicalSegment] = Field(default_factory=list)
    phases: List[PhaseView] = Field(default_factory=list)
    progress: Progress = Field(default_factory=Progress)
    render_defaults: RenderDefaults = Field(default_factory=RenderDefaults)
    compiler: CompilerMeta
    validation_issues: List[ValidationIssue] = Field(default_factory=list)

    def issues_at(self, level: IssueLevel) -> List[ValidationIssue]:
        return [issue for issue in self.validation_issues if issue.level == level]

    @property
    def has_errors(self) -> bool:
        return any(issue.level == IssueLevel.ERROR for issue in self.validation_issues)
