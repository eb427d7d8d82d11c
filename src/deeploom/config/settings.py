from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .paths import DATA_DIR, LOGS_DIR, PACKETS_DIR, PROJECT_ROOT, ensure_directories


DEFAULT_STRUCTURED_OUTPUT_MODELS = [
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4.1",
    "gpt-4.1-mini",
    "gpt-4.1-nano",
    "o3-mini",
    "o4-mini",
]


class Settings(BaseSettings):
    """Configuration centralisée du compilateur DeepLoom."""

    debug_mode: bool = Field(default=False, alias="DEBUG_MODE")

    # === Provider LLM ===
    llm_provider: str = Field(default="openai", alias="DEEPLOOM_PROVIDER")
    llm_model: str = Field(default="gpt-4o-mini", alias="DEEPLOOM_MODEL")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, alias="OPENAI_BASE_URL")
    llm_timeout_seconds: float = Field(default=120.0, alias="LLM_TIMEOUT_SECONDS")
    llm_max_tokens: int = Field(default=16000, alias="LLM_MAX_TOKENS")
    llm_temperature: float = Field(default=0.2, alias="LLM_TEMPERATURE")

    # Gap minimal entre deux appels LLM (tous passes confondus)
    llm_min_call_gap_ms: int = Field(default=1000, ge=0, alias="LLM_MIN_CALL_GAP_MS")

    # json_schema strict: OpenAI exige alors que toutes les propriétés soient "required"
    llm_strict_schema: bool = Field(default=False, alias="LLM_STRICT_SCHEMA")
    structured_output_models: str = Field(
        default=",".join(DEFAULT_STRUCTURED_OUTPUT_MODELS),
        alias="STRUCTURED_OUTPUT_MODELS",
        description="Modèles supportant response_format=json_schema (liste séparée par virgules)",
    )

    # === Skeleton ===
    skeleton_chunk_size: int = Field(default=50, ge=1, alias="SKELETON_CHUNK_SIZE")
    skeleton_fallback_size: int = Field(default=8, ge=1, alias="SKELETON_FALLBACK_SIZE")

    # === Retrieval context ===
    retrieval_window_size: int = Field(default=2, ge=0, alias="RETRIEVAL_WINDOW_SIZE")
    retrieval_max_segments: int = Field(default=6, ge=0, alias="RETRIEVAL_MAX_SEGMENTS")

    # Debug uniquement: ne compiler que les K premières phases (état final "incomplete")
    debug_max_phases: Optional[int] = Field(default=None, ge=1, alias="DEEPLOOM_DEBUG_MAX_PHASES")

    # === Caches partagés ===
    cache_backend: str = Field(default="memory", alias="DEEPLOOM_CACHE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    cache_key_prefix: str = Field(default="deeploom", alias="DEEPLOOM_CACHE_PREFIX")

    data_dir: Path = Field(default=DATA_DIR, alias="DEEPLOOM_DATA_DIR")
    logs_dir: Path = Field(default=LOGS_DIR)
    packets_dir: Path = Field(default=PACKETS_DIR)

    class Config:
        env_file = PROJECT_ROOT / ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True

    @property
    def structured_models(self) -> List[str]:
        """Liste des modèles structured-outputs (CSV → liste)."""
        return [
            item.strip().lower()
            for item in self.structured_output_models.split(",")
            if item.strip()
        ]

    @field_validator("cache_backend")
    @classmethod
    def check_cache_backend(cls, value: str) -> str:
        backend = value.strip().lower()
        if backend not in ("memory", "redis"):
            raise ValueError(f"Unknown cache backend: {value}")
        return backend

    def configure_runtime(self) -> None:
        """Crée les répertoires utiles."""
        ensure_directories([self.data_dir, self.logs_dir, self.packets_dir])


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()  # type: ignore[arg-type]
    settings.configure_runtime()
    return settings
