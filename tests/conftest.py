from __future__ import annotations

import importlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
import sys
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from deeploom.common.errors import CompilerResponseError  # noqa: E402
from deeploom.common.kv_store import InMemoryKVStore  # noqa: E402
from deeploom.common.throttle import CallThrottle  # noqa: E402
from deeploom.config.settings import Settings  # noqa: E402
from deeploom.llm.gateway import ChatRequest, ChatResult  # noqa: E402
from deeploom.llm.structured import CompilerCaller  # noqa: E402
from deeploom.studio.models import CanonicalSegment, SourceRef  # noqa: E402
from deeploom.studio.passes import PassRunner  # noqa: E402


@dataclass
class RuntimeEnv:
    """Container providing access to reloaded config modules for tests."""

    data_dir: Path
    paths: ModuleType
    settings_module: ModuleType


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> RuntimeEnv:
    """Reload configuration modules against an isolated data directory."""

    data_dir = tmp_path / "data"
    monkeypatch.setenv("DEEPLOOM_DATA_DIR", str(data_dir))

    paths_module = importlib.import_module("deeploom.config.paths")
    paths_module = importlib.reload(paths_module)

    settings_module = importlib.import_module("deeploom.config.settings")
    settings_module = importlib.reload(settings_module)
    settings_module.get_settings.cache_clear()

    yield RuntimeEnv(
        data_dir=data_dir,
        paths=paths_module,
        settings_module=settings_module,
    )

    settings_module.get_settings.cache_clear()


# ========================================
# Segments
# ========================================

def make_segment(segment_id: str, pali: str, english: Optional[str] = None, work_id: Optional[str] = None, order: int = 0) -> CanonicalSegment:
    work = work_id or segment_id.split(":")[0]
    return CanonicalSegment(
        ref=SourceRef(work_id=work, segment_id=segment_id),
        order=order,
        pali=pali,
        base_english=english,
    )


@pytest.fixture
def mn10_opening() -> List[CanonicalSegment]:
    """Deux segments d'ouverture (formule + cadre)."""
    return [
        make_segment("mn10:1.1", "Evaṁ me sutaṁ—", "Thus have I heard.", order=0),
        make_segment("mn10:1.2", "ekaṁ samayaṁ bhagavā", "At one time the Buddha", order=1),
    ]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolés: pas de gap entre appels, cache mémoire."""
    return Settings(
        LLM_MIN_CALL_GAP_MS=0,
        DEEPLOOM_CACHE_BACKEND="memory",
        DEEPLOOM_DATA_DIR=tmp_path / "data",
        DEEPLOOM_MODEL="gpt-4o-mini",
    )


# ========================================
# Gateway scripté
# ========================================

Handler = Union[str, Exception, Callable[[ChatRequest], str]]


class FakeGateway:
    """
    Gateway LLM scripté par étape (request.meta["stage"]).

    Un handler est soit une chaîne (réponse), soit une exception (levée),
    soit un callable(request) -> str. Une liste de handlers est consommée
    dans l'ordre; le dernier est rejoué ensuite.
    """

    def __init__(self, handlers: Optional[Dict[str, Union[Handler, List[Handler]]]] = None):
        self.handlers: Dict[str, List[Handler]] = {}
        for stage, handler in (handlers or {}).items():
            self.on(stage, handler)
        self.requests: List[ChatRequest] = []

    def on(self, stage: str, handler: Union[Handler, List[Handler]]) -> "FakeGateway":
        self.handlers[stage] = list(handler) if isinstance(handler, list) else [handler]
        return self

    def stages(self) -> List[str]:
        return [r.meta.get("stage") for r in self.requests]

    def requests_for(self, stage: str) -> List[ChatRequest]:
        return [r for r in self.requests if r.meta.get("stage") == stage]

    async def chat_json(self, request: ChatRequest) -> ChatResult:
        self.requests.append(request)
        stage = request.meta.get("stage")
        queue = self.handlers.get(stage)
        if not queue:
            raise CompilerResponseError(f"No scripted response for stage {stage}")
        handler = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(handler, Exception):
            raise handler
        text = handler(request) if callable(handler) else handler
        return ChatResult(text=text, model="fake")


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def kv_store() -> InMemoryKVStore:
    return InMemoryKVStore()


def make_runner(gateway: Any, structured: bool = True) -> PassRunner:
    """PassRunner sans gap de throttle."""
    return PassRunner(CompilerCaller(gateway, CallThrottle(min_gap_ms=0), structured_outputs=structured))


def prompt_of(request: ChatRequest) -> str:
    return request.messages[-1]["content"]


_SEGMENT_LINE = re.compile(r"^(\S+) \| pali:", re.MULTILINE)


def segment_ids_in_prompt(request: ChatRequest) -> List[str]:
    """Ids listés sous "Segments:" (lignes `<id> | pali: ...`)."""
    prompt = prompt_of(request)
    marker = prompt.rfind("Segments:")
    return _SEGMENT_LINE.findall(prompt[marker:] if marker >= 0 else prompt)


# ========================================
# Réponses de passes
# ========================================

def decomposition_json(phase_id: str, words: Sequence[Tuple[str, Sequence[str]]], word_class: str = "content", relations: Optional[List[Dict[str, Any]]] = None) -> str:
    """words: [(surface, [textes des segments]), ...] → JSON Anatomist."""
    payload: Dict[str, Any] = {"id": phase_id, "words": [], "segments": [], "relations": relations or []}
    for w_index, (surface, pieces) in enumerate(words, start=1):
        word_id = f"p{w_index}"
        segment_ids = [f"{word_id}s{s_index}" for s_index in range(1, len(pieces) + 1)]
        payload["words"].append({
            "id": word_id,
            "surface": surface,
            "wordClass": word_class,
            "segmentIds": segment_ids,
        })
        for segment_id, text in zip(segment_ids, pieces):
            payload["segments"].append({
                "id": segment_id,
                "wordId": word_id,
                "text": text,
                "type": "stem" if len(pieces) == 1 else "root",
                "tooltips": [f"{text}: gloss"],
            })
    return json.dumps(payload, ensure_ascii=False)


def sense_json(phase_id: str, senses: Dict[str, List[str]], word_class: str = "content") -> str:
    return json.dumps({
        "id": phase_id,
        "senses": [
            {
                "wordId": word_id,
                "wordClass": word_class,
                "senses": [{"english": english, "nuance": "context"} for english in values],
            }
            for word_id, values in senses.items()
        ],
        "handoff": {"confidence": "high", "missingDefinitions": [], "notes": ""},
    })


def alignment_json(phase_id: str, tokens: List[Dict[str, Any]]) -> str:
    return json.dumps({"id": phase_id, "tokens": tokens})


def layout_json(phase_id: str, blocks: List[List[str]]) -> str:
    return json.dumps({"id": phase_id, "layoutBlocks": blocks})


def skeleton_json(phases: List[Tuple[str, List[str]]]) -> str:
    return json.dumps({
        "phases": [
            {"id": f"phase-{i}", "title": title, "segmentIds": ids}
            for i, (title, ids) in enumerate(phases, start=1)
        ]
    })
