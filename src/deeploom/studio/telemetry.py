"""
DeepLoom - Durées de phase
==========================

Moyenne mobile exponentielle (EMA) de la durée d'une phase, par clé
d'œuvre + clé globale de repli, persistée dans un IKVStore injecté.

Valeur stockée: {"samples": [ms, ...], "emaMs": int}
"""

import logging
import math
from typing import Any, Dict, List, Optional

from deeploom.common.kv_store import IKVStore

logger = logging.getLogger(__name__)

MAX_SAMPLES = 12
EMA_ALPHA = 0.35
GLOBAL_KEY = "phase-times:global"


def _round(value: float) -> int:
    # arrondi demi-supérieur (pas d'arrondi bancaire)
    return int(math.floor(value + 0.5))


def normalize_samples(samples: Any) -> List[int]:
    if not isinstance(samples, list):
        return []
    cleaned = []
    for value in samples:
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number) and number > 0:
            cleaned.append(_round(number))
    return cleaned[-MAX_SAMPLES:]


def compute_ema(samples: List[int]) -> Optional[int]:
    if not samples:
        return None
    ema = float(samples[0])
    for sample in samples[1:]:
        ema = EMA_ALPHA * sample + (1 - EMA_ALPHA) * ema
    return _round(ema)


def update_ema(previous: Optional[int], sample: int) -> int:
    if not previous:
        return sample
    return _round(EMA_ALPHA * sample + (1 - EMA_ALPHA) * previous)


def key_for_work(work_key: str) -> str:
    return f"phase-times:{work_key}"


class PhaseDurationTracker:
    """Table des durées de phase (écrivain unique: le compilateur en cours)."""

    def __init__(self, store: IKVStore):
        self.store = store

    def _load(self, key: str) -> Dict[str, Any]:
        raw = self.store.get(key)
        if not isinstance(raw, dict):
            return {"samples": []}
        samples = normalize_samples(raw.get("samples"))
        ema = raw.get("emaMs")
        if isinstance(ema, (int, float)) and math.isfinite(ema):
            ema_ms: Optional[int] = _round(ema)
        else:
            ema_ms = compute_ema(samples)
        return {"samples": samples, "emaMs": ema_ms}

    def _push(self, key: str, ms: int) -> Dict[str, Any]:
        entry = self._load(key)
        previous = entry["emaMs"] if entry["emaMs"] is not None else compute_ema(entry["samples"])
        entry["samples"] = (entry["samples"] + [ms])[-MAX_SAMPLES:]
        entry["emaMs"] = update_ema(previous, ms)
        return entry

    def record(self, work_key: str, duration_ms: float) -> None:
        ms = max(0, _round(duration_ms))
        if not ms:
            return
        self.store.set_many({
            key_for_work(work_key): self._push(key_for_work(work_key), ms),
            GLOBAL_KEY: self._push(GLOBAL_KEY, ms),
        })

    @staticmethod
    def _estimate(entry: Dict[str, Any]) -> Optional[int]:
        if entry.get("emaMs") and entry["emaMs"] > 0:
            return entry["emaMs"]
        return compute_ema(entry["samples"])

    def average(self, work_key: str) -> Optional[int]:
        """EMA de l'œuvre, sinon EMA globale, sinon None."""
        estimate = self._estimate(self._load(key_for_work(work_key)))
        if estimate:
            return estimate
        return self._estimate(self._load(GLOBAL_KEY))
