"""
Normalisation de texte partagée (validation, rehydratation, cache, digest).
"""

import re
from typing import Iterable, List

from deeploom.studio.tokenizer import PUNCTUATION_CHARS

_PUNCTUATION_RE = re.compile(rf"[{PUNCTUATION_CHARS}]")
_WHITESPACE_RE = re.compile(r"\s+")

PLACEHOLDER_TEXT = "…"


def strip_punctuation(text: str) -> str:
    return _PUNCTUATION_RE.sub("", text).strip()


def normalize_source_text(text: str) -> str:
    """Pali normalisé pour comparaison exacte: minuscules, sans espaces ni ponctuation."""
    return _PUNCTUATION_RE.sub("", _WHITESPACE_RE.sub("", text.lower()))


def extract_english_words(text: str) -> List[str]:
    """Mots anglais en minuscules, ponctuation traitée comme séparateur."""
    return [w for w in _WHITESPACE_RE.split(_PUNCTUATION_RE.sub(" ", text.lower())) if w]


def split_source_words(text: str) -> List[str]:
    """Tokens pali séparés par des espaces (ponctuation retirée, tokens vides ignorés)."""
    words = [strip_punctuation(token) for token in text.split()]
    return [w for w in words if w]


def slice_source_text(text: str, word_range) -> str:
    """Tranche [start, end) des tokens d'un segment (sous-découpage d'un long vers)."""
    if word_range is None:
        return text
    start, end = word_range
    return " ".join(text.split()[start:end])


def djb2_digest(parts: Iterable[str], separator: str = "\n") -> str:
    """Hash 32 bits style djb2 (h*33 ^ c), en hexadécimal."""
    h = 5381
    for ch in separator.join(parts):
        h = ((h * 33) ^ ord(ch)) & 0xFFFFFFFF
    return format(h, "x")
