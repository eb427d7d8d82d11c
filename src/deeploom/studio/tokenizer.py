"""
Tokenisation de la traduction anglaise pour la passe d'alignement.

Les espaces et la ponctuation sont conservés comme tokens distincts afin que
chaque index reste stable: "Thus have I heard." → 0:Thus 1:" " 2:have ...
"""

import re
from dataclasses import dataclass
from typing import List

PUNCTUATION_CHARS = ".,;:!?'\"()—\\-–…“”‘’«»‹›"

_SPLIT_PATTERN = re.compile(rf"(\s+|[{PUNCTUATION_CHARS}])")
_WHITESPACE_PATTERN = re.compile(r"^\s+$")
_PUNCTUATION_PATTERN = re.compile(rf"^[{PUNCTUATION_CHARS}]+$")


@dataclass(frozen=True)
class EnglishTokenInput:
    index: int
    text: str
    is_whitespace: bool
    is_punctuation: bool

    @property
    def is_word(self) -> bool:
        return not (self.is_whitespace or self.is_punctuation)


def tokenize_english(text: str) -> List[EnglishTokenInput]:
    if not text:
        return []

    tokens: List[EnglishTokenInput] = []
    for part in _SPLIT_PATTERN.split(text):
        if not part:
            continue
        tokens.append(
            EnglishTokenInput(
                index=len(tokens),
                text=part,
                is_whitespace=bool(_WHITESPACE_PATTERN.match(part)),
                is_punctuation=bool(_PUNCTUATION_PATTERN.match(part)),
            )
        )
    return tokens


def word_tokens(tokens: List[EnglishTokenInput]) -> List[EnglishTokenInput]:
    return [t for t in tokens if t.is_word]


def build_token_list_for_prompt(tokens: List[EnglishTokenInput]) -> str:
    """Format compact pour le prompt: "0:Thus 2:have 4:I 6:heard"."""
    return " ".join(f"{t.index}:{t.text}" for t in word_tokens(tokens))


def reconstruct_text(tokens: List[EnglishTokenInput]) -> str:
    return "".join(t.text for t in tokens)
