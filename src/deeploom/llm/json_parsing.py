"""
Parsing tolérant des réponses JSON LLM
======================================

1. Retirer les blocs markdown ```json ... ```
2. json.loads direct
3. Sinon: extraire le premier objet/tableau équilibré (comptage des
   accolades/crochets hors chaînes) et réessayer
"""

import json
import logging
from typing import Any

from deeploom.common.errors import CompilerResponseError

logger = logging.getLogger(__name__)

_OPENERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """Retire les blocs markdown, y compris un bloc non refermé (réponse tronquée)."""
    cleaned = text.strip()
    if "```json" in cleaned:
        start = cleaned.index("```json") + 7
        end = cleaned.find("```", start)
        cleaned = cleaned[start:end if end >= 0 else len(cleaned)]
    elif cleaned.startswith("```"):
        start = 3
        end = cleaned.find("```", start)
        cleaned = cleaned[start:end if end >= 0 else len(cleaned)]
    return cleaned.strip()


def extract_balanced_json(text: str) -> str:
    """
    Retourne le premier bloc JSON équilibré trouvé dans `text`.

    Les délimiteurs à l'intérieur des chaînes (y compris échappés) sont ignorés.

    Raises:
        CompilerResponseError: aucun bloc ouvert, ou bloc jamais refermé
    """
    start = -1
    for i, ch in enumerate(text):
        if ch in _OPENERS:
            start = i
            break
    if start < 0:
        raise CompilerResponseError("No JSON object found in compiler response.")

    stack = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                raise CompilerResponseError(f"Unbalanced JSON near offset {i}.")
            stack.pop()
            if not stack:
                return text[start:i + 1]

    raise CompilerResponseError("Truncated JSON in compiler response.")


def parse_json_response(raw: str) -> Any:
    """
    Parse une réponse LLM en JSON.

    Raises:
        CompilerResponseError: réponse vide ou JSON irrécupérable
    """
    if raw is None or not raw.strip():
        raise CompilerResponseError("Empty compiler response.")

    cleaned = strip_code_fences(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        balanced = extract_balanced_json(cleaned)
        try:
            return json.loads(balanced)
        except json.JSONDecodeError as e:
            logger.warning(f"[LLM_JSON] Failed to parse JSON response: {cleaned[:200]}")
            raise CompilerResponseError(f"Invalid JSON in compiler response: {e}") from e
