"""
Corte de texto en frases para enviar al avatar por partes.
"""
import re
from typing import List, Tuple

# Abreviaturas que no cierran frase
_ABBREVIATIONS = ("Dr.", "Dra.", "Sr.", "Sra.", "Srta.", "Ud.", "Uds.", "etc.", "p.ej.", "Mr.", "Mrs.", "vs.")
_PLACEHOLDER = "<PERIOD>"

_SENTENCE_END = re.compile(r"(?<=[.?!…])\s+")


def _protect(text: str) -> str:
    for abbrev in _ABBREVIATIONS:
        text = text.replace(abbrev, abbrev.replace(".", _PLACEHOLDER))
    return text


def _restore(text: str) -> str:
    return text.replace(_PLACEHOLDER, ".")


def split_into_sentences(text: str) -> List[str]:
    """Divide el texto en frases conservando la puntuación."""
    text = text.strip()
    if not text:
        return []
    parts = _SENTENCE_END.split(_protect(text))
    return [_restore(p).strip() for p in parts if p.strip()]


def pop_complete_sentences(buffer: str) -> Tuple[List[str], str]:
    """
    Extrae las frases ya cerradas de un buffer que sigue creciendo.
    Devuelve (frases, resto). El resto puede ser una frase a medias.
    """
    protected = _protect(buffer)
    matches = list(_SENTENCE_END.finditer(protected))
    if not matches:
        return [], buffer
    cut = matches[-1].end()
    complete = split_into_sentences(_restore(protected[:cut]))
    return complete, _restore(protected[cut:])
