"""Text helpers (core domain): matching normalization and templates."""

from __future__ import annotations

import re
import unicodedata
from typing import Mapping, Optional

# Combining diacritical marks left behind by NFD decomposition.
_DIACRITICS = re.compile(r"[\u0300-\u036f]")
_PUNCTUATION = re.compile(r"[¡!¿?.,;:()\[\]{}'\"´`~\-]")
_WHITESPACE = re.compile(r"\s+")


def _collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def normalize_text(text: Optional[str]) -> str:
    """Normalize text for keyword comparison.

    Lowercases, strips accents ("Acción" -> "accion"), turns punctuation into
    spaces and collapses whitespace. The result is stable under repeated
    application.
    """

    if not text:
        return ""

    lowered = unicodedata.normalize("NFD", text.lower())
    stripped = _DIACRITICS.sub("", lowered)
    return _collapse_whitespace(_PUNCTUATION.sub(" ", stripped))


def render_template(template: Optional[str], variables: Mapping[str, object]) -> str:
    """Replace ``{key}`` tokens with ``variables[key]``.

    Keys match case-insensitively; tokens without a variable are kept as-is.
    """

    if not template:
        return ""

    rendered = template
    for key, value in variables.items():
        pattern = re.compile(r"\{" + re.escape(key) + r"\}", re.IGNORECASE)
        rendered = pattern.sub(lambda _match: str(value), rendered)
    return rendered
