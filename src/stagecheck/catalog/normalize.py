from __future__ import annotations

import re
import unicodedata
from typing import Optional, Tuple

_NON_KEY_RE = re.compile(r"[^a-z0-9]+")
_PHASE_RE = re.compile(r"(?:fase|phase)\s*(\d+)", re.IGNORECASE)
_SPACE_RE = re.compile(r"\s+")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def to_column_key(label: str | None) -> str:
    """
    Map a checklist label to its storage column, e.g. "Tornillos laterales" -> "tornillos_laterales".
    Same rule the backend applies when it creates the stage tables.
    """
    if not label:
        return ""
    s = strip_accents(str(label)).lower()
    s = _NON_KEY_RE.sub("_", s)
    return s.strip("_")


def fold_text(value: str | None) -> str:
    # accent- and case-insensitive comparison form
    if value is None:
        return ""
    s = strip_accents(str(value)).casefold()
    return _SPACE_RE.sub(" ", s).strip()


def phase_number(section_name: str) -> Optional[int]:
    m = _PHASE_RE.search(section_name or "")
    return int(m.group(1)) if m else None


def section_sort_key(section_name: str) -> Tuple[int, float, str]:
    num = phase_number(section_name)
    if num is None:
        return (1, 0.0, fold_text(section_name))
    return (0, float(num), fold_text(section_name))
