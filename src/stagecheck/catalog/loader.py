from __future__ import annotations

from typing import Dict, Iterable, List

from ..errors import CatalogError
from ..gateway.models import CatalogEntry
from .normalize import section_sort_key, to_column_key
from .types import ChecklistItem, Section


def build_sections(
    entries: Iterable[CatalogEntry],
    default_section: str,
    sectioned: bool = True,
) -> List[Section]:
    """
    Group active catalog entries into ordered sections.

    Items keep catalog order inside a section. Sections sort by their "Fase N"
    number, unnumbered ones last and alphabetically; ties keep first-seen order.
    Raises CatalogError when two labels share a column key or a label has no key.
    """
    grouped: Dict[str, List[ChecklistItem]] = {}
    seen_keys: Dict[str, str] = {}
    for entry in entries:
        if not entry.active:
            continue
        key = to_column_key(entry.label)
        if not key:
            raise CatalogError(f"catalog label {entry.label!r} has no usable column key")
        if key in seen_keys:
            raise CatalogError(
                f"catalog labels {seen_keys[key]!r} and {entry.label!r} both map to column '{key}'"
            )
        seen_keys[key] = entry.label
        name = default_section
        if sectioned:
            name = (entry.section or "").strip() or default_section
        grouped.setdefault(name, []).append(ChecklistItem(label=entry.label, key=key))

    ordered = sorted(grouped.items(), key=lambda kv: section_sort_key(kv[0]))
    return [Section(name=name, items=items) for name, items in ordered]
