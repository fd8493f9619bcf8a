from __future__ import annotations

from copy import deepcopy
from typing import Dict, Iterable, List, Mapping

from ..gateway.models import CatalogEntry
from .loader import build_sections
from .types import Section


def percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    # half-up, matching the operator screens
    return int(done * 100 / total + 0.5)


class ChecklistCatalogCache:
    """
    In-memory checklist for one stage screen.

    `load` swaps the whole section list in one assignment, so readers never see
    a half-built catalog. Mutators copy the sections before changing them.
    """

    def __init__(self, default_section: str, sectioned: bool = True) -> None:
        self.default_section = default_section
        self.sectioned = sectioned
        self._sections: List[Section] = []

    @property
    def sections(self) -> List[Section]:
        return self._sections

    @property
    def is_loaded(self) -> bool:
        return len(self._sections) > 0

    def load(self, entries: Iterable[CatalogEntry]) -> List[Section]:
        sections = build_sections(entries, self.default_section, sectioned=self.sectioned)
        self._sections = sections
        return sections

    def toggle(self, section_index: int, item_index: int) -> bool:
        sections = deepcopy(self._sections)
        item = sections[section_index].items[item_index]
        item.completed = not item.completed
        self._sections = sections
        return item.completed

    def set_checked(self, key: str, checked: bool = True) -> bool:
        sections = deepcopy(self._sections)
        found = False
        for section in sections:
            for item in section.items:
                if item.key == key:
                    item.completed = checked
                    found = True
        self._sections = sections
        return found

    def clear_section(self, index: int) -> None:
        sections = deepcopy(self._sections)
        for item in sections[index].items:
            item.completed = False
        self._sections = sections

    def clear_all(self) -> None:
        sections = deepcopy(self._sections)
        for section in sections:
            for item in section.items:
                item.completed = False
        self._sections = sections

    def check_all(self) -> None:
        sections = deepcopy(self._sections)
        for section in sections:
            for item in section.items:
                item.completed = True
        self._sections = sections

    def apply_checks(self, checks: Mapping[str, bool]) -> List[str]:
        """
        Set every item from `checks` keyed by column key. Keys missing from the
        mapping leave the item unchecked. Returns the missing keys.
        """
        sections = deepcopy(self._sections)
        missing: List[str] = []
        for section in sections:
            for item in section.items:
                if item.key not in checks:
                    missing.append(item.key)
                item.completed = bool(checks.get(item.key, False))
        self._sections = sections
        return missing

    def progress(self, index: int) -> int:
        section = self._sections[index]
        return percent(section.done, section.total)

    def overall_progress(self) -> int:
        done = sum(s.done for s in self._sections)
        total = sum(s.total for s in self._sections)
        return percent(done, total)

    @property
    def is_complete(self) -> bool:
        return self.is_loaded and all(s.is_complete for s in self._sections)

    @property
    def has_progress(self) -> bool:
        return any(item.completed for s in self._sections for item in s.items)

    def checks_by_column(self) -> Dict[str, bool]:
        return {item.key: item.completed for s in self._sections for item in s.items}

