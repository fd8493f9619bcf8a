from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class ChecklistItem:
    label: str
    key: str
    completed: bool = False


@dataclass
class Section:
    name: str
    items: List[ChecklistItem] = field(default_factory=list)

    @property
    def done(self) -> int:
        return sum(1 for item in self.items if item.completed)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.done == self.total
