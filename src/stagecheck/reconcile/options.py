from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..catalog.normalize import fold_text
from .identifiers import to_color_label


@dataclass(frozen=True)
class ColorOption:
    label: str
    value: str


class ColorOptions:
    """
    Selectable colors, taken from the paint history. Values are kept as stored
    (hex or free name); labels are the display form.
    """

    def __init__(self, sort_labels: bool = False) -> None:
        self.sort_labels = sort_labels
        self._options: List[ColorOption] = []

    @property
    def options(self) -> List[ColorOption]:
        return list(self._options)

    def __len__(self) -> int:
        return len(self._options)

    def load(self, raw_values: Iterable[str]) -> None:
        opts: List[ColorOption] = []
        seen = set()
        for raw in raw_values:
            val = (raw or "").strip()
            if not val or val.upper() in seen:
                continue
            seen.add(val.upper())
            opts.append(ColorOption(label=to_color_label(val), value=val))
        self._options = self._sorted(opts)

    def find(self, value: str | None) -> Optional[ColorOption]:
        val = (value or "").strip().upper()
        for opt in self._options:
            if opt.value.upper() == val:
                return opt
        return None

    def push_if_missing(self, raw: str | None) -> bool:
        val = (raw or "").strip()
        if not val:
            return False
        exists = any(
            o.value.upper() == val.upper() or o.label.lower() == val.lower() for o in self._options
        )
        if exists:
            return False
        self._options = self._sorted(self._options + [ColorOption(label=to_color_label(val), value=val)])
        return True

    def select(self, value: str | None) -> ColorOption:
        """Option for `value`, or an ad-hoc one when the value is not listed."""
        val = (value or "").strip()
        opt = self.find(val)
        if opt:
            return opt
        return ColorOption(label=to_color_label(val), value=val)

    def _sorted(self, opts: List[ColorOption]) -> List[ColorOption]:
        if not self.sort_labels:
            return opts
        return sorted(opts, key=lambda o: fold_text(o.label))
