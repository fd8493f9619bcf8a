from __future__ import annotations

from typing import Any, Callable, Dict, Generic, Iterable, Optional, Sequence, TypeVar

T = TypeVar("T")

_MISSING = object()


class AsyncJoin(Generic[T]):
    """
    Holds N named optional inputs and fires `combine` once all of them are present.

    Inputs may arrive in any order from independent completion callbacks; each
    callback offers its value and calls `fire()`. Sticky slots keep their value
    after a fire (e.g. a loaded catalog); the others are consumed.
    """

    def __init__(
        self,
        slots: Sequence[str],
        combine: Callable[[Dict[str, Any]], T],
        sticky: Iterable[str] = (),
    ) -> None:
        if not slots:
            raise ValueError("AsyncJoin needs at least one slot")
        self._slots = tuple(slots)
        self._sticky = frozenset(sticky)
        unknown = self._sticky.difference(self._slots)
        if unknown:
            raise ValueError(f"sticky slots not declared: {sorted(unknown)}")
        self._combine = combine
        self._values: Dict[str, Any] = {s: _MISSING for s in self._slots}

    def offer(self, slot: str, value: Any) -> None:
        if slot not in self._values:
            raise KeyError(f"unknown slot '{slot}'")
        self._values[slot] = value

    def has(self, slot: str) -> bool:
        return self._values[slot] is not _MISSING

    def get(self, slot: str) -> Any:
        value = self._values[slot]
        return None if value is _MISSING else value

    @property
    def ready(self) -> bool:
        return all(v is not _MISSING for v in self._values.values())

    def fire(self) -> Optional[T]:
        if not self.ready:
            return None
        values = dict(self._values)
        for slot in self._slots:
            if slot not in self._sticky:
                self._values[slot] = _MISSING
        return self._combine(values)

    def discard(self, slot: Optional[str] = None) -> None:
        slots = [slot] if slot else list(self._slots)
        for s in slots:
            self._values[s] = _MISSING
