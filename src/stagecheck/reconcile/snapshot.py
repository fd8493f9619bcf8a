from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..catalog.cache import ChecklistCatalogCache
from ..gateway.models import PendingSnapshot
from .join import AsyncJoin
from .options import ColorOptions


class PendingSnapshotBuffer:
    """
    Keeps at most one pending snapshot until the checklist catalog can take it.

    The catalog fetch and the pending-record fetch finish in no particular
    order, so both completion paths call `drain_into`; whichever comes second
    applies the snapshot. Offering again before a drain replaces the buffered
    snapshot (last offered wins).
    """

    def __init__(self) -> None:
        self._join: AsyncJoin[bool] = AsyncJoin(
            ("catalog", "snapshot"), self._apply, sticky=("catalog",)
        )
        self._colors: Optional[ColorOptions] = None
        self.applied_record_id: Optional[int] = None
        self.applied: Optional[PendingSnapshot] = None
        self.missing_keys: List[str] = []

    @property
    def pending(self) -> Optional[PendingSnapshot]:
        return self._join.get("snapshot")

    def offer(self, snapshot: PendingSnapshot) -> None:
        self._join.offer("snapshot", snapshot)

    def discard(self) -> None:
        self._join.discard("snapshot")

    def reset(self) -> None:
        """Drop the buffered snapshot and forget the one already applied."""
        self.discard()
        self.applied_record_id = None
        self.applied = None
        self.missing_keys = []

    def drain_into(self, cache: ChecklistCatalogCache, colors: Optional[ColorOptions] = None) -> bool:
        if not cache.is_loaded or self.pending is None:
            return False
        self._join.offer("catalog", cache)
        self._colors = colors
        try:
            return bool(self._join.fire())
        finally:
            self._colors = None

    def _apply(self, values: Dict[str, Any]) -> bool:
        cache: ChecklistCatalogCache = values["catalog"]
        snapshot: PendingSnapshot = values["snapshot"]
        self.missing_keys = cache.apply_checks(snapshot.checks)
        if self._colors is not None and (snapshot.color or "").strip():
            self._colors.push_if_missing(snapshot.color)
        self.applied_record_id = snapshot.record_id
        self.applied = snapshot
        return True
