from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Callable, Dict, Optional

from ..utils.json_utils import read_json, write_json
from ..utils.time import today_utc


def counter_key(email: str, day: date, stage_code: str) -> str:
    return f"count_{(email or '').strip().lower()}_{day.isoformat()}_{stage_code}"


class DailyCounterStore:
    """
    Per-user, per-day, per-stage count of finalized tasks. Display only; the
    backend owns the real records. Persists to a JSON file when `path` is set.
    """

    def __init__(self, path: Optional[Path] = None, today: Callable[[], date] = today_utc) -> None:
        self.path = Path(path) if path else None
        self._today = today
        self._values: Dict[str, str] = {}
        if self.path:
            stored = read_json(self.path) or {}
            self._values = {str(k): str(v) for k, v in stored.items()}

    def key(self, email: str, stage_code: str) -> str:
        return counter_key(email, self._today(), stage_code)

    def get(self, email: str, stage_code: str) -> int:
        raw = self._values.get(self.key(email, stage_code))
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    def increment(self, email: str, stage_code: str) -> int:
        total = self.get(email, stage_code) + 1
        self._values[self.key(email, stage_code)] = str(total)
        if self.path:
            write_json(self.path, dict(self._values))
        return total
