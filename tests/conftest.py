from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import pytest

from stagecheck.gateway.base import PersistenceGateway
from stagecheck.gateway.models import (
    CatalogEntry,
    IdentifierStatus,
    PendingItem,
    RecordPatch,
    RecordPayload,
    SnapshotResponse,
    StartResponse,
)
from stagecheck.reconcile.counter import DailyCounterStore
from stagecheck.reconcile.engine import ReconciliationEngine
from stagecheck.session import SessionContext
from stagecheck.stages import Stage, get_profile

DAY = date(2025, 12, 1)


class FakeGateway(PersistenceGateway):
    """
    In-memory gateway. `gates` holds asyncio.Events a call waits on before it
    answers (keyed by method name, or "status:<identifier>"); `failures` maps a
    method name to the exception it raises.
    """

    def __init__(self) -> None:
        self.catalog: Dict[Stage, List[CatalogEntry]] = {}
        self.statuses: Dict[str, IdentifierStatus] = {}
        self.pending: List[PendingItem] = []
        self.snapshots: Dict[Tuple[Stage, int], SnapshotResponse] = {}
        self.start_id: Optional[int] = 101
        self.colors: List[str] = []
        self.known: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[Any, ...]] = []

    def called(self, name: str) -> List[Tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == name]

    async def _enter(self, name: str, *args: Any, gate: Optional[str] = None) -> None:
        self.calls.append((name,) + args)
        event = self.gates.get(gate or name)
        if event is not None:
            await event.wait()
        if name in self.failures:
            raise self.failures[name]

    async def fetch_catalog(self, stage: Stage) -> List[CatalogEntry]:
        await self._enter("fetch_catalog", stage)
        return list(self.catalog.get(stage, []))

    async def fetch_identifier_status(self, stage: Stage, identifier: str, user_id: int) -> IdentifierStatus:
        await self._enter("fetch_identifier_status", stage, identifier, user_id, gate=f"status:{identifier}")
        return self.statuses.get(identifier, IdentifierStatus(status="free"))

    async def fetch_user_pending(self, user_id: int) -> List[PendingItem]:
        await self._enter("fetch_user_pending", user_id)
        return list(self.pending)

    async def fetch_snapshot(self, stage: Stage, record_id: int) -> SnapshotResponse:
        await self._enter("fetch_snapshot", stage, record_id)
        return self.snapshots.get((stage, record_id), SnapshotResponse(exists=False))

    async def start_record(self, stage: Stage, payload: RecordPayload) -> StartResponse:
        await self._enter("start_record", stage, payload)
        return StartResponse(record_id=self.start_id, status="pendiente")

    async def update_record(self, stage: Stage, record_id: int, patch: RecordPatch) -> None:
        await self._enter("update_record", stage, record_id, patch)

    async def finalize_record(self, stage: Stage, record_id: int) -> None:
        await self._enter("finalize_record", stage, record_id)

    async def fetch_color_options(self) -> List[str]:
        await self._enter("fetch_color_options")
        return list(self.colors)

    async def fetch_known_identifiers(self, stage: Stage) -> List[str]:
        await self._enter("fetch_known_identifiers", stage)
        return list(self.known)


def entries(*items: Any, stage: Optional[Stage] = None) -> List[CatalogEntry]:
    """Catalog rows from labels or (section, label) pairs."""
    rows = []
    for i, item in enumerate(items, start=1):
        section, label = item if isinstance(item, tuple) else (None, item)
        rows.append(CatalogEntry(id=i, stage=stage, section=section, label=label))
    return rows


@pytest.fixture
def make_entries():
    return entries


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(user_id=7, email="Ana.Ruiz@Plant.test", full_name="Ana Ruiz", token="tok")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def navigations() -> List[str]:
    return []


@pytest.fixture
def counter() -> DailyCounterStore:
    return DailyCounterStore(today=lambda: DAY)


@pytest.fixture
def make_engine(gateway, session, counter, navigations):
    def _make(stage: Stage) -> ReconciliationEngine:
        return ReconciliationEngine(
            get_profile(stage),
            gateway,
            session,
            counter=counter,
            navigate=navigations.append,
        )

    return _make
