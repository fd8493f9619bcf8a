from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ..stages import Stage
from .models import (
    CatalogEntry,
    IdentifierStatus,
    PendingItem,
    RecordPatch,
    RecordPayload,
    SnapshotResponse,
    StartResponse,
)


class PersistenceGateway(ABC):
    """
    Backend operations the reconciliation engine depends on.

    Implementations raise TransportError for network/server failures,
    NotFoundError / ConflictError where the backend reports them. Checks always
    travel keyed by column key.
    """

    @abstractmethod
    async def fetch_catalog(self, stage: Stage) -> List[CatalogEntry]:
        ...

    @abstractmethod
    async def fetch_identifier_status(self, stage: Stage, identifier: str, user_id: int) -> IdentifierStatus:
        ...

    @abstractmethod
    async def fetch_user_pending(self, user_id: int) -> List[PendingItem]:
        ...

    @abstractmethod
    async def fetch_snapshot(self, stage: Stage, record_id: int) -> SnapshotResponse:
        ...

    @abstractmethod
    async def start_record(self, stage: Stage, payload: RecordPayload) -> StartResponse:
        ...

    @abstractmethod
    async def update_record(self, stage: Stage, record_id: int, patch: RecordPatch) -> None:
        ...

    @abstractmethod
    async def finalize_record(self, stage: Stage, record_id: int) -> None:
        ...

    async def fetch_color_options(self) -> List[str]:
        return []

    async def fetch_known_identifiers(self, stage: Stage) -> List[str]:
        return []
