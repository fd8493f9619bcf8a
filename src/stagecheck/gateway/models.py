from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..stages import Stage

IdentifierStatusValue = Literal["free", "pending", "finalized", "duplicate", "not_found"]


def _coerce_checks(v: Any) -> Dict[str, bool]:
    # backend stores checks as TINYINT(1) / NULL
    if not v:
        return {}
    return {str(k): bool(val) for k, val in dict(v).items()}


class CatalogEntry(BaseModel):
    id: Optional[int] = None
    stage: Optional[Stage] = None
    section: Optional[str] = None
    label: str
    active: bool = True

    @field_validator("active", mode="before")
    @classmethod
    def _active_flag(cls, v: Any) -> bool:
        if v is None:
            return True
        if isinstance(v, str):
            return v.strip().lower() in {"1", "true", "yes"}
        return bool(v)


class PendingSnapshot(BaseModel):
    """Point-in-time read of a pending record: checks keyed by column key plus aux fields."""

    record_id: Optional[int] = None
    identifier: Optional[str] = None
    checks: Dict[str, bool] = Field(default_factory=dict)
    color: Optional[str] = None
    ral: Optional[str] = None

    @field_validator("checks", mode="before")
    @classmethod
    def _checks_as_bool(cls, v: Any) -> Dict[str, bool]:
        return _coerce_checks(v)


class IdentifierStatus(BaseModel):
    status: IdentifierStatusValue
    record_id: Optional[int] = None
    checks: Dict[str, bool] = Field(default_factory=dict)
    color: Optional[str] = None
    ral: Optional[str] = None

    @field_validator("checks", mode="before")
    @classmethod
    def _checks_as_bool(cls, v: Any) -> Dict[str, bool]:
        return _coerce_checks(v)

    def to_snapshot(self, identifier: str) -> PendingSnapshot:
        return PendingSnapshot(
            record_id=self.record_id,
            identifier=identifier,
            checks=self.checks,
            color=self.color,
            ral=self.ral,
        )


class SnapshotResponse(BaseModel):
    exists: bool
    record_id: Optional[int] = None
    status: Optional[str] = None
    vin: Optional[str] = None
    color: Optional[str] = None
    ral: Optional[str] = None
    started_at: Optional[str] = None
    checks: Dict[str, bool] = Field(default_factory=dict)

    @field_validator("checks", mode="before")
    @classmethod
    def _checks_as_bool(cls, v: Any) -> Dict[str, bool]:
        return _coerce_checks(v)

    @property
    def is_finalized(self) -> bool:
        return (self.status or "").lower() in {"finalizada", "finalized"}


class PendingItem(BaseModel):
    stage: Stage
    record_id: int
    vin: Optional[str] = None
    color: Optional[str] = None
    ral: Optional[str] = None
    started_at: Optional[str] = None
    total_checks: int = 0
    done_checks: int = 0

    @property
    def progress_label(self) -> str:
        if not self.total_checks:
            return "0%"
        return f"{int(self.done_checks * 100 / self.total_checks + 0.5)}%"


class RecordPayload(BaseModel):
    user_id: int
    stage: Stage
    vin: Optional[str] = None
    color: Optional[str] = None
    ral: Optional[str] = None
    checks: Dict[str, bool] = Field(default_factory=dict)


class RecordPatch(BaseModel):
    vin: Optional[str] = None
    color: Optional[str] = None
    ral: Optional[str] = None
    checks: Dict[str, bool] = Field(default_factory=dict)


class StartResponse(BaseModel):
    record_id: Optional[int] = None
    status: Optional[str] = None
