from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type, TypeVar

import requests
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from rich.console import Console

from ..errors import ConflictError, NotFoundError, TransportError, ValidationError
from ..session import SessionContext
from ..stages import Stage
from .base import PersistenceGateway
from .models import (
    CatalogEntry,
    IdentifierStatus,
    PendingItem,
    RecordPatch,
    RecordPayload,
    SnapshotResponse,
    StartResponse,
)

console = Console()

M = TypeVar("M", bound=BaseModel)

_VIN_RE = re.compile(r"^[A-Z0-9]{17}$")


def _parse(model: Type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except SchemaError as e:
        raise TransportError(f"Malformed {model.__name__} response: {e}") from e


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass
class HttpGateway(PersistenceGateway):
    """
    Gateway over the factory REST API.

    Calls are made with a blocking `requests.Session` moved off the event loop
    with `asyncio.to_thread`. GETs are retried on connection errors and 5xx.
    """

    base_url: str
    token: Optional[str] = None
    timeout_s: float = 30
    max_retries: int = 2
    retry_backoff_s: float = 0.5
    batch_limit: int = 100
    session: requests.Session = field(default_factory=requests.Session)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], token: Optional[str] = None) -> "HttpGateway":
        api = cfg.get("api", {})
        return cls(
            base_url=str(api["base_url"]),
            token=token or api.get("token"),
            timeout_s=float(api.get("timeout_s", 30)),
            max_retries=int(api.get("max_retries", 2)),
            retry_backoff_s=float(api.get("retry_backoff_s", 0.5)),
            batch_limit=int(cfg.get("known_identifiers", {}).get("batch_limit", 100)),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        attempts = 1 + (max(self.max_retries, 0) if method == "GET" else 0)
        error = TransportError(f"{method} {path} failed")
        for attempt in range(attempts):
            try:
                resp = self.session.request(
                    method,
                    self._url(path),
                    headers=self._headers(),
                    params=params,
                    json=json,
                    timeout=self.timeout_s,
                )
            except requests.RequestException as e:
                error = TransportError(f"{method} {path} failed: {e}")
            else:
                if resp.status_code == 404:
                    raise NotFoundError(f"{method} {path}: not found")
                if resp.status_code == 409:
                    raise ConflictError(f"{method} {path}: conflict")
                if resp.status_code < 500:
                    try:
                        resp.raise_for_status()
                    except requests.HTTPError as e:
                        raise TransportError(f"{method} {path} returned {resp.status_code}") from e
                    if not resp.content:
                        return None
                    try:
                        return resp.json()
                    except ValueError as e:
                        raise TransportError(f"{method} {path} returned invalid JSON") from e
                error = TransportError(f"{method} {path} returned {resp.status_code}")
            if attempt + 1 < attempts:
                console.print(f"[yellow]Retrying {method} {path}[/yellow] ({error})")
                time.sleep(self.retry_backoff_s * (attempt + 1))
        raise error

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    # ----- catalog -----

    async def fetch_catalog(self, stage: Stage) -> List[CatalogEntry]:
        rows = await self._call("GET", "/tareas", params={"proceso": stage.value, "activa": "1"})
        entries: List[CatalogEntry] = []
        for row in rows or []:
            if row.get("proceso") not in (None, stage.value):
                continue
            entry = _parse(
                CatalogEntry,
                {
                    "id": row.get("id"),
                    "stage": stage,
                    "section": row.get("seccion"),
                    "label": row.get("label") or "",
                    "active": row.get("activa"),
                },
            )
            if entry.active:
                entries.append(entry)
        return entries

    # ----- identifier status -----

    async def fetch_identifier_status(self, stage: Stage, identifier: str, user_id: int) -> IdentifierStatus:
        if stage is Stage.FRAME:
            data = await self._call("GET", f"/chasis/vin-estado/{identifier}") or {}
            return _parse(
                IdentifierStatus,
                {"status": data.get("status") or "free", "record_id": data.get("id"), "checks": data.get("checks")},
            )
        if stage is Stage.FINAL_ASSEMBLY:
            if not await self._is_available(identifier):
                return IdentifierStatus(status="duplicate")
            pending, hint = await asyncio.gather(
                self._fetch_pending(stage, identifier, user_id),
                self._fetch_vin_color(identifier),
            )
            if pending is not None:
                return _parse(
                    IdentifierStatus,
                    {
                        "status": "pending",
                        "record_id": pending.get("id"),
                        "checks": pending.get("checks"),
                        "color": pending.get("color") or hint.get("color"),
                        "ral": pending.get("RAL") or hint.get("RAL"),
                    },
                )
            return IdentifierStatus(status="free", color=hint.get("color"), ral=hint.get("RAL"))
        # color-identified stages have no per-identifier lookup
        return IdentifierStatus(status="free")

    async def _is_available(self, vin: str) -> bool:
        data = await self._call("GET", f"/montaje/vin-disponible/{vin}") or {}
        return bool(data.get("available"))

    async def _fetch_pending(self, stage: Stage, vin: str, user_id: int) -> Optional[Dict[str, Any]]:
        try:
            data = await self._call("GET", f"/tareas/{stage.value}/pendiente/{vin}", params={"user_id": str(user_id)})
        except NotFoundError:
            return None
        if not data or not data.get("exists") or not data.get("id"):
            return None
        return data

    async def _fetch_vin_color(self, vin: str) -> Dict[str, Any]:
        try:
            return await self._call("GET", f"/pintura/color-por-vin/{vin}") or {}
        except (NotFoundError, TransportError) as e:
            console.print(f"[yellow]No color hint for {vin}:[/yellow] {e}")
            return {}

    # ----- pending / snapshot -----

    async def fetch_user_pending(self, user_id: int) -> List[PendingItem]:
        rows = await self._call("GET", f"/pendientes/{user_id}")
        return [
            _parse(
                PendingItem,
                {
                    "stage": row.get("area_key") or str(row.get("area") or "").lower(),
                    "record_id": row.get("id"),
                    "vin": row.get("bastidor"),
                    "color": row.get("color"),
                    "ral": row.get("RAL"),
                    "started_at": row.get("fecha_inicio"),
                    "total_checks": row.get("total_checks") or 0,
                    "done_checks": row.get("done_checks") or 0,
                },
            )
            for row in rows or []
        ]

    async def fetch_snapshot(self, stage: Stage, record_id: int) -> SnapshotResponse:
        try:
            data = await self._call("GET", f"/tareas/{stage.value}/{record_id}/snapshot") or {}
        except NotFoundError:
            return SnapshotResponse(exists=False, record_id=record_id)
        return _parse(
            SnapshotResponse,
            {
                "exists": bool(data.get("exists")),
                "record_id": data.get("id") or record_id,
                "status": data.get("estado"),
                "vin": data.get("bastidor"),
                "color": data.get("color"),
                "ral": data.get("RAL"),
                "started_at": data.get("fecha_inicio"),
                "checks": data.get("checks"),
            },
        )

    # ----- record lifecycle -----

    async def start_record(self, stage: Stage, payload: RecordPayload) -> StartResponse:
        body = _drop_none(
            {
                "usuario_id": payload.user_id,
                "area": stage.value,
                "bastidor": payload.vin,
                "color": payload.color,
                "RAL": payload.ral,
            }
        )
        body["checks"] = dict(payload.checks)
        data = await self._call("POST", "/tareas/iniciar", json=body) or {}
        record_id = data.get("id_area") or data.get("idArea") or data.get("id")
        return _parse(StartResponse, {"record_id": record_id, "status": data.get("status")})

    async def update_record(self, stage: Stage, record_id: int, patch: RecordPatch) -> None:
        # flat patch: aux columns plus one 0/1 column per check
        body: Dict[str, Any] = _drop_none({"bastidor": patch.vin, "color": patch.color, "RAL": patch.ral})
        body.update({key: 1 if done else 0 for key, done in patch.checks.items()})
        await self._call("PUT", f"/tareas/{stage.value}/{record_id}", json=body)

    async def finalize_record(self, stage: Stage, record_id: int) -> None:
        await self._call("POST", f"/tareas/{stage.value}/{record_id}/finalizar", json={})

    # ----- option lists -----

    async def fetch_color_options(self) -> List[str]:
        rows = await self._call("GET", "/pintura/colores")
        values: List[str] = []
        for raw in rows if isinstance(rows, list) else []:
            v = str(raw if raw is not None else "").strip()
            if v and v not in values:
                values.append(v)
        return values

    async def fetch_known_identifiers(self, stage: Stage) -> List[str]:
        """
        VINs built in the frame stage that are still available for final
        assembly. Only the first `batch_limit` are checked; the rest are kept.
        """
        if stage is not Stage.FINAL_ASSEMBLY:
            return []
        resp = await self._call("GET", "/chasis/bastidores")
        raw = resp if isinstance(resp, list) else (resp or {}).get("bastidores") or []
        vins = sorted({str(v or "").strip().upper() for v in raw} - {""})
        vins = [v for v in vins if _VIN_RE.match(v)]

        head, remainder = vins[: self.batch_limit], vins[self.batch_limit :]
        flags = await asyncio.gather(*(self._available_or_false(v) for v in head))
        return [v for v, ok in zip(head, flags) if ok] + remainder

    async def _available_or_false(self, vin: str) -> bool:
        try:
            return await self._is_available(vin)
        except (NotFoundError, ConflictError, TransportError):
            return False

    # ----- auth / health -----

    async def login(self, email: str, password: str) -> SessionContext:
        data = await self._call("POST", "/login", json={"email": email, "password": password}) or {}
        user = data.get("user")
        if data.get("status") != "success" or not user:
            raise ValidationError(data.get("message") or "Login rejected")
        session = SessionContext(
            user_id=int(user.get("id") or 0),
            email=user.get("email") or email,
            full_name=user.get("full_name") or "",
            role=user.get("rol") if user.get("rol") in ("admin", "user") else "user",
            token=data.get("token"),
        )
        self.token = session.token
        return session

    async def health(self) -> bool:
        data = await self._call("GET", "/health") or {}
        return bool(data.get("ok"))
