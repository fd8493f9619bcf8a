from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, List, Optional

from rich.console import Console

from ..catalog.cache import ChecklistCatalogCache
from ..errors import (
    CatalogError,
    ConflictError,
    NotFoundError,
    StagecheckError,
    TransportError,
    ValidationError,
)
from ..gateway.base import PersistenceGateway
from ..gateway.models import IdentifierStatus, PendingItem, PendingSnapshot, RecordPatch, RecordPayload
from ..session import SessionContext
from ..stages import StageProfile
from .counter import DailyCounterStore
from .identifiers import IdentifierKind, is_valid_identifier, normalize_identifier, validate_identifier
from .options import ColorOptions
from .snapshot import PendingSnapshotBuffer

console = Console()


class IdentifierState(str, Enum):
    IDLE = "idle"
    TYPING = "typing"
    CHECKING = "checking"
    OK = "ok"
    FINALIZED = "finalized"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    INVALID = "invalid"


class ReconciliationEngine:
    """
    State of one stage screen: checklist, work identifier, auxiliary fields
    and the pending record being resumed.

    Remote results are merged through the snapshot buffer, so the catalog and a
    pending record may arrive in either order. A status response is applied only
    while its identifier is still the one on screen.
    """

    def __init__(
        self,
        profile: StageProfile,
        gateway: PersistenceGateway,
        session: SessionContext,
        counter: Optional[DailyCounterStore] = None,
        navigate: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.profile = profile
        self.gateway = gateway
        self.session = session
        self.counter = counter or DailyCounterStore()
        self._navigate = navigate or (lambda target: None)

        self.cache = ChecklistCatalogCache(profile.default_section, sectioned=profile.sectioned)
        self.colors = ColorOptions(sort_labels=profile.sort_color_options)
        self.buffer = PendingSnapshotBuffer()
        self.known_identifiers: List[str] = []

        self.identifier = ""
        self.state = IdentifierState.IDLE
        self.color = ""
        self.ral = ""
        self.active_pending_id: Optional[int] = None
        self.unreviewed_keys: List[str] = []

        self.daily_count = 0
        self.loading = False
        self.error_message: Optional[str] = None
        self.leave_target: Optional[str] = None

        self._generation = 0
        self._action_task: Optional[asyncio.Task] = None

    # ----- derived state -----

    @property
    def color_value(self) -> str:
        if self.profile.identifier_kind is IdentifierKind.COLOR:
            return self.identifier
        return self.color

    @property
    def aux_complete(self) -> bool:
        values = {"color": self.color_value, "ral": self.ral}
        return all((values.get(name) or "").strip() for name in self.profile.aux_required)

    @property
    def can_finish(self) -> bool:
        return self.cache.is_complete and self.state is IdentifierState.OK and self.aux_complete

    @property
    def should_prompt_on_leave(self) -> bool:
        if self.state is not IdentifierState.OK or not self.aux_complete:
            return False
        return self.cache.has_progress or not self.profile.prompt_requires_progress

    @property
    def edits_blocked(self) -> bool:
        return self.state is IdentifierState.FINALIZED

    # ----- screen entry -----

    async def open(self, resume: bool = True) -> None:
        self.daily_count = self.counter.get(self.session.email, self.profile.code)
        jobs = [self.load_catalog()]
        if self.profile.uses_color_options:
            jobs.append(self.load_color_options())
        if self.profile.requires_known_identifier:
            jobs.append(self.load_known_identifiers())
        if resume and self.session.is_authenticated:
            jobs.append(self.auto_resume())
        await asyncio.gather(*jobs)

    async def load_catalog(self) -> None:
        self.loading = True
        self.error_message = None
        try:
            entries = await self.gateway.fetch_catalog(self.profile.stage)
            self.cache.load(entries)
        except (TransportError, CatalogError) as e:
            self.error_message = f"Could not load the {self.profile.title} checklist: {e}"
            console.print(f"[red]Catalog load failed ({self.profile.stage.value}):[/red] {e}")
            return
        finally:
            self.loading = False
        await self._drain_and_settle()

    async def load_color_options(self) -> None:
        try:
            values = await self.gateway.fetch_color_options()
        except TransportError as e:
            console.print(f"[yellow]Could not load paint colors:[/yellow] {e}")
            return
        self.colors.load(values)
        if self.color_value:
            self.colors.push_if_missing(self.color_value)

    async def load_known_identifiers(self) -> None:
        try:
            values = await self.gateway.fetch_known_identifiers(self.profile.stage)
        except TransportError as e:
            console.print(f"[yellow]Could not load known identifiers:[/yellow] {e}")
            values = []
        known: List[str] = []
        for raw in values:
            value = normalize_identifier(raw, self.profile.identifier_kind)
            if is_valid_identifier(value, self.profile.identifier_kind) and value not in known:
                known.append(value)
        if self.identifier and self.state is IdentifierState.OK and self.identifier not in known:
            known.append(self.identifier)
        self.known_identifiers = known
        # an identifier typed before the list arrived deserves a second look
        if self.state is IdentifierState.NOT_FOUND and self.identifier in known:
            await self.enter_identifier(self.identifier)

    # ----- identifier -----

    async def enter_identifier(self, raw: str) -> IdentifierState:
        kind = self.profile.identifier_kind
        value = normalize_identifier(raw, kind)
        self._generation += 1
        generation = self._generation
        self.identifier = value
        self.active_pending_id = None
        applied = self.buffer.applied
        if applied is not None and applied.identifier != value:
            # checks restored from another identifier's record are not this one's
            self.cache.clear_all()
            self.unreviewed_keys = []
            self.buffer.reset()
        else:
            self.buffer.discard()

        if not value:
            self.state = IdentifierState.IDLE
            return self.state
        self.state = IdentifierState.TYPING
        try:
            validate_identifier(value, kind)
        except ValidationError:
            self.state = IdentifierState.INVALID
            return self.state
        if self.profile.requires_known_identifier and value not in self.known_identifiers:
            self.state = IdentifierState.NOT_FOUND
            return self.state

        self.state = IdentifierState.CHECKING
        status: Optional[IdentifierStatus] = None
        outcome = IdentifierState.INVALID
        try:
            status = await self.gateway.fetch_identifier_status(
                self.profile.stage, value, self.session.user_id
            )
        except NotFoundError:
            outcome = IdentifierState.NOT_FOUND
        except ConflictError:
            outcome = IdentifierState.DUPLICATE
        except TransportError as e:
            console.print(f"[yellow]Status check failed for {value}:[/yellow] {e}")
            outcome = IdentifierState.INVALID

        if generation != self._generation or value != self.identifier:
            console.print(f"[dim]Discarded stale status for {value}[/dim]")
            return self.state
        if status is None:
            self.state = outcome
            return self.state
        return await self._apply_status(value, status)

    async def _apply_status(self, value: str, status: IdentifierStatus) -> IdentifierState:
        if status.status == "finalized":
            self.state = IdentifierState.FINALIZED
        elif status.status == "duplicate":
            self.state = IdentifierState.DUPLICATE
        elif status.status == "not_found":
            self.state = IdentifierState.NOT_FOUND
        elif status.status == "pending":
            self.state = IdentifierState.OK
            self.active_pending_id = status.record_id
            self.buffer.offer(status.to_snapshot(value))
            await self._drain_and_settle()
        else:
            self.state = IdentifierState.OK
            self._apply_aux(status.color, status.ral)
        return self.state

    # ----- resume -----

    async def auto_resume(self) -> bool:
        """Resume the operator's first pending record for this stage, if any."""
        if not self.session.is_authenticated:
            return False
        generation = self._generation
        try:
            items = await self.gateway.fetch_user_pending(self.session.user_id)
        except TransportError as e:
            console.print(f"[yellow]Could not list pending tasks:[/yellow] {e}")
            return False
        mine = next((p for p in items if p.stage is self.profile.stage and self._resumable(p)), None)
        if mine is None:
            return False
        if generation != self._generation:
            return False
        return await self.resume_record(mine.record_id, hint=mine, only_if_untouched=True)

    async def resume_matching(self) -> bool:
        """Resume the operator's pending record for the identifier on screen, if one exists."""
        if not self.session.is_authenticated or self.state is not IdentifierState.OK or self.active_pending_id:
            return False
        value = self.identifier
        try:
            items = await self.gateway.fetch_user_pending(self.session.user_id)
        except TransportError as e:
            console.print(f"[yellow]Could not list pending tasks:[/yellow] {e}")
            return False
        kind = self.profile.identifier_kind
        for item in items:
            raw = item.vin if kind is IdentifierKind.VIN else item.color
            if item.stage is self.profile.stage and normalize_identifier(raw, kind) == value:
                return await self.resume_record(item.record_id, hint=item, only_if_untouched=True)
        return False

    async def resume_record(
        self,
        record_id: int,
        hint: Optional[PendingItem] = None,
        only_if_untouched: bool = False,
    ) -> bool:
        generation = self._generation
        try:
            snap = await self.gateway.fetch_snapshot(self.profile.stage, record_id)
        except TransportError as e:
            console.print(f"[yellow]Could not fetch snapshot {record_id}:[/yellow] {e}")
            return False
        if not snap.exists or snap.is_finalized:
            return False
        if only_if_untouched and generation != self._generation:
            console.print(f"[dim]Skipped resume of {record_id}: identifier changed meanwhile[/dim]")
            return False

        kind = self.profile.identifier_kind
        color = snap.color or (hint.color if hint else None)
        ral = snap.ral or (hint.ral if hint else None)
        raw_identifier = (snap.vin or (hint.vin if hint else None)) if kind is IdentifierKind.VIN else color
        value = normalize_identifier(raw_identifier, kind)
        if not is_valid_identifier(value, kind):
            return False
        if self.profile.requires_known_identifier and value not in self.known_identifiers:
            self.known_identifiers = self.known_identifiers + [value]

        pending_id = snap.record_id or record_id
        self._generation += 1
        self.identifier = value
        self.state = IdentifierState.OK
        self.active_pending_id = pending_id
        self.buffer.offer(
            PendingSnapshot(record_id=pending_id, identifier=value, checks=snap.checks, color=color, ral=ral)
        )
        await self._drain_and_settle()
        return True

    def _resumable(self, item: PendingItem) -> bool:
        if self.profile.identifier_kind is IdentifierKind.VIN:
            return bool((item.vin or "").strip())
        return True

    # ----- snapshot application -----

    async def _drain_and_settle(self) -> bool:
        colors = self.colors if self.profile.uses_color_options else None
        if not self.buffer.drain_into(self.cache, colors):
            return False
        snapshot = self.buffer.applied
        self.active_pending_id = self.buffer.applied_record_id
        self.unreviewed_keys = list(self.buffer.missing_keys)
        if snapshot is not None:
            self._apply_aux(snapshot.color, snapshot.ral)
        await self._maybe_auto_finalize()
        return True

    def _apply_aux(self, color: Optional[str], ral: Optional[str]) -> None:
        if self.profile.identifier_kind is IdentifierKind.VIN and (color or "").strip():
            self.set_color(color)
        if (ral or "").strip():
            self.set_ral(ral)

    async def _maybe_auto_finalize(self) -> bool:
        if not self.profile.auto_finalize or not self.active_pending_id or not self.can_finish:
            return False
        record_id = self.active_pending_id
        generation = self._generation
        try:
            await self.gateway.finalize_record(self.profile.stage, record_id)
        except StagecheckError as e:
            self.error_message = f"Could not auto-finalize pending task {record_id}: {e}"
            console.print(f"[red]Auto-finalize failed ({self.profile.stage.value}):[/red] {e}")
            return False
        console.print(f"[green]Auto-finalized pending {self.profile.title} task {record_id}[/green]")
        self._after_finish(generation)
        return True

    # ----- local edits -----

    def set_color(self, value: Optional[str]) -> None:
        if self.profile.uses_color_options:
            self.color = self.colors.select(value).value
        else:
            self.color = (value or "").strip()

    def set_ral(self, value: Optional[str]) -> None:
        self.ral = (value or "").strip()

    def toggle(self, section_index: int, item_index: int) -> bool:
        self._guard_edit()
        return self.cache.toggle(section_index, item_index)

    def check(self, key: str, checked: bool = True) -> bool:
        self._guard_edit()
        return self.cache.set_checked(key, checked)

    def check_all(self) -> None:
        self._guard_edit()
        self.cache.check_all()

    def clear_section(self, index: int) -> None:
        self._guard_edit()
        self.cache.clear_section(index)

    def clear_vehicle(self) -> None:
        self._generation += 1
        self.identifier = ""
        self.state = IdentifierState.IDLE
        self.color = ""
        self.ral = ""
        self.active_pending_id = None
        self.buffer.discard()

    def clear_all(self) -> None:
        self.cache.clear_all()
        self.clear_vehicle()
        self.buffer.reset()
        self.unreviewed_keys = []

    def _guard_edit(self) -> None:
        if self.edits_blocked:
            raise ValidationError(f"{self.identifier} is already finalized in {self.profile.title}")

    # ----- persistence -----

    def _payload(self, user_id: int) -> RecordPayload:
        patch = self._patch()
        return RecordPayload(user_id=user_id, stage=self.profile.stage, **patch.model_dump())

    def _patch(self) -> RecordPatch:
        vin = self.identifier if self.profile.identifier_kind is IdentifierKind.VIN else None
        color = self.colors.select(self.color_value).value if self.color_value else None
        return RecordPatch(
            vin=vin or None,
            color=color or None,
            ral=self.ral or None,
            checks=self.cache.checks_by_column(),
        )

    async def finish(self) -> int:
        """
        Confirmed finalize. A newer call cancels one still in flight; the
        superseded caller sees CancelledError.
        """
        if self._action_task is not None and not self._action_task.done():
            self._action_task.cancel()
        task = asyncio.ensure_future(self._finish_steps())
        self._action_task = task
        return await task

    async def _finish_steps(self) -> int:
        if not self.can_finish:
            raise ValidationError(f"{self.profile.title} task is not ready to finish")
        user_id = self.session.require_user()
        stage = self.profile.stage
        generation = self._generation
        try:
            if self.active_pending_id:
                record_id = self.active_pending_id
                await self.gateway.update_record(stage, record_id, self._patch())
            else:
                resp = await self.gateway.start_record(stage, self._payload(user_id))
                if not resp.record_id:
                    raise TransportError("start response carried no record id")
                record_id = resp.record_id
            await self.gateway.finalize_record(stage, record_id)
        except StagecheckError as e:
            self.error_message = f"Could not finish {self.profile.title} task: {e}"
            console.print(f"[red]Finish failed ({stage.value}):[/red] {e}")
            raise
        console.print(f"[green]Finalized {self.profile.title} task {record_id}[/green]")
        self._after_finish(generation)
        return record_id

    def _after_finish(self, generation: int) -> None:
        self.daily_count = self.counter.increment(self.session.email, self.profile.code)
        self.error_message = None
        if generation != self._generation:
            # another identifier was entered while the calls were in flight
            console.print("[dim]Kept the screen: identifier changed during finish[/dim]")
            return
        self.clear_all()

    # ----- leaving the screen -----

    def request_leave(self, target: str) -> bool:
        """True when the operator must choose between saving and discarding first."""
        if self.should_prompt_on_leave:
            self.leave_target = target
            return True
        self._leave(target)
        return False

    async def save_and_leave(self, target: Optional[str] = None) -> str:
        """
        Save progress as pending (no finalize) and navigate. Navigation happens
        even when the save fails.
        """
        target = target or self.leave_target or "home"
        self.error_message = None
        if self.should_prompt_on_leave and self.session.is_authenticated:
            stage = self.profile.stage
            try:
                if self.active_pending_id:
                    await self.gateway.update_record(stage, self.active_pending_id, self._patch())
                else:
                    await self.gateway.start_record(stage, self._payload(self.session.user_id))
            except StagecheckError as e:
                self.error_message = f"Progress not saved: {e}"
                console.print(f"[yellow]Progress not saved, leaving anyway:[/yellow] {e}")
            else:
                self.clear_all()
        self._leave(target)
        return target

    def leave_without_saving(self, target: Optional[str] = None) -> str:
        target = target or self.leave_target or "home"
        self.clear_all()
        self._leave(target)
        return target

    def cancel_leave(self) -> None:
        self.leave_target = None

    def _leave(self, target: str) -> None:
        self.leave_target = None
        if target == "logout":
            self.session.end()
        self._navigate(target)


async def pending_overview(gateway: PersistenceGateway, session: SessionContext) -> List[PendingItem]:
    """The operator's pending records across every stage, in backend order."""
    return await gateway.fetch_user_pending(session.require_user())
