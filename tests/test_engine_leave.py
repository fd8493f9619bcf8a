from __future__ import annotations

import asyncio

from stagecheck.errors import TransportError
from stagecheck.gateway.models import IdentifierStatus
from stagecheck.reconcile.engine import IdentifierState
from stagecheck.stages import Stage

VIN = "VF1ABC12345678901"


def _frame(make_engine, gateway, make_entries, status=None):
    gateway.catalog[Stage.FRAME] = make_entries("Soldar", "Pulir")
    if status is not None:
        gateway.statuses[VIN] = status
    engine = make_engine(Stage.FRAME)

    async def prepare():
        await engine.load_catalog()
        await engine.enter_identifier(VIN)

    asyncio.run(prepare())
    return engine


def test_frame_without_progress_leaves_directly(make_engine, gateway, make_entries, navigations):
    engine = _frame(make_engine, gateway, make_entries)
    assert not engine.should_prompt_on_leave
    assert engine.request_leave("home") is False
    assert navigations == ["home"]


def test_frame_with_progress_prompts_then_saves(make_engine, gateway, make_entries, navigations):
    engine = _frame(make_engine, gateway, make_entries)
    engine.toggle(0, 0)
    assert engine.request_leave("home") is True
    assert navigations == []

    target = asyncio.run(engine.save_and_leave())
    assert target == "home"
    assert engine.error_message is None
    assert navigations == ["home"]
    [(_, _, payload)] = gateway.called("start_record")
    assert payload.checks == {"soldar": True, "pulir": False}
    assert gateway.called("finalize_record") == []
    assert engine.state is IdentifierState.IDLE


def test_save_uses_update_for_pending_record(make_engine, gateway, make_entries, navigations):
    status = IdentifierStatus(status="pending", record_id=8, checks={"soldar": 1})
    engine = _frame(make_engine, gateway, make_entries, status)
    asyncio.run(engine.save_and_leave("home"))
    assert [c[2] for c in gateway.called("update_record")] == [8]
    assert gateway.called("start_record") == []


def test_failed_save_still_navigates(make_engine, gateway, make_entries, navigations):
    engine = _frame(make_engine, gateway, make_entries)
    engine.toggle(0, 0)
    gateway.failures["start_record"] = TransportError("timeout")
    engine.request_leave("home")
    asyncio.run(engine.save_and_leave())
    assert navigations == ["home"]
    assert engine.error_message == "Progress not saved: timeout"
    # nothing cleared because nothing was saved
    assert engine.identifier == VIN
    assert engine.cache.has_progress


def test_leave_without_saving_clears(make_engine, gateway, make_entries, navigations):
    engine = _frame(make_engine, gateway, make_entries)
    engine.toggle(0, 0)
    engine.request_leave("pending")
    assert engine.leave_without_saving() == "pending"
    assert navigations == ["pending"]
    assert not engine.cache.has_progress
    assert gateway.called("start_record") == []


def test_cancel_leave_keeps_everything(make_engine, gateway, make_entries, navigations):
    engine = _frame(make_engine, gateway, make_entries)
    engine.toggle(0, 0)
    engine.request_leave("home")
    engine.cancel_leave()
    assert engine.leave_target is None
    assert navigations == []
    assert engine.cache.has_progress


def test_logout_target_ends_session(make_engine, gateway, make_entries, navigations, session):
    engine = _frame(make_engine, gateway, make_entries)
    assert engine.request_leave("logout") is False
    assert navigations == ["logout"]
    assert not session.is_authenticated
    assert session.token is None


def test_paint_prompts_once_color_and_ral_are_set(make_engine, gateway, make_entries):
    gateway.catalog[Stage.PAINT] = make_entries("Lijar", "Imprimar")
    engine = make_engine(Stage.PAINT)
    asyncio.run(engine.enter_identifier("rojo corsa"))
    assert not engine.should_prompt_on_leave
    engine.set_ral("3020")
    assert engine.should_prompt_on_leave

    asyncio.run(engine.save_and_leave("home"))
    [(_, stage, payload)] = gateway.called("start_record")
    assert stage is Stage.PAINT
    assert payload.vin is None
    assert payload.color == "Rojo Corsa"
    assert payload.ral == "3020"


def test_final_assembly_prompt_needs_color(make_engine, gateway):
    engine = make_engine(Stage.FINAL_ASSEMBLY)
    engine.known_identifiers = [VIN]
    asyncio.run(engine.enter_identifier(VIN))
    assert not engine.should_prompt_on_leave
    engine.set_color("#00ff00")
    assert engine.should_prompt_on_leave
