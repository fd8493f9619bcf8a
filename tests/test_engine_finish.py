from __future__ import annotations

import asyncio

import pytest

from stagecheck.errors import TransportError, ValidationError
from stagecheck.gateway.models import IdentifierStatus
from stagecheck.reconcile.engine import IdentifierState
from stagecheck.stages import Stage

VIN = "VF1ABC12345678901"


def _ready_frame(make_engine, gateway, make_entries, status=None):
    gateway.catalog[Stage.FRAME] = make_entries("Soldar", "Pulir")
    if status is not None:
        gateway.statuses[VIN] = status
    engine = make_engine(Stage.FRAME)

    async def prepare():
        await engine.load_catalog()
        await engine.enter_identifier(VIN)

    asyncio.run(prepare())
    return engine


def test_can_finish_needs_every_check(make_engine, gateway, make_entries):
    engine = _ready_frame(make_engine, gateway, make_entries)
    assert not engine.can_finish
    engine.toggle(0, 0)
    assert not engine.can_finish
    engine.toggle(0, 1)
    assert engine.can_finish


def test_finish_without_pending_starts_then_finalizes(make_engine, gateway, make_entries, counter, session):
    engine = _ready_frame(make_engine, gateway, make_entries)
    engine.check_all()
    record_id = asyncio.run(engine.finish())

    assert record_id == 101
    [(_, stage, payload)] = gateway.called("start_record")
    assert stage is Stage.FRAME
    assert payload.user_id == 7
    assert payload.vin == VIN
    assert payload.checks == {"soldar": True, "pulir": True}
    assert gateway.called("finalize_record") == [("finalize_record", Stage.FRAME, 101)]
    assert engine.daily_count == 1
    assert counter.get(session.email, "CHASIS") == 1
    assert engine.state is IdentifierState.IDLE
    assert engine.identifier == ""
    assert not engine.cache.has_progress


def test_finish_with_pending_updates_then_finalizes(make_engine, gateway, make_entries):
    status = IdentifierStatus(status="pending", record_id=40, checks={"soldar": 1, "pulir": 0})
    engine = _ready_frame(make_engine, gateway, make_entries, status)
    assert engine.active_pending_id == 40
    engine.check("pulir")
    asyncio.run(engine.finish())

    assert gateway.called("start_record") == []
    [(_, _, record_id, patch)] = gateway.called("update_record")
    assert record_id == 40
    assert patch.checks == {"soldar": True, "pulir": True}
    assert gateway.called("finalize_record") == [("finalize_record", Stage.FRAME, 40)]


def test_start_without_id_never_finalizes(make_engine, gateway, make_entries):
    engine = _ready_frame(make_engine, gateway, make_entries)
    engine.check_all()
    gateway.start_id = None
    with pytest.raises(TransportError):
        asyncio.run(engine.finish())
    assert gateway.called("finalize_record") == []
    assert engine.error_message
    assert engine.identifier == VIN
    assert engine.cache.is_complete
    assert engine.daily_count == 0


def test_failed_finalize_keeps_state(make_engine, gateway, make_entries):
    engine = _ready_frame(make_engine, gateway, make_entries)
    engine.check_all()
    gateway.failures["finalize_record"] = TransportError("503")
    with pytest.raises(TransportError):
        asyncio.run(engine.finish())
    assert engine.state is IdentifierState.OK
    assert engine.cache.is_complete
    assert engine.daily_count == 0


def test_finish_refused_when_not_ready(make_engine, gateway, make_entries):
    engine = _ready_frame(make_engine, gateway, make_entries)
    with pytest.raises(ValidationError):
        asyncio.run(engine.finish())
    assert gateway.calls[-1][0] == "fetch_identifier_status"


def test_newer_finish_supersedes_one_in_flight(make_engine, gateway, make_entries):
    status = IdentifierStatus(status="pending", record_id=40, checks={"soldar": 1, "pulir": 1})
    engine = _ready_frame(make_engine, gateway, make_entries, status)

    async def scenario():
        gate = asyncio.Event()
        gateway.gates["update_record"] = gate
        first = asyncio.ensure_future(engine.finish())
        for _ in range(3):
            await asyncio.sleep(0)
        second = asyncio.ensure_future(engine.finish())
        for _ in range(3):
            await asyncio.sleep(0)
        gate.set()
        return await asyncio.gather(first, second, return_exceptions=True)

    first_result, second_result = asyncio.run(scenario())
    assert isinstance(first_result, asyncio.CancelledError)
    assert second_result == 40
    assert gateway.called("finalize_record") == [("finalize_record", Stage.FRAME, 40)]
    assert engine.daily_count == 1


def _final_assembly(make_engine, gateway, make_entries, checks, color="rojo"):
    gateway.catalog[Stage.FINAL_ASSEMBLY] = make_entries(
        ("Fase 1", "Montar estribera"), ("Fase 1", "Ajustar faro")
    )
    gateway.statuses[VIN] = IdentifierStatus(status="pending", record_id=55, checks=checks, color=color)
    engine = make_engine(Stage.FINAL_ASSEMBLY)
    engine.known_identifiers = [VIN]
    return engine


@pytest.mark.parametrize("catalog_first", [True, False])
def test_resumed_pending_finishes_in_either_arrival_order(make_engine, gateway, make_entries, catalog_first):
    engine = _final_assembly(make_engine, gateway, make_entries, {"montar_estribera": 1, "ajustar_faro": 0})

    async def scenario():
        gate = asyncio.Event()
        gateway.gates["fetch_catalog"] = gate
        loading = asyncio.ensure_future(engine.load_catalog())
        if catalog_first:
            gate.set()
            await loading
            await engine.enter_identifier(VIN)
        else:
            await asyncio.sleep(0)
            await engine.enter_identifier(VIN)
            assert engine.buffer.pending is not None
            gate.set()
            await loading

    asyncio.run(scenario())
    assert engine.state is IdentifierState.OK
    assert engine.active_pending_id == 55
    assert engine.cache.checks_by_column() == {"montar_estribera": True, "ajustar_faro": False}
    assert engine.color == "rojo"
    assert not engine.can_finish

    engine.toggle(0, 1)
    assert engine.can_finish
    assert asyncio.run(engine.finish()) == 55
    [(_, _, record_id, patch)] = gateway.called("update_record")
    assert record_id == 55
    assert patch.color == "rojo"
    assert patch.checks == {"montar_estribera": True, "ajustar_faro": True}


def test_complete_pending_auto_finalizes(make_engine, gateway, make_entries):
    engine = _final_assembly(make_engine, gateway, make_entries, {"montar_estribera": 1, "ajustar_faro": 1})

    async def scenario():
        await engine.load_catalog()
        await engine.enter_identifier(VIN)

    asyncio.run(scenario())
    assert gateway.called("finalize_record") == [("finalize_record", Stage.FINAL_ASSEMBLY, 55)]
    assert gateway.called("update_record") == []
    assert engine.daily_count == 1
    assert engine.state is IdentifierState.IDLE
    assert not engine.cache.has_progress


def test_complete_pending_without_color_waits(make_engine, gateway, make_entries):
    engine = _final_assembly(make_engine, gateway, make_entries, {"montar_estribera": 1, "ajustar_faro": 1}, color=None)

    async def scenario():
        await engine.load_catalog()
        await engine.enter_identifier(VIN)

    asyncio.run(scenario())
    assert gateway.called("finalize_record") == []
    assert engine.state is IdentifierState.OK
    assert engine.can_finish is False
    engine.set_color("azul")
    assert engine.can_finish


def test_failed_auto_finalize_keeps_task(make_engine, gateway, make_entries):
    engine = _final_assembly(make_engine, gateway, make_entries, {"montar_estribera": 1, "ajustar_faro": 1})
    gateway.failures["finalize_record"] = TransportError("down")

    async def scenario():
        await engine.load_catalog()
        await engine.enter_identifier(VIN)

    asyncio.run(scenario())
    assert engine.state is IdentifierState.OK
    assert engine.active_pending_id == 55
    assert engine.error_message
    assert engine.daily_count == 0


def test_missing_snapshot_key_is_unchecked_and_reported(make_engine, gateway, make_entries):
    engine = _final_assembly(make_engine, gateway, make_entries, {"montar_estribera": 1})

    async def scenario():
        await engine.load_catalog()
        await engine.enter_identifier(VIN)

    asyncio.run(scenario())
    assert engine.unreviewed_keys == ["ajustar_faro"]
    assert engine.cache.checks_by_column()["ajustar_faro"] is False


def test_identifier_entered_during_finish_is_kept(make_engine, gateway, make_entries):
    other = "WDB12345678901234"
    engine = _ready_frame(make_engine, gateway, make_entries)
    engine.check_all()

    async def scenario():
        gate = asyncio.Event()
        gateway.gates["finalize_record"] = gate
        finishing = asyncio.ensure_future(engine.finish())
        for _ in range(5):
            await asyncio.sleep(0)
        await engine.enter_identifier(other)
        gate.set()
        return await finishing

    assert asyncio.run(scenario()) == 101
    assert engine.daily_count == 1
    assert engine.identifier == other
    assert engine.state is IdentifierState.OK
