import asyncio

import pytest

from nomanweb_bff.callback_gate import CallbackGate, CallbackGateRegistry, GateState, callback_key


async def test_concurrent_entries_run_operation_once():
    gate = CallbackGate("ctx:line:abc")
    calls = []

    async def exchange_and_login():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "session"

    results = await asyncio.gather(*(gate.run(exchange_and_login) for _ in range(5)))

    assert len(calls) == 1
    assert [r.executed for r in results].count(True) == 1
    assert next(r.value for r in results if r.executed) == "session"
    assert gate.state is GateState.COMPLETED


async def test_reentry_after_completion_is_noop():
    gate = CallbackGate()

    async def op():
        return 1

    first = await gate.run(op)
    second = await gate.run(op)
    assert first.executed and first.value == 1
    assert not second.executed and second.value is None


async def test_failure_completes_gate_and_propagates_once():
    gate = CallbackGate()

    async def failing():
        raise RuntimeError("exchange failed")

    with pytest.raises(RuntimeError):
        await gate.run(failing)
    assert gate.state is GateState.COMPLETED
    assert not (await gate.run(failing)).executed


def test_registry_hands_out_one_gate_per_key():
    registry = CallbackGateRegistry()
    key = callback_key("ctx", "line", "abc")

    assert registry.gate_for(key) is registry.gate_for(key)
    assert registry.gate_for(callback_key("ctx", "line", "def")) is not registry.gate_for(key)
    assert len(registry) == 2


def test_registry_prunes_expired_gates():
    now = [0.0]
    registry = CallbackGateRegistry(ttl_seconds=300, clock=lambda: now[0])
    old = registry.gate_for("ctx:line:abc")
    old.state = GateState.COMPLETED

    now[0] = 301
    fresh = registry.gate_for("ctx:line:abc")
    assert fresh is not old
    assert fresh.state is GateState.UNARMED
    assert len(registry) == 1
