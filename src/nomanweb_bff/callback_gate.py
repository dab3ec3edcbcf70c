# src/nomanweb_bff/callback_gate.py

import logging
import time
import typing
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


class GateState(str, Enum):
    UNARMED = "unarmed"
    ARMED = "armed"
    COMPLETED = "completed"


@dataclass
class GateResult(typing.Generic[T]):
    executed: bool
    value: typing.Optional[T] = None


class CallbackGate:
    """
    Lets one OAuth callback run its exchange-and-login sequence at most once.

    The state check and the UNARMED -> ARMED transition happen before the
    first await, so on a single event loop no second caller can slip in
    between them.
    """

    def __init__(self, key: str = "", clock: typing.Callable[[], float] = time.monotonic):
        self.key = key
        self.state = GateState.UNARMED
        self.created_at = clock()

    async def run(self, operation: typing.Callable[[], typing.Awaitable[T]]) -> GateResult[T]:
        if self.state is not GateState.UNARMED:
            logger.info(f"[CallbackGate] Callback {self.key} already {self.state.value}, skipping...")
            return GateResult(executed=False)

        self.state = GateState.ARMED
        try:
            value = await operation()
        finally:
            self.state = GateState.COMPLETED
        return GateResult(executed=True, value=value)


class CallbackGateRegistry:
    """Hands out one gate per callback instance; a new authorization code means a new gate."""

    def __init__(self, ttl_seconds: int = 300, clock: typing.Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._gates: typing.Dict[str, CallbackGate] = {}

    def gate_for(self, key: str) -> CallbackGate:
        self._prune()
        gate = self._gates.get(key)
        if gate is None:
            gate = CallbackGate(key, clock=self._clock)
            self._gates[key] = gate
        return gate

    def __len__(self) -> int:
        return len(self._gates)

    def _prune(self) -> None:
        now = self._clock()
        expired = [k for k, g in self._gates.items() if now - g.created_at >= self.ttl_seconds]
        for k in expired:
            del self._gates[k]


def callback_key(context_id: str, provider: str, code: typing.Optional[str]) -> str:
    return f"{context_id}:{provider}:{code or ''}"
