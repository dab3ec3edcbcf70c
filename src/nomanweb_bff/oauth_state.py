# src/nomanweb_bff/oauth_state.py
"""
One-time OAuth `state` values carried across the provider redirect.

The value is written to two stores so that losing one of them (evicted
server context, blocked cookies, a second worker) does not break the login.
Validation has three outcomes instead of pass/fail; what to do with a
mismatch or a missing value is decided by the configured policy.
"""

import logging
import secrets
import time
import typing
from enum import Enum

from .errors import MissingState, StateMismatch, StateNotFound
from .session_data import OAuthState
from .storage import ExpiringStore

logger = logging.getLogger(__name__)

STATE_KEY = "line_oauth_state"
TIMESTAMP_KEY = "line_oauth_timestamp"


class ConsumeResult(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


def generate_state_value() -> str:
    return secrets.token_urlsafe(32)


class OAuthStateGuard:
    def __init__(
            self,
            short_lived: ExpiringStore,
            long_lived: ExpiringStore,
            policy: str = "lenient",
            ttl_seconds: int = 600,
            clock: typing.Callable[[], float] = time.time,
    ):
        self.short_lived = short_lived
        self.long_lived = long_lived
        self.policy = policy
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self) -> OAuthState:
        state = OAuthState(value=generate_state_value(), created_at=self._clock())
        self._best_effort(self.short_lived, "set", STATE_KEY, state.value, self.ttl_seconds)
        self._best_effort(self.long_lived, "set", STATE_KEY, state.value, self.ttl_seconds)
        self._best_effort(self.long_lived, "set", TIMESTAMP_KEY, str(int(state.created_at * 1000)), self.ttl_seconds)
        logger.info(f"[OAuthState] Issued state {state.value[:6]}... (policy: {self.policy})")
        return state

    def consume(self, received_state: typing.Optional[str]) -> ConsumeResult:
        stored = self._read(self.short_lived) or self._read(self.long_lived)
        issued_at = self._read(self.long_lived, TIMESTAMP_KEY)
        self._clear()

        if not received_state:
            logger.error("[OAuthState] State parameter missing from callback")
            raise MissingState()

        if not stored:
            logger.warning(
                f"[OAuthState] No stored state found for {received_state[:6]}... "
                f"(storage evicted or blocked), policy: {self.policy}"
            )
            if self.policy == "strict":
                raise StateNotFound()
            return ConsumeResult.NOT_FOUND

        if not secrets.compare_digest(stored.encode("utf-8"), received_state.encode("utf-8")):
            logger.warning(
                f"[OAuthState] State mismatch. Expected: {stored[:6]}..., got: {received_state[:6]}... "
                f"(issued at: {issued_at}), policy: {self.policy}"
            )
            if self.policy == "strict":
                raise StateMismatch()
            return ConsumeResult.MISMATCH

        return ConsumeResult.MATCH

    def _clear(self) -> None:
        for store in (self.short_lived, self.long_lived):
            self._best_effort(store, "delete", STATE_KEY)
        self._best_effort(self.long_lived, "delete", TIMESTAMP_KEY)

    @staticmethod
    def _read(store: ExpiringStore, key: str = STATE_KEY) -> typing.Optional[str]:
        try:
            return store.get(key)
        except Exception as e:
            logger.warning(f"[OAuthState] Could not read {key} from {type(store).__name__}: {e}")
            return None

    @staticmethod
    def _best_effort(store: ExpiringStore, op: str, *args) -> None:
        try:
            getattr(store, op)(*args)
        except Exception as e:
            logger.warning(f"[OAuthState] {type(store).__name__}.{op} failed: {e}")
