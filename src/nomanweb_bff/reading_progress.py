# src/nomanweb_bff/reading_progress.py

import logging
import math
import typing
from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from .backend_proxy import BackendProxy
from .errors import BffError, ClientValidationFailure, is_retryable

logger = logging.getLogger(__name__)

PROGRESS_STEP = 5
MAX_ATTEMPTS = 3  # first try plus 2 retries
PROGRESS_DATA_KEY = "reading_progress"
COMPLETED_NOTIFICATION = "Chapter completed!"


@dataclass
class ProgressReport:
    sent: bool
    progress: int = 0
    delivered: bool = False
    completed: bool = False
    notification: typing.Optional[str] = None


def quantize(raw_progress: float) -> int:
    return int(math.floor(raw_progress / PROGRESS_STEP) * PROGRESS_STEP)


class ReadingProgressReporter:
    """
    Turns a stream of scroll positions into at most one backend write per 5%
    bucket per chapter. Background telemetry: failures are logged, never shown.
    """

    def __init__(
            self,
            proxy: BackendProxy,
            last_sent: typing.MutableMapping[str, int],
            token: typing.Optional[str] = None,
            retry_wait_seconds: float = 0.5,
    ):
        self.proxy = proxy
        self.last_sent = last_sent
        self.token = token
        self.retry_wait_seconds = retry_wait_seconds

    async def report(self, entity_id: str, raw_progress: typing.Any) -> ProgressReport:
        if not entity_id or not str(entity_id).strip():
            raise ClientValidationFailure("Invalid chapter ID or progress percentage", field="chapterId")
        try:
            value = float(raw_progress)
        except (TypeError, ValueError):
            raise ClientValidationFailure("Invalid chapter ID or progress percentage", field="progress")
        if math.isnan(value) or value < 0 or value > 100:
            raise ClientValidationFailure("Invalid chapter ID or progress percentage", field="progress")

        progress = quantize(value)
        if progress <= 0 or progress == self.last_sent.get(entity_id):
            return ProgressReport(sent=False, progress=progress)

        # Recorded before the call so a burst of events cannot queue duplicate writes
        self.last_sent[entity_id] = progress

        try:
            data = await self._send(entity_id, progress)
        except BffError as e:
            if e.status_code in (401, 403):
                logger.warning(f"[ReadingProgress] User not authenticated for reading progress tracking ({e.status_code})")
            else:
                logger.warning(f"[ReadingProgress] Failed to update reading progress for {entity_id}: {e.status_code} - {e.message}")
            return ProgressReport(sent=True, progress=progress, delivered=False)

        completed = bool(isinstance(data, dict) and data.get("isCompleted"))
        return ProgressReport(
            sent=True,
            progress=progress,
            delivered=True,
            completed=completed,
            # Only completed chapters get a notification, partial progress stays silent
            notification=COMPLETED_NOTIFICATION if completed else None,
        )

    async def _send(self, entity_id: str, progress: int) -> typing.Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=wait_fixed(self.retry_wait_seconds),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"[ReadingProgress] Retrying {entity_id} at {progress}% (attempt {attempt.retry_state.attempt_number})")
                return await self.proxy.forward_json(
                    "POST",
                    f"/api/reading-progress/chapter/{entity_id}/update",
                    headers=headers,
                    query={"progressPercentage": progress},
                    fallback_error="Failed to update reading progress",
                )
