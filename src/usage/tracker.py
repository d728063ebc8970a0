"""
Gemini Proxy - Usage Recorder

Records billable usage without blocking responses.

Features:
- Fire-and-forget submission from request handlers
- Bounded asyncio.Queue consumed by one background worker
- Bounded dead-letter buffer for dropped and failed records
- Drain on shutdown

Writes are never retried: a record that fails once is logged and kept
in the dead-letter buffer for inspection.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from ..core.models import RequestKind, TokenUsage, UsageRecord
from ..db.base import UsageStore
from ..observability.logging import get_logger
from ..observability.metrics import UsageOutcome, get_metrics
from .pricing import calculate_cost

logger = get_logger(__name__)


class DeadLetterReason:
    QUEUE_FULL = "queue_full"
    WRITE_FAILED = "write_failed"


@dataclass
class DeadLetter:
    """A usage record that never reached the store."""
    record: UsageRecord
    reason: str
    error: Optional[str] = None
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "reason": self.reason,
            "error": self.error,
            "failed_at": self.failed_at.isoformat(),
        }


def build_usage_record(
    user_id: str,
    model: str,
    request_kind: RequestKind,
    usage: TokenUsage,
    request_id: str = "",
) -> UsageRecord:
    """Price a TokenUsage and wrap it as an immutable UsageRecord."""
    cost = calculate_cost(usage.prompt_tokens, usage.completion_tokens, model)
    return UsageRecord(
        user_id=user_id,
        model=model,
        request_kind=request_kind,
        total_tokens=usage.total_tokens,
        cost=cost,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        request_id=request_id,
    )


class UsageRecorder:
    """
    Background usage writer.

    Usage:
        recorder = UsageRecorder(store)
        await recorder.start()
        recorder.submit(record)     # never blocks, never raises
        await recorder.stop()       # drains pending records
    """

    def __init__(
        self,
        store: UsageStore,
        max_queue_size: int = 1000,
        dead_letter_size: int = 100,
    ):
        self.store = store
        self._queue: "asyncio.Queue[UsageRecord]" = asyncio.Queue(maxsize=max_queue_size)
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_size)
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    def submit(self, record: UsageRecord) -> bool:
        """
        Queue a record for writing.

        Returns False when the queue is full; the record is then dropped
        and dead-lettered.
        """
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.error(
                "Usage queue full, dropping record",
                user_id=record.user_id,
                model=record.model,
                total_tokens=record.total_tokens,
            )
            self._dead_letter(record, DeadLetterReason.QUEUE_FULL)
            get_metrics().record_usage_outcome(UsageOutcome.DROPPED)
            return False

        get_metrics().set_usage_queue_depth(self._queue.qsize())
        return True

    async def start(self):
        """Start the background worker."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="usage-recorder")
        logger.info("Usage recorder started", queue_size=self._queue.maxsize)

    async def stop(self):
        """Write everything still queued, then stop the worker."""
        if self.running:
            await self._queue.join()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        else:
            await self.drain()
        self._worker = None

        logger.info(
            "Usage recorder stopped",
            dead_letters=len(self._dead_letters),
        )

    async def drain(self):
        """Write queued records inline, without a worker."""
        while not self._queue.empty():
            record = self._queue.get_nowait()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    async def _run(self):
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()
                get_metrics().set_usage_queue_depth(self._queue.qsize())

    async def _write(self, record: UsageRecord):
        try:
            await self.store.record_usage(record)
        except Exception as e:
            logger.error(
                "Failed to record usage",
                user_id=record.user_id,
                model=record.model,
                request_kind=record.request_kind.value,
                total_tokens=record.total_tokens,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._dead_letter(record, DeadLetterReason.WRITE_FAILED, str(e))
            get_metrics().record_usage_outcome(UsageOutcome.FAILED)
            return

        metrics = get_metrics()
        metrics.record_usage_outcome(UsageOutcome.WRITTEN)
        metrics.record_tokens(record.model, record.prompt_tokens, record.completion_tokens)
        metrics.record_cost(record.model, record.cost)

        logger.debug(
            "Recorded usage",
            user_id=record.user_id,
            model=record.model,
            request_kind=record.request_kind.value,
            total_tokens=record.total_tokens,
            cost=record.cost,
        )

    def _dead_letter(self, record: UsageRecord, reason: str, error: Optional[str] = None):
        self._dead_letters.append(DeadLetter(record=record, reason=reason, error=error))
