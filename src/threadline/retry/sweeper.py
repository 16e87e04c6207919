"""Periodic re-routing of messages whose first routing attempt failed.

The sweeper is the only writer of pending retry records. Each sweep walks the
active records, re-invokes the orchestrator for those whose backoff has
elapsed, and either deletes the record (routed), reschedules it, or moves it
to the dead-letter store once the retry budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from opentelemetry import trace

from threadline.core.logging import routing_context
from threadline.errors import MissingFieldError
from threadline.models import DeadLetterRecord, NormalizedMessage, PendingRetryRecord
from threadline.retry.policy import RetryPolicy
from threadline.routing.orchestrator import DeliveryOutcome
from threadline.routing.telemetry import get_routing_telemetry
from threadline.stores.base import DeadLetterStore, PendingRetryStore

logger = logging.getLogger(__name__)

_DEFAULT_BATCH_LIMIT = 200
_MAX_ERROR_LENGTH = 2000


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def describe_error(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}"
    else:
        text = str(error)
    return text[:_MAX_ERROR_LENGTH]


class Rerouter(Protocol):
    async def route_and_deliver(
        self, message: NormalizedMessage, organization_id: str
    ) -> DeliveryOutcome: ...


@dataclass
class SweepSummary:
    """Counts for one sweep run."""

    started_at: datetime
    evaluated: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    errors: int = 0
    skipped_overlap: bool = False
    dead_letter_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


class RetrySweeper:
    """Owns pending retry records and the dead-letter hand-off.

    Parameters
    ----------
    router:
        Anything exposing ``route_and_deliver``; normally the orchestrator.
    pending:
        Pending retry record store.
    dead_letters:
        Destination for records that exhausted their retries.
    policy:
        Retry cap and backoff schedule.
    batch_limit:
        Maximum records examined per sweep.
    """

    def __init__(
        self,
        *,
        router: Rerouter,
        pending: PendingRetryStore,
        dead_letters: DeadLetterStore,
        policy: RetryPolicy | None = None,
        batch_limit: int = _DEFAULT_BATCH_LIMIT,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._router = router
        self._pending = pending
        self._dead_letters = dead_letters
        self._policy = policy or RetryPolicy()
        self._batch_limit = batch_limit
        self._clock = clock
        self._id_factory = id_factory
        self._lock = asyncio.Lock()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def enqueue(
        self,
        message: NormalizedMessage,
        organization_id: str,
        error: BaseException | str,
    ) -> PendingRetryRecord:
        """Record a first routing failure. The first retry is due after the base delay."""
        if message is None:
            raise MissingFieldError("message")
        if not organization_id or not organization_id.strip():
            raise MissingFieldError("organization_id")
        now = self._clock()
        record = PendingRetryRecord(
            id=self._id_factory(),
            message=message,
            organization_id=organization_id.strip(),
            retry_count=0,
            last_error=describe_error(error),
            created_at=now,
            next_eligible_at=self._policy.next_eligible_at(now, 0),
            updated_at=now,
        )
        await self._pending.add(record)
        logger.info(
            "Queued message %s for retry as %s (first attempt at %s)",
            message.id,
            record.id,
            record.next_eligible_at.isoformat(),
        )
        return record

    async def sweep(self, *, now: datetime | None = None) -> SweepSummary:
        """Run one sweep. A sweep already in progress makes this a no-op."""
        current = now or self._clock()
        if self._lock.locked():
            logger.info("Retry sweep already running; skipping this run")
            return SweepSummary(started_at=current, skipped_overlap=True)

        async with self._lock:
            tracer = trace.get_tracer("threadline")
            with tracer.start_as_current_span("threadline.retry_sweep") as span:
                summary = SweepSummary(started_at=current)
                records = await self._pending.list_active(
                    max_retries=self._policy.max_retries, limit=self._batch_limit
                )
                for record in records:
                    if current < record.next_eligible_at:
                        summary.deferred += 1
                        continue
                    summary.evaluated += 1
                    try:
                        await self._attempt(record, current, summary)
                    except Exception:
                        summary.errors += 1
                        logger.exception("Retry bookkeeping failed for record %s", record.id)

                span.set_attribute("evaluated", summary.evaluated)
                span.set_attribute("succeeded", summary.succeeded)
                span.set_attribute("dead_lettered", summary.dead_lettered)
                logger.info(
                    "Retry sweep completed: evaluated=%d, succeeded=%d, failed=%d, "
                    "dead_lettered=%d, deferred=%d",
                    summary.evaluated,
                    summary.succeeded,
                    summary.failed,
                    summary.dead_lettered,
                    summary.deferred,
                )
                return summary

    async def _attempt(
        self, record: PendingRetryRecord, now: datetime, summary: SweepSummary
    ) -> None:
        telemetry = get_routing_telemetry()
        with routing_context(
            organization_id=record.organization_id, message_id=record.message.id
        ):
            try:
                await self._router.route_and_deliver(record.message, record.organization_id)
            except Exception as exc:  # noqa: BLE001
                retry_count = record.retry_count + 1
                error = describe_error(exc)
                if self._policy.is_exhausted(retry_count):
                    await self._dead_letter(record, retry_count, error, now)
                    summary.dead_lettered += 1
                    summary.dead_letter_ids.append(record.id)
                    telemetry.record_retry_attempt(outcome="dead_lettered")
                    return
                rescheduled = record.model_copy(
                    update={
                        "retry_count": retry_count,
                        "last_error": error,
                        "next_eligible_at": self._policy.next_eligible_at(
                            record.created_at, retry_count
                        ),
                        "updated_at": now,
                    }
                )
                await self._pending.update(rescheduled)
                summary.failed += 1
                telemetry.record_retry_attempt(outcome="failed")
                logger.warning(
                    "Retry %d/%d failed for message %s: %s",
                    retry_count,
                    self._policy.max_retries,
                    record.message.id,
                    error,
                )
                return

            await self._pending.delete(record.id)
            summary.succeeded += 1
            telemetry.record_retry_attempt(outcome="succeeded")
            logger.info(
                "Retry succeeded for message %s after %d failed attempt(s)",
                record.message.id,
                record.retry_count,
            )

    async def _dead_letter(
        self, record: PendingRetryRecord, retry_count: int, error: str, now: datetime
    ) -> None:
        dead = DeadLetterRecord.model_validate(
            {
                **record.model_dump(),
                "retry_count": retry_count,
                "last_error": error,
                "permanently_failed": True,
                "failed_at": now,
                "updated_at": now,
            }
        )
        # The dead-letter copy must exist before the pending record is removed
        await self._dead_letters.add(dead)
        await self._pending.delete(record.id)
        get_routing_telemetry().record_dead_lettered()
        logger.error(
            "Message %s permanently failed after %d attempts: %s",
            record.message.id,
            retry_count,
            error,
        )


__all__ = ["Rerouter", "RetrySweeper", "SweepSummary", "describe_error"]
