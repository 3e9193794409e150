import logging
import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol
from uuid import uuid4

from src.ingestion.models import DeliveryStatus, DeliveryTask, DomainEvent

from .backoff import RetryPolicy

LOGGER = logging.getLogger(__name__)


class DeliveryStoreProtocol(Protocol):
    def insert_delivery_task(self, row: Mapping[str, object]) -> bool: ...

    def lease_delivery_tasks(
        self, limit: int, now: datetime, lease_expires_at: datetime
    ) -> list[dict[str, object]]: ...

    def mark_delivery_delivered(self, task_id: str, lease_token: str, now: datetime) -> bool: ...

    def mark_delivery_retry(
        self,
        task_id: str,
        lease_token: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool: ...

    def mark_delivery_failed(
        self, task_id: str, lease_token: str, attempts: int, error: str, now: datetime
    ) -> bool: ...

    def requeue_failed_delivery_task(self, task_id: str, now: datetime) -> bool: ...

    def read_delivery_task(self, task_id: str) -> Optional[dict[str, object]]: ...

    def read_failed_delivery_tasks(self, limit: int = 50) -> list[dict[str, object]]: ...

    def read_delivery_status_counts(self) -> dict[str, int]: ...


@dataclass(frozen=True)
class NackResult:
    task_id: str
    outcome: str
    attempts: int
    next_attempt_at: Optional[datetime] = None


class DeliveryQueue:
    def __init__(
        self,
        store: DeliveryStoreProtocol,
        retry_policy: RetryPolicy,
        lease_seconds: float = 60.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        rng: Callable[[], float] = random.random,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._store = store
        self._retry_policy = retry_policy
        self._lease = timedelta(seconds=lease_seconds)
        self._now = now
        self._rng = rng
        self._id_factory = id_factory

    def enqueue(self, event: DomainEvent, endpoints: Iterable[str]) -> list[str]:
        now = self._now()
        created: list[str] = []
        for endpoint in dict.fromkeys(endpoints):
            task_id = self._id_factory()
            inserted = self._store.insert_delivery_task(
                {
                    "id": task_id,
                    "event_key": event.event_key,
                    "endpoint": endpoint,
                    "status": DeliveryStatus.PENDING,
                    "attempts": 0,
                    "next_attempt_at": now,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            if inserted:
                created.append(task_id)
            else:
                LOGGER.debug("delivery of %s to %s already queued", event.event_key, endpoint)
        return created

    def lease_next(self, limit: int) -> list[DeliveryTask]:
        if limit <= 0:
            return []
        now = self._now()
        rows = self._store.lease_delivery_tasks(
            limit=limit, now=now, lease_expires_at=now + self._lease
        )
        return [DeliveryTask.from_row(row) for row in rows]

    def _current_token(self, task_id: str, lease_token: Optional[str]) -> Optional[str]:
        if lease_token is not None:
            return lease_token
        row = self._store.read_delivery_task(task_id)
        if row is None or row.get("status") != DeliveryStatus.IN_FLIGHT:
            return None
        token = row.get("lease_token")
        return None if token is None else str(token)

    def ack(self, task_id: str, lease_token: Optional[str] = None) -> bool:
        token = self._current_token(task_id, lease_token)
        if token is None or not self._store.mark_delivery_delivered(task_id, token, self._now()):
            LOGGER.warning("ignoring stale ack for delivery task %s", task_id)
            return False
        return True

    def nack(self, task_id: str, error: str, lease_token: Optional[str] = None) -> NackResult:
        token = self._current_token(task_id, lease_token)
        row = self._store.read_delivery_task(task_id)
        if token is None or row is None:
            LOGGER.warning("ignoring stale nack for delivery task %s", task_id)
            return NackResult(task_id=task_id, outcome="stale", attempts=0)

        attempts = int(str(row["attempts"])) + 1
        now = self._now()

        if self._retry_policy.is_exhausted(attempts):
            if not self._store.mark_delivery_failed(task_id, token, attempts, error, now):
                return NackResult(task_id=task_id, outcome="stale", attempts=attempts - 1)
            LOGGER.error(
                "delivery task %s to %s failed permanently after %d attempts: %s",
                task_id,
                row.get("endpoint"),
                attempts,
                error,
            )
            return NackResult(task_id=task_id, outcome="failed", attempts=attempts)

        delay = self._retry_policy.delay_for(attempts, self._rng)
        next_attempt_at = now + timedelta(seconds=delay)
        if not self._store.mark_delivery_retry(
            task_id, token, attempts, next_attempt_at, error, now
        ):
            return NackResult(task_id=task_id, outcome="stale", attempts=attempts - 1)
        LOGGER.warning(
            "delivery task %s attempt %d failed, retrying in %.1fs: %s",
            task_id,
            attempts,
            delay,
            error,
        )
        return NackResult(
            task_id=task_id,
            outcome="retry",
            attempts=attempts,
            next_attempt_at=next_attempt_at,
        )

    def requeue_failed(self, task_id: str) -> bool:
        requeued = self._store.requeue_failed_delivery_task(task_id, self._now())
        if requeued:
            LOGGER.info("delivery task %s re-armed by operator", task_id)
        return requeued

    def failed_tasks(self, limit: int = 50) -> list[DeliveryTask]:
        return [
            DeliveryTask.from_row(row) for row in self._store.read_failed_delivery_tasks(limit)
        ]

    def status_counts(self) -> dict[str, int]:
        return self._store.read_delivery_status_counts()
