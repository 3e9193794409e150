import logging
import threading
from collections import Counter
from collections.abc import Iterable
from concurrent import futures
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from src.ingestion.models import DeliveryTask, DomainEvent, EventType

from .http_client import HttpError, WebhookHttpClient
from .queue import DeliveryQueue

LOGGER = logging.getLogger(__name__)

WEBHOOK_PATHS: dict[EventType, str] = {
    EventType.MEMBER_REGISTERED: "/member-registered",
    EventType.REFERRAL_PAID: "/commission-paid",
    EventType.PLAN_UPGRADED: "/plan-upgraded",
    EventType.MEMBER_EXITED: "/member-exited",
    EventType.CYCLE_STARTED: "/cycle-started",
    EventType.EMERGENCY_WITHDRAW: "/system-alert",
}


class EventReaderProtocol(Protocol):
    def read_domain_event(self, event_key: str) -> Optional[dict[str, object]]: ...


def resolve_endpoints(
    event: DomainEvent, base_urls: Iterable[str], route_by_type: bool = False
) -> list[str]:
    suffix = WEBHOOK_PATHS[event.event_type] if route_by_type else ""
    return [f"{url.rstrip('/')}{suffix}" for url in base_urls]


def build_webhook_body(
    event: DomainEvent, timestamp: datetime, network: str
) -> dict[str, object]:
    return {
        "eventKey": event.event_key,
        "eventType": event.event_type.value,
        "payload": event.payload_dict(),
        "timestamp": timestamp.isoformat(),
        "schemaVersion": event.schema_version,
        "network": network,
    }


@dataclass
class DispatchSummary:
    leased: int = 0
    outcomes: Counter = field(default_factory=Counter)

    @property
    def delivered(self) -> int:
        return self.outcomes["delivered"]

    @property
    def retried(self) -> int:
        return self.outcomes["retry"]

    @property
    def failed(self) -> int:
        return self.outcomes["failed"]

    def to_dict(self) -> dict[str, object]:
        return {"leased": self.leased, **dict(self.outcomes)}


class WebhookDispatcher:
    def __init__(
        self,
        queue: DeliveryQueue,
        events: EventReaderProtocol,
        http_client: WebhookHttpClient,
        batch_size: int = 20,
        workers: int = 4,
        network: str = "bsc-testnet",
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._queue = queue
        self._events = events
        self._http_client = http_client
        self._batch_size = batch_size
        self._workers = workers
        self._network = network
        self._now = now

    def _load_event(self, event_key: str) -> DomainEvent:
        row = self._events.read_domain_event(event_key)
        if row is None:
            raise LookupError(f"domain event {event_key} not found")
        return DomainEvent.from_row(row)

    def dispatch_task(self, task: DeliveryTask) -> str:
        try:
            event = self._load_event(task.event_key)
            body = build_webhook_body(event, self._now(), self._network)
            response = self._http_client.post_json(
                task.endpoint, body, headers={"Idempotency-Key": task.event_key}
            )
        except (HttpError, LookupError, ValueError) as error:
            return self._queue.nack(task.id, str(error), lease_token=task.lease_token).outcome
        except Exception as error:
            LOGGER.exception("delivery of %s to %s raised", task.event_key, task.endpoint)
            error_text = f"{type(error).__name__}: {error}"
            return self._queue.nack(task.id, error_text, lease_token=task.lease_token).outcome

        if response.ok:
            if self._queue.ack(task.id, lease_token=task.lease_token):
                LOGGER.info("delivered %s to %s", task.event_key, task.endpoint)
                return "delivered"
            return "stale"

        error_text = f"endpoint responded {response.status_code}"
        return self._queue.nack(task.id, error_text, lease_token=task.lease_token).outcome

    def drain_once(self) -> DispatchSummary:
        tasks = self._queue.lease_next(self._batch_size)
        summary = DispatchSummary(leased=len(tasks))
        if not tasks:
            return summary

        with futures.ThreadPoolExecutor(max_workers=min(self._workers, len(tasks))) as executor:
            pending = {executor.submit(self.dispatch_task, task): task for task in tasks}
            for future in futures.as_completed(pending):
                task = pending[future]
                try:
                    summary.outcomes[future.result()] += 1
                except Exception:
                    # store failure while settling; lease expiry hands the task back
                    LOGGER.exception("dispatch of task %s crashed", task.id)
                    summary.outcomes["crashed"] += 1
        return summary

    def run_forever(self, stop: threading.Event, idle_seconds: float = 1.0) -> None:
        LOGGER.info("webhook dispatcher started with %d worker(s)", self._workers)
        while not stop.is_set():
            try:
                summary = self.drain_once()
            except Exception:
                LOGGER.exception("dispatcher drain failed")
                stop.wait(idle_seconds)
                continue
            if summary.leased:
                LOGGER.info("dispatch batch: %s", summary.to_dict())
            else:
                stop.wait(idle_seconds)
        LOGGER.info("webhook dispatcher stopped; unfinished leases will expire")
