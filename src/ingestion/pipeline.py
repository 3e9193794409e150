import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from src.delivery.backoff import RetryPolicy
from src.delivery.dispatcher import WebhookDispatcher, resolve_endpoints
from src.delivery.http_client import Transport, WebhookHttpClient, requests_transport
from src.delivery.queue import DeliveryQueue
from src.reconciliation.job import ReconciliationJob
from src.referral.ledger import ReferralLedger

from .chain_client import ChainClientProtocol, Web3ChainClient
from .channel import EventChannel
from .config import Settings
from .models import DomainEvent, EventType
from .poller import ChainLogPoller
from .postgres_repository import PostgresRepository
from .repository import InMemoryRepository

LOGGER = logging.getLogger(__name__)

Store = Union[InMemoryRepository, PostgresRepository]

LEDGER_EVENT_TYPES = {EventType.REFERRAL_PAID, EventType.MEMBER_REGISTERED}


class EventRouter:
    def __init__(
        self,
        store: Store,
        queue: DeliveryQueue,
        ledger: ReferralLedger,
        endpoints: tuple[str, ...] = (),
        route_by_type: bool = False,
    ) -> None:
        self._store = store
        self._queue = queue
        self._ledger = ledger
        self._endpoints = endpoints
        self._route_by_type = route_by_type

    def handle(self, event: DomainEvent) -> None:
        if not self._store.write_domain_event(event.to_row()):
            LOGGER.debug("domain event %s already stored; resuming fan-out", event.event_key)
        # enqueue and record are idempotent per event key
        if self._endpoints:
            self._queue.enqueue(
                event, resolve_endpoints(event, self._endpoints, self._route_by_type)
            )
        if event.event_type in LEDGER_EVENT_TYPES:
            self._ledger.record(event)


@dataclass
class Pipeline:
    settings: Settings
    store: Store
    chain: ChainClientProtocol
    channel: EventChannel
    poller: ChainLogPoller
    queue: DeliveryQueue
    dispatcher: WebhookDispatcher
    ledger: ReferralLedger
    reconciler: ReconciliationJob


def build_store(settings: Settings) -> Store:
    if settings.database_url:
        return PostgresRepository(dsn=settings.database_url)
    LOGGER.warning("no database configured; using the in-memory store")
    return InMemoryRepository()


def build_pipeline(
    settings: Settings,
    store: Optional[Store] = None,
    chain_client: Optional[ChainClientProtocol] = None,
    transport: Transport = requests_transport,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> Pipeline:
    store = store if store is not None else build_store(settings)
    chain = chain_client or Web3ChainClient(settings.rpc_url, settings.contract_address)
    retry_policy = RetryPolicy(
        base_seconds=settings.backoff_base_seconds,
        cap_seconds=settings.backoff_cap_seconds,
        max_attempts=settings.max_attempts,
    )
    queue = DeliveryQueue(store, retry_policy, lease_seconds=settings.lease_seconds, now=now)
    ledger = ReferralLedger(store, chain, decimals=settings.token_decimals, now=now)
    router = EventRouter(
        store,
        queue,
        ledger,
        endpoints=settings.webhook_endpoints,
        route_by_type=settings.webhook_route_by_type,
    )
    channel = EventChannel(router.handle, maxsize=settings.channel_capacity)
    poller = ChainLogPoller(
        chain,
        store,
        channel,
        settings.contract_address,
        confirmations=settings.confirmations,
        batch_blocks=settings.log_batch_blocks,
        start_block=settings.start_block,
        decimals=settings.token_decimals,
        now=now,
    )
    dispatcher = WebhookDispatcher(
        queue,
        store,
        WebhookHttpClient(
            settings.webhook_secret,
            transport=transport,
            timeout_seconds=settings.webhook_timeout_seconds,
        ),
        batch_size=settings.dispatch_batch_size,
        workers=settings.dispatch_workers,
        network=settings.network,
        now=now,
    )
    reconciler = ReconciliationJob(
        store,
        chain,
        ledger=ledger,
        lease_seconds=settings.reconcile_interval_seconds * 2,
        now=now,
    )
    return Pipeline(
        settings=settings,
        store=store,
        chain=chain,
        channel=channel,
        poller=poller,
        queue=queue,
        dispatcher=dispatcher,
        ledger=ledger,
        reconciler=reconciler,
    )


def run_pipeline(
    pipeline: Pipeline,
    from_block: Optional[int] = None,
    to_block: Optional[int] = None,
) -> dict[str, object]:
    """Ingest one batch (or an explicit block range) and drain the delivery queue once."""
    if from_block is not None and to_block is not None:
        ingestion = pipeline.poller.backfill(from_block, to_block)
    else:
        ingestion = pipeline.poller.poll_once()
    dispatch = pipeline.dispatcher.drain_once()
    return {"ingestion": ingestion.to_dict(), "dispatch": dispatch.to_dict()}
