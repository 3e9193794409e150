import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from src.delivery.queue import DeliveryQueue
from src.reconciliation.job import ReconciliationJob
from src.referral.ledger import ReferralLedger

from .chain_client import ChainClientProtocol, ChainReadError
from .models import CommissionStatus

LOGGER = logging.getLogger(__name__)

PERIODS: dict[str, Optional[timedelta]] = {
    "all": None,
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


class AdminStoreProtocol(Protocol):
    def read_membership(self, wallet_address: str) -> Optional[dict[str, object]]: ...

    def read_system_counts(self) -> dict[str, int]: ...

    def ping(self) -> bool: ...


def period_start(period: str, now: datetime) -> Optional[datetime]:
    if period not in PERIODS:
        raise ValueError(f"unsupported period: {period} (expected one of {', '.join(PERIODS)})")
    window = PERIODS[period]
    return None if window is None else now - window


class AdminService:
    """Read and trigger operations behind the operator surface."""

    def __init__(
        self,
        store: AdminStoreProtocol,
        chain: ChainClientProtocol,
        ledger: ReferralLedger,
        queue: DeliveryQueue,
        reconciler: ReconciliationJob,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._chain = chain
        self._ledger = ledger
        self._queue = queue
        self._reconciler = reconciler
        self._now = now

    def get_commission_stats(
        self,
        user: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, object]:
        stats = self._ledger.commission_stats(user, start, end)
        stats["daily"] = self._ledger.earnings_by_day(user, start, end)
        return stats

    def get_top_referrers(self, period: str = "all", limit: int = 10) -> list[dict[str, object]]:
        return self._ledger.top_referrers(since=period_start(period, self._now()), limit=limit)

    def get_membership_mirror(self, wallet: str) -> Optional[dict[str, object]]:
        row = self._store.read_membership(wallet.lower())
        if row is None:
            return None
        row["upline_of_record"] = self._ledger.upline_of(wallet)
        return row

    def trigger_reconciliation(self, wallet: Optional[str] = None) -> dict[str, object]:
        if wallet:
            return self._reconciler.reconcile(wallet).to_dict()
        return self._reconciler.reconcile_all().to_dict()

    def get_failed_deliveries(self, limit: int = 50) -> list[dict[str, object]]:
        return [
            {
                "id": task.id,
                "event_key": task.event_key,
                "endpoint": task.endpoint,
                "attempts": task.attempts,
                "last_error": task.last_error,
            }
            for task in self._queue.failed_tasks(limit)
        ]

    def requeue_delivery(self, task_id: str) -> dict[str, object]:
        return {"task_id": task_id, "requeued": self._queue.requeue_failed(task_id)}

    def get_commission_audit(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[dict[str, object]]:
        if status is not None and status not in (
            CommissionStatus.PENDING,
            *CommissionStatus.TERMINAL,
        ):
            raise ValueError(f"unsupported commission status: {status}")
        return self._ledger.entries(status=status, limit=limit)

    def get_system_stats(self) -> dict[str, object]:
        return {
            "tables": self._store.read_system_counts(),
            "deliveries": self._queue.status_counts(),
            "generated_at": self._now().isoformat(),
        }

    def health_check(self) -> dict[str, object]:
        checks: dict[str, object] = {}
        try:
            checks["database"] = bool(self._store.ping())
        except Exception as error:
            LOGGER.warning("database health check failed: %s", error)
            checks["database"] = False
        try:
            checks["chain_head"] = self._chain.get_block_number()
            checks["chain"] = True
        except ChainReadError as error:
            LOGGER.warning("chain health check failed: %s", error)
            checks["chain"] = False
        checks["healthy"] = bool(checks["database"] and checks["chain"])
        checks["checked_at"] = self._now().isoformat()
        return checks
