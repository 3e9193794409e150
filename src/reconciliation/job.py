import logging
import socket
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol
from uuid import uuid4

from src.ingestion.chain_client import ChainClientProtocol, ChainReadError
from src.referral.ledger import ReferralLedger

LOGGER = logging.getLogger(__name__)

JOB_NAME = "reconciliation"


class MirrorStoreProtocol(Protocol):
    def read_membership(self, wallet_address: str) -> Optional[dict[str, object]]: ...

    def upsert_membership(
        self, wallet_address: str, fields: Mapping[str, object], now: datetime
    ) -> None: ...

    def read_known_member_wallets(self) -> list[str]: ...

    def acquire_job_lease(
        self, name: str, holder: str, now: datetime, expires_at: datetime
    ) -> bool: ...

    def release_job_lease(self, name: str, holder: str) -> None: ...


@dataclass(frozen=True)
class ReconciliationResult:
    wallet_address: str
    status: str
    changed_fields: tuple[str, ...] = ()
    error: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_address": self.wallet_address,
            "status": self.status,
            "changed_fields": list(self.changed_fields),
            "error": self.error,
        }


@dataclass
class ReconciliationRun:
    results: list[ReconciliationResult] = field(default_factory=list)
    commissions_retried: int = 0

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.results:
            counts[result.status] = counts.get(result.status, 0) + 1
        return counts

    def to_dict(self) -> dict[str, object]:
        return {
            "wallets": len(self.results),
            "statuses": self.counts(),
            "commissions_retried": self.commissions_retried,
        }


def _comparable(value: object) -> object:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc) if value.tzinfo else value
    if isinstance(value, bool) or value is None:
        return value
    return str(value)


def diff_member_fields(
    current: Optional[Mapping[str, object]], desired: Mapping[str, object]
) -> dict[str, object]:
    if current is None:
        return dict(desired)
    return {
        key: value
        for key, value in desired.items()
        if _comparable(current.get(key)) != _comparable(value)
    }


def _default_holder() -> str:
    return f"{socket.gethostname()}:{uuid4().hex[:8]}"


class ReconciliationJob:
    def __init__(
        self,
        store: MirrorStoreProtocol,
        chain: ChainClientProtocol,
        ledger: Optional[ReferralLedger] = None,
        lease_seconds: float = 600.0,
        holder: Optional[str] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._chain = chain
        self._ledger = ledger
        self._lease = timedelta(seconds=lease_seconds)
        self._holder = holder or _default_holder()
        self._now = now

    def reconcile(self, wallet_address: str) -> ReconciliationResult:
        wallet = wallet_address.lower()
        try:
            state = self._chain.get_member_state(wallet)
        except ChainReadError as error:
            LOGGER.warning("reconciliation of %s skipped: %s", wallet, error)
            return ReconciliationResult(wallet_address=wallet, status="failed", error=str(error))

        current = self._store.read_membership(wallet)
        changes = diff_member_fields(current, state.to_mirror_fields())
        if current is not None and not changes:
            return ReconciliationResult(wallet_address=wallet, status="in_sync")

        self._store.upsert_membership(wallet, changes, self._now())
        status = "created" if current is None else "repaired"
        if status == "repaired":
            LOGGER.info("repaired mirror for %s: %s", wallet, sorted(changes))
        return ReconciliationResult(
            wallet_address=wallet,
            status=status,
            changed_fields=tuple(sorted(changes)),
        )

    def reconcile_all(self) -> ReconciliationRun:
        run = ReconciliationRun()
        for wallet in self._store.read_known_member_wallets():
            try:
                run.results.append(self.reconcile(wallet))
            except Exception as error:
                LOGGER.exception("reconciliation of %s crashed", wallet)
                run.results.append(
                    ReconciliationResult(wallet_address=wallet, status="failed", error=str(error))
                )
        if self._ledger is not None:
            run.commissions_retried = len(self._ledger.retry_pending())
        LOGGER.info("reconciliation pass: %s", run.to_dict())
        return run

    def _hold_lease(self) -> bool:
        now = self._now()
        return self._store.acquire_job_lease(JOB_NAME, self._holder, now, now + self._lease)

    def run_once(self) -> Optional[ReconciliationRun]:
        if not self._hold_lease():
            LOGGER.debug("reconciliation lease held elsewhere; %s standing by", self._holder)
            return None
        return self.reconcile_all()

    def run_forever(self, stop: threading.Event, interval_seconds: float = 300.0) -> None:
        LOGGER.info("reconciliation job started as %s", self._holder)
        try:
            while not stop.is_set():
                try:
                    self.run_once()
                except Exception:
                    LOGGER.exception("reconciliation pass failed")
                stop.wait(interval_seconds)
        finally:
            self._store.release_job_lease(JOB_NAME, self._holder)
            LOGGER.info("reconciliation job stopped")
