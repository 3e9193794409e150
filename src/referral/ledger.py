import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from src.ingestion.chain_client import ChainClientProtocol, ChainReadError, TransactionReceipt
from src.ingestion.models import (
    ZERO_ADDRESS,
    CommissionStatus,
    DomainEvent,
    EventType,
    MemberRegisteredPayload,
    ReferralPaidPayload,
)
from src.ingestion.normalizer import DEFAULT_TOKEN_DECIMALS, LogDecodeError, decode_log, format_units

from .tiers import commission_rate, compute_commission

LOGGER = logging.getLogger(__name__)


class LedgerValidationError(Exception):
    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class ReferralStoreProtocol(Protocol):
    def assign_referral_edge(
        self, referrer: str, referee: str, source_event_key: str, now: datetime
    ) -> str: ...

    def read_referral_edge(self, referee: str) -> Optional[dict[str, object]]: ...

    def read_member_plan_at(
        self, member: str, block_number: int, log_index: int
    ) -> Optional[int]: ...

    def insert_commission_entry(self, row: Mapping[str, object]) -> bool: ...

    def read_commission_entry(self, tx_hash: str, log_index: int) -> Optional[dict[str, object]]: ...

    def transition_commission_entry(
        self,
        tx_hash: str,
        log_index: int,
        status: str,
        note: Optional[str],
        now: datetime,
    ) -> bool: ...

    def read_pending_commission_entries(self, limit: int = 100) -> list[dict[str, object]]: ...

    def read_commission_entries(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[dict[str, object]]: ...

    def read_commission_stats(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, object]: ...

    def read_top_referrers(
        self, since: Optional[datetime] = None, limit: int = 10
    ) -> list[dict[str, object]]: ...

    def read_daily_earnings(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, object]]: ...

    def archive_failed_commission_entries(self, older_than: datetime, now: datetime) -> int: ...

    def credit_membership_commission(
        self, wallet_address: str, commission_units: int, now: datetime
    ) -> bool: ...


@dataclass(frozen=True)
class CommissionOutcome:
    event_key: str
    status: str
    commission_amount: str
    note: Optional[str] = None
    created: bool = False


def _outcome(row: Mapping[str, object], created: bool = False) -> CommissionOutcome:
    note = row.get("note")
    return CommissionOutcome(
        event_key=f"{row['source_tx_hash']}:{row['source_log_index']}",
        status=str(row["status"]),
        commission_amount=str(row.get("commission_amount") or "0"),
        note=None if note is None else str(note),
        created=created,
    )


class ReferralLedger:
    def __init__(
        self,
        store: ReferralStoreProtocol,
        chain: ChainClientProtocol,
        decimals: int = DEFAULT_TOKEN_DECIMALS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._chain = chain
        self._decimals = decimals
        self._now = now

    def record(self, event: DomainEvent) -> Optional[CommissionOutcome]:
        if isinstance(event.payload, MemberRegisteredPayload):
            payload = event.payload
            if payload.upline != ZERO_ADDRESS:
                self.assign_edge(payload.upline, payload.member, event.event_key)
            return None
        if isinstance(event.payload, ReferralPaidPayload):
            return self.record_commission(event)
        return None

    def assign_edge(self, referrer: str, referee: str, source_event_key: str) -> bool:
        if referrer == referee:
            LOGGER.warning("rejecting self-referral for %s (%s)", referee, source_event_key)
            return False
        owner = self._store.assign_referral_edge(referrer, referee, source_event_key, self._now())
        if owner != referrer:
            LOGGER.warning(
                "rejecting referral edge %s -> %s: referee already belongs to %s",
                referrer,
                referee,
                owner,
            )
            return False
        return True

    def _plan_level(self, event: DomainEvent, payload: ReferralPaidPayload) -> int:
        if payload.plan_level is not None:
            return payload.plan_level
        # plan in force at the payout position
        recorded = self._store.read_member_plan_at(
            payload.referee, event.source_block_number, event.source_log_index
        )
        if recorded is not None:
            return recorded
        LOGGER.debug("no stored plan history for %s; reading current plan", payload.referee)
        state = self._chain.get_member_state(payload.referee)
        if state.plan_id <= 0:
            raise LedgerValidationError("plan_level_unknown", payload.referee)
        return state.plan_id

    def _amount(self, payload: ReferralPaidPayload) -> int:
        if not payload.amount_units.isdigit():
            raise LedgerValidationError("malformed_amount", payload.amount_units)
        amount = int(payload.amount_units)
        if amount <= 0:
            raise LedgerValidationError("non_positive_amount", payload.amount_units)
        return amount

    def _base_row(self, event: DomainEvent, payload: ReferralPaidPayload) -> dict[str, object]:
        now = self._now()
        return {
            "source_tx_hash": event.source_tx_hash,
            "source_log_index": event.source_log_index,
            "source_block_number": event.source_block_number,
            "referrer": payload.referrer,
            "referee": payload.referee,
            "plan_level": payload.plan_level,
            "amount": payload.amount_units if payload.amount_units.isdigit() else "0",
            "commission_rate": None,
            "commission_amount": "0",
            "status": CommissionStatus.PENDING,
            "note": None,
            "created_at": now,
            "updated_at": now,
        }

    def _insert_failed(self, row: dict[str, object], reason: str) -> CommissionOutcome:
        row.update(status=CommissionStatus.FAILED, note=reason)
        created = self._store.insert_commission_entry(row)
        LOGGER.warning(
            "commission %s:%s recorded as failed: %s",
            row["source_tx_hash"],
            row["source_log_index"],
            reason,
        )
        if not created:
            existing = self._store.read_commission_entry(
                str(row["source_tx_hash"]), int(str(row["source_log_index"]))
            )
            if existing is not None:
                return _outcome(existing)
        return _outcome(row, created=created)

    def record_commission(self, event: DomainEvent) -> CommissionOutcome:
        payload = event.payload
        if not isinstance(payload, ReferralPaidPayload):
            raise TypeError(f"{event.event_type.value} is not a commission event")

        existing = self._store.read_commission_entry(event.source_tx_hash, event.source_log_index)
        if existing is not None:
            if existing["status"] in CommissionStatus.TERMINAL:
                return _outcome(existing)
            return self._confirm(existing)

        row = self._base_row(event, payload)
        try:
            amount = self._amount(payload)
            plan_level = self._plan_level(event, payload)
            rate = commission_rate(plan_level, payload.commission_rate)
        except LedgerValidationError as error:
            return self._insert_failed(row, error.reason)
        except ValueError as error:
            LOGGER.warning("commission %s failed validation: %s", event.event_key, error)
            return self._insert_failed(row, "invalid_plan_level")

        row.update(
            plan_level=plan_level,
            commission_rate=format(rate, "f"),
            commission_amount=str(compute_commission(amount, rate)),
        )
        if not self.assign_edge(payload.referrer, payload.referee, event.event_key):
            return self._insert_failed(row, "referral_edge_conflict")

        if not self._store.insert_commission_entry(row):
            current = self._store.read_commission_entry(
                event.source_tx_hash, event.source_log_index
            )
            if current is None or current["status"] in CommissionStatus.TERMINAL:
                return _outcome(current or row)
            return self._confirm(current)
        return self._confirm(row, created=True)

    def _verification_failure(
        self, row: Mapping[str, object], receipt: Optional[TransactionReceipt]
    ) -> Optional[str]:
        if receipt is None or receipt.block_number is None:
            return "transaction_not_found"
        if not receipt.succeeded:
            return "transaction_reverted"

        log_index = int(str(row["source_log_index"]))
        log = next((entry for entry in receipt.logs if entry.log_index == log_index), None)
        if log is None:
            return "log_not_found"
        try:
            confirmed = decode_log(log, self._now(), self._decimals)
        except LogDecodeError:
            return "log_not_decodable"

        payload = confirmed.payload
        if confirmed.event_type is not EventType.REFERRAL_PAID or not isinstance(
            payload, ReferralPaidPayload
        ):
            return "event_type_mismatch"
        if payload.amount_units != str(row["amount"]):
            return "amount_mismatch"
        if payload.referrer != row["referrer"] or payload.referee != row["referee"]:
            return "participant_mismatch"
        return None

    def _confirm(self, row: Mapping[str, object], created: bool = False) -> CommissionOutcome:
        tx_hash = str(row["source_tx_hash"])
        log_index = int(str(row["source_log_index"]))
        try:
            receipt = self._chain.get_transaction_receipt(tx_hash)
        except ChainReadError as error:
            LOGGER.warning("commission %s:%s left pending: %s", tx_hash, log_index, error)
            return _outcome(row, created=created)

        reason = self._verification_failure(row, receipt)
        status = CommissionStatus.FAILED if reason else CommissionStatus.COMPLETED
        now = self._now()
        if not self._store.transition_commission_entry(tx_hash, log_index, status, reason, now):
            current = self._store.read_commission_entry(tx_hash, log_index)
            return _outcome(current or row, created=created)

        if status == CommissionStatus.COMPLETED:
            commission = int(str(row["commission_amount"]))
            self._store.credit_membership_commission(str(row["referrer"]), commission, now)
            LOGGER.info(
                "commission %s:%s completed: %s credited to %s",
                tx_hash,
                log_index,
                format_units(commission, self._decimals),
                row["referrer"],
            )
        else:
            LOGGER.warning("commission %s:%s failed confirmation: %s", tx_hash, log_index, reason)

        return CommissionOutcome(
            event_key=f"{tx_hash}:{log_index}",
            status=status,
            commission_amount=str(row["commission_amount"]),
            note=reason,
            created=created,
        )

    def retry_pending(self, limit: int = 100) -> list[CommissionOutcome]:
        outcomes: list[CommissionOutcome] = []
        for row in self._store.read_pending_commission_entries(limit):
            try:
                outcomes.append(self._confirm(row))
            except Exception:
                LOGGER.exception(
                    "retrying commission %s:%s crashed",
                    row.get("source_tx_hash"),
                    row.get("source_log_index"),
                )
        return outcomes

    def _with_display(self, stats: dict[str, object]) -> dict[str, object]:
        for key in ("total_amount", "total_commission", "average_commission"):
            if key in stats:
                stats[f"{key}_formatted"] = format_units(int(str(stats[key])), self._decimals)
        return stats

    def commission_stats(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, object]:
        stats = self._store.read_commission_stats(referrer.lower(), start, end)
        return self._with_display(dict(stats))

    def top_referrers(
        self, since: Optional[datetime] = None, limit: int = 10
    ) -> list[dict[str, object]]:
        return [
            self._with_display(dict(row))
            for row in self._store.read_top_referrers(since=since, limit=limit)
        ]

    def earnings_by_day(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, object]]:
        return [
            self._with_display(dict(row))
            for row in self._store.read_daily_earnings(referrer.lower(), start, end)
        ]

    def entries(self, status: Optional[str] = None, limit: int = 50) -> list[dict[str, object]]:
        return self._store.read_commission_entries(status=status, limit=limit)

    def upline_of(self, referee: str) -> Optional[str]:
        edge = self._store.read_referral_edge(referee.lower())
        return None if edge is None else str(edge["referrer"])

    def cleanup_failed(self, older_than: datetime) -> int:
        """Archive old failed entries. Archived keys still block re-insertion."""
        archived = self._store.archive_failed_commission_entries(older_than, self._now())
        if archived:
            LOGGER.info(
                "archived %d failed commission entr(ies) older than %s", archived, older_than
            )
        return archived
