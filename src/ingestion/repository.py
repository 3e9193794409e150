import threading
from collections import Counter
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from .models import CommissionStatus, DeliveryStatus, EventType

MEMBER_EVENT_TYPES = {
    EventType.MEMBER_REGISTERED.value,
    EventType.PLAN_UPGRADED.value,
    EventType.MEMBER_EXITED.value,
}

PLAN_EVENT_TYPES = {EventType.MEMBER_REGISTERED.value, EventType.PLAN_UPGRADED.value}


def _in_window(
    value: Optional[datetime], start: Optional[datetime], end: Optional[datetime]
) -> bool:
    if value is None:
        return False
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


class InMemoryRepository:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.domain_events: dict[str, dict[str, Any]] = {}
        self.chain_cursors: dict[str, int] = {}
        self.delivery_tasks: dict[str, dict[str, Any]] = {}
        self.referral_edges: dict[str, dict[str, Any]] = {}
        self.commission_entries: dict[tuple[str, int], dict[str, Any]] = {}
        self.membership_mirror: dict[str, dict[str, Any]] = {}
        self.job_leases: dict[str, dict[str, Any]] = {}

    # domain events

    def write_domain_event(self, row: Mapping[str, object]) -> bool:
        with self._lock:
            key = str(row["event_key"])
            if key in self.domain_events:
                return False
            stored = dict(row)
            stored["archived_at"] = None
            self.domain_events[key] = stored
            return True

    def read_domain_event(self, event_key: str) -> Optional[dict[str, object]]:
        with self._lock:
            row = self.domain_events.get(event_key)
            return dict(row) if row is not None else None

    def read_known_member_wallets(self) -> list[str]:
        with self._lock:
            wallets = set(self.membership_mirror)
            for row in self.domain_events.values():
                if row["event_type"] in MEMBER_EVENT_TYPES:
                    payload = row["payload"]
                    if isinstance(payload, Mapping) and payload.get("member"):
                        wallets.add(str(payload["member"]))
            return sorted(wallets)

    def read_member_plan_at(
        self, member: str, block_number: int, log_index: int
    ) -> Optional[int]:
        with self._lock:
            candidates = []
            for row in self.domain_events.values():
                payload = row["payload"]
                if row["event_type"] not in PLAN_EVENT_TYPES or not isinstance(payload, Mapping):
                    continue
                position = (
                    int(str(row["source_block_number"])),
                    int(str(row["source_log_index"])),
                )
                if payload.get("member") == member and position < (block_number, log_index):
                    plan = payload.get("new_plan_id", payload.get("plan_id"))
                    candidates.append((position, plan))
            if not candidates:
                return None
            _, plan = max(candidates, key=lambda candidate: candidate[0])
            return None if plan is None else int(str(plan))

    def archive_settled_events(self, older_than: datetime, now: datetime) -> int:
        with self._lock:
            open_keys = {
                str(task["event_key"])
                for task in self.delivery_tasks.values()
                if task["status"] not in DeliveryStatus.TERMINAL
            }
            open_keys.update(
                f"{tx_hash}:{log_index}"
                for (tx_hash, log_index), entry in self.commission_entries.items()
                if entry["status"] == CommissionStatus.PENDING
            )
            archived = 0
            for key, row in self.domain_events.items():
                if row["archived_at"] is not None or key in open_keys:
                    continue
                observed_at = row["observed_at"]
                if isinstance(observed_at, datetime) and observed_at < older_than:
                    row["archived_at"] = now
                    archived += 1
            return archived

    def read_chain_cursor(self, name: str) -> Optional[int]:
        with self._lock:
            return self.chain_cursors.get(name)

    def write_chain_cursor(self, name: str, block_number: int, now: datetime) -> None:
        with self._lock:
            self.chain_cursors[name] = block_number

    # delivery tasks

    def insert_delivery_task(self, row: Mapping[str, object]) -> bool:
        with self._lock:
            for task in self.delivery_tasks.values():
                if task["event_key"] == row["event_key"] and task["endpoint"] == row["endpoint"]:
                    return False
            stored = dict(row)
            stored.setdefault("lease_token", None)
            stored.setdefault("lease_expires_at", None)
            stored.setdefault("last_error", None)
            self.delivery_tasks[str(row["id"])] = stored
            return True

    def lease_delivery_tasks(
        self, limit: int, now: datetime, lease_expires_at: datetime
    ) -> list[dict[str, object]]:
        with self._lock:
            ready = [
                task
                for task in self.delivery_tasks.values()
                if (
                    task["status"] == DeliveryStatus.PENDING
                    and task["next_attempt_at"] <= now
                )
                or (
                    task["status"] == DeliveryStatus.IN_FLIGHT
                    and task["lease_expires_at"] is not None
                    and task["lease_expires_at"] <= now
                )
            ]
            ready.sort(key=lambda task: (task["next_attempt_at"], task["created_at"]))
            leased: list[dict[str, object]] = []
            for task in ready[:limit]:
                task["status"] = DeliveryStatus.IN_FLIGHT
                task["lease_token"] = str(uuid4())
                task["lease_expires_at"] = lease_expires_at
                task["updated_at"] = now
                leased.append(dict(task))
            return leased

    def _owned_task(self, task_id: str, lease_token: str) -> Optional[dict[str, Any]]:
        task = self.delivery_tasks.get(task_id)
        if task is None:
            return None
        if task["status"] != DeliveryStatus.IN_FLIGHT or task["lease_token"] != lease_token:
            return None
        return task

    def mark_delivery_delivered(self, task_id: str, lease_token: str, now: datetime) -> bool:
        with self._lock:
            task = self._owned_task(task_id, lease_token)
            if task is None:
                return False
            task.update(
                status=DeliveryStatus.DELIVERED,
                lease_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            return True

    def mark_delivery_retry(
        self,
        task_id: str,
        lease_token: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        with self._lock:
            task = self._owned_task(task_id, lease_token)
            if task is None:
                return False
            task.update(
                status=DeliveryStatus.PENDING,
                attempts=attempts,
                next_attempt_at=next_attempt_at,
                last_error=error,
                lease_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            return True

    def mark_delivery_failed(
        self, task_id: str, lease_token: str, attempts: int, error: str, now: datetime
    ) -> bool:
        with self._lock:
            task = self._owned_task(task_id, lease_token)
            if task is None:
                return False
            task.update(
                status=DeliveryStatus.FAILED,
                attempts=attempts,
                last_error=error,
                lease_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            return True

    def requeue_failed_delivery_task(self, task_id: str, now: datetime) -> bool:
        with self._lock:
            task = self.delivery_tasks.get(task_id)
            if task is None or task["status"] != DeliveryStatus.FAILED:
                return False
            task.update(
                status=DeliveryStatus.PENDING,
                attempts=0,
                next_attempt_at=now,
                updated_at=now,
            )
            return True

    def read_delivery_task(self, task_id: str) -> Optional[dict[str, object]]:
        with self._lock:
            task = self.delivery_tasks.get(task_id)
            return dict(task) if task is not None else None

    def read_failed_delivery_tasks(self, limit: int = 50) -> list[dict[str, object]]:
        with self._lock:
            failed = [
                dict(task)
                for task in self.delivery_tasks.values()
                if task["status"] == DeliveryStatus.FAILED
            ]
            failed.sort(key=lambda task: task["updated_at"], reverse=True)
            return failed[:limit]

    def read_delivery_status_counts(self) -> dict[str, int]:
        with self._lock:
            counts = Counter(str(task["status"]) for task in self.delivery_tasks.values())
            return {
                status: counts.get(status, 0)
                for status in (
                    DeliveryStatus.PENDING,
                    DeliveryStatus.IN_FLIGHT,
                    DeliveryStatus.DELIVERED,
                    DeliveryStatus.FAILED,
                )
            }

    # referral graph and commission journal

    def assign_referral_edge(
        self, referrer: str, referee: str, source_event_key: str, now: datetime
    ) -> str:
        with self._lock:
            edge = self.referral_edges.setdefault(
                referee,
                {
                    "referrer": referrer,
                    "referee": referee,
                    "source_event_key": source_event_key,
                    "created_at": now,
                },
            )
            return str(edge["referrer"])

    def read_referral_edge(self, referee: str) -> Optional[dict[str, object]]:
        with self._lock:
            edge = self.referral_edges.get(referee)
            return dict(edge) if edge is not None else None

    def insert_commission_entry(self, row: Mapping[str, object]) -> bool:
        with self._lock:
            key = (str(row["source_tx_hash"]), int(str(row["source_log_index"])))
            if key in self.commission_entries:
                return False
            stored = dict(row)
            stored.setdefault("completed_at", None)
            stored.setdefault("archived_at", None)
            self.commission_entries[key] = stored
            return True

    def read_commission_entry(self, tx_hash: str, log_index: int) -> Optional[dict[str, object]]:
        with self._lock:
            entry = self.commission_entries.get((tx_hash, log_index))
            return dict(entry) if entry is not None else None

    def transition_commission_entry(
        self,
        tx_hash: str,
        log_index: int,
        status: str,
        note: Optional[str],
        now: datetime,
    ) -> bool:
        with self._lock:
            entry = self.commission_entries.get((tx_hash, log_index))
            if entry is None or entry["status"] != CommissionStatus.PENDING:
                return False
            entry["status"] = status
            entry["note"] = note
            entry["updated_at"] = now
            if status == CommissionStatus.COMPLETED:
                entry["completed_at"] = now
            return True

    def read_commission_entries(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[dict[str, object]]:
        with self._lock:
            rows = [
                dict(entry)
                for entry in self.commission_entries.values()
                if entry.get("archived_at") is None
                and (status is None or entry["status"] == status)
            ]
            rows.sort(key=lambda entry: entry["created_at"], reverse=True)
            return rows[:limit]

    def read_pending_commission_entries(self, limit: int = 100) -> list[dict[str, object]]:
        with self._lock:
            rows = [
                dict(entry)
                for entry in self.commission_entries.values()
                if entry["status"] == CommissionStatus.PENDING
            ]
            rows.sort(key=lambda entry: entry["created_at"])
            return rows[:limit]

    def _completed(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> list[dict[str, Any]]:
        return [
            entry
            for entry in self.commission_entries.values()
            if entry["status"] == CommissionStatus.COMPLETED
            and _in_window(entry.get("completed_at"), start, end)
        ]

    def read_commission_stats(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, object]:
        with self._lock:
            rows = [entry for entry in self._completed(start, end) if entry["referrer"] == referrer]
            total_amount = sum(int(str(entry["amount"])) for entry in rows)
            total_commission = sum(int(str(entry["commission_amount"])) for entry in rows)
            distribution = Counter(int(str(entry["plan_level"])) for entry in rows)
            return {
                "referrer": referrer,
                "total_referrals": len(rows),
                "total_amount": str(total_amount),
                "total_commission": str(total_commission),
                "average_commission": str(total_commission // len(rows)) if rows else "0",
                "plan_distribution": dict(sorted(distribution.items())),
            }

    def read_top_referrers(
        self, since: Optional[datetime] = None, limit: int = 10
    ) -> list[dict[str, object]]:
        with self._lock:
            totals: dict[str, list[int]] = {}
            for entry in self._completed(since, None):
                bucket = totals.setdefault(str(entry["referrer"]), [0, 0])
                bucket[0] += int(str(entry["commission_amount"]))
                bucket[1] += 1
            ranked = sorted(totals.items(), key=lambda item: (-item[1][0], item[0]))
            return [
                {
                    "referrer": referrer,
                    "total_commission": str(commission),
                    "total_referrals": count,
                    "average_commission": str(commission // count),
                }
                for referrer, (commission, count) in ranked[:limit]
            ]

    def read_daily_earnings(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, object]]:
        with self._lock:
            days: dict[str, int] = {}
            for entry in self._completed(start, end):
                if entry["referrer"] != referrer:
                    continue
                completed_at = entry["completed_at"]
                day = completed_at.date().isoformat()
                days[day] = days.get(day, 0) + int(str(entry["commission_amount"]))
            return [
                {"day": day, "total_commission": str(total)}
                for day, total in sorted(days.items())
            ]

    def archive_failed_commission_entries(self, older_than: datetime, now: datetime) -> int:
        with self._lock:
            stale = [
                entry
                for entry in self.commission_entries.values()
                if entry["status"] == CommissionStatus.FAILED
                and entry.get("archived_at") is None
                and entry["created_at"] < older_than
            ]
            for entry in stale:
                entry["archived_at"] = now
            return len(stale)

    # membership mirror

    def credit_membership_commission(
        self, wallet_address: str, commission_units: int, now: datetime
    ) -> bool:
        with self._lock:
            row = self.membership_mirror.get(wallet_address)
            if row is None:
                return False
            row["total_earnings"] = str(int(str(row.get("total_earnings") or 0)) + commission_units)
            row["updated_at"] = now
            return True

    def read_membership(self, wallet_address: str) -> Optional[dict[str, object]]:
        with self._lock:
            row = self.membership_mirror.get(wallet_address)
            return dict(row) if row is not None else None

    def upsert_membership(
        self, wallet_address: str, fields: Mapping[str, object], now: datetime
    ) -> None:
        with self._lock:
            row = self.membership_mirror.setdefault(
                wallet_address, {"wallet_address": wallet_address}
            )
            row.update(fields)
            row["synced_at"] = now
            row["updated_at"] = now

    # singleton job coordination

    def acquire_job_lease(
        self, name: str, holder: str, now: datetime, expires_at: datetime
    ) -> bool:
        with self._lock:
            lease = self.job_leases.get(name)
            if lease is not None and lease["holder"] != holder and lease["expires_at"] > now:
                return False
            self.job_leases[name] = {"holder": holder, "expires_at": expires_at}
            return True

    def release_job_lease(self, name: str, holder: str) -> None:
        with self._lock:
            lease = self.job_leases.get(name)
            if lease is not None and lease["holder"] == holder:
                del self.job_leases[name]

    def read_system_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "domain_events": len(self.domain_events),
                "delivery_tasks": len(self.delivery_tasks),
                "referral_edges": len(self.referral_edges),
                "commission_entries": len(self.commission_entries),
                "membership_mirror": len(self.membership_mirror),
            }

    def ping(self) -> bool:
        return True
