import json
from collections.abc import Callable, Mapping
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, cast

import psycopg2

from .repository import MEMBER_EVENT_TYPES, PLAN_EVENT_TYPES


MIRROR_COLUMNS = (
    "upline",
    "plan_id",
    "cycle_number",
    "total_earnings",
    "total_referrals",
    "registered_at",
    "is_active",
)

MONEY_COLUMNS = {"amount", "commission_amount", "total_amount", "total_commission", "total_earnings"}

DELIVERY_COLUMNS = """
    id,
    event_key,
    endpoint,
    status,
    attempts,
    next_attempt_at,
    lease_token,
    lease_expires_at,
    last_error,
    created_at,
    updated_at
"""

COMMISSION_COLUMNS = """
    source_tx_hash,
    source_log_index,
    source_block_number,
    referrer,
    referee,
    plan_level,
    amount,
    commission_rate,
    commission_amount,
    status,
    note,
    created_at,
    updated_at,
    completed_at,
    archived_at
"""


class CursorProtocol(Protocol):
    description: list[tuple[str]]
    rowcount: int

    def execute(self, sql: str, params: Optional[tuple[object, ...]] = None) -> None: ...

    def fetchall(self) -> list[tuple[object, ...]]: ...

    def fetchone(self) -> Optional[tuple[object, ...]]: ...

    def close(self) -> None: ...


class ConnectionProtocol(Protocol):
    def cursor(self) -> CursorProtocol: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close(self) -> None: ...


def _normalize_row(row: dict[str, object]) -> dict[str, object]:
    for key, value in row.items():
        if isinstance(value, Decimal):
            if key in MONEY_COLUMNS:
                row[key] = str(int(value))
            elif key == "commission_rate":
                row[key] = format(value.normalize(), "f")
        elif key == "payload" and isinstance(value, str):
            row[key] = json.loads(value)
    return row


def _to_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, Decimal)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(value)
    return 0


class PostgresRepository:
    def __init__(
        self,
        dsn: str = "",
        connection_factory: Optional[Callable[[], ConnectionProtocol]] = None,
    ) -> None:
        self._dsn: str = dsn
        self._connection_factory: Optional[Callable[[], ConnectionProtocol]] = (
            connection_factory
        )

    def _connect(self) -> ConnectionProtocol:
        if self._connection_factory is not None:
            return self._connection_factory()
        if not self._dsn:
            raise ValueError("dsn is required when no connection_factory is provided")
        return cast(
            ConnectionProtocol,
            cast(object, psycopg2.connect(self._dsn)),
        )

    def _write(self, sql: str, params: tuple[object, ...]) -> int:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(sql, params)
            affected = cursor.rowcount
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()
        return affected

    def _read_all(self, sql: str, params: tuple[object, ...]) -> list[dict[str, object]]:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description]
        finally:
            cursor.close()
            conn.close()
        return [_normalize_row(dict(zip(columns, row))) for row in rows]

    def _read_one(self, sql: str, params: tuple[object, ...]) -> Optional[dict[str, object]]:
        rows = self._read_all(sql, params)
        return rows[0] if rows else None

    # domain events

    def write_domain_event(self, row: Mapping[str, object]) -> bool:
        affected = self._write(
            """
            INSERT INTO domain_events(
                event_key,
                event_type,
                source_tx_hash,
                source_block_number,
                source_log_index,
                payload,
                schema_version,
                observed_at
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (event_key) DO NOTHING
            """,
            (
                row["event_key"],
                row["event_type"],
                row["source_tx_hash"],
                row["source_block_number"],
                row["source_log_index"],
                json.dumps(row["payload"], default=str),
                row.get("schema_version", "v1"),
                row["observed_at"],
            ),
        )
        return affected == 1

    def read_domain_event(self, event_key: str) -> Optional[dict[str, object]]:
        return self._read_one(
            """
            SELECT
                event_key,
                event_type,
                source_tx_hash,
                source_block_number,
                source_log_index,
                payload,
                schema_version,
                observed_at,
                archived_at
            FROM domain_events
            WHERE event_key = %s
            """,
            (event_key,),
        )

    def read_known_member_wallets(self) -> list[str]:
        rows = self._read_all(
            """
            SELECT wallet_address FROM membership_mirror
            UNION
            SELECT payload->>'member' AS wallet_address
            FROM domain_events
            WHERE event_type = ANY(%s) AND payload->>'member' IS NOT NULL
            ORDER BY wallet_address
            """,
            (sorted(MEMBER_EVENT_TYPES),),
        )
        return [str(row["wallet_address"]) for row in rows]

    def read_member_plan_at(
        self, member: str, block_number: int, log_index: int
    ) -> Optional[int]:
        row = self._read_one(
            """
            SELECT COALESCE(payload->>'new_plan_id', payload->>'plan_id') AS plan_id
            FROM domain_events
            WHERE event_type = ANY(%s)
              AND payload->>'member' = %s
              AND (source_block_number, source_log_index) < (%s, %s)
            ORDER BY source_block_number DESC, source_log_index DESC
            LIMIT 1
            """,
            (sorted(PLAN_EVENT_TYPES), member, block_number, log_index),
        )
        if row is None or row["plan_id"] is None:
            return None
        return int(str(row["plan_id"]))

    def archive_settled_events(self, older_than: datetime, now: datetime) -> int:
        return self._write(
            """
            UPDATE domain_events e
            SET archived_at = %s
            WHERE e.archived_at IS NULL
              AND e.observed_at < %s
              AND NOT EXISTS (
                  SELECT 1 FROM delivery_tasks t
                  WHERE t.event_key = e.event_key
                    AND t.status IN ('pending', 'in_flight')
              )
              AND NOT EXISTS (
                  SELECT 1 FROM commission_entries c
                  WHERE c.source_tx_hash = e.source_tx_hash
                    AND c.source_log_index = e.source_log_index
                    AND c.status = 'pending'
              )
            """,
            (now, older_than),
        )

    def read_chain_cursor(self, name: str) -> Optional[int]:
        row = self._read_one(
            "SELECT last_block FROM ingestion_cursors WHERE name = %s",
            (name,),
        )
        return None if row is None else _to_int(row["last_block"])

    def write_chain_cursor(self, name: str, block_number: int, now: datetime) -> None:
        self._write(
            """
            INSERT INTO ingestion_cursors(name, last_block, updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (name) DO UPDATE
            SET last_block = EXCLUDED.last_block, updated_at = EXCLUDED.updated_at
            """,
            (name, block_number, now),
        )

    # delivery tasks

    def insert_delivery_task(self, row: Mapping[str, object]) -> bool:
        affected = self._write(
            """
            INSERT INTO delivery_tasks(
                id,
                event_key,
                endpoint,
                status,
                attempts,
                next_attempt_at,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT ON CONSTRAINT delivery_tasks_event_endpoint_key DO NOTHING
            """,
            (
                row["id"],
                row["event_key"],
                row["endpoint"],
                row["status"],
                row["attempts"],
                row["next_attempt_at"],
                row["created_at"],
                row["updated_at"],
            ),
        )
        return affected == 1

    def lease_delivery_tasks(
        self, limit: int, now: datetime, lease_expires_at: datetime
    ) -> list[dict[str, object]]:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(
                """
                WITH ready AS (
                    SELECT id
                    FROM delivery_tasks
                    WHERE (status = 'pending' AND next_attempt_at <= %s)
                       OR (status = 'in_flight' AND lease_expires_at <= %s)
                    ORDER BY next_attempt_at, created_at
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE delivery_tasks t
                SET status = 'in_flight',
                    lease_token = gen_random_uuid()::text,
                    lease_expires_at = %s,
                    updated_at = %s
                FROM ready
                WHERE t.id = ready.id
                RETURNING
                    t.id,
                    t.event_key,
                    t.endpoint,
                    t.status,
                    t.attempts,
                    t.next_attempt_at,
                    t.lease_token,
                    t.lease_expires_at,
                    t.last_error,
                    t.created_at,
                    t.updated_at
                """,
                (now, now, limit, lease_expires_at, now),
            )
            rows = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description]
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()
        return [dict(zip(columns, row)) for row in rows]

    def mark_delivery_delivered(self, task_id: str, lease_token: str, now: datetime) -> bool:
        affected = self._write(
            """
            UPDATE delivery_tasks
            SET status = 'delivered',
                lease_token = NULL,
                lease_expires_at = NULL,
                updated_at = %s
            WHERE id = %s AND status = 'in_flight' AND lease_token = %s
            """,
            (now, task_id, lease_token),
        )
        return affected == 1

    def mark_delivery_retry(
        self,
        task_id: str,
        lease_token: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        affected = self._write(
            """
            UPDATE delivery_tasks
            SET status = 'pending',
                attempts = %s,
                next_attempt_at = %s,
                last_error = %s,
                lease_token = NULL,
                lease_expires_at = NULL,
                updated_at = %s
            WHERE id = %s AND status = 'in_flight' AND lease_token = %s
            """,
            (attempts, next_attempt_at, error, now, task_id, lease_token),
        )
        return affected == 1

    def mark_delivery_failed(
        self, task_id: str, lease_token: str, attempts: int, error: str, now: datetime
    ) -> bool:
        affected = self._write(
            """
            UPDATE delivery_tasks
            SET status = 'failed',
                attempts = %s,
                last_error = %s,
                lease_token = NULL,
                lease_expires_at = NULL,
                updated_at = %s
            WHERE id = %s AND status = 'in_flight' AND lease_token = %s
            """,
            (attempts, error, now, task_id, lease_token),
        )
        return affected == 1

    def requeue_failed_delivery_task(self, task_id: str, now: datetime) -> bool:
        affected = self._write(
            """
            UPDATE delivery_tasks
            SET status = 'pending', attempts = 0, next_attempt_at = %s, updated_at = %s
            WHERE id = %s AND status = 'failed'
            """,
            (now, now, task_id),
        )
        return affected == 1

    def read_delivery_task(self, task_id: str) -> Optional[dict[str, object]]:
        return self._read_one(
            f"SELECT {DELIVERY_COLUMNS} FROM delivery_tasks WHERE id = %s",
            (task_id,),
        )

    def read_failed_delivery_tasks(self, limit: int = 50) -> list[dict[str, object]]:
        return self._read_all(
            f"""
            SELECT {DELIVERY_COLUMNS}
            FROM delivery_tasks
            WHERE status = 'failed'
            ORDER BY updated_at DESC
            LIMIT %s
            """,
            (limit,),
        )

    def read_delivery_status_counts(self) -> dict[str, int]:
        rows = self._read_all(
            "SELECT status, COUNT(*) AS total FROM delivery_tasks GROUP BY status",
            (),
        )
        counts = {"pending": 0, "in_flight": 0, "delivered": 0, "failed": 0}
        for row in rows:
            counts[str(row["status"])] = _to_int(row["total"])
        return counts

    # referral graph and commission journal

    def assign_referral_edge(
        self, referrer: str, referee: str, source_event_key: str, now: datetime
    ) -> str:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO referral_edges(referee, referrer, source_event_key, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (referee) DO NOTHING
                """,
                (referee, referrer, source_event_key, now),
            )
            cursor.execute(
                "SELECT referrer FROM referral_edges WHERE referee = %s",
                (referee,),
            )
            row = cursor.fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()
        return referrer if row is None else str(row[0])

    def read_referral_edge(self, referee: str) -> Optional[dict[str, object]]:
        return self._read_one(
            """
            SELECT referee, referrer, source_event_key, created_at
            FROM referral_edges
            WHERE referee = %s
            """,
            (referee,),
        )

    def insert_commission_entry(self, row: Mapping[str, object]) -> bool:
        affected = self._write(
            """
            INSERT INTO commission_entries(
                source_tx_hash,
                source_log_index,
                source_block_number,
                referrer,
                referee,
                plan_level,
                amount,
                commission_rate,
                commission_amount,
                status,
                note,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (source_tx_hash, source_log_index) DO NOTHING
            """,
            (
                row["source_tx_hash"],
                row["source_log_index"],
                row["source_block_number"],
                row["referrer"],
                row["referee"],
                row.get("plan_level"),
                row["amount"],
                row.get("commission_rate"),
                row["commission_amount"],
                row["status"],
                row.get("note"),
                row["created_at"],
                row["updated_at"],
            ),
        )
        return affected == 1

    def read_commission_entry(self, tx_hash: str, log_index: int) -> Optional[dict[str, object]]:
        return self._read_one(
            f"""
            SELECT {COMMISSION_COLUMNS}
            FROM commission_entries
            WHERE source_tx_hash = %s AND source_log_index = %s
            """,
            (tx_hash, log_index),
        )

    def transition_commission_entry(
        self,
        tx_hash: str,
        log_index: int,
        status: str,
        note: Optional[str],
        now: datetime,
    ) -> bool:
        affected = self._write(
            """
            UPDATE commission_entries
            SET status = %s,
                note = %s,
                updated_at = %s,
                completed_at = CASE WHEN %s = 'completed' THEN %s ELSE completed_at END
            WHERE source_tx_hash = %s AND source_log_index = %s AND status = 'pending'
            """,
            (status, note, now, status, now, tx_hash, log_index),
        )
        return affected == 1

    def read_commission_entries(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[dict[str, object]]:
        return self._read_all(
            f"""
            SELECT {COMMISSION_COLUMNS}
            FROM commission_entries
            WHERE archived_at IS NULL AND (%s::text IS NULL OR status = %s)
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (status, status, limit),
        )

    def read_pending_commission_entries(self, limit: int = 100) -> list[dict[str, object]]:
        return self._read_all(
            f"""
            SELECT {COMMISSION_COLUMNS}
            FROM commission_entries
            WHERE status = 'pending'
            ORDER BY created_at ASC
            LIMIT %s
            """,
            (limit,),
        )

    def read_commission_stats(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, object]:
        window = (start, start, end, end)
        totals = self._read_one(
            """
            SELECT
                COUNT(*) AS total_referrals,
                COALESCE(SUM(amount), 0) AS total_amount,
                COALESCE(SUM(commission_amount), 0) AS total_commission
            FROM commission_entries
            WHERE referrer = %s
              AND status = 'completed'
              AND (%s::timestamptz IS NULL OR completed_at >= %s)
              AND (%s::timestamptz IS NULL OR completed_at <= %s)
            """,
            (referrer, *window),
        ) or {"total_referrals": 0, "total_amount": "0", "total_commission": "0"}
        distribution_rows = self._read_all(
            """
            SELECT plan_level, COUNT(*) AS total
            FROM commission_entries
            WHERE referrer = %s
              AND status = 'completed'
              AND (%s::timestamptz IS NULL OR completed_at >= %s)
              AND (%s::timestamptz IS NULL OR completed_at <= %s)
            GROUP BY plan_level
            ORDER BY plan_level
            """,
            (referrer, *window),
        )

        count = _to_int(totals["total_referrals"])
        total_commission = int(str(totals["total_commission"]))
        return {
            "referrer": referrer,
            "total_referrals": count,
            "total_amount": str(totals["total_amount"]),
            "total_commission": str(total_commission),
            "average_commission": str(total_commission // count) if count else "0",
            "plan_distribution": {
                _to_int(row["plan_level"]): _to_int(row["total"]) for row in distribution_rows
            },
        }

    def read_top_referrers(
        self, since: Optional[datetime] = None, limit: int = 10
    ) -> list[dict[str, object]]:
        rows = self._read_all(
            """
            SELECT
                referrer,
                SUM(commission_amount) AS total_commission,
                COUNT(*) AS total_referrals
            FROM commission_entries
            WHERE status = 'completed'
              AND (%s::timestamptz IS NULL OR completed_at >= %s)
            GROUP BY referrer
            ORDER BY SUM(commission_amount) DESC, referrer ASC
            LIMIT %s
            """,
            (since, since, limit),
        )
        result: list[dict[str, object]] = []
        for row in rows:
            count = _to_int(row["total_referrals"])
            commission = int(str(row["total_commission"]))
            result.append(
                {
                    "referrer": row["referrer"],
                    "total_commission": str(commission),
                    "total_referrals": count,
                    "average_commission": str(commission // count) if count else "0",
                }
            )
        return result

    def read_daily_earnings(
        self,
        referrer: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, object]]:
        rows = self._read_all(
            """
            SELECT
                to_char(date_trunc('day', completed_at), 'YYYY-MM-DD') AS day,
                SUM(commission_amount) AS total_commission
            FROM commission_entries
            WHERE referrer = %s
              AND status = 'completed'
              AND (%s::timestamptz IS NULL OR completed_at >= %s)
              AND (%s::timestamptz IS NULL OR completed_at <= %s)
            GROUP BY 1
            ORDER BY 1
            """,
            (referrer, start, start, end, end),
        )
        return [{"day": row["day"], "total_commission": str(row["total_commission"])} for row in rows]

    def archive_failed_commission_entries(self, older_than: datetime, now: datetime) -> int:
        return self._write(
            """
            UPDATE commission_entries
            SET archived_at = %s
            WHERE status = 'failed' AND archived_at IS NULL AND created_at < %s
            """,
            (now, older_than),
        )

    # membership mirror

    def credit_membership_commission(
        self, wallet_address: str, commission_units: int, now: datetime
    ) -> bool:
        affected = self._write(
            """
            UPDATE membership_mirror
            SET total_earnings = total_earnings + %s,
                updated_at = %s
            WHERE wallet_address = %s
            """,
            (commission_units, now, wallet_address),
        )
        return affected == 1

    def read_membership(self, wallet_address: str) -> Optional[dict[str, object]]:
        return self._read_one(
            f"""
            SELECT wallet_address, {", ".join(MIRROR_COLUMNS)}, synced_at, updated_at
            FROM membership_mirror
            WHERE wallet_address = %s
            """,
            (wallet_address,),
        )

    def upsert_membership(
        self, wallet_address: str, fields: Mapping[str, object], now: datetime
    ) -> None:
        unknown = set(fields) - set(MIRROR_COLUMNS)
        if unknown:
            raise ValueError(f"unknown membership fields: {', '.join(sorted(unknown))}")
        columns = [column for column in MIRROR_COLUMNS if column in fields]
        insert_columns = ["wallet_address", *columns, "synced_at", "updated_at"]
        assignments = [f"{column} = EXCLUDED.{column}" for column in columns]
        assignments.extend(["synced_at = EXCLUDED.synced_at", "updated_at = EXCLUDED.updated_at"])
        self._write(
            f"""
            INSERT INTO membership_mirror({", ".join(insert_columns)})
            VALUES ({", ".join(["%s"] * len(insert_columns))})
            ON CONFLICT (wallet_address) DO UPDATE
            SET {", ".join(assignments)}
            """,
            (wallet_address, *(fields[column] for column in columns), now, now),
        )

    # singleton job coordination

    def acquire_job_lease(
        self, name: str, holder: str, now: datetime, expires_at: datetime
    ) -> bool:
        affected = self._write(
            """
            INSERT INTO job_leases(name, holder, expires_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (name) DO UPDATE
            SET holder = EXCLUDED.holder, expires_at = EXCLUDED.expires_at
            WHERE job_leases.holder = EXCLUDED.holder OR job_leases.expires_at <= %s
            """,
            (name, holder, expires_at, now),
        )
        return affected == 1

    def release_job_lease(self, name: str, holder: str) -> None:
        self._write(
            "DELETE FROM job_leases WHERE name = %s AND holder = %s",
            (name, holder),
        )

    def read_system_counts(self) -> dict[str, int]:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        counts: dict[str, int] = {}
        try:
            for table in (
                "domain_events",
                "delivery_tasks",
                "referral_edges",
                "commission_entries",
                "membership_mirror",
            ):
                cursor.execute(f"SELECT COUNT(*) FROM {table}", ())
                row = cursor.fetchone() or (0,)
                counts[table] = _to_int(row[0])
        finally:
            cursor.close()
            conn.close()
        return counts

    def ping(self) -> bool:
        row = self._read_one("SELECT 1 AS ok", ())
        return row is not None and _to_int(row["ok"]) == 1
