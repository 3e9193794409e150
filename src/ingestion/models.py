from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


SCHEMA_VERSION = "v1"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EventType(Enum):
    MEMBER_REGISTERED = "MemberRegistered"
    REFERRAL_PAID = "ReferralPaid"
    PLAN_UPGRADED = "PlanUpgraded"
    MEMBER_EXITED = "MemberExited"
    CYCLE_STARTED = "CycleStarted"
    EMERGENCY_WITHDRAW = "EmergencyWithdraw"


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class MemberRegisteredPayload:
    member: str
    upline: str
    plan_id: int
    cycle_number: int


@dataclass(frozen=True)
class ReferralPaidPayload:
    referrer: str
    referee: str
    amount_units: str
    amount: str
    plan_level: Optional[int] = None
    commission_rate: Optional[str] = None


@dataclass(frozen=True)
class PlanUpgradedPayload:
    member: str
    old_plan_id: int
    new_plan_id: int
    cycle_number: int


@dataclass(frozen=True)
class MemberExitedPayload:
    member: str
    refund_units: str
    refund_amount: str


@dataclass(frozen=True)
class CycleStartedPayload:
    plan_id: int
    cycle_number: int


@dataclass(frozen=True)
class EmergencyWithdrawPayload:
    recipient: str
    amount_units: str
    amount: str


EventPayload = Union[
    MemberRegisteredPayload,
    ReferralPaidPayload,
    PlanUpgradedPayload,
    MemberExitedPayload,
    CycleStartedPayload,
    EmergencyWithdrawPayload,
]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.MEMBER_REGISTERED: MemberRegisteredPayload,
    EventType.REFERRAL_PAID: ReferralPaidPayload,
    EventType.PLAN_UPGRADED: PlanUpgradedPayload,
    EventType.MEMBER_EXITED: MemberExitedPayload,
    EventType.CYCLE_STARTED: CycleStartedPayload,
    EventType.EMERGENCY_WITHDRAW: EmergencyWithdrawPayload,
}


def build_event_key(tx_hash: str, log_index: int) -> str:
    return f"{tx_hash.lower()}:{int(log_index)}"


def decode_payload(event_type: EventType, raw: Mapping[str, object]) -> EventPayload:
    payload_type = PAYLOAD_TYPES[event_type]
    allowed = {item.name for item in fields(payload_type)}
    unexpected = set(raw) - allowed
    if unexpected:
        raise ValueError(
            f"unexpected {event_type.value} payload fields: {', '.join(sorted(unexpected))}"
        )
    return payload_type(**dict(raw))


def _as_utc(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp value: {value!r}")


@dataclass(frozen=True)
class DomainEvent:
    event_type: EventType
    source_tx_hash: str
    source_block_number: int
    source_log_index: int
    payload: EventPayload
    observed_at: datetime
    schema_version: str = SCHEMA_VERSION

    def __post_init__(self) -> None:
        expected = PAYLOAD_TYPES[self.event_type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.event_type.value} requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def event_key(self) -> str:
        return build_event_key(self.source_tx_hash, self.source_log_index)

    def payload_dict(self) -> dict[str, object]:
        return asdict(self.payload)

    def to_row(self) -> dict[str, object]:
        return {
            "event_key": self.event_key,
            "event_type": self.event_type.value,
            "source_tx_hash": self.source_tx_hash.lower(),
            "source_block_number": self.source_block_number,
            "source_log_index": self.source_log_index,
            "payload": self.payload_dict(),
            "observed_at": self.observed_at,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "DomainEvent":
        event_type = EventType(str(row["event_type"]))
        raw_payload = row["payload"]
        if not isinstance(raw_payload, Mapping):
            raise ValueError("domain event payload must be a mapping")
        return cls(
            event_type=event_type,
            source_tx_hash=str(row["source_tx_hash"]),
            source_block_number=int(str(row["source_block_number"])),
            source_log_index=int(str(row["source_log_index"])),
            payload=decode_payload(event_type, raw_payload),
            observed_at=_as_utc(row["observed_at"]),
            schema_version=str(row.get("schema_version") or SCHEMA_VERSION),
        )


class DeliveryStatus:
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"

    TERMINAL = frozenset({DELIVERED, FAILED})


class CommissionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


@dataclass(frozen=True)
class DeliveryTask:
    id: str
    event_key: str
    endpoint: str
    status: str
    attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "DeliveryTask":
        lease_expires_at = row.get("lease_expires_at")
        last_error = row.get("last_error")
        lease_token = row.get("lease_token")
        return cls(
            id=str(row["id"]),
            event_key=str(row["event_key"]),
            endpoint=str(row["endpoint"]),
            status=str(row["status"]),
            attempts=int(str(row["attempts"])),
            next_attempt_at=_as_utc(row["next_attempt_at"]),
            last_error=None if last_error is None else str(last_error),
            lease_token=None if lease_token is None else str(lease_token),
            lease_expires_at=None if lease_expires_at is None else _as_utc(lease_expires_at),
        )
