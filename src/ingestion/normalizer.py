import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from eth_abi import decode as abi_decode
from eth_utils import keccak

from .models import (
    CycleStartedPayload,
    DomainEvent,
    EmergencyWithdrawPayload,
    EventPayload,
    EventType,
    MemberExitedPayload,
    MemberRegisteredPayload,
    PlanUpgradedPayload,
    RawLog,
    ReferralPaidPayload,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKEN_DECIMALS = 6


class LogDecodeError(Exception):
    pass


@dataclass(frozen=True)
class EventInput:
    name: str
    abi_type: str
    indexed: bool


@dataclass(frozen=True)
class EventDefinition:
    chain_name: str
    event_type: EventType
    inputs: tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.chain_name}({','.join(item.abi_type for item in self.inputs)})"

    @property
    def topic0(self) -> str:
        return "0x" + keccak(text=self.signature).hex()


EVENT_DEFINITIONS: tuple[EventDefinition, ...] = (
    EventDefinition(
        "MemberRegistered",
        EventType.MEMBER_REGISTERED,
        (
            EventInput("member", "address", True),
            EventInput("upline", "address", True),
            EventInput("planId", "uint256", False),
            EventInput("cycleNumber", "uint256", False),
        ),
    ),
    EventDefinition(
        "PlanUpgraded",
        EventType.PLAN_UPGRADED,
        (
            EventInput("member", "address", True),
            EventInput("oldPlanId", "uint256", False),
            EventInput("newPlanId", "uint256", False),
            EventInput("cycleNumber", "uint256", False),
        ),
    ),
    EventDefinition(
        "ReferralPaid",
        EventType.REFERRAL_PAID,
        (
            EventInput("from", "address", True),
            EventInput("to", "address", True),
            EventInput("amount", "uint256", False),
        ),
    ),
    EventDefinition(
        "MemberExited",
        EventType.MEMBER_EXITED,
        (
            EventInput("member", "address", True),
            EventInput("refundAmount", "uint256", False),
        ),
    ),
    EventDefinition(
        "NewCycleStarted",
        EventType.CYCLE_STARTED,
        (
            EventInput("planId", "uint256", False),
            EventInput("cycleNumber", "uint256", False),
        ),
    ),
    EventDefinition(
        "EmergencyWithdraw",
        EventType.EMERGENCY_WITHDRAW,
        (
            EventInput("to", "address", True),
            EventInput("amount", "uint256", False),
        ),
    ),
)

DEFINITIONS_BY_TOPIC: dict[str, EventDefinition] = {
    definition.topic0: definition for definition in EVENT_DEFINITIONS
}


def format_units(raw: int, decimals: int = DEFAULT_TOKEN_DECIMALS) -> str:
    if raw < 0:
        raise ValueError("token amounts are unsigned")
    if decimals <= 0:
        return str(raw)
    digits = str(raw).rjust(decimals + 1, "0")
    return f"{digits[:-decimals]}.{digits[-decimals:]}"


def _hex_to_bytes(value: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(text)


def _decode_arguments(definition: EventDefinition, log: RawLog) -> dict[str, object]:
    indexed = [item for item in definition.inputs if item.indexed]
    non_indexed = [item for item in definition.inputs if not item.indexed]

    if len(log.topics) != len(indexed) + 1:
        raise LogDecodeError(
            f"{definition.chain_name} expects {len(indexed) + 1} topics, got {len(log.topics)}"
        )

    arguments: dict[str, object] = {}
    try:
        for item, topic in zip(indexed, log.topics[1:]):
            (arguments[item.name],) = abi_decode([item.abi_type], _hex_to_bytes(topic))
        values = abi_decode([item.abi_type for item in non_indexed], _hex_to_bytes(log.data))
    except Exception as error:
        raise LogDecodeError(
            f"{definition.chain_name} payload is not decodable: {error}"
        ) from error

    for item, value in zip(non_indexed, values):
        arguments[item.name] = value

    for key, value in list(arguments.items()):
        if isinstance(value, str):
            arguments[key] = value.lower()
    return arguments


def _build_payload(
    event_type: EventType, arguments: Mapping[str, object], decimals: int
) -> EventPayload:
    def units(name: str) -> int:
        return int(str(arguments[name]))

    if event_type is EventType.MEMBER_REGISTERED:
        return MemberRegisteredPayload(
            member=str(arguments["member"]),
            upline=str(arguments["upline"]),
            plan_id=units("planId"),
            cycle_number=units("cycleNumber"),
        )
    if event_type is EventType.REFERRAL_PAID:
        amount = units("amount")
        return ReferralPaidPayload(
            referrer=str(arguments["to"]),
            referee=str(arguments["from"]),
            amount_units=str(amount),
            amount=format_units(amount, decimals),
        )
    if event_type is EventType.PLAN_UPGRADED:
        return PlanUpgradedPayload(
            member=str(arguments["member"]),
            old_plan_id=units("oldPlanId"),
            new_plan_id=units("newPlanId"),
            cycle_number=units("cycleNumber"),
        )
    if event_type is EventType.MEMBER_EXITED:
        refund = units("refundAmount")
        return MemberExitedPayload(
            member=str(arguments["member"]),
            refund_units=str(refund),
            refund_amount=format_units(refund, decimals),
        )
    if event_type is EventType.CYCLE_STARTED:
        return CycleStartedPayload(
            plan_id=units("planId"),
            cycle_number=units("cycleNumber"),
        )
    if event_type is EventType.EMERGENCY_WITHDRAW:
        amount = units("amount")
        return EmergencyWithdrawPayload(
            recipient=str(arguments["to"]),
            amount_units=str(amount),
            amount=format_units(amount, decimals),
        )
    raise LogDecodeError(f"no payload mapping for {event_type.value}")


def decode_log(
    log: RawLog,
    observed_at: datetime,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> DomainEvent:
    if not log.topics:
        raise LogDecodeError("log has no topics")
    definition = DEFINITIONS_BY_TOPIC.get(log.topics[0].lower())
    if definition is None:
        raise LogDecodeError(f"unknown topic0 {log.topics[0]}")

    arguments = _decode_arguments(definition, log)
    return DomainEvent(
        event_type=definition.event_type,
        source_tx_hash=log.tx_hash.lower(),
        source_block_number=log.block_number,
        source_log_index=log.log_index,
        payload=_build_payload(definition.event_type, arguments, decimals),
        observed_at=observed_at,
    )


@dataclass
class NormalizationReport:
    events: list[DomainEvent] = field(default_factory=list)
    dropped: Counter = field(default_factory=Counter)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped.values())


def _drop_reason(log: RawLog, contract_address: Optional[str]) -> Optional[str]:
    if contract_address is not None and log.address.lower() != contract_address.lower():
        return "foreign_address"
    if not log.topics:
        return "missing_topic"
    if log.topics[0].lower() not in DEFINITIONS_BY_TOPIC:
        return "unknown_topic"
    return None


def normalize_logs(
    logs: Iterable[RawLog],
    contract_address: Optional[str] = None,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> NormalizationReport:
    report = NormalizationReport()
    observed_at = now()

    for log in logs:
        reason = _drop_reason(log, contract_address)
        if reason is None:
            try:
                report.events.append(decode_log(log, observed_at, decimals))
                continue
            except LogDecodeError as error:
                reason = "undecodable"
                LOGGER.warning(
                    "dropping log %s:%s: %s", log.tx_hash, log.log_index, error
                )
        report.dropped[reason] += 1

    if report.dropped:
        LOGGER.warning("normalizer dropped %d log(s): %s", report.dropped_total, dict(report.dropped))
    return report
