import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .chain_client import ChainClientProtocol, ChainReadError
from .channel import EventChannel, HandlerFailure
from .normalizer import DEFAULT_TOKEN_DECIMALS, normalize_logs

LOGGER = logging.getLogger(__name__)

DEFAULT_CURSOR_NAME = "membership-logs"


class CursorStoreProtocol(Protocol):
    def read_chain_cursor(self, name: str) -> Optional[int]: ...

    def write_chain_cursor(self, name: str, block_number: int, now: datetime) -> None: ...


@dataclass
class PollSummary:
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    fetched: int = 0
    published: int = 0
    dropped: Counter = field(default_factory=Counter)
    failures: list[HandlerFailure] = field(default_factory=list)
    cursor_advanced: bool = False
    caught_up: bool = True

    def merge(self, other: "PollSummary") -> None:
        if self.from_block is None:
            self.from_block = other.from_block
        if other.to_block is not None:
            self.to_block = other.to_block
        self.fetched += other.fetched
        self.published += other.published
        self.dropped.update(other.dropped)
        self.failures.extend(other.failures)

    def to_dict(self) -> dict[str, object]:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "fetched": self.fetched,
            "published": self.published,
            "dropped": dict(self.dropped),
            "failed": [failure.event_key for failure in self.failures],
            "cursor_advanced": self.cursor_advanced,
        }


class ChainLogPoller:
    def __init__(
        self,
        chain: ChainClientProtocol,
        cursors: CursorStoreProtocol,
        channel: EventChannel,
        contract_address: str,
        confirmations: int = 3,
        batch_blocks: int = 500,
        start_block: int = 0,
        decimals: int = DEFAULT_TOKEN_DECIMALS,
        cursor_name: str = DEFAULT_CURSOR_NAME,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if batch_blocks <= 0:
            raise ValueError("batch_blocks must be positive")
        self._chain = chain
        self._cursors = cursors
        self._channel = channel
        self._contract_address = contract_address.lower()
        self._confirmations = max(0, confirmations)
        self._batch_blocks = batch_blocks
        self._start_block = start_block
        self._decimals = decimals
        self._cursor_name = cursor_name
        self._now = now

    def process_range(self, from_block: int, to_block: int) -> PollSummary:
        logs = self._chain.get_logs(self._contract_address, from_block, to_block)
        report = normalize_logs(
            logs,
            contract_address=self._contract_address,
            decimals=self._decimals,
            now=self._now,
        )
        for event in report.events:
            self._channel.publish(event)
        failures = self._channel.wait_drained()
        return PollSummary(
            from_block=from_block,
            to_block=to_block,
            fetched=len(logs),
            published=len(report.events),
            dropped=report.dropped,
            failures=failures,
        )

    def poll_once(self) -> PollSummary:
        safe_head = self._chain.get_block_number() - self._confirmations
        last = self._cursors.read_chain_cursor(self._cursor_name)
        start = self._start_block if last is None else last + 1
        if start > safe_head:
            return PollSummary()

        end = min(safe_head, start + self._batch_blocks - 1)
        summary = self.process_range(start, end)
        summary.caught_up = end >= safe_head
        if summary.failures:
            LOGGER.warning(
                "blocks %d-%d left unconfirmed after %d handler failure(s); will replay",
                start,
                end,
                len(summary.failures),
            )
            return summary

        self._cursors.write_chain_cursor(self._cursor_name, end, self._now())
        summary.cursor_advanced = True
        if summary.fetched:
            LOGGER.info("processed blocks %d-%d: %s", start, end, summary.to_dict())
        return summary

    def backfill(self, from_block: int, to_block: int) -> PollSummary:
        if from_block > to_block:
            raise ValueError("from_block must not exceed to_block")
        total = PollSummary()
        for start in range(from_block, to_block + 1, self._batch_blocks):
            end = min(to_block, start + self._batch_blocks - 1)
            total.merge(self.process_range(start, end))
        LOGGER.info("backfill %d-%d finished: %s", from_block, to_block, total.to_dict())
        return total

    def run_forever(self, stop: threading.Event, interval_seconds: float = 15.0) -> None:
        LOGGER.info("chain log poller started at cursor %s", self._cursor_name)
        while not stop.is_set():
            try:
                summary = self.poll_once()
            except ChainReadError as error:
                LOGGER.warning("poll failed: %s", error)
                stop.wait(interval_seconds)
                continue
            except Exception:
                LOGGER.exception("poll crashed")
                stop.wait(interval_seconds)
                continue
            if summary.caught_up or summary.failures:
                stop.wait(interval_seconds)
        LOGGER.info("chain log poller stopped")
