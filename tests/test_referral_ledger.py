import importlib
from datetime import timedelta

import pytest


support = importlib.import_module("tests.support")
ledger_mod = importlib.import_module("src.referral.ledger")
repository = importlib.import_module("src.ingestion.repository")
normalizer = importlib.import_module("src.ingestion.normalizer")
models = importlib.import_module("src.ingestion.models")

REFEREE = support.wallet(0xA1)
REFERRER = support.wallet(0xB2)
OTHER_REFERRER = support.wallet(0xC3)


class FlakyReceiptChain(support.FakeChainClient):
    def __init__(self):
        super().__init__()
        self.receipts_down = False

    def get_transaction_receipt(self, tx):
        if self.receipts_down:
            raise support.ChainReadError("receipt endpoint timed out")
        return super().get_transaction_receipt(tx)


@pytest.fixture
def chain():
    chain = FlakyReceiptChain()
    chain.members[REFEREE] = support.member_state(REFEREE, plan_id=5)
    return chain


@pytest.fixture
def store():
    return repository.InMemoryRepository()


@pytest.fixture
def ledger(store, chain):
    return ledger_mod.ReferralLedger(store, chain, now=lambda: support.FIXED_NOW)


def _paid_event(chain, amount=5_000_000, n=1, log_index=0, referrer=REFERRER, register=True):
    log = support.referral_paid_log(REFEREE, referrer, amount, support.tx_hash(n), log_index)
    if register:
        chain.add_log(log)
    return normalizer.decode_log(log, support.FIXED_NOW)


def test_double_ingestion_credits_exactly_one_completed_entry(store, chain, ledger):
    store.upsert_membership(
        REFERRER, {"total_earnings": "0", "total_referrals": 0}, support.FIXED_NOW
    )
    event = _paid_event(chain)

    first = ledger.record(event)
    second = ledger.record(event)

    assert first.status == "completed"
    assert first.created is True
    assert first.commission_amount == "2750000"
    assert second.status == "completed"
    assert second.created is False
    assert len(store.commission_entries) == 1
    entry = store.read_commission_entry(event.source_tx_hash, 0)
    assert entry["plan_level"] == 5
    assert entry["commission_rate"] == "55"
    mirror = store.read_membership(REFERRER)
    assert mirror["total_earnings"] == "2750000"
    assert mirror["total_referrals"] == 0


def test_explicit_plan_level_skips_chain_lookup(store, chain, ledger):
    event = _paid_event(chain)
    event = models.DomainEvent(
        event_type=event.event_type,
        source_tx_hash=event.source_tx_hash,
        source_block_number=event.source_block_number,
        source_log_index=event.source_log_index,
        payload=models.ReferralPaidPayload(
            referrer=REFERRER,
            referee=REFEREE,
            amount_units="5000000",
            amount="5.000000",
            plan_level=9,
        ),
        observed_at=support.FIXED_NOW,
    )
    chain.members.clear()

    outcome = ledger.record(event)

    assert outcome.status == "completed"
    assert outcome.commission_amount == "3000000"


def test_unknown_plan_level_is_recorded_as_failed(store, chain, ledger):
    chain.members.clear()
    event = _paid_event(chain)

    outcome = ledger.record(event)

    assert outcome.status == "failed"
    assert outcome.note == "plan_level_unknown"
    assert ledger.record(event).status == "failed"


def test_missing_transaction_fails_confirmation(ledger, chain):
    outcome = ledger.record(_paid_event(chain, register=False))

    assert outcome.status == "failed"
    assert outcome.note == "transaction_not_found"


def test_reverted_transaction_fails_confirmation(ledger, chain):
    log = support.referral_paid_log(REFEREE, REFERRER, 5_000_000, support.tx_hash(7))
    chain.add_log(log, succeeded=False)

    outcome = ledger.record(normalizer.decode_log(log, support.FIXED_NOW))

    assert outcome.status == "failed"
    assert outcome.note == "transaction_reverted"


def test_amount_mismatch_fails_confirmation(ledger, chain):
    event = _paid_event(chain, amount=5_000_000, register=False)
    chain.add_log(support.referral_paid_log(REFEREE, REFERRER, 4_000_000, support.tx_hash(1)))

    outcome = ledger.record(event)

    assert outcome.status == "failed"
    assert outcome.note == "amount_mismatch"


def test_edge_conflict_keeps_first_referrer(store, chain, ledger):
    registered = support.member_registered_log(REFEREE, REFERRER, 5, support.tx_hash(20))
    ledger.record(normalizer.decode_log(registered, support.FIXED_NOW))

    outcome = ledger.record(_paid_event(chain, referrer=OTHER_REFERRER, n=21))

    assert outcome.status == "failed"
    assert outcome.note == "referral_edge_conflict"
    assert ledger.upline_of(REFEREE) == REFERRER


def test_member_registered_without_upline_creates_no_edge(store, ledger):
    log = support.member_registered_log(REFEREE, models.ZERO_ADDRESS, 1, support.tx_hash(30))

    assert ledger.record(normalizer.decode_log(log, support.FIXED_NOW)) is None
    assert store.read_referral_edge(REFEREE) is None


def test_transient_receipt_error_leaves_entry_pending_until_retry(store, chain, ledger):
    event = _paid_event(chain)
    chain.receipts_down = True

    pending = ledger.record(event)

    assert pending.status == "pending"
    assert store.read_commission_entry(event.source_tx_hash, 0)["status"] == "pending"

    chain.receipts_down = False
    retried = ledger.retry_pending()

    assert [outcome.status for outcome in retried] == ["completed"]
    assert ledger.record(event).status == "completed"


def test_terminal_entries_never_transition_again(store, chain, ledger):
    event = _paid_event(chain, register=False)
    assert ledger.record(event).status == "failed"

    chain.add_log(support.referral_paid_log(REFEREE, REFERRER, 5_000_000, support.tx_hash(1)))

    assert ledger.record(event).status == "failed"
    assert ledger.retry_pending() == []


def test_queries_only_count_completed_entries(store, chain, ledger):
    ledger.record(_paid_event(chain, n=1))
    ledger.record(_paid_event(chain, n=2, amount=1_000_000))
    ledger.record(_paid_event(chain, n=3, register=False))

    stats = ledger.commission_stats(REFERRER)
    top = ledger.top_referrers(limit=5)
    daily = ledger.earnings_by_day(REFERRER)

    assert stats["total_referrals"] == 2
    assert stats["total_amount"] == "6000000"
    assert stats["total_commission"] == "3300000"
    assert stats["total_commission_formatted"] == "3.300000"
    assert stats["plan_distribution"] == {5: 2}
    assert top[0]["referrer"] == REFERRER
    assert top[0]["total_commission"] == "3300000"
    assert daily == [
        {
            "day": "2026-03-01",
            "total_commission": "3300000",
            "total_commission_formatted": "3.300000",
        }
    ]
    assert len(ledger.entries(status="failed")) == 1


def test_cleanup_failed_archives_old_failed_entries(store, chain, ledger):
    ledger.record(_paid_event(chain, register=False))

    assert ledger.cleanup_failed(support.FIXED_NOW - timedelta(days=1)) == 0
    assert ledger.cleanup_failed(support.FIXED_NOW + timedelta(seconds=1)) == 1
    assert ledger.entries() == []


def test_replay_after_cleanup_keeps_failed_entry_terminal(store, chain, ledger):
    log = support.referral_paid_log(REFEREE, REFERRER, 5_000_000, support.tx_hash(1), 0)
    event = normalizer.decode_log(log, support.FIXED_NOW)

    first = ledger.record(event)
    assert first.status == "failed"
    assert first.note == "transaction_not_found"
    assert ledger.cleanup_failed(support.FIXED_NOW + timedelta(seconds=1)) == 1

    chain.add_log(log)
    replay = ledger.record(event)

    assert replay.status == "failed"
    assert replay.created is False
    entry = store.read_commission_entry(event.source_tx_hash, 0)
    assert entry["status"] == "failed"
    assert entry["archived_at"] == support.FIXED_NOW
    assert ledger.commission_stats(REFERRER)["total_commission"] == "0"
    assert ledger.cleanup_failed(support.FIXED_NOW + timedelta(days=1)) == 0


def _store_event(store, log):
    event = normalizer.decode_log(log, support.FIXED_NOW)
    store.write_domain_event(event.to_row())
    return event


def test_plan_level_comes_from_stored_history_at_the_payout_block(store, chain, ledger):
    _store_event(
        store,
        support.member_registered_log(REFEREE, REFERRER, 5, support.tx_hash(40), block_number=90),
    )
    _store_event(
        store,
        support.plan_upgraded_log(REFEREE, 5, 9, support.tx_hash(41), block_number=150),
    )
    chain.members[REFEREE] = support.member_state(REFEREE, plan_id=9)
    before_upgrade = _paid_event(chain, n=42)

    outcome = ledger.record(before_upgrade)

    assert outcome.status == "completed"
    assert outcome.commission_amount == "2750000"
    assert store.read_commission_entry(before_upgrade.source_tx_hash, 0)["plan_level"] == 5


def test_same_payout_prices_identically_before_and_after_upgrade(chain):
    log = support.referral_paid_log(REFEREE, REFERRER, 5_000_000, support.tx_hash(50))
    chain.add_log(log)
    registration = support.member_registered_log(
        REFEREE, REFERRER, 5, support.tx_hash(51), block_number=90
    )
    upgrade = support.plan_upgraded_log(REFEREE, 5, 9, support.tx_hash(52), block_number=150)

    commissions = []
    for current_plan in (5, 9):
        store = repository.InMemoryRepository()
        _store_event(store, registration)
        _store_event(store, upgrade)
        chain.members[REFEREE] = support.member_state(REFEREE, plan_id=current_plan)
        ledger = ledger_mod.ReferralLedger(store, chain, now=lambda: support.FIXED_NOW)
        commissions.append(ledger.record(normalizer.decode_log(log, support.FIXED_NOW)))

    assert [outcome.commission_amount for outcome in commissions] == ["2750000", "2750000"]


def test_upgrade_in_the_same_block_before_the_payout_applies(store, chain, ledger):
    _store_event(
        store,
        support.plan_upgraded_log(REFEREE, 5, 9, support.tx_hash(60), log_index=0),
    )

    outcome = ledger.record(_paid_event(chain, n=60, log_index=1))

    assert outcome.commission_amount == "3000000"
