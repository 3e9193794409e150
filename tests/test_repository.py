import importlib
from datetime import timedelta


support = importlib.import_module("tests.support")
repository = importlib.import_module("src.ingestion.repository")
normalizer = importlib.import_module("src.ingestion.normalizer")


def _row(n, observed_at=None):
    log = support.member_registered_log(
        support.wallet(300 + n), support.wallet(1), 1, support.tx_hash(n)
    )
    return normalizer.decode_log(log, observed_at or support.FIXED_NOW).to_row()


def test_domain_events_are_written_once():
    store = repository.InMemoryRepository()
    row = _row(1)

    assert store.write_domain_event(row) is True
    assert store.write_domain_event(row) is False
    assert store.read_domain_event(row["event_key"])["archived_at"] is None


def test_archive_skips_events_with_open_delivery_tasks():
    store = repository.InMemoryRepository()
    old = support.FIXED_NOW - timedelta(days=40)
    settled, open_row = _row(1, old), _row(2, old)
    store.write_domain_event(settled)
    store.write_domain_event(open_row)
    store.insert_delivery_task(
        {
            "id": "task-1",
            "event_key": open_row["event_key"],
            "endpoint": "https://hooks.example.com",
            "status": "pending",
            "attempts": 0,
            "next_attempt_at": old,
            "created_at": old,
            "updated_at": old,
        }
    )

    archived = store.archive_settled_events(support.FIXED_NOW - timedelta(days=30), support.FIXED_NOW)

    assert archived == 1
    assert store.read_domain_event(settled["event_key"])["archived_at"] == support.FIXED_NOW
    assert store.read_domain_event(open_row["event_key"])["archived_at"] is None


def test_known_member_wallets_merge_mirror_and_events():
    store = repository.InMemoryRepository()
    store.write_domain_event(_row(1))
    store.upsert_membership(support.wallet(9), {"plan_id": 1}, support.FIXED_NOW)

    assert store.read_known_member_wallets() == sorted([support.wallet(301), support.wallet(9)])


def test_expired_job_lease_can_be_taken_over():
    store = repository.InMemoryRepository()
    now = support.FIXED_NOW

    assert store.acquire_job_lease("reconciliation", "a", now, now + timedelta(seconds=10))
    assert not store.acquire_job_lease("reconciliation", "b", now, now + timedelta(seconds=10))
    later = now + timedelta(seconds=11)
    assert store.acquire_job_lease("reconciliation", "b", later, later + timedelta(seconds=10))

    store.release_job_lease("reconciliation", "a")
    assert store.job_leases["reconciliation"]["holder"] == "b"


def test_credit_only_touches_existing_mirror_rows():
    store = repository.InMemoryRepository()

    assert store.credit_membership_commission(support.wallet(5), 10, support.FIXED_NOW) is False

    store.upsert_membership(
        support.wallet(5), {"total_earnings": "100", "total_referrals": 2}, support.FIXED_NOW
    )
    assert store.credit_membership_commission(support.wallet(5), 10, support.FIXED_NOW) is True
    row = store.read_membership(support.wallet(5))
    assert row["total_earnings"] == "110"
    assert row["total_referrals"] == 2
