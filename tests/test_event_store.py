import threading

import httpx
import pytest
from postgrest.exceptions import APIError

from src.domain import event_store
from src.domain.webhook_errors import MutationError, PersistenceTimeoutError
from src.observability import metrics


def _record(external_event_id="evt-1", provider="payments"):
    return event_store.record_if_new(
        provider=provider,
        external_event_id=external_event_id,
        event_type="charge.completed",
        payload={"id": external_event_id},
        raw_body=b'{"id":"evt-1"}',
    )


def test_first_delivery_is_new_and_stored_verbatim(fake_db):
    result = _record()

    assert result.is_new is True
    assert result.status == "received"
    rows = fake_db.tables["webhook_events"]
    assert len(rows) == 1
    assert rows[0]["raw_body"] == '{"id":"evt-1"}'
    assert rows[0]["payload"] == {"id": "evt-1"}
    assert rows[0]["duplicate_count"] == 0


def test_second_delivery_is_duplicate_and_counted(fake_db):
    first = _record()
    second = _record()

    assert second.is_new is False
    assert second.event_id == first.event_id
    rows = fake_db.tables["webhook_events"]
    assert len(rows) == 1
    assert rows[0]["duplicate_count"] == 1
    assert metrics.total("webhook.duplicate_ignored") == 1


def test_same_external_id_from_different_providers_are_distinct(fake_db):
    assert _record(provider="payments").is_new is True
    assert _record(provider="voice").is_new is True
    assert len(fake_db.tables["webhook_events"]) == 2


def test_concurrent_deliveries_yield_exactly_one_new_record(fake_db):
    results = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(16)

    def deliver():
        barrier.wait()
        outcome = _record("evt-race")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=deliver) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.is_new) == 1
    assert len(fake_db.tables["webhook_events"]) == 1
    assert len({result.event_id for result in results}) == 1


def test_insert_timeout_is_retryable(fake_db):
    fake_db.fail("webhook_events", "insert", httpx.ReadTimeout("read timed out"))

    with pytest.raises(PersistenceTimeoutError) as exc_info:
        _record()
    assert exc_info.value.retryable is True


def test_non_unique_insert_error_is_mutation_error(fake_db):
    fake_db.fail("webhook_events", "insert", APIError({"code": "42501", "message": "permission denied"}))

    with pytest.raises(MutationError):
        _record()


def test_mark_processed_only_moves_received_rows(fake_db):
    result = _record()

    assert event_store.mark_processed(result.event_id, "processed") is True
    assert event_store.mark_processed(result.event_id, "failed", error="late") is False
    row = fake_db.tables["webhook_events"][0]
    assert row["status"] == "processed"
    assert row["last_error"] is None
    assert row["processed_at"] is not None


def test_claim_for_retry_requires_retryable_failure(fake_db):
    result = _record()
    event_store.mark_processed(result.event_id, "failed", error="boom", retryable=False)
    assert event_store.claim_for_retry(result.event_id) is False

    other = _record("evt-2")
    event_store.mark_processed(other.event_id, "failed", error="timeout", retryable=True)
    assert event_store.claim_for_retry(other.event_id) is True
    assert event_store.claim_for_retry(other.event_id) is False
    row = event_store.get_event("payments", "evt-2")
    assert row["status"] == "received"
    assert row["retryable"] is False


def test_duplicate_reports_failed_retryable_status(fake_db):
    result = _record()
    event_store.mark_processed(result.event_id, "failed", error="timeout", retryable=True)

    again = _record()
    assert again.is_new is False
    assert again.status == "failed"
    assert again.retryable is True


def test_list_events_filters_by_status(fake_db):
    first = _record("evt-1")
    _record("evt-2")
    event_store.mark_processed(first.event_id, "failed", error="boom")

    failed = event_store.list_events(status="failed")
    assert [row["external_event_id"] for row in failed] == ["evt-1"]
    assert len(event_store.list_events(provider="payments", limit=1)) == 1
