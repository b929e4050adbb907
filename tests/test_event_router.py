from datetime import datetime, timezone

import pytest

from src.domain import event_router
from src.domain.event_router import InboundEvent
from src.domain.webhook_errors import InsufficientFundsError, MappingError


def _event(provider, event_type, payload, external_event_id="evt-1"):
    return InboundEvent(
        provider=provider,
        external_event_id=external_event_id,
        event_type=event_type,
        payload=payload,
        received_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


def _seed_wallet(fake_db, company_id="co-1", balance=10000):
    wallet = {"id": f"wallet-{company_id}", "company_id": company_id, "balance": balance}
    fake_db.tables.setdefault("wallets", []).append(wallet)
    return wallet


def _charge(amount=50, status="successful", meta=None, charge_id=123):
    return {
        "event": "charge.completed",
        "data": {
            "id": charge_id,
            "tx_ref": "corecomm-co-1-abc",
            "status": status,
            "amount": amount,
            "currency": "USD",
            "meta": meta if meta is not None else {"companyId": "co-1"},
        },
    }


def test_top_up_credits_wallet_in_minor_units(fake_db):
    wallet = _seed_wallet(fake_db)

    outcome = event_router.route(_event("payments", "charge.completed", _charge(amount=50)))

    assert outcome.action == "wallet_top_up"
    assert outcome.company_id == "co-1"
    assert fake_db.balance("co-1") == 15000
    transactions = fake_db.transactions(wallet["id"])
    assert len(transactions) == 1
    assert transactions[0]["amount"] == 5000
    assert transactions[0]["type"] == "top_up"
    assert transactions[0]["reference_id"] == "payments:123"


def test_top_up_creates_wallet_when_missing(fake_db):
    event_router.route(_event("payments", "charge.completed", _charge(amount="12.34")))

    assert fake_db.balance("co-1") == 1234


def test_top_up_accepts_list_form_meta(fake_db):
    _seed_wallet(fake_db)
    payload = _charge(meta=[{"metaname": "companyId", "metavalue": "co-1"}])

    outcome = event_router.route(_event("payments", "charge.completed", payload))

    assert outcome.action == "wallet_top_up"
    assert fake_db.balance("co-1") == 15000


def test_repeated_charge_does_not_double_credit(fake_db):
    _seed_wallet(fake_db)
    payload = _charge()

    event_router.route(_event("payments", "charge.completed", payload))
    event_router.route(_event("payments", "charge.completed", payload))

    assert fake_db.balance("co-1") == 15000


def test_unsuccessful_charge_is_ignored(fake_db):
    _seed_wallet(fake_db)

    outcome = event_router.route(_event("payments", "charge.completed", _charge(status="failed")))

    assert outcome.action == "ignored"
    assert fake_db.balance("co-1") == 10000


def test_charge_without_company_is_mapping_error(fake_db):
    with pytest.raises(MappingError):
        event_router.route(_event("payments", "charge.completed", _charge(meta={})))
    assert fake_db.tables.get("wallets", []) == []


def test_subscription_checkout_activates_subscription(fake_db):
    payload = {
        "event": "charge.completed",
        "data": {
            "id": 991,
            "subscription": "sub_123",
            "status": "successful",
            "amount": 299,
            "customer": {"id": 4455, "email": "owner@example.com"},
            "meta": {"companyId": "co-1", "mode": "subscription", "planId": "professional"},
        },
    }

    outcome = event_router.route(_event("payments", "charge.completed", payload))

    assert outcome.action == "subscription_activated"
    rows = fake_db.tables["billing_subscriptions"]
    assert len(rows) == 1
    assert rows[0]["company_id"] == "co-1"
    assert rows[0]["provider_subscription_id"] == "sub_123"
    assert rows[0]["provider_customer_id"] == "4455"
    assert rows[0]["plan_id"] == "professional"
    assert rows[0]["status"] == "active"
    assert fake_db.tables.get("wallets", []) == []


def test_subscription_created_then_cancelled(fake_db):
    created = {
        "event": "subscription.created",
        "data": {
            "id": "sub_123",
            "plan": {"id": 152249},
            "created_at": "2024-05-01T10:00:00Z",
            "meta": {"companyId": "co-1"},
        },
    }
    cancelled = {
        "event": "subscription.cancelled",
        "data": {"id": "sub_123", "status": "cancelled", "created_at": "2024-05-02T10:00:00Z"},
    }

    assert event_router.route(_event("payments", "subscription.created", created)).action == "subscription_trialing"
    row = fake_db.tables["billing_subscriptions"][0]
    assert row["status"] == "trialing"
    assert row["plan_id"] == 152249

    outcome = event_router.route(_event("payments", "subscription.cancelled", cancelled, "evt-2"))
    assert outcome.action == "subscription_canceled"
    assert outcome.company_id == "co-1"
    assert fake_db.tables["billing_subscriptions"][0]["status"] == "canceled"


def test_older_subscription_event_does_not_overwrite_newer(fake_db):
    fake_db.tables["billing_subscriptions"] = [
        {
            "company_id": "co-1",
            "provider_subscription_id": "sub_123",
            "plan_id": "starter",
            "status": "canceled",
            "last_event_at": "2024-05-03T00:00:00+00:00",
        }
    ]
    stale = {
        "event": "subscription.updated",
        "data": {"id": "sub_123", "status": "active", "created_at": "2024-05-02T00:00:00Z"},
    }

    outcome = event_router.route(_event("payments", "subscription.updated", stale))

    assert outcome.action == "stale_ignored"
    assert fake_db.tables["billing_subscriptions"][0]["status"] == "canceled"


def test_cancel_for_unknown_subscription_is_mapping_error(fake_db):
    payload = {"event": "subscription.cancelled", "data": {"id": "sub_missing"}}
    with pytest.raises(MappingError):
        event_router.route(_event("payments", "subscription.cancelled", payload))


def test_unknown_event_type_is_ignored_without_mutation(fake_db):
    _seed_wallet(fake_db)

    outcome = event_router.route(_event("payments", "transfer.completed", {"event": "transfer.completed"}))

    assert outcome.action == "ignored"
    assert fake_db.balance("co-1") == 10000
    assert fake_db.tables.get("wallet_transactions", []) == []


def _end_of_call(call, **message_fields):
    return {"message": {"type": "end-of-call-report", "call": call, **message_fields}}


def test_end_of_call_report_charges_rounded_up_minutes(fake_db):
    wallet = _seed_wallet(fake_db, balance=1000)
    payload = _end_of_call({"id": "call-1", "metadata": {"companyId": "co-1"}}, durationSeconds=125)

    outcome = event_router.route(_event("voice", "end-of-call-report", payload))

    assert outcome.action == "usage_charged"
    assert outcome.detail["minutes"] == 3
    assert fake_db.balance("co-1") == 1000 - 75
    transactions = fake_db.transactions(wallet["id"])
    assert transactions[0]["type"] == "usage_charge"
    assert transactions[0]["reference_id"] == "voice:call-1"


def test_end_of_call_report_resolves_company_by_phone_number(fake_db):
    _seed_wallet(fake_db, balance=1000)
    fake_db.tables["vapi_phone_numbers"] = [{"phone_number": "+15550100", "company_id": "co-1"}]
    payload = _end_of_call(
        {"id": "call-2", "phoneNumber": {"number": "+15550100"}},
        startedAt="2024-05-01T10:00:00Z",
        endedAt="2024-05-01T10:00:30Z",
    )

    outcome = event_router.route(_event("voice", "end-of-call-report", payload))

    assert outcome.company_id == "co-1"
    assert fake_db.balance("co-1") == 975


def test_end_of_call_report_with_insufficient_funds_raises(fake_db):
    _seed_wallet(fake_db, balance=10)
    payload = _end_of_call({"id": "call-3", "metadata": {"companyId": "co-1"}}, durationSeconds=60)

    with pytest.raises(InsufficientFundsError):
        event_router.route(_event("voice", "end-of-call-report", payload))
    assert fake_db.balance("co-1") == 10


def test_zero_duration_call_is_ignored(fake_db):
    payload = _end_of_call({"id": "call-4", "metadata": {"companyId": "co-1"}})

    assert event_router.route(_event("voice", "end-of-call-report", payload)).action == "ignored"


def test_carrier_inbound_is_recorded():
    outcome = event_router.route(
        _event("sms_voice_carrier", "sms.inbound", {"MessageSid": "SM1", "From": "+1555", "To": "+1666"})
    )
    assert outcome.action == "recorded"
    assert outcome.detail == {"from": "+1555", "to": "+1666"}

