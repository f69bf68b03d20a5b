from datetime import datetime, timedelta

import pytest

from billing import (
    BillingRecord,
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    Unhandled,
    apply_event,
    invoice_subscription_id,
    is_entitled,
    parse_event,
)
from models import PlanTier

FAILED_AT = datetime(2025, 3, 1, 12, 0, 0)

EVENTS = [
    CheckoutCompleted(user_id=7, customer_id="cus_1", subscription_id="sub_1"),
    SubscriptionCreated(
        user_id=7, customer_id="cus_1", subscription_id="sub_1", status="trialing"
    ),
    PaymentFailed(
        subscription_id="sub_1", occurred_at=FAILED_AT, user_id=7, status="past_due"
    ),
    PaymentSucceeded(subscription_id="sub_1", user_id=7, status="active"),
    SubscriptionDeleted(user_id=7, subscription_id="sub_1", status="canceled"),
    Unhandled(type="customer.updated"),
]


def _active_pro() -> BillingRecord:
    return BillingRecord(
        plan=PlanTier.pro,
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        subscription_status="active",
    )


@pytest.mark.parametrize("event", EVENTS, ids=lambda e: type(e).__name__)
def test_apply_event_is_idempotent(event) -> None:
    for start in (BillingRecord(), _active_pro()):
        once = apply_event(start, event)
        assert apply_event(once, event) == once


def test_checkout_upgrades_free_record() -> None:
    record = apply_event(BillingRecord(), EVENTS[0])
    assert record.plan == PlanTier.pro
    assert record.stripe_customer_id == "cus_1"
    assert record.stripe_subscription_id == "sub_1"
    assert record.subscription_status == "active"
    assert is_entitled(record, FAILED_AT)


def test_checkout_after_cancel_restores_entitlement() -> None:
    canceled = BillingRecord(plan=PlanTier.free, subscription_status="canceled")
    record = apply_event(canceled, EVENTS[0])
    assert is_entitled(record, FAILED_AT)


def test_payment_failed_starts_grace_window_from_event_time() -> None:
    record = apply_event(_active_pro(), EVENTS[2])
    assert record.plan == PlanTier.pro
    assert record.subscription_status == "past_due"
    assert record.grace_until == FAILED_AT + timedelta(days=3)
    assert is_entitled(record, FAILED_AT + timedelta(days=2, hours=23))
    assert not is_entitled(record, FAILED_AT + timedelta(days=3))


def test_payment_failed_without_known_status_marks_past_due() -> None:
    event = PaymentFailed(subscription_id="sub_1", occurred_at=FAILED_AT, user_id=7)
    record = apply_event(_active_pro(), event)
    assert record.subscription_status == "past_due"
    assert not is_entitled(record, FAILED_AT + timedelta(days=4))


def test_failed_then_succeeded_matches_never_failed() -> None:
    now = FAILED_AT + timedelta(days=10)
    recovered = apply_event(apply_event(_active_pro(), EVENTS[2]), EVENTS[3])
    never_failed = apply_event(_active_pro(), EVENTS[3])
    assert recovered == never_failed
    assert recovered.grace_until is None
    assert is_entitled(recovered, now) == is_entitled(never_failed, now) is True


def test_payment_succeeded_with_open_invoice_status_restores_entitlement() -> None:
    in_grace = apply_event(_active_pro(), EVENTS[2])
    event = PaymentSucceeded(subscription_id="sub_1", user_id=7, status="past_due")
    record = apply_event(in_grace, event)
    assert record.subscription_status == "active"
    assert record.grace_until is None
    assert is_entitled(record, FAILED_AT + timedelta(days=10))


def test_payment_succeeded_keeps_trialing_status() -> None:
    event = PaymentSucceeded(subscription_id="sub_1", user_id=7, status="trialing")
    assert apply_event(_active_pro(), event).subscription_status == "trialing"


def test_subscription_deleted_downgrades() -> None:
    record = apply_event(_active_pro(), EVENTS[4])
    assert record.plan == PlanTier.free
    assert record.stripe_subscription_id is None
    assert record.subscription_status == "canceled"
    assert record.stripe_customer_id == "cus_1"
    assert not is_entitled(record, FAILED_AT)


def test_events_without_user_leave_record_untouched() -> None:
    record = _active_pro()
    event = PaymentFailed(subscription_id="sub_x", occurred_at=FAILED_AT)
    assert apply_event(record, event) is record


def test_legacy_pro_rows_stay_entitled() -> None:
    assert is_entitled(BillingRecord(plan=PlanTier.pro), FAILED_AT)
    assert not is_entitled(BillingRecord(plan=PlanTier.free), FAILED_AT)


def test_parse_checkout_falls_back_to_client_reference() -> None:
    event = parse_event(
        {
            "type": "checkout.session.completed",
            "created": 1_700_000_000,
            "data": {
                "object": {
                    "client_reference_id": "42",
                    "customer": "cus_9",
                    "subscription": {"id": "sub_9"},
                    "metadata": {},
                }
            },
        }
    )
    assert event == CheckoutCompleted(
        user_id=42, customer_id="cus_9", subscription_id="sub_9"
    )


def test_parse_payment_failed_uses_event_creation_time() -> None:
    event = parse_event(
        {
            "type": "invoice.payment_failed",
            "created": 1_700_000_000,
            "data": {"object": {"subscription": "sub_1"}},
        }
    )
    assert isinstance(event, PaymentFailed)
    assert event.subscription_id == "sub_1"
    assert event.occurred_at == datetime(2023, 11, 14, 22, 13, 20)
    assert event.user_id is None


def test_invoice_subscription_id_reads_nested_parent() -> None:
    invoice = {"parent": {"subscription_details": {"subscription": "sub_nested"}}}
    assert invoice_subscription_id(invoice) == "sub_nested"


def test_parse_unknown_type_is_unhandled() -> None:
    event = parse_event({"type": "customer.updated", "data": {"object": {}}})
    assert event == Unhandled(type="customer.updated")


@pytest.mark.parametrize(
    "payload",
    [{}, {"type": ""}, {"type": "invoice.payment_failed", "data": {}}],
)
def test_parse_malformed_payload_raises(payload) -> None:
    with pytest.raises(ValueError):
        parse_event(payload)


def test_parse_rejects_non_positive_user_ids() -> None:
    event = parse_event(
        {
            "type": "customer.subscription.deleted",
            "data": {
                "object": {"id": "sub_1", "status": "canceled", "metadata": {"userId": "0"}}
            },
        }
    )
    assert isinstance(event, SubscriptionDeleted)
    assert event.user_id is None
