"""Stripe subscription lifecycle mapped onto a per-user plan record.

Incoming webhook payloads are parsed once at the boundary into a closed set of
event variants. ``apply_event`` is a pure function of the current record and the
event, so duplicate or replayed deliveries converge on the same state without
any local dedup bookkeeping.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Union

from models import PlanTier

GRACE_DAYS = 3
PAID_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class BillingRecord:
    plan: PlanTier = PlanTier.free
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    grace_until: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutCompleted:
    user_id: Optional[int]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionCreated:
    user_id: Optional[int]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[str]


@dataclass(frozen=True)
class PaymentFailed:
    subscription_id: Optional[str]
    occurred_at: datetime
    user_id: Optional[int] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class PaymentSucceeded:
    subscription_id: Optional[str]
    user_id: Optional[int] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    user_id: Optional[int]
    subscription_id: Optional[str]
    status: Optional[str]


@dataclass(frozen=True)
class Unhandled:
    type: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionCreated,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    Unhandled,
]

INVOICE_EVENTS = (PaymentFailed, PaymentSucceeded)


def _ref_id(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def parse_user_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        user_id = int(str(value).strip())
    except ValueError:
        return None
    return user_id if user_id > 0 else None


def metadata_user_id(obj: Mapping[str, Any]) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    return parse_user_id(metadata.get("userId"))


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub_id = _ref_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # Newer API versions nest the reference under the invoice parent.
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref_id(details.get("subscription"))


def _event_time(payload: Mapping[str, Any]) -> datetime:
    created = payload.get("created")
    if created is None:
        raise ValueError("Event is missing its creation timestamp")
    return datetime.fromtimestamp(int(created), tz=timezone.utc).replace(tzinfo=None)


def parse_event(payload: Mapping[str, Any]) -> BillingEvent:
    """Turn a decoded Stripe event body into a billing event variant."""
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("Event has no type")
    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, Mapping):
        raise ValueError("Event has no data object")

    if event_type == "checkout.session.completed":
        user_id = metadata_user_id(obj) or parse_user_id(obj.get("client_reference_id"))
        return CheckoutCompleted(
            user_id=user_id,
            customer_id=_ref_id(obj.get("customer")),
            subscription_id=_ref_id(obj.get("subscription")),
        )
    if event_type == "customer.subscription.created":
        return SubscriptionCreated(
            user_id=metadata_user_id(obj),
            customer_id=_ref_id(obj.get("customer")),
            subscription_id=_ref_id(obj.get("id")),
            status=obj.get("status"),
        )
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(
            user_id=metadata_user_id(obj),
            subscription_id=_ref_id(obj.get("id")),
            status=obj.get("status"),
        )
    if event_type == "invoice.payment_failed":
        return PaymentFailed(
            subscription_id=invoice_subscription_id(obj),
            occurred_at=_event_time(payload),
        )
    if event_type == "invoice.payment_succeeded":
        return PaymentSucceeded(subscription_id=invoice_subscription_id(obj))
    return Unhandled(type=event_type)


def event_user_id(event: BillingEvent) -> Optional[int]:
    return getattr(event, "user_id", None)


def apply_event(
    record: BillingRecord, event: BillingEvent, *, grace_days: int = GRACE_DAYS
) -> BillingRecord:
    if isinstance(event, Unhandled) or event_user_id(event) is None:
        return record

    if isinstance(event, CheckoutCompleted):
        return replace(
            record,
            plan=PlanTier.pro,
            stripe_customer_id=event.customer_id or record.stripe_customer_id,
            stripe_subscription_id=event.subscription_id,
            subscription_status="active",
            grace_until=None,
        )
    if isinstance(event, SubscriptionCreated):
        return replace(
            record,
            plan=PlanTier.pro,
            stripe_customer_id=event.customer_id or record.stripe_customer_id,
            stripe_subscription_id=event.subscription_id,
            subscription_status=event.status,
            grace_until=None,
        )
    if isinstance(event, PaymentFailed):
        return replace(
            record,
            stripe_subscription_id=event.subscription_id
            or record.stripe_subscription_id,
            subscription_status=event.status or "past_due",
            grace_until=event.occurred_at + timedelta(days=grace_days),
        )
    if isinstance(event, PaymentSucceeded):
        return replace(
            record,
            plan=PlanTier.pro,
            stripe_subscription_id=event.subscription_id
            or record.stripe_subscription_id,
            subscription_status=(
                event.status if event.status in PAID_STATUSES else "active"
            ),
            grace_until=None,
        )
    if isinstance(event, SubscriptionDeleted):
        return replace(
            record,
            plan=PlanTier.free,
            stripe_subscription_id=None,
            subscription_status=event.status,
            grace_until=None,
        )
    raise TypeError(f"Unknown billing event: {event!r}")


def is_entitled(record: BillingRecord, now: datetime) -> bool:
    if record.plan != PlanTier.pro:
        return False
    if record.subscription_status in PAID_STATUSES:
        return True
    if record.grace_until is not None and now < record.grace_until:
        return True
    # Compatibility rule: pro rows written before billing fields existed.
    return record.subscription_status is None and record.grace_until is None
