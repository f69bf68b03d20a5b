from datetime import datetime, timedelta

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import PlanTier, Profile
from services import DEFAULT_CATEGORIES, BillingService, CategoryService, ProfileService
from stripe_gateway import SubscriptionInfo

NOW = datetime(2025, 3, 10, 8, 0, 0)


class FakeStripe:
    def __init__(self, *subscriptions: SubscriptionInfo) -> None:
        self.subscriptions = {sub.id: sub for sub in subscriptions}
        self.calls: list[str] = []

    def __call__(self, subscription_id: str):
        self.calls.append(subscription_id)
        return self.subscriptions.get(subscription_id)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _invoice_event(event_type: str, subscription_id: str, created: datetime) -> dict:
    return {
        "type": event_type,
        "created": int((created - datetime(1970, 1, 1)).total_seconds()),
        "data": {"object": {"subscription": subscription_id}},
    }


def test_invoice_event_resolves_user_from_subscription_metadata() -> None:
    fake = FakeStripe(
        SubscriptionInfo(
            id="sub_1", status="past_due", customer_id="cus_1", metadata={"userId": "5"}
        )
    )
    with _session() as session:
        outcome = BillingService(session, fake).handle(
            _invoice_event("invoice.payment_failed", "sub_1", NOW)
        )
        assert outcome.updated
        assert outcome.user_id == 5
        assert outcome.grace_until == NOW + timedelta(days=3)

        profile = ProfileService(session, 5).find()
        assert profile.subscription_status == "past_due"
        assert profile.stripe_subscription_id == "sub_1"
        assert fake.calls == ["sub_1"]


def test_profile_created_by_webhook_still_gets_default_categories() -> None:
    event = {
        "type": "checkout.session.completed",
        "created": 1_700_000_000,
        "data": {
            "object": {
                "metadata": {"userId": "8"},
                "customer": "cus_8",
                "subscription": "sub_8",
            }
        },
    }
    with _session() as session:
        assert BillingService(session).handle(event).updated
        assert CategoryService(session, 8).list_all() == []

        profile = ProfileService(session, 8).get_or_create(email="p@example.com")
        assert profile.plan == PlanTier.pro
        assert profile.email == "p@example.com"
        names = [c.name for c in CategoryService(session, 8).list_all()]
        assert names == [name for name, _ in DEFAULT_CATEGORIES]


def test_invoice_event_falls_back_to_stored_subscription() -> None:
    with _session() as session:
        session.add(
            Profile(
                user_id=3,
                plan=PlanTier.pro,
                stripe_subscription_id="sub_3",
                subscription_status="past_due",
                grace_until=NOW,
            )
        )
        session.commit()

        outcome = BillingService(session, FakeStripe()).handle(
            _invoice_event("invoice.payment_succeeded", "sub_3", NOW)
        )
        assert outcome.user_id == 3
        profile = ProfileService(session, 3).find()
        assert profile.grace_until is None
        assert profile.subscription_status == "active"
        assert ProfileService(session, 3).effective_plan(NOW) == PlanTier.pro


def test_unresolvable_payment_failure_leaves_storage_untouched() -> None:
    with _session() as session:
        outcome = BillingService(session, FakeStripe()).handle(
            _invoice_event("invoice.payment_failed", "sub_missing", NOW)
        )
        assert outcome.missing_user_id
        assert not outcome.updated
        assert session.scalars(select(Profile)).all() == []


def test_replayed_payment_failure_keeps_first_deadline() -> None:
    with _session() as session:
        session.add(Profile(user_id=1, plan=PlanTier.pro, stripe_subscription_id="sub_1"))
        session.commit()
        service = BillingService(session)
        event = _invoice_event("invoice.payment_failed", "sub_1", NOW)
        first = service.handle(event)
        second = service.handle(event)
        assert first.grace_until == second.grace_until == NOW + timedelta(days=3)


def test_lapsed_grace_is_resynced_from_stripe() -> None:
    fake = FakeStripe(
        SubscriptionInfo(id="sub_ok", status="active", customer_id=None, metadata={}),
        SubscriptionInfo(id="sub_gone", status="canceled", customer_id=None, metadata={}),
        SubscriptionInfo(id="sub_due", status="past_due", customer_id=None, metadata={}),
    )
    expired = NOW - timedelta(hours=1)
    with _session() as session:
        for user_id, sub_id in ((1, "sub_ok"), (2, "sub_gone"), (3, "sub_due")):
            session.add(
                Profile(
                    user_id=user_id,
                    plan=PlanTier.pro,
                    stripe_subscription_id=sub_id,
                    subscription_status="past_due",
                    grace_until=expired,
                )
            )
        session.add(
            Profile(
                user_id=4,
                plan=PlanTier.pro,
                stripe_subscription_id="sub_future",
                subscription_status="past_due",
                grace_until=NOW + timedelta(days=1),
            )
        )
        session.commit()

        synced = BillingService(session, fake).sync_lapsed_grace(NOW)
        assert synced == 2
        assert "sub_future" not in fake.calls

        plans = {
            p.user_id: (p.plan, p.subscription_status)
            for p in session.scalars(select(Profile))
        }
        assert plans[1] == (PlanTier.pro, "active")
        assert plans[2] == (PlanTier.free, "canceled")
        assert plans[3] == (PlanTier.pro, "past_due")


def test_sync_without_stripe_access_does_nothing() -> None:
    with _session() as session:
        assert BillingService(session).sync_lapsed_grace(NOW) == 0
