from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from rapidfuzz.distance import Levenshtein
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from billing import (
    INVOICE_EVENTS,
    BillingEvent,
    BillingRecord,
    PaymentSucceeded,
    SubscriptionDeleted,
    Unhandled,
    apply_event,
    event_user_id,
    is_entitled,
    parse_event,
    parse_user_id,
)
from config import get_settings
from csv_utils import export_transactions
from models import Budget, Category, PlanTier, Profile, Transaction, TransactionType
from periods import DateRange, Period, format_range_label, month_period
from schemas import BudgetIn, CategoryIn, ReportOptions, ReportRange, TransactionIn
from stripe_gateway import SubscriptionInfo
from summaries import (
    budget_usage,
    by_category,
    health_status,
    savings_rate,
    spending_ratio,
    summarize,
    top_categories,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: tuple[tuple[str, TransactionType], ...] = (
    ("Rent / Mortgage", TransactionType.expense),
    ("Side Income", TransactionType.income),
    ("Groceries", TransactionType.expense),
    ("Dining Out", TransactionType.expense),
    ("Transportation", TransactionType.expense),
    ("Utilities", TransactionType.expense),
    ("Debt Payments", TransactionType.expense),
    ("Subscriptions", TransactionType.expense),
    ("Salary / Wages", TransactionType.income),
)


def get_current_user_id() -> int:
    return get_settings().default_user_id


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def utcnow() -> datetime:
    return datetime.utcnow()


class CategoryNotFound(ValueError):
    pass


class CategoryAmbiguous(ValueError):
    pass


class DateOutsideWindow(ValueError):
    pass


class ProfileService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def find(self) -> Optional[Profile]:
        return self.session.scalar(
            select(Profile).where(Profile.user_id == self.user_id)
        )

    def _seed_default_categories(self) -> bool:
        has_categories = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        if has_categories:
            return False
        for index, (name, txn_type) in enumerate(DEFAULT_CATEGORIES, start=1):
            self.session.add(
                Category(user_id=self.user_id, name=name, type=txn_type, sort_index=index)
            )
        return True

    def get_or_create(self, email: Optional[str] = None) -> Profile:
        """Load the profile, creating it if missing and seeding categories if none exist."""
        profile = self.find()
        created = profile is None
        changed = created
        if created:
            profile = Profile(user_id=self.user_id, email=email, plan=PlanTier.free)
            profile.category_order = []
            self.session.add(profile)
        elif email and not profile.email:
            profile.email = email
            changed = True
        if self._seed_default_categories():
            changed = True
        if changed:
            self.session.commit()
            self.session.refresh(profile)
        if created:
            logger.info(f"profile_created: user_id={self.user_id}")
        return profile

    @staticmethod
    def record_of(profile: Optional[Profile]) -> BillingRecord:
        if profile is None:
            return BillingRecord()
        return BillingRecord(
            plan=PlanTier(profile.plan),
            stripe_customer_id=profile.stripe_customer_id,
            stripe_subscription_id=profile.stripe_subscription_id,
            subscription_status=profile.subscription_status,
            grace_until=profile.grace_until,
        )

    @staticmethod
    def store_record(profile: Profile, record: BillingRecord) -> None:
        profile.plan = record.plan
        profile.stripe_customer_id = record.stripe_customer_id
        profile.stripe_subscription_id = record.stripe_subscription_id
        profile.subscription_status = record.subscription_status
        profile.grace_until = record.grace_until

    def effective_plan(self, now: Optional[datetime] = None) -> PlanTier:
        record = self.record_of(self.find())
        if is_entitled(record, now or utcnow()):
            return PlanTier.pro
        return PlanTier.free


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _saved_order(self) -> list[str]:
        profile = ProfileService(self.session, self.user_id).find()
        return profile.category_order if profile else []

    def list_all(self) -> list[Category]:
        categories = self.session.scalars(
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.sort_index, Category.name)
        ).all()
        saved = self._saved_order()
        if not saved:
            return list(categories)
        position = {name: index for index, name in enumerate(saved)}
        unplaced = len(position)
        return sorted(
            categories, key=lambda c: (position.get(c.name, unplaced), c.name)
        )

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise CategoryNotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == data.name.lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        next_index = (
            self.session.scalar(
                select(func.coalesce(func.max(Category.sort_index), 0)).where(
                    Category.user_id == self.user_id
                )
            )
            or 0
        ) + 1
        category = Category(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            sort_index=next_index,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        name = category.name
        self.session.delete(category)
        self.session.execute(
            delete(Budget).where(Budget.user_id == self.user_id, Budget.category == name)
        )
        profile = ProfileService(self.session, self.user_id).find()
        if profile and name in profile.category_order:
            profile.category_order = [n for n in profile.category_order if n != name]
        self.session.commit()
        logger.info(f"category_deleted: user_id={self.user_id} name={name!r}")

    def reorder(self, names: list[str]) -> list[Category]:
        profile = ProfileService(self.session, self.user_id).get_or_create()
        known = set(
            self.session.scalars(
                select(Category.name).where(Category.user_id == self.user_id)
            )
        )
        ordered: list[str] = []
        for name in names:
            if name in known and name not in ordered:
                ordered.append(name)
        profile.category_order = ordered
        self.session.commit()
        return self.list_all()

    def resolve(self, name: str) -> Category:
        """Find a category by exact name, then case-insensitively, then within one edit."""
        clean = name.strip()
        input_lower = clean.lower()
        categories = self.session.scalars(
            select(Category).where(Category.user_id == self.user_id)
        ).all()
        for category in categories:
            if category.name == clean:
                return category
        for category in categories:
            if category.name.lower() == input_lower:
                return category

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(input_lower, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted(c.name for c in best))
                raise CategoryAmbiguous(
                    f"Category '{clean}' is ambiguous; matches: {options}"
                )
            return best[0]
        raise CategoryNotFound("Category not found.")


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def _check_window(day: date, window: DateRange) -> None:
        if not window.contains(day):
            days = (window.end - window.start).days + 1
            raise DateOutsideWindow(f"Only last {days} days are allowed for your plan.")

    def create(self, data: TransactionIn, window: DateRange) -> Transaction:
        self._check_window(data.date, window)
        category = CategoryService(self.session, self.user_id).resolve(data.category)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=category.type,
            amount_cents=data.amount_cents,
            category=category.name,
            description=data.description,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        return txn

    def update(
        self, transaction_id: int, data: TransactionIn, window: DateRange
    ) -> Transaction:
        txn = self.get(transaction_id)
        self._check_window(data.date, window)
        if data.category != txn.category:
            category = CategoryService(self.session, self.user_id).resolve(
                data.category
            )
            txn.category = category.name
            txn.type = category.type
        txn.date = data.date
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def _period_query(
        self,
        period: Period,
        txn_type: Optional[TransactionType] = None,
        category: Optional[str] = None,
    ):
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if txn_type:
            stmt = stmt.where(Transaction.type == txn_type)
        if category:
            # Plain name match, so deleted categories can still be drilled into.
            stmt = stmt.where(Transaction.category == category)
        return stmt

    def list(
        self,
        period: Period,
        limit: int = 50,
        offset: int = 0,
        category: Optional[str] = None,
    ) -> list[Transaction]:
        stmt = self._period_query(period, category=category).offset(offset).limit(limit)
        return self.session.scalars(stmt).all()

    def all_for_period(
        self,
        period: Period,
        txn_type: Optional[TransactionType] = None,
        category: Optional[str] = None,
    ) -> list[Transaction]:
        return self.session.scalars(self._period_query(period, txn_type, category)).all()

    def category_total(self, period: Period, category: str) -> int:
        """Income minus expenses booked on one category within the period."""
        return summarize(self.all_for_period(period, category=category)).net


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> dict[str, int]:
        rows = self.session.scalars(
            select(Budget).where(Budget.user_id == self.user_id).order_by(Budget.category)
        ).all()
        return {row.category: row.amount_cents for row in rows}

    def upsert(self, data: BudgetIn) -> Budget:
        category = CategoryService(self.session, self.user_id).resolve(data.category)
        if category.type != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id, Budget.category == category.name
            )
        )
        if budget is None:
            budget = Budget(
                user_id=self.user_id, category=category.name, amount_cents=0
            )
            self.session.add(budget)
        budget.amount_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, category: str) -> None:
        result = self.session.execute(
            delete(Budget).where(
                Budget.user_id == self.user_id, Budget.category == category
            )
        )
        if not result.rowcount:
            raise ValueError("Budget not found")
        self.session.commit()

    def usage(self, transactions: list[Transaction]) -> list[dict[str, object]]:
        budgets = self.list_all()
        spent = by_category(transactions, TransactionType.expense)
        rows: list[dict[str, object]] = []
        for category in CategoryService(self.session, self.user_id).list_all():
            if category.type != TransactionType.expense:
                continue
            budget = budgets.get(category.name)
            category_spent = spent.get(category.name, 0)
            result = budget_usage(category_spent, budget)
            rows.append(
                {
                    "category": category.name,
                    "budget_cents": budget,
                    "spent_cents": category_spent,
                    "status": result.status.value,
                    "pct": result.pct,
                    "ratio": float(result.ratio) if result.ratio is not None else None,
                }
            )
        return rows


class MetricsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def dashboard(self, period: Period) -> dict[str, object]:
        transactions = TransactionService(self.session, self.user_id).all_for_period(
            period
        )
        totals = summarize(transactions)
        expense_totals = by_category(transactions, TransactionType.expense)
        return {
            "income_cents": totals.income,
            "expenses_cents": totals.expenses,
            "net_cents": totals.net,
            "savings_rate": savings_rate(totals.income, totals.net),
            "spending_ratio": float(spending_ratio(totals.income, totals.expenses)),
            "health": health_status(totals.net),
            "top_categories": [
                {"category": name, "spent_cents": cents}
                for name, cents in top_categories(expense_totals)
            ],
            "budgets": BudgetService(self.session, self.user_id).usage(transactions),
            "transaction_count": len(transactions),
        }


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def export(self, period: Period) -> str:
        transactions = TransactionService(self.session, self.user_id).all_for_period(
            period
        )
        return export_transactions(transactions)


class ReportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.txn_service = TransactionService(session, self.user_id)

    def report_period(self, options: ReportOptions, today: Optional[date] = None) -> Period:
        if options.range_mode == ReportRange.this_month:
            return month_period(today or local_today())
        if options.range_mode == ReportRange.last_month:
            return month_period(today or local_today(), previous=True)
        return Period(
            start=options.start,
            end=options.end,
            using_custom_range=True,
            label=options.label or format_range_label(options.start, options.end),
            days=(options.end - options.start).days + 1,
        )

    def gather_data(
        self, options: ReportOptions, today: Optional[date] = None
    ) -> dict[str, object]:
        period = self.report_period(options, today)
        transactions = self.txn_service.all_for_period(period, options.transaction_type)
        totals = summarize(transactions)
        expense_totals = by_category(transactions, TransactionType.expense)
        budgets = BudgetService(self.session, self.user_id).usage(transactions)
        return {
            "period": period,
            "options": options,
            "summary": totals,
            "savings_rate": savings_rate(totals.income, totals.net),
            "top_categories": top_categories(expense_totals),
            "category_totals": sorted(
                expense_totals.items(), key=lambda item: (-item[1], item[0])
            ),
            "budgets": [b for b in budgets if b["budget_cents"]],
            "transactions": transactions,
        }


@dataclass
class WebhookOutcome:
    event_type: str
    user_id: Optional[int] = None
    updated: bool = False
    missing_user_id: bool = False
    grace_until: Optional[datetime] = None

    def as_response(self) -> dict[str, object]:
        body: dict[str, object] = {"received": True, "type": self.event_type}
        if self.missing_user_id:
            body["missing_user_id"] = True
        if self.updated:
            body["updated"] = True
            body["user_id"] = self.user_id
        if self.grace_until is not None:
            body["grace_until"] = self.grace_until.isoformat()
        return body


SubscriptionFetcher = Callable[[str], Optional[SubscriptionInfo]]


class BillingService:
    def __init__(
        self,
        session: Session,
        fetch_subscription: Optional[SubscriptionFetcher] = None,
    ) -> None:
        self.session = session
        self.fetch_subscription = fetch_subscription
        self.grace_days = get_settings().grace_days

    def _profile_for_subscription(self, subscription_id: str) -> Optional[Profile]:
        return self.session.scalar(
            select(Profile).where(Profile.stripe_subscription_id == subscription_id)
        )

    def _resolve_invoice_event(self, event: BillingEvent) -> BillingEvent:
        subscription_id = event.subscription_id
        if not subscription_id:
            return event
        info: Optional[SubscriptionInfo] = None
        if self.fetch_subscription is not None:
            info = self.fetch_subscription(subscription_id)
        user_id = parse_user_id(info.metadata.get("userId")) if info else None
        if user_id is None:
            stored = self._profile_for_subscription(subscription_id)
            user_id = stored.user_id if stored else None
        return replace(
            event,
            user_id=user_id,
            status=info.status if info else event.status,
        )

    def handle(self, payload: dict) -> WebhookOutcome:
        event = parse_event(payload)
        event_type = str(payload.get("type") or "unknown")
        if isinstance(event, Unhandled):
            logger.info(f"billing_event_ignored: type={event_type}")
            return WebhookOutcome(event_type=event_type)
        if isinstance(event, INVOICE_EVENTS):
            event = self._resolve_invoice_event(event)
        return self.apply(event, event_type)

    def apply(self, event: BillingEvent, event_type: str) -> WebhookOutcome:
        user_id = event_user_id(event)
        if user_id is None:
            logger.warning(f"billing_event_unmapped: type={event_type}")
            return WebhookOutcome(event_type=event_type, missing_user_id=True)

        profile = ProfileService(self.session, user_id).find()
        if profile is None:
            profile = Profile(user_id=user_id, plan=PlanTier.free)
            profile.category_order = []
            self.session.add(profile)
        before = ProfileService.record_of(profile)
        after = apply_event(before, event, grace_days=self.grace_days)
        ProfileService.store_record(profile, after)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                f"billing_event_persist_failed: type={event_type} user_id={user_id}"
            )
            raise
        logger.info(
            f"billing_event_applied: type={event_type} user_id={user_id} "
            f"plan={after.plan.value} status={after.subscription_status} "
            f"grace_until={after.grace_until}"
        )
        return WebhookOutcome(
            event_type=event_type,
            user_id=user_id,
            updated=True,
            grace_until=after.grace_until,
        )

    def sync_lapsed_grace(self, now: Optional[datetime] = None) -> int:
        """Re-read subscriptions whose grace window ran out without a follow-up event."""
        if self.fetch_subscription is None:
            return 0
        now = now or utcnow()
        lapsed = self.session.scalars(
            select(Profile).where(
                Profile.plan == PlanTier.pro,
                Profile.grace_until.is_not(None),
                Profile.grace_until <= now,
                Profile.stripe_subscription_id.is_not(None),
            )
        ).all()
        synced = 0
        for profile in lapsed:
            try:
                info = self.fetch_subscription(profile.stripe_subscription_id)
            except RuntimeError:
                logger.exception(f"grace_sync_failed: user_id={profile.user_id}")
                continue
            if info is None:
                continue
            if info.status in ("active", "trialing"):
                event: BillingEvent = PaymentSucceeded(
                    subscription_id=info.id, user_id=profile.user_id, status=info.status
                )
            elif info.status in ("canceled", "incomplete_expired"):
                event = SubscriptionDeleted(
                    user_id=profile.user_id, subscription_id=info.id, status=info.status
                )
            else:
                continue
            self.apply(event, f"grace_sync.{info.status}")
            synced += 1
        return synced
