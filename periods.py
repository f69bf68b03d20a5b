from dataclasses import dataclass
from datetime import date, timedelta
from typing import Mapping, Optional

from config import PlanWindow, default_plans
from models import PlanTier


class EntitlementError(ValueError):
    """The requested window or feature is above the caller's plan tier."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class Period:
    start: date
    end: date
    using_custom_range: bool
    label: str
    days: int


def _window(plan: PlanTier, plans: Optional[Mapping[str, PlanWindow]]) -> PlanWindow:
    table = plans if plans is not None else default_plans()
    try:
        return table[PlanTier(plan).value]
    except KeyError as exc:
        raise ValueError(f"Unknown plan: {plan}") from exc


def allowed_presets(
    plan: PlanTier, plans: Optional[Mapping[str, PlanWindow]] = None
) -> tuple[int, ...]:
    return _window(plan, plans).preset_days


def clamp_preset(
    plan: PlanTier,
    preset_days: Optional[int],
    plans: Optional[Mapping[str, PlanWindow]] = None,
) -> int:
    """Keep a stored preset if the plan still allows it, else the plan default."""
    window = _window(plan, plans)
    if preset_days in window.preset_days:
        return preset_days
    return window.default_days


def plan_window(
    plan: PlanTier,
    *,
    today: date,
    plans: Optional[Mapping[str, PlanWindow]] = None,
) -> DateRange:
    window = _window(plan, plans)
    return DateRange(today - timedelta(days=window.max_days - 1), today)


def format_range_label(start: date, end: date) -> str:
    return f"{start.isoformat()} – {end.isoformat()}"


def resolve_window(
    plan: PlanTier,
    preset_days: Optional[int],
    custom_range: Optional[DateRange] = None,
    *,
    today: date,
    plans: Optional[Mapping[str, PlanWindow]] = None,
) -> Period:
    window = _window(plan, plans)
    plan = PlanTier(plan)

    if custom_range is not None:
        if plan != PlanTier.pro:
            raise EntitlementError("Custom date ranges are Pro.")
        start, end = custom_range.start, custom_range.end
        if start > end:
            start, end = end, start
        earliest = today - timedelta(days=window.max_days - 1)
        start = max(start, earliest)
        end = min(end, today)
        if start > end:
            # Requested range lies wholly outside the plan window.
            start = end = max(end, earliest)
        return Period(
            start=start,
            end=end,
            using_custom_range=True,
            label=format_range_label(start, end),
            days=(end - start).days + 1,
        )

    days = window.default_days if preset_days is None else int(preset_days)
    if days not in window.preset_days:
        known = set()
        for other in (plans if plans is not None else default_plans()).values():
            known.update(other.preset_days)
        if days in known:
            raise EntitlementError(f"Windows longer than {window.max_days} days are Pro.")
        raise ValueError(f"Unsupported window: {days} days")

    return Period(
        start=today - timedelta(days=days - 1),
        end=today,
        using_custom_range=False,
        label=f"Last {days} days",
        days=days,
    )


def month_period(today: date, *, previous: bool = False) -> Period:
    """The current calendar month up to today, or the whole previous month."""
    first = today.replace(day=1)
    if previous:
        end = first - timedelta(days=1)
        start = end.replace(day=1)
        label = "Last month"
    else:
        start, end = first, today
        label = "This month"
    return Period(
        start=start,
        end=end,
        using_custom_range=False,
        label=label,
        days=(end - start).days + 1,
    )
