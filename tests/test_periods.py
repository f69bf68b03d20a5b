from datetime import date

import pytest

from config import default_plans
from models import PlanTier
from periods import (
    DateRange,
    EntitlementError,
    allowed_presets,
    clamp_preset,
    month_period,
    plan_window,
    resolve_window,
)

TODAY = date(2025, 6, 30)


@pytest.mark.parametrize("days", [7, 14, 30])
def test_free_presets_cover_exactly_n_days(days: int) -> None:
    period = resolve_window(PlanTier.free, days, today=TODAY)
    assert period.end == TODAY
    assert (period.end - period.start).days + 1 == days
    assert period.days == days
    assert period.label == f"Last {days} days"
    assert not period.using_custom_range


@pytest.mark.parametrize("days", [7, 14, 30, 60, 90, 120])
def test_pro_presets_cover_exactly_n_days(days: int) -> None:
    period = resolve_window(PlanTier.pro, days, today=TODAY)
    assert period.end == TODAY
    assert (period.end - period.start).days + 1 == days
    assert period.label == f"Last {days} days"


def test_free_plan_defaults_to_thirty_days() -> None:
    period = resolve_window(PlanTier.free, None, today=TODAY)
    assert period.start == date(2025, 6, 1)
    assert period.days == 30


def test_pro_plan_defaults_to_ninety_days() -> None:
    period = resolve_window(PlanTier.pro, None, today=TODAY)
    assert period.days == 90
    assert period.start == date(2025, 4, 2)


def test_free_plan_rejects_pro_preset_with_upgrade_reason() -> None:
    with pytest.raises(EntitlementError) as excinfo:
        resolve_window(PlanTier.free, 90, today=TODAY)
    assert "Pro" in excinfo.value.reason


def test_unknown_preset_is_a_plain_validation_error() -> None:
    with pytest.raises(ValueError) as excinfo:
        resolve_window(PlanTier.pro, 45, today=TODAY)
    assert not isinstance(excinfo.value, EntitlementError)


def test_free_plan_cannot_use_custom_range() -> None:
    with pytest.raises(EntitlementError):
        resolve_window(
            PlanTier.free,
            None,
            DateRange(date(2025, 6, 1), date(2025, 6, 10)),
            today=TODAY,
        )


def test_custom_range_reversed_bounds_are_swapped() -> None:
    period = resolve_window(
        PlanTier.pro,
        None,
        DateRange(date(2025, 6, 20), date(2025, 6, 10)),
        today=TODAY,
    )
    assert period.start == date(2025, 6, 10)
    assert period.end == date(2025, 6, 20)
    assert period.using_custom_range
    assert period.label == "2025-06-10 – 2025-06-20"
    assert period.days == 11


def test_custom_range_is_clamped_to_lookback_and_today() -> None:
    period = resolve_window(
        PlanTier.pro,
        None,
        DateRange(date(2024, 1, 1), date(2025, 12, 31)),
        today=TODAY,
    )
    assert period.start == date(2025, 3, 3)
    assert period.end == TODAY
    assert period.days == 120


def test_custom_range_entirely_in_future_collapses_to_today() -> None:
    period = resolve_window(
        PlanTier.pro,
        None,
        DateRange(date(2025, 8, 1), date(2025, 8, 5)),
        today=TODAY,
    )
    assert period.start == period.end == TODAY


def test_custom_range_entirely_before_lookback_collapses_to_earliest_day() -> None:
    period = resolve_window(
        PlanTier.pro,
        None,
        DateRange(date(2024, 1, 1), date(2024, 1, 5)),
        today=TODAY,
    )
    assert period.start == period.end == date(2025, 3, 3)


def test_clamp_preset_keeps_allowed_value() -> None:
    assert clamp_preset(PlanTier.free, 14) == 14
    assert clamp_preset(PlanTier.pro, 120) == 120


def test_clamp_preset_after_downgrade_falls_back_to_plan_default() -> None:
    assert clamp_preset(PlanTier.free, 90) == 30
    assert clamp_preset(PlanTier.free, None) == 30


def test_plan_window_spans_max_lookback() -> None:
    window = plan_window(PlanTier.free, today=TODAY)
    assert window.end == TODAY
    assert (window.end - window.start).days + 1 == 30


def test_custom_preset_table_is_respected() -> None:
    plans = default_plans()
    plans["free"].preset_days = (7,)
    assert allowed_presets(PlanTier.free, plans) == (7,)
    with pytest.raises(EntitlementError):
        resolve_window(PlanTier.free, 14, today=TODAY, plans=plans)


def test_date_range_contains_is_inclusive() -> None:
    window = DateRange(date(2025, 6, 1), TODAY)
    assert window.contains(date(2025, 6, 1))
    assert window.contains(TODAY)
    assert not window.contains(date(2025, 5, 31))
    assert not window.contains(date(2025, 7, 1))


def test_this_month_runs_to_today() -> None:
    period = month_period(date(2025, 6, 12))
    assert (period.start, period.end) == (date(2025, 6, 1), date(2025, 6, 12))
    assert period.label == "This month"
    assert period.days == 12


def test_last_month_is_the_whole_previous_month() -> None:
    period = month_period(TODAY, previous=True)
    assert (period.start, period.end) == (date(2025, 5, 1), date(2025, 5, 31))
    assert period.label == "Last month"
    assert period.days == 31

    january = month_period(date(2025, 1, 15), previous=True)
    assert (january.start, january.end) == (date(2024, 12, 1), date(2024, 12, 31))
