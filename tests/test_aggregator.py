# tests/test_aggregator.py
from backend.lib.token_meter_core.aggregator import aggregate_monthly, aggregate_weekly
from backend.lib.token_meter_core.models import DailyUsagePoint
from datetime import date, timedelta
import pytest


def make_daily(start=date(2025, 10, 30), days=18):
    # usage 1, 2, 3, ... so every bucket sum is distinct
    points = [DailyUsagePoint(date=start + timedelta(days=i), usage_kwh=float(i + 1)) for i in range(days)]
    points[5].is_top_up = True  # 2025-11-04
    return points


def test_weeks_start_on_monday():
    weeks = aggregate_weekly(make_daily())
    assert [w.period_key for w in weeks] == ["2025-10-27", "2025-11-03", "2025-11-10"]
    assert weeks[0].label == "27 Oct - 2 Nov"
    assert weeks[0].end_date == date(2025, 11, 2)
    assert [w.has_top_up for w in weeks] == [False, True, False]


def test_weekly_sums_match_daily():
    daily = make_daily()
    for week in aggregate_weekly(daily):
        in_week = [d.usage_kwh for d in daily if week.start_date <= d.date <= week.end_date]
        assert week.usage_kwh == pytest.approx(sum(in_week))
        assert week.avg_daily == pytest.approx(week.usage_kwh / 7)


def test_weekly_truncates_to_most_recent():
    weeks = aggregate_weekly(make_daily(), week_count=2)
    assert [w.period_key for w in weeks] == ["2025-11-03", "2025-11-10"]
    assert aggregate_weekly(make_daily(), week_count=0) == []


def test_monthly_average_uses_days_present():
    months = aggregate_monthly(make_daily(), tariff_per_kwh=1000)
    assert [m.period_key for m in months] == ["2025-10", "2025-11"]
    october, november = months
    assert october.days == 2
    assert october.usage_kwh == 3.0
    assert october.avg_daily == 1.5
    assert october.label == "Oct 2025"
    assert october.est_cost == 3000
    assert november.days == 16
    assert november.has_top_up


def test_monthly_sums_match_daily():
    daily = make_daily()
    months = aggregate_monthly(daily)
    assert sum(m.usage_kwh for m in months) == pytest.approx(sum(d.usage_kwh for d in daily))
    assert months[0].est_cost is None
    assert aggregate_monthly(daily, month_count=1)[0].period_key == "2025-11"
