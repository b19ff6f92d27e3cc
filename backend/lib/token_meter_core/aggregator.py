# backend/lib/token_meter_core/aggregator.py
from collections import OrderedDict
from datetime import date, timedelta
from typing import List, Optional

from .models import DailyUsagePoint, MonthlyUsage, WeeklyUsage


def _week_start(day: date) -> date:
    # ISO weeks start on Monday
    return day - timedelta(days=day.weekday())


def _short(day: date) -> str:
    return f"{day.day} {day.strftime('%b')}"


def aggregate_weekly(daily: List[DailyUsagePoint], week_count: int = 12) -> List[WeeklyUsage]:
    """
    Fold daily points into Monday-start weeks, oldest first, keeping the
    most recent week_count weeks. avg_daily always divides by 7.
    """
    buckets = OrderedDict()
    for point in sorted(daily, key=lambda d: d.date):
        start = _week_start(point.date)
        bucket = buckets.setdefault(start, {"usage": 0.0, "has_top_up": False})
        bucket["usage"] += point.usage_kwh
        bucket["has_top_up"] = bucket["has_top_up"] or point.is_top_up

    weeks = []
    for start, bucket in buckets.items():
        end = start + timedelta(days=6)
        weeks.append(WeeklyUsage(
            period_key=start.isoformat(),
            label=f"{_short(start)} - {_short(end)}",
            start_date=start,
            end_date=end,
            usage_kwh=bucket["usage"],
            avg_daily=bucket["usage"] / 7,
            has_top_up=bucket["has_top_up"],
        ))
    return weeks[-week_count:] if week_count > 0 else []


def aggregate_monthly(daily: List[DailyUsagePoint], month_count: int = 12,
                      tariff_per_kwh: Optional[float] = None) -> List[MonthlyUsage]:
    """
    Fold daily points into calendar months, oldest first.

    avg_daily divides by the days actually present in the series for that
    month, not the length of the month. est_cost is filled when a tariff is
    given.
    """
    buckets = OrderedDict()
    for point in sorted(daily, key=lambda d: d.date):
        key = point.date.strftime("%Y-%m")
        bucket = buckets.setdefault(key, {"usage": 0.0, "days": 0, "has_top_up": False, "first": point.date})
        bucket["usage"] += point.usage_kwh
        bucket["days"] += 1
        bucket["has_top_up"] = bucket["has_top_up"] or point.is_top_up

    months = [
        MonthlyUsage(
            period_key=key,
            label=bucket["first"].strftime("%b %Y"),
            usage_kwh=bucket["usage"],
            avg_daily=bucket["usage"] / bucket["days"],
            days=bucket["days"],
            has_top_up=bucket["has_top_up"],
            est_cost=bucket["usage"] * tariff_per_kwh if tariff_per_kwh else None,
        )
        for key, bucket in buckets.items()
    ]
    return months[-month_count:] if month_count > 0 else []
