# backend/lib/token_meter_core/forecast.py
"""
Burn-rate projection: how long the remaining token balance will last.

A straight-line extrapolation of the average daily draw. Deterministic for a
given reading set and `today`.
"""
import math
from datetime import date, timedelta
from typing import List, Optional

from .models import BurnRateProjection, ProjectionPoint, Reading, sort_chronologically
from .processor import reconstruct

AVERAGE_WINDOW_DAYS = 30
MAX_PROJECTION_DAYS = 60
CRITICAL_DAYS = 3
WARNING_DAYS = 7


def average_daily_usage(readings: List[Reading]) -> float:
    """Mean of the positive daily usages in the last 30 reconstructed days."""
    usages = [d.usage_kwh for d in reconstruct(readings, days=AVERAGE_WINDOW_DAYS) if d.usage_kwh > 0]
    return sum(usages) / len(usages) if usages else 0.0


def project(readings: List[Reading], today: Optional[date] = None) -> BurnRateProjection:
    if not readings:
        return BurnRateProjection(has_data=False)

    today = today or date.today()
    remaining = sort_chronologically(readings)[-1].kwh_value
    avg = average_daily_usage(readings)

    if avg <= 0 or remaining <= 0:
        return BurnRateProjection(has_data=False, remaining_kwh=remaining)

    days_until_depletion = math.ceil(remaining / avg)
    capped = min(days_until_depletion, MAX_PROJECTION_DAYS)

    points = [
        ProjectionPoint(
            date=today + timedelta(days=i),
            kwh_remaining=round(max(0.0, remaining - avg * i), 2),
            is_actual=(i == 0),
            day_index=i,
        )
        for i in range(capped + 1)
    ]

    critical_kwh = avg * CRITICAL_DAYS
    warning_kwh = avg * WARNING_DAYS

    return BurnRateProjection(
        has_data=True,
        remaining_kwh=round(remaining, 2),
        avg_daily_usage=round(avg, 2),
        days_until_depletion=days_until_depletion,
        predicted_depletion_date=today + timedelta(days=days_until_depletion),
        projection_points=points,
        critical_kwh=round(critical_kwh, 2),
        warning_kwh=round(warning_kwh, 2),
        days_to_critical=math.ceil((remaining - critical_kwh) / avg) if remaining > critical_kwh else 0,
        days_to_warning=math.ceil((remaining - warning_kwh) / avg) if remaining > warning_kwh else 0,
        is_critical=days_until_depletion <= CRITICAL_DAYS,
        is_warning=CRITICAL_DAYS < days_until_depletion <= WARNING_DAYS,
    )
