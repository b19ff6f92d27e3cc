# backend/lib/token_meter_core/scoring.py
"""
Efficiency score (0-100) and budget status.

Three independent parts:
- consistency (30 pts): how stable daily usage is (coefficient of variation)
- budget (40 pts): month-to-date spend against time elapsed in the month
- trend (30 pts): this week's usage against last week's
"""
import calendar
import math
from datetime import date
from typing import Dict, List, Optional, Tuple

from .models import DailyUsagePoint, EfficiencyScore, Reading
from .processor import reconstruct
from .settings import Settings

MIN_READINGS = 7
MIN_DAILY_POINTS = 7
MIN_USAGE_VALUES = 7
SCORE_WINDOW_DAYS = 30
HISTORY_DAYS = 60

CONSISTENCY_MAX = 30
BUDGET_MAX = 40
TREND_MAX = 30

# (upper bound, points); first bound the value falls under wins
CONSISTENCY_BANDS: List[Tuple[float, int]] = [(15, 30), (25, 24), (40, 18), (60, 12)]
CONSISTENCY_FLOOR = 6
BUDGET_BANDS: List[Tuple[float, int]] = [(0.8, 40), (1.0, 32), (1.2, 24), (1.5, 16)]
BUDGET_FLOOR = 8

GRADES: List[Tuple[int, str]] = [(90, "A+"), (80, "A"), (70, "B"), (60, "C"), (50, "D")]


def _band(value: float, bands: List[Tuple[float, int]], floor: int) -> int:
    for bound, points in bands:
        if value < bound:
            return points
    return floor


def grade_for(total: int) -> str:
    for threshold, grade in GRADES:
        if total >= threshold:
            return grade
    return "F"


def _consistency(window: List[DailyUsagePoint]) -> Optional[Dict[str, float]]:
    values = [d.usage_kwh for d in window if d.usage_kwh > 0]
    if len(values) < MIN_USAGE_VALUES:
        return None
    mean = sum(values) / len(values)
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    cv = std_dev / mean * 100 if mean > 0 else 0.0
    return {
        "mean": round(mean, 2),
        "std_dev": round(std_dev, 2),
        "cv": round(cv, 1),
        "points": _band(cv, CONSISTENCY_BANDS, CONSISTENCY_FLOOR),
        "max_points": CONSISTENCY_MAX,
    }


def _month_progress(today: date) -> float:
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    # today counts as elapsed
    return today.day / days_in_month


def _month_to_date_usage(window: List[DailyUsagePoint], today: date) -> float:
    return sum(d.usage_kwh for d in window
               if d.date.year == today.year and d.date.month == today.month)


def _budget(window: List[DailyUsagePoint], settings: Settings, today: date) -> Dict[str, float]:
    progress = _month_progress(today)
    actual_cost = _month_to_date_usage(window, today) * settings.tariff_per_kwh
    used = actual_cost / settings.monthly_budget if settings.monthly_budget > 0 else 0.0
    pacing = used / progress if progress > 0 else 0.0
    return {
        "monthly_budget": settings.monthly_budget,
        "actual_cost": round(actual_cost),
        "budget_used_pct": round(used * 100, 1),
        "month_progress": round(progress * 100, 1),
        "pacing_ratio": round(pacing, 2),
        "points": _band(pacing, BUDGET_BANDS, BUDGET_FLOOR),
        "max_points": BUDGET_MAX,
    }


def _trend(daily: List[DailyUsagePoint]) -> Dict[str, float]:
    newest_first = sorted(daily, key=lambda d: d.date, reverse=True)
    this_week = sum(d.usage_kwh for d in newest_first[0:7])
    last_week = sum(d.usage_kwh for d in newest_first[7:14])
    change_pct = 0.0
    points = 20  # stable, or nothing to compare against
    if last_week > 0:
        change_pct = (this_week - last_week) / last_week * 100
        if change_pct < -10:
            points = 30
        elif change_pct < -5:
            points = 25
        elif change_pct <= 5:
            points = 20
        elif change_pct < 10:
            points = 12
        else:
            points = 6
    return {
        "this_week": round(this_week, 2),
        "last_week": round(last_week, 2),
        "change_pct": round(change_pct, 1),
        "points": points,
        "max_points": TREND_MAX,
    }


def score(readings: List[Reading], settings: Optional[Settings] = None,
          today: Optional[date] = None) -> EfficiencyScore:
    """
    Score a reading history. Never raises for thin data; returns has_data=False
    with a message instead.
    """
    settings = settings or Settings()
    today = today or date.today()

    if len(readings) < MIN_READINGS:
        return EfficiencyScore(has_data=False, message=f"At least {MIN_READINGS} readings are needed")

    daily = reconstruct(readings, days=HISTORY_DAYS)
    if len(daily) < MIN_DAILY_POINTS:
        return EfficiencyScore(has_data=False, message="Not enough days of usage data")

    window = daily[-SCORE_WINDOW_DAYS:]
    result = EfficiencyScore(has_data=True)

    consistency = _consistency(window)
    if consistency is not None:
        result.consistency_score = consistency["points"]
        result.breakdown["consistency"] = consistency
        if result.consistency_score < 18:
            result.tips.append("consistency")

    budget = _budget(window, settings, today)
    result.budget_score = budget["points"]
    result.breakdown["budget"] = budget
    if result.budget_score < 24:
        result.tips.append("budget")

    trend = _trend(daily)
    result.trend_score = trend["points"]
    result.breakdown["trend"] = trend
    if result.trend_score < 20:
        result.tips.append("trend")

    result.total_score = result.consistency_score + result.budget_score + result.trend_score
    result.grade = grade_for(result.total_score)
    return result


def budget_status(daily: List[DailyUsagePoint], settings: Settings,
                  today: Optional[date] = None) -> Dict[str, float]:
    """Month-to-date spend against the monthly budget and alert threshold."""
    today = today or date.today()
    cost = _month_to_date_usage(daily, today) * settings.tariff_per_kwh
    percentage = cost / settings.monthly_budget * 100 if settings.monthly_budget > 0 else 0.0
    return {
        "month": today.strftime("%Y-%m"),
        "estimated_cost": round(cost, 2),
        "monthly_budget": settings.monthly_budget,
        "percentage": round(percentage, 1),
        "alert_threshold": settings.budget_alert_threshold,
        "is_warning": percentage >= settings.budget_alert_threshold,
        "is_over_budget": percentage >= 100,
    }
