# backend/lib/token_meter_core/processor.py
"""
Daily usage reconstruction.

Readings are balances, so a day's consumption is the drop between two
readings spread evenly over the days between them. A rise in balance is a
top-up, never negative consumption.
"""
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from .models import DailyUsagePoint, Reading, sort_chronologically

logger = logging.getLogger(__name__)


def _day_range(start: date, end: date) -> List[date]:
    """Days in (start, end]."""
    return [start + timedelta(days=i) for i in range(1, (end - start).days + 1)]


def reconstruct(readings: List[Reading], days: Optional[int] = None,
                until: Optional[date] = None) -> List[DailyUsagePoint]:
    """
    Turn readings into one DailyUsagePoint per calendar day, oldest first.

    The series spans the first to the last reading date. `until` pads it with
    zero-usage days up to that date; `days` keeps only the most recent N points.
    The earliest point always has zero usage since nothing precedes it.
    """
    if not readings:
        return []

    ordered = sort_chronologically(readings)
    first = ordered[0]
    daily: Dict[date, DailyUsagePoint] = {
        first.calendar_date: DailyUsagePoint(date=first.calendar_date, meter_value=first.kwh_value)
    }

    for prev, curr in zip(ordered, ordered[1:]):
        consumption = prev.kwh_value - curr.kwh_value
        is_top_up = consumption < 0
        if is_top_up:
            top_up_amount = curr.token_amount if getattr(curr, "token_amount", None) else -consumption
            consumption = 0.0

        prev_day, curr_day = prev.calendar_date, curr.calendar_date
        gap = _day_range(prev_day, curr_day)

        if not gap:
            # same calendar day; fold into the existing point
            point = daily[curr_day]
            if curr_day != first.calendar_date:
                point.usage_kwh += consumption
            point.meter_value = curr.kwh_value
            if is_top_up:
                point.is_top_up = True
                point.top_up_amount += top_up_amount
            continue

        per_day = consumption / len(gap)
        for day in gap:
            daily[day] = DailyUsagePoint(date=day, usage_kwh=per_day)
        landing = daily[curr_day]
        landing.meter_value = curr.kwh_value
        if is_top_up:
            landing.is_top_up = True
            landing.top_up_amount = top_up_amount

    result = [daily[d] for d in sorted(daily)]

    if until is not None and result[-1].date < until:
        result.extend(DailyUsagePoint(date=d) for d in _day_range(result[-1].date, until))

    if days is not None:
        result = result[-days:]
        if result:
            # the window has no prior reference point
            result[0].usage_kwh = 0.0

    logger.debug("Reconstructed %d daily points from %d readings", len(result), len(readings))
    return result


def top_up_events(readings: List[Reading]) -> List[Dict[str, object]]:
    """Top-ups as {date, amount, cost}, oldest first."""
    return [
        {"date": r.calendar_date.isoformat(), "amount": r.token_amount or 0.0, "cost": r.token_cost}
        for r in sort_chronologically(readings)
        if r.is_top_up
    ]


def usage_stats(daily: List[DailyUsagePoint]) -> Dict[str, float]:
    if not daily:
        return {"total": 0.0, "average": 0.0, "highest": 0.0, "lowest": 0.0}
    usages = [d.usage_kwh for d in daily]
    total = sum(usages)
    return {
        "total": total,
        "average": total / len(usages),
        "highest": max(usages),
        "lowest": min(usages),
    }


_RANGE_DAYS = {"day": 1, "week": 7, "month": 30}


def filter_by_range(daily: List[DailyUsagePoint], period: str, today: date) -> List[DailyUsagePoint]:
    """
    Keep points from the last day/week/month up to today.

    'day' keeps yesterday and today, 'week' the last 7 days, 'month' 30.
    """
    if period not in _RANGE_DAYS:
        return list(daily)
    start = today - timedelta(days=_RANGE_DAYS[period])
    return [d for d in daily if start <= d.date <= today]
