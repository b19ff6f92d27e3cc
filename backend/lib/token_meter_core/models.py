# backend/lib/token_meter_core/models.py
"""
Data classes shared by the analytics core.

Readings hold the REMAINING kWh balance shown on a prepaid meter, not a
cumulative counter. A reading is either a plain consumption checkpoint or a
token top-up; the two are separate classes so code can branch on
``reading.is_top_up`` instead of checking nullable token fields.
"""
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

ROLLBACK_WINDOW = timedelta(hours=24)


def parse_timestamp(value: Union[str, datetime, date]) -> datetime:
    """Accept ISO strings (with a trailing Z), datetimes or plain dates."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))


def meter_time(value: Union[str, datetime, date]) -> datetime:
    """
    Reading timestamp as naive wall-clock time.

    An offset such as Z or +07:00 is dropped, not converted, so the calendar
    day stays the one written on the reading and naive and offset timestamps
    sort together.
    """
    return parse_timestamp(value).replace(tzinfo=None)


class _ReadingMixin:
    """Behaviour common to both reading variants."""

    def __post_init__(self):
        if self.date.tzinfo is not None:
            object.__setattr__(self, "date", self.date.replace(tzinfo=None))

    @property
    def calendar_date(self) -> date:
        # before/after/duplicate checks ignore time of day
        return self.date.date()

    def with_kwh(self, kwh_value: float):
        return replace(self, kwh_value=float(kwh_value))

    def with_id(self, reading_id: str):
        return replace(self, id=reading_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "kwh_value": self.kwh_value,
            "token_cost": getattr(self, "token_cost", None),
            "token_amount": getattr(self, "token_amount", None),
            "notes": self.notes,
            "photo_ref": self.photo_ref,
            "is_top_up": self.is_top_up,
        }


@dataclass(frozen=True)
class ConsumptionReading(_ReadingMixin):
    """A meter checkpoint: the balance read off the meter on a given day."""
    user_id: str
    date: datetime
    kwh_value: float
    notes: Optional[str] = None
    photo_ref: Optional[str] = None
    id: Optional[str] = None

    is_top_up = False


@dataclass(frozen=True)
class TopUpReading(_ReadingMixin):
    """
    A token purchase. kwh_value is the balance right after the token was
    entered; token_amount is the kWh credited by the token (may be unknown).
    """
    user_id: str
    date: datetime
    kwh_value: float
    token_cost: float
    token_amount: Optional[float] = None
    notes: Optional[str] = None
    photo_ref: Optional[str] = None
    id: Optional[str] = None

    is_top_up = True


Reading = Union[ConsumptionReading, TopUpReading]


def reading_from_dict(data: Dict[str, Any]) -> Reading:
    """
    Build the right reading variant from a storage row or request body.

    A row with a positive token_cost is a top-up, everything else is a
    consumption reading.
    """
    token_cost = data.get("token_cost")
    common = dict(
        user_id=str(data["user_id"]),
        date=meter_time(data["date"]),
        kwh_value=float(data["kwh_value"]),
        notes=data.get("notes") or None,
        photo_ref=data.get("photo_ref") or None,
        id=data.get("id") or None,
    )
    if token_cost is not None and float(token_cost) > 0:
        token_amount = data.get("token_amount")
        return TopUpReading(
            token_cost=float(token_cost),
            token_amount=float(token_amount) if token_amount not in (None, "") else None,
            **common,
        )
    return ConsumptionReading(**common)


def sort_chronologically(readings: List[Reading]) -> List[Reading]:
    return sorted(readings, key=lambda r: r.date)


@dataclass
class DailyUsagePoint:
    date: date
    usage_kwh: float = 0.0
    # balance at end of day; None on gap-filled days with no reading
    meter_value: Optional[float] = None
    is_top_up: bool = False
    top_up_amount: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "usage_kwh": self.usage_kwh,
            "meter_value": self.meter_value,
            "is_top_up": self.is_top_up,
            "top_up_amount": self.top_up_amount,
        }


@dataclass
class WeeklyUsage:
    period_key: str
    label: str
    start_date: date
    end_date: date
    usage_kwh: float
    avg_daily: float
    has_top_up: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_key": self.period_key,
            "label": self.label,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "usage_kwh": self.usage_kwh,
            "avg_daily": self.avg_daily,
            "has_top_up": self.has_top_up,
        }


@dataclass
class MonthlyUsage:
    period_key: str
    label: str
    usage_kwh: float
    avg_daily: float
    days: int
    has_top_up: bool
    est_cost: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_key": self.period_key,
            "label": self.label,
            "usage_kwh": self.usage_kwh,
            "avg_daily": self.avg_daily,
            "days": self.days,
            "has_top_up": self.has_top_up,
            "est_cost": self.est_cost,
        }


@dataclass
class ProjectionPoint:
    date: date
    kwh_remaining: float
    is_actual: bool
    day_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "kwh_remaining": self.kwh_remaining,
            "is_actual": self.is_actual,
            "day_index": self.day_index,
        }


@dataclass
class BurnRateProjection:
    has_data: bool
    remaining_kwh: float = 0.0
    avg_daily_usage: float = 0.0
    days_until_depletion: Optional[int] = None
    predicted_depletion_date: Optional[date] = None
    projection_points: List[ProjectionPoint] = field(default_factory=list)
    critical_kwh: float = 0.0
    warning_kwh: float = 0.0
    days_to_critical: int = 0
    days_to_warning: int = 0
    is_critical: bool = False
    is_warning: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_data": self.has_data,
            "remaining_kwh": self.remaining_kwh,
            "avg_daily_usage": self.avg_daily_usage,
            "days_until_depletion": self.days_until_depletion,
            "predicted_depletion_date": (
                self.predicted_depletion_date.isoformat() if self.predicted_depletion_date else None
            ),
            "projection_points": [p.to_dict() for p in self.projection_points],
            "critical_kwh": self.critical_kwh,
            "warning_kwh": self.warning_kwh,
            "days_to_critical": self.days_to_critical,
            "days_to_warning": self.days_to_warning,
            "is_critical": self.is_critical,
            "is_warning": self.is_warning,
        }


@dataclass
class EfficiencyScore:
    has_data: bool
    total_score: int = 0
    grade: str = "-"
    consistency_score: int = 0
    budget_score: int = 0
    trend_score: int = 0
    breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)
    tips: List[str] = field(default_factory=list)
    message: Optional[str] = None

    def surfaced_tips(self) -> List[str]:
        # only the first two tips are shown to the user
        return self.tips[:2]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_data": self.has_data,
            "total_score": self.total_score,
            "grade": self.grade,
            "consistency_score": self.consistency_score,
            "budget_score": self.budget_score,
            "trend_score": self.trend_score,
            "breakdown": self.breakdown,
            "tips": list(self.tips),
            "message": self.message,
        }


class Severity(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"


@dataclass(frozen=True)
class ValidationIssue:
    severity: Severity
    code: str
    message: str
    reading_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "reading_id": self.reading_id,
        }


class TriggerType(str, Enum):
    BACKDATE_TOPUP = "BACKDATE_TOPUP"
    BACKDATE_READING = "BACKDATE_READING"
    EDIT_TOPUP = "EDIT_TOPUP"
    DELETE_TOPUP = "DELETE_TOPUP"


@dataclass(frozen=True)
class AffectedEvent:
    reading_id: str
    event_date: datetime
    old_kwh: float
    new_kwh: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reading_id": self.reading_id,
            "event_date": self.event_date.isoformat(),
            "old_kwh": self.old_kwh,
            "new_kwh": self.new_kwh,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AffectedEvent":
        return cls(
            reading_id=str(data["reading_id"]),
            event_date=meter_time(data["event_date"]),
            old_kwh=float(data["old_kwh"]),
            new_kwh=float(data["new_kwh"]),
        )


@dataclass
class RecalculationBatch:
    """
    Audit record of one backdate recalculation.

    Never deleted; only the rollback fields change after creation.
    trigger_snapshot holds the triggering row as it was BEFORE the write
    (None for inserts) so a rollback can undo the write itself.
    """
    id: str
    user_id: str
    trigger_type: TriggerType
    affected_events: List[AffectedEvent]
    kwh_offset: float
    created_at: datetime
    trigger_reading_id: Optional[str] = None
    trigger_snapshot: Optional[Dict[str, Any]] = None
    rolled_back: bool = False
    rolled_back_at: Optional[datetime] = None
    rollback_reason: Optional[str] = None

    @property
    def can_rollback_until(self) -> datetime:
        return self.created_at + ROLLBACK_WINDOW

    def is_rollback_open(self, now: datetime) -> bool:
        return not self.rolled_back and now <= self.can_rollback_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "trigger_type": self.trigger_type.value,
            "trigger_reading_id": self.trigger_reading_id,
            "trigger_snapshot": self.trigger_snapshot,
            "affected_events": [e.to_dict() for e in self.affected_events],
            "events_count": len(self.affected_events),
            "kwh_offset": self.kwh_offset,
            "created_at": self.created_at.isoformat(),
            "can_rollback_until": self.can_rollback_until.isoformat(),
            "rolled_back": self.rolled_back,
            "rolled_back_at": self.rolled_back_at.isoformat() if self.rolled_back_at else None,
            "rollback_reason": self.rollback_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecalculationBatch":
        rolled_back_at = data.get("rolled_back_at")
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            trigger_type=TriggerType(data["trigger_type"]),
            trigger_reading_id=data.get("trigger_reading_id"),
            trigger_snapshot=data.get("trigger_snapshot"),
            affected_events=[AffectedEvent.from_dict(e) for e in data.get("affected_events", [])],
            kwh_offset=float(data["kwh_offset"]),
            created_at=parse_timestamp(data["created_at"]),
            rolled_back=bool(data.get("rolled_back", False)),
            rolled_back_at=parse_timestamp(rolled_back_at) if rolled_back_at else None,
            rollback_reason=data.get("rollback_reason"),
        )
