# backend/lib/token_meter_core/entry.py
"""
Entry point for user writes.

Every insert, edit and delete goes through ReadingEntryService, which returns
one of the outcome objects below. The caller (API handler, CLI) decides what
to show; nothing here knows about forms or dialogs.

    Accepted          the write is stored
    DuplicateDate     a reading already exists that day: edit it or replace it
    AnomalyDetected   a plain reading is above the previous balance
    BackdateRequired  the write shifts later readings; confirm(plan) to apply
    Blocked           the write fails a BLOCK check and cannot be applied
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ReadingNotFound, ValidationError
from .models import Reading, RecalculationBatch, reading_from_dict
from .recalculation import RecalculationEngine, RecalculationPlan
from .store import ReadingStore

logger = logging.getLogger(__name__)


@dataclass
class Accepted:
    reading: Optional[Reading]
    batch: Optional[RecalculationBatch] = None
    status = "accepted"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reading": self.reading.to_dict() if self.reading else None,
            "batch": self.batch.to_dict() if self.batch else None,
        }


@dataclass
class DuplicateDate:
    existing: Reading
    status = "duplicate_date"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "existing": self.existing.to_dict(),
            "options": ["edit", "replace"],
        }


@dataclass
class AnomalyDetected:
    previous: Reading
    reading: Reading
    status = "anomaly"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": (
                f"Balance went up from {self.previous.kwh_value:.2f} to {self.reading.kwh_value:.2f} kWh "
                f"without a top-up. Record it as a top-up, or acknowledge it as a correction."
            ),
            "previous": self.previous.to_dict(),
            "reading": self.reading.to_dict(),
        }


@dataclass
class BackdateRequired:
    plan: RecalculationPlan
    status = "backdate_required"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "plan": self.plan.to_dict()}


@dataclass
class Blocked:
    plan: RecalculationPlan
    status = "blocked"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "issues": [i.to_dict() for i in self.plan.blocking_issues],
            "plan": self.plan.to_dict(),
        }


class ReadingEntryService:
    def __init__(self, store: ReadingStore, engine: Optional[RecalculationEngine] = None):
        self.store = store
        self.engine = engine or RecalculationEngine(store)

    def submit(self, reading: Reading, acknowledge_anomaly: bool = False):
        duplicate = self._duplicate_of(reading)
        if duplicate is not None:
            return duplicate

        if not reading.is_top_up and not acknowledge_anomaly:
            previous = self.store.get_last_reading_before_date(reading.user_id, reading.calendar_date)
            if previous is not None and reading.kwh_value > previous.kwh_value:
                logger.warning("Reading of %.2f kWh on %s is above previous balance %.2f kWh",
                               reading.kwh_value, reading.calendar_date, previous.kwh_value)
                return AnomalyDetected(previous=previous, reading=reading)

        return self._settle(self.engine.plan_insert(reading))

    def replace(self, existing_id: str, reading: Reading):
        """Put `reading` in place of an existing row, keeping its id."""
        self._require(reading.user_id, existing_id)
        updated = reading.with_id(existing_id)
        duplicate = self._duplicate_of(updated)
        if duplicate is not None:
            return duplicate
        return self._settle(self.engine.plan_edit(updated))

    def edit_existing(self, user_id: str, existing_id: str, changes: Dict[str, Any]):
        """Change only the given fields of an existing row."""
        existing = self._require(user_id, existing_id)
        merged = existing.to_dict()
        merged.update({k: v for k, v in changes.items() if k not in ("id", "user_id")})
        try:
            updated = reading_from_dict(merged)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid reading fields: {e}") from e
        duplicate = self._duplicate_of(updated)
        if duplicate is not None:
            return duplicate
        return self._settle(self.engine.plan_edit(updated))

    def remove(self, user_id: str, reading_id: str):
        return self._settle(self.engine.plan_delete(user_id, reading_id))

    def confirm(self, plan: RecalculationPlan) -> Accepted:
        result = self.engine.apply(plan)
        return Accepted(reading=result.reading, batch=result.batch)

    def _settle(self, plan: RecalculationPlan):
        if plan.blocking_issues:
            return Blocked(plan)
        if plan.is_backdate:
            return BackdateRequired(plan)
        return self.confirm(plan)

    def _duplicate_of(self, reading: Reading) -> Optional[DuplicateDate]:
        existing = self.store.check_reading_exists(reading.user_id, reading.calendar_date)
        if existing is not None and existing.id != reading.id:
            logger.info("Reading for %s already exists on %s", reading.user_id, reading.calendar_date)
            return DuplicateDate(existing=existing)
        return None

    def _require(self, user_id: str, reading_id: str) -> Reading:
        existing = self.store.get_reading(user_id, reading_id)
        if existing is None:
            raise ReadingNotFound(reading_id)
        return existing
