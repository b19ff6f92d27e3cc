# backend/lib/token_meter_core/store.py
"""
Reading store contract and an in-memory implementation.

All date arguments are calendar dates; time of day is ignored for
before/after/duplicate lookups. DynamoDBService in backend/lib implements the
same contract against AWS.
"""
import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from .errors import ReadingNotFound, StorageError
from .models import Reading, RecalculationBatch, sort_chronologically

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KwhUpdate:
    reading_id: str
    new_kwh: float


class ReadingStore:
    """
    Storage collaborator used by the recalculation engine and the API.

    supports_transactions tells the engine whether bulk_update_kwh is
    all-or-nothing. When it is False the engine updates rows one at a time
    with update_kwh and reverts them itself on failure.
    """

    supports_transactions = False

    def get_all_readings(self, user_id: str, limit: int = 1000) -> List[Reading]:
        """Newest first."""
        raise NotImplementedError

    def get_reading(self, user_id: str, reading_id: str) -> Optional[Reading]:
        raise NotImplementedError

    def get_last_reading_before_date(self, user_id: str, day: date) -> Optional[Reading]:
        readings = [r for r in self.get_all_readings(user_id, limit=0) if r.calendar_date < day]
        return readings[0] if readings else None

    def get_readings_after_date(self, user_id: str, day: date) -> List[Reading]:
        """Oldest first."""
        return sort_chronologically(
            [r for r in self.get_all_readings(user_id, limit=0) if r.calendar_date > day]
        )

    def check_reading_exists(self, user_id: str, day: date) -> Optional[Reading]:
        for reading in self.get_all_readings(user_id, limit=0):
            if reading.calendar_date == day:
                return reading
        return None

    def insert(self, reading: Reading) -> Reading:
        raise NotImplementedError

    def update(self, reading: Reading) -> Reading:
        raise NotImplementedError

    def delete(self, user_id: str, reading_id: str) -> None:
        raise NotImplementedError

    def update_kwh(self, user_id: str, reading_id: str, new_kwh: float) -> None:
        reading = self.get_reading(user_id, reading_id)
        if reading is None:
            raise ReadingNotFound(reading_id)
        self.update(reading.with_kwh(new_kwh))

    def bulk_update_kwh(self, user_id: str, updates: List[KwhUpdate],
                        batch: Optional[RecalculationBatch] = None) -> None:
        raise NotImplementedError

    def save_batch(self, batch: RecalculationBatch) -> None:
        raise NotImplementedError

    def get_batch(self, user_id: str, batch_id: str) -> Optional[RecalculationBatch]:
        raise NotImplementedError

    def list_batches(self, user_id: str) -> List[RecalculationBatch]:
        """Newest first."""
        raise NotImplementedError


class InMemoryReadingStore(ReadingStore):
    """
    Process-local store used by tests and by the API when DynamoDB is off.

    Readings are immutable, so swapping a dict entry is the whole update.
    """

    supports_transactions = True

    def __init__(self, readings: Optional[List[Reading]] = None):
        self._readings: Dict[str, Dict[str, Reading]] = {}
        self._batches: Dict[str, Dict[str, RecalculationBatch]] = {}
        for reading in readings or []:
            self.insert(reading)

    def get_all_readings(self, user_id: str, limit: int = 1000) -> List[Reading]:
        readings = sorted(self._readings.get(user_id, {}).values(), key=lambda r: r.date, reverse=True)
        return readings[:limit] if limit else readings

    def get_reading(self, user_id: str, reading_id: str) -> Optional[Reading]:
        return self._readings.get(user_id, {}).get(reading_id)

    def insert(self, reading: Reading) -> Reading:
        if reading.id is None:
            reading = reading.with_id(str(uuid.uuid4()))
        self._readings.setdefault(reading.user_id, {})[reading.id] = reading
        return reading

    def update(self, reading: Reading) -> Reading:
        if reading.id not in self._readings.get(reading.user_id, {}):
            raise ReadingNotFound(reading.id)
        self._readings[reading.user_id][reading.id] = reading
        return reading

    def delete(self, user_id: str, reading_id: str) -> None:
        if self._readings.get(user_id, {}).pop(reading_id, None) is None:
            raise ReadingNotFound(reading_id)

    def bulk_update_kwh(self, user_id: str, updates: List[KwhUpdate],
                        batch: Optional[RecalculationBatch] = None) -> None:
        rows = self._readings.get(user_id, {})
        missing = [u.reading_id for u in updates if u.reading_id not in rows]
        if missing:
            # nothing is written when any row is unknown
            raise StorageError(f"Cannot update unknown readings: {', '.join(missing)}")
        for u in updates:
            rows[u.reading_id] = rows[u.reading_id].with_kwh(u.new_kwh)
        if batch is not None:
            self.save_batch(batch)
        logger.debug("Bulk updated %d readings for user %s", len(updates), user_id)

    def save_batch(self, batch: RecalculationBatch) -> None:
        self._batches.setdefault(batch.user_id, {})[batch.id] = copy.deepcopy(batch)

    def get_batch(self, user_id: str, batch_id: str) -> Optional[RecalculationBatch]:
        batch = self._batches.get(user_id, {}).get(batch_id)
        return copy.deepcopy(batch) if batch else None

    def list_batches(self, user_id: str) -> List[RecalculationBatch]:
        batches = sorted(self._batches.get(user_id, {}).values(), key=lambda b: b.created_at, reverse=True)
        return [copy.deepcopy(b) for b in batches]
