# backend/lib/token_meter_core/errors.py
from typing import List

from .models import ValidationIssue


class ValidationError(ValueError):
    """Malformed user input: non-numeric kWh, negative values, missing date."""


class StorageError(RuntimeError):
    """The reading store could not complete a read or write."""


class ReadingNotFound(LookupError):
    pass


class RecalculationError(Exception):
    """Base class for backdate recalculation failures."""


class BackdateBlocked(RecalculationError):
    """A plan with BLOCK-severity issues was submitted for apply."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        reasons = "; ".join(i.message for i in self.issues) or "blocked"
        super().__init__(f"Backdate blocked: {reasons}")


class BatchNotFound(RecalculationError, LookupError):
    pass


class RollbackExpired(RecalculationError):
    pass


class AlreadyRolledBack(RecalculationError):
    pass
