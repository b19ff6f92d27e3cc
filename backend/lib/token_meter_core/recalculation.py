# backend/lib/token_meter_core/recalculation.py
"""
Backdate recalculation.

When a top-up is inserted, edited or deleted at a date earlier than existing
readings, every later balance is off by the kWh the change adds or removes.
The engine shifts all later readings by that same offset, which leaves the
difference between any two of them (their reconstructed usage) untouched.

Lifecycle of one write:

    DETECTED -> VALIDATING -> BLOCKED
                           -> PREVIEWED -> APPLIED -> ROLLED_BACK
                                        -> CANCELLED

plan_* methods only read from the store. apply() performs the write, the
offset update and the audit batch together. rollback() is allowed for 24
hours after apply.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from .errors import (
    AlreadyRolledBack,
    BackdateBlocked,
    BatchNotFound,
    ReadingNotFound,
    RecalculationError,
    RollbackExpired,
    StorageError,
)
from .models import (
    AffectedEvent,
    Reading,
    RecalculationBatch,
    Severity,
    TriggerType,
    ValidationIssue,
    reading_from_dict,
)
from .store import KwhUpdate, ReadingStore

logger = logging.getLogger(__name__)


class RecalculationState(str, Enum):
    DETECTED = "DETECTED"
    VALIDATING = "VALIDATING"
    BLOCKED = "BLOCKED"
    PREVIEWED = "PREVIEWED"
    APPLIED = "APPLIED"
    CANCELLED = "CANCELLED"
    ROLLED_BACK = "ROLLED_BACK"


class WriteKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class PreviewRow:
    reading_id: str
    event_date: datetime
    is_top_up: bool
    current_kwh: float
    new_kwh: float

    def to_dict(self):
        return {
            "reading_id": self.reading_id,
            "event_date": self.event_date.isoformat(),
            "is_top_up": self.is_top_up,
            "current_kwh": self.current_kwh,
            "new_kwh": self.new_kwh,
        }


@dataclass
class RecalculationPlan:
    """
    The proposed write plus its cascading effect on later readings.

    reading is the row to insert or the new version of an edited row;
    original is the stored row before an edit or delete.
    """
    user_id: str
    write_kind: WriteKind
    trigger_type: Optional[TriggerType]
    kwh_offset: float
    reading: Optional[Reading] = None
    original: Optional[Reading] = None
    affected: List[PreviewRow] = field(default_factory=list)
    issues: List[ValidationIssue] = field(default_factory=list)
    state: RecalculationState = RecalculationState.DETECTED

    @property
    def is_backdate(self) -> bool:
        return bool(self.affected)

    @property
    def blocking_issues(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.BLOCK]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARN]

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "write_kind": self.write_kind.value,
            "trigger_type": self.trigger_type.value if self.trigger_type else None,
            "kwh_offset": self.kwh_offset,
            "state": self.state.value,
            "is_backdate": self.is_backdate,
            "reading": self.reading.to_dict() if self.reading else None,
            "original": self.original.to_dict() if self.original else None,
            "affected": [row.to_dict() for row in self.affected],
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class ApplyResult:
    reading: Optional[Reading]
    batch: Optional[RecalculationBatch]


def credited_amount(top_up: Reading, previous: Optional[Reading]) -> float:
    """kWh a top-up added: its token_amount, else the rise over the previous balance."""
    if getattr(top_up, "token_amount", None) is not None:
        return top_up.token_amount
    return top_up.kwh_value - (previous.kwh_value if previous else 0.0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecalculationEngine:
    def __init__(self, store: ReadingStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    # detection, validation, preview
    # ------------------------------------------------------------------

    def detect(self, user_id: str, reading: Reading, exclude_id: Optional[str] = None) -> List[Reading]:
        """Readings strictly after the write's calendar date, oldest first."""
        return [r for r in self.store.get_readings_after_date(user_id, reading.calendar_date)
                if r.id != exclude_id]

    def plan_insert(self, reading: Reading) -> RecalculationPlan:
        previous = self.store.get_last_reading_before_date(reading.user_id, reading.calendar_date)
        if reading.is_top_up:
            trigger, offset = TriggerType.BACKDATE_TOPUP, credited_amount(reading, previous)
        else:
            # a plain checkpoint does not move later balances
            trigger, offset = TriggerType.BACKDATE_READING, 0.0
        plan = RecalculationPlan(
            user_id=reading.user_id,
            write_kind=WriteKind.INSERT,
            trigger_type=trigger,
            kwh_offset=offset,
            reading=reading,
        )
        return self._evaluate(plan, self.detect(reading.user_id, reading), previous)

    def plan_edit(self, updated: Reading) -> RecalculationPlan:
        original = self._require(updated.user_id, updated.id)
        previous = self.store.get_last_reading_before_date(updated.user_id, updated.calendar_date)
        # a top-up edit that keeps its balance (notes, cost) moves nothing
        cascades = (original.is_top_up or updated.is_top_up) and updated.kwh_value != original.kwh_value
        plan = RecalculationPlan(
            user_id=updated.user_id,
            write_kind=WriteKind.UPDATE,
            trigger_type=TriggerType.EDIT_TOPUP if cascades else None,
            kwh_offset=updated.kwh_value - original.kwh_value if cascades else 0.0,
            reading=updated,
            original=original,
        )
        affected = self.detect(updated.user_id, updated, exclude_id=updated.id) if cascades else []
        return self._evaluate(plan, affected, previous)

    def plan_delete(self, user_id: str, reading_id: str) -> RecalculationPlan:
        original = self._require(user_id, reading_id)
        previous = self.store.get_last_reading_before_date(user_id, original.calendar_date)
        cascades = original.is_top_up
        plan = RecalculationPlan(
            user_id=user_id,
            write_kind=WriteKind.DELETE,
            trigger_type=TriggerType.DELETE_TOPUP if cascades else None,
            kwh_offset=-credited_amount(original, previous) if cascades else 0.0,
            original=original,
        )
        affected = self.detect(user_id, original, exclude_id=original.id) if cascades else []
        return self._evaluate(plan, affected, previous)

    def _require(self, user_id: str, reading_id: Optional[str]) -> Reading:
        reading = self.store.get_reading(user_id, reading_id) if reading_id else None
        if reading is None:
            raise ReadingNotFound(reading_id)
        return reading

    def _evaluate(self, plan: RecalculationPlan, affected: List[Reading],
                  previous: Optional[Reading]) -> RecalculationPlan:
        plan.state = RecalculationState.VALIDATING
        plan.affected = [
            PreviewRow(
                reading_id=r.id,
                event_date=r.date,
                is_top_up=r.is_top_up,
                current_kwh=r.kwh_value,
                new_kwh=r.kwh_value + plan.kwh_offset,
            )
            for r in affected
        ]
        plan.issues = self._validate(plan, previous)

        if plan.blocking_issues:
            plan.state = RecalculationState.BLOCKED
            logger.warning("Recalculation for user %s blocked: %s", plan.user_id,
                           "; ".join(i.message for i in plan.blocking_issues))
        else:
            plan.state = RecalculationState.PREVIEWED
        return plan

    def _validate(self, plan: RecalculationPlan, previous: Optional[Reading]) -> List[ValidationIssue]:
        issues = []
        written = plan.reading if plan.write_kind != WriteKind.DELETE else None

        if written is not None and written.is_top_up:
            credit = credited_amount(written, previous)
            if credit <= 0 or (previous is not None and written.kwh_value <= previous.kwh_value):
                issues.append(ValidationIssue(
                    Severity.BLOCK, "TOPUP_NOT_INCREASING",
                    f"Top-up on {written.calendar_date} does not raise the balance "
                    f"above the previous reading ({previous.kwh_value if previous else 0:.2f} kWh)",
                    written.id,
                ))
        elif written is not None and previous is not None and written.kwh_value > previous.kwh_value:
            issues.append(ValidationIssue(
                Severity.WARN, "READING_ABOVE_PREVIOUS",
                f"Reading on {written.calendar_date} ({written.kwh_value:.2f} kWh) is higher than "
                f"the previous reading ({previous.kwh_value:.2f} kWh); use a top-up if tokens were added",
                written.id,
            ))

        if (plan.original is not None and written is not None and plan.original.is_top_up
                and written.calendar_date != plan.original.calendar_date):
            # balances keep their old offsets; only the top-up row moves
            issues.append(ValidationIssue(
                Severity.WARN, "TOPUP_DATE_MOVED",
                f"Top-up moved from {plan.original.calendar_date} to {written.calendar_date}; "
                f"readings in between keep their balances, check them or delete and re-enter the top-up",
                written.id,
            ))

        for row in plan.affected:
            if row.new_kwh < 0:
                issues.append(ValidationIssue(
                    Severity.BLOCK, "NEGATIVE_BALANCE",
                    f"Balance on {row.event_date.date()} would become negative ({row.new_kwh:.2f} kWh)",
                    row.reading_id,
                ))

        if plan.affected:
            # only the first affected row gets a new predecessor; the rest keep their deltas
            first = plan.affected[0]
            if written is not None:
                before = written.kwh_value
            else:
                before = previous.kwh_value if previous else None
            if before is not None:
                if first.is_top_up and first.new_kwh <= before:
                    issues.append(ValidationIssue(
                        Severity.BLOCK, "TOPUP_INCONSISTENT",
                        f"Top-up on {first.event_date.date()} would no longer raise the balance "
                        f"({first.new_kwh:.2f} kWh after {before:.2f} kWh)",
                        first.reading_id,
                    ))
                elif not first.is_top_up and first.new_kwh > before:
                    issues.append(ValidationIssue(
                        Severity.WARN, "READING_BELOW_NEXT",
                        f"Reading on {first.event_date.date()} ({first.new_kwh:.2f} kWh) would be higher "
                        f"than the balance before it ({before:.2f} kWh)",
                        first.reading_id,
                    ))
        return issues

    # ------------------------------------------------------------------
    # apply / cancel
    # ------------------------------------------------------------------

    def cancel(self, plan: RecalculationPlan) -> RecalculationPlan:
        plan.state = RecalculationState.CANCELLED
        return plan

    def apply(self, plan: RecalculationPlan) -> ApplyResult:
        if plan.state == RecalculationState.BLOCKED:
            raise BackdateBlocked(plan.blocking_issues)
        if plan.state != RecalculationState.PREVIEWED:
            raise RecalculationError(f"Cannot apply a plan in state {plan.state.value}")

        updates = self._fresh_updates(plan)
        written = self._primary_write(plan)

        batch = None
        if updates and plan.kwh_offset != 0:
            batch = self._new_batch(plan, written, updates)

        try:
            self._write_offsets(plan.user_id, [KwhUpdate(u.reading_id, u.new_kwh) for u in updates], batch)
        except Exception:
            self._undo_primary_write(plan, written)
            raise

        plan.state = RecalculationState.APPLIED
        if batch is not None:
            logger.info("Applied %s batch %s: %d readings shifted by %.3f kWh",
                        batch.trigger_type.value, batch.id, len(updates), plan.kwh_offset)
        return ApplyResult(reading=written, batch=batch)

    def _fresh_updates(self, plan: RecalculationPlan) -> List[AffectedEvent]:
        """Recompute offsets from current balances so a stale preview cannot clobber rows."""
        if not plan.affected or plan.kwh_offset == 0:
            return []
        current = {r.id: r for r in self.store.get_readings_after_date(
            plan.user_id, (plan.reading or plan.original).calendar_date)}
        events = []
        for row in plan.affected:
            reading = current.get(row.reading_id)
            if reading is None:
                raise RecalculationError(
                    f"Reading {row.reading_id} changed since the preview was made; preview again")
            events.append(AffectedEvent(
                reading_id=reading.id,
                event_date=reading.date,
                old_kwh=reading.kwh_value,
                new_kwh=reading.kwh_value + plan.kwh_offset,
            ))
        return events

    def _primary_write(self, plan: RecalculationPlan) -> Optional[Reading]:
        if plan.write_kind == WriteKind.INSERT:
            return self.store.insert(plan.reading)
        if plan.write_kind == WriteKind.UPDATE:
            return self.store.update(plan.reading)
        self.store.delete(plan.user_id, plan.original.id)
        return None

    def _undo_primary_write(self, plan: RecalculationPlan, written: Optional[Reading]) -> None:
        try:
            if plan.write_kind == WriteKind.INSERT:
                self.store.delete(plan.user_id, written.id)
            elif plan.write_kind == WriteKind.UPDATE:
                self.store.update(plan.original)
            else:
                self.store.insert(plan.original)
        except Exception:
            logger.exception("Could not undo %s of reading for user %s", plan.write_kind.value, plan.user_id)

    def _new_batch(self, plan: RecalculationPlan, written: Optional[Reading],
                   updates: List[AffectedEvent]) -> RecalculationBatch:
        trigger_row = written or plan.original
        return RecalculationBatch(
            id=str(uuid.uuid4()),
            user_id=plan.user_id,
            trigger_type=plan.trigger_type,
            trigger_reading_id=trigger_row.id if trigger_row else None,
            trigger_snapshot=plan.original.to_dict() if plan.original else None,
            affected_events=updates,
            kwh_offset=plan.kwh_offset,
            created_at=self.clock(),
        )

    def _write_offsets(self, user_id: str, updates: List[KwhUpdate],
                       batch: Optional[RecalculationBatch]) -> None:
        """
        Write new balances and the batch record as one unit.

        Transactional stores do it in one call. Otherwise rows are written one
        by one and, if any write fails, the rows already written are put back.
        """
        if not updates:
            if batch is not None:
                self.store.save_batch(batch)
            return

        if self.store.supports_transactions:
            self.store.bulk_update_kwh(user_id, updates, batch)
            return

        previous = {r.id: r.kwh_value for r in self.store.get_all_readings(user_id, limit=0)}
        done = []
        try:
            for update in updates:
                self.store.update_kwh(user_id, update.reading_id, update.new_kwh)
                done.append(update)
            if batch is not None:
                self.store.save_batch(batch)
        except Exception as e:
            logger.warning("Offset write failed after %d of %d readings; reverting", len(done), len(updates))
            for update in reversed(done):
                try:
                    self.store.update_kwh(user_id, update.reading_id, previous[update.reading_id])
                except Exception:
                    logger.exception("Could not revert reading %s", update.reading_id)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Offset write failed: {e}") from e

    # ------------------------------------------------------------------
    # rollback
    # ------------------------------------------------------------------

    def pending_rollbacks(self, user_id: str) -> List[RecalculationBatch]:
        now = self.clock()
        return [b for b in self.store.list_batches(user_id) if b.is_rollback_open(now)]

    def rollback(self, user_id: str, batch_id: str, reason: Optional[str] = None) -> RecalculationBatch:
        """
        Put every affected balance back and reverse the triggering write.

        The trigger is undone first. If restoring the balances then fails, the
        trigger is redone and the batch stays open, so a retry starts clean.
        """
        batch = self.store.get_batch(user_id, batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        if batch.rolled_back:
            raise AlreadyRolledBack(f"Batch {batch_id} was already rolled back")
        now = self.clock()
        if now > batch.can_rollback_until:
            raise RollbackExpired(
                f"Batch {batch_id} could only be rolled back until {batch.can_rollback_until.isoformat()}")

        redo = self._undo_trigger(batch)

        batch.rolled_back = True
        batch.rolled_back_at = now
        batch.rollback_reason = reason
        restore = [KwhUpdate(e.reading_id, e.old_kwh) for e in batch.affected_events]
        try:
            self._write_offsets(user_id, restore, batch)
        except Exception:
            batch.rolled_back = False
            batch.rolled_back_at = None
            batch.rollback_reason = None
            if redo is not None:
                try:
                    redo()
                except Exception:
                    logger.exception("Could not redo trigger of batch %s", batch.id)
            raise

        logger.info("Rolled back batch %s (%d readings restored)", batch.id, len(restore))
        return batch

    def _undo_trigger(self, batch: RecalculationBatch) -> Optional[Callable[[], object]]:
        """
        Reverse the write that caused the batch, if its row is still in place.

        Returns a callable that redoes the write, or None when nothing was touched.
        """
        user_id = batch.user_id
        if batch.trigger_type == TriggerType.BACKDATE_TOPUP:
            current = self.store.get_reading(user_id, batch.trigger_reading_id) if batch.trigger_reading_id else None
            if current is not None:
                self.store.delete(user_id, current.id)
                return lambda: self.store.insert(current)
        elif batch.trigger_snapshot:
            original = reading_from_dict(batch.trigger_snapshot)
            if batch.trigger_type == TriggerType.EDIT_TOPUP:
                current = self.store.get_reading(user_id, original.id)
                if current is not None:
                    self.store.update(original)
                    return lambda: self.store.update(current)
            if (batch.trigger_type == TriggerType.DELETE_TOPUP
                    and self.store.get_reading(user_id, original.id) is None
                    and self.store.check_reading_exists(user_id, original.calendar_date) is None):
                inserted = self.store.insert(original)
                return lambda: self.store.delete(user_id, inserted.id)
        logger.warning("Trigger reading of batch %s no longer matches; left as is", batch.id)
        return None
