# tests/test_recalculation.py
from backend.lib.token_meter_core.errors import (
    AlreadyRolledBack,
    BackdateBlocked,
    BatchNotFound,
    RecalculationError,
    RollbackExpired,
    StorageError,
)
from backend.lib.token_meter_core.models import ConsumptionReading, Severity, TopUpReading, TriggerType
from backend.lib.token_meter_core.recalculation import RecalculationEngine, RecalculationState
from backend.lib.token_meter_core.store import InMemoryReadingStore
from datetime import datetime, timedelta, timezone
import pytest


class Clock:
    def __init__(self):
        self.now = datetime(2025, 11, 8, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class FlakyStore(InMemoryReadingStore):
    """No multi-row transactions; update_kwh fails for one chosen reading, delete can fail too."""

    supports_transactions = False

    def __init__(self, readings, fail_on=None, fail_delete=False):
        super().__init__(readings)
        self.fail_on = fail_on
        self.fail_delete = fail_delete

    def update_kwh(self, user_id, reading_id, new_kwh):
        if reading_id == self.fail_on:
            raise StorageError(f"write to {reading_id} timed out")
        super().update_kwh(user_id, reading_id, new_kwh)

    def delete(self, user_id, reading_id):
        if self.fail_delete:
            raise StorageError(f"delete of {reading_id} timed out")
        super().delete(user_id, reading_id)


def reading(day, kwh, rid):
    return ConsumptionReading("u1", datetime(2025, 11, day, 7, 0), kwh, id=rid)


def top_up(day, kwh, amount=None, rid=None):
    return TopUpReading("u1", datetime(2025, 11, day, 9, 0), kwh, token_cost=75000, token_amount=amount, id=rid)


def base_readings():
    return [reading(1, 50.0, "r1"), reading(3, 40.0, "r3"), reading(5, 30.0, "r5"), reading(7, 22.0, "r7")]


def balances(store):
    return {r.id: r.kwh_value for r in store.get_all_readings("u1", limit=0)}


def test_backdated_top_up_shifts_later_readings():
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store, clock=Clock())
    plan = engine.plan_insert(top_up(2, 90.0, amount=45.0))

    assert plan.state == RecalculationState.PREVIEWED
    assert plan.trigger_type == TriggerType.BACKDATE_TOPUP
    assert plan.is_backdate
    assert plan.kwh_offset == 45.0
    assert [(row.reading_id, row.current_kwh, row.new_kwh) for row in plan.affected] == [
        ("r3", 40.0, 85.0), ("r5", 30.0, 75.0), ("r7", 22.0, 67.0),
    ]
    # previewing writes nothing
    assert balances(store) == {"r1": 50.0, "r3": 40.0, "r5": 30.0, "r7": 22.0}

    result = engine.apply(plan)
    assert plan.state == RecalculationState.APPLIED
    assert result.reading.id is not None
    after = balances(store)
    assert after["r3"] == 85.0 and after["r5"] == 75.0 and after["r7"] == 67.0
    assert after[result.reading.id] == 90.0

    batch = result.batch
    assert batch.trigger_type == TriggerType.BACKDATE_TOPUP
    assert batch.trigger_reading_id == result.reading.id
    assert [(e.old_kwh, e.new_kwh) for e in batch.affected_events] == [(40.0, 85.0), (30.0, 75.0), (22.0, 67.0)]
    assert batch.can_rollback_until == batch.created_at + timedelta(hours=24)
    assert store.get_batch("u1", batch.id) is not None


def test_offset_keeps_differences_between_affected_readings():
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store)
    ids = ["r3", "r5", "r7"]
    before = balances(store)
    engine.apply(engine.plan_insert(top_up(2, 77.5, amount=31.25)))
    after = balances(store)
    for a, b in zip(ids, ids[1:]):
        assert after[b] - after[a] == pytest.approx(before[b] - before[a])


def test_top_up_driving_balance_negative_is_blocked():
    store = InMemoryReadingStore([reading(1, 50.0, "r1"), reading(3, 10.0, "r3"), reading(7, 2.0, "r7")])
    engine = RecalculationEngine(store)
    snapshot = [r.to_dict() for r in store.get_all_readings("u1")]

    # 5 days before the Nov 7 reading, and lower than the Nov 1 balance
    plan = engine.plan_insert(top_up(2, 30.0))
    assert plan.state == RecalculationState.BLOCKED
    codes = {i.code for i in plan.blocking_issues}
    assert "NEGATIVE_BALANCE" in codes
    assert "TOPUP_NOT_INCREASING" in codes
    assert all(i.severity == Severity.BLOCK for i in plan.blocking_issues)

    with pytest.raises(BackdateBlocked) as exc:
        engine.apply(plan)
    assert exc.value.issues
    assert [r.to_dict() for r in store.get_all_readings("u1")] == snapshot
    assert store.list_batches("u1") == []


def test_top_up_that_stops_rising_is_blocked():
    store = InMemoryReadingStore([
        reading(1, 50.0, "r1"), reading(3, 20.0, "r3"), top_up(5, 60.0, amount=40.0, rid="t5"), reading(7, 55.0, "r7"),
    ])
    plan = RecalculationEngine(store).plan_insert(top_up(4, 70.0, amount=5.0))
    assert plan.state == RecalculationState.BLOCKED
    assert [i.code for i in plan.blocking_issues] == ["TOPUP_INCONSISTENT"]


def test_rollback_restores_balances_and_removes_the_top_up():
    clock = Clock()
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store, clock=clock)
    original = balances(store)
    batch = engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0))).batch

    clock.now += timedelta(hours=23)
    assert [b.id for b in engine.pending_rollbacks("u1")] == [batch.id]
    rolled = engine.rollback("u1", batch.id, reason="wrong date")

    assert rolled.rolled_back
    assert rolled.rolled_back_at == clock.now
    assert balances(store) == original
    stored = store.get_batch("u1", batch.id)
    assert stored.rolled_back
    assert stored.rollback_reason == "wrong date"
    assert engine.pending_rollbacks("u1") == []

    with pytest.raises(AlreadyRolledBack):
        engine.rollback("u1", batch.id)


def test_rollback_after_window_fails_without_changes():
    clock = Clock()
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store, clock=clock)
    batch = engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0))).batch
    applied = balances(store)

    clock.now += timedelta(hours=24, seconds=1)
    assert engine.pending_rollbacks("u1") == []
    with pytest.raises(RollbackExpired):
        engine.rollback("u1", batch.id)
    assert balances(store) == applied
    assert not store.get_batch("u1", batch.id).rolled_back


def test_unknown_batch():
    engine = RecalculationEngine(InMemoryReadingStore(base_readings()))
    with pytest.raises(BatchNotFound):
        engine.rollback("u1", "missing")


def test_edit_top_up_and_roll_it_back():
    store = InMemoryReadingStore([
        reading(1, 50.0, "r1"), top_up(3, 90.0, amount=50.0, rid="t3"), reading(5, 80.0, "r5"), reading(7, 70.0, "r7"),
    ])
    engine = RecalculationEngine(store, clock=Clock())
    edited = store.get_reading("u1", "t3").with_kwh(100.0)
    plan = engine.plan_edit(edited)
    assert plan.trigger_type == TriggerType.EDIT_TOPUP
    assert plan.kwh_offset == 10.0
    assert [row.reading_id for row in plan.affected] == ["r5", "r7"]

    batch = engine.apply(plan).batch
    assert balances(store) == {"r1": 50.0, "t3": 100.0, "r5": 90.0, "r7": 80.0}

    engine.rollback("u1", batch.id)
    assert balances(store) == {"r1": 50.0, "t3": 90.0, "r5": 80.0, "r7": 70.0}


def test_delete_top_up_and_roll_it_back():
    store = InMemoryReadingStore([
        reading(1, 50.0, "r1"), top_up(3, 90.0, amount=50.0, rid="t3"), reading(5, 80.0, "r5"), reading(7, 70.0, "r7"),
    ])
    engine = RecalculationEngine(store, clock=Clock())
    plan = engine.plan_delete("u1", "t3")
    assert plan.trigger_type == TriggerType.DELETE_TOPUP
    assert plan.kwh_offset == -50.0

    batch = engine.apply(plan).batch
    assert balances(store) == {"r1": 50.0, "r5": 30.0, "r7": 20.0}
    assert batch.trigger_snapshot["id"] == "t3"

    engine.rollback("u1", batch.id)
    assert balances(store) == {"r1": 50.0, "t3": 90.0, "r5": 80.0, "r7": 70.0}
    assert store.get_reading("u1", "t3").is_top_up


def test_backdated_plain_reading_moves_nothing():
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store)
    plan = engine.plan_insert(ConsumptionReading("u1", datetime(2025, 11, 4, 7, 0), 35.0))
    assert plan.trigger_type == TriggerType.BACKDATE_READING
    assert plan.is_backdate
    assert plan.kwh_offset == 0
    assert all(row.current_kwh == row.new_kwh for row in plan.affected)

    result = engine.apply(plan)
    assert result.batch is None
    assert balances(store)["r5"] == 30.0
    assert len(balances(store)) == 5


def test_reading_above_previous_is_only_a_warning():
    store = InMemoryReadingStore(base_readings())
    plan = RecalculationEngine(store).plan_insert(ConsumptionReading("u1", datetime(2025, 11, 8, 7, 0), 25.0))
    assert plan.state == RecalculationState.PREVIEWED
    assert not plan.is_backdate
    assert [i.code for i in plan.warnings] == ["READING_ABOVE_PREVIOUS"]


def test_failed_sequential_update_is_reverted():
    store = FlakyStore(base_readings(), fail_on="r5")
    engine = RecalculationEngine(store)
    original = balances(store)

    with pytest.raises(StorageError):
        engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0)))
    assert balances(store) == original
    assert store.list_batches("u1") == []


def test_sequential_update_without_failure_saves_batch():
    store = FlakyStore(base_readings())
    engine = RecalculationEngine(store)
    batch = engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0))).batch
    assert balances(store)["r7"] == 67.0
    assert store.get_batch("u1", batch.id).kwh_offset == 45.0


def test_cancelled_and_stale_plans_are_not_applied():
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store)

    plan = engine.cancel(engine.plan_insert(top_up(2, 90.0, amount=45.0)))
    assert plan.state == RecalculationState.CANCELLED
    with pytest.raises(RecalculationError):
        engine.apply(plan)

    stale = engine.plan_insert(top_up(2, 90.0, amount=45.0))
    store.delete("u1", "r5")
    with pytest.raises(RecalculationError):
        engine.apply(stale)
    assert balances(store) == {"r1": 50.0, "r3": 40.0, "r7": 22.0}


def test_rollback_leaves_everything_applied_when_trigger_delete_fails():
    store = FlakyStore(base_readings())
    engine = RecalculationEngine(store, clock=Clock())
    result = engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0)))
    applied = balances(store)

    store.fail_delete = True
    with pytest.raises(StorageError):
        engine.rollback("u1", result.batch.id)
    assert balances(store) == applied
    assert not store.get_batch("u1", result.batch.id).rolled_back

    # a retry once the store recovers goes through
    store.fail_delete = False
    engine.rollback("u1", result.batch.id)
    assert balances(store) == {"r1": 50.0, "r3": 40.0, "r5": 30.0, "r7": 22.0}


def test_rollback_puts_top_up_back_when_restoring_balances_fails():
    store = FlakyStore(base_readings())
    engine = RecalculationEngine(store, clock=Clock())
    result = engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0)))
    applied = balances(store)

    store.fail_on = "r5"
    with pytest.raises(StorageError):
        engine.rollback("u1", result.batch.id)
    assert balances(store) == applied
    assert store.get_reading("u1", result.reading.id) == result.reading
    assert not store.get_batch("u1", result.batch.id).rolled_back


def test_moving_a_top_up_to_another_day_warns():
    store = InMemoryReadingStore(base_readings())
    engine = RecalculationEngine(store, clock=Clock())
    added = engine.apply(engine.plan_insert(top_up(2, 90.0, amount=45.0))).reading

    moved = top_up(4, 90.0, amount=45.0, rid=added.id)
    plan = engine.plan_edit(moved)
    assert plan.state == RecalculationState.PREVIEWED
    assert not plan.is_backdate
    assert [i.code for i in plan.warnings] == ["TOPUP_DATE_MOVED"]
