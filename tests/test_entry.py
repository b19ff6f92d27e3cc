# tests/test_entry.py
from backend.lib.token_meter_core.entry import (
    Accepted,
    AnomalyDetected,
    BackdateRequired,
    Blocked,
    DuplicateDate,
    ReadingEntryService,
)
from backend.lib.token_meter_core.errors import ReadingNotFound
from backend.lib.token_meter_core.models import ConsumptionReading, TopUpReading
from backend.lib.token_meter_core.store import InMemoryReadingStore
from datetime import datetime
import pytest


def make_service():
    store = InMemoryReadingStore([
        ConsumptionReading("u1", datetime(2025, 11, 1, 7, 0), 50.0, id="r1"),
        ConsumptionReading("u1", datetime(2025, 11, 3, 7, 0), 40.0, id="r3"),
    ])
    return ReadingEntryService(store), store


def test_next_reading_is_accepted():
    service, store = make_service()
    outcome = service.submit(ConsumptionReading("u1", datetime(2025, 11, 4, 20, 0), 36.5))
    assert isinstance(outcome, Accepted)
    assert outcome.batch is None
    assert store.get_reading("u1", outcome.reading.id).kwh_value == 36.5


def test_same_day_is_a_duplicate():
    service, store = make_service()
    # a different time on the same calendar day still clashes
    outcome = service.submit(ConsumptionReading("u1", datetime(2025, 11, 3, 22, 0), 38.0))
    assert isinstance(outcome, DuplicateDate)
    assert outcome.existing.id == "r3"
    assert outcome.to_dict()["options"] == ["edit", "replace"]
    assert len(store.get_all_readings("u1")) == 2


def test_balance_increase_without_top_up_is_an_anomaly():
    service, store = make_service()
    reading = ConsumptionReading("u1", datetime(2025, 11, 4, 7, 0), 48.0)
    outcome = service.submit(reading)
    assert isinstance(outcome, AnomalyDetected)
    assert outcome.previous.id == "r3"
    assert len(store.get_all_readings("u1")) == 2

    acknowledged = service.submit(reading, acknowledge_anomaly=True)
    assert isinstance(acknowledged, Accepted)


def test_top_up_is_never_an_anomaly():
    service, _ = make_service()
    outcome = service.submit(TopUpReading("u1", datetime(2025, 11, 4, 7, 0), 110.0, token_cost=100000))
    assert isinstance(outcome, Accepted)


def test_backdated_top_up_needs_confirmation():
    service, store = make_service()
    outcome = service.submit(TopUpReading("u1", datetime(2025, 11, 2, 7, 0), 95.0, token_cost=75000,
                                          token_amount=50.0))
    assert isinstance(outcome, BackdateRequired)
    assert outcome.to_dict()["plan"]["affected"][0]["new_kwh"] == 90.0
    assert store.get_reading("u1", "r3").kwh_value == 40.0

    accepted = service.confirm(outcome.plan)
    assert isinstance(accepted, Accepted)
    assert accepted.batch is not None
    assert store.get_reading("u1", "r3").kwh_value == 90.0


def test_top_up_below_previous_balance_is_blocked():
    service, store = make_service()
    outcome = service.submit(TopUpReading("u1", datetime(2025, 11, 4, 7, 0), 30.0, token_cost=20000))
    assert isinstance(outcome, Blocked)
    body = outcome.to_dict()
    assert body["status"] == "blocked"
    assert [i["code"] for i in body["issues"]] == ["TOPUP_NOT_INCREASING"]
    assert len(store.get_all_readings("u1")) == 2


def test_blocked_backdate_is_a_blocked_outcome():
    service, _ = make_service()
    outcome = service.submit(TopUpReading("u1", datetime(2025, 11, 2, 7, 0), 5.0, token_cost=20000))
    assert isinstance(outcome, Blocked)
    assert outcome.plan.is_backdate


def test_replace_keeps_the_row_id():
    service, store = make_service()
    outcome = service.replace("r3", ConsumptionReading("u1", datetime(2025, 11, 3, 21, 0), 38.0, notes="re-read"))
    assert isinstance(outcome, Accepted)
    replaced = store.get_reading("u1", "r3")
    assert replaced.kwh_value == 38.0
    assert replaced.notes == "re-read"
    assert len(store.get_all_readings("u1")) == 2


def test_edit_existing_changes_only_given_fields():
    service, store = make_service()
    outcome = service.edit_existing("u1", "r3", {"notes": "photo blurry"})
    assert isinstance(outcome, Accepted)
    edited = store.get_reading("u1", "r3")
    assert edited.notes == "photo blurry"
    assert edited.kwh_value == 40.0


def test_edit_onto_an_occupied_day_is_a_duplicate():
    service, _ = make_service()
    outcome = service.edit_existing("u1", "r3", {"date": "2025-11-01T18:00:00"})
    assert isinstance(outcome, DuplicateDate)
    assert outcome.existing.id == "r1"


def test_remove():
    service, store = make_service()
    assert isinstance(service.remove("u1", "r3"), Accepted)
    assert store.get_reading("u1", "r3") is None
    with pytest.raises(ReadingNotFound):
        service.remove("u1", "r3")
