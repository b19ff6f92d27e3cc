# tests/test_io.py
from backend.lib.token_meter_core.errors import ValidationError
from backend.lib.token_meter_core.io import parse_csv_string
from backend.lib.token_meter_core.models import ConsumptionReading, TopUpReading
from backend.lib.token_meter_core.processor import reconstruct
from datetime import date, datetime
import pathlib
import pytest


def test_parse_sample_csv():
    p = pathlib.Path(__file__).parent / "sample.csv"
    text = p.read_text()
    readings = parse_csv_string(text, user_id="household-1")
    assert len(readings) == 3
    assert isinstance(readings[0], ConsumptionReading)
    assert readings[0].user_id == "household-1"
    assert readings[0].kwh_value == 50.0
    assert isinstance(readings[2], TopUpReading)
    assert readings[2].token_cost == 100000
    assert readings[2].token_amount == 69.2
    assert readings[2].notes == "token from minimarket"


def test_user_id_column_overrides_default():
    text = "user_id,date,kwh_value\nflat-7,2025-11-01,12.5\n"
    readings = parse_csv_string(text)
    assert readings[0].user_id == "flat-7"
    assert readings[0].date.day == 1


def test_missing_date_rejected():
    with pytest.raises(ValidationError):
        parse_csv_string("date,kwh_value\n,12.5\n")


def test_negative_kwh_rejected():
    with pytest.raises(ValidationError):
        parse_csv_string("date,kwh_value\n2025-11-01,-1\n")


def test_non_numeric_kwh_rejected():
    with pytest.raises(ValidationError):
        parse_csv_string("date,kwh_value\n2025-11-01,abc\n")


def test_date_only_and_offset_timestamps_mix():
    text = "date,kwh_value\n2025-11-01,50\n2025-11-03T07:30:00Z,40\n2025-11-04T08:00:00+07:00,36\n"
    readings = parse_csv_string(text)
    assert all(r.date.tzinfo is None for r in readings)
    # the offset is dropped, not converted: the written day and hour stay
    assert readings[2].date == datetime(2025, 11, 4, 8, 0)

    daily = reconstruct(readings)
    assert [p.date for p in daily] == [date(2025, 11, 1), date(2025, 11, 2), date(2025, 11, 3), date(2025, 11, 4)]
    assert [p.usage_kwh for p in daily] == [0.0, 5.0, 5.0, 4.0]
