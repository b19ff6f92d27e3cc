# tests/test_forecast.py
from backend.lib.token_meter_core.forecast import average_daily_usage, project
from backend.lib.token_meter_core.models import ConsumptionReading, TopUpReading
from datetime import date, datetime, timedelta


def make_readings(balances, start=datetime(2025, 11, 1, 7, 0)):
    return [ConsumptionReading("u1", start + timedelta(days=i), kwh) for i, kwh in enumerate(balances)]


def test_six_days_left_is_a_warning():
    readings = make_readings([100, 90, 80, 70, 60])
    result = project(readings, today=date(2025, 11, 5))
    assert result.has_data
    assert result.remaining_kwh == 60
    assert result.avg_daily_usage == 10
    assert result.days_until_depletion == 6
    assert result.predicted_depletion_date == date(2025, 11, 11)
    assert result.is_warning
    assert not result.is_critical
    assert [p.day_index for p in result.projection_points] == list(range(7))
    assert result.projection_points[0].is_actual
    assert result.projection_points[-1].kwh_remaining == 0
    assert result.critical_kwh == 30
    assert result.warning_kwh == 70
    assert result.days_to_critical == 3
    assert result.days_to_warning == 0


def test_critical_when_three_days_or_less():
    result = project(make_readings([40, 30, 20]), today=date(2025, 11, 3))
    assert result.days_until_depletion == 2
    assert result.is_critical
    assert not result.is_warning


def test_projection_points_are_capped():
    readings = make_readings([1000, 999, 998])
    result = project(readings, today=date(2025, 11, 3))
    assert result.days_until_depletion == 998
    assert len(result.projection_points) == 61


def test_top_up_days_do_not_lower_the_average():
    readings = make_readings([100, 90, 80])
    readings.append(TopUpReading("u1", datetime(2025, 11, 4, 7, 0), 180, token_cost=150000, token_amount=100))
    readings.append(ConsumptionReading("u1", datetime(2025, 11, 5, 7, 0), 170))
    assert average_daily_usage(readings) == 10
    assert project(readings, today=date(2025, 11, 5)).days_until_depletion == 17


def test_no_data_cases():
    assert not project([]).has_data
    flat = project(make_readings([40, 40, 40]))
    assert not flat.has_data
    assert flat.remaining_kwh == 40
    empty = project(make_readings([20, 10, 0]))
    assert not empty.has_data
    assert empty.remaining_kwh == 0
    assert empty.projection_points == []


def test_projection_is_deterministic():
    readings = make_readings([100, 92, 81, 77])
    today = date(2025, 11, 4)
    assert project(readings, today=today).to_dict() == project(readings, today=today).to_dict()
