# backend/lib/token_meter_core/io.py
import csv
from io import StringIO
from typing import List, Optional

from .errors import ValidationError
from .models import ConsumptionReading, Reading, TopUpReading, meter_time


def _number(row, field: str, required: bool = False) -> Optional[float]:
    text = (row.get(field) or "").strip()
    if not text:
        if required:
            raise ValidationError(f"Missing {field} in row: {row}")
        return None
    try:
        value = float(text)
    except ValueError:
        raise ValidationError(f"{field} must be a number, got {text!r}")
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    return value


def parse_csv_string(csv_text: str, user_id: str = "default") -> List[Reading]:
    """
    Parse CSV text with header: date,kwh_value[,token_cost,token_amount,notes,user_id]
    Dates should be ISO8601, e.g. 2025-11-01T07:30:00Z or 2025-11-01.
    Rows with a positive token_cost become top-ups.
    """
    f = StringIO(csv_text.strip())
    reader = csv.DictReader(f)
    readings = []
    for row in reader:
        if not (row.get("date") or "").strip():
            raise ValidationError(f"Missing date in row: {row}")
        try:
            when = meter_time(row["date"])
        except ValueError:
            raise ValidationError(f"Invalid date: {row['date']!r}")
        kwh = _number(row, "kwh_value", required=True)
        token_cost = _number(row, "token_cost")
        owner = (row.get("user_id") or "").strip() or user_id
        notes = (row.get("notes") or "").strip() or None

        if token_cost:
            readings.append(TopUpReading(
                user_id=owner, date=when, kwh_value=kwh, token_cost=token_cost,
                token_amount=_number(row, "token_amount"), notes=notes,
            ))
        else:
            readings.append(ConsumptionReading(user_id=owner, date=when, kwh_value=kwh, notes=notes))
    return readings
