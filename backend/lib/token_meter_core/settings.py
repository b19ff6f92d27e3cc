# backend/lib/token_meter_core/settings.py
"""
User settings passed explicitly into every computation that needs them.

Defaults follow the PLN R1/1300 VA household tariff. Values can be read from
environment variables (the API loads them from .env with python-dotenv) or
merged from a request body.
"""
import os
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, Optional

DEFAULT_TARIFF_PER_KWH = 1444.70
DEFAULT_MONTHLY_BUDGET = 500000.0
DEFAULT_BUDGET_ALERT_THRESHOLD = 85.0

# PLN prepaid tariff presets (Rp/kWh), keyed by group and power capacity
TARIFF_PRESETS: Dict[str, float] = {
    "R1_450": 415.0,
    "R1_900": 1352.0,
    "R1_1300": 1444.70,
    "R1_2200": 1444.70,
    "R2_3500": 1444.70,
    "R2_4400": 1444.70,
    "R2_5500": 1444.70,
    "R2_6600": 1444.70,
    "R3_6600": 1444.70,
    "R3_10600": 1444.70,
    "R3_13200": 1444.70,
    "B1_5300": 1444.70,
    "B1_8900": 1444.70,
}


def tariff_for_preset(preset_id: Optional[str]) -> float:
    """Rate for a preset id; unknown ids fall back to the flat default rate."""
    if not preset_id:
        return DEFAULT_TARIFF_PER_KWH
    return TARIFF_PRESETS.get(preset_id.upper(), DEFAULT_TARIFF_PER_KWH)


def _positive(value: Optional[str]) -> Optional[float]:
    if value in (None, ""):
        return None
    number = float(value)
    return number if number > 0 else None


@dataclass(frozen=True)
class Settings:
    monthly_budget: float = DEFAULT_MONTHLY_BUDGET
    tariff_per_kwh: float = DEFAULT_TARIFF_PER_KWH
    admin_fee: float = 0.0
    tax_percent: float = 0.0
    budget_alert_threshold: float = DEFAULT_BUDGET_ALERT_THRESHOLD

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        TARIFF_PER_KWH wins over TARIFF_PRESET; both fall back to the default.
        A zero or negative tariff or budget is ignored.
        """
        tariff = _positive(os.getenv("TARIFF_PER_KWH"))
        return cls(
            monthly_budget=_positive(os.getenv("MONTHLY_BUDGET")) or DEFAULT_MONTHLY_BUDGET,
            tariff_per_kwh=tariff or tariff_for_preset(os.getenv("TARIFF_PRESET")),
            admin_fee=float(os.getenv("ADMIN_FEE", 0)),
            tax_percent=float(os.getenv("TAX_PERCENT", 0)),
            budget_alert_threshold=float(
                os.getenv("BUDGET_ALERT_THRESHOLD", DEFAULT_BUDGET_ALERT_THRESHOLD)
            ),
        )

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "Settings":
        """Return a copy with any known, non-empty keys from overrides applied."""
        if not overrides:
            return self
        known = {k: float(v) for k, v in overrides.items()
                 if k in self.__dataclass_fields__ and v not in (None, "")}
        # zero or negative tariff/budget would divide by zero downstream
        for key in ("tariff_per_kwh", "monthly_budget"):
            if key in known and known[key] <= 0:
                del known[key]
        return replace(self, **known)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        return cls().merged(data)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)
