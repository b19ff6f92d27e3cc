# backend/lib/token_meter_core/estimator.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from .settings import Settings, DEFAULT_TARIFF_PER_KWH


def _round(value: float, places: str) -> float:
    return float(Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def estimate_kwh(token_cost: float, admin_fee: float = 0.0, tax_percent: float = 0.0,
                 tariff_per_kwh: float = DEFAULT_TARIFF_PER_KWH) -> float:
    """
    Convert a token price into the kWh it should credit.

    tax is taken as a percentage of the gross price, the admin fee is a flat
    deduction; the remainder buys kWh at the flat tariff. Never negative.
    """
    tax_amount = token_cost * tax_percent / 100
    net_amount = token_cost - admin_fee - tax_amount
    kwh = max(0.0, net_amount / tariff_per_kwh)
    return _round(kwh, '0.001')


@dataclass
class TokenEstimate:
    kwh: float
    tax_amount: float
    net_amount: float
    effective_tariff: float
    source: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "kwh": self.kwh,
            "tax_amount": self.tax_amount,
            "net_amount": self.net_amount,
            "effective_tariff": self.effective_tariff,
            "source": self.source,
        }


def estimate_token(token_cost: float, settings: Settings,
                   fallback_rate: Optional[float] = None) -> TokenEstimate:
    """
    Full breakdown of a token conversion.

    An explicit fallback_rate wins over the rate in settings; a tiered tariff
    lookup would slot in before both.
    """
    if fallback_rate:
        rate, source = float(fallback_rate), "fallback"
    else:
        rate, source = settings.tariff_per_kwh or DEFAULT_TARIFF_PER_KWH, "settings"
    tax_amount = token_cost * settings.tax_percent / 100
    return TokenEstimate(
        kwh=estimate_kwh(token_cost, settings.admin_fee, settings.tax_percent, rate),
        tax_amount=_round(tax_amount, '0.01'),
        net_amount=_round(token_cost - settings.admin_fee - tax_amount, '0.01'),
        effective_tariff=rate,
        source=source,
    )


def estimate_kwh_for(token_cost: float, settings: Settings) -> Optional[float]:
    """kWh for a token using the user's settings; None for a non-positive price."""
    if not token_cost or token_cost <= 0:
        return None
    return estimate_kwh(token_cost, settings.admin_fee, settings.tax_percent,
                        settings.tariff_per_kwh)


class BillingEstimator:
    def __init__(self, tariff_per_kwh: float = DEFAULT_TARIFF_PER_KWH):
        """
        tariff_per_kwh: flat rate in Rp per kWh
        """
        self.rate = float(tariff_per_kwh)

    def estimate_cost(self, usage_by_period: Dict[str, float]) -> float:
        """
        usage_by_period: dict like {'2025-11-01': 3.4, ...}
        returns total cost rounded to 2 decimals
        """
        total_kwh = sum(float(v) for v in usage_by_period.values())
        # ROUND_HALF_UP, not banker's rounding
        return _round(total_kwh * self.rate, '0.01')
