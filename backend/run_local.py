# backend/run_local.py
from backend.lib.token_meter_core.io import parse_csv_string
from backend.lib.token_meter_core.aggregator import aggregate_monthly
from backend.lib.token_meter_core.forecast import project
from backend.lib.token_meter_core.processor import reconstruct
from backend.lib.token_meter_core.scoring import score
from backend.lib.token_meter_core.settings import Settings
import sys
from pathlib import Path


def main(csv_path):
    text = Path(csv_path).read_text()
    readings = parse_csv_string(text)
    settings = Settings.from_env()
    print(f"Parsed {len(readings)} readings:")
    for r in readings:
        kind = f"top-up Rp {r.token_cost:,.0f}" if r.is_top_up else "reading"
        print(f" - {r.date.isoformat()} : {r.kwh_value} kWh ({kind})")

    daily = reconstruct(readings)
    print("\nMonthly usage:")
    for m in aggregate_monthly(daily, tariff_per_kwh=settings.tariff_per_kwh):
        print(f" - {m.label}: {m.usage_kwh:.2f} kWh over {m.days} days, ~Rp {m.est_cost:,.0f}")

    projection = project(readings)
    if projection.has_data:
        print(f"\n{projection.remaining_kwh} kWh left at {projection.avg_daily_usage} kWh/day: "
              f"~{projection.days_until_depletion} days")

    result = score(readings, settings=settings)
    if result.has_data:
        print(f"Efficiency: {result.total_score}/100 ({result.grade})")
    else:
        print(f"Efficiency: {result.message}")


if __name__ == "__main__":
    csv = sys.argv[1] if len(sys.argv) > 1 else "tests/sample.csv"
    main(csv)
