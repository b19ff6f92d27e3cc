"""
=============================================================================
TOKEN METER TRACKER - MAIN FLASK APPLICATION
=============================================================================

Backend server for tracking a prepaid (token) electricity meter.

Users type in the remaining kWh shown on their meter, and log each token
top-up. From those balances the API derives:
- Daily usage (gaps between readings are spread evenly)
- Weekly and monthly rollups with estimated cost
- A burn-rate projection: when will the tokens run out?
- An efficiency score (consistency, budget pacing, trend)
- Budget status for the current month

Writes dated before existing readings (backdates) shift every later balance.
Those are previewed first, applied on confirmation and can be rolled back
for 24 hours.

AWS Services Used:
- DynamoDB: readings and recalculation batches (optional, USE_DYNAMODB=true)

How to run:
    python -m backend.app

Then visit: http://127.0.0.1:5000/status
=============================================================================
"""

# =============================================================================
# IMPORTS
# =============================================================================

# Flask - request gives us query args and JSON bodies, jsonify builds responses
from flask import Flask, request, jsonify

import logging
import os
from datetime import date

# dotenv - Load environment variables from .env file
from dotenv import load_dotenv

# Must run before anything reads os.environ
load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

# =============================================================================
# CORE LIBRARY IMPORTS
# =============================================================================

from backend.lib.token_meter_core.aggregator import aggregate_monthly, aggregate_weekly
from backend.lib.token_meter_core.entry import (
    Accepted,
    AnomalyDetected,
    BackdateRequired,
    Blocked,
    DuplicateDate,
    ReadingEntryService,
)
from backend.lib.token_meter_core.errors import (
    BackdateBlocked,
    ReadingNotFound,
    RecalculationError,
    StorageError,
    ValidationError,
)
from backend.lib.token_meter_core.estimator import estimate_token
from backend.lib.token_meter_core.forecast import project
from backend.lib.token_meter_core.io import parse_csv_string
from backend.lib.token_meter_core.models import reading_from_dict
from backend.lib.token_meter_core.processor import filter_by_range, reconstruct, top_up_events, usage_stats
from backend.lib.token_meter_core.recalculation import RecalculationEngine
from backend.lib.token_meter_core.scoring import budget_status, score
from backend.lib.token_meter_core.settings import Settings
from backend.lib.token_meter_core.store import InMemoryReadingStore

# =============================================================================
# STORAGE INITIALIZATION
# =============================================================================
# DynamoDB when enabled, otherwise an in-memory store (lost on restart)

USE_DYNAMODB = os.getenv('USE_DYNAMODB', 'false').lower() == 'true'
reading_store = None

if USE_DYNAMODB:
    try:
        from backend.lib.dynamodb_service import DynamoDBService
        reading_store = DynamoDBService()
        reading_store.create_tables_if_not_exist()
        print("DynamoDB storage enabled")
    except Exception as e:
        # keep serving from memory rather than refusing to start
        print(f"DynamoDB initialization failed: {e}. Using in-memory storage.")
        USE_DYNAMODB = False
        reading_store = None

if reading_store is None:
    reading_store = InMemoryReadingStore()
    print("In-memory storage enabled")

# Household settings (tariff, budget, fees) from the environment
settings = Settings.from_env()

# =============================================================================
# FLASK APPLICATION INITIALIZATION
# =============================================================================

app = Flask(__name__)

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _entry_service() -> ReadingEntryService:
    return ReadingEntryService(reading_store, RecalculationEngine(reading_store))


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _flag(value) -> bool:
    """Accept true/1/yes from query strings and real booleans from JSON."""
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes')


def _user_id() -> str:
    user_id = request.args.get('user_id') or _body().get('user_id')
    if not user_id:
        raise ValidationError("user_id required")
    return str(user_id)


def _request_settings() -> Settings:
    """Server settings with any overrides passed as query parameters."""
    try:
        return settings.merged({k: v for k, v in request.args.items() if k in Settings.__dataclass_fields__})
    except ValueError:
        raise ValidationError("settings overrides must be numbers")


def _today() -> date:
    text = request.args.get('today')
    if not text:
        return date.today()
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise ValidationError("today must be an ISO date (YYYY-MM-DD)")


def _reading_from_body(data: dict, user_id: str):
    """
    Validate a reading payload and build the right reading type.

    Required: date, kwh_value. A positive token_cost makes it a top-up.
    """
    if not data.get('date'):
        raise ValidationError("date required")
    for field in ('kwh_value', 'token_cost', 'token_amount'):
        value = data.get(field)
        if value in (None, ''):
            if field == 'kwh_value':
                raise ValidationError("kwh_value required")
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a number")
        if number < 0:
            raise ValidationError(f"{field} must be >= 0")
    try:
        return reading_from_dict({
            'user_id': user_id,
            'date': data['date'],
            'kwh_value': data['kwh_value'],
            'token_cost': data.get('token_cost'),
            'token_amount': data.get('token_amount'),
            'notes': data.get('notes'),
            'photo_ref': data.get('photo_ref'),
        })
    except ValueError:
        raise ValidationError(f"Invalid date: {data['date']!r}")


def _outcome_response(service: ReadingEntryService, outcome, confirm: bool, created: bool = False):
    """
    Turn an entry outcome into an HTTP response.

    201/200  stored
    202      backdate preview, resend with confirm=true to apply
    409      duplicate date, or a write blocked by validation
    422      anomaly, resend as a top-up or with acknowledge_anomaly=true
    """
    if isinstance(outcome, BackdateRequired):
        if not confirm:
            return jsonify(outcome.to_dict()), 202
        outcome = service.confirm(outcome.plan)

    if isinstance(outcome, Accepted):
        return jsonify(outcome.to_dict()), 201 if created else 200
    if isinstance(outcome, (DuplicateDate, Blocked)):
        return jsonify(outcome.to_dict()), 409
    if isinstance(outcome, AnomalyDetected):
        return jsonify(outcome.to_dict()), 422
    raise TypeError(f"Unexpected entry outcome {outcome!r}")

# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(BackdateBlocked)
def handle_backdate_blocked(e):
    return jsonify({"error": str(e), "issues": [i.to_dict() for i in e.issues]}), 409


@app.errorhandler(ReadingNotFound)
def handle_reading_not_found(e):
    return jsonify({"error": f"Reading not found: {e}"}), 404


@app.errorhandler(RecalculationError)
def handle_recalculation_error(e):
    # BatchNotFound is both a RecalculationError and a LookupError
    status = 404 if isinstance(e, LookupError) else 409
    return jsonify({"error": str(e), "type": type(e).__name__}), status


@app.errorhandler(StorageError)
def handle_storage_error(e):
    logger.error("Storage failure: %s", e)
    return jsonify({"error": "Storage unavailable", "detail": str(e)}), 503

# =============================================================================
# API ROUTES - READINGS
# =============================================================================

@app.route("/readings", methods=["GET"])
def get_readings():
    """
    List a user's readings, newest first.

    Query Parameters:
        user_id (required)
        limit: max rows (default 1000, 0 for all)
    """
    user_id = _user_id()
    try:
        limit = int(request.args.get('limit', 1000))
    except ValueError:
        raise ValidationError("limit must be an integer")
    readings = reading_store.get_all_readings(user_id, limit=limit)
    return jsonify({
        "user_id": user_id,
        "count": len(readings),
        "readings": [r.to_dict() for r in readings],
    })


@app.route("/readings", methods=["POST"])
def create_reading():
    """
    Record a meter reading or a top-up.

    JSON body:
        user_id, date, kwh_value               required
        token_cost, token_amount               top-ups only
        notes                                  optional
        confirm: true                          apply a previewed backdate
        acknowledge_anomaly: true              accept a balance increase as a correction
        on_duplicate: "replace" | "edit"       what to do if the day already has a reading
    """
    data = _body()
    user_id = _user_id()
    reading = _reading_from_body(data, user_id)
    service = _entry_service()
    confirm = _flag(data.get('confirm'))

    outcome = service.submit(reading, acknowledge_anomaly=_flag(data.get('acknowledge_anomaly')))

    on_duplicate = data.get('on_duplicate')
    if isinstance(outcome, DuplicateDate) and on_duplicate == 'replace':
        outcome = service.replace(outcome.existing.id, reading)
    elif isinstance(outcome, DuplicateDate) and on_duplicate == 'edit':
        changes = {k: data[k] for k in ('kwh_value', 'token_cost', 'token_amount', 'notes') if k in data}
        outcome = service.edit_existing(user_id, outcome.existing.id, changes)
    elif on_duplicate not in (None, 'replace', 'edit'):
        raise ValidationError("on_duplicate must be 'replace' or 'edit'")

    return _outcome_response(service, outcome, confirm, created=True)


@app.route("/readings/<reading_id>", methods=["PUT"])
def update_reading(reading_id):
    """Edit fields of an existing reading; top-up edits shift later balances."""
    data = _body()
    user_id = _user_id()
    changes = {k: data[k] for k in ('date', 'kwh_value', 'token_cost', 'token_amount', 'notes', 'photo_ref')
               if k in data}
    if not changes:
        raise ValidationError("nothing to update")
    merged = reading_store.get_reading(user_id, reading_id)
    if merged is None:
        raise ReadingNotFound(reading_id)
    # validate the merged result the same way a new reading is validated
    _reading_from_body({**merged.to_dict(), **changes}, user_id)

    service = _entry_service()
    outcome = service.edit_existing(user_id, reading_id, changes)
    return _outcome_response(service, outcome, _flag(data.get('confirm')))


@app.route("/readings/<reading_id>", methods=["DELETE"])
def delete_reading(reading_id):
    """Delete a reading; deleting a backdated top-up needs confirm=true."""
    user_id = _user_id()
    service = _entry_service()
    outcome = service.remove(user_id, reading_id)
    return _outcome_response(service, outcome, _flag(request.args.get('confirm') or _body().get('confirm')))


@app.route("/upload", methods=["POST"])
def upload():
    """
    Import readings from a CSV file.

    Expected CSV format:
        date,kwh_value,token_cost,token_amount,notes
        2025-11-01,84.2,,,
        2025-11-03,150.0,100000,69.2,token

    Each row goes through the same checks as POST /readings. Rows that clash
    with existing data (duplicate day, anomaly, backdate) are skipped and
    listed in the response.
    """
    if "file" not in request.files:
        return jsonify({"error": "No file uploaded"}), 400
    user_id = request.form.get('user_id') or request.args.get('user_id')
    if not user_id:
        raise ValidationError("user_id required")

    content = request.files["file"].read().decode("utf-8")
    readings = parse_csv_string(content, user_id=user_id)

    service = _entry_service()
    imported, skipped = 0, []
    for reading in sorted(readings, key=lambda r: r.date):
        try:
            outcome = service.submit(reading)
        except ValidationError as e:
            skipped.append({"date": reading.date.isoformat(), "reason": "invalid", "detail": str(e)})
            continue
        if isinstance(outcome, Accepted):
            imported += 1
        else:
            skipped.append({"date": reading.date.isoformat(), "reason": outcome.status})

    return jsonify({
        "upload_id": request.files["file"].filename,
        "processed_count": len(readings),
        "imported_count": imported,
        "skipped": skipped,
    }), 202

# =============================================================================
# API ROUTES - ANALYTICS
# =============================================================================

@app.route("/usage", methods=["GET"])
def usage():
    """
    Usage series for a user.

    Query Parameters:
        user_id (required)
        period: 'day' (default), 'week' or 'month'
        range: for period=day, keep only the last 'day', 'week' or 'month'
        count: number of weeks/months to return (default 12)
    """
    user_id = _user_id()
    period = request.args.get('period', 'day')
    if period not in ('day', 'week', 'month'):
        raise ValidationError("period must be 'day', 'week' or 'month'")
    try:
        count = int(request.args.get('count', 12))
    except ValueError:
        raise ValidationError("count must be an integer")

    readings = reading_store.get_all_readings(user_id, limit=0)
    daily = reconstruct(readings)
    request_settings = _request_settings()

    if period == 'week':
        rows = [w.to_dict() for w in aggregate_weekly(daily, week_count=count)]
    elif period == 'month':
        rows = [m.to_dict() for m in aggregate_monthly(daily, month_count=count,
                                                       tariff_per_kwh=request_settings.tariff_per_kwh)]
    else:
        if request.args.get('range'):
            daily = filter_by_range(daily, request.args['range'], _today())
        rows = [d.to_dict() for d in daily]

    return jsonify({
        "user_id": user_id,
        "period": period,
        "usage": rows,
        "stats": usage_stats(daily),
        "top_ups": top_up_events(readings),
    })


@app.route("/burn-rate", methods=["GET"])
def burn_rate():
    """How many days the remaining balance lasts at the recent average draw."""
    user_id = _user_id()
    readings = reading_store.get_all_readings(user_id, limit=0)
    return jsonify(project(readings, today=_today()).to_dict())


@app.route("/efficiency", methods=["GET"])
def efficiency():
    """Efficiency score (0-100) with grade and up to two tips."""
    user_id = _user_id()
    readings = reading_store.get_all_readings(user_id, limit=0)
    result = score(readings, settings=_request_settings(), today=_today())
    response = result.to_dict()
    response["surfaced_tips"] = result.surfaced_tips()
    return jsonify(response)


@app.route("/budget", methods=["GET"])
def budget():
    """Month-to-date spend against the monthly budget."""
    user_id = _user_id()
    readings = reading_store.get_all_readings(user_id, limit=0)
    return jsonify(budget_status(reconstruct(readings), _request_settings(), today=_today()))


@app.route("/estimate-kwh", methods=["GET"])
def estimate_kwh():
    """
    Estimate the kWh a token purchase should credit.

    Query Parameters:
        token_cost (required): price paid
        rate: optional Rp/kWh overriding the configured tariff
        admin_fee, tax_percent, tariff_per_kwh: optional settings overrides
    """
    try:
        token_cost = float(request.args.get('token_cost', ''))
        rate = float(request.args['rate']) if request.args.get('rate') else None
    except ValueError:
        raise ValidationError("token_cost and rate must be numbers")
    if token_cost <= 0:
        raise ValidationError("token_cost must be > 0")
    return jsonify(estimate_token(token_cost, _request_settings(), fallback_rate=rate).to_dict())

# =============================================================================
# API ROUTES - RECALCULATION BATCHES
# =============================================================================

@app.route("/recalculations", methods=["GET"])
def list_recalculations():
    """Recalculation batches, newest first; pending=true keeps only undoable ones."""
    user_id = _user_id()
    engine = RecalculationEngine(reading_store)
    if _flag(request.args.get('pending')):
        batches = engine.pending_rollbacks(user_id)
    else:
        batches = reading_store.list_batches(user_id)
    return jsonify({"user_id": user_id, "batches": [b.to_dict() for b in batches]})


@app.route("/recalculations/<batch_id>/rollback", methods=["POST"])
def rollback_recalculation(batch_id):
    """Undo a recalculation batch within 24 hours of applying it."""
    user_id = _user_id()
    reason = _body().get('reason')
    batch = RecalculationEngine(reading_store).rollback(user_id, batch_id, reason=reason)
    return jsonify({"status": "rolled_back", "batch": batch.to_dict()})

# =============================================================================
# API ROUTES - STATUS
# =============================================================================

@app.route("/status", methods=["GET"])
def status():
    """Which storage backend is active and the configured settings."""
    return jsonify({
        "storage": "dynamodb" if USE_DYNAMODB else "memory",
        "table_name": getattr(reading_store, 'table_name', None),
        "batch_table_name": getattr(reading_store, 'batch_table_name', None),
        "settings": settings.to_dict(),
    })

# =============================================================================
# RUN THE SERVER
# =============================================================================

if __name__ == "__main__":
    # debug=True reloads on code changes; never use it in production
    app.run(debug=True)
