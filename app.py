# ============================
# IMPORTS
# ============================
import os
from datetime import date, datetime

from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import BadRequest, HTTPException

from matching import (COMPATIBILITY, CompatibilityMode, MissingLocation, donors_for,
                      is_eligible, most_recent_donation, rank_donors)
from models import (Donation, DonationStatus, DonationType, Donor, DonorLocation, DonorRole,
                    EmergencyRequest, Gender, UrgencyLevel, canonical_blood, db,
                    next_eligible_date)
from tracking import LOCATION_MAX_AGE, with_live_locations

# ============================
# PATHS & CONFIG
# ============================
BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DEFAULT_DB_PATH = os.path.join(BASE_DIR, "instance", "bloodlink.db")

api = Blueprint("api", __name__)


def create_app(config=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-key")
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}"
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MATCH_COMPATIBILITY_MODE"] = os.getenv("MATCH_COMPATIBILITY_MODE", CompatibilityMode.EXACT.value)
    app.config["MATCH_MISSING_LOCATION"] = os.getenv("MATCH_MISSING_LOCATION", MissingLocation.ORIGIN.value)
    app.config["MATCH_MAX_RESULTS"] = int(os.getenv("MATCH_MAX_RESULTS", 10))
    if config:
        app.config.update(config)

    # fail at startup, not on the first emergency
    CompatibilityMode(app.config["MATCH_COMPATIBILITY_MODE"])
    MissingLocation(app.config["MATCH_MISSING_LOCATION"])
    if app.config["MATCH_MAX_RESULTS"] is not None and app.config["MATCH_MAX_RESULTS"] < 0:
        raise ValueError("MATCH_MAX_RESULTS must be >= 0")

    if app.config["SQLALCHEMY_DATABASE_URI"] == f"sqlite:///{DEFAULT_DB_PATH}":
        os.makedirs(os.path.dirname(DEFAULT_DB_PATH), exist_ok=True)

    db.init_app(app)
    app.register_blueprint(api, url_prefix="/api")
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(SQLAlchemyError, handle_db_error)

    @app.route("/health")
    def health_check():
        return {"status": "healthy"}

    with app.app_context():
        db.create_all()

    return app


# ============================
# ERRORS
# ============================
def handle_http_error(e):
    return jsonify({"error": e.description}), e.code


def handle_db_error(e):
    db.session.rollback()
    current_app.logger.exception("Database error")
    return jsonify({"error": "Database error occurred"}), 500


# ============================
# HELPERS
# ============================
def get_json():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest("No input data provided")
    return data


def require(data, field):
    value = data.get(field)
    if value is None or value == "":
        raise BadRequest(f"Missing field: {field}")
    return value


def parse_blood_group(value):
    bg = canonical_blood(value)
    if bg is None:
        raise BadRequest(f"Invalid blood group: {value}")
    return bg


def parse_date(value, field):
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise BadRequest(f"Invalid date for {field}: {value}")


def parse_datetime(value, field):
    if value is None:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise BadRequest(f"Invalid datetime for {field}: {value}")


def parse_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid integer for {field}: {value}")


def parse_bool(value, field):
    if not isinstance(value, bool):
        raise BadRequest(f"Invalid boolean for {field}: {value}")
    return value


def parse_float(value, field):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid number for {field}: {value}")


def rank_for_request(br, mode=None, limit=None):
    """Rank the whole roster against a stored request, overlaying fresh live locations."""
    cfg = current_app.config
    # live fixes are stamped in UTC; donation and birth dates are local calendar dates
    now = datetime.utcnow()
    donors = Donor.query.order_by(Donor.id).all()
    donations = Donation.query.all()
    fixes = DonorLocation.query.filter(DonorLocation.recorded_at > now - LOCATION_MAX_AGE).all()

    ranked = rank_donors(
        br,
        with_live_locations(donors, fixes, now),
        donations,
        mode=mode or cfg["MATCH_COMPATIBILITY_MODE"],
        missing_location=cfg["MATCH_MISSING_LOCATION"],
        now=datetime.now(),
        limit=limit if limit is not None else cfg["MATCH_MAX_RESULTS"],
    )
    current_app.logger.info("Request %s (%s, %s): %d matches",
                            br.id, br.blood_group, br.urgency, len(ranked))
    return ranked


# ==========================================
# DONORS
# ==========================================
@api.route("/donors", methods=["POST"])
def register_donor():
    data = get_json()
    d = Donor(
        name=require(data, "name"),
        phone=data.get("phone"),
        blood_group=parse_blood_group(require(data, "blood_group")),
        gender=Gender.parse(data.get("gender")).value,
        date_of_birth=parse_date(data.get("date_of_birth"), "date_of_birth"),
        role=DonorRole.parse(data.get("role") or DonorRole.DONOR).value,
        latitude=parse_float(data.get("latitude"), "latitude"),
        longitude=parse_float(data.get("longitude"), "longitude"),
        is_active=parse_bool(data.get("is_active", True), "is_active"),
    )
    db.session.add(d)
    db.session.commit()
    return jsonify(d.to_dict()), 201


@api.route("/donors/<int:donor_id>", methods=["GET"])
def get_donor(donor_id):
    d = db.get_or_404(Donor, donor_id, description="Donor not found")
    history = Donation.query.filter_by(donor_id=d.id).all()
    last = most_recent_donation(history)

    out = d.to_dict()
    out["donation_count"] = len(history)
    out["last_donation"] = last.to_dict() if last else None
    out["eligible"] = is_eligible(d, last)
    return jsonify(out)


@api.route("/donors/<int:donor_id>/location", methods=["POST"])
def update_donor_location(donor_id):
    d = db.get_or_404(Donor, donor_id, description="Donor not found")
    data = get_json()
    fix = DonorLocation(
        donor_id=d.id,
        latitude=parse_float(require(data, "latitude"), "latitude"),
        longitude=parse_float(require(data, "longitude"), "longitude"),
        recorded_at=parse_datetime(data.get("recorded_at"), "recorded_at") or datetime.utcnow(),
    )
    db.session.add(fix)
    db.session.commit()
    return jsonify({"donor_id": d.id, "recorded_at": fix.recorded_at.isoformat()}), 201


# ==========================================
# DONATIONS
# ==========================================
@api.route("/donations", methods=["POST"])
def record_donation():
    data = get_json()
    d = db.get_or_404(Donor, parse_int(require(data, "donor_id"), "donor_id"), description="Donor not found")
    donated_at = parse_datetime(data.get("donation_date"), "donation_date") or datetime.now()
    donation_type = DonationType.parse(data.get("donation_type") or DonationType.VOLUNTARY)

    donation = Donation(
        donor_id=d.id,
        donation_date=donated_at,
        next_eligible_date=next_eligible_date(donated_at, donation_type),
        donation_type=donation_type.value,
        status=DonationStatus.parse(data.get("status") or DonationStatus.PENDING).value,
        units=parse_int(data.get("units", 1), "units"),
    )
    db.session.add(donation)
    db.session.commit()
    return jsonify(donation.to_dict()), 201


# ==========================================
# EMERGENCY REQUESTS
# ==========================================
@api.route("/requests", methods=["POST"])
def create_request():
    data = get_json()
    br = EmergencyRequest(
        patient_name=require(data, "patient_name"),
        blood_group=parse_blood_group(require(data, "blood_group")),
        units_required=parse_int(data.get("units_required", 1), "units_required"),
        urgency=UrgencyLevel.parse(data.get("urgency")).value,
        latitude=parse_float(data.get("latitude"), "latitude"),
        longitude=parse_float(data.get("longitude"), "longitude"),
        hospital_name=data.get("hospital_name"),
        status="OPEN",
    )
    db.session.add(br)
    db.session.commit()

    ranked = rank_for_request(br)
    return jsonify({"request": br.to_dict(), "matches": [m.to_dict() for m in ranked]}), 201


@api.route("/requests/<int:request_id>/matches", methods=["GET"])
def request_matches(request_id):
    br = db.get_or_404(EmergencyRequest, request_id, description="Blood request not found")
    try:
        mode = CompatibilityMode(request.args.get("mode", current_app.config["MATCH_COMPATIBILITY_MODE"]))
    except ValueError:
        raise BadRequest("mode must be 'exact' or 'transfusion'")
    limit = request.args.get("limit", type=int)
    if limit is not None and limit < 0:
        raise BadRequest("limit must be >= 0")

    ranked = rank_for_request(br, mode=mode, limit=limit)
    return jsonify({"request": br.to_dict(), "mode": mode.value, "matches": [m.to_dict() for m in ranked]})


# ==========================================
# COMPATIBILITY LOOKUP
# ==========================================
@api.route("/compatibility", methods=["POST"])
def check_blood_compatibility():
    bg = parse_blood_group(require(get_json(), "blood_type"))
    return jsonify({
        "blood_type": bg,
        "can_give_to": COMPATIBILITY[bg],
        "can_receive_from": donors_for(bg),
    })


# ============================
# RUN
# ============================
if __name__ == "__main__":
    app = create_app()
    print("BloodLink matching API starting...")
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 5000)))
