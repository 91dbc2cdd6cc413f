from datetime import date, datetime, timedelta

import pytest

from app import create_app
from models import Donation, Donor, EmergencyRequest, db

NOW = datetime(2026, 10, 18, 12, 0, 0)
HOSPITAL = (12.9716, 77.5946)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_donor():
    counter = iter(range(1, 10_000))

    def _make(**kwargs):
        fields = {
            "id": next(counter),
            "name": "Donor",
            "blood_group": "O+",
            "gender": "Male",
            "date_of_birth": date(1996, 5, 1),
            "role": "Donor",
            "latitude": HOSPITAL[0],
            "longitude": HOSPITAL[1],
            "is_active": True,
        }
        fields.update(kwargs)
        return Donor(**fields)

    return _make


@pytest.fixture
def make_donation():
    def _make(donor, days_ago, **kwargs):
        return Donation(donor_id=donor.id, donation_date=NOW - timedelta(days=days_ago), **kwargs)

    return _make


@pytest.fixture
def emergency():
    def _make(blood_group="O+", latitude=HOSPITAL[0], longitude=HOSPITAL[1], **kwargs):
        return EmergencyRequest(id=1, patient_name="Patient", blood_group=blood_group,
                                latitude=latitude, longitude=longitude, **kwargs)

    return _make


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "MATCH_COMPATIBILITY_MODE": "exact",
        "MATCH_MISSING_LOCATION": "origin",
        "MATCH_MAX_RESULTS": 10,
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()
