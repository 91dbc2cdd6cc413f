# models.py
import re
from datetime import datetime, timedelta
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _parse_enum(enum_cls, value, default):
    """Resolve a display name ("Emergency Donor") or constant name
    ("EMERGENCY_DONOR") to a member of enum_cls, else return default."""
    if isinstance(value, enum_cls):
        return value
    text = str(value or "").strip()
    if not text:
        return default
    key = _enum_key(text)
    for member in enum_cls:
        if key in (member.name, _enum_key(member.value)):
            return member
    return default


def _enum_key(text):
    return re.sub(r"[\s\-]+", "_", text.strip()).upper()


class BloodGroup(str, Enum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"


BLOOD_GROUPS = [bg.value for bg in BloodGroup]


def canonical_blood(bg):
    """Normalise free-text blood group input to one of BLOOD_GROUPS, or None."""
    if not bg:
        return None
    if isinstance(bg, BloodGroup):
        return bg.value
    s = str(bg).upper().strip()
    s = re.sub(r"\s+", "", s)
    s = s.replace("−", "-").replace("–", "-")  # unicode minus / en dash
    s = s.replace("POSITIVE", "+").replace("NEGATIVE", "-")
    s = s.replace("+VE", "+").replace("-VE", "-")
    s = s.replace("POS", "+").replace("NEG", "-")
    return s if s in BLOOD_GROUPS else None


class DonorRole(str, Enum):
    DONOR = "Donor"
    BRIDGE_DONOR = "Bridge Donor"
    EMERGENCY_DONOR = "Emergency Donor"
    FIGHTER = "Fighter"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value):
        return _parse_enum(cls, value, cls.UNKNOWN)


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value):
        return _parse_enum(cls, value, cls.UNKNOWN)


class DonationType(str, Enum):
    VOLUNTARY = "Voluntary Donation"
    BLOOD_BRIDGE = "Blood Bridge Donation"
    PLATELET = "Platelet Donation"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value):
        return _parse_enum(cls, value, cls.UNKNOWN)

    @property
    def interval(self):
        # platelets regenerate in about a week, whole blood in ~3 months
        if self is DonationType.PLATELET:
            return timedelta(days=7)
        return timedelta(days=90)


class DonationStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value):
        return _parse_enum(cls, value, cls.UNKNOWN)


class UrgencyLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @classmethod
    def parse(cls, value):
        return _parse_enum(cls, value, cls.MEDIUM)

    @property
    def rank(self):
        return list(UrgencyLevel).index(self)


def next_eligible_date(donation_date, donation_type):
    return donation_date + DonationType.parse(donation_type).interval


def _iso(value):
    return value.isoformat() if value else None


class Donor(db.Model):
    __tablename__ = "donor"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(32), unique=True, nullable=True)
    blood_group = db.Column(db.String(10), nullable=False)
    gender = db.Column(db.String(16), default=Gender.UNKNOWN.value)
    date_of_birth = db.Column(db.Date, nullable=True)
    role = db.Column(db.String(32), default=DonorRole.DONOR.value)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    donations = db.relationship("Donation", backref="donor", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "blood_group": self.blood_group,
            "gender": self.gender,
            "date_of_birth": _iso(self.date_of_birth),
            "role": self.role,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_active": self.is_active,
        }


class Donation(db.Model):
    __tablename__ = "donation"
    id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=False)
    donation_date = db.Column(db.DateTime, nullable=False)
    next_eligible_date = db.Column(db.DateTime, nullable=True)
    donation_type = db.Column(db.String(32), default=DonationType.VOLUNTARY.value)
    status = db.Column(db.String(16), default=DonationStatus.PENDING.value)
    units = db.Column(db.Integer, default=1)

    def to_dict(self):
        return {
            "id": self.id,
            "donor_id": self.donor_id,
            "donation_date": _iso(self.donation_date),
            "next_eligible_date": _iso(self.next_eligible_date),
            "donation_type": self.donation_type,
            "status": self.status,
            "units": self.units,
        }


class EmergencyRequest(db.Model):
    __tablename__ = "emergency_request"
    id = db.Column(db.Integer, primary_key=True)
    patient_name = db.Column(db.String(120), nullable=False)
    blood_group = db.Column(db.String(10), nullable=False)
    units_required = db.Column(db.Integer, default=1)
    urgency = db.Column(db.String(16), default=UrgencyLevel.MEDIUM.value)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    hospital_name = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(32), default="OPEN")  # OPEN, MATCHED, FULFILLED, CANCELLED
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "patient_name": self.patient_name,
            "blood_group": self.blood_group,
            "units_required": self.units_required,
            "urgency": self.urgency,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "hospital_name": self.hospital_name,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }


class DonorLocation(db.Model):
    """Live position reported by a donor's device; read as a time-windowed snapshot."""
    __tablename__ = "donor_location"
    id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    recorded_at = db.Column(db.DateTime, default=datetime.utcnow)
