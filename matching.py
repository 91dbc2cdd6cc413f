# matching.py
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from models import BLOOD_GROUPS, DonorRole, Gender, canonical_blood

log = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

MIN_DONOR_AGE = 18
MAX_DONOR_AGE = 60
COOLDOWN_DAYS = 56
COOLDOWN_DAYS_FEMALE = 84

# donor -> recipients it may be transfused into
COMPATIBILITY: Dict[str, List[str]] = {
    "O-":  ["O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"],
    "O+":  ["O+", "A+", "B+", "AB+"],
    "A-":  ["A-", "A+", "AB-", "AB+"],
    "A+":  ["A+", "AB+"],
    "B-":  ["B-", "B+", "AB-", "AB+"],
    "B+":  ["B+", "AB+"],
    "AB-": ["AB-", "AB+"],
    "AB+": ["AB+"],
}

BASE_SCORE = 100
# (farther than km, deduction); first hit wins
DISTANCE_BANDS = ((50, 30), (25, 20), (10, 10))
MAX_DISTANCE_PENALTY = max(penalty for _, penalty in DISTANCE_BANDS)
ROLE_BONUS = {DonorRole.EMERGENCY_DONOR: 10, DonorRole.FIGHTER: 5}
# (more than N donations, bonus)
HISTORY_BONUS = ((5, 10), (2, 5))

NEVER_DONATED = "Never"
AVAILABLE_NOW = "Available now"
CITY_SPEED_KMH = 30


class CompatibilityMode(str, Enum):
    EXACT = "exact"
    TRANSFUSION = "transfusion"


class MissingLocation(str, Enum):
    """What to do with a donor (or request) that has no coordinates."""
    ORIGIN = "origin"            # treat as 0,0
    MAX_PENALTY = "max_penalty"  # distance unknown, farthest band applied
    NO_PENALTY = "no_penalty"    # distance unknown, no deduction


# ---------------------------------------------------------------------------
# Compatibility
# ---------------------------------------------------------------------------

def is_compatible(donor_group, recipient_group) -> bool:
    donor = canonical_blood(donor_group)
    recipient = canonical_blood(recipient_group)
    if donor is None or recipient is None:
        return False
    return recipient in COMPATIBILITY[donor]


def donors_for(recipient_group) -> List[str]:
    """Donor groups a recipient may receive from, in BLOOD_GROUPS order."""
    recipient = canonical_blood(recipient_group)
    if recipient is None:
        return []
    return [bg for bg in BLOOD_GROUPS if recipient in COMPATIBILITY[bg]]


def blood_matches(donor_group, request_group, mode=CompatibilityMode.EXACT) -> bool:
    if CompatibilityMode(mode) is CompatibilityMode.TRANSFUSION:
        return is_compatible(donor_group, request_group)
    donor = canonical_blood(donor_group)
    return donor is not None and donor == canonical_blood(request_group)


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

def haversine_distance(lat1, lon1, lat2, lon2) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(lat1)) * \
        math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    # rounding can push a just outside [0, 1] near antipodes
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def estimate_eta_minutes(distance_km, speed_kmh=CITY_SPEED_KMH) -> int:
    return int(round(distance_km / speed_kmh * 60))


def format_eta(minutes) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    return f"{minutes // 60}h {minutes % 60}m"


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def compute_age(dob, today) -> int:
    if isinstance(dob, datetime):
        dob = dob.date()
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def days_since(when, now) -> int:
    return (now - _as_datetime(when)) // timedelta(days=1)


def cooldown_days(donor) -> int:
    if Gender.parse(getattr(donor, "gender", None)) is Gender.FEMALE:
        return COOLDOWN_DAYS_FEMALE
    return COOLDOWN_DAYS


def is_eligible(donor, last_donation=None, now=None) -> bool:
    """Age must be within [18, 60] and the gender-specific cooldown must have
    elapsed since the most recent donation. A donor with no date of birth
    is never eligible."""
    now = now or datetime.now()
    dob = getattr(donor, "date_of_birth", None)
    if dob is None:
        return False
    age = compute_age(dob, now.date())
    if age < MIN_DONOR_AGE or age > MAX_DONOR_AGE:
        return False
    if last_donation is None or last_donation.donation_date is None:
        return True
    return days_since(last_donation.donation_date, now) >= cooldown_days(donor)


def most_recent_donation(donations):
    dated = [d for d in donations if d.donation_date is not None]
    return max(dated, key=lambda d: _as_datetime(d.donation_date), default=None)


# ---------------------------------------------------------------------------
# Scoring & ranking
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchResult:
    donor: Any
    distance_km: Optional[float]
    last_donation_date: Union[date, datetime, str]
    next_eligible_date: Union[date, datetime, str]
    is_eligible: bool
    score: int
    eta_minutes: Optional[int] = None

    @property
    def donor_id(self):
        return self.donor.id

    def to_dict(self):
        def _fmt(value):
            return value.isoformat() if isinstance(value, (date, datetime)) else value

        return {
            "donor_id": self.donor.id,
            "name": getattr(self.donor, "name", None),
            "phone": getattr(self.donor, "phone", None),
            "blood_group": self.donor.blood_group,
            "role": DonorRole.parse(getattr(self.donor, "role", None)).value,
            "distance_km": self.distance_km,
            "eta": format_eta(self.eta_minutes) if self.eta_minutes is not None else None,
            "last_donation_date": _fmt(self.last_donation_date),
            "next_eligible_date": _fmt(self.next_eligible_date),
            "is_eligible": self.is_eligible,
            "score": self.score,
        }


def distance_penalty(distance_km) -> int:
    for threshold, penalty in DISTANCE_BANDS:
        if distance_km > threshold:
            return penalty
    return 0


def role_bonus(role) -> int:
    return ROLE_BONUS.get(DonorRole.parse(role), 0)


def history_bonus(donation_count) -> int:
    for threshold, bonus in HISTORY_BONUS:
        if donation_count > threshold:
            return bonus
    return 0


def _coords(obj, missing_location):
    """(lat, lon) of obj, or None when a coordinate is missing and the policy
    does not fall back to 0 for it."""
    lat = getattr(obj, "latitude", None)
    lon = getattr(obj, "longitude", None)
    if lat is not None and lon is not None:
        return lat, lon
    if MissingLocation(missing_location) is not MissingLocation.ORIGIN:
        return None
    return (lat if lat is not None else 0.0), (lon if lon is not None else 0.0)


def _distance_to(request, donor, missing_location):
    """Return the distance in km, or None when it cannot be known under policy."""
    origin = _coords(request, missing_location)
    target = _coords(donor, missing_location)
    if origin is None or target is None:
        return None
    return haversine_distance(origin[0], origin[1], target[0], target[1])


def round_km(distance_km) -> float:
    # .x5 rounds up
    return math.floor(distance_km * 10 + 0.5) / 10


def score_donor(request, donor, history, mode=CompatibilityMode.EXACT,
                missing_location=MissingLocation.ORIGIN, now=None) -> Optional[MatchResult]:
    """Score a single donor against a request, or return None if the donor
    cannot be offered (inactive, blood group mismatch, or ineligible)."""
    if getattr(donor, "is_active", True) is False:
        log.debug("donor %s skipped: inactive", donor.id)
        return None
    if not blood_matches(donor.blood_group, request.blood_group, mode):
        log.debug("donor %s skipped: %s does not match %s",
                  donor.id, donor.blood_group, request.blood_group)
        return None

    last = most_recent_donation(history)
    if not is_eligible(donor, last, now):
        log.debug("donor %s skipped: not eligible", donor.id)
        return None

    distance = _distance_to(request, donor, missing_location)
    score = BASE_SCORE
    if distance is not None:
        score -= distance_penalty(distance)
    elif MissingLocation(missing_location) is MissingLocation.MAX_PENALTY:
        score -= MAX_DISTANCE_PENALTY
    score += role_bonus(getattr(donor, "role", None))
    score += history_bonus(len(history))
    score = max(0, min(BASE_SCORE, score))

    return MatchResult(
        donor=donor,
        distance_km=round_km(distance) if distance is not None else None,
        last_donation_date=last.donation_date if last else NEVER_DONATED,
        next_eligible_date=(last.next_eligible_date or AVAILABLE_NOW) if last else AVAILABLE_NOW,
        is_eligible=True,
        score=score,
        eta_minutes=estimate_eta_minutes(distance) if distance is not None else None,
    )


def rank_donors(request, donors, donations, mode=CompatibilityMode.EXACT,
                missing_location=MissingLocation.ORIGIN, now=None, limit=None) -> List[MatchResult]:
    """Rank eligible donors for an emergency request, best match first.

    Donors of the wrong blood group, inactive donors and donors still inside
    their cooldown are left out of the result rather than scored as zero.
    Equal scores keep their roster order. Neither ``donors`` nor
    ``donations`` is modified.
    """
    if limit is not None and limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")
    now = now or datetime.now()
    donors = list(donors)
    history = defaultdict(list)
    for d in donations:
        history[d.donor_id].append(d)

    matches = []
    for donor in donors:
        match = score_donor(request, donor, history.get(donor.id, []), mode, missing_location, now)
        if match is not None:
            matches.append(match)

    matches.sort(key=lambda m: m.score, reverse=True)
    log.info("ranked %d of %d donors for %s request", len(matches), len(donors),
             request.blood_group)
    if limit is not None:
        return matches[:limit]
    return matches
