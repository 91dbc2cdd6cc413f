# tracking.py
"""
Live donor positions.

Callers hand in a snapshot of location fixes (rows from DonorLocation, or
LocationFix tuples); nothing here keeps state between calls. A fix older
than LOCATION_MAX_AGE is stale and never overrides a donor's registered
coordinates.
"""
from collections import namedtuple
from datetime import timedelta

LOCATION_MAX_AGE = timedelta(minutes=5)

LocationFix = namedtuple("LocationFix", "donor_id latitude longitude recorded_at")


def is_stale(fix, now, max_age=LOCATION_MAX_AGE):
    return fix.recorded_at <= now - max_age


def fresh_fixes(fixes, now, max_age=LOCATION_MAX_AGE):
    """Latest non-stale fix per donor id."""
    latest = {}
    for fix in fixes:
        if is_stale(fix, now, max_age):
            continue
        current = latest.get(fix.donor_id)
        if current is None or fix.recorded_at > current.recorded_at:
            latest[fix.donor_id] = fix
    return latest


class LiveDonor:
    """Read-only view of a donor with its coordinates taken from a live fix."""

    def __init__(self, donor, fix):
        self._donor = donor
        self.latitude = fix.latitude
        self.longitude = fix.longitude
        self.location_recorded_at = fix.recorded_at

    def __getattr__(self, name):
        if name == "_donor":
            raise AttributeError(name)
        return getattr(self._donor, name)

    def __repr__(self):
        return f"<LiveDonor {self._donor!r} @ {self.latitude},{self.longitude}>"


def with_live_locations(donors, fixes, now, max_age=LOCATION_MAX_AGE):
    latest = fresh_fixes(fixes, now, max_age)
    out = []
    for donor in donors:
        fix = latest.get(donor.id)
        out.append(LiveDonor(donor, fix) if fix else donor)
    return out
