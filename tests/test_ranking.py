from datetime import date

import pytest

from conftest import HOSPITAL
from matching import (AVAILABLE_NOW, NEVER_DONATED, CompatibilityMode, MissingLocation,
                      distance_penalty, haversine_distance, history_bonus, rank_donors,
                      role_bonus, round_km)

KM_PER_DEGREE = 111.19


def north(km):
    """Coordinates `km` kilometres due north of the hospital."""
    return {"latitude": HOSPITAL[0] + km / KM_PER_DEGREE, "longitude": HOSPITAL[1]}


def test_fighter_with_long_history_is_clamped_to_100(make_donor, make_donation, emergency, now):
    donor = make_donor(role="Fighter", **north(5))
    history = [make_donation(donor, 100)] + [make_donation(donor, 200 + i * 60) for i in range(5)]

    [match] = rank_donors(emergency("O+"), [donor], history, now=now)

    assert match.donor is donor
    assert match.score == 100
    assert match.distance_km == pytest.approx(5.0, abs=0.1)
    assert match.is_eligible is True
    assert match.last_donation_date == history[0].donation_date


def test_donor_inside_cooldown_is_excluded(make_donor, make_donation, emergency, now):
    donor = make_donor(role="Fighter", **north(5))
    history = [make_donation(donor, 30)] + [make_donation(donor, 200 + i * 60) for i in range(5)]
    assert rank_donors(emergency("O+"), [donor], history, now=now) == []


def test_other_blood_group_is_excluded(make_donor, emergency, now):
    donor = make_donor(blood_group="A+", role="Emergency Donor")
    assert rank_donors(emergency("O+"), [donor], [], now=now) == []


def test_empty_pool(emergency, now):
    assert rank_donors(emergency("O+"), [], [], now=now) == []


def test_inactive_and_underage_donors_are_excluded(make_donor, emergency, now):
    inactive = make_donor(is_active=False)
    minor = make_donor(date_of_birth=date(2010, 1, 1))
    senior = make_donor(date_of_birth=date(1950, 1, 1))
    ok = make_donor()
    ranked = rank_donors(emergency(), [inactive, minor, senior, ok], [], now=now)
    assert [m.donor for m in ranked] == [ok]


@pytest.mark.parametrize("km, expected", [(3, 100), (12, 90), (30, 80), (60, 70)])
def test_distance_bands(make_donor, emergency, now, km, expected):
    [match] = rank_donors(emergency(), [make_donor(**north(km))], [], now=now)
    assert match.score == expected


def test_band_edges():
    assert distance_penalty(10) == 0
    assert distance_penalty(10.01) == 10
    assert distance_penalty(25) == 10
    assert distance_penalty(50) == 20
    assert distance_penalty(50.01) == 30
    assert distance_penalty(20000) == 30


def test_role_and_history_bonuses():
    assert role_bonus("Emergency Donor") == 10
    assert role_bonus("EMERGENCY_DONOR") == 10
    assert role_bonus("Fighter") == 5
    assert role_bonus("Bridge Donor") == 0
    assert role_bonus("astronaut") == 0
    assert role_bonus(None) == 0
    assert [history_bonus(n) for n in range(8)] == [0, 0, 0, 5, 5, 5, 10, 10]


def test_history_counts_every_record(make_donor, make_donation, emergency, now):
    donor = make_donor(**north(60))
    history = [make_donation(donor, 100 + i * 90) for i in range(3)]
    [match] = rank_donors(emergency(), [donor], history, now=now)
    assert match.score == 100 - 30 + 5


def test_ordering_is_descending_and_stable(make_donor, emergency, now):
    far = make_donor(name="far", **north(60))
    tie_a = make_donor(name="tie_a", **north(12))
    best = make_donor(name="best", role="Emergency Donor")
    tie_b = make_donor(name="tie_b", **north(20))

    ranked = rank_donors(emergency(), [far, tie_a, best, tie_b], [], now=now)

    assert [m.donor.name for m in ranked] == ["best", "tie_a", "tie_b", "far"]
    scores = [m.score for m in ranked]
    assert scores == sorted(scores, reverse=True)


def test_limit_truncates_after_sorting(make_donor, emergency, now):
    donors = [make_donor(name=str(km), **north(km)) for km in (60, 30, 3)]
    ranked = rank_donors(emergency(), donors, [], now=now, limit=2)
    assert [m.donor.name for m in ranked] == ["3", "30"]


def test_first_time_donor_sentinels(make_donor, emergency, now):
    [match] = rank_donors(emergency(), [make_donor()], [], now=now)
    assert match.last_donation_date == NEVER_DONATED
    assert match.next_eligible_date == AVAILABLE_NOW


def test_next_eligible_date_is_carried(make_donor, make_donation, emergency, now):
    donor = make_donor()
    last = make_donation(donor, 100, next_eligible_date=now)
    [match] = rank_donors(emergency(), [donor], [last, make_donation(donor, 400)], now=now)
    assert match.next_eligible_date == now


def test_history_of_other_donors_is_ignored(make_donor, make_donation, emergency, now):
    rested = make_donor()
    busy = make_donor()
    ranked = rank_donors(emergency(), [rested, busy], [make_donation(busy, 10)], now=now)
    assert [m.donor for m in ranked] == [rested]


class TestMissingLocation:

    def test_origin_policy_measures_from_zero_zero(self, make_donor, emergency, now):
        donor = make_donor(latitude=None, longitude=None)
        [match] = rank_donors(emergency(), [donor], [], now=now)
        assert match.distance_km > 8000
        assert match.score == 70

    def test_max_penalty_policy(self, make_donor, emergency, now):
        donor = make_donor(latitude=None, longitude=None)
        [match] = rank_donors(emergency(), [donor], [], now=now,
                              missing_location=MissingLocation.MAX_PENALTY)
        assert match.distance_km is None
        assert match.eta_minutes is None
        assert match.score == 70

    def test_no_penalty_policy(self, make_donor, emergency, now):
        donor = make_donor(latitude=None, longitude=None)
        [match] = rank_donors(emergency(), [donor], [], now=now, missing_location="no_penalty")
        assert match.distance_km is None
        assert match.score == 100

    def test_request_without_location(self, make_donor, emergency, now):
        donor = make_donor(latitude=0.0, longitude=0.0)
        [match] = rank_donors(emergency(latitude=None, longitude=None), [donor], [], now=now)
        assert match.distance_km == 0


def test_transfusion_mode_admits_compatible_groups(make_donor, emergency, now):
    universal = make_donor(blood_group="O-")
    same = make_donor(blood_group="AB+")
    wrong = make_donor(blood_group="B+")
    request = emergency("A+")

    assert rank_donors(request, [universal, same, wrong], [], now=now) == []
    ranked = rank_donors(request, [universal, same, wrong], [], now=now,
                         mode=CompatibilityMode.TRANSFUSION)
    assert [m.donor for m in ranked] == [universal]


def test_inputs_are_not_mutated(make_donor, make_donation, emergency, now):
    donors = [make_donor(**north(km)) for km in (60, 3)] + [make_donor(latitude=None, longitude=None)]
    donations = [make_donation(donors[0], 100), make_donation(donors[1], 400)]
    donors_before, donations_before = list(donors), list(donations)

    rank_donors(emergency(), donors, donations, now=now)

    assert donors == donors_before
    assert donations == donations_before
    assert donors[2].latitude is None


def test_generator_input(make_donor, emergency, now):
    ranked = rank_donors(emergency(), (make_donor() for _ in range(3)), iter([]), now=now)
    assert len(ranked) == 3


def test_match_to_dict(make_donor, make_donation, emergency, now):
    donor = make_donor(name="Priya", role="Emergency Donor", **north(5))
    last = make_donation(donor, 120, next_eligible_date=now)
    [match] = rank_donors(emergency(), [donor], [last], now=now)

    out = match.to_dict()
    assert out["donor_id"] == donor.id
    assert out["name"] == "Priya"
    assert out["role"] == "Emergency Donor"
    assert out["score"] == 100
    assert out["eta"] == "10 minutes"
    assert out["last_donation_date"] == last.donation_date.isoformat()
    assert out["next_eligible_date"] == now.isoformat()


def test_single_missing_coordinate_defaults_on_its_own(make_donor, emergency, now):
    donor = make_donor(latitude=HOSPITAL[0], longitude=None)
    [match] = rank_donors(emergency(), [donor], [], now=now)
    expected = haversine_distance(HOSPITAL[0], HOSPITAL[1], HOSPITAL[0], 0.0)
    assert match.distance_km == round_km(expected)
    assert match.distance_km == pytest.approx(8368.8, abs=0.1)

    [unknown] = rank_donors(emergency(), [donor], [], now=now, missing_location="no_penalty")
    assert unknown.distance_km is None


def test_distance_rounds_half_up():
    assert round_km(0.25) == 0.3
    assert round_km(12.34) == pytest.approx(12.3)
    assert round_km(0) == 0


def test_negative_limit_is_rejected(make_donor, emergency, now):
    donors = [make_donor() for _ in range(3)]
    with pytest.raises(ValueError):
        rank_donors(emergency(), donors, [], now=now, limit=-1)
    assert rank_donors(emergency(), donors, [], now=now, limit=0) == []
