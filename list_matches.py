# list_matches.py
import sys

from app import create_app, rank_for_request
from models import EmergencyRequest, db


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1 or not argv[0].isdigit():
        print("usage: python list_matches.py <request_id>")
        return 2

    app = create_app()
    with app.app_context():
        br = db.session.get(EmergencyRequest, int(argv[0]))
        if not br:
            print(f"Request not found: {argv[0]}")
            return 1

        print(f"Request {br.id}: {br.blood_group} for {br.patient_name} ({br.urgency})")
        ranked = rank_for_request(br)
        if not ranked:
            print("No eligible donors.")
        for m in ranked:
            dist = "?" if m.distance_km is None else f"{m.distance_km} km"
            print(m.donor_id, m.donor.name, m.score, dist, m.last_donation_date)
    return 0


if __name__ == "__main__":
    sys.exit(main())
