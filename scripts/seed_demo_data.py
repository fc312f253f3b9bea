#!/usr/bin/env python3
"""
CaseBridge — Demo Data Seed Script.

Creates three institutions, a handful of learners and one transfer in each
workflow stage so the API has something to show in local development.

Usage:
    python scripts/seed_demo_data.py
    python scripts/seed_demo_data.py --append
    python scripts/seed_demo_data.py --verbose
"""

import argparse
import sys
from datetime import date, timedelta

sys.path.insert(0, ".")

from casebridge import create_app
from casebridge.core.identity import ROLE_SUPER_ADMIN, IdentityContext
from casebridge.models import db
from casebridge.models.institution import Institution
from casebridge.models.learner import Learner
from casebridge.models.transfer import COMPLETION_CHECKLIST_ITEMS, Transfer
from casebridge.services import transfer_service

INSTITUTIONS = [
    {"name": "Riverside Primary School", "institution_type": "school", "email": "office@riverside.example.org"},
    {"name": "Harbour Tutor Centre", "institution_type": "tutor_centre", "email": "hello@harbour.example.org"},
    {"name": "Hilltop Secondary School", "institution_type": "school", "email": "admin@hilltop.example.org"},
]

LEARNERS = [
    ("CB-0001", "Noah", "Patel"),
    ("CB-0002", "Mia", "Okafor"),
    ("CB-0003", "Leo", "Fischer"),
    ("CB-0004", "Ava", "Nakamura"),
]

SEED_ADMIN = IdentityContext(user_id="seed-script", institution_id=None, role=ROLE_SUPER_ADMIN)


def _seed_institutions(verbose):
    print("\n🏫 Seeding institutions...")
    result = []
    for data in INSTITUTIONS:
        inst = Institution.query.filter_by(email=data["email"]).first()
        if inst:
            print(f"   ⏩ Institution '{inst.name}' already exists (id={inst.id})")
        else:
            inst = Institution(**data)
            db.session.add(inst)
            db.session.flush()
            print(f"   ✅ Institution '{inst.name}' created (id={inst.id})")
        result.append(inst)
    db.session.commit()
    return result


def _seed_learners(home, verbose):
    print("\n🧒 Seeding learners...")
    result = []
    for case_number, first, last in LEARNERS:
        learner = Learner.query.filter_by(case_number=case_number).first()
        if learner:
            print(f"   ⏩ Learner {case_number} already exists")
        else:
            learner = Learner(
                case_number=case_number,
                first_name=first,
                last_name=last,
                current_institution_id=home.id,
                enrollment_date=date(2024, 9, 1),
            )
            db.session.add(learner)
            if verbose:
                print(f"   ✅ Learner {case_number} {first} {last}")
        result.append(learner)
    db.session.commit()
    return result


def _seed_transfers(learners, institutions, verbose):
    print("\n🔁 Seeding transfers...")
    _, harbour, hilltop = institutions
    proposed = (date.today() + timedelta(days=21)).isoformat()

    def _create(learner, target):
        return transfer_service.create_transfer(SEED_ADMIN, {
            "learner_id": learner.id,
            "to_institution_id": target.id,
            "reason": "specialized_support_needed",
            "reason_details": "Demo transfer",
            "proposed_transfer_date": proposed,
        })

    pending = _create(learners[0], harbour)
    approved = _create(learners[1], harbour)
    transfer_service.review_transfer(SEED_ADMIN, approved["id"], {"status": "approved"})
    completed = _create(learners[2], hilltop)
    transfer_service.review_transfer(SEED_ADMIN, completed["id"], {"status": "approved"})
    transfer_service.acknowledge_transfer(SEED_ADMIN, completed["id"], {"notes": "Demo acknowledgment"})
    transfer_service.complete_transfer(SEED_ADMIN, completed["id"], {
        "completion_checklist": {item: True for item in COMPLETION_CHECKLIST_ITEMS},
    })

    for label, t in (("pending", pending), ("approved", approved), ("completed", completed)):
        print(f"   ✅ {t['transfer_number']} ({label})")
    return 3


def seed_all(app, append=False, verbose=False):
    with app.app_context():
        if not append:
            print("🗑️  Clearing existing data...")
            db.drop_all()
            db.create_all()

        institutions = _seed_institutions(verbose)
        learners = _seed_learners(institutions[0], verbose)
        if append and Transfer.query.count():
            print("\n⏩ Transfers already exist, skipping transfer seed")
            count = 0
        else:
            count = _seed_transfers(learners, institutions, verbose)

        print(f"\n{'='*60}")
        print(f"🎉 DEMO DATA SEED COMPLETE — {len(institutions)} institutions, "
              f"{len(learners)} learners, {count} transfers")
        print(f"{'='*60}\n")


def main():
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--append", action="store_true")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    app = create_app()
    print(f"🎯 DB: {app.config['SQLALCHEMY_DATABASE_URI']}\n")
    seed_all(app, append=args.append, verbose=args.verbose)


if __name__ == "__main__":
    main()
