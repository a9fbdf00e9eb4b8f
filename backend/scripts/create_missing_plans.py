"""CLI script to create this year's plan for master's students missing one.
Usage: python scripts/create_missing_plans.py [--email STUDENT_EMAIL]
"""
import sys
import argparse
import pathlib
from typing import Optional
# Ensure `backend/` is on sys.path so `iup_tracker` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from iup_tracker.database import create_db_and_tables, engine
from iup_tracker import models, repositories, services
from iup_tracker.errors import DomainError


def fix_student(session: Session, email: str) -> int:
    """Create or report the plan of a single student; returns an exit code."""
    student = repositories.UserRepository(session).get_by_email(email)
    if student is None:
        print(f'No user with email {email}')
        return 1
    if student.role != models.PLAN_BEARING_ROLE:
        print(f'{student.full_name} has role {student.role.value}; only master\'s students have plans')
        return 1
    try:
        plan = services.PlanService(session).get_or_create_for_student(student)
    except DomainError as exc:
        print(f'{student.full_name}: {exc.message}')
        return 1
    print(f'{student.full_name}: plan {plan.id} for {plan.year}, status {plan.overall_status.value}')
    return 0


def main(email: Optional[str] = None) -> int:
    """Backfill plans for everyone, or for one student when `email` is given."""
    create_db_and_tables()
    with Session(engine) as session:
        if email:
            return fix_student(session, email)
        result = services.PlanService(session).create_missing_plans()
    print(f"Created {result['created']}, already present {result['existing']}, failed {result['failed']}")
    for student in result['without_supervisor']:
        print(f"No supervisor: {student['name']} <{student['email']}>")
    return 1 if result['failed'] else 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--email', help='Only fix the plan of the student with this email')
    args = parser.parse_args()
    sys.exit(main(email=args.email))
