"""CLI script to reconcile supervisor backlinks with supervisee links.
Usage: python scripts/repair_links.py
"""
import sys
import pathlib
# Ensure `backend/` is on sys.path so `iup_tracker` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from iup_tracker.database import create_db_and_tables, engine
from iup_tracker import services


def main():
    """Run the repair pass once and print its counters."""
    create_db_and_tables()
    with Session(engine) as session:
        result = services.RelationshipService(session).repair_links()
    print(f"Checked {result['checked']} links, repaired {result['repaired']}")


if __name__ == '__main__':
    main()
