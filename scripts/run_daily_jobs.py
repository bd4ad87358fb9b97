"""
Daily maintenance run for every organization:
  - driver credential expiration reminders
  - overdue invoice flags and expired quotes
  - scheduled marketing campaigns that are due

Meant for cron, e.g. `python scripts/run_daily_jobs.py --only expirations`.
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from fieldops.db import SessionLocal
from fieldops.logging import setup_logging
from fieldops.models.models import Organization
from fieldops.services.billing import expire_quotes, update_overdue_invoices
from fieldops.services.compliance import check_driver_expirations
from fieldops.services.marketing import run_scheduled_campaigns

TASKS = ("expirations", "overdue", "campaigns")


def run(only=None) -> int:
    db = SessionLocal()
    try:
        if only in (None, "expirations"):
            result = check_driver_expirations(db)
            db.commit()
            print(f"Expirations: {result['checked']} checked, {result['notifications']} notifications")
        if only in (None, "overdue"):
            updated = 0
            expired = 0
            for org in db.query(Organization).filter(Organization.is_active.is_(True)).all():
                updated += update_overdue_invoices(db, org.id)
                expired += expire_quotes(db, org.id)
            db.commit()
            print(f"Overdue invoices flagged: {updated}, quotes expired: {expired}")
        if only in (None, "campaigns"):
            sent = run_scheduled_campaigns(db)
            db.commit()
            print(f"Scheduled campaigns sent: {len(sent)}")
        return 0
    except Exception as e:
        db.rollback()
        print(f"ERROR: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--only", choices=TASKS)
    args = parser.parse_args()
    setup_logging()
    sys.exit(run(args.only))
