"""
Create the default roles (owner, admin, dispatcher, driver, customer) with
their permission maps. Roles that already exist are left untouched.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
from dotenv import load_dotenv
load_dotenv()

from fieldops.db import SessionLocal
from fieldops.auth.security import seed_default_roles


def main() -> int:
    db = SessionLocal()
    try:
        created = seed_default_roles(db)
        db.commit()
        print(f"Roles created: {created}")
        return 0
    except Exception as e:
        db.rollback()
        print(f"ERROR: Could not seed roles: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
