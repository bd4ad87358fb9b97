"""
List mapped tables that carry no organization_id column and are not on the
global allow-list. Exits 1 when any are found, so it can gate CI.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from fieldops.db import Base
from fieldops.models import models  # noqa: F401  registers every table
from fieldops.services.tenancy import find_unscoped_tables


def main() -> int:
    missing = find_unscoped_tables(Base.metadata)
    if not missing:
        print(f"OK: {len(Base.metadata.tables)} tables checked, all tenant scoped")
        return 0
    print("Tables without organization_id:")
    for name in missing:
        print(f"  - {name}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
