#!/usr/bin/env python3
"""Change a user's role (idempotent).

Usage:
  python scripts/promote_user.py --email maria@empresa.com.br --role gestora
"""

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ombro.constants import ROLES
from app.ombro.models import User
from scripts._db_utils import script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, choices=ROLES, help="New role")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///ombro.db").strip()
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email.ilike(args.email)).one_or_none()
        if not user:
            print(f"User not found: {args.email}")
            return
        if user.role == args.role:
            print(f"User already has role {args.role}: {args.email}")
            return
        user.role = args.role
        user.updated_at = datetime.utcnow()
    print(f"Role {args.role} set for {args.email}")


if __name__ == "__main__":
    main()
