from __future__ import annotations

import argparse
import getpass
import os
import pathlib
import sys

from sqlalchemy import select

_HERE = pathlib.Path(__file__).resolve()
_BACKEND_ROOT = _HERE.parents[1]
sys.path.insert(0, str(_BACKEND_ROOT))
sys.path.insert(0, "/app")
sys.path.insert(0, os.getcwd())

from coursebot.core.security import hash_password
from coursebot.db.session import SessionLocal
from coursebot.models.user import ConsoleOperator


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or reset a console operator")
    parser.add_argument("login")
    parser.add_argument("--password", default=os.getenv("OPERATOR_PASSWORD"))
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        raise SystemExit("password must be at least 8 characters")

    db = SessionLocal()
    try:
        operator = db.scalar(select(ConsoleOperator).where(ConsoleOperator.login == args.login))
        if operator is None:
            operator = ConsoleOperator(login=args.login, password_hash=hash_password(password))
            db.add(operator)
            action = "created"
        else:
            operator.password_hash = hash_password(password)
            action = "password reset"
        db.commit()
        print(f"operator {args.login}: {action}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
