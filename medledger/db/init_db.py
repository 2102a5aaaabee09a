# medledger/db/init_db.py
import argparse

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from medledger.db.base import Base
from medledger.db.session import engine as default_engine


def print_tables(eng: Engine) -> None:
    names = sorted(inspect(eng).get_table_names())
    print(f"{len(names)} tables:")
    for n in names:
        print(f"  - {n}")


def run(fresh: bool = False, eng: Engine | None = None) -> None:
    eng = eng or default_engine
    if fresh:
        print("WARNING: Dropping ALL tables (dev only) …")
        Base.metadata.drop_all(bind=eng)

    print("Creating all missing tables …")
    Base.metadata.create_all(bind=eng)
    print_tables(eng)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create billing / stock tables.")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
