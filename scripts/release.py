"""
Release phase: migrate the POS schema to head, then seed roles, the admin account,
the default branch and the receipt counter.

Refuses to run without DATABASE_URL, and refuses SQLite when ENV is production.

Usage:
  python scripts/release.py            # migrate + seed
  python scripts/release.py --no-seed  # migrate only
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def database_url_or_die() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release a production store onto SQLite. Point DATABASE_URL at Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    # ConfigParser interpolation treats % specially; passwords may contain it.
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def run_release(*, seed: bool = True) -> None:
    db_url = database_url_or_die()
    print("[release] upgrading schema to head", flush=True)
    migrate(db_url)
    if seed:
        from scripts import init_db

        print("[release] seeding roles, admin, branch, receipt counter", flush=True)
        init_db.seed_only(database_url=db_url)
    print("[release] done", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the store database.")
    parser.add_argument("--no-seed", action="store_true", help="run migrations only")
    args = parser.parse_args(argv)
    run_release(seed=not args.no_seed)


if __name__ == "__main__":
    main()
