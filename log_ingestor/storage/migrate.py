"""
storage/migrate.py
==================
Versioned schema migrations for `ingestion_jobs` and `logs`.

Files in storage/migrations/ are named V{N}__{words_with_underscores}.sql
and applied in ascending N. Each applied version is recorded in
`schema_migrations` inside the same transaction as its DDL, so a failed
migration leaves neither the schema change nor the bookkeeping row behind.

    log-ingestor-migrate              apply everything pending
    log-ingestor-migrate --dry-run    list what would run
    log-ingestor-migrate --status     applied / pending table

Run it once before the first `watch` or `process-files`: discovery relies on
the (key, bucket) unique constraint created by V1.
"""

import argparse
import logging
import os
import re
import sys
from dataclasses import dataclass

import psycopg2

from config.settings import load_settings
from storage.db import CONNECT_RETRY

logger = logging.getLogger("migrate")

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "migrations")

_NAME_PATTERN = re.compile(r"^V(?P<number>\d+)__(?P<slug>\w+)\.sql$")

CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version     TEXT PRIMARY KEY,
        description TEXT,
        applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""

RECORD_SQL = "INSERT INTO schema_migrations (version, description) VALUES (%s, %s)"


@dataclass(frozen=True)
class Migration:
    number: int
    description: str
    path: str

    @property
    def version(self) -> str:
        return f"V{self.number}"

    def read_sql(self) -> str:
        with open(self.path, encoding="utf-8") as f:
            return f.read()


def discover_migrations(migrations_dir: str = MIGRATIONS_DIR) -> list[Migration]:
    """Migrations found in `migrations_dir`, lowest number first."""
    found = []
    for name in os.listdir(migrations_dir):
        if not name.endswith(".sql"):
            continue
        match = _NAME_PATTERN.match(name)
        if match is None:
            logger.warning("Ignoring %s: not named V{N}__description.sql", name)
            continue
        found.append(Migration(
            number=int(match["number"]),
            description=match["slug"].replace("_", " "),
            path=os.path.join(migrations_dir, name),
        ))
    found.sort(key=lambda m: m.number)
    return found


def _applied_versions(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(CREATE_HISTORY_SQL)
        cur.execute("SELECT version FROM schema_migrations")
        applied = {row[0] for row in cur.fetchall()}
    conn.commit()
    return applied


def _apply(conn, migration: Migration) -> None:
    logger.info("Applying %s (%s)", migration.version, migration.description)
    try:
        with conn.cursor() as cur:
            cur.execute(migration.read_sql())
            cur.execute(RECORD_SQL, (migration.version, migration.description))
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("%s failed and was rolled back.", migration.version)
        raise


def run_migrations(dsn: str, dry_run: bool = False) -> int:
    """
    Apply pending migrations and return how many there were. With `dry_run`
    nothing is executed; the pending count is still returned.
    """
    conn = CONNECT_RETRY.call(lambda: psycopg2.connect(dsn), description="Postgres connection")
    try:
        applied = _applied_versions(conn)
        pending = [m for m in discover_migrations() if m.version not in applied]

        if not pending:
            logger.info("Schema is up to date.")
            return 0
        logger.info("%d pending migration(s): %s", len(pending),
                    ", ".join(m.version for m in pending))
        if dry_run:
            return len(pending)

        for migration in pending:
            _apply(conn, migration)
        logger.info("Applied %d migration(s).", len(pending))
        return len(pending)
    finally:
        conn.close()


def show_status(dsn: str) -> None:
    conn = CONNECT_RETRY.call(lambda: psycopg2.connect(dsn), description="Postgres connection")
    try:
        applied = _applied_versions(conn)
    finally:
        conn.close()

    for migration in discover_migrations():
        state = "applied" if migration.version in applied else "pending"
        print(f"{migration.version:<6} {state:<8} {migration.description}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="log-ingestor-migrate",
                                     description="Apply schema migrations")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="List pending migrations only")
    mode.add_argument("--status", action="store_true", help="Show applied and pending migrations")
    args = parser.parse_args(argv)

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        stream=sys.stdout,
    )

    try:
        if args.status:
            show_status(settings.dsn)
        else:
            run_migrations(settings.dsn, dry_run=args.dry_run)
    except Exception:
        logger.exception("Migration run failed.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
