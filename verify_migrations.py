#!/usr/bin/env python3
"""Apply every migration, in directory order, to a fresh throwaway database.

The test database is created on the shadow server. Scripts run through psql
with ON_ERROR_STOP so the first failing statement aborts the run.

Usage:
    python verify_migrations.py [--config migrations.yaml] [--migrations-dir DIR] [--keep-database]
"""

import argparse
import re
import sys
import urllib.parse
from pathlib import Path

from generate_migration import MIGRATION_SQL, list_units
from migration_config import MigrationError, load_config, log, require_env, run_command


DATABASE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class VerificationError(MigrationError):
    pass


def database_url(server_url: str, database: str) -> str:
    """Point ``server_url`` at another database on the same server."""
    parts = urllib.parse.urlsplit(server_url)
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, f"/{database}", parts.query, parts.fragment))


def migration_scripts(migrations_dir: Path) -> list[Path]:
    scripts = [unit.sql_path for unit in list_units(migrations_dir) if unit.sql_path.is_file()]
    if not scripts:
        raise VerificationError(f"No {MIGRATION_SQL} files found under {migrations_dir}")
    return scripts


def psql_command(url: str, sql: str) -> None:
    run_command(["psql", url, "-v", "ON_ERROR_STOP=1", "-c", sql], VerificationError)


def recreate_database(server_url: str, database: str) -> str:
    if not DATABASE_NAME_RE.match(database):
        raise VerificationError(f"Invalid test database name: {database!r}")
    print(f"Creating test database {database}")
    psql_command(server_url, f'DROP DATABASE IF EXISTS "{database}";')
    psql_command(server_url, f'CREATE DATABASE "{database}";')
    return database_url(server_url, database)


def drop_database(server_url: str, database: str) -> None:
    try:
        psql_command(server_url, f'DROP DATABASE IF EXISTS "{database}";')
    except VerificationError as exc:
        log("verify", f"warning: could not drop {database}: {exc}")


def apply_migrations(test_url: str, scripts: list[Path]) -> None:
    for script in scripts:
        print(f"Applying migration: {script}")
        run_command(["psql", test_url, "-v", "ON_ERROR_STOP=1", "-f", str(script)], VerificationError)


def verify(config: dict, keep_database: bool = False) -> list[Path]:
    migrations_dir = Path(config["migrations_dir"])
    database = config.get("verify", {}).get("test_database", "migration_test")
    server_url = require_env(config, "shadow_database_url")

    scripts = migration_scripts(migrations_dir)
    test_url = recreate_database(server_url, database)
    try:
        apply_migrations(test_url, scripts)
    finally:
        if not keep_database:
            drop_database(server_url, database)

    print(f"Verified {len(scripts)} migration(s)")
    return scripts


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify migrations apply cleanly to an empty database")
    parser.add_argument("--config", default=None, help="YAML config (default: migrations.yaml if present)")
    parser.add_argument("--migrations-dir", default=None, help="Migrations directory")
    parser.add_argument("--keep-database", action="store_true", help="Do not drop the test database afterwards")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
        if args.migrations_dir:
            config["migrations_dir"] = args.migrations_dir
        verify(config, keep_database=args.keep_database)
    except MigrationError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
