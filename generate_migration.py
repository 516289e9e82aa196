#!/usr/bin/env python3
"""Generate the next Prisma migration unit from schema.prisma.

With no existing units a baseline (``<version>_initial``) is diffed from an
empty database. Otherwise the existing units are replayed from a scratch copy
and the delta to the current schema becomes ``<version>_schema_update``; an
empty delta is a successful no-op.

Usage:
    python generate_migration.py [--config migrations.yaml] [--schema PATH] [--migrations-dir DIR]
"""

from __future__ import annotations

import argparse
import dataclasses
import os
import re
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from migration_config import MigrationError, load_config, log, require_env, run_command


VERSION_FORMAT = "%Y%m%d%H%M%S"
UNIT_DIR_RE = re.compile(r"^(\d{14})_(\w+)$")
SQL_FIRST_LINE_RE = re.compile(r"^(--|CREATE|ALTER)")
BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", flags=re.S)
LOCK_FILE = "migration_lock.toml"
MIGRATION_SQL = "migration.sql"
RAW_MIGRATION_SQL = "raw_migration.sql"
README = "README.md"
INITIAL_SUFFIX = "initial"
UPDATE_SUFFIX = "schema_update"
MAX_VERSION_ATTEMPTS = 5


class GenerationError(MigrationError):
    pass


@dataclasses.dataclass
class MigrationUnit:
    path: Path
    version: str
    suffix: str

    @property
    def sql_path(self) -> Path:
        return self.path / MIGRATION_SQL

    @property
    def readme_path(self) -> Path:
        return self.path / README

    @property
    def generated_files(self) -> list[Path]:
        return [self.sql_path, self.readme_path]


@dataclasses.dataclass
class GenerationResult:
    kind: str
    unit: MigrationUnit | None = None

    @property
    def created(self) -> bool:
        return self.unit is not None


def list_units(migrations_dir: Path) -> list[MigrationUnit]:
    """Existing units in lexical (= version) order."""
    if not migrations_dir.is_dir():
        return []
    units: list[MigrationUnit] = []
    for path in sorted(p for p in migrations_dir.iterdir() if p.is_dir()):
        m = UNIT_DIR_RE.match(path.name)
        if not m:
            continue
        units.append(MigrationUnit(path=path, version=m.group(1), suffix=m.group(2)))
    return units


def write_lock_file(migrations_dir: Path, provider: str) -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    lock_path = migrations_dir / LOCK_FILE
    lock_path.write_text(f'provider = "{provider}"\n', encoding="utf-8")
    return lock_path


def sanitize_migration_sql(raw: str, noise_prefixes: list[str]) -> str:
    """Drop CLI banner lines (e.g. ``Installing ...``) from diff output."""
    prefixes = tuple(p for p in noise_prefixes if p)
    lines = raw.splitlines()
    if prefixes:
        lines = [line for line in lines if not line.startswith(prefixes)]
    text = "\n".join(lines)
    if not text.strip():
        return ""
    return text.rstrip() + "\n"


def first_nonblank_line(text: str) -> str | None:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


def is_sql_shaped(text: str) -> bool:
    first = first_nonblank_line(text)
    return first is not None and bool(SQL_FIRST_LINE_RE.match(first))


def has_statements(text: str) -> bool:
    # destructive diffs open with a /* Warnings: ... */ block
    for line in BLOCK_COMMENT_RE.sub("", text).splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("--"):
            return True
    return False


def format_version(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(VERSION_FORMAT)


def parse_version(version: str) -> datetime:
    try:
        moment = datetime.strptime(version, VERSION_FORMAT)
    except ValueError as exc:
        raise GenerationError(f"Invalid migration version {version!r}: expected {VERSION_FORMAT}") from exc
    return moment.replace(tzinfo=timezone.utc)


def next_version(existing: list[MigrationUnit], now: datetime) -> str:
    """Clock-derived version, bumped past the latest existing one if needed."""
    candidate = format_version(now)
    if existing:
        latest = max(unit.version for unit in existing)
        if candidate <= latest:
            candidate = format_version(parse_version(latest) + timedelta(seconds=1))
    return candidate


def create_unit_dir(
    migrations_dir: Path,
    suffix: str,
    existing: list[MigrationUnit],
    now: datetime,
) -> MigrationUnit:
    """Claim a fresh unit directory, stepping forward a second on collision."""
    version = next_version(existing, now)
    migrations_dir.mkdir(parents=True, exist_ok=True)
    for _ in range(MAX_VERSION_ATTEMPTS):
        path = migrations_dir / f"{version}_{suffix}"
        try:
            path.mkdir()
        except FileExistsError:
            log("generate", f"{path.name} already exists, trying next version")
            version = format_version(parse_version(version) + timedelta(seconds=1))
            continue
        return MigrationUnit(path=path, version=version, suffix=suffix)
    raise GenerationError(f"Could not allocate a migration version after {MAX_VERSION_ATTEMPTS} attempts")


def prisma_migrate_diff(from_args: list[str], schema: Path, shadow_url: str) -> str:
    cmd = [
        "prisma",
        "migrate",
        "diff",
        *from_args,
        "--to-schema-datamodel",
        str(schema),
        "--shadow-database-url",
        shadow_url,
        "--script",
    ]
    return run_command(cmd, GenerationError).stdout or ""


def format_readme_time(moment: datetime) -> str:
    """Same shape as `date -u`: the day of month is space-padded."""
    moment = moment.astimezone(timezone.utc)
    return f"{moment:%a %b} {moment.day:2d} {moment:%H:%M:%S} UTC {moment:%Y}"


def write_readme(unit: MigrationUnit, headline: str, now: datetime) -> None:
    stamp = format_readme_time(now)
    unit.readme_path.write_text(f"{headline} at {stamp}\n", encoding="utf-8")


def dump_content(title: str, content: str) -> None:
    print(title, file=sys.stderr)
    print(content, file=sys.stderr)


def generate_baseline(
    migrations_dir: Path,
    schema: Path,
    shadow_url: str,
    noise_prefixes: list[str],
    now: datetime,
) -> MigrationUnit:
    print("No existing migrations found, creating baseline...")
    unit = create_unit_dir(migrations_dir, INITIAL_SUFFIX, [], now)
    try:
        print("Generating initial migration...")
        raw = prisma_migrate_diff(["--from-empty"], schema, shadow_url)
        (unit.path / RAW_MIGRATION_SQL).write_text(raw, encoding="utf-8")

        cleaned = sanitize_migration_sql(raw, noise_prefixes)
        if not cleaned:
            dump_content("Original content was:", raw)
            raise GenerationError("Migration file is empty after cleaning")

        if not is_sql_shaped(cleaned):
            dump_content("First line is:", first_nonblank_line(cleaned) or "")
            dump_content("Full content is:", cleaned)
            raise GenerationError("Migration file does not start with SQL command or comment")

        unit.sql_path.write_text(cleaned, encoding="utf-8")
        write_readme(unit, "Initial migration generated", now)
    except MigrationError:
        shutil.rmtree(unit.path, ignore_errors=True)
        raise

    print(f"Generated {unit.sql_path}")
    return unit


def generate_incremental(
    migrations_dir: Path,
    existing: list[MigrationUnit],
    schema: Path,
    shadow_url: str,
    noise_prefixes: list[str],
    now: datetime,
) -> MigrationUnit | None:
    with tempfile.TemporaryDirectory(prefix="temp_migrations_") as td:
        scratch = Path(td) / "migrations"
        shutil.copytree(migrations_dir, scratch)
        print(f"Replaying {len(existing)} existing migration(s) from {scratch}")
        raw = prisma_migrate_diff(["--from-migrations", str(scratch)], schema, shadow_url)

    delta = sanitize_migration_sql(raw, noise_prefixes)
    if not has_statements(delta):
        print("No schema changes detected")
        return None

    print("Changes detected, creating new migration")
    unit = create_unit_dir(migrations_dir, UPDATE_SUFFIX, existing, now)
    unit.sql_path.write_text(delta, encoding="utf-8")
    write_readme(unit, "Migration generated", now)
    print(f"Generated {unit.sql_path}")
    return unit


def generate(config: dict, now: datetime | None = None) -> GenerationResult:
    now = now or datetime.now(timezone.utc)
    migrations_dir = Path(config["migrations_dir"])
    schema = Path(config["schema"])
    noise_prefixes = list(config.get("noise_prefixes") or [])

    if not schema.is_file():
        raise GenerationError(f"Schema file not found: {schema}")
    shadow_url = require_env(config, "shadow_database_url")

    write_lock_file(migrations_dir, config["provider"])
    existing = list_units(migrations_dir)

    if not existing:
        unit = generate_baseline(migrations_dir, schema, shadow_url, noise_prefixes, now)
        return GenerationResult(kind="baseline", unit=unit)

    unit = generate_incremental(migrations_dir, existing, schema, shadow_url, noise_prefixes, now)
    if unit is None:
        return GenerationResult(kind="noop")
    return GenerationResult(kind="incremental", unit=unit)


def write_github_output(result: GenerationResult) -> None:
    """Expose the outcome to later workflow steps when running in Actions."""
    output_path = os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        return
    lines = [f"created={'true' if result.created else 'false'}", f"kind={result.kind}"]
    if result.unit:
        lines.append(f"version={result.unit.version}")
        lines.append(f"unit={result.unit.path}")
    with open(output_path, "a", encoding="utf-8") as fh:
        fh.write("\n".join(lines) + "\n")


def apply_path_overrides(config: dict, args: argparse.Namespace) -> dict:
    if getattr(args, "schema", None):
        config["schema"] = args.schema
    if getattr(args, "migrations_dir", None):
        config["migrations_dir"] = args.migrations_dir
    return config


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate the next Prisma migration from schema.prisma")
    parser.add_argument("--config", default=None, help="YAML config (default: migrations.yaml if present)")
    parser.add_argument("--schema", default=None, help="Prisma schema file")
    parser.add_argument("--migrations-dir", default=None, help="Migrations directory")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = apply_path_overrides(load_config(args.config), args)
        result = generate(config)
    except MigrationError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    write_github_output(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
