"""Shared settings, errors and subprocess helpers for the migration scripts."""

from __future__ import annotations

import copy
import os
import subprocess
import sys
from pathlib import Path
from typing import Sequence

import yaml
from dotenv import load_dotenv


DEFAULT_CONFIG_PATH = "migrations.yaml"

DEFAULT_CONFIG: dict = {
    "schema": "schema.prisma",
    "migrations_dir": "deploy/migrations",
    "provider": "postgresql",
    "noise_prefixes": ["Installing"],
    "env": {
        "database_url": "DATABASE_URL",
        "direct_url": "DIRECT_URL",
        "shadow_database_url": "SHADOW_DATABASE_URL",
        "github_token": "GITHUB_TOKEN",
        "github_repository": "GITHUB_REPOSITORY",
    },
    "verify": {
        "test_database": "migration_test",
    },
    "publish": {
        "base": "main",
        "branch_prefix": "feat/prisma-migration-",
        "commit_message": "chore: update prisma migrations",
        "title": "Update Prisma Migrations",
        "body_header": "Auto-generated migration based on schema.prisma changes.",
        "git_user_name": "github-actions[bot]",
        "git_user_email": "41898282+github-actions[bot]@users.noreply.github.com",
        "api_url": "https://api.github.com",
    },
}


class MigrationError(RuntimeError):
    """Base for every fatal pipeline condition."""


class ConfigError(MigrationError):
    pass


def merge_config(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if key not in merged:
            continue
        if isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Read the YAML config over the defaults; a missing file means defaults.

    Also loads ``.env`` from the working directory without overriding
    variables the runner already exported.
    """
    load_dotenv(override=False)

    config_path = Path(path or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {config_path}")
    return merge_config(DEFAULT_CONFIG, raw)


def require_env(config: dict, key: str) -> str:
    name = config.get("env", {}).get(key, key.upper())
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"Environment variable {name} is required")
    return value


def run_command(
    cmd: Sequence[str],
    error_cls: type[MigrationError] = MigrationError,
) -> subprocess.CompletedProcess:
    """Run ``cmd`` capturing output; a non-zero exit raises ``error_cls``."""
    try:
        result = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"Command not found: {cmd[0]}") from exc

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        detail = f"\n{stderr}" if stderr else ""
        raise error_cls(f"Command failed with exit code {result.returncode}: {' '.join(cmd)}{detail}")
    return result


def log(tag: str, message: str) -> None:
    print(f"[{tag}] {message}", file=sys.stderr)
