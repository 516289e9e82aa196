#!/usr/bin/env python3
"""Commit a generated migration unit on a new branch and open a pull request.

Subcommands:
    publish   stage the migrations directory, commit, push, open the PR
    run       generate -> verify -> publish in one process (local use)

Usage:
    python publish_migrations.py publish [--version VERSION]
    python publish_migrations.py run [--keep-database]
"""

from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from pathlib import Path

from generate_migration import MigrationUnit, apply_path_overrides, generate, list_units, write_github_output
from migration_config import MigrationError, load_config, log, require_env, run_command
from verify_migrations import verify


class PublishError(MigrationError):
    pass


def github_request(method: str, url: str, token: str, payload: dict | None = None) -> dict:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(url, data=data, method=method)
    req.add_header("Authorization", f"token {token}")
    req.add_header("Accept", "application/vnd.github.v3+json")
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=30) as resp:
            body = resp.read().decode("utf-8").strip()
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace").strip()
        raise PublishError(f"GitHub API {method} {url} failed with HTTP {e.code}: {detail}") from e
    except urllib.error.URLError as e:
        raise PublishError(f"Error connecting to GitHub API at {url}: {e.reason}") from e
    return json.loads(body) if body else {}


def check_token_permissions(api_url: str, repo: str, token: str) -> dict | None:
    """Print what the token may do on ``repo``. Informational only."""
    print("Checking token permissions...")
    try:
        info = github_request("GET", f"{api_url}/repos/{repo}", token)
    except PublishError as exc:
        log("publish", f"token check failed: {exc}")
        return None
    permissions = info.get("permissions") or {}
    if not permissions:
        print("  token reports no repository permissions")
    for name, allowed in sorted(permissions.items()):
        print(f"  {name}: {allowed}")
    return permissions


def git(*args: str) -> str:
    return run_command(["git", *args], PublishError).stdout or ""


def select_unit(migrations_dir: Path, version: str | None = None) -> MigrationUnit:
    units = list_units(migrations_dir)
    if not units:
        raise PublishError(f"No migrations to publish under {migrations_dir}")
    if version is None:
        return units[-1]
    for unit in units:
        if unit.version == version:
            return unit
    raise PublishError(f"No migration with version {version} under {migrations_dir}")


def pull_request_body(header: str, unit: MigrationUnit) -> str:
    lines = [header.strip(), "", "Generated files:"]
    for path in unit.generated_files:
        lines.append(f"- {path.as_posix()}")
    return "\n".join(lines) + "\n"


def commit_migrations(config: dict, unit: MigrationUnit) -> str:
    settings = config["publish"]
    branch = f"{settings['branch_prefix']}{unit.version}"

    git("checkout", "-B", branch)
    git("add", "--", str(config["migrations_dir"]))
    print("Files staged for commit:")
    print(git("diff", "--name-status", "--staged").rstrip())
    print("All changed files:")
    print(git("status", "--short").rstrip())

    git(
        "-c",
        f"user.name={settings['git_user_name']}",
        "-c",
        f"user.email={settings['git_user_email']}",
        "commit",
        "-m",
        settings["commit_message"],
    )
    git("push", "--force", "origin", branch)
    return branch


def open_pull_request(config: dict, unit: MigrationUnit, branch: str, token: str, repo: str) -> str:
    settings = config["publish"]
    payload = {
        "title": settings["title"],
        "body": pull_request_body(settings["body_header"], unit),
        "head": branch,
        "base": settings["base"],
    }
    response = github_request("POST", f"{settings['api_url']}/repos/{repo}/pulls", token, payload)
    return str(response.get("html_url", ""))


def publish(config: dict, unit: MigrationUnit) -> str:
    token = require_env(config, "github_token")
    repo = require_env(config, "github_repository")
    api_url = config["publish"]["api_url"]

    check_token_permissions(api_url, repo, token)
    branch = commit_migrations(config, unit)
    url = open_pull_request(config, unit, branch, token, repo)
    print(f"Opened pull request {url}")
    return url


def run_pipeline(config: dict, keep_database: bool = False) -> int:
    result = generate(config)
    write_github_output(result)
    if not result.created:
        print("Nothing to publish")
        return 0
    verify(config, keep_database=keep_database)
    publish(config, result.unit)
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish generated Prisma migrations as a pull request")
    parser.add_argument("--config", default=None, help="YAML config (default: migrations.yaml if present)")
    parser.add_argument("--schema", default=None, help="Prisma schema file")
    parser.add_argument("--migrations-dir", default=None, help="Migrations directory")
    sub = parser.add_subparsers(dest="command", required=True)

    pub = sub.add_parser("publish", help="Commit the migration unit and open a pull request")
    pub.add_argument("--version", default=None, help="Unit version to publish (default: latest)")

    run = sub.add_parser("run", help="Generate, verify and publish")
    run.add_argument("--keep-database", action="store_true", help="Do not drop the test database afterwards")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = apply_path_overrides(load_config(args.config), args)
        if args.command == "run":
            return run_pipeline(config, keep_database=args.keep_database)
        unit = select_unit(Path(config["migrations_dir"]), args.version or None)
        publish(config, unit)
    except MigrationError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
