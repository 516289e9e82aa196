import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from migration_config import (
    DEFAULT_CONFIG,
    ConfigError,
    MigrationError,
    load_config,
    merge_config,
    require_env,
    run_command,
)


class TestLoadConfig(unittest.TestCase):
    def setUp(self) -> None:
        patcher = mock.patch("migration_config.load_dotenv")
        self.load_dotenv = patcher.start()
        self.addCleanup(patcher.stop)

    def test_overrides_are_merged_over_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "migrations.yaml"
            path.write_text(
                "migrations_dir: db/migrations\n"
                "publish:\n"
                "  base: develop\n"
                "unknown_key: 1\n",
                encoding="utf-8",
            )
            config = load_config(path)

        self.assertEqual(config["migrations_dir"], "db/migrations")
        self.assertEqual(config["publish"]["base"], "develop")
        self.assertEqual(config["publish"]["title"], DEFAULT_CONFIG["publish"]["title"])
        self.assertNotIn("unknown_key", config)
        self.load_dotenv.assert_called_once_with(override=False)

    def test_empty_file_means_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "migrations.yaml"
            path.write_text("", encoding="utf-8")
            self.assertEqual(load_config(path), DEFAULT_CONFIG)

    def test_explicit_missing_file_is_an_error(self) -> None:
        with self.assertRaisesRegex(ConfigError, "not found"):
            load_config(Path("/nonexistent/migrations.yaml"))

    def test_invalid_yaml_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "migrations.yaml"
            path.write_text("publish: [unclosed\n", encoding="utf-8")
            with self.assertRaisesRegex(ConfigError, "Invalid YAML"):
                load_config(path)

    def test_merge_does_not_mutate_defaults(self) -> None:
        merged = merge_config(DEFAULT_CONFIG, {"verify": {"test_database": "other"}})
        self.assertEqual(merged["verify"]["test_database"], "other")
        self.assertEqual(DEFAULT_CONFIG["verify"]["test_database"], "migration_test")


class TestEnvAndCommands(unittest.TestCase):
    def test_require_env_uses_configured_name(self) -> None:
        config = merge_config(DEFAULT_CONFIG, {"env": {"shadow_database_url": "PRISMA_SHADOW_URL"}})
        with mock.patch.dict(os.environ, {"PRISMA_SHADOW_URL": "postgresql://x/y"}):
            self.assertEqual(require_env(config, "shadow_database_url"), "postgresql://x/y")
        with mock.patch.dict(os.environ, {"PRISMA_SHADOW_URL": "  "}):
            with self.assertRaisesRegex(ConfigError, "PRISMA_SHADOW_URL"):
                require_env(config, "shadow_database_url")

    def test_missing_binary_raises_given_error(self) -> None:
        class StageError(MigrationError):
            pass

        with mock.patch("migration_config.subprocess.run", side_effect=FileNotFoundError("psql")):
            with self.assertRaisesRegex(StageError, "Command not found: psql"):
                run_command(["psql", "--version"], StageError)


if __name__ == "__main__":
    unittest.main()
