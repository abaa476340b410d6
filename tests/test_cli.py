"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing, the backup/analyze/restore commands and exit codes.
"""

from __future__ import annotations

import io
import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from cfgkeep.cli import create_parser, main, open_vault
from cfgkeep.config.credentials import EncryptedFileVault, MemoryVault
from cfgkeep.config.settings import ConfigurationError, build_manager, load_config

CONFIG_TEMPLATE = """
store:
  directory: {store}
  app_name: myapp
  app_version: 1.2.0
  secret_keys: [api.key]
  sub_settings:
    - name: remotes
      secret_fields: [token]
backup:
  output_dir: {backups}
"""


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        with patch("sys.stdout", new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as cm:
                self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        args = self.parser.parse_args([])

        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)
        self.assertIsNone(args.config)

    def test_verbose_count(self) -> None:
        args = self.parser.parse_args(["-vv", "analyze", "x.cfgkeep"])

        self.assertEqual(args.verbose, 2)

    def test_backup_defaults(self) -> None:
        args = self.parser.parse_args(["backup"])

        self.assertIsNone(args.password)
        self.assertEqual(args.sub, [])
        self.assertEqual(args.external, [])
        self.assertFalse(args.settings_only)
        self.assertIsNone(args.single)
        self.assertIsNone(args.secrets)

    def test_backup_options(self) -> None:
        args = self.parser.parse_args(
            [
                "backup",
                "--password", "hunter22",
                "--note", "before upgrade",
                "--sub", "remotes",
                "--sub", "themes",
                "--settings-only",
                "--secrets", "encrypted_only",
                "-o", "/tmp/out",
            ]
        )

        self.assertEqual(args.password, "hunter22")
        self.assertEqual(args.note, "before upgrade")
        self.assertEqual(args.sub, ["remotes", "themes"])
        self.assertTrue(args.settings_only)
        self.assertEqual(args.secrets, "encrypted_only")
        self.assertEqual(args.output, "/tmp/out")

    def test_backup_single(self) -> None:
        args = self.parser.parse_args(["backup", "--single", "remotes", "gdrive"])

        self.assertEqual(args.single, ["remotes", "gdrive"])

    def test_invalid_secret_policy(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["backup", "--secrets", "always"])

    def test_restore_options(self) -> None:
        args = self.parser.parse_args(
            ["restore", "b.cfgkeep", "--overwrite", "--dry-run", "--profile", "work", "--as", "home"]
        )

        self.assertEqual(args.backup_file, "b.cfgkeep")
        self.assertTrue(args.overwrite)
        self.assertTrue(args.dry_run)
        self.assertFalse(args.no_verify)
        self.assertEqual(args.profile, "work")
        self.assertEqual(args.profile_as, "home")

    def test_restore_requires_file(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["restore"])


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.store_dir = self.root / "store"
        self.backups = self.root / "backups"
        self.config_path = self.root / "config.yaml"
        self.config_path.write_text(
            CONFIG_TEMPLATE.format(store=self.store_dir, backups=self.backups)
        )

        clean = {k: v for k, v in os.environ.items() if not k.startswith("CFGKEEP_")}
        env_patch = patch.dict(os.environ, clean, clear=True)
        env_patch.start()
        self.addCleanup(env_patch.stop)

        kdf_patch = patch("cfgkeep.backup.archive.KDF_ITERATIONS", 1000)
        kdf_patch.start()
        self.addCleanup(kdf_patch.stop)

        store = build_manager(load_config(self.config_path), MemoryVault())
        store.write_settings_document({"ui": {"theme": "dark"}})
        store.sub_settings("remotes").set("gdrive", {"folder": "/backup"})

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        with patch("sys.stdout", stdout), patch("sys.stderr", stderr):
            with self.assertRaises(SystemExit) as cm:
                main(["--config", str(self.config_path), *argv])
        return cm.exception.code, stdout.getvalue(), stderr.getvalue()

    def create_backup(self, *extra: str) -> Path:
        code, stdout, _ = self.run_cli("-q", "backup", *extra)
        self.assertEqual(code, 0)
        return Path(stdout.strip())


class TestMain(CliTestCase):
    """Tests for main() dispatch and exit codes."""

    def test_no_command_prints_help(self) -> None:
        code, stdout, _ = self.run_cli()

        self.assertEqual(code, 0)
        self.assertIn("usage: cfgkeep", stdout)

    def test_invalid_config(self) -> None:
        self.config_path.write_text("cfgkeep:\n  log_level: LOUD\n")

        code, _, stderr = self.run_cli("analyze", "x.cfgkeep")

        self.assertEqual(code, 1)
        self.assertIn("Configuration error", stderr)

    def test_missing_backup_file(self) -> None:
        code, _, stderr = self.run_cli("analyze", str(self.root / "nope.cfgkeep"))

        self.assertEqual(code, 1)
        self.assertIn("Path not found", stderr)


class TestBackupCommand(CliTestCase):
    """Tests for the backup command."""

    def test_backup(self) -> None:
        code, stdout, _ = self.run_cli("backup", "--note", "nightly")

        self.assertEqual(code, 0)
        self.assertIn("Backup created successfully!", stdout)
        self.assertIn("Sub-settings: remotes", stdout)
        files = list(self.backups.iterdir())
        self.assertEqual(len(files), 1)
        self.assertTrue(files[0].name.startswith("myapp_"))
        self.assertTrue(files[0].name.endswith("_full.cfgkeep"))

    def test_quiet_prints_only_path(self) -> None:
        path = self.create_backup()

        self.assertTrue(path.is_file())
        self.assertEqual(path.parent, self.backups)

    def test_single_entry(self) -> None:
        path = self.create_backup("--single", "remotes", "gdrive")

        self.assertIn("_gdrive_", path.name)

    def test_output_override(self) -> None:
        path = self.create_backup("-o", str(self.root / "elsewhere"))

        self.assertEqual(path.parent, self.root / "elsewhere")

    def test_short_password(self) -> None:
        code, _, stderr = self.run_cli("backup", "--password", "abc")

        self.assertEqual(code, 1)
        self.assertIn("Password must be at least", stderr)

    def test_prompted_password(self) -> None:
        with patch("cfgkeep.cli.getpass.getpass", return_value="hunter22") as prompt:
            path = self.create_backup("--password")

        prompt.assert_called_once()
        code, stdout, _ = self.run_cli("analyze", str(path), "--json")
        self.assertTrue(json.loads(stdout)["requires_password"])


class TestAnalyzeCommand(CliTestCase):
    """Tests for the analyze command."""

    def test_analyze_text(self) -> None:
        path = self.create_backup()

        code, stdout, _ = self.run_cli("analyze", str(path))

        self.assertEqual(code, 0)
        self.assertIn("App: myapp 1.2.0", stdout)
        self.assertIn("Sub-settings remotes: gdrive", stdout)

    def test_analyze_describes_every_shape(self) -> None:
        rc = self.root / "shellrc"
        rc.write_text("export EDITOR=vi\n")
        self.config_path.write_text(
            f"""
store:
  directory: {self.store_dir}
  app_name: myapp
  app_version: 1.2.0
  sub_settings:
    - name: remotes
    - name: themes
      single_file: true
    - name: keys
      profiles: true
  external:
    - id: shellrc
      path: {rc}
      name: Shell profile
      description: Interactive shell setup
backup:
  output_dir: {self.backups}
"""
        )
        store = build_manager(load_config(self.config_path), MemoryVault())
        store.sub_settings("themes").set("dark", {"bg": "#000"})
        store.sub_settings("keys").set("main", {"id": 1})

        code, stdout, _ = self.run_cli("backup")
        self.assertEqual(code, 0)
        self.assertIn("    - Shell profile (shellrc): Interactive shell setup", stdout)

        path = next(self.backups.iterdir())
        code, stdout, _ = self.run_cli("analyze", str(path))

        self.assertEqual(code, 0)
        self.assertIn("Sub-settings remotes: gdrive", stdout)
        self.assertIn("Sub-settings themes: themes.json (single file)", stdout)
        self.assertIn("Sub-settings keys: [default] main", stdout)
        self.assertIn("    - Shell profile (shellrc): Interactive shell setup", stdout)

    def test_analyze_json(self) -> None:
        path = self.create_backup("--note", "nightly")

        code, stdout, _ = self.run_cli("analyze", str(path), "--json")

        self.assertEqual(code, 0)
        data = json.loads(stdout)
        self.assertTrue(data["is_valid"])
        self.assertEqual(data["manifest"]["backup"]["app_name"], "myapp")
        self.assertEqual(data["manifest"]["backup"]["user_note"], "nightly")
        self.assertEqual(data["warnings"], [])


class TestRestoreCommand(CliTestCase):
    """Tests for the restore command."""

    def test_dry_run_then_restore(self) -> None:
        path = self.create_backup()
        shutil.rmtree(self.store_dir)

        code, stdout, _ = self.run_cli("restore", str(path), "--dry-run")

        self.assertEqual(code, 0)
        self.assertIn("[DRY RUN] Would restore 2 of 2 items", stdout)
        self.assertIn("+ settings.json", stdout)
        self.assertFalse((self.store_dir / "settings.json").exists())

        code, stdout, _ = self.run_cli("restore", str(path))

        self.assertEqual(code, 0)
        self.assertIn("Restored 2 of 2 items", stdout)
        self.assertTrue((self.store_dir / "settings.json").exists())
        self.assertTrue((self.store_dir / "remotes" / "gdrive.json").exists())

    def test_nothing_to_change(self) -> None:
        path = self.create_backup()

        code, stdout, _ = self.run_cli("restore", str(path))

        self.assertEqual(code, 0)
        self.assertIn("= settings.json (skipped)", stdout)
        self.assertIn("Nothing to change.", stdout)

    def test_encrypted_without_password(self) -> None:
        path = self.create_backup("--password", "hunter22")

        code, _, stderr = self.run_cli("restore", str(path))

        self.assertEqual(code, 2)
        self.assertIn("pass --password", stderr)

    def test_wrong_password(self) -> None:
        path = self.create_backup("--password", "hunter22")

        code, _, stderr = self.run_cli("restore", str(path), "--password", "wrong-password")

        self.assertEqual(code, 2)
        self.assertIn("incorrect backup password", stderr)

    def test_as_requires_profile(self) -> None:
        path = self.create_backup()

        code, _, stderr = self.run_cli("restore", str(path), "--as", "home")

        self.assertEqual(code, 1)
        self.assertIn("--as requires --profile", stderr)


class TestOpenVault(unittest.TestCase):
    """Tests for open_vault."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.settings = load_config(Path(self.temp_dir) / "missing.yaml")
        self.settings.store.directory = self.temp_dir
        kdf_patch = patch("cfgkeep.config.credentials.PBKDF2_ITERATIONS", 1000)
        kdf_patch.start()
        self.addCleanup(kdf_patch.stop)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_memory_vault_without_passphrase(self) -> None:
        with patch.dict(os.environ, {"CFGKEEP_VAULT_PASSPHRASE": ""}):
            self.assertIsInstance(open_vault(self.settings), MemoryVault)

    def test_encrypted_vault_created_and_reopened(self) -> None:
        with patch.dict(os.environ, {"CFGKEEP_VAULT_PASSPHRASE": "a-long-vault-passphrase"}):
            vault = open_vault(self.settings)
            vault.store("api.key", "sk-123")
            reopened = open_vault(self.settings)

        self.assertIsInstance(reopened, EncryptedFileVault)
        self.assertEqual(reopened.get("api.key"), "sk-123")

    def test_short_passphrase(self) -> None:
        with patch.dict(os.environ, {"CFGKEEP_VAULT_PASSPHRASE": "short"}):
            with self.assertRaises(ConfigurationError):
                open_vault(self.settings)


if __name__ == "__main__":
    unittest.main()
