"""
Command-line interface for cfgkeep.

Provides commands to back up a settings store, inspect a backup file, and
restore a backup into the store.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import NoReturn

from cfgkeep import __version__
from cfgkeep.backup.models import (
    BackupOptions,
    ExportType,
    RestoreOptions,
    RestoreResult,
    SecretBackupPolicy,
    SubSettingsManifestEntry,
)
from cfgkeep.config.credentials import (
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    EncryptedFileVault,
    InvalidPassphraseError,
    MemoryVault,
    SecretVault,
)
from cfgkeep.config.settings import (
    ConfigurationError,
    Settings,
    build_manager,
    load_config,
)
from cfgkeep.errors import CfgKeepError, InvalidPasswordError, PasswordRequiredError
from cfgkeep.store.manager import SettingsManager

# Set up logging
logger = logging.getLogger(__name__)

VAULT_PASSPHRASE_ENV = "CFGKEEP_VAULT_PASSPHRASE"

# Sentinel for a bare --password: ask on the terminal
_PROMPT = "\0prompt"

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the cfgkeep CLI."""
    parser = argparse.ArgumentParser(
        prog="cfgkeep",
        description="Back up and restore hierarchical settings stores",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"cfgkeep {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.cfgkeep/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a backup of the settings store",
        description="Create a portable backup file of settings, sub-settings and external configs.",
    )
    backup_parser.add_argument(
        "--password",
        nargs="?",
        const=_PROMPT,
        metavar="PASSWORD",
        help="Encrypt the backup (prompts when no value is given)",
    )
    backup_parser.add_argument(
        "--note",
        metavar="TEXT",
        help="Free-text note stored in the manifest",
    )
    backup_parser.add_argument(
        "--sub",
        action="append",
        default=[],
        metavar="NAME",
        help="Sub-settings category to include (can be repeated)",
    )
    backup_parser.add_argument(
        "--external",
        action="append",
        default=[],
        metavar="ID",
        help="External config to include (can be repeated)",
    )
    backup_parser.add_argument(
        "--settings-only",
        action="store_true",
        dest="settings_only",
        help="Only export what is selected, without external configs by default",
    )
    backup_parser.add_argument(
        "--no-settings",
        action="store_true",
        dest="no_settings",
        help="Leave the primary settings out of a settings-only backup",
    )
    backup_parser.add_argument(
        "--single",
        nargs=2,
        metavar=("CATEGORY", "NAME"),
        help="Export one sub-settings entry",
    )
    backup_parser.add_argument(
        "--secrets",
        choices=[policy.value for policy in SecretBackupPolicy],
        help="How secret settings are treated (default: from config)",
    )
    backup_parser.add_argument(
        "--output",
        "-o",
        metavar="DIR",
        help="Output directory for the backup file (default: from config)",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # analyze command
    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Inspect a backup file",
        description="Show the manifest and compatibility warnings of a backup file.",
    )
    analyze_parser.add_argument(
        "backup_file",
        metavar="FILE",
        help="Path to backup file (.cfgkeep)",
    )
    analyze_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    analyze_parser.set_defaults(func=cmd_analyze)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore from a backup file",
        description="Restore settings from a backup file into the store.",
    )
    restore_parser.add_argument(
        "backup_file",
        metavar="FILE",
        help="Path to backup file (.cfgkeep)",
    )
    restore_parser.add_argument(
        "--password",
        nargs="?",
        const=_PROMPT,
        metavar="PASSWORD",
        help="Password of an encrypted backup (prompts when no value is given)",
    )
    restore_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace items that already exist",
    )
    restore_parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Report what would change without writing anything",
    )
    restore_parser.add_argument(
        "--no-verify",
        action="store_true",
        dest="no_verify",
        help="Skip the checksum check",
    )
    restore_parser.add_argument(
        "--sub",
        action="append",
        default=[],
        metavar="NAME",
        help="Only restore this sub-settings category (can be repeated)",
    )
    restore_parser.add_argument(
        "--profile",
        metavar="NAME",
        help="Only restore this profile",
    )
    restore_parser.add_argument(
        "--as",
        dest="profile_as",
        metavar="NAME",
        help="Restore the selected profile under another name",
    )
    restore_parser.set_defaults(func=cmd_restore)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def open_vault(settings: Settings) -> SecretVault:
    """
    Open the secret vault for the configured store.

    With CFGKEEP_VAULT_PASSPHRASE set, secrets live in an encrypted file in
    the store directory (created on first use). Otherwise an in-memory vault
    is used and secrets do not outlive the process.
    """
    passphrase = os.environ.get(VAULT_PASSPHRASE_ENV)
    if not passphrase:
        logger.debug("No vault passphrase set, using in-memory vault")
        return MemoryVault()

    vault = EncryptedFileVault(Path(settings.store.directory).expanduser())
    if vault.is_initialized():
        vault.unlock(passphrase)
    else:
        try:
            vault.initialize(passphrase)
        except ValueError as e:
            raise ConfigurationError(f"{VAULT_PASSPHRASE_ENV}: {e}") from e
        logger.info(f"Created secret vault in {vault.directory}")
    return vault


def _resolve_password(value: str | None, prompt: str) -> str | None:
    if value == _PROMPT:
        return getpass.getpass(prompt)
    return value


def _describe_external(manager: SettingsManager, config_id: str) -> str:
    """Display name and description of an external config, falling back to its id."""
    external = manager.resolve_external_config(config_id)
    if external is None:
        return config_id
    label = external.display_name
    if label != config_id:
        label = f"{label} ({config_id})"
    if external.description:
        label = f"{label}: {external.description}"
    return label


def _describe_sub_settings(entry: SubSettingsManifestEntry) -> str:
    if entry.profiled is not None:
        parts = []
        for profile, shape in sorted(entry.profiled.items()):
            names = shape if isinstance(shape, str) else ", ".join(shape) or "(empty)"
            parts.append(f"[{profile}] {names}")
        return "; ".join(parts) if parts else "(empty)"
    if entry.single_file is not None:
        return f"{entry.single_file} (single file)"
    names = entry.item_names()
    return ", ".join(names) if names else "(empty)"


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a backup of the settings store."""
    settings = _load_settings(args)
    manager = build_manager(settings, open_vault(settings))

    if args.single:
        export_type = ExportType.single(args.single[0], args.single[1])
    elif args.settings_only:
        export_type = ExportType.settings_only()
    else:
        export_type = ExportType.full()

    options = BackupOptions(
        output_dir=Path(args.output or settings.backup.output_dir).expanduser(),
        export_type=export_type,
        password=_resolve_password(args.password, "Backup password: "),
        user_note=args.note,
        include_settings=not args.no_settings,
        include_sub_settings=list(args.sub),
        include_external_configs=list(args.external),
        secret_policy=SecretBackupPolicy(args.secrets or settings.backup.secret_policy),
    )

    output("cfgkeep Backup")
    output("=" * 50)
    output()
    output(f"Store directory: {manager.config_dir}")
    output(f"Output directory: {options.output_dir}")
    output(f"Export type: {export_type}")
    output(f"Encrypted: {options.password is not None}")
    output(f"Secrets included: {options.include_secrets()}")
    output()

    result = manager.backup().create(options)
    contents = result.manifest.contents

    output("Backup created successfully!")
    output()
    output(f"  File: {result.path}")
    output(f"  Size: {result.size_bytes:,} bytes")
    output(f"  Files: {contents.file_count}")
    output(f"  Settings: {'yes' if contents.settings else 'no'}")
    if contents.sub_settings:
        output(f"  Sub-settings: {', '.join(sorted(contents.sub_settings))}")
    if contents.external_configs:
        output("  External configs:")
        for config_id in contents.external_configs:
            output(f"    - {_describe_external(manager, config_id)}")
    output()
    output("To restore from this backup, run:")
    output(f"  cfgkeep restore {result.path}")
    if _quiet_mode:
        output(str(result.path), force=True)
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    """Inspect a backup file."""
    settings = _load_settings(args)
    manager = build_manager(settings, MemoryVault())
    analysis = manager.backup().analyze(Path(args.backup_file))

    if args.json:
        output(json.dumps(analysis.to_dict(), indent=2), force=True)
        return 0 if analysis.is_valid else 1

    manifest = analysis.manifest
    contents = manifest.contents
    output("Backup information:")
    output(f"  App: {analysis.app_name} {analysis.app_version}")
    output(f"  Created: {analysis.created_at}")
    output(f"  Export type: {analysis.export_type}")
    output(f"  Manifest version: {manifest.version}")
    output(f"  Encrypted: {'yes' if analysis.requires_password else 'no'}")
    if analysis.user_note:
        output(f"  Note: {analysis.user_note}")
    output(f"  Files: {contents.file_count}")
    output(f"  Settings: {'yes' if contents.settings else 'no'}")
    for category, entry in sorted(contents.sub_settings.items()):
        output(f"  Sub-settings {category}: {_describe_sub_settings(entry)}")
    if contents.external_configs:
        output("  External configs:")
        for config_id in contents.external_configs:
            output(f"    - {_describe_external(manager, config_id)}")
    output(f"  SHA-256: {manifest.integrity.sha256}")

    if analysis.warnings:
        output()
        output("Warnings:")
        for warning in analysis.warnings:
            output(f"  - {warning}")

    if not analysis.is_valid:
        output_error("This backup cannot be restored by this version.")
        return 1
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore from a backup file."""
    settings = _load_settings(args)
    manager = build_manager(settings, open_vault(settings))

    if args.profile_as and not args.profile:
        output_error("Error: --as requires --profile")
        return 1

    options = RestoreOptions(
        backup_path=Path(args.backup_file),
        password=_resolve_password(args.password, "Backup password: "),
        restore_sub_settings={name: [] for name in args.sub},
        overwrite_existing=args.overwrite,
        dry_run=args.dry_run,
        verify_checksum=settings.backup.verify_checksum and not args.no_verify,
        restore_profile=args.profile,
        restore_profile_as=args.profile_as,
    )

    output("cfgkeep Restore")
    output("=" * 50)
    output()
    output(f"Backup file: {options.backup_path}")
    output(f"Store directory: {manager.config_dir}")
    output()

    result = manager.backup().restore(options)
    _print_restore_result(result)
    return 0


def _print_restore_result(result: RestoreResult) -> None:
    prefix = "[DRY RUN] " if result.is_dry_run else ""
    verb = "Would restore" if result.is_dry_run else "Restored"

    output(f"{prefix}{verb} {len(result.restored)} of {result.total()} items")
    for item in result.restored:
        output(f"  + {item}")
    for item in result.skipped:
        output(f"  = {item} (skipped)")
    if result.external_pending:
        output()
        output("External configs needing manual restoration:")
        for config_id in result.external_pending:
            output(f"  - {config_id}")
    if not result.has_changes():
        output("Nothing to change.")


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the cfgkeep CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except PasswordRequiredError:
        output_error("Error: this backup is encrypted, pass --password")
        sys.exit(2)
    except InvalidPasswordError:
        output_error("Error: incorrect backup password")
        sys.exit(2)
    except (
        CredentialStoreNotInitializedError,
        CredentialStoreLockedError,
        InvalidPassphraseError,
    ) as e:
        output_error(f"Vault error: {e}")
        sys.exit(1)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(1)
    except CfgKeepError as e:
        if args.verbose > 0:
            logger.exception("Command failed")
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
