"""
Backup and restore functionality for cfgkeep.

Usage:
    from cfgkeep.backup import BackupManager, BackupOptions, RestoreOptions

    # Create a backup
    manager = BackupManager(store)
    result = manager.create(BackupOptions(output_dir=Path("backups")))

    # Inspect it
    analysis = manager.analyze(result.path)

    # Restore from backup
    restored = manager.restore(RestoreOptions(backup_path=result.path, dry_run=True))
"""

from cfgkeep.backup.manager import BackupManager, BackupResult
from cfgkeep.backup.models import (
    BackupAnalysis,
    BackupManifest,
    BackupOptions,
    CommandSource,
    CommandTarget,
    ContentSource,
    ExportType,
    ExternalConfig,
    ExternalConfigProvider,
    FileSource,
    FileTarget,
    HandlerTarget,
    ReadOnlyTarget,
    RestoreOptions,
    RestoreResult,
    SecretBackupPolicy,
)
from cfgkeep.errors import BackupError, RestoreError

__all__ = [
    "BackupManager",
    "BackupManifest",
    "BackupResult",
    "BackupAnalysis",
    "BackupOptions",
    "RestoreOptions",
    "RestoreResult",
    "ExportType",
    "SecretBackupPolicy",
    "ExternalConfig",
    "ExternalConfigProvider",
    "FileSource",
    "CommandSource",
    "ContentSource",
    "ReadOnlyTarget",
    "FileTarget",
    "CommandTarget",
    "HandlerTarget",
    "BackupError",
    "RestoreError",
]
