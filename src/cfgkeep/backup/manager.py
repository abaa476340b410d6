"""
Backup and restore manager for cfgkeep.

Creates portable backup files of a live settings store and restores from
them. A backup is a store-only zip container with a JSON manifest and a
compressed, optionally encrypted data archive; the manifest carries the
SHA-256 of the data archive for integrity verification.
"""

from __future__ import annotations

import io
import logging
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cfgkeep.backup.archive import (
    DATA_ENTRY,
    MANIFEST_ENTRY,
    create_archive,
    create_container,
    extract_archive,
    hash_file,
    is_encrypted,
    read_entry,
)
from cfgkeep.backup.gatherer import EXTERNAL_DIR, ExportGatherer
from cfgkeep.backup.models import (
    MANIFEST_VERSION_CURRENT,
    MANIFEST_VERSION_MAX_SUPPORTED,
    MANIFEST_VERSION_MIN_SUPPORTED,
    BackupAnalysis,
    BackupInfo,
    BackupIntegrity,
    BackupManifest,
    BackupOptions,
    LiveStore,
    RestoreOptions,
    RestoreResult,
    is_manifest_version_supported,
)
from cfgkeep.errors import (
    ArchiveEntryNotFoundError,
    BackupError,
    DirectoryCreateError,
    FileWriteError,
    PathNotFoundError,
)

logger = logging.getLogger(__name__)

BACKUP_EXTENSION = "cfgkeep"
MIN_PASSWORD_LENGTH = 4

_UNSAFE_FILENAME_CHARS = '/\\:*?"<>|'


class BackupStage(str, Enum):
    """Steps of backup creation, in order."""

    VALIDATING_PASSWORD = "validating_password"
    STAGING = "staging"
    COMPRESSING = "compressing"
    HASHING = "hashing"
    BUILDING_MANIFEST = "building_manifest"
    CONTAINERIZING = "containerizing"
    DONE = "done"


@dataclass
class BackupResult:
    """Result of a backup operation."""

    path: Path
    manifest: BackupManifest
    size_bytes: int = 0


def validate_password(password: str | None) -> str | None:
    """
    Check a backup password.

    Raises:
        BackupError: If the password is blank or too short.
    """
    if password is None:
        return None
    if not password.strip():
        raise BackupError("Password cannot be empty or whitespace-only")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise BackupError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in filenames with underscores."""
    return "".join("_" if c in _UNSAFE_FILENAME_CHARS else c for c in name)


def _now() -> datetime:
    return datetime.now(UTC)


class BackupManager:
    """
    Manages backup and restore operations for a live store.

    Usage:
        manager = BackupManager(store)
        result = manager.create(BackupOptions(output_dir=Path("backups")))
        analysis = manager.analyze(result.path)
        manager.restore(RestoreOptions(backup_path=result.path, overwrite_existing=True))
    """

    def __init__(self, store: LiveStore) -> None:
        """
        Initialize backup manager.

        Args:
            store: The live store to back up and restore into.
        """
        self.store = store

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(self, options: BackupOptions) -> BackupResult:
        """
        Create a backup file.

        Nothing is written to ``options.output_dir`` unless every step
        succeeds.

        Args:
            options: What to back up and where.

        Returns:
            BackupResult with the path of the new backup file.

        Raises:
            BackupError: If the password is invalid or a step fails.
        """
        self._enter(BackupStage.VALIDATING_PASSWORD)
        password = validate_password(options.password)
        include_secrets = options.secret_policy.include_secrets(password)

        output_dir = Path(options.output_dir)
        if output_dir.is_file():
            raise BackupError(f"Output path is a file: {output_dir}")
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DirectoryCreateError(output_dir, e) from e

        now = _now()
        with tempfile.TemporaryDirectory(prefix="cfgkeep-backup-") as temp_dir:
            temp_path = Path(temp_dir)
            staging_dir = temp_path / "staging"
            staging_dir.mkdir()

            self._enter(BackupStage.STAGING)
            gathered = ExportGatherer(self.store, options, staging_dir, include_secrets).gather()

            self._enter(BackupStage.COMPRESSING)
            data_path = temp_path / DATA_ENTRY
            create_archive(
                staging_dir,
                data_path,
                password=password,
                progress=options.on_progress,
                total_size=gathered.total_bytes,
            )

            self._enter(BackupStage.HASHING)
            checksum, compressed_size = hash_file(data_path)

            self._enter(BackupStage.BUILDING_MANIFEST)
            manifest = BackupManifest(
                version=MANIFEST_VERSION_CURRENT,
                backup=BackupInfo(
                    app_name=self.store.app_name,
                    app_version=self.store.app_version,
                    created_at=now.isoformat(timespec="seconds"),
                    export_type=options.export_type,
                    encrypted=password is not None,
                    user_note=options.user_note,
                ),
                contents=gathered.contents,
                integrity=BackupIntegrity(
                    sha256=checksum,
                    size_bytes=gathered.total_bytes,
                    compressed_size_bytes=compressed_size,
                ),
            )

            self._enter(BackupStage.CONTAINERIZING)
            filename = self.generate_filename(options, now)
            temp_container = temp_path / filename
            create_container(temp_container, manifest.to_json(), data_path, DATA_ENTRY)

            backup_path = output_dir / filename
            try:
                shutil.move(str(temp_container), backup_path)
            except OSError as e:
                raise FileWriteError(backup_path, e) from e

        self._enter(BackupStage.DONE)
        size_bytes = backup_path.stat().st_size
        logger.info(f"Backup created: {backup_path} ({size_bytes:,} bytes)")
        return BackupResult(path=backup_path, manifest=manifest, size_bytes=size_bytes)

    def _enter(self, stage: BackupStage) -> None:
        logger.debug(f"Backup stage: {stage.value}")

    def generate_filename(self, options: BackupOptions, now: datetime) -> str:
        """
        Build the backup filename.

        ``<app>_<timestamp>_full``, ``<app>_<timestamp>_<category>`` for a
        settings-only export of exactly one category, ``<app>_<timestamp>_settings``
        for other settings-only exports, ``<app>_<name>_<timestamp>`` for a single
        entry, and ``<app>_<timestamp>_<suffix>`` when a suffix is given.
        """
        app = sanitize_filename(self.store.app_name)
        timestamp = now.strftime("%Y%m%d_%H%M%S")
        export_type = options.export_type

        if options.filename_suffix:
            stem = f"{app}_{timestamp}_{sanitize_filename(options.filename_suffix)}"
        elif export_type.is_single:
            stem = f"{app}_{sanitize_filename(export_type.name or '')}_{timestamp}"
        elif export_type.is_settings_only:
            if not options.include_settings and len(options.include_sub_settings) == 1:
                suffix = sanitize_filename(options.include_sub_settings[0])
            else:
                suffix = "settings"
            stem = f"{app}_{timestamp}_{suffix}"
        else:
            stem = f"{app}_{timestamp}_full"
        return f"{stem}.{BACKUP_EXTENSION}"

    # -------------------------------------------------------------------------
    # Analyze
    # -------------------------------------------------------------------------

    def analyze(self, path: Path) -> BackupAnalysis:
        """
        Inspect a backup without restoring it.

        Version and encryption problems are reported as warnings; callers
        decide whether to proceed.

        Raises:
            PathNotFoundError: If the file does not exist.
            InvalidBackupError: If the container or manifest is unreadable.
        """
        path = Path(path)
        if not path.exists():
            raise PathNotFoundError(path)

        manifest = BackupManifest.from_json(read_entry(path, MANIFEST_ENTRY))

        warnings: list[str] = []
        is_valid = True

        if not is_manifest_version_supported(manifest.version):
            warnings.append(
                f"Backup manifest version {manifest.version} is not supported "
                f"(supported: {MANIFEST_VERSION_MIN_SUPPORTED}-{MANIFEST_VERSION_MAX_SUPPORTED})"
            )
            is_valid = False

        if manifest.backup.app_version != self.store.app_version:
            warnings.append(
                f"Backup was created with app version {manifest.backup.app_version}, "
                f"current version is {self.store.app_version}"
            )

        data_encrypted = is_encrypted(io.BytesIO(read_entry(path, DATA_ENTRY)))
        if manifest.backup.encrypted != data_encrypted:
            warnings.append(
                f"Manifest claims encrypted={manifest.backup.encrypted}, "
                f"but {DATA_ENTRY} encrypted={data_encrypted}"
            )

        for warning in warnings:
            logger.warning(f"{path.name}: {warning}")

        return BackupAnalysis(
            manifest=manifest,
            is_valid=is_valid,
            warnings=warnings,
            requires_password=data_encrypted,
        )

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(self, options: RestoreOptions) -> RestoreResult:
        """Restore a backup into the live store. See Restorer."""
        from cfgkeep.backup.restorer import Restorer

        return Restorer(self, options).run()

    def get_external_config_from_backup(
        self,
        backup_path: Path,
        config_id: str,
        password: str | None = None,
    ) -> bytes:
        """
        Return the archived bytes of one external config, for manual restoration.

        Raises:
            ArchiveEntryNotFoundError: If the backup does not hold that config.
        """
        backup_path = Path(backup_path)
        self.analyze(backup_path)

        external = self.store.resolve_external_config(config_id)
        filename = external.archive_filename if external is not None else config_id

        with tempfile.TemporaryDirectory(prefix="cfgkeep-restore-") as temp_dir:
            temp_path = Path(temp_dir)
            data_path = temp_path / DATA_ENTRY
            data_path.write_bytes(read_entry(backup_path, DATA_ENTRY))

            extract_dir = temp_path / "extracted"
            extract_archive(data_path, extract_dir, password)

            config_path = extract_dir / EXTERNAL_DIR / filename
            if not config_path.is_file():
                raise ArchiveEntryNotFoundError(backup_path, f"{EXTERNAL_DIR}/{filename}")
            return config_path.read_bytes()
