"""
Restore reconciler: applies an extracted backup to a live store.

Restore order is primary settings, then sub-settings, then external
configs. Each step is independent; a failure partway through leaves the
earlier steps applied (there is no rollback).

Per-item policy, shared by every step:
    - destination exists and overwrite is off: recorded as skipped
    - dry run: recorded as restored, nothing written
    - otherwise: written and recorded as restored
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cfgkeep.backup.archive import DATA_ENTRY, extract_archive, hash_file, read_entry
from cfgkeep.backup.gatherer import EXTERNAL_DIR, STAGING_STORAGE, write_file
from cfgkeep.backup.models import (
    MANIFEST_VERSION_MAX_SUPPORTED,
    MANIFEST_VERSION_MIN_SUPPORTED,
    BackupAnalysis,
    CommandTarget,
    FileTarget,
    HandlerTarget,
    ReadOnlyTarget,
    RestoreOptions,
    RestoreResult,
    SubSettingsManifestEntry,
)
from cfgkeep.errors import (
    ExternalHandlerError,
    InvalidBackupError,
    PasswordRequiredError,
    RestoreError,
    SubSettingsNotRegisteredError,
    VersionMismatchError,
)
from cfgkeep.store.profiles import MANIFEST_STEM, PROFILES_DIR, ProfileManifest
from cfgkeep.store.storage import load_document_agnostic, storage_for_format
from cfgkeep.store.sub_settings import SubSettings

if TYPE_CHECKING:
    from cfgkeep.backup.manager import BackupManager

logger = logging.getLogger(__name__)


def _read_staged(path: Path) -> Any:
    """Read a staged document using the backend matching its extension."""
    try:
        storage = storage_for_format(path.suffix.lstrip("."))
    except ValueError as e:
        raise InvalidBackupError(f"Unsupported file in backup: {path.name}") from e
    return storage.read(path)


class Restorer:
    """
    One restore run.

    Args:
        manager: BackupManager bound to the target store.
        options: What to restore and how.
    """

    def __init__(self, manager: BackupManager, options: RestoreOptions) -> None:
        self.manager = manager
        self.store = manager.store
        self.options = options
        self.mode = "[DRY RUN] " if options.dry_run else ""
        self._extract_dir = Path()
        self._analysis: BackupAnalysis | None = None

    @property
    def analysis(self) -> BackupAnalysis:
        assert self._analysis is not None
        return self._analysis

    def run(self) -> RestoreResult:
        """
        Restore the backup.

        Returns:
            RestoreResult listing what was restored, skipped or left pending.

        Raises:
            VersionMismatchError: The manifest version is not supported.
            PasswordRequiredError: The backup is encrypted and no password was given.
            InvalidPasswordError: The password does not decrypt the backup.
            InvalidBackupError: The checksum does not match or the backup is corrupt.
        """
        options = self.options
        backup_path = Path(options.backup_path)
        logger.info(f"{self.mode}Restoring from backup: {backup_path}")

        analysis = self.manager.analyze(backup_path)
        manifest = analysis.manifest
        if not analysis.is_valid:
            raise VersionMismatchError(
                f"{backup_path}: Backup manifest version {manifest.version} is not supported "
                f"(supported: {MANIFEST_VERSION_MIN_SUPPORTED}-{MANIFEST_VERSION_MAX_SUPPORTED})",
                expected=f"{MANIFEST_VERSION_MIN_SUPPORTED}-{MANIFEST_VERSION_MAX_SUPPORTED}",
                found=str(manifest.version),
            )

        if analysis.requires_password and options.password is None:
            raise PasswordRequiredError()

        self._analysis = analysis
        result = RestoreResult(is_dry_run=options.dry_run)

        with tempfile.TemporaryDirectory(prefix="cfgkeep-restore-") as temp_dir:
            temp_path = Path(temp_dir)
            data_path = temp_path / DATA_ENTRY
            write_file(data_path, read_entry(backup_path, DATA_ENTRY))

            if options.verify_checksum:
                expected = manifest.integrity.sha256
                if expected:
                    actual, _ = hash_file(data_path)
                    result.checksum_valid = actual == expected
                    if not result.checksum_valid:
                        logger.warning(f"Checksum mismatch! Expected: {expected}, Got: {actual}")
                        raise InvalidBackupError(
                            f"{backup_path}: Data archive checksum verification failed - "
                            "backup may be corrupted"
                        )
                    logger.debug(f"Checksum verified: {actual}")
                else:
                    logger.debug("No checksum in manifest, skipping verification")

            self._extract_dir = temp_path / "extracted"
            extract_archive(data_path, self._extract_dir, options.password)

            self._restore_settings(result)
            self._restore_sub_settings(result)
            self._restore_external_configs(result)

        if not options.dry_run:
            self.store.invalidate_cache()

        logger.info(
            f"{self.mode}Restore complete: {len(result.restored)} restored, "
            f"{len(result.skipped)} skipped, {len(result.external_pending)} pending"
        )
        return result

    def _apply(
        self,
        result: RestoreResult,
        item_id: str,
        exists: bool,
        write: Callable[[], object],
    ) -> None:
        if exists and not self.options.overwrite_existing:
            result.skipped.append(item_id)
            logger.debug(f"{self.mode}Skipping {item_id} (exists, overwrite disabled)")
        elif self.options.dry_run:
            result.restored.append(item_id)
            logger.debug(f"{self.mode}Would restore {item_id}")
        else:
            write()
            result.restored.append(item_id)
            logger.debug(f"Restored {item_id}")

    # -------------------------------------------------------------------------
    # Primary settings
    # -------------------------------------------------------------------------

    @property
    def _settings_stem(self) -> str:
        return Path(self.store.settings_filename).stem

    def _load_settings(self, directory: Path) -> dict[str, Any] | None:
        loaded = load_document_agnostic(directory, self._settings_stem, self.store.storage)
        if loaded is None:
            return None
        document, _ext = loaded
        if document is None:
            return {}
        if not isinstance(document, dict):
            raise InvalidBackupError(f"Settings document in backup is not a mapping: {directory}")
        return document

    def _backup_profile_names(self) -> list[str]:
        profiles_dir = self._extract_dir / PROFILES_DIR
        if not profiles_dir.is_dir():
            return []
        return sorted(p.name for p in profiles_dir.iterdir() if p.is_dir())

    def _backup_active_profile(self) -> str | None:
        loaded = load_document_agnostic(self._extract_dir, MANIFEST_STEM, self.store.storage)
        if loaded is None or not isinstance(loaded[0], dict):
            return None
        return ProfileManifest.from_dict(loaded[0]).active

    def _restore_settings(self, result: RestoreResult) -> None:
        if not self.options.restore_settings or not self.analysis.manifest.contents.settings:
            return
        if self.store.profiles is None:
            self._restore_flat_settings(result)
        else:
            self._restore_profiled_settings(result)

    def _restore_flat_settings(self, result: RestoreResult) -> None:
        source_dir = self._extract_dir
        document = self._load_settings(source_dir)
        if document is None and self._backup_profile_names():
            # Profiled backup into a flat store: take one profile
            profile = self.options.restore_profile or self._backup_active_profile()
            if profile is None:
                logger.warning("Cannot choose a profile from the backup for a flat store, skipping settings")
                return
            document = self._load_settings(self._extract_dir / PROFILES_DIR / profile)
        if document is None:
            logger.warning(f"{self.mode}No settings file found in backup")
            return

        dest = self.store.settings_path()
        self._apply(
            result,
            self.store.settings_filename,
            dest.exists(),
            lambda: self.store.write_settings_document(document),
        )

    def _restore_profiled_settings(self, result: RestoreResult) -> None:
        profiles = self.store.profiles
        assert profiles is not None
        storage = self.store.storage

        loaded = load_document_agnostic(self._extract_dir, MANIFEST_STEM, storage)
        if loaded is not None:
            manifest_doc = loaded[0]
            manifest_path = profiles.manifest_path
            self._apply(
                result,
                manifest_path.name,
                manifest_path.exists(),
                lambda: storage.write(manifest_path, manifest_doc),
            )

        restore_profile = self.options.restore_profile
        backup_profiles = self._backup_profile_names()

        if not backup_profiles:
            # Flat backup into a profiled store
            document = self._load_settings(self._extract_dir)
            if document is not None:
                target = (
                    self.options.restore_profile_as or restore_profile or profiles.peek_active()
                )
                self._restore_profile_settings(result, target, document)
            return

        for name in [restore_profile] if restore_profile else backup_profiles:
            source = self._extract_dir / PROFILES_DIR / name
            if not source.is_dir():
                logger.warning(f"{self.mode}Profile '{name}' not found in backup")
                continue
            document = self._load_settings(source)
            if document is None:
                continue
            target = (self.options.restore_profile_as or name) if restore_profile else name
            self._restore_profile_settings(result, target, document)

    def _restore_profile_settings(
        self, result: RestoreResult, target: str, document: dict[str, Any]
    ) -> None:
        profiles = self.store.profiles
        assert profiles is not None

        def write() -> None:
            profiles.register(target)
            self.store.write_settings_document(document, target)

        self._apply(
            result,
            f"{PROFILES_DIR}/{target}/{self.store.settings_filename}",
            self.store.settings_path(target).exists(),
            write,
        )

    # -------------------------------------------------------------------------
    # Sub-settings
    # -------------------------------------------------------------------------

    def _restore_sub_settings(self, result: RestoreResult) -> None:
        contents = self.analysis.manifest.contents
        requested = self.options.restore_sub_settings or contents.sub_settings_list()

        for category, items_filter in requested.items():
            try:
                sub = self.store.sub_settings(category)
            except SubSettingsNotRegisteredError:
                logger.warning(f"Sub-settings type '{category}' not registered, skipping")
                result.skipped.append(category)
                continue

            entry = contents.sub_settings.get(category)
            if entry is None:
                logger.warning(f"{self.mode}Sub-settings '{category}' not in backup, skipping")
                result.skipped.append(category)
                continue

            if entry.profiled is not None:
                if sub.profiles_enabled():
                    self._restore_profiled_to_profiled(sub, entry, items_filter, result)
                elif self.options.restore_profile:
                    self._restore_profile_to_flat(sub, entry, items_filter, result)
                else:
                    logger.warning(
                        f"Cannot restore profiled backup of '{category}' to non-profiled "
                        "target without specifying a profile to restore"
                    )
                    result.skipped.append(category)
            elif sub.profiles_enabled():
                logger.warning(
                    f"Restoring non-profiled backup of '{category}' into a profiled "
                    "target is not supported, skipping"
                )
                result.skipped.append(category)
            else:
                shape = entry.single_file if entry.single_file is not None else entry.item_names()
                entries = self._read_entries(self._extract_dir / category, shape, category, result)
                self._apply_entries(sub, entries, items_filter, None, result)

    def _staged_path(self, directory: Path, filename: str) -> Path:
        path = directory / filename
        if not path.resolve().is_relative_to(self._extract_dir.resolve()):
            raise InvalidBackupError(f"Unsafe path in manifest: {filename}")
        return path

    def _read_entries(
        self,
        directory: Path,
        shape: str | list[str],
        category: str,
        result: RestoreResult,
    ) -> list[tuple[str, Any]]:
        """Load staged entries: ``shape`` is a single-file name or a list of entry names."""
        if isinstance(shape, str):
            path = self._staged_path(directory, shape)
            if not path.is_file():
                logger.warning(f"{self.mode}Missing {category}/{shape} in backup, skipping")
                result.skipped.append(f"{category}/{shape}")
                return []
            data = _read_staged(path)
            if data is None:
                return []
            if not isinstance(data, dict):
                raise InvalidBackupError(f"{category}/{shape} in backup is not a mapping")
            return list(data.items())

        entries = []
        for name in shape:
            path = self._staged_path(directory, STAGING_STORAGE.filename(name))
            if not path.is_file():
                logger.warning(f"{self.mode}Missing {category}/{name} in backup, skipping")
                result.skipped.append(f"{category}/{name}")
                continue
            entries.append((name, _read_staged(path)))
        return entries

    def _apply_entries(
        self,
        sub: SubSettings,
        entries: list[tuple[str, Any]],
        items_filter: list[str],
        profile: str | None,
        result: RestoreResult,
    ) -> None:
        for name, value in entries:
            if items_filter and name not in items_filter:
                continue
            item_id = f"{sub.name}/{profile}/{name}" if profile else f"{sub.name}/{name}"
            self._apply(
                result,
                item_id,
                sub.exists(name, profile),
                lambda name=name, value=value: sub.set(name, value, profile=profile),
            )

    def _restore_profiled_to_profiled(
        self,
        sub: SubSettings,
        entry: SubSettingsManifestEntry,
        items_filter: list[str],
        result: RestoreResult,
    ) -> None:
        profiles = sub.profiles
        assert profiles is not None and entry.profiled is not None
        category_dir = self._extract_dir / sub.name

        loaded = load_document_agnostic(category_dir, MANIFEST_STEM, sub.storage)
        manifest_path = profiles.manifest_path
        if loaded is not None and not self.options.dry_run:
            if not manifest_path.exists() or self.options.overwrite_existing:
                sub.storage.write(manifest_path, loaded[0])

        restore_profile = self.options.restore_profile
        for name in [restore_profile] if restore_profile else sorted(entry.profiled):
            shape = entry.profiled.get(name)
            if shape is None:
                logger.warning(f"{self.mode}Profile '{name}' of '{sub.name}' not found in backup")
                continue
            target = (self.options.restore_profile_as or name) if restore_profile else name
            if not self.options.dry_run:
                profiles.register(target)
            entries = self._read_entries(category_dir / PROFILES_DIR / name, shape, sub.name, result)
            self._apply_entries(sub, entries, items_filter, target, result)

    def _restore_profile_to_flat(
        self,
        sub: SubSettings,
        entry: SubSettingsManifestEntry,
        items_filter: list[str],
        result: RestoreResult,
    ) -> None:
        assert entry.profiled is not None and self.options.restore_profile is not None
        name = self.options.restore_profile
        shape = entry.profiled.get(name)
        if shape is None:
            logger.warning(f"{self.mode}Profile '{name}' of '{sub.name}' not found in backup")
            result.skipped.append(sub.name)
            return
        directory = self._extract_dir / sub.name / PROFILES_DIR / name
        entries = self._read_entries(directory, shape, sub.name, result)
        self._apply_entries(sub, entries, items_filter, None, result)

    # -------------------------------------------------------------------------
    # External configs
    # -------------------------------------------------------------------------

    def _restore_external_configs(self, result: RestoreResult) -> None:
        requested = self.options.restore_external_configs
        if not requested and self.options.restore_sub_settings:
            return

        external_dir = self._extract_dir / EXTERNAL_DIR
        for config_id in self.analysis.manifest.contents.external_configs:
            if requested and config_id not in requested:
                continue
            self._restore_external_config(config_id, external_dir, result)

    def _restore_external_config(
        self, config_id: str, external_dir: Path, result: RestoreResult
    ) -> None:
        external = self.store.resolve_external_config(config_id)
        if external is None:
            result.external_pending.append(config_id)
            logger.warning(f"Unknown external config ID: {config_id}, requires manual restore")
            return

        source = external_dir / external.archive_filename
        if not source.is_file():
            logger.warning(f"{self.mode}External config {config_id} missing from backup, skipping")
            result.skipped.append(config_id)
            return
        data = source.read_bytes()

        target = external.import_target
        if isinstance(target, ReadOnlyTarget):
            logger.debug(f"Skipping read-only external config: {config_id}")
            result.skipped.append(config_id)

        elif isinstance(target, FileTarget):
            dest = Path(target.path)
            self._apply(result, config_id, dest.exists(), lambda: write_file(dest, data))

        elif isinstance(target, CommandTarget):
            if self.options.dry_run:
                result.restored.append(config_id)
                logger.debug(f"{self.mode}Would pipe {config_id} to command: {target.program}")
                return
            command = [target.program, *target.args]
            try:
                completed = subprocess.run(command, input=data, capture_output=True, check=False)
            except OSError as e:
                raise RestoreError(f"Failed to run command '{target.program}': {e}") from e
            if completed.returncode != 0:
                stderr = completed.stderr.decode("utf-8", errors="replace").strip()
                raise RestoreError(
                    f"Command '{target.program}' exited with code {completed.returncode}: {stderr}"
                )
            result.restored.append(config_id)
            logger.debug(f"Restored external {config_id} via command")

        elif isinstance(target, HandlerTarget):
            if self.options.dry_run:
                result.restored.append(config_id)
                logger.debug(f"{self.mode}Would call custom handler for {config_id}")
                return
            try:
                target.handler(data)
            except Exception as e:
                raise ExternalHandlerError(config_id, e) from e
            result.restored.append(config_id)
            logger.debug(f"Restored external {config_id} via handler")

        else:
            raise RestoreError(f"Unsupported import target for '{config_id}': {target!r}")
