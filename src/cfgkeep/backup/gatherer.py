"""
Export gatherer: stages everything a backup should contain.

The gatherer writes plain files into a staging directory that the archive
codec then compresses:

    settings.<ext>                              flat primary settings
    .profiles.<ext>, profiles/<p>/settings.<ext>  profiled primary settings
    <category>/<category>.json                  single-file sub-settings
    <category>/<entry>.json                     multi-file sub-settings
    <category>/.profiles.<ext>, <category>/profiles/<p>/...
    external/<archive_filename>                 external configs

Every settings document passes through the redaction walker before it is
written, one file at a time.
"""

from __future__ import annotations

import copy
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cfgkeep.backup.models import (
    BackupContents,
    BackupOptions,
    CommandSource,
    ContentSource,
    ExternalConfig,
    FileSource,
    LiveStore,
    SubSettingsManifestEntry,
)
from cfgkeep.backup.redaction import prefixed_metadata, redact_or_resolve
from cfgkeep.config.schema import get_dotted, set_dotted
from cfgkeep.errors import (
    BackupError,
    DirectoryCreateError,
    FileReadError,
    FileWriteError,
    SubSettingsNotRegisteredError,
)
from cfgkeep.store.profiles import PROFILES_DIR
from cfgkeep.store.secrets import vault_key
from cfgkeep.store.storage import JsonStorage, StorageBackend
from cfgkeep.store.sub_settings import SubSettings

logger = logging.getLogger(__name__)

EXTERNAL_DIR = "external"

# Sub-settings are always staged as JSON, whatever the store format
STAGING_STORAGE = JsonStorage()


@dataclass
class GatherResult:
    """Manifest contents plus the uncompressed size of everything staged."""

    contents: BackupContents
    total_bytes: int


def copy_file(src: Path, dest: Path) -> int:
    try:
        data = src.read_bytes()
    except OSError as e:
        raise FileReadError(src, e) from e
    return write_file(dest, data)


def write_file(dest: Path, data: bytes) -> int:
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DirectoryCreateError(dest.parent, e) from e
    try:
        dest.write_bytes(data)
    except OSError as e:
        raise FileWriteError(dest, e) from e
    return len(data)


class ExportGatherer:
    """
    Stage the files selected by BackupOptions.

    Args:
        store: Live store to read from.
        options: Backup selection.
        staging_dir: Empty directory to write into.
        include_secrets: Resolve secret values instead of nulling them.
    """

    def __init__(
        self,
        store: LiveStore,
        options: BackupOptions,
        staging_dir: Path,
        include_secrets: bool,
    ) -> None:
        self.store = store
        self.options = options
        self.staging_dir = Path(staging_dir)
        self.include_secrets = include_secrets

    def gather(self) -> GatherResult:
        export_type = self.options.export_type
        if export_type.is_single:
            return self._gather_single()

        total_bytes = 0
        file_count = 0

        settings_included = False
        if self.options.include_settings or export_type.is_full:
            written, count = self._gather_settings()
            total_bytes += written
            file_count += count
            settings_included = count > 0

        sub_settings: dict[str, SubSettingsManifestEntry] = {}
        for category in self._selected_categories():
            try:
                sub = self.store.sub_settings(category)
            except SubSettingsNotRegisteredError:
                logger.warning(f"Sub-settings type '{category}' not registered, skipping")
                continue

            entry, written, count = self._gather_category(sub)
            if entry is not None:
                sub_settings[category] = entry
            total_bytes += written
            file_count += count

        external_ids, written, count = self._gather_externals()
        total_bytes += written
        file_count += count

        logger.debug(
            f"Staged {file_count} files ({total_bytes:,} bytes): settings={settings_included}, "
            f"sub_settings={sorted(sub_settings)}, external={external_ids}"
        )
        return GatherResult(
            contents=BackupContents(
                settings=settings_included,
                file_count=file_count,
                sub_settings=sub_settings,
                external_configs=tuple(external_ids),
            ),
            total_bytes=total_bytes,
        )

    # -------------------------------------------------------------------------
    # Primary settings
    # -------------------------------------------------------------------------

    def _redact(self, document: Any, prefix: str, metadata: dict) -> None:
        redact_or_resolve(document, prefix, metadata, self.include_secrets, self.store.vault)

    def _stage_document(self, dest: Path, document: Any, storage: StorageBackend) -> int:
        return storage.write(dest, document)

    def _read_settings(self, profile: str | None = None) -> dict[str, Any] | None:
        """
        Read a settings document for staging.

        Secrets set through the store live only in the vault. When they are
        included, each vault-held secret gets a placeholder leaf so the
        redaction walker can fill it in, even if no file exists yet.
        """
        document = self.store.read_settings_document(profile)
        if not self.include_secrets:
            return document

        vault = self.store.vault
        held = [
            (key, meta)
            for key, meta in self.store.schema.items()
            if meta.secret and vault.get(vault_key("", key)) is not None
        ]
        if not held:
            return document

        document = document if document is not None else {}
        for key, meta in held:
            found, _ = get_dotted(document, key)
            if not found:
                set_dotted(document, key, copy.deepcopy(meta.default))
        return document

    def _gather_settings(self) -> tuple[int, int]:
        profiles = self.store.profiles
        storage = self.store.storage
        filename = self.store.settings_filename

        if profiles is None:
            document = self._read_settings()
            if document is None:
                logger.debug("No settings file to back up")
                return 0, 0
            self._redact(document, "", self.store.schema)
            return self._stage_document(self.staging_dir / filename, document, storage), 1

        available = profiles.list()
        written = 0
        count = 0
        manifest_path = profiles.manifest_path
        if manifest_path.exists():
            written += copy_file(manifest_path, self.staging_dir / manifest_path.name)
            count += 1

        for profile in self._selected_profiles(available):
            document = self._read_settings(profile)
            if document is None:
                logger.debug(f"Profile '{profile}' has no settings file, skipping")
                continue
            self._redact(document, "", self.store.schema)
            dest = self.staging_dir / PROFILES_DIR / profile / filename
            written += self._stage_document(dest, document, storage)
            count += 1
        return written, count

    def _selected_profiles(self, available: list[str]) -> list[str]:
        wanted = self.options.include_profiles
        if not wanted:
            return available
        missing = [p for p in wanted if p not in available]
        if missing:
            logger.warning(f"Requested profiles not found, skipping: {', '.join(missing)}")
        return [p for p in available if p in wanted]

    # -------------------------------------------------------------------------
    # Sub-settings
    # -------------------------------------------------------------------------

    def _selected_categories(self) -> list[str]:
        requested = list(
            dict.fromkeys(
                list(self.options.include_sub_settings)
                + list(self.options.include_sub_settings_items)
            )
        )
        if not requested and self.options.export_type.is_full:
            requested = self.store.sub_settings_types()
        excluded = set(self.options.exclude_sub_settings)
        return [c for c in requested if c not in excluded]

    def _gather_category(
        self, sub: SubSettings
    ) -> tuple[SubSettingsManifestEntry | None, int, int]:
        category_dir = self.staging_dir / sub.name
        if sub.profiles is None:
            shape, written, count = self._stage_entries(sub, category_dir, None, allow_empty=True)
            if isinstance(shape, str):
                return SubSettingsManifestEntry.single(shape), written, count
            return SubSettingsManifestEntry.multi(shape or []), written, count

        available = sub.profiles.list()
        written = 0
        count = 0
        manifest_path = sub.profiles.manifest_path
        if manifest_path.exists():
            written += copy_file(manifest_path, category_dir / manifest_path.name)
            count += 1

        profiled: dict[str, str | list[str]] = {}
        for profile in self._selected_profiles(available):
            dest = category_dir / PROFILES_DIR / profile
            shape, profile_written, profile_count = self._stage_entries(
                sub, dest, profile, allow_empty=False
            )
            written += profile_written
            count += profile_count
            if shape:
                profiled[profile] = shape
        return SubSettingsManifestEntry.with_profiles(profiled), written, count

    def _stage_entries(
        self,
        sub: SubSettings,
        dest_dir: Path,
        profile: str | None,
        allow_empty: bool,
    ) -> tuple[str | list[str] | None, int, int]:
        """
        Stage the (filtered) entries of one category or profile.

        Returns:
            (filename for single-file or entry names for multi-file, bytes, files)
        """
        items_filter = self.options.include_sub_settings_items.get(sub.name) or []
        names = [n for n in sub.list(profile) if not items_filter or n in items_filter]
        if not names and not allow_empty:
            return None, 0, 0

        if sub.is_single_file():
            data: dict[str, Any] = {}
            for name in names:
                data[name] = self._redacted_entry(sub, name, profile)
            filename = STAGING_STORAGE.filename(sub.name)
            return filename, self._stage_document(dest_dir / filename, data, STAGING_STORAGE), 1

        written = 0
        for name in names:
            value = self._redacted_entry(sub, name, profile)
            written += self._stage_document(
                dest_dir / STAGING_STORAGE.filename(name), value, STAGING_STORAGE
            )
        return names, written, len(names)

    def _redacted_entry(self, sub: SubSettings, name: str, profile: str | None) -> Any:
        prefix = f"{sub.name}.{name}"
        value = sub.get_value(name, profile)
        self._redact(value, prefix, prefixed_metadata(prefix, sub.metadata))
        return value

    def _gather_single(self) -> GatherResult:
        export_type = self.options.export_type
        category = export_type.settings_type or ""
        name = export_type.name or ""

        sub = self.store.sub_settings(category)
        value = self._redacted_entry(sub, name, None)
        dest = self.staging_dir / category / STAGING_STORAGE.filename(name)
        written = self._stage_document(dest, value, STAGING_STORAGE)

        logger.debug(f"Staged single entry {category}/{name} ({written:,} bytes)")
        return GatherResult(
            contents=BackupContents(
                settings=False,
                file_count=1,
                sub_settings={category: SubSettingsManifestEntry.multi([name])},
            ),
            total_bytes=written,
        )

    # -------------------------------------------------------------------------
    # External configs
    # -------------------------------------------------------------------------

    def _selected_externals(self) -> list[ExternalConfig]:
        requested = self.options.include_external_configs
        if not requested:
            if not self.options.export_type.is_full:
                return []
            seen: set[str] = set()
            selected = []
            for external in self.store.external_configs():
                if external.optional or external.id in seen:
                    continue
                seen.add(external.id)
                selected.append(external)
            return selected

        selected = []
        for config_id in requested:
            external = self.store.resolve_external_config(config_id)
            if external is None:
                logger.warning(f"External config '{config_id}' not registered, skipping")
                continue
            selected.append(external)
        return selected

    def _gather_externals(self) -> tuple[list[str], int, int]:
        ids: list[str] = []
        written = 0
        for external in self._selected_externals():
            data = self._export_bytes(external)
            if data is None:
                continue
            filename = external.archive_filename
            if "/" in filename or "\\" in filename or filename in ("", ".", ".."):
                raise BackupError(f"Invalid archive filename for external config '{external.id}': {filename}")
            written += write_file(self.staging_dir / EXTERNAL_DIR / filename, data)
            ids.append(external.id)
        return ids, written, len(ids)

    def _export_bytes(self, external: ExternalConfig) -> bytes | None:
        source = external.export_source
        if isinstance(source, FileSource):
            path = Path(source.path)
            if not path.is_file():
                logger.debug(f"External config '{external.id}' source {path} not found, skipping")
                return None
            try:
                return path.read_bytes()
            except OSError as e:
                raise FileReadError(path, e) from e

        if isinstance(source, CommandSource):
            command = [source.program, *source.args]
            try:
                completed = subprocess.run(command, capture_output=True, check=False)
            except OSError as e:
                raise BackupError(f"Failed to run command '{source.program}': {e}") from e
            if completed.returncode != 0:
                stderr = completed.stderr.decode("utf-8", errors="replace").strip()
                raise BackupError(
                    f"Command '{source.program}' for external config '{external.id}' "
                    f"exited with code {completed.returncode}: {stderr}"
                )
            return completed.stdout

        if isinstance(source, ContentSource):
            return bytes(source.data)

        raise BackupError(f"Unsupported export source for '{external.id}': {source!r}")
