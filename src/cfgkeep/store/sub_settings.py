"""
Sub-settings: named categories of per-entity configuration.

A category (``"remotes"``, ``"connections"``) holds one value per entry
name. It is stored either as one file per entry or as a single file keyed by
entry name, and may optionally keep a separate set of entries per profile:

    <root>/<category>/<entry>.json                multi-file
    <root>/<category>/<category>.json             single-file
    <root>/<category>/.profiles.json              profiled
    <root>/<category>/profiles/<profile>/...      (either shape per profile)

Secret fields declared in the category metadata are kept in the vault under
``"{category}.{entry}.{field}"``; the file only holds the field default.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cfgkeep.config.credentials import SecretVault
from cfgkeep.config.schema import SettingsSchema
from cfgkeep.errors import (
    FileDeleteError,
    InvalidSettingValueError,
    SubSettingsEntryNotFoundError,
)
from cfgkeep.store.profiles import ProfileManager
from cfgkeep.store.secrets import clear_secrets, extract_secrets, inject_secrets
from cfgkeep.store.storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class SubSettingsConfig:
    """
    Registration of a sub-settings category.

    Attributes:
        name: Category name, also its directory name.
        single_file: Store all entries in one file instead of one per entry.
        profiles: Keep a separate set of entries per profile.
        metadata: Field metadata keyed by field path within an entry
            (``"token"``, ``"auth.password"``).
    """

    name: str
    single_file: bool = False
    profiles: bool = False
    metadata: SettingsSchema = field(default_factory=dict)

    @classmethod
    def multi_file(cls, name: str) -> SubSettingsConfig:
        return cls(name)

    @classmethod
    def singlefile(cls, name: str) -> SubSettingsConfig:
        return cls(name, single_file=True)

    def with_profiles(self) -> SubSettingsConfig:
        self.profiles = True
        return self

    def with_metadata(self, metadata: SettingsSchema) -> SubSettingsConfig:
        self.metadata = dict(metadata)
        return self


def _check_entry_name(category: str, name: str) -> None:
    if not name or name.startswith(".") or "/" in name or "\\" in name:
        raise InvalidSettingValueError(f"{category}.{name}", "invalid entry name")


class SubSettings:
    """Live access to one sub-settings category."""

    def __init__(
        self,
        config_dir: Path,
        config: SubSettingsConfig,
        storage: StorageBackend,
        vault: SecretVault,
    ) -> None:
        self.config = config
        self.storage = storage
        self.vault = vault
        self._root = Path(config_dir) / config.name
        self._profiles = ProfileManager(self._root, storage) if config.profiles else None
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def metadata(self) -> SettingsSchema:
        return self.config.metadata

    @property
    def extension(self) -> str:
        return self.storage.extension

    @property
    def profiles(self) -> ProfileManager | None:
        return self._profiles

    def root_path(self) -> Path:
        return self._root

    def is_single_file(self) -> bool:
        return self.config.single_file

    def profiles_enabled(self) -> bool:
        return self._profiles is not None

    def directory(self, profile: str | None = None) -> Path:
        """Directory holding the entries of ``profile`` (or the active one)."""
        if self._profiles is None:
            return self._root
        return self._profiles.profile_path(profile or self._profiles.active())

    def file_path(self, name: str | None = None, profile: str | None = None) -> Path:
        """
        Path of the file holding an entry.

        For single-file categories ``name`` is ignored and the shared file is
        returned.
        """
        directory = self.directory(profile)
        if self.config.single_file:
            return directory / self.storage.filename(self.config.name)
        if name is None:
            raise ValueError(f"Entry name required for multi-file category '{self.name}'")
        return directory / self.storage.filename(name)

    # -------------------------------------------------------------------------
    # Entry access
    # -------------------------------------------------------------------------

    def list(self, profile: str | None = None) -> list[str]:
        with self._lock:
            if self.config.single_file:
                return sorted(self._load_single(profile))

            directory = self.directory(profile)
            if not directory.is_dir():
                return []
            suffix = f".{self.extension}"
            return sorted(
                p.name[: -len(suffix)]
                for p in directory.iterdir()
                if p.is_file() and p.name.endswith(suffix) and not p.name.startswith(".")
            )

    def exists(self, name: str, profile: str | None = None) -> bool:
        with self._lock:
            if self.config.single_file:
                return name in self._load_single(profile)
            return self.file_path(name, profile).exists()

    def get_value(self, name: str, profile: str | None = None) -> Any:
        """
        Return an entry with secret fields resolved from the vault.

        Raises:
            SubSettingsEntryNotFoundError: If the entry does not exist.
        """
        with self._lock:
            if self.config.single_file:
                entries = self._load_single(profile)
                if name not in entries:
                    raise SubSettingsEntryNotFoundError(self.name, name)
                value = entries[name]
            else:
                path = self.file_path(name, profile)
                if not path.exists():
                    raise SubSettingsEntryNotFoundError(self.name, name)
                value = self.storage.read(path)

        if isinstance(value, dict) and self.metadata:
            inject_secrets(value, self.metadata, self.vault, self._secret_prefix(name))
        return value

    def set(self, name: str, value: Any, profile: str | None = None) -> None:
        """Create or replace an entry. Secret fields are moved to the vault."""
        _check_entry_name(self.name, name)
        value = copy.deepcopy(value)
        if isinstance(value, dict) and self.metadata:
            for key, meta in self.metadata.items():
                if key in value and not isinstance(value[key], dict):
                    reason = meta.validate(value[key])
                    if reason:
                        raise InvalidSettingValueError(f"{self.name}.{name}.{key}", reason)
            extract_secrets(value, self.metadata, self.vault, self._secret_prefix(name))

        with self._lock:
            if self.config.single_file:
                entries = self._load_single(profile)
                entries[name] = value
                self.storage.write(self.file_path(profile=profile), entries)
            else:
                self.storage.write(self.file_path(name, profile), value)
        logger.debug(f"Saved sub-settings entry {self.name}/{name}")

    def delete(self, name: str, profile: str | None = None) -> None:
        with self._lock:
            if self.config.single_file:
                entries = self._load_single(profile)
                if name not in entries:
                    raise SubSettingsEntryNotFoundError(self.name, name)
                del entries[name]
                self.storage.write(self.file_path(profile=profile), entries)
            else:
                path = self.file_path(name, profile)
                if not path.exists():
                    raise SubSettingsEntryNotFoundError(self.name, name)
                try:
                    path.unlink()
                except OSError as e:
                    raise FileDeleteError(path, e) from e

        if self.metadata:
            clear_secrets(self.metadata, self.vault, self._secret_prefix(name))
        logger.debug(f"Deleted sub-settings entry {self.name}/{name}")

    def _secret_prefix(self, name: str) -> str:
        # Vault keys are shared across profiles
        return f"{self.name}.{name}"

    def _load_single(self, profile: str | None) -> dict[str, Any]:
        path = self.file_path(profile=profile)
        if not path.exists():
            return {}
        data = self.storage.read(path)
        return data if isinstance(data, dict) else {}
