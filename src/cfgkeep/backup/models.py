"""
Data model for cfgkeep backups.

The manifest records what a backup contains and how to verify it. It is
written once as ``manifest.json`` in the container and never rewritten.
Options and result records are plain dataclasses that live only for the
duration of one backup or restore call.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from cfgkeep.errors import InvalidBackupError

if TYPE_CHECKING:
    from cfgkeep.config.credentials import SecretVault
    from cfgkeep.config.schema import SettingsSchema
    from cfgkeep.store.profiles import ProfileManager
    from cfgkeep.store.storage import StorageBackend
    from cfgkeep.store.sub_settings import SubSettings

MANIFEST_VERSION_CURRENT = 1
MANIFEST_VERSION_MIN_SUPPORTED = 1
MANIFEST_VERSION_MAX_SUPPORTED = 1

ProgressCallback = Callable[[int, int], None]


def is_manifest_version_supported(version: int) -> bool:
    return MANIFEST_VERSION_MIN_SUPPORTED <= version <= MANIFEST_VERSION_MAX_SUPPORTED


# -----------------------------------------------------------------------------
# Export selectors
# -----------------------------------------------------------------------------


class ExportKind(str, Enum):
    FULL = "full"
    SETTINGS_ONLY = "settings_only"
    SINGLE = "single"


@dataclass(frozen=True)
class ExportType:
    """
    What a backup exports.

    ``full`` exports everything, ``settings_only`` the primary settings plus
    any explicitly selected sub-settings, and ``single`` exactly one
    sub-settings entry.
    """

    kind: ExportKind = ExportKind.FULL
    settings_type: str | None = None
    name: str | None = None

    @classmethod
    def full(cls) -> ExportType:
        return cls(ExportKind.FULL)

    @classmethod
    def settings_only(cls) -> ExportType:
        return cls(ExportKind.SETTINGS_ONLY)

    @classmethod
    def single(cls, settings_type: str, name: str) -> ExportType:
        return cls(ExportKind.SINGLE, settings_type, name)

    @property
    def is_full(self) -> bool:
        return self.kind == ExportKind.FULL

    @property
    def is_settings_only(self) -> bool:
        return self.kind == ExportKind.SETTINGS_ONLY

    @property
    def is_single(self) -> bool:
        return self.kind == ExportKind.SINGLE

    def to_json_value(self) -> str | dict[str, Any]:
        if self.kind == ExportKind.SINGLE:
            return {"single": {"settings_type": self.settings_type, "name": self.name}}
        return self.kind.value

    @classmethod
    def from_json_value(cls, value: Any) -> ExportType:
        if value == ExportKind.FULL.value:
            return cls.full()
        if value == ExportKind.SETTINGS_ONLY.value:
            return cls.settings_only()
        if isinstance(value, dict) and isinstance(value.get("single"), dict):
            single = value["single"]
            if isinstance(single.get("settings_type"), str) and isinstance(single.get("name"), str):
                return cls.single(single["settings_type"], single["name"])
        raise InvalidBackupError(f"Unknown export type in manifest: {value!r}")

    def __str__(self) -> str:
        if self.kind == ExportKind.SINGLE:
            return f"single ({self.settings_type}/{self.name})"
        return self.kind.value


class SecretBackupPolicy(str, Enum):
    """How secret-flagged settings are treated when backing up."""

    EXCLUDE = "exclude"
    INCLUDE = "include"
    ENCRYPTED_ONLY = "encrypted_only"

    def include_secrets(self, password: str | None) -> bool:
        if self == SecretBackupPolicy.INCLUDE:
            return True
        if self == SecretBackupPolicy.ENCRYPTED_ONLY:
            return password is not None
        return False


# -----------------------------------------------------------------------------
# Manifest
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SubSettingsManifestEntry:
    """
    How one sub-settings category was exported.

    Exactly one of the shapes is set:
        single_file: filename of the one file holding every entry
        multi_file: names of the exported entries, one file each
        profiled: profile name -> filename (single-file) or entry names
    """

    single_file: str | None = None
    multi_file: tuple[str, ...] | None = None
    profiled: dict[str, str | list[str]] | None = None

    @classmethod
    def single(cls, filename: str) -> SubSettingsManifestEntry:
        return cls(single_file=filename)

    @classmethod
    def multi(cls, names: list[str]) -> SubSettingsManifestEntry:
        return cls(multi_file=tuple(names))

    @classmethod
    def with_profiles(cls, profiles: dict[str, str | list[str]]) -> SubSettingsManifestEntry:
        return cls(profiled=dict(profiles))

    @property
    def is_profiled(self) -> bool:
        return self.profiled is not None

    def item_names(self) -> list[str]:
        """Entry names for multi-file exports; empty for the other shapes."""
        return list(self.multi_file or ())

    def to_dict(self) -> dict[str, Any]:
        if self.profiled is not None:
            return {"profiled": {"profiles": dict(self.profiled)}}
        if self.single_file is not None:
            return {"single_file": self.single_file}
        return {"multi_file": list(self.multi_file or ())}

    @classmethod
    def from_dict(cls, data: Any) -> SubSettingsManifestEntry:
        """
        Parse a manifest entry.

        Raises:
            InvalidBackupError: If the shape is unknown or a name could
                resolve outside the category directory.
        """
        if isinstance(data, dict):
            if isinstance(data.get("single_file"), str):
                return cls.single(_staged_name(data["single_file"]))
            if isinstance(data.get("multi_file"), list):
                return cls.multi(_staged_names(data["multi_file"]))
            profiled = data.get("profiled")
            if isinstance(profiled, dict) and isinstance(profiled.get("profiles"), dict):
                profiles: dict[str, str | list[str]] = {}
                for name, value in profiled["profiles"].items():
                    profiles[_staged_name(name)] = (
                        _staged_name(value) if isinstance(value, str) else _staged_names(value)
                    )
                return cls.with_profiles(profiles)
        # Older manifests store a plain list of entry names
        if isinstance(data, list):
            return cls.multi(_staged_names(data))
        raise InvalidBackupError(f"Unknown sub-settings entry in manifest: {data!r}")


def _staged_name(name: Any) -> str:
    """Check a file, entry or profile name read from a manifest."""
    name = str(name)
    if (
        name in ("", ".", "..")
        or "/" in name
        or "\\" in name
        or "\x00" in name
        or Path(name).is_absolute()
    ):
        raise InvalidBackupError(f"Unsafe name in manifest: {name!r}")
    return name


def _staged_names(names: Any) -> list[str]:
    if not isinstance(names, list):
        raise InvalidBackupError(f"Expected a list of names in manifest, got {names!r}")
    return [_staged_name(n) for n in names]


@dataclass(frozen=True)
class BackupInfo:
    app_name: str
    app_version: str
    created_at: str
    export_type: ExportType = field(default_factory=ExportType.full)
    encrypted: bool = False
    user_note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "app_name": self.app_name,
            "app_version": self.app_version,
            "created_at": self.created_at,
            "export_type": self.export_type.to_json_value(),
            "encrypted": self.encrypted,
            "user_note": self.user_note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupInfo:
        return cls(
            app_name=data["app_name"],
            app_version=data["app_version"],
            created_at=data["created_at"],
            export_type=ExportType.from_json_value(data.get("export_type", "full")),
            encrypted=bool(data.get("encrypted", False)),
            user_note=data.get("user_note"),
        )


@dataclass(frozen=True)
class BackupContents:
    settings: bool = False
    file_count: int = 0
    sub_settings: dict[str, SubSettingsManifestEntry] = field(default_factory=dict)
    external_configs: tuple[str, ...] = ()

    def sub_settings_list(self) -> dict[str, list[str]]:
        """Category -> item filter covering everything in the backup."""
        return {name: [] for name in self.sub_settings}

    def to_dict(self) -> dict[str, Any]:
        return {
            "settings": self.settings,
            "file_count": self.file_count,
            "sub_settings": {k: v.to_dict() for k, v in self.sub_settings.items()},
            "external_configs": list(self.external_configs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupContents:
        return cls(
            settings=bool(data.get("settings", False)),
            file_count=int(data.get("file_count", 0)),
            sub_settings={
                k: SubSettingsManifestEntry.from_dict(v)
                for k, v in (data.get("sub_settings") or {}).items()
            },
            external_configs=tuple(data.get("external_configs") or ()),
        )


@dataclass(frozen=True)
class BackupIntegrity:
    sha256: str | None = None
    size_bytes: int = 0
    compressed_size_bytes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "compressed_size_bytes": self.compressed_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupIntegrity:
        return cls(
            sha256=data.get("sha256"),
            size_bytes=int(data.get("size_bytes", 0)),
            compressed_size_bytes=data.get("compressed_size_bytes"),
        )


@dataclass(frozen=True)
class BackupManifest:
    """Manifest containing backup metadata, contents and checksum."""

    version: int
    backup: BackupInfo
    contents: BackupContents
    integrity: BackupIntegrity

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "backup": self.backup.to_dict(),
            "contents": self.contents.to_dict(),
            "integrity": self.integrity.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupManifest:
        """
        Create manifest from dictionary.

        Raises:
            InvalidBackupError: If required fields are missing or malformed.
        """
        try:
            return cls(
                version=int(data["version"]),
                backup=BackupInfo.from_dict(data["backup"]),
                contents=BackupContents.from_dict(data.get("contents") or {}),
                integrity=BackupIntegrity.from_dict(data.get("integrity") or {}),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidBackupError(f"Malformed backup manifest: {e}") from e

    @classmethod
    def from_json(cls, text: str | bytes) -> BackupManifest:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidBackupError(f"Backup manifest is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidBackupError("Backup manifest must be a JSON object")
        return cls.from_dict(data)


# -----------------------------------------------------------------------------
# External configs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class FileSource:
    path: Path


@dataclass(frozen=True)
class CommandSource:
    """Run a program and archive its standard output."""

    program: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContentSource:
    data: bytes


ExportSource = FileSource | CommandSource | ContentSource


@dataclass(frozen=True)
class ReadOnlyTarget:
    """Archived for reference only; never restored."""


@dataclass(frozen=True)
class FileTarget:
    path: Path


@dataclass(frozen=True)
class CommandTarget:
    """Run a program with the archived bytes on standard input."""

    program: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class HandlerTarget:
    """Pass the archived bytes to an application callback."""

    handler: Callable[[bytes], None]


ImportTarget = ReadOnlyTarget | FileTarget | CommandTarget | HandlerTarget


@dataclass(frozen=True)
class ExternalConfig:
    """
    A file or command output owned by the application but kept outside the
    settings tree, included in backups under ``external/<archive_filename>``.
    """

    id: str
    export_source: ExportSource
    import_target: ImportTarget = field(default_factory=ReadOnlyTarget)
    archive_filename: str = ""
    display_name: str = ""
    description: str | None = None
    is_sensitive: bool = False
    optional: bool = False

    def __post_init__(self) -> None:
        if not self.archive_filename:
            object.__setattr__(self, "archive_filename", self.id)
        if not self.display_name:
            object.__setattr__(self, "display_name", self.id)

    @classmethod
    def for_file(cls, id: str, path: Path | str, **kwargs: Any) -> ExternalConfig:
        """Config exported from and restored to the same file."""
        path = Path(path)
        return cls(id, FileSource(path), FileTarget(path), **kwargs)


class ExternalConfigProvider(ABC):
    """Source of external configs registered at runtime."""

    @abstractmethod
    def get_configs(self) -> list[ExternalConfig]:
        """Return the configs currently available."""


# -----------------------------------------------------------------------------
# Options and results
# -----------------------------------------------------------------------------


@dataclass
class BackupOptions:
    """Options for creating a backup."""

    output_dir: Path = field(default_factory=Path.cwd)
    export_type: ExportType = field(default_factory=ExportType.full)
    password: str | None = None
    user_note: str | None = None
    include_settings: bool = True
    include_sub_settings: list[str] = field(default_factory=list)
    include_sub_settings_items: dict[str, list[str]] = field(default_factory=dict)
    exclude_sub_settings: list[str] = field(default_factory=list)
    include_external_configs: list[str] = field(default_factory=list)
    include_profiles: list[str] = field(default_factory=list)
    secret_policy: SecretBackupPolicy = SecretBackupPolicy.EXCLUDE
    filename_suffix: str | None = None
    on_progress: ProgressCallback | None = None

    def include_secrets(self) -> bool:
        return self.secret_policy.include_secrets(self.password)


@dataclass
class RestoreOptions:
    """
    Options for restoring a backup.

    ``restore_sub_settings`` maps category -> item names; an empty list
    restores every item of that category and an empty mapping restores
    every category in the backup.
    """

    backup_path: Path
    password: str | None = None
    restore_settings: bool = True
    restore_sub_settings: dict[str, list[str]] = field(default_factory=dict)
    restore_external_configs: list[str] = field(default_factory=list)
    overwrite_existing: bool = False
    dry_run: bool = False
    verify_checksum: bool = True
    restore_profile: str | None = None
    restore_profile_as: str | None = None


@dataclass
class RestoreResult:
    """What a restore did (or would do, for a dry run)."""

    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    external_pending: list[str] = field(default_factory=list)
    is_dry_run: bool = False
    checksum_valid: bool | None = None

    def has_changes(self) -> bool:
        return bool(self.restored)

    def total(self) -> int:
        return len(self.restored) + len(self.skipped)

    def would_change(self) -> bool:
        return bool(self.restored) or self.checksum_valid is False

    def to_dict(self) -> dict[str, Any]:
        return {
            "restored": list(self.restored),
            "skipped": list(self.skipped),
            "external_pending": list(self.external_pending),
            "is_dry_run": self.is_dry_run,
            "checksum_valid": self.checksum_valid,
        }


@dataclass
class BackupAnalysis:
    """Result of inspecting a backup without restoring it."""

    manifest: BackupManifest
    is_valid: bool = True
    warnings: list[str] = field(default_factory=list)
    requires_password: bool = False

    @property
    def app_name(self) -> str:
        return self.manifest.backup.app_name

    @property
    def app_version(self) -> str:
        return self.manifest.backup.app_version

    @property
    def created_at(self) -> str:
        return self.manifest.backup.created_at

    @property
    def user_note(self) -> str | None:
        return self.manifest.backup.user_note

    @property
    def export_type(self) -> ExportType:
        return self.manifest.backup.export_type

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest.to_dict(),
            "is_valid": self.is_valid,
            "warnings": list(self.warnings),
            "requires_password": self.requires_password,
        }


# -----------------------------------------------------------------------------
# Live store interface
# -----------------------------------------------------------------------------


class LiveStore(Protocol):
    """The operations the backup engine needs from a running store."""

    @property
    def app_name(self) -> str: ...

    @property
    def app_version(self) -> str: ...

    @property
    def config_dir(self) -> Path: ...

    @property
    def storage(self) -> StorageBackend: ...

    @property
    def schema(self) -> SettingsSchema: ...

    @property
    def vault(self) -> SecretVault: ...

    @property
    def profiles(self) -> ProfileManager | None: ...

    @property
    def settings_filename(self) -> str: ...

    def settings_path(self, profile: str | None = None) -> Path: ...

    def read_settings_document(self, profile: str | None = None) -> dict[str, Any] | None: ...

    def write_settings_document(
        self, document: dict[str, Any], profile: str | None = None
    ) -> None: ...

    def sub_settings(self, category: str) -> SubSettings: ...

    def sub_settings_types(self) -> list[str]: ...

    def external_configs(self) -> list[ExternalConfig]: ...

    def resolve_external_config(self, config_id: str) -> ExternalConfig | None: ...

    def invalidate_cache(self) -> None: ...
