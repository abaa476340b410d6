"""
Configuration settings management for cfgkeep.

This module handles loading, validating, and saving the tool's own
configuration: where the live store lives, what it contains, and how backups
are made. Configuration is read from YAML files with support for environment
variable overrides.

Configuration is loaded from ~/.cfgkeep/config.yaml by default, with the
path overridable via the CFGKEEP_CONFIG environment variable.

Example config.yaml:

    cfgkeep:
      log_level: INFO
    store:
      directory: ~/.myapp
      app_name: myapp
      app_version: 1.2.0
      format: json
      profiles: false
      secret_keys: [api.key]
      sub_settings:
        - name: remotes
          secret_fields: [token]
      external:
        - id: bashrc
          path: ~/.bashrc
          name: Shell profile
    backup:
      output_dir: ~/backups
      secret_policy: encrypted_only
      verify_checksum: true
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from cfgkeep.backup.models import ExternalConfig, SecretBackupPolicy
from cfgkeep.config.schema import SettingMetadata, SettingsSchema

if TYPE_CHECKING:
    from cfgkeep.config.credentials import SecretVault
    from cfgkeep.store.manager import SettingsManager

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".cfgkeep"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"


@dataclass
class SubSettingsDeclaration:
    """A sub-settings category declared in the config file."""

    name: str
    single_file: bool = False
    profiles: bool = False
    secret_fields: list[str] = field(default_factory=list)


@dataclass
class ExternalFileDeclaration:
    """A file outside the store that backups should carry."""

    id: str
    path: str
    archive_filename: str = ""
    optional: bool = False
    sensitive: bool = False
    name: str = ""
    description: str = ""


@dataclass
class StoreSettings:
    """Location and layout of the live settings store."""

    directory: str = str(DEFAULT_CONFIG_DIR / "store")
    app_name: str = "cfgkeep"
    app_version: str = "0.0.0"
    format: str = "json"
    settings_file: str = "settings"
    profiles: bool = False
    secret_keys: list[str] = field(default_factory=list)
    sub_settings: list[SubSettingsDeclaration] = field(default_factory=list)
    external: list[ExternalFileDeclaration] = field(default_factory=list)


@dataclass
class BackupSettings:
    """Backup defaults."""

    output_dir: str = str(DEFAULT_CONFIG_DIR / "backups")
    secret_policy: str = SecretBackupPolicy.EXCLUDE.value
    verify_checksum: bool = True


@dataclass
class Settings:
    """
    Complete cfgkeep configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with CFGKEEP_.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        store: The settings store to back up and restore.
        backup: Backup defaults.
    """

    log_level: str = "INFO"
    store: StoreSettings = field(default_factory=StoreSettings)
    backup: BackupSettings = field(default_factory=BackupSettings)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from CFGKEEP_CONFIG environment variable if set,
    otherwise returns the default path (~/.cfgkeep/config.yaml).
    """
    env_path = os.environ.get("CFGKEEP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses CFGKEEP_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")
        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_data = _settings_to_dict(settings)

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def build_manager(settings: Settings, vault: SecretVault | None = None) -> SettingsManager:
    """
    Open the live store described by ``settings``.

    Secret keys become password settings in the schema; secret fields of a
    sub-settings category become that category's metadata.
    """
    from cfgkeep.store.manager import SettingsManager, StoreConfig
    from cfgkeep.store.storage import storage_for_format
    from cfgkeep.store.sub_settings import SubSettingsConfig

    store = settings.store
    schema: SettingsSchema = {key: SettingMetadata.password(key) for key in store.secret_keys}

    sub_configs = []
    for declaration in store.sub_settings:
        sub_config = SubSettingsConfig(
            declaration.name,
            single_file=declaration.single_file,
            profiles=declaration.profiles,
        )
        if declaration.secret_fields:
            sub_config = sub_config.with_metadata(
                {name: SettingMetadata.password(name) for name in declaration.secret_fields}
            )
        sub_configs.append(sub_config)

    externals = [
        ExternalConfig.for_file(
            declaration.id,
            Path(declaration.path).expanduser(),
            archive_filename=declaration.archive_filename,
            optional=declaration.optional,
            is_sensitive=declaration.sensitive,
            display_name=declaration.name,
            description=declaration.description or None,
        )
        for declaration in store.external
    ]

    config = StoreConfig(
        config_dir=Path(store.directory).expanduser(),
        app_name=store.app_name,
        app_version=store.app_version,
        storage=storage_for_format(store.format),
        settings_stem=store.settings_file,
        profiles=store.profiles,
        schema=schema,
        sub_settings=sub_configs,
        external_configs=externals,
    )
    return SettingsManager(config, vault)


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    cfgkeep_data = data.get("cfgkeep") or {}
    if "log_level" in cfgkeep_data:
        settings.log_level = str(cfgkeep_data["log_level"]).upper()

    store_data = data.get("store") or {}
    store = settings.store
    if "directory" in store_data:
        store.directory = str(store_data["directory"])
    if "app_name" in store_data:
        store.app_name = str(store_data["app_name"])
    if "app_version" in store_data:
        store.app_version = str(store_data["app_version"])
    if "format" in store_data:
        store.format = str(store_data["format"]).lower()
    if "settings_file" in store_data:
        store.settings_file = str(store_data["settings_file"])
    if "profiles" in store_data:
        store.profiles = bool(store_data["profiles"])
    if "secret_keys" in store_data:
        store.secret_keys = [str(key) for key in store_data["secret_keys"] or []]

    for item in store_data.get("sub_settings") or []:
        if isinstance(item, str):
            store.sub_settings.append(SubSettingsDeclaration(name=item))
            continue
        if not isinstance(item, dict) or "name" not in item:
            raise ConfigurationError(f"Invalid sub_settings entry: {item!r}")
        store.sub_settings.append(
            SubSettingsDeclaration(
                name=str(item["name"]),
                single_file=bool(item.get("single_file", False)),
                profiles=bool(item.get("profiles", False)),
                secret_fields=[str(f) for f in item.get("secret_fields") or []],
            )
        )

    for item in store_data.get("external") or []:
        if not isinstance(item, dict) or "id" not in item or "path" not in item:
            raise ConfigurationError(f"Invalid external entry (needs id and path): {item!r}")
        store.external.append(
            ExternalFileDeclaration(
                id=str(item["id"]),
                path=str(item["path"]),
                archive_filename=str(item.get("archive_filename", "")),
                optional=bool(item.get("optional", False)),
                sensitive=bool(item.get("sensitive", False)),
                name=str(item.get("name", "")),
                description=str(item.get("description", "")),
            )
        )

    backup_data = data.get("backup") or {}
    if "output_dir" in backup_data:
        settings.backup.output_dir = str(backup_data["output_dir"])
    if "secret_policy" in backup_data:
        settings.backup.secret_policy = str(backup_data["secret_policy"]).lower()
    if "verify_checksum" in backup_data:
        settings.backup.verify_checksum = bool(backup_data["verify_checksum"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "CFGKEEP_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "CFGKEEP_STORE_DIR": ("store.directory", str),
        "CFGKEEP_BACKUP_DIR": ("backup.output_dir", str),
        "CFGKEEP_SECRET_POLICY": ("backup.secret_policy", lambda x: x.lower()),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    valid_formats = {"json", "yaml", "yml"}
    if settings.store.format not in valid_formats:
        raise ConfigurationError(
            f"Invalid store format: {settings.store.format}. "
            f"Must be one of: {', '.join(sorted(valid_formats))}"
        )

    valid_policies = {policy.value for policy in SecretBackupPolicy}
    if settings.backup.secret_policy not in valid_policies:
        raise ConfigurationError(
            f"Invalid secret_policy: {settings.backup.secret_policy}. "
            f"Must be one of: {', '.join(sorted(valid_policies))}"
        )

    if not settings.store.settings_file:
        raise ConfigurationError("settings_file cannot be empty")

    reserved = {"profiles", "external"}
    seen: set[str] = set()
    for declaration in settings.store.sub_settings:
        if declaration.name in reserved:
            raise ConfigurationError(f"Sub-settings name is reserved: {declaration.name}")
        if declaration.name in seen:
            raise ConfigurationError(f"Duplicate sub-settings name: {declaration.name}")
        seen.add(declaration.name)

    external_ids: set[str] = set()
    for external in settings.store.external:
        if external.id in external_ids:
            raise ConfigurationError(f"Duplicate external config id: {external.id}")
        external_ids.add(external.id)


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    store = settings.store
    return {
        "cfgkeep": {
            "log_level": settings.log_level,
        },
        "store": {
            "directory": store.directory,
            "app_name": store.app_name,
            "app_version": store.app_version,
            "format": store.format,
            "settings_file": store.settings_file,
            "profiles": store.profiles,
            "secret_keys": list(store.secret_keys),
            "sub_settings": [
                {
                    "name": declaration.name,
                    "single_file": declaration.single_file,
                    "profiles": declaration.profiles,
                    "secret_fields": list(declaration.secret_fields),
                }
                for declaration in store.sub_settings
            ],
            "external": [
                {
                    "id": external.id,
                    "path": external.path,
                    "archive_filename": external.archive_filename,
                    "optional": external.optional,
                    "sensitive": external.sensitive,
                    "name": external.name,
                    "description": external.description,
                }
                for external in store.external
            ],
        },
        "backup": {
            "output_dir": settings.backup.output_dir,
            "secret_policy": settings.backup.secret_policy,
            "verify_checksum": settings.backup.verify_checksum,
        },
    }
