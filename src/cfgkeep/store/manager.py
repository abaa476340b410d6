"""
The live settings store.

SettingsManager owns one configuration directory:

    <config_dir>/settings.json              primary settings (flat store)
    <config_dir>/.profiles.json             profile manifest (profiled store)
    <config_dir>/profiles/<name>/settings.json
    <config_dir>/<category>/...             sub-settings
    <config_dir>/secrets.enc                encrypted vault (optional)

Values are addressed by dotted keys (``"ui.theme"``). Secret settings are
routed to the vault and the document only keeps their default.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cfgkeep.backup.models import ExternalConfig, ExternalConfigProvider
from cfgkeep.config.credentials import MemoryVault, SecretVault
from cfgkeep.config.schema import (
    SettingsSchema,
    delete_dotted,
    get_dotted,
    schema_defaults,
    set_dotted,
)
from cfgkeep.errors import (
    CfgKeepError,
    InvalidSettingValueError,
    SettingNotFoundError,
    SubSettingsNotRegisteredError,
)
from cfgkeep.store.profiles import PROFILES_DIR, ProfileManager
from cfgkeep.store.secrets import extract_secrets, vault_key
from cfgkeep.store.storage import JsonStorage, StorageBackend
from cfgkeep.store.sub_settings import SubSettings, SubSettingsConfig

if TYPE_CHECKING:
    from cfgkeep.backup.manager import BackupManager

logger = logging.getLogger(__name__)

# Top-level names a sub-settings category may not use
RESERVED_NAMES = frozenset({PROFILES_DIR, "external"})


@dataclass
class StoreConfig:
    """
    Static configuration of a settings store.

    Attributes:
        config_dir: Directory holding every file of the store.
        app_name: Application name, recorded in backups and used in filenames.
        app_version: Application version, compared when analyzing backups.
        storage: Serialization backend for settings documents.
        settings_stem: Primary settings filename without extension.
        profiles: Keep the primary settings per profile.
        schema: Declared settings keyed by dotted path.
        sub_settings: Sub-settings categories to register on startup.
        external_configs: Statically registered external configs.
    """

    config_dir: Path
    app_name: str = "cfgkeep"
    app_version: str = "0.0.0"
    storage: StorageBackend = field(default_factory=JsonStorage)
    settings_stem: str = "settings"
    profiles: bool = False
    schema: SettingsSchema = field(default_factory=dict)
    sub_settings: list[SubSettingsConfig] = field(default_factory=list)
    external_configs: list[ExternalConfig] = field(default_factory=list)


class SettingsManager:
    """
    Read and write settings, sub-settings and profiles for one application.

    Example:
        manager = SettingsManager(StoreConfig(
            config_dir=Path("~/.myapp").expanduser(),
            app_name="myapp",
            schema={"ui.theme": SettingMetadata.text("Theme", "light")},
        ))
        manager.set("ui.theme", "dark")
        result = manager.backup().create(BackupOptions(output_dir=backups))
    """

    def __init__(self, config: StoreConfig, vault: SecretVault | None = None) -> None:
        self.config = config
        self._config_dir = Path(config.config_dir)
        self._vault = vault if vault is not None else MemoryVault()
        self._profiles = (
            ProfileManager(self._config_dir, config.storage) if config.profiles else None
        )
        self._sub_settings: dict[str, SubSettings] = {}
        self._external_configs: list[ExternalConfig] = list(config.external_configs)
        self._providers: list[ExternalConfigProvider] = []
        self._cache: dict[str | None, dict[str, Any]] = {}
        self._lock = threading.RLock()

        for sub_config in config.sub_settings:
            self.register_sub_settings(sub_config)

    # -------------------------------------------------------------------------
    # Store description
    # -------------------------------------------------------------------------

    @property
    def app_name(self) -> str:
        return self.config.app_name

    @property
    def app_version(self) -> str:
        return self.config.app_version

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def storage(self) -> StorageBackend:
        return self.config.storage

    @property
    def schema(self) -> SettingsSchema:
        return self.config.schema

    @property
    def vault(self) -> SecretVault:
        return self._vault

    @property
    def profiles(self) -> ProfileManager | None:
        return self._profiles

    @property
    def settings_filename(self) -> str:
        return self.storage.filename(self.config.settings_stem)

    def settings_path(self, profile: str | None = None) -> Path:
        """Path of the primary settings file, per profile if profiles are on."""
        if self._profiles is None:
            return self._config_dir / self.settings_filename
        return self._profiles.profile_path(profile or self._profiles.active()) / self.settings_filename

    # -------------------------------------------------------------------------
    # Settings documents
    # -------------------------------------------------------------------------

    def read_settings_document(self, profile: str | None = None) -> dict[str, Any] | None:
        """Return the stored document as on disk, or None if there is none."""
        path = self.settings_path(profile)
        if not path.exists():
            return None
        document = self.storage.read(path)
        if document is None:
            return {}
        if not isinstance(document, dict):
            raise CfgKeepError(f"Settings file is not a mapping: {path}", {"path": str(path)})
        return document

    def write_settings_document(self, document: dict[str, Any], profile: str | None = None) -> None:
        """Write a whole document, moving secret values into the vault."""
        document = copy.deepcopy(document)
        extract_secrets(document, self.schema, self._vault)
        with self._lock:
            self.storage.write(self.settings_path(profile), document)
            self._cache.pop(profile, None)
            if profile is None or (self._profiles and profile == self._profiles.active()):
                self._cache.pop(None, None)

    def load(self, profile: str | None = None) -> dict[str, Any]:
        """Stored document merged over schema defaults. Secrets are not resolved."""
        with self._lock:
            if profile not in self._cache:
                document = schema_defaults(self.schema)
                _deep_merge(document, self.read_settings_document(profile) or {})
                self._cache[profile] = document
            return copy.deepcopy(self._cache[profile])

    def invalidate_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    # -------------------------------------------------------------------------
    # Dotted-key access
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """
        Get a setting value.

        Secret settings are read from the vault. A stored null counts as
        unset and yields the default.

        Raises:
            SettingNotFoundError: If the key is not declared in the schema.
        """
        meta = self.schema.get(key)
        if meta is None:
            raise SettingNotFoundError(key)

        if meta.secret:
            secret = self._vault.get(vault_key("", key))
            return secret if secret is not None else copy.deepcopy(meta.default)

        found, value = get_dotted(self.load(), key)
        if not found or value is None:
            return copy.deepcopy(meta.default)
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a setting value.

        Raises:
            SettingNotFoundError: If the key is not declared in the schema.
            InvalidSettingValueError: If the value fails validation.
        """
        meta = self.schema.get(key)
        if meta is None:
            raise SettingNotFoundError(key)
        reason = meta.validate(value)
        if reason:
            raise InvalidSettingValueError(key, reason)

        if meta.secret:
            if value is None or value == meta.default:
                self._vault.remove(vault_key("", key))
            else:
                self._vault.store(vault_key("", key), str(value))
            logger.debug(f"Updated secret setting {key}")
            return

        with self._lock:
            document = self.read_settings_document() or {}
            set_dotted(document, key, value)
            self.write_settings_document(document)
        logger.debug(f"Updated setting {key}")

    def reset(self, key: str) -> None:
        """Return a setting to its default."""
        meta = self.schema.get(key)
        if meta is None:
            raise SettingNotFoundError(key)

        if meta.secret:
            self._vault.remove(vault_key("", key))
            return

        with self._lock:
            document = self.read_settings_document()
            if document is not None and delete_dotted(document, key):
                self.write_settings_document(document)

    def reset_all(self) -> None:
        """Return every setting, secrets included, to its default."""
        for key, meta in self.schema.items():
            if meta.secret:
                self._vault.remove(vault_key("", key))
        with self._lock:
            self.write_settings_document({})
        logger.info(f"Reset all settings in {self._config_dir}")

    # -------------------------------------------------------------------------
    # Sub-settings
    # -------------------------------------------------------------------------

    def register_sub_settings(self, sub_config: SubSettingsConfig) -> SubSettings:
        if sub_config.name in RESERVED_NAMES or not sub_config.name:
            raise CfgKeepError(f"Invalid sub-settings category name: '{sub_config.name}'")
        sub = SubSettings(self._config_dir, sub_config, self.storage, self._vault)
        with self._lock:
            self._sub_settings[sub_config.name] = sub
        logger.debug(f"Registered sub-settings category '{sub_config.name}'")
        return sub

    def sub_settings(self, category: str) -> SubSettings:
        """
        Raises:
            SubSettingsNotRegisteredError: If the category is unknown.
        """
        with self._lock:
            try:
                return self._sub_settings[category]
            except KeyError:
                raise SubSettingsNotRegisteredError(category) from None

    def sub_settings_types(self) -> list[str]:
        with self._lock:
            return sorted(self._sub_settings)

    # -------------------------------------------------------------------------
    # External configs
    # -------------------------------------------------------------------------

    def register_external_config(self, external: ExternalConfig) -> None:
        with self._lock:
            self._external_configs.append(external)

    def register_external_provider(self, provider: ExternalConfigProvider) -> None:
        with self._lock:
            self._providers.append(provider)

    def external_configs(self) -> list[ExternalConfig]:
        """Static configs followed by provider configs."""
        with self._lock:
            configs = list(self._external_configs)
            providers = list(self._providers)
        for provider in providers:
            configs.extend(provider.get_configs())
        return configs

    def resolve_external_config(self, config_id: str) -> ExternalConfig | None:
        for external in self.external_configs():
            if external.id == config_id:
                return external
        return None

    # -------------------------------------------------------------------------
    # Backup
    # -------------------------------------------------------------------------

    def backup(self) -> BackupManager:
        from cfgkeep.backup.manager import BackupManager

        return BackupManager(self)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
