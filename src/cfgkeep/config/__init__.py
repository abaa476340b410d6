"""
Configuration management for cfgkeep.

Settings schema declarations, the secret vault, and the tool's own YAML
configuration.
"""

from cfgkeep.config.credentials import (
    CredentialError,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    EncryptedFileVault,
    InvalidPassphraseError,
    MemoryVault,
    SecretVault,
)
from cfgkeep.config.schema import SettingMetadata, SettingsSchema, SettingType
from cfgkeep.config.settings import (
    ConfigurationError,
    Settings,
    build_manager,
    load_config,
    save_config,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "build_manager",
    "ConfigurationError",
    # Schema
    "SettingMetadata",
    "SettingsSchema",
    "SettingType",
    # Vault
    "SecretVault",
    "MemoryVault",
    "EncryptedFileVault",
    "CredentialError",
    "CredentialStoreNotInitializedError",
    "CredentialStoreLockedError",
    "InvalidPassphraseError",
]
