"""
The live settings store: primary settings, profiles and sub-settings.

Usage:
    from cfgkeep.store import SettingsManager, StoreConfig

    manager = SettingsManager(StoreConfig(config_dir=Path("~/.myapp").expanduser()))
    manager.set("ui.theme", "dark")
"""

from cfgkeep.store.manager import SettingsManager, StoreConfig
from cfgkeep.store.profiles import DEFAULT_PROFILE, ProfileManager, ProfileManifest
from cfgkeep.store.storage import JsonStorage, StorageBackend, YamlStorage, storage_for_format
from cfgkeep.store.sub_settings import SubSettings, SubSettingsConfig

__all__ = [
    "SettingsManager",
    "StoreConfig",
    "SubSettings",
    "SubSettingsConfig",
    "ProfileManager",
    "ProfileManifest",
    "DEFAULT_PROFILE",
    "StorageBackend",
    "JsonStorage",
    "YamlStorage",
    "storage_for_format",
]
