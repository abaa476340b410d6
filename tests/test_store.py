"""
Tests for the live settings store.

Tests cover:
- Schema declarations, validation and dotted-key helpers
- JSON/YAML storage backends
- Profile manifests and the profile manager
- Sub-settings categories (single-file, multi-file, profiled)
- SettingsManager dotted-key access and secret routing
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from cfgkeep.backup.models import ExternalConfig, ExternalConfigProvider, FileSource
from cfgkeep.config.credentials import MemoryVault
from cfgkeep.config.schema import (
    SettingMetadata,
    delete_dotted,
    get_dotted,
    schema_defaults,
    set_dotted,
)
from cfgkeep.errors import (
    CfgKeepError,
    InvalidProfileNameError,
    InvalidSettingValueError,
    ParseError,
    ProfileAlreadyExistsError,
    ProfileError,
    ProfileNotFoundError,
    SettingNotFoundError,
    SubSettingsEntryNotFoundError,
    SubSettingsNotRegisteredError,
)
from cfgkeep.store.manager import SettingsManager, StoreConfig
from cfgkeep.store.profiles import DEFAULT_PROFILE, ProfileManager, validate_profile_name
from cfgkeep.store.storage import (
    JsonStorage,
    YamlStorage,
    load_document_agnostic,
    storage_for_format,
)
from cfgkeep.store.sub_settings import SubSettings, SubSettingsConfig

SCHEMA = {
    "ui.theme": SettingMetadata.select("Theme", "light", ["light", "dark"]),
    "ui.font_size": SettingMetadata.number("Font size", 12, min=6, max=72),
    "sync.enabled": SettingMetadata.toggle("Sync"),
    "api.key": SettingMetadata.password("API key"),
}


class TempDirTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestSchema(unittest.TestCase):
    """Tests for schema declarations and dotted-key helpers."""

    def test_password_is_secret(self) -> None:
        self.assertTrue(SettingMetadata.password("Key").secret)
        self.assertFalse(SettingMetadata.text("Name").secret)
        self.assertTrue(SettingMetadata.text("Token").as_secret().secret)

    def test_validate(self) -> None:
        self.assertIsNone(SCHEMA["ui.theme"].validate("dark"))
        self.assertIsNotNone(SCHEMA["ui.theme"].validate("blue"))
        self.assertIsNotNone(SCHEMA["ui.font_size"].validate(100))
        self.assertIsNotNone(SCHEMA["ui.font_size"].validate(True))
        self.assertIsNotNone(SCHEMA["sync.enabled"].validate("yes"))
        self.assertIsNone(SCHEMA["api.key"].validate(None))

    def test_schema_defaults(self) -> None:
        self.assertEqual(
            schema_defaults(SCHEMA),
            {"ui": {"theme": "light", "font_size": 12}, "sync": {"enabled": False}, "api": {"key": ""}},
        )

    def test_dotted_helpers(self) -> None:
        document = {}
        set_dotted(document, "a.b.c", 1)
        self.assertEqual(document, {"a": {"b": {"c": 1}}})
        self.assertEqual(get_dotted(document, "a.b.c"), (True, 1))
        self.assertEqual(get_dotted(document, "a.x"), (False, None))

        self.assertTrue(delete_dotted(document, "a.b.c"))
        self.assertEqual(document, {})
        self.assertFalse(delete_dotted(document, "a.b.c"))


class TestStorage(TempDirTestCase):
    """Tests for the storage backends."""

    def test_json_write_read(self) -> None:
        storage = JsonStorage()
        path = self.root / "nested" / "doc.json"

        written = storage.write(path, {"a": "ü"})

        self.assertEqual(storage.read(path), {"a": "ü"})
        self.assertEqual(written, len(path.read_bytes()))
        self.assertFalse((self.root / "nested" / ".doc.json.tmp").exists())

    def test_yaml_write_read(self) -> None:
        storage = YamlStorage()
        path = self.root / "doc.yaml"

        storage.write(path, {"a": [1, 2], "b": {"c": True}})

        self.assertEqual(storage.read(path), {"a": [1, 2], "b": {"c": True}})

    def test_parse_errors(self) -> None:
        path = self.root / "bad.json"
        path.write_text("{nope")

        with self.assertRaises(ParseError):
            JsonStorage().read(path)

    def test_storage_for_format(self) -> None:
        self.assertIsInstance(storage_for_format("JSON"), JsonStorage)
        self.assertIsInstance(storage_for_format("yml"), YamlStorage)
        with self.assertRaises(ValueError):
            storage_for_format("toml")

    def test_load_document_agnostic(self) -> None:
        YamlStorage().write(self.root / "settings.yaml", {"a": 1})

        loaded = load_document_agnostic(self.root, "settings", JsonStorage())

        self.assertEqual(loaded, ({"a": 1}, "yaml"))
        self.assertIsNone(load_document_agnostic(self.root, "missing", JsonStorage()))


class TestProfiles(TempDirTestCase):
    """Tests for ProfileManager."""

    def setUp(self) -> None:
        super().setUp()
        self.profiles = ProfileManager(self.root, JsonStorage())

    def test_default_manifest_created(self) -> None:
        self.assertEqual(self.profiles.active(), DEFAULT_PROFILE)
        self.assertEqual(self.profiles.list(), [DEFAULT_PROFILE])
        self.assertTrue(self.profiles.manifest_path.exists())
        self.assertEqual(self.profiles.manifest_path.name, ".profiles.json")
        self.assertTrue(self.profiles.profile_path(DEFAULT_PROFILE).is_dir())

    def test_create_switch_delete(self) -> None:
        self.profiles.create("work")
        self.profiles.switch("work")

        self.assertEqual(self.profiles.active(), "work")
        self.assertEqual(self.profiles.active_path(), self.root / "profiles" / "work")

        with self.assertRaises(ProfileError):
            self.profiles.delete("work")
        self.profiles.switch(DEFAULT_PROFILE)
        self.profiles.delete("work")
        self.assertEqual(self.profiles.list(), [DEFAULT_PROFILE])

    def test_create_duplicate(self) -> None:
        self.profiles.create("work")
        with self.assertRaises(ProfileAlreadyExistsError):
            self.profiles.create("work")

    def test_switch_unknown(self) -> None:
        with self.assertRaises(ProfileNotFoundError):
            self.profiles.switch("nope")

    def test_delete_last(self) -> None:
        with self.assertRaises(ProfileError):
            self.profiles.delete(DEFAULT_PROFILE)

    def test_peek_active_does_not_create_manifest(self) -> None:
        self.assertEqual(self.profiles.peek_active(), DEFAULT_PROFILE)
        self.assertFalse(self.profiles.manifest_path.exists())
        self.assertFalse(self.profiles.profiles_dir.exists())

        self.profiles.create("work")
        self.profiles.switch("work")

        self.assertEqual(self.profiles.peek_active(), "work")

    def test_rename_active(self) -> None:
        self.profiles.list()
        (self.profiles.profile_path(DEFAULT_PROFILE) / "x.json").write_text("{}")

        self.profiles.rename(DEFAULT_PROFILE, "main")

        self.assertEqual(self.profiles.active(), "main")
        self.assertTrue((self.root / "profiles" / "main" / "x.json").exists())

    def test_register(self) -> None:
        self.assertTrue(self.profiles.register("work"))
        self.assertFalse(self.profiles.register("work"))
        self.assertTrue(self.profiles.exists("work"))

    def test_invalid_names(self) -> None:
        for name in ["", ".hidden", "a/b", "a\\b", "bad\x00"]:
            with self.assertRaises(InvalidProfileNameError):
                validate_profile_name(name)


class TestSubSettings(TempDirTestCase):
    """Tests for sub-settings categories."""

    def _sub(self, config, vault=None):
        return SubSettings(self.root, config, JsonStorage(), vault or MemoryVault())

    def test_multi_file_layout(self) -> None:
        sub = self._sub(SubSettingsConfig.multi_file("remotes"))

        sub.set("gdrive", {"folder": "/a"})
        sub.set("s3", {"bucket": "b"})

        self.assertEqual(sub.list(), ["gdrive", "s3"])
        self.assertTrue((self.root / "remotes" / "gdrive.json").exists())
        self.assertEqual(sub.get_value("s3"), {"bucket": "b"})

        sub.delete("gdrive")
        self.assertFalse(sub.exists("gdrive"))

    def test_single_file_layout(self) -> None:
        sub = self._sub(SubSettingsConfig.singlefile("themes"))

        sub.set("solar", {"bg": "#fdf6e3"})
        sub.set("mono", {"bg": "#000"})

        path = self.root / "themes" / "themes.json"
        self.assertEqual(sub.file_path(), path)
        self.assertEqual(json.loads(path.read_text()), {"solar": {"bg": "#fdf6e3"}, "mono": {"bg": "#000"}})
        self.assertEqual(sub.list(), ["mono", "solar"])

    def test_profiled_layout(self) -> None:
        sub = self._sub(SubSettingsConfig.multi_file("remotes").with_profiles())

        sub.set("gdrive", {"folder": "/a"})
        sub.set("s3", {"bucket": "b"}, profile="work")

        self.assertTrue((self.root / "remotes" / "profiles" / "default" / "gdrive.json").exists())
        self.assertTrue((self.root / "remotes" / "profiles" / "work" / "s3.json").exists())
        self.assertEqual(sub.list(), ["gdrive"])
        self.assertEqual(sub.list("work"), ["s3"])

    def test_missing_entry(self) -> None:
        sub = self._sub(SubSettingsConfig.multi_file("remotes"))

        with self.assertRaises(SubSettingsEntryNotFoundError):
            sub.get_value("nope")
        with self.assertRaises(SubSettingsEntryNotFoundError):
            sub.delete("nope")

    def test_secret_fields_go_to_vault(self) -> None:
        vault = MemoryVault()
        config = SubSettingsConfig.multi_file("remotes").with_metadata(
            {"token": SettingMetadata.password("Token")}
        )
        sub = self._sub(config, vault)

        sub.set("gdrive", {"token": "tok-1", "folder": "/a"})

        on_disk = json.loads((self.root / "remotes" / "gdrive.json").read_text())
        self.assertEqual(on_disk, {"token": "", "folder": "/a"})
        self.assertEqual(vault.get("remotes.gdrive.token"), "tok-1")
        self.assertEqual(sub.get_value("gdrive"), {"token": "tok-1", "folder": "/a"})

        sub.delete("gdrive")
        self.assertIsNone(vault.get("remotes.gdrive.token"))

    def test_invalid_field_value(self) -> None:
        config = SubSettingsConfig.multi_file("remotes").with_metadata(
            {"port": SettingMetadata.number("Port", 22, min=1, max=65535)}
        )
        sub = self._sub(config)

        with self.assertRaises(InvalidSettingValueError):
            sub.set("ssh", {"port": 0})

    def test_invalid_entry_name(self) -> None:
        sub = self._sub(SubSettingsConfig.multi_file("remotes"))

        with self.assertRaises(InvalidSettingValueError):
            sub.set("../escape", {})


class TestSettingsManager(TempDirTestCase):
    """Tests for SettingsManager."""

    def setUp(self) -> None:
        super().setUp()
        self.vault = MemoryVault()
        self.manager = SettingsManager(
            StoreConfig(config_dir=self.root, app_name="myapp", schema=SCHEMA),
            self.vault,
        )

    def test_defaults(self) -> None:
        self.assertEqual(self.manager.get("ui.theme"), "light")
        self.assertEqual(self.manager.get("api.key"), "")
        self.assertIsNone(self.manager.read_settings_document())

    def test_set_and_get(self) -> None:
        self.manager.set("ui.theme", "dark")

        self.assertEqual(self.manager.get("ui.theme"), "dark")
        document = json.loads((self.root / "settings.json").read_text())
        self.assertEqual(document["ui"]["theme"], "dark")

    def test_secret_routed_to_vault(self) -> None:
        self.manager.set("api.key", "sk-123")
        self.manager.set("ui.theme", "dark")

        self.assertEqual(self.vault.get("api.key"), "sk-123")
        self.assertEqual(self.manager.get("api.key"), "sk-123")
        document = json.loads((self.root / "settings.json").read_text())
        self.assertEqual(document["api"]["key"], "")

    def test_write_document_extracts_secrets(self) -> None:
        self.manager.write_settings_document({"api": {"key": "sk-9"}, "ui": {"theme": "dark"}})

        self.assertEqual(self.vault.get("api.key"), "sk-9")
        self.assertEqual(self.manager.read_settings_document()["api"]["key"], "")

    def test_null_secret_keeps_vault(self) -> None:
        self.vault.store("api.key", "sk-123")

        self.manager.write_settings_document({"api": {"key": None}})

        self.assertEqual(self.manager.get("api.key"), "sk-123")

    def test_null_value_reads_as_default(self) -> None:
        self.manager.write_settings_document({"ui": {"theme": None}})

        self.assertEqual(self.manager.get("ui.theme"), "light")

    def test_unknown_key(self) -> None:
        with self.assertRaises(SettingNotFoundError):
            self.manager.get("nope")
        with self.assertRaises(SettingNotFoundError):
            self.manager.set("nope", 1)

    def test_invalid_value(self) -> None:
        with self.assertRaises(InvalidSettingValueError):
            self.manager.set("ui.theme", "blue")

    def test_reset(self) -> None:
        self.manager.set("ui.theme", "dark")
        self.manager.set("api.key", "sk-1")

        self.manager.reset("ui.theme")
        self.manager.reset("api.key")

        self.assertEqual(self.manager.get("ui.theme"), "light")
        self.assertIsNone(self.vault.get("api.key"))

    def test_reset_all(self) -> None:
        self.manager.set("ui.theme", "dark")
        self.manager.set("api.key", "sk-1")

        self.manager.reset_all()

        self.assertEqual(self.manager.get("ui.theme"), "light")
        self.assertEqual(self.manager.get("api.key"), "")

    def test_cache_invalidated_on_external_write(self) -> None:
        self.manager.set("ui.theme", "dark")
        self.assertEqual(self.manager.get("ui.theme"), "dark")
        (self.root / "settings.json").write_text(json.dumps({"ui": {"theme": "light"}}))

        self.assertEqual(self.manager.get("ui.theme"), "dark")
        self.manager.invalidate_cache()
        self.assertEqual(self.manager.get("ui.theme"), "light")

    def test_profiled_settings_path(self) -> None:
        manager = SettingsManager(StoreConfig(config_dir=self.root, profiles=True, schema=SCHEMA))

        manager.set("ui.theme", "dark")

        self.assertTrue((self.root / "profiles" / "default" / "settings.json").exists())
        self.assertTrue((self.root / ".profiles.json").exists())

    def test_yaml_store(self) -> None:
        manager = SettingsManager(StoreConfig(config_dir=self.root, storage=YamlStorage(), schema=SCHEMA))

        manager.set("ui.theme", "dark")

        self.assertEqual(manager.settings_filename, "settings.yaml")
        self.assertTrue((self.root / "settings.yaml").exists())

    def test_sub_settings_registry(self) -> None:
        self.manager.register_sub_settings(SubSettingsConfig.multi_file("remotes"))

        self.assertEqual(self.manager.sub_settings_types(), ["remotes"])
        self.assertEqual(self.manager.sub_settings("remotes").root_path(), self.root / "remotes")
        with self.assertRaises(SubSettingsNotRegisteredError):
            self.manager.sub_settings("nope")

    def test_reserved_category_names(self) -> None:
        for name in ["profiles", "external", ""]:
            with self.assertRaises(CfgKeepError):
                self.manager.register_sub_settings(SubSettingsConfig.multi_file(name))

    def test_external_configs_and_providers(self) -> None:
        static = ExternalConfig("bashrc", FileSource(self.root / ".bashrc"))

        class Provider(ExternalConfigProvider):
            def get_configs(self):
                return [ExternalConfig("vimrc", FileSource(Path("/tmp/.vimrc")))]

        self.manager.register_external_config(static)
        self.manager.register_external_provider(Provider())

        self.assertEqual([e.id for e in self.manager.external_configs()], ["bashrc", "vimrc"])
        self.assertEqual(self.manager.resolve_external_config("vimrc").id, "vimrc")
        self.assertIsNone(self.manager.resolve_external_config("nope"))


if __name__ == "__main__":
    unittest.main()
