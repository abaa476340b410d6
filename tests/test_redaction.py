"""Tests for the secret redaction walker."""

import unittest

from cfgkeep.backup.redaction import MAX_REDACTION_DEPTH, prefixed_metadata, redact_or_resolve
from cfgkeep.config.credentials import MemoryVault
from cfgkeep.config.schema import SettingMetadata
from cfgkeep.errors import RedactionDepthError

SCHEMA = {
    "ui.theme": SettingMetadata.text("Theme", "light"),
    "api.key": SettingMetadata.password("API key"),
    "db.auth.password": SettingMetadata.password("DB password"),
}


class TestRedactOrResolve(unittest.TestCase):
    """Tests for redact_or_resolve."""

    def setUp(self) -> None:
        self.vault = MemoryVault({"api.key": "sk-123", "db.auth.password": "pw"})

    def _document(self):
        return {
            "ui": {"theme": "dark"},
            "api": {"key": ""},
            "db": {"auth": {"password": "", "user": "admin"}},
            "extra": [1, 2],
        }

    def test_exclude_nulls_secrets(self) -> None:
        document = self._document()

        redact_or_resolve(document, "", SCHEMA, False, self.vault)

        self.assertIsNone(document["api"]["key"])
        self.assertIsNone(document["db"]["auth"]["password"])
        self.assertEqual(document["ui"]["theme"], "dark")
        self.assertEqual(document["db"]["auth"]["user"], "admin")
        self.assertEqual(document["extra"], [1, 2])

    def test_include_resolves_from_vault(self) -> None:
        document = self._document()

        redact_or_resolve(document, "", SCHEMA, True, self.vault)

        self.assertEqual(document["api"]["key"], "sk-123")
        self.assertEqual(document["db"]["auth"]["password"], "pw")

    def test_include_keeps_value_when_vault_empty(self) -> None:
        document = self._document()

        redact_or_resolve(document, "", SCHEMA, True, MemoryVault())

        self.assertEqual(document["api"]["key"], "")

    def test_unknown_keys_untouched(self) -> None:
        document = {"api": {"key_id": "abc"}}

        redact_or_resolve(document, "", SCHEMA, False, self.vault)

        self.assertEqual(document, {"api": {"key_id": "abc"}})

    def test_non_mapping_root_is_leaf(self) -> None:
        document = ["a", "b"]

        redact_or_resolve(document, "", SCHEMA, False, self.vault)

        self.assertEqual(document, ["a", "b"])

    def test_prefixed_sub_settings_entry(self) -> None:
        metadata = prefixed_metadata("remotes.gdrive", {"token": SettingMetadata.password("Token")})
        vault = MemoryVault({"remotes.gdrive.token": "tok"})
        entry = {"token": "", "folder": "/backup"}

        redact_or_resolve(entry, "remotes.gdrive", metadata, True, vault)

        self.assertEqual(entry, {"token": "tok", "folder": "/backup"})

    def test_depth_limit(self) -> None:
        document = node = {}
        for _ in range(MAX_REDACTION_DEPTH + 2):
            node["n"] = {}
            node = node["n"]

        with self.assertRaises(RedactionDepthError):
            redact_or_resolve(document, "", SCHEMA, False, self.vault)


class TestPrefixedMetadata(unittest.TestCase):
    def test_rekeys_fields(self) -> None:
        meta = SettingMetadata.password("Token")

        result = prefixed_metadata("remotes.gdrive", {"token": meta})

        self.assertEqual(result, {"remotes.gdrive.token": meta})


if __name__ == "__main__":
    unittest.main()
