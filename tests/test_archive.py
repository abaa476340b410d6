"""Tests for the zip archive codec."""

import hashlib
import io
import shutil
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from cfgkeep.backup.archive import (
    DATA_ENTRY,
    ENCRYPTION_MARKER,
    KDF_COMMENT_PREFIX,
    MANIFEST_ENTRY,
    create_archive,
    create_container,
    extract_archive,
    hash_file,
    is_encrypted,
    read_entry,
)
from cfgkeep.errors import (
    ArchiveEntryNotFoundError,
    InvalidBackupError,
    InvalidPasswordError,
    PasswordRequiredError,
)

# Keep key derivation fast in tests
FAST_KDF = patch("cfgkeep.backup.archive.KDF_ITERATIONS", 1000)


class ArchiveTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.source = Path(self.temp_dir) / "source"
        self.source.mkdir()
        (self.source / "settings.json").write_text('{"ui": {"theme": "dark"}}')
        (self.source / "remotes").mkdir()
        (self.source / "remotes" / "gdrive.json").write_text('{"token": null}')
        (self.source / "remotes" / "s3.json").write_text('{"bucket": "b"}')
        self.archive = Path(self.temp_dir) / DATA_ENTRY
        self.output = Path(self.temp_dir) / "out"

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def assertTreeRestored(self) -> None:
        self.assertEqual(
            (self.output / "settings.json").read_text(), '{"ui": {"theme": "dark"}}'
        )
        self.assertEqual((self.output / "remotes" / "gdrive.json").read_text(), '{"token": null}')
        self.assertEqual((self.output / "remotes" / "s3.json").read_text(), '{"bucket": "b"}')


class TestPlainArchive(ArchiveTestCase):
    """Tests for unencrypted archives."""

    def test_round_trip(self) -> None:
        create_archive(self.source, self.archive)

        count = extract_archive(self.archive, self.output)

        self.assertEqual(count, 3)
        self.assertTreeRestored()

    def test_entries_sorted_and_deflated(self) -> None:
        create_archive(self.source, self.archive)

        with zipfile.ZipFile(self.archive) as zf:
            names = zf.namelist()
            file_infos = [i for i in zf.infolist() if not i.is_dir()]

        self.assertEqual(names, sorted(names))
        self.assertIn("remotes/gdrive.json", names)
        for info in file_infos:
            self.assertEqual(info.compress_type, zipfile.ZIP_DEFLATED)

    def test_not_encrypted(self) -> None:
        create_archive(self.source, self.archive)
        self.assertFalse(is_encrypted(self.archive))

    def test_empty_directory(self) -> None:
        empty = Path(self.temp_dir) / "empty"
        empty.mkdir()

        create_archive(empty, self.archive)

        self.assertEqual(extract_archive(self.archive, self.output), 0)

    def test_progress_reported(self) -> None:
        calls = []

        create_archive(self.source, self.archive, progress=lambda w, t: calls.append((w, t)), total_size=99)

        self.assertTrue(calls)
        written = [w for w, _ in calls]
        self.assertEqual(written, sorted(written))
        self.assertTrue(all(t == 99 for _, t in calls))

    def test_password_ignored_for_plain_archive(self) -> None:
        create_archive(self.source, self.archive)

        extract_archive(self.archive, self.output, password="unused")

        self.assertTreeRestored()


class TestEncryptedArchive(ArchiveTestCase):
    """Tests for password-protected archives."""

    def setUp(self) -> None:
        super().setUp()
        FAST_KDF.start()
        self.addCleanup(FAST_KDF.stop)

    def test_round_trip(self) -> None:
        create_archive(self.source, self.archive, password="s3cret-pw")

        extract_archive(self.archive, self.output, password="s3cret-pw")

        self.assertTreeRestored()

    def test_entries_marked_and_kdf_recorded(self) -> None:
        create_archive(self.source, self.archive, password="s3cret-pw")

        with zipfile.ZipFile(self.archive) as zf:
            self.assertTrue(zf.comment.startswith(KDF_COMMENT_PREFIX + b"1000:"))
            for info in zf.infolist():
                if not info.is_dir():
                    self.assertEqual(info.comment, ENCRYPTION_MARKER)
                    self.assertNotIn(b"dark", zf.read(info))

    def test_is_encrypted(self) -> None:
        create_archive(self.source, self.archive, password="s3cret-pw")

        self.assertTrue(is_encrypted(self.archive))
        self.assertTrue(is_encrypted(io.BytesIO(self.archive.read_bytes())))

    def test_password_required(self) -> None:
        create_archive(self.source, self.archive, password="s3cret-pw")

        with self.assertRaises(PasswordRequiredError):
            extract_archive(self.archive, self.output)

    def test_wrong_password(self) -> None:
        create_archive(self.source, self.archive, password="s3cret-pw")

        with self.assertRaises(InvalidPasswordError):
            extract_archive(self.archive, self.output, password="wrong-pw")

    def test_fresh_salt_per_archive(self) -> None:
        other = Path(self.temp_dir) / "other.zip"
        create_archive(self.source, self.archive, password="s3cret-pw")
        create_archive(self.source, other, password="s3cret-pw")

        with zipfile.ZipFile(self.archive) as a, zipfile.ZipFile(other) as b:
            self.assertNotEqual(a.comment, b.comment)


class TestArchiveErrors(ArchiveTestCase):
    """Tests for malformed and hostile archives."""

    def test_not_a_zip(self) -> None:
        self.archive.write_bytes(b"definitely not a zip")

        with self.assertRaises(InvalidBackupError):
            extract_archive(self.archive, self.output)
        with self.assertRaises(InvalidBackupError):
            is_encrypted(self.archive)

    def test_path_traversal_rejected(self) -> None:
        with zipfile.ZipFile(self.archive, "w") as zf:
            zf.writestr("../evil.txt", b"boom")

        with self.assertRaises(InvalidBackupError):
            extract_archive(self.archive, self.output)
        self.assertFalse((Path(self.temp_dir) / "evil.txt").exists())

    def test_read_entry_missing(self) -> None:
        create_archive(self.source, self.archive)

        with self.assertRaises(ArchiveEntryNotFoundError):
            read_entry(self.archive, "nope.json")

    def test_read_entry(self) -> None:
        create_archive(self.source, self.archive)

        self.assertEqual(read_entry(self.archive, "remotes/s3.json"), b'{"bucket": "b"}')


class TestContainerAndHash(ArchiveTestCase):
    """Tests for the outer container and hashing."""

    def test_hash_file(self) -> None:
        data = b"x" * 20000
        path = Path(self.temp_dir) / "blob"
        path.write_bytes(data)

        digest, length = hash_file(path)

        self.assertEqual(digest, hashlib.sha256(data).hexdigest())
        self.assertEqual(length, 20000)

    def test_container_layout(self) -> None:
        create_archive(self.source, self.archive)
        container = Path(self.temp_dir) / "backup.cfgkeep"

        create_container(container, '{"version": 1}', self.archive)

        with zipfile.ZipFile(container) as zf:
            self.assertEqual(zf.namelist(), [MANIFEST_ENTRY, DATA_ENTRY])
            for info in zf.infolist():
                self.assertEqual(info.compress_type, zipfile.ZIP_STORED)
        self.assertEqual(read_entry(container, MANIFEST_ENTRY), b'{"version": 1}')
        self.assertEqual(read_entry(container, DATA_ENTRY), self.archive.read_bytes())


if __name__ == "__main__":
    unittest.main()
