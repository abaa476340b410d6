"""
Zip archive codec for cfgkeep backups.

A backup file is a store-only zip (the "container") holding exactly two
entries:

    manifest.json   UTF-8 JSON manifest, readable without decompressing
    data.zip        deflated archive of the exported tree

Password-protected data archives encrypt every file entry with Fernet
(AES-128-CBC + HMAC-SHA256). The key is derived with PBKDF2-HMAC-SHA256 from
the password and a random salt recorded in the archive comment:

    cfgkeep:pbkdf2-sha256:<iterations>:<base64 salt>

Encrypted entries carry ``ENCRYPTION_MARKER`` as their entry comment, so the
encryption state can be checked without the password.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import zipfile
import zlib
from collections.abc import Callable
from pathlib import Path
from typing import IO, BinaryIO

from cryptography.fernet import Fernet, InvalidToken

from cfgkeep.config.credentials import PBKDF2_ITERATIONS, derive_fernet
from cfgkeep.errors import (
    ArchiveEntryNotFoundError,
    DirectoryCreateError,
    FileReadError,
    FileWriteError,
    InvalidBackupError,
    InvalidPasswordError,
    PasswordRequiredError,
)

logger = logging.getLogger(__name__)

MANIFEST_ENTRY = "manifest.json"
DATA_ENTRY = "data.zip"

ENCRYPTION_MARKER = b"cfgkeep:fernet"
KDF_COMMENT_PREFIX = b"cfgkeep:pbkdf2-sha256:"
KDF_ITERATIONS = PBKDF2_ITERATIONS
ARCHIVE_SALT_LENGTH = 16
CHUNK_SIZE = 8192

# ZIP general purpose flag bit 0: traditional PKWARE encryption
_ZIP_FLAG_ENCRYPTED = 0x1


class CountingWriter:
    """
    File wrapper reporting bytes written to a progress callback.

    ``progress(written, total)`` is called after every write.
    """

    def __init__(
        self,
        fp: BinaryIO,
        progress: Callable[[int, int], None] | None,
        total: int,
    ) -> None:
        self._fp = fp
        self._progress = progress
        self.total = total
        self.written = 0

    def write(self, data: bytes) -> int:
        count = self._fp.write(data)
        self.written += len(data)
        if self._progress is not None:
            self._progress(self.written, self.total)
        return count

    def tell(self) -> int:
        return self._fp.tell()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._fp.seek(offset, whence)

    def seekable(self) -> bool:
        return self._fp.seekable()

    def flush(self) -> None:
        self._fp.flush()


# -----------------------------------------------------------------------------
# Hashing
# -----------------------------------------------------------------------------


def hash_file(path: Path) -> tuple[str, int]:
    """
    Compute the SHA-256 of a file.

    Returns:
        (hex digest, length in bytes)
    """
    hasher = hashlib.sha256()
    length = 0
    try:
        with open(path, "rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                hasher.update(chunk)
                length += len(chunk)
    except OSError as e:
        raise FileReadError(path, e) from e
    return hasher.hexdigest(), length


# -----------------------------------------------------------------------------
# Data archive
# -----------------------------------------------------------------------------


def _kdf_comment(salt: bytes, iterations: int) -> bytes:
    return KDF_COMMENT_PREFIX + f"{iterations}:".encode() + base64.b64encode(salt)


def _fernet_from_comment(comment: bytes, password: str) -> Fernet:
    if not comment.startswith(KDF_COMMENT_PREFIX):
        raise InvalidBackupError("Encrypted archive is missing its key derivation parameters")
    try:
        iterations_text, salt_text = comment[len(KDF_COMMENT_PREFIX):].split(b":", 1)
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_text, validate=True)
    except ValueError as e:
        raise InvalidBackupError(f"Malformed key derivation parameters: {e}") from e
    return derive_fernet(password, salt, iterations)


def _walk(directory: Path) -> list[Path]:
    """Every path under ``directory``, parents first, in sorted order."""
    paths: list[Path] = []
    try:
        children = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise FileReadError(directory, e) from e
    for child in children:
        paths.append(child)
        if child.is_dir():
            paths.extend(_walk(child))
    return paths


def create_archive(
    source_dir: Path,
    output_path: Path,
    password: str | None = None,
    progress: Callable[[int, int], None] | None = None,
    total_size: int = 0,
) -> None:
    """
    Compress a directory tree into a zip archive.

    Args:
        source_dir: Directory whose contents become the archive root.
        output_path: Archive file to create.
        password: Encrypt every file entry when given.
        progress: Called with (bytes written, total_size) after each write.
        total_size: Denominator for progress, computed by the caller.
    """
    source_dir = Path(source_dir)
    output_path = Path(output_path)
    fernet: Fernet | None = None
    salt = b""
    iterations = KDF_ITERATIONS
    if password is not None:
        salt = os.urandom(ARCHIVE_SALT_LENGTH)
        fernet = derive_fernet(password, salt, iterations)

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DirectoryCreateError(output_path.parent, e) from e

    entries = 0
    try:
        with open(output_path, "wb") as raw:
            writer = CountingWriter(raw, progress, total_size)
            with zipfile.ZipFile(writer, "w", zipfile.ZIP_DEFLATED) as zf:  # type: ignore[arg-type]
                if fernet is not None:
                    zf.comment = _kdf_comment(salt, iterations)

                for path in _walk(source_dir):
                    arcname = path.relative_to(source_dir).as_posix()
                    if path.is_dir():
                        zf.write(path, arcname)
                        continue

                    if fernet is None:
                        zf.write(path, arcname)
                    else:
                        info = zipfile.ZipInfo.from_file(path, arcname)
                        info.compress_type = zipfile.ZIP_DEFLATED
                        info.comment = ENCRYPTION_MARKER
                        zf.writestr(info, fernet.encrypt(path.read_bytes()))
                    entries += 1
    except OSError as e:
        raise FileWriteError(output_path, e) from e

    logger.debug(
        f"Created archive {output_path} ({entries} files, "
        f"{'encrypted' if fernet else 'unencrypted'})"
    )


def _open_zip(archive: Path | IO[bytes]) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(archive)
    except zipfile.BadZipFile as e:
        raise InvalidBackupError(f"{_describe(archive)}: not a valid archive ({e})") from e
    except OSError as e:
        raise FileReadError(_describe(archive), e) from e


def _describe(archive: Path | IO[bytes]) -> str:
    if isinstance(archive, str | Path):
        return str(archive)
    return getattr(archive, "name", "<in-memory archive>")


def _safe_target(output_dir: Path, name: str) -> Path:
    """Resolve an entry name under output_dir, rejecting escapes."""
    pure = Path(name)
    if name.startswith(("/", "\\")) or pure.is_absolute() or ".." in pure.parts:
        raise InvalidBackupError(f"Unsafe path in archive: {name}")
    return output_dir.joinpath(*pure.parts)


def extract_archive(
    archive_path: Path,
    output_dir: Path,
    password: str | None = None,
) -> int:
    """
    Extract a data archive, decrypting entries when needed.

    Returns:
        Number of files extracted.

    Raises:
        PasswordRequiredError: An entry is encrypted and no password was given.
        InvalidPasswordError: The password does not decrypt the entries.
        InvalidBackupError: The archive is corrupt or contains unsafe paths.
    """
    output_dir = Path(output_dir)
    fernet: Fernet | None = None
    count = 0

    with _open_zip(archive_path) as zf:
        for index, info in enumerate(zf.infolist()):
            target = _safe_target(output_dir, info.filename)
            if info.is_dir():
                try:
                    target.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise DirectoryCreateError(target, e) from e
                continue

            data = _read_member(zf, index, info, password)
            if info.comment == ENCRYPTION_MARKER:
                if password is None:
                    raise PasswordRequiredError()
                if fernet is None:
                    fernet = _fernet_from_comment(zf.comment, password)
                try:
                    data = fernet.decrypt(data)
                except InvalidToken as e:
                    raise InvalidPasswordError() from e

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DirectoryCreateError(target.parent, e) from e
            try:
                target.write_bytes(data)
            except OSError as e:
                raise FileWriteError(target, e) from e
            count += 1

    logger.debug(f"Extracted {count} files from {archive_path} to {output_dir}")
    return count


def _read_member(
    zf: zipfile.ZipFile, index: int, info: zipfile.ZipInfo, password: str | None
) -> bytes:
    pwd = None
    if info.flag_bits & _ZIP_FLAG_ENCRYPTED:
        if password is None:
            raise PasswordRequiredError()
        pwd = password.encode("utf-8")
    try:
        return zf.read(info, pwd=pwd)
    except RuntimeError as e:
        # zipfile reports a bad traditional-encryption password this way
        if pwd is not None:
            raise InvalidPasswordError() from e
        raise InvalidBackupError(f"Cannot read entry #{index} ({info.filename}): {e}") from e
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise InvalidBackupError(f"Corrupt entry #{index} ({info.filename}): {e}") from e


def is_encrypted(archive: Path | IO[bytes]) -> bool:
    """True if any entry of the archive is encrypted. Never decrypts."""
    with _open_zip(archive) as zf:
        return any(
            info.comment == ENCRYPTION_MARKER or info.flag_bits & _ZIP_FLAG_ENCRYPTED
            for info in zf.infolist()
        )


def read_entry(archive_path: Path, name: str) -> bytes:
    """
    Read one entry by exact name.

    Raises:
        ArchiveEntryNotFoundError: If no entry has that name.
    """
    with _open_zip(archive_path) as zf:
        try:
            info = zf.getinfo(name)
        except KeyError:
            raise ArchiveEntryNotFoundError(archive_path, name) from None
        try:
            return zf.read(info)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise InvalidBackupError(f"{archive_path}: corrupt entry '{name}' ({e})") from e


# -----------------------------------------------------------------------------
# Container
# -----------------------------------------------------------------------------


def create_container(
    output_path: Path,
    manifest_json: str,
    inner_archive_path: Path,
    inner_archive_name: str = DATA_ENTRY,
) -> None:
    """Write the store-only container holding the manifest and data archive."""
    output_path = Path(output_path)
    try:
        with zipfile.ZipFile(output_path, "w", zipfile.ZIP_STORED) as zf:
            zf.writestr(MANIFEST_ENTRY, manifest_json.encode("utf-8"))
            zf.write(inner_archive_path, inner_archive_name)
    except OSError as e:
        raise FileWriteError(output_path, e) from e
    logger.debug(f"Created container {output_path}")
