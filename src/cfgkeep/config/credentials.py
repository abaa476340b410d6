"""
Secret vault implementations for cfgkeep.

Secret settings (API keys, tokens, passwords) never live in plain settings
files. They are stored in a vault keyed by the same dotted path as the
setting itself (``"api.key"``, ``"remotes.gdrive.token"``).

Two vaults are provided:
    - MemoryVault: process-local, for tests and ephemeral stores
    - EncryptedFileVault: Fernet symmetric encryption with PBKDF2 key
      derivation, stored next to the settings

Security Design (EncryptedFileVault):
    - Encryption key derived from user passphrase using PBKDF2 (600,000 iterations)
    - Random 256-bit salt generated per installation and stored separately
    - Secrets decrypted into memory only when needed
    - File permissions set to owner-only (0600)
    - Atomic writes so a crash never leaves a truncated vault

Threat Model:
    - Protects against: filesystem access by unauthorized users, accidental
      exposure in backups, casual inspection of config directory
    - Does NOT protect against: memory inspection, keyloggers, root access,
      or compromise of the running process
"""

from __future__ import annotations

import base64
import json
import os
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cfgkeep.errors import CfgKeepError

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32  # 256 bits
SESSION_TIMEOUT_SECONDS = 3600
MIN_PASSPHRASE_LENGTH = 12

VAULT_FILE = "secrets.enc"
SALT_FILE = "secrets.salt"


class CredentialError(CfgKeepError):
    """Base exception for vault errors."""

    pass


class CredentialStoreNotInitializedError(CredentialError):
    """Raised when the encrypted vault has not been initialized."""

    pass


class CredentialStoreLockedError(CredentialError):
    """Raised when the vault is locked and the passphrase is required."""

    pass


class InvalidPassphraseError(CredentialError):
    """Raised when the provided passphrase is incorrect."""

    pass


def derive_fernet(passphrase: str, salt: bytes, iterations: int | None = None) -> Fernet:
    """
    Derive a Fernet cipher from a passphrase and salt.

    Uses PBKDF2-HMAC-SHA256. The backup archive codec uses the same
    derivation for password-protected archives.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,  # Fernet requires 32-byte keys
        salt=salt,
        iterations=iterations or PBKDF2_ITERATIONS,
    )
    key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))
    return Fernet(key)


class SecretVault(ABC):
    """
    Capability the store and backup engine need from a secret backend.

    Keys are dotted setting paths. Implementations must be safe to call from
    multiple threads.
    """

    @abstractmethod
    def store(self, key: str, value: str) -> None:
        """Store or replace a secret."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the secret, or None if it is not stored."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a secret. Removing a missing key is not an error."""

    @abstractmethod
    def list_keys(self) -> list[str]:
        """List all stored keys."""

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    @property
    def backend_name(self) -> str:
        return self.__class__.__name__


class MemoryVault(SecretVault):
    """In-memory vault. Contents are lost when the process exits."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def store(self, key: str, value: str) -> None:
        with self._lock:
            self._secrets[key] = value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._secrets.get(key)

    def remove(self, key: str) -> None:
        with self._lock:
            self._secrets.pop(key, None)

    def list_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._secrets)


@dataclass
class VaultSession:
    """
    An unlocked vault session.

    The session tracks when it was created and enforces a timeout
    after which the passphrase must be re-entered.
    """

    fernet: Fernet | None
    created_at: float = field(default_factory=time.time)
    timeout_seconds: int = SESSION_TIMEOUT_SECONDS

    def is_expired(self) -> bool:
        return time.time() - self.created_at > self.timeout_seconds

    def clear(self) -> None:
        # Best effort: the key may stay in memory until garbage collected
        self.fernet = None


class EncryptedFileVault(SecretVault):
    """
    Passphrase-encrypted vault stored in a single file.

    Usage:
        vault = EncryptedFileVault(config_dir)

        if not vault.is_initialized():
            vault.initialize("my-secure-passphrase")
        else:
            vault.unlock("my-secure-passphrase")

        vault.store("api.key", "sk-123")
        vault.get("api.key")
        vault.lock()

    File Structure:
        <dir>/secrets.salt - Random salt for key derivation (32 bytes)
        <dir>/secrets.enc  - Encrypted JSON object of key -> secret
    """

    def __init__(self, directory: Path, iterations: int | None = None) -> None:
        self.directory = Path(directory)
        self.salt_path = self.directory / SALT_FILE
        self.vault_path = self.directory / VAULT_FILE
        self.iterations = iterations or PBKDF2_ITERATIONS
        self._session: VaultSession | None = None
        self._lock = threading.RLock()

    def is_initialized(self) -> bool:
        return self.salt_path.exists() and self.vault_path.exists()

    def initialize(self, passphrase: str) -> None:
        """
        Create a new empty vault protected by ``passphrase``.

        Raises:
            CredentialError: If the vault already exists.
            ValueError: If the passphrase is shorter than MIN_PASSPHRASE_LENGTH.
        """
        if self.is_initialized():
            raise CredentialError(f"Vault already initialized at {self.directory}")

        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )

        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.directory, 0o700)
        except OSError:
            pass

        salt = secrets.token_bytes(SALT_LENGTH)
        self._write_secure_file(self.salt_path, salt)

        fernet = derive_fernet(passphrase, salt, self.iterations)
        self._write_secure_file(self.vault_path, fernet.encrypt(b"{}"))

        with self._lock:
            self._session = VaultSession(fernet=fernet)

    def unlock(self, passphrase: str, timeout_seconds: int | None = None) -> None:
        """
        Unlock the vault.

        Raises:
            CredentialStoreNotInitializedError: If the vault does not exist.
            InvalidPassphraseError: If the passphrase is incorrect.
        """
        if not self.is_initialized():
            raise CredentialStoreNotInitializedError(
                f"Vault not initialized at {self.directory}"
            )

        fernet = derive_fernet(passphrase, self.salt_path.read_bytes(), self.iterations)
        try:
            fernet.decrypt(self.vault_path.read_bytes())
        except InvalidToken as e:
            raise InvalidPassphraseError("Invalid passphrase. Cannot decrypt vault.") from e

        with self._lock:
            self._session = VaultSession(
                fernet=fernet,
                timeout_seconds=timeout_seconds or SESSION_TIMEOUT_SECONDS,
            )

    def lock(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.clear()
                self._session = None

    def is_unlocked(self) -> bool:
        with self._lock:
            if self._session is None:
                return False
            if self._session.is_expired():
                self.lock()
                return False
            return True

    def store(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)

    def list_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._load())

    def change_passphrase(self, old_passphrase: str, new_passphrase: str) -> None:
        """
        Re-encrypt the vault under a new passphrase and a fresh salt.

        Raises:
            InvalidPassphraseError: If old passphrase is incorrect.
            ValueError: If new passphrase is too short.
        """
        if len(new_passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"New passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )

        with self._lock:
            self.unlock(old_passphrase)
            data = self._load()
            self.lock()

            new_salt = secrets.token_bytes(SALT_LENGTH)
            self._write_secure_file(self.salt_path, new_salt)

            fernet = derive_fernet(new_passphrase, new_salt, self.iterations)
            self._write_secure_file(self.vault_path, fernet.encrypt(json.dumps(data).encode()))
            self._session = VaultSession(fernet=fernet)

    def _require_session(self) -> Fernet:
        if not self.is_unlocked():
            raise CredentialStoreLockedError("Vault is locked. Call unlock() with passphrase first.")
        assert self._session is not None and self._session.fernet is not None
        return self._session.fernet

    def _load(self) -> dict[str, str]:
        fernet = self._require_session()
        decrypted = fernet.decrypt(self.vault_path.read_bytes())
        data: dict[str, str] = json.loads(decrypted.decode("utf-8"))
        return data

    def _save(self, data: dict[str, str]) -> None:
        fernet = self._require_session()
        self._write_secure_file(self.vault_path, fernet.encrypt(json.dumps(data).encode("utf-8")))

    def _write_secure_file(self, path: Path, data: bytes) -> None:
        """
        Write data to file with restrictive permissions.

        Uses atomic write (write to temp, then rename) to prevent
        partial writes from corrupting the file.
        """
        temp_path = path.with_suffix(".tmp")

        try:
            temp_path.write_bytes(data)
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                pass
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
