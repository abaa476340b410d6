"""
Exception hierarchy for cfgkeep.

Every error raised by the store and the backup engine derives from
CfgKeepError so callers can catch one type at the boundary. The classes are
grouped by the kind of failure:

    - I/O errors always carry the offending path
    - Archive errors mean the container or data archive is not understood
    - Password errors are separate so a UI can re-prompt
    - Store errors describe missing settings, sub-settings and profiles
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class CfgKeepError(Exception):
    """Base exception for all cfgkeep errors."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for structured output."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# -----------------------------------------------------------------------------
# I/O Errors
# -----------------------------------------------------------------------------


class FileOperationError(CfgKeepError):
    """A filesystem operation failed on a specific path."""

    operation = "access"

    def __init__(self, path: Path | str, reason: str | Exception = "") -> None:
        self.path = Path(path)
        self.reason = str(reason)
        message = f"Failed to {self.operation} '{self.path}'"
        if self.reason:
            message = f"{message}: {self.reason}"
        super().__init__(message, details={"path": str(self.path), "operation": self.operation})


class FileReadError(FileOperationError):
    operation = "read file"


class FileWriteError(FileOperationError):
    operation = "write file"


class DirectoryCreateError(FileOperationError):
    operation = "create directory"


class DirectoryReadError(FileOperationError):
    operation = "read directory"


class FileDeleteError(FileOperationError):
    operation = "delete file"


class PathNotFoundError(CfgKeepError):
    """Raised when a required path does not exist."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(f"Path not found: {self.path}", details={"path": str(self.path)})


class ParseError(CfgKeepError):
    """Raised when a settings document cannot be parsed."""

    pass


# -----------------------------------------------------------------------------
# Archive Errors
# -----------------------------------------------------------------------------


class ArchiveError(CfgKeepError):
    """Raised when an archive cannot be written or read."""

    pass


class ArchiveEntryNotFoundError(ArchiveError):
    """Raised when a named entry is not present in an archive."""

    def __init__(self, archive: Path | str, name: str) -> None:
        self.archive = Path(archive)
        self.name = name
        super().__init__(
            f"File '{name}' not found in archive {self.archive}",
            details={"archive": str(self.archive), "name": name},
        )


class InvalidBackupError(CfgKeepError):
    """Raised when a backup file is corrupt, malformed or unsupported."""

    pass


class VersionMismatchError(InvalidBackupError):
    """Raised when a backup manifest version is outside the supported range."""

    def __init__(self, message: str, expected: str, found: str) -> None:
        self.expected = expected
        self.found = found
        super().__init__(message, details={"expected": expected, "found": found})


class PasswordRequiredError(CfgKeepError):
    """Raised when an encrypted backup is opened without a password."""

    def __init__(self, message: str = "Backup password required") -> None:
        super().__init__(message)


class InvalidPasswordError(CfgKeepError):
    """Raised when the supplied backup password cannot decrypt the data."""

    def __init__(self, message: str = "Invalid backup password") -> None:
        super().__init__(message)


# -----------------------------------------------------------------------------
# Backup / Restore Errors
# -----------------------------------------------------------------------------


class BackupError(CfgKeepError):
    """Error during backup operation."""

    pass


class RedactionDepthError(BackupError):
    """Raised when a settings tree is nested deeper than the redaction limit."""

    pass


class RestoreError(CfgKeepError):
    """Error during restore operation."""

    pass


class ExternalHandlerError(RestoreError):
    """Raised when an application restore handler fails."""

    def __init__(self, config_id: str, reason: str | Exception) -> None:
        self.config_id = config_id
        super().__init__(
            f"Restore handler for external config '{config_id}' failed: {reason}",
            details={"config_id": config_id},
        )


# -----------------------------------------------------------------------------
# Store Errors
# -----------------------------------------------------------------------------


class SettingNotFoundError(CfgKeepError):
    """Raised when a dotted setting key is not declared in the schema."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Setting not found: {key}", details={"key": key})


class InvalidSettingValueError(CfgKeepError):
    """Raised when a value does not satisfy its setting metadata."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        super().__init__(f"Invalid setting value for {key}: {reason}", details={"key": key})


class SubSettingsNotRegisteredError(CfgKeepError):
    """Raised when a sub-settings category has not been registered."""

    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(
            f"Sub-settings type '{category}' not registered",
            details={"category": category},
        )


class SubSettingsEntryNotFoundError(CfgKeepError):
    """Raised when a sub-settings entry does not exist."""

    def __init__(self, category: str, name: str) -> None:
        self.category = category
        self.name = name
        super().__init__(
            f"Sub-settings entry '{name}' not found in '{category}'",
            details={"category": category, "name": name},
        )


class ProfileError(CfgKeepError):
    """Base exception for profile errors."""

    pass


class ProfileNotFoundError(ProfileError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Profile '{name}' not found", details={"profile": name})


class ProfileAlreadyExistsError(ProfileError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Profile '{name}' already exists", details={"profile": name})


class InvalidProfileNameError(ProfileError):
    pass
