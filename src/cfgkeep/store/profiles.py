"""
Profile support for settings and sub-settings.

A profiled tree keeps one directory per profile plus a small manifest
recording which profiles exist and which one is active:

    <root>/.profiles.json
    <root>/profiles/default/...
    <root>/profiles/work/...

The backup engine only relies on this naming convention; the lifecycle
operations here exist so a live store can be built and switched.
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path

from cfgkeep.errors import (
    FileDeleteError,
    InvalidProfileNameError,
    ProfileAlreadyExistsError,
    ProfileError,
    ProfileNotFoundError,
)
from cfgkeep.store.storage import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "default"
PROFILES_DIR = "profiles"
MANIFEST_STEM = ".profiles"


def validate_profile_name(name: str) -> None:
    """
    Validate a profile name.

    Names may contain spaces and most printable characters. They cannot be
    empty, start with a dot, contain path separators or control characters.

    Raises:
        InvalidProfileNameError: If the name is not usable as a directory.
    """
    if not name:
        raise InvalidProfileNameError("Profile name cannot be empty")
    if name.startswith("."):
        raise InvalidProfileNameError(f"{name}: Profile name cannot start with a dot")
    if "/" in name or "\\" in name or ".." in name:
        raise InvalidProfileNameError(f"{name}: Profile name cannot contain path separators")
    if any(ord(c) < 32 or ord(c) == 127 for c in name):
        raise InvalidProfileNameError(f"{name}: Profile name cannot contain control characters")


def manifest_filename(storage: StorageBackend) -> str:
    return storage.filename(MANIFEST_STEM)


@dataclass
class ProfileManifest:
    """Which profiles exist and which one is active."""

    active: str = DEFAULT_PROFILE
    profiles: list[str] = field(default_factory=lambda: [DEFAULT_PROFILE])

    def has_profile(self, name: str) -> bool:
        return name in self.profiles

    def to_dict(self) -> dict[str, object]:
        return {"active": self.active, "profiles": list(self.profiles)}

    @classmethod
    def from_dict(cls, data: dict) -> ProfileManifest:
        profiles = [str(p) for p in data.get("profiles") or []] or [DEFAULT_PROFILE]
        active = str(data.get("active") or profiles[0])
        return cls(active=active, profiles=profiles)


class ProfileManager:
    """
    Manage the profiles of one settings tree.

    Attributes:
        root: Directory holding the manifest and the profiles directory.
        storage: Backend used for the manifest file.
    """

    def __init__(self, root: Path, storage: StorageBackend) -> None:
        self.root = Path(root)
        self.storage = storage
        self._lock = threading.RLock()

    @property
    def manifest_path(self) -> Path:
        return self.root / manifest_filename(self.storage)

    @property
    def profiles_dir(self) -> Path:
        return self.root / PROFILES_DIR

    def profile_path(self, name: str) -> Path:
        return self.profiles_dir / name

    def active_path(self) -> Path:
        return self.profile_path(self.active())

    def manifest(self) -> ProfileManifest:
        with self._lock:
            if not self.manifest_path.exists():
                manifest = ProfileManifest()
                self._save(manifest)
                self.profile_path(DEFAULT_PROFILE).mkdir(parents=True, exist_ok=True)
                return manifest
            data = self.storage.read(self.manifest_path) or {}
            return ProfileManifest.from_dict(data)

    def active(self) -> str:
        return self.manifest().active

    def peek_active(self) -> str:
        """Active profile without creating the manifest when it is missing."""
        with self._lock:
            if not self.manifest_path.exists():
                return DEFAULT_PROFILE
            data = self.storage.read(self.manifest_path) or {}
            return ProfileManifest.from_dict(data).active

    def list(self) -> list[str]:
        return list(self.manifest().profiles)

    def exists(self, name: str) -> bool:
        return self.manifest().has_profile(name)

    def create(self, name: str) -> None:
        validate_profile_name(name)
        with self._lock:
            manifest = self.manifest()
            if manifest.has_profile(name):
                raise ProfileAlreadyExistsError(name)
            self.profile_path(name).mkdir(parents=True, exist_ok=True)
            manifest.profiles.append(name)
            self._save(manifest)
        logger.info(f"Created profile '{name}' in {self.root}")

    def register(self, name: str) -> bool:
        """
        Make sure ``name`` is listed in the manifest and has a directory.

        Returns:
            True if the profile was added.
        """
        validate_profile_name(name)
        with self._lock:
            manifest = self.manifest()
            self.profile_path(name).mkdir(parents=True, exist_ok=True)
            if manifest.has_profile(name):
                return False
            manifest.profiles.append(name)
            self._save(manifest)
            return True

    def switch(self, name: str) -> None:
        with self._lock:
            manifest = self.manifest()
            if not manifest.has_profile(name):
                raise ProfileNotFoundError(name)
            previous = manifest.active
            manifest.active = name
            self._save(manifest)
        logger.info(f"Switched profile in {self.root}: {previous} -> {name}")

    def delete(self, name: str) -> None:
        with self._lock:
            manifest = self.manifest()
            if not manifest.has_profile(name):
                raise ProfileNotFoundError(name)
            if manifest.active == name:
                raise ProfileError(f"Cannot delete active profile '{name}'")
            if len(manifest.profiles) == 1:
                raise ProfileError("Cannot delete the last remaining profile")

            path = self.profile_path(name)
            if path.exists():
                try:
                    shutil.rmtree(path)
                except OSError as e:
                    raise FileDeleteError(path, e) from e
            manifest.profiles.remove(name)
            self._save(manifest)
        logger.info(f"Deleted profile '{name}' from {self.root}")

    def rename(self, old: str, new: str) -> None:
        validate_profile_name(new)
        with self._lock:
            manifest = self.manifest()
            if not manifest.has_profile(old):
                raise ProfileNotFoundError(old)
            if manifest.has_profile(new):
                raise ProfileAlreadyExistsError(new)

            src = self.profile_path(old)
            if src.exists():
                src.rename(self.profile_path(new))
            else:
                self.profile_path(new).mkdir(parents=True, exist_ok=True)
            manifest.profiles[manifest.profiles.index(old)] = new
            if manifest.active == old:
                manifest.active = new
            self._save(manifest)

    def _save(self, manifest: ProfileManifest) -> None:
        self.storage.write(self.manifest_path, manifest.to_dict())
