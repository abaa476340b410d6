"""
Serialization backends for settings documents.

A backend knows one file format (JSON or YAML) and how to read and write a
document to disk. Writes go through a temporary file and an atomic rename so
a crash never leaves a half-written settings file behind.
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from cfgkeep.errors import DirectoryCreateError, FileReadError, FileWriteError, ParseError


class StorageBackend(ABC):
    """Read/write one serialization format."""

    extension: str = ""

    @abstractmethod
    def serialize(self, value: Any) -> str:
        """Convert a document to text."""

    @abstractmethod
    def deserialize(self, text: str) -> Any:
        """Parse text into a document. Raises ParseError."""

    def read(self, path: Path) -> Any:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise FileReadError(path, e) from e
        return self.deserialize(text)

    def write(self, path: Path, value: Any) -> int:
        """
        Atomically write a document.

        Returns:
            Number of bytes written.
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DirectoryCreateError(path.parent, e) from e

        data = self.serialize(value).encode("utf-8")
        temp_path = path.with_name(f".{path.name}.tmp")
        try:
            temp_path.write_bytes(data)
            os.replace(temp_path, path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise FileWriteError(path, e) from e
        return len(data)

    def filename(self, stem: str) -> str:
        return f"{stem}.{self.extension}"


class JsonStorage(StorageBackend):
    extension = "json"

    def __init__(self, indent: int | None = 2) -> None:
        self.indent = indent

    def serialize(self, value: Any) -> str:
        return json.dumps(value, indent=self.indent, ensure_ascii=False)

    def deserialize(self, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}") from e


class YamlStorage(StorageBackend):
    extension = "yaml"

    def serialize(self, value: Any) -> str:
        return yaml.safe_dump(value, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def deserialize(self, text: str) -> Any:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML: {e}") from e


_FORMATS: dict[str, type[StorageBackend]] = {
    "json": JsonStorage,
    "yaml": YamlStorage,
    "yml": YamlStorage,
}


def storage_for_format(name: str) -> StorageBackend:
    """Return a backend for a format name ("json", "yaml")."""
    try:
        return _FORMATS[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown storage format: {name}. Must be one of: {', '.join(sorted(_FORMATS))}"
        ) from None


def load_document_agnostic(
    directory: Path, stem: str, storage: StorageBackend
) -> tuple[Any, str] | None:
    """
    Load ``<stem>.<ext>`` from a directory, whatever format it was saved in.

    The configured backend's extension is tried first, then JSON, then YAML.

    Returns:
        (document, extension) or None if no candidate file exists.
    """
    candidates = [storage.extension] + [ext for ext in ("json", "yaml", "yml") if ext != storage.extension]
    for ext in candidates:
        path = Path(directory) / f"{stem}.{ext}"
        if path.exists():
            backend = storage if ext == storage.extension else storage_for_format(ext)
            return backend.read(path), ext
    return None
