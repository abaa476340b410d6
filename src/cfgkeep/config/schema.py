"""
Setting metadata declarations.

A schema is a flat mapping from dotted setting key (``"ui.theme"``) to
SettingMetadata. The store uses it for defaults and validation; the backup
engine only reads the ``secret`` flag to decide what to redact.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SettingType(str, Enum):
    """UI/validation type of a setting."""

    TEXT = "text"
    PASSWORD = "password"
    NUMBER = "number"
    TOGGLE = "toggle"
    SELECT = "select"
    PATH = "path"
    LIST = "list"


@dataclass
class SettingMetadata:
    """
    Declaration of a single setting.

    Attributes:
        setting_type: Kind of value, used for validation.
        default: Value returned when nothing is stored.
        label: Human-readable name.
        description: Optional help text.
        secret: True if the value must live in the secret vault and be
            redacted from backups unless secrets are explicitly included.
        options: Allowed values for SELECT settings.
        min: Lower bound for NUMBER settings.
        max: Upper bound for NUMBER settings.
    """

    setting_type: SettingType
    default: Any
    label: str = ""
    description: str | None = None
    secret: bool = False
    options: list[Any] = field(default_factory=list)
    min: float | None = None
    max: float | None = None

    @classmethod
    def text(cls, label: str, default: str = "") -> SettingMetadata:
        return cls(SettingType.TEXT, default, label)

    @classmethod
    def password(cls, label: str, default: str = "") -> SettingMetadata:
        """Password settings are always secret."""
        return cls(SettingType.PASSWORD, default, label, secret=True)

    @classmethod
    def number(
        cls,
        label: str,
        default: float,
        min: float | None = None,
        max: float | None = None,
    ) -> SettingMetadata:
        return cls(SettingType.NUMBER, default, label, min=min, max=max)

    @classmethod
    def toggle(cls, label: str, default: bool = False) -> SettingMetadata:
        return cls(SettingType.TOGGLE, default, label)

    @classmethod
    def select(cls, label: str, default: Any, options: list[Any]) -> SettingMetadata:
        return cls(SettingType.SELECT, default, label, options=list(options))

    @classmethod
    def path(cls, label: str, default: str = "") -> SettingMetadata:
        return cls(SettingType.PATH, default, label)

    def as_secret(self) -> SettingMetadata:
        self.secret = True
        return self

    def validate(self, value: Any) -> str | None:
        """
        Validate a value against this declaration.

        Returns:
            None if the value is acceptable, otherwise a reason string.
        """
        if value is None:
            return None

        if self.setting_type in (SettingType.TEXT, SettingType.PASSWORD, SettingType.PATH):
            if not isinstance(value, str):
                return f"expected string, got {type(value).__name__}"
        elif self.setting_type == SettingType.TOGGLE:
            if not isinstance(value, bool):
                return f"expected boolean, got {type(value).__name__}"
        elif self.setting_type == SettingType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, int | float):
                return f"expected number, got {type(value).__name__}"
            if self.min is not None and value < self.min:
                return f"value {value} is below minimum {self.min}"
            if self.max is not None and value > self.max:
                return f"value {value} is above maximum {self.max}"
        elif self.setting_type == SettingType.SELECT:
            if value not in self.options:
                return f"value {value!r} is not one of {self.options!r}"
        elif self.setting_type == SettingType.LIST:
            if not isinstance(value, list):
                return f"expected list, got {type(value).__name__}"

        return None


SettingsSchema = dict[str, SettingMetadata]


def schema_defaults(schema: SettingsSchema) -> dict[str, Any]:
    """
    Build the nested default document for a schema.

    ``{"ui.theme": text("Theme", "light")}`` becomes
    ``{"ui": {"theme": "light"}}``.
    """
    document: dict[str, Any] = {}
    for key, meta in schema.items():
        set_dotted(document, key, copy.deepcopy(meta.default))
    return document


def get_dotted(document: dict[str, Any], key: str) -> tuple[bool, Any]:
    """Look up a dotted key. Returns (found, value)."""
    node: Any = document
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return False, None
        node = node[part]
    return True, node


def set_dotted(document: dict[str, Any], key: str, value: Any) -> None:
    """Set a dotted key, creating intermediate mappings."""
    parts = key.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def delete_dotted(document: dict[str, Any], key: str) -> bool:
    """Remove a dotted key and prune empty parents. Returns True if removed."""
    parts = key.split(".")
    trail: list[tuple[dict[str, Any], str]] = []
    node: Any = document
    for part in parts[:-1]:
        if not isinstance(node, dict) or not isinstance(node.get(part), dict):
            return False
        trail.append((node, part))
        node = node[part]

    if not isinstance(node, dict) or parts[-1] not in node:
        return False
    del node[parts[-1]]

    for parent, part in reversed(trail):
        if parent[part]:
            break
        del parent[part]
    return True
