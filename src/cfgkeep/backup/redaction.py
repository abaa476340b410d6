"""
Secret redaction for exported settings.

Before a settings document is staged for backup, every leaf whose metadata
marks it secret is either nulled out or replaced with the real value from the
vault, depending on the backup's secret policy.
"""

from __future__ import annotations

from typing import Any

from cfgkeep.config.credentials import SecretVault
from cfgkeep.config.schema import SettingsSchema
from cfgkeep.errors import RedactionDepthError

MAX_REDACTION_DEPTH = 32


def redact_or_resolve(
    tree: Any,
    key_prefix: str,
    metadata: SettingsSchema,
    include_secrets: bool,
    vault: SecretVault,
    _depth: int = 0,
) -> None:
    """
    Redact or resolve secret leaves of ``tree`` in place.

    Mappings are descended into, extending the dotted key as
    ``"{prefix}.{field}"`` (just ``"{field}"`` at the root). At a leaf the
    current key is looked up in ``metadata``:

        - unknown or not secret: left untouched
        - secret, include_secrets: replaced with the vault value, if any
        - secret, not include_secrets: replaced with None

    Non-mapping containers (lists) are leaves.

    Raises:
        RedactionDepthError: If mappings nest deeper than MAX_REDACTION_DEPTH.
    """
    if _depth > MAX_REDACTION_DEPTH:
        raise RedactionDepthError(
            f"Settings nested deeper than {MAX_REDACTION_DEPTH} levels at '{key_prefix}'"
        )
    if not isinstance(tree, dict):
        return

    for field in list(tree):
        key = f"{key_prefix}.{field}" if key_prefix else str(field)
        value = tree[field]
        if isinstance(value, dict):
            redact_or_resolve(value, key, metadata, include_secrets, vault, _depth + 1)
            continue

        meta = metadata.get(key)
        if meta is None or not meta.secret:
            continue
        if include_secrets:
            secret = vault.get(key)
            if secret is not None:
                tree[field] = secret
        else:
            tree[field] = None


def prefixed_metadata(prefix: str, metadata: SettingsSchema) -> SettingsSchema:
    """Re-key field metadata under ``prefix`` (``"token"`` -> ``"remotes.gdrive.token"``)."""
    return {f"{prefix}.{field}": meta for field, meta in metadata.items()}
