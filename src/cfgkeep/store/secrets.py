"""
Moving secret values between settings documents and the vault.

On disk a secret setting only ever holds its schema default. The real value
lives in the vault under ``"{prefix}.{field}"`` (or just ``"{field}"`` for
the main settings, where the prefix is empty).
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from cfgkeep.config.credentials import SecretVault
from cfgkeep.config.schema import SettingsSchema, get_dotted, set_dotted

logger = logging.getLogger(__name__)


def vault_key(prefix: str, field: str) -> str:
    return f"{prefix}.{field}" if prefix else field


def extract_secrets(
    document: dict[str, Any],
    schema: SettingsSchema,
    vault: SecretVault,
    prefix: str = "",
) -> int:
    """
    Move secret values out of ``document`` and into the vault.

    A secret leaf holding a real value is stored in the vault. Every secret
    leaf, present or not, ends up holding the schema default. Null leaves
    and leaves equal to the default leave the vault alone: redacted backups
    produce nulls and restoring one must not wipe a stored secret.

    Returns:
        Number of values written to the vault.
    """
    stored = 0
    for field, meta in schema.items():
        if not meta.secret:
            continue
        found, value = get_dotted(document, field)
        if found and value is not None and value != meta.default:
            vault.store(vault_key(prefix, field), value if isinstance(value, str) else str(value))
            stored += 1
        set_dotted(document, field, copy.deepcopy(meta.default))

    if stored:
        logger.debug(f"Moved {stored} secret value(s) to {vault.backend_name}")
    return stored


def inject_secrets(
    document: dict[str, Any],
    schema: SettingsSchema,
    vault: SecretVault,
    prefix: str = "",
) -> None:
    """Replace secret leaves with their vault values, or defaults if unset."""
    for field, meta in schema.items():
        if not meta.secret:
            continue
        secret = vault.get(vault_key(prefix, field))
        set_dotted(document, field, secret if secret is not None else copy.deepcopy(meta.default))


def clear_secrets(schema: SettingsSchema, vault: SecretVault, prefix: str = "") -> None:
    for field, meta in schema.items():
        if meta.secret:
            vault.remove(vault_key(prefix, field))
