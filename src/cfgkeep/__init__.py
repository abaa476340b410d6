"""
cfgkeep - backup and restore for hierarchical file-backed settings stores.

An application keeps its configuration under one directory: a primary
settings document (optionally one per profile), named sub-settings
categories, and secrets held in a vault. cfgkeep turns that tree into a
single portable backup file and restores it back, idempotently.

Key Features:
    - Full, settings-only and single-entry exports
    - Optional password encryption of the backup payload
    - Secret redaction driven by per-setting metadata
    - SHA-256 integrity check before anything is restored
    - Dry-run restores that report exactly what would change
    - External config files and command outputs carried alongside settings
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from cfgkeep.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
