"""
Settings loader (``invoice_config.loader``).

Responsibility
--------------
Reads a settings YAML file and returns the raw ``edit_settings`` mapping
plus a checksum identifying the exact content loaded.  Callers use
``invoice_config.get_active_settings()``; this module is its tooling.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing or non-mapping ``edit_settings`` section  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

SETTINGS_SECTION = "edit_settings"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML file; an empty file reads as an empty dict."""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def parse_settings_section(data: dict[str, Any], source: Path) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{source}: top level must be a mapping")
    section = data.get(SETTINGS_SECTION)
    if not isinstance(section, dict):
        raise ValueError(f"{source}: missing '{SETTINGS_SECTION}' mapping")
    return dict(section)


def compute_checksum(values: dict[str, Any]) -> str:
    """Deterministic SHA-256 of the settings values."""
    canonical = json.dumps(values, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
