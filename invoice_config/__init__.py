"""
invoice_config -- single public entrypoint for edit core settings.

Responsibility:
    ``get_active_settings()`` is the only way to obtain ``EditSettings`` at
    runtime.  No other component reads settings files or environment
    variables.

Architecture position:
    Configuration -- sits above ``invoice_kernel``.  The kernel MUST NEVER
    import from ``invoice_config``; services receive the frozen
    ``EditSettings`` value instead.

Failure modes:
    - ``FileNotFoundError`` -- the settings file does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ValueError`` -- missing section, unknown keys or invalid values.

Audit relevance:
    Every successful call emits an ``INVOICE_CONFIG_TRACE`` log entry with
    the source path and checksum of the settings in force.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from invoice_config.loader import compute_checksum, load_yaml_file, parse_settings_section
from invoice_kernel.domain.settings import EditSettings

_logger = logging.getLogger("invoice_kernel.config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_settings(
    path: Path | str | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> EditSettings:
    """
    Load settings from ``path`` (defaults to the packaged ``defaults.yaml``).

    ``overrides`` replace individual values after loading; they go through
    the same unknown-key and value checks as the file.
    """
    source = Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    values = parse_settings_section(load_yaml_file(source), source)
    if overrides:
        values.update(overrides)
    settings = EditSettings.from_mapping(values)

    _logger.info(
        "INVOICE_CONFIG_TRACE",
        extra={
            "trace_type": "INVOICE_CONFIG_TRACE",
            "source": str(source),
            "checksum": compute_checksum(values),
            "currency": settings.currency,
        },
    )
    return settings


__all__ = ["DEFAULT_SETTINGS_PATH", "get_active_settings"]
