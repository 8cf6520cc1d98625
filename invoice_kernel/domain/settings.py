"""
Edit core settings value object.

``invoice_config`` loads these from YAML; the kernel and engines only ever
see the frozen value, so they never read files or the environment.
"""

from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class EditSettings:
    """
    Tunables for validation, conflict checks and audit reads.

    Guarantees:
        - Defaults match the shipped ``defaults.yaml``.
        - ``from_mapping`` rejects unknown keys.
    """

    low_stock_threshold: int = 10
    total_tolerance: Decimal = Decimal("0.01")
    currency: str = "MYR"
    currency_decimal_places: int = 2
    conflict_recheck_seconds: int = 30
    stale_session_minutes: int = 30
    old_invoice_days: int = 30
    frequent_edit_count: int = 5
    audit_history_limit: int = 50
    audit_recent_limit: int = 100

    def __post_init__(self) -> None:
        if self.low_stock_threshold < 0:
            raise ValueError("low_stock_threshold must be >= 0")
        if self.total_tolerance < 0:
            raise ValueError("total_tolerance must be >= 0")
        if self.currency_decimal_places < 0:
            raise ValueError("currency_decimal_places must be >= 0")
        if self.conflict_recheck_seconds <= 0:
            raise ValueError("conflict_recheck_seconds must be > 0")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "EditSettings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown edit settings: {sorted(unknown)}")
        values = dict(data)
        if "total_tolerance" in values:
            values["total_tolerance"] = Decimal(str(values["total_tolerance"]))
        return cls(**values)


DEFAULT_SETTINGS = EditSettings()
