"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class EmissionFactor:
    """CO2 emission factor for models matching a name pattern.

    The pattern is either an exact model name or a glob using `*` and `?`.
    A literal `*` pattern acts as the catch-all fallback.
    """
    pattern: str
    grams_per_1k_tokens: Decimal
    effective_from: str
    description: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self):
        """Validate pattern and factor value."""
        if not self.pattern or not self.pattern.strip():
            raise ValueError("pattern is required and cannot be empty")
        if self.grams_per_1k_tokens <= 0:
            raise ValueError("grams_per_1k_tokens must be > 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "grams_per_1k_tokens": float(self.grams_per_1k_tokens),
            "effective_from": self.effective_from,
            "description": self.description,
            "source": self.source,
        }


@dataclass(frozen=True)
class UsageRecord:
    """Persisted daily usage for one model.

    Uniquely identified by (date, model_name). Records are replaced in full
    whenever the collector sees new totals for the same key.
    """
    date: str
    model_name: str
    input_tokens: int
    output_tokens: int
    cache_create_tokens: int
    cache_read_tokens: int
    total_tokens: int
    cost_usd: Decimal
    co2_grams: float
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row, co2_grams: float) -> "UsageRecord":
        """Build a record from a parsed usage row.

        co2_grams must be freshly computed from row.total_tokens; it is never
        carried over from a previously stored record.
        """
        return cls(
            date=row.date,
            model_name=row.model_name,
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
            cache_create_tokens=row.cache_create_tokens,
            cache_read_tokens=row.cache_read_tokens,
            total_tokens=row.total_tokens,
            cost_usd=row.cost_usd,
            co2_grams=co2_grams,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation used in subscriber events."""
        return {
            "date": self.date,
            "model_name": self.model_name,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_create_tokens": self.cache_create_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": float(self.cost_usd),
            "co2_grams": self.co2_grams,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
