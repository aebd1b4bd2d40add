"""
CO2 emission calculations and factor management.

Handles emission estimates for token usage and the per-model factor table.
"""

import logging
import re
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from ai_carbon_monitor.storage.models import EmissionFactor
from ai_carbon_monitor.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

WILDCARD_PATTERN = "*"

# Physical assumptions behind the per-token constant
ENERGY_PER_TOKEN_KWH = Decimal("0.000002")
DATACENTER_PUE = Decimal("1.4")
GRID_KG_CO2_PER_KWH = Decimal("0.6")

# 0.000002 kWh * 1.4 * 0.6 kg/kWh * 1000 g/kg = 0.00168 g per token
CO2_GRAMS_PER_TOKEN = ENERGY_PER_TOKEN_KWH * DATACENTER_PUE * GRID_KG_CO2_PER_KWH * Decimal("1000")

FALLBACK_FACTOR = EmissionFactor(
    pattern=WILDCARD_PATTERN,
    grams_per_1k_tokens=Decimal("3.0"),
    effective_from="2024-01-01",
    description="Hardcoded fallback factor",
    source="System default",
)


def pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    """Convert a glob pattern to a case-insensitive regex anchored at the start.

    claude-sonnet* -> ^claude\\-sonnet.*
    """
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE)


def matches_pattern(model_name: str, pattern: str) -> bool:
    """Return True if model_name matches the glob pattern as a prefix."""
    if pattern == WILDCARD_PATTERN:
        return True
    return pattern_to_regex(pattern).match(model_name) is not None


class EmissionModel:
    """Estimates CO2 for token usage and serves the emission factor table.

    Emissions are computed with the flat CO2_GRAMS_PER_TOKEN constant. The
    per-model factor table is loaded and queryable through factor_for_model()
    but is not applied by grams_for_tokens().
    """

    def __init__(self, repository: UsageRepository):
        self.repository = repository
        self._factors: Dict[str, EmissionFactor] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Load the factor table once.

        Raises:
            Exception: Any store error is propagated to the caller
        """
        if self._initialized:
            return
        self.reload()
        self._initialized = True
        logger.info("Emission model initialized")

    def reload(self) -> None:
        """Replace the in-memory factor table with the stored one."""
        factors = self.repository.load_emission_factors()
        self._factors = {factor.pattern: factor for factor in factors}
        logger.info("Loaded %d emission factors", len(factors))

    def grams_for_tokens(self, model_name: str, total_tokens: int) -> float:
        """Estimate grams of CO2 for a token count.

        Args:
            model_name: Model identifier, kept for diagnostics
            total_tokens: Total tokens processed

        Returns:
            Estimated grams of CO2

        Raises:
            RuntimeError: If initialize() has not been called
            ValueError: If total_tokens is negative
        """
        if not self._initialized:
            raise RuntimeError("EmissionModel not initialized. Call initialize() first.")
        if total_tokens < 0:
            raise ValueError("total_tokens must be >= 0")

        emissions = Decimal(total_tokens) * CO2_GRAMS_PER_TOKEN
        logger.debug(
            "CO2 for %s: %d tokens * %s g = %s g",
            model_name, total_tokens, CO2_GRAMS_PER_TOKEN, emissions
        )
        return float(emissions)

    def calculate_batch_emissions(self, records: Iterable[Tuple[str, int]]) -> List[float]:
        """Estimate CO2 for (model_name, total_tokens) pairs."""
        return [self.grams_for_tokens(model, tokens) for model, tokens in records]

    def factor_for_model(self, model_name: str) -> EmissionFactor:
        """Resolve the emission factor for a model.

        Lookup order: exact pattern key, first matching glob in load order,
        the '*' entry, then a hardcoded fallback.
        """
        if model_name in self._factors:
            return self._factors[model_name]

        for pattern, factor in self._factors.items():
            if pattern != WILDCARD_PATTERN and matches_pattern(model_name, pattern):
                return factor

        default_factor = self._factors.get(WILDCARD_PATTERN)
        if default_factor is None:
            logger.warning("No default emission factor found, using hardcoded fallback")
            return FALLBACK_FACTOR

        logger.debug("Using default emission factor for model: %s", model_name)
        return default_factor

    def replace_factor(self, factor: EmissionFactor) -> None:
        """Insert or replace a factor by pattern and reload the whole table."""
        self.repository.upsert_emission_factor(factor)
        logger.info("Updated emission factor for pattern: %s", factor.pattern)
        self.reload()

    def get_emission_factors(self) -> List[EmissionFactor]:
        """Return all stored factors ordered by pattern."""
        return self.repository.list_emission_factors()
