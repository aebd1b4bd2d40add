"""
Unit tests for emission calculations and factor lookup.
"""

import os
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ai_carbon_monitor.core.emissions import (
    CO2_GRAMS_PER_TOKEN,
    FALLBACK_FACTOR,
    EmissionModel,
    matches_pattern,
)
from ai_carbon_monitor.storage.models import EmissionFactor
from ai_carbon_monitor.storage.repository import UsageRepository


def _factor(pattern: str, grams: str = "2.0", effective_from: str = "2024-01-01") -> EmissionFactor:
    return EmissionFactor(
        pattern=pattern,
        grams_per_1k_tokens=Decimal(grams),
        effective_from=effective_from
    )


def _model_with(*factors: EmissionFactor) -> EmissionModel:
    repository = MagicMock()
    repository.load_emission_factors.return_value = list(factors)
    model = EmissionModel(repository)
    model.initialize()
    return model


class TestConstant:
    """Test the per-token constant."""

    def test_constant_value(self):
        """Verify 0.000002 kWh * 1.4 * 0.6 kg/kWh * 1000 = 0.00168 g."""
        assert CO2_GRAMS_PER_TOKEN == Decimal("0.00168")


class TestGramsForTokens:
    """Test CO2 estimates for token counts."""

    def test_zero_tokens(self):
        model = _model_with()
        assert model.grams_for_tokens("claude-sonnet-4", 0) == 0

    def test_known_value(self):
        model = _model_with()
        assert model.grams_for_tokens("claude-sonnet-4", 1000) == pytest.approx(1.68)

    def test_linear_in_tokens(self):
        """Verify doubling tokens doubles emissions."""
        model = _model_with()
        single = model.grams_for_tokens("claude-opus-4", 12345)
        double = model.grams_for_tokens("claude-opus-4", 24690)
        assert double == pytest.approx(2 * single)

    def test_factor_table_not_applied(self):
        """Verify the flat constant is used whatever factor matches."""
        model = _model_with(_factor("claude-opus*", "100.0"), _factor("*", "0.1"))
        assert model.grams_for_tokens("claude-opus-4", 1000) == pytest.approx(1.68)
        assert model.grams_for_tokens("unknown", 1000) == pytest.approx(1.68)

    def test_negative_tokens_rejected(self):
        model = _model_with()
        with pytest.raises(ValueError, match="total_tokens must be >= 0"):
            model.grams_for_tokens("claude-sonnet-4", -1)

    def test_requires_initialization(self):
        model = EmissionModel(MagicMock())
        with pytest.raises(RuntimeError, match="not initialized"):
            model.grams_for_tokens("claude-sonnet-4", 10)

    def test_batch_emissions(self):
        model = _model_with()
        result = model.calculate_batch_emissions([("a", 0), ("b", 1000)])
        assert result == [0, pytest.approx(1.68)]


class TestPatternMatching:
    """Test glob matching rules."""

    def test_prefix_glob(self):
        assert matches_pattern("claude-sonnet-4", "claude-sonnet*")

    def test_case_insensitive(self):
        assert matches_pattern("Claude-Sonnet-4", "claude-sonnet*")

    def test_anchored_at_start(self):
        assert not matches_pattern("my-claude-sonnet", "claude-sonnet*")

    def test_question_mark_matches_one_character(self):
        assert matches_pattern("claude-3-opus", "claude-?-opus")
        assert not matches_pattern("claude--opus", "claude-?-opus")

    def test_dot_is_literal(self):
        assert not matches_pattern("claude-3x5", "claude-3.5*")


class TestFactorForModel:
    """Test emission factor resolution order."""

    def test_pattern_before_wildcard(self):
        """Verify a specific pattern wins over the catch-all."""
        sonnet = _factor("claude-sonnet*", "2.1")
        default = _factor("*", "3.0")
        model = _model_with(sonnet, default)
        assert model.factor_for_model("claude-sonnet-4") == sonnet
        assert model.factor_for_model("unknown-model") == default

    def test_wildcard_loaded_first_is_still_fallback(self):
        """Verify '*' never shadows specific patterns, whatever its position."""
        default = _factor("*", "3.0", "2025-06-01")
        sonnet = _factor("claude-sonnet*", "2.1", "2024-01-01")
        model = _model_with(default, sonnet)
        assert model.factor_for_model("claude-sonnet-4") == sonnet

    def test_exact_match_first(self):
        exact = _factor("claude-sonnet-4", "1.0")
        model = _model_with(_factor("claude-sonnet*", "2.1"), exact)
        assert model.factor_for_model("claude-sonnet-4") == exact

    def test_first_matching_pattern_wins(self):
        """Verify load order decides between overlapping patterns."""
        newer = _factor("claude*", "5.0", "2025-01-01")
        older = _factor("claude-sonnet*", "2.1", "2024-01-01")
        model = _model_with(newer, older)
        assert model.factor_for_model("claude-sonnet-4") == newer

    def test_hardcoded_fallback(self):
        """Verify the built-in factor when no wildcard is loaded."""
        model = _model_with(_factor("claude-sonnet*"))
        factor = model.factor_for_model("gpt-4")
        assert factor == FALLBACK_FACTOR
        assert factor.grams_per_1k_tokens == Decimal("3.0")


class TestFactorStorage:
    """Test factor updates against a real database."""

    def test_seeded_factors_loaded(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            repository = UsageRepository(os.path.join(temp_dir, "test.db"))
            repository.initialize_schema()
            model = EmissionModel(repository)
            model.initialize()

            assert model.factor_for_model("claude-opus-4").pattern == "claude-opus*"
            assert model.factor_for_model("mystery").pattern == "*"

    def test_replace_factor_reloads(self):
        """Verify a replaced factor is visible immediately."""
        with tempfile.TemporaryDirectory() as temp_dir:
            repository = UsageRepository(os.path.join(temp_dir, "test.db"))
            repository.initialize_schema()
            model = EmissionModel(repository)
            model.initialize()

            model.replace_factor(_factor("claude-sonnet*", "9.5"))
            model.replace_factor(_factor("gpt-4*", "4.4"))

            assert model.factor_for_model("claude-sonnet-4").grams_per_1k_tokens == Decimal("9.5")
            assert model.factor_for_model("gpt-4o").grams_per_1k_tokens == Decimal("4.4")
            patterns = [factor.pattern for factor in model.get_emission_factors()]
            assert patterns == sorted(patterns)
            assert patterns.count("claude-sonnet*") == 1

    def test_initialize_propagates_store_errors(self):
        """Verify a failed factor load is not swallowed."""
        repository = MagicMock()
        repository.load_emission_factors.side_effect = RuntimeError("no such table")
        model = EmissionModel(repository)
        with pytest.raises(RuntimeError, match="no such table"):
            model.initialize()
        assert not model.initialized
