"""
Unit tests for credit pricing.

Covers exact Decimal arithmetic, round-up behaviour, monotonicity, the
per-job ceiling and the handling of invalid pricing configuration.
"""

from decimal import Decimal

import pytest

from core.errors import ConfigurationError, NotFound, ValidationError
from ledger.pricing import PricingConfig, PricingConfigStore, PricingEngine
from models.catalog import ModelCatalog


def engine_with(config=None):
    catalog = ModelCatalog()
    return PricingEngine(catalog, PricingConfigStore(config)), catalog


class TestComputeCost:
    """Test the credit formula."""

    def test_reference_calculation(self):
        """$0.18/s for 5 s at margin 1.32 and 50 credits/$ is ceil(59.4) = 60."""
        engine, _ = engine_with()
        quote = engine.quote("luma/ray-2-720p", 5, "720p")
        assert quote.base_cost_usd == Decimal("0.90")
        assert quote.total_usd == Decimal("1.1880")
        assert quote.credits == 60

    def test_exact_result_is_not_rounded_up(self, scenario_pricing_config):
        """An exact product must not gain an extra credit."""
        engine, _ = engine_with(scenario_pricing_config)
        assert engine.compute_cost("luma/ray-2-720p", 5) == 42

    def test_resolution_defaults_to_model_default(self):
        engine, _ = engine_with()
        assert engine.quote("google/veo-3", 5).resolution == "1080p"
        assert engine.compute_cost("google/veo-3", 5) == 248

    def test_multiplier_applies_without_table_entry(self):
        """480p Luma: 0.18 x 0.8 = 0.144 $/s -> ceil(47.52) = 48."""
        engine, _ = engine_with()
        quote = engine.quote("luma/ray-2-720p", 5, "480p")
        assert quote.cost_per_second == Decimal("0.144")
        assert quote.credits == 48

    def test_monotonic_in_duration(self):
        engine, _ = engine_with()
        costs = [engine.compute_cost("luma/ray-2-720p", seconds) for seconds in range(1, 31)]
        assert costs == sorted(costs)
        assert all(cost > 0 for cost in costs)

    def test_higher_resolution_costs_more(self):
        engine, _ = engine_with()
        assert engine.compute_cost("google/veo-3", 8, "4K") > engine.compute_cost("google/veo-3", 8, "1080p")


class TestPricingRejections:
    """Test input and ceiling validation."""

    @pytest.mark.parametrize("duration", [0, 301, -5])
    def test_duration_out_of_range(self, duration):
        engine, _ = engine_with()
        with pytest.raises(ValidationError):
            engine.compute_cost("luma/ray-2-720p", duration)

    def test_non_integer_duration(self):
        engine, _ = engine_with()
        with pytest.raises(ValidationError):
            engine.compute_cost("luma/ray-2-720p", 5.5)

    def test_unknown_model(self):
        engine, _ = engine_with()
        with pytest.raises(NotFound):
            engine.compute_cost("acme/unknown", 5)

    def test_per_job_ceiling(self):
        """Veo 4K for 300 s would be 22275 credits, above the 10000 ceiling."""
        engine, _ = engine_with()
        with pytest.raises(ValidationError, match="ceiling"):
            engine.compute_cost("google/veo-3", 300, "4K")


class TestConfigurationErrors:
    """Test that broken configuration disables the model."""

    def test_cost_per_second_above_ceiling_disables_model(self):
        config = PricingConfig(cost_table={("luma/ray-2-720p", "720p"): Decimal("6")})
        engine, catalog = engine_with(config)
        with pytest.raises(ConfigurationError):
            engine.compute_cost("luma/ray-2-720p", 5)
        assert catalog.get("luma/ray-2-720p").is_active is False
        with pytest.raises(NotFound):
            engine.compute_cost("luma/ray-2-720p", 5)

    def test_margin_out_of_bounds(self):
        engine, _ = engine_with(PricingConfig(profit_margin=Decimal("0.5")))
        with pytest.raises(ConfigurationError):
            engine.compute_cost("luma/ray-2-720p", 5)

    def test_unresolvable_cost(self):
        config = PricingConfig(resolution_multipliers={}, cost_table={})
        engine, _ = engine_with(config)
        with pytest.raises(ConfigurationError):
            engine.compute_cost("luma/ray-2-720p", 5, "480p")

    def test_other_models_keep_working(self):
        config = PricingConfig(cost_table={("luma/ray-2-720p", "720p"): Decimal("0")})
        engine, _ = engine_with(config)
        with pytest.raises(ConfigurationError):
            engine.compute_cost("luma/ray-2-720p", 5)
        assert engine.compute_cost("google/veo-3", 5) == 297


class TestPricingConfigStore:
    """Test bounded configuration updates."""

    def test_update_takes_effect_on_next_snapshot(self):
        store = PricingConfigStore()
        engine = PricingEngine(ModelCatalog(), store)
        before = store.snapshot()
        store.update("profit_margin", "2.0")
        assert before.profit_margin == Decimal("1.32")
        assert engine.compute_cost("luma/ray-2-720p", 5) == 90

    def test_rejects_out_of_bounds_value(self):
        store = PricingConfigStore()
        with pytest.raises(ValidationError):
            store.update("profit_margin", "5")
        assert store.snapshot().profit_margin == Decimal("1.32")

    def test_rejects_non_editable_key(self):
        with pytest.raises(ValidationError, match="not editable"):
            PricingConfigStore().update("max_credits_per_job", "1")

    def test_rejects_non_numeric_value(self):
        with pytest.raises(ValidationError):
            PricingConfigStore().update("credits_per_dollar", "lots")

    def test_cost_per_second_entry(self):
        store = PricingConfigStore()
        store.update("cost_per_second", "0.20", target="720p", model_ref="luma/ray-2-720p")
        assert store.snapshot().cost_table[("luma/ray-2-720p", "720p")] == Decimal("0.20")


class TestPricingMatrix:
    def test_covers_active_models_and_resolutions(self):
        engine, catalog = engine_with()
        matrix = engine.pricing_matrix(durations=(5, 10))
        assert set(matrix) == {"luma/ray-2-720p", "google/veo-3"}
        assert matrix["luma/ray-2-720p"]["720p"] == {"5": 60, "10": 119}
        assert set(matrix["google/veo-3"]) == {"720p", "1080p", "4K"}

        catalog.set_active("google/veo-3", False)
        assert set(engine.pricing_matrix()) == {"luma/ray-2-720p"}

    def test_unresolvable_model_is_left_out(self):
        """Luma has no 480p multiplier here; Veo still prices every resolution."""
        config = PricingConfig(
            resolution_multipliers={"720p": Decimal("1.0"), "1080p": Decimal("1.2"), "4K": Decimal("1.5")}
        )
        engine, catalog = engine_with(config)
        matrix = engine.pricing_matrix(durations=(5,))
        assert set(matrix) == {"google/veo-3"}
        assert matrix["google/veo-3"]["1080p"] == {"5": 248}
        assert catalog.get("luma/ray-2-720p").is_active is False


class TestUnsupportedResolution:
    """A bad request resolution is a caller error, not a pricing fault."""

    @pytest.mark.parametrize("resolution", ["8K", "1080p"])
    def test_quote_rejects_and_keeps_model_active(self, resolution):
        engine, catalog = engine_with()
        with pytest.raises(ValidationError, match="does not support"):
            engine.quote("luma/ray-2-720p", 5, resolution)
        assert catalog.get("luma/ray-2-720p").is_active is True
        assert engine.compute_cost("luma/ray-2-720p", 5, "720p") == 60

    def test_config_update_rejects_unknown_resolution(self):
        store = PricingConfigStore()
        with pytest.raises(ValidationError, match="unknown resolution"):
            store.update("resolution_multiplier", "1.1", target="8K")
        assert "8K" not in store.snapshot().resolution_multipliers
