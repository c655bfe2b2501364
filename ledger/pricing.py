"""
Credit pricing for generation jobs.

Credits are derived from the provider's per-second USD cost, a profit margin
and a credits-per-dollar rate. All arithmetic runs on Decimal and rounds up,
so a job is never under-charged by float noise.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Dict, Iterable, Optional, Tuple

from core.errors import ConfigurationError, ValidationError
from models.catalog import RESOLUTIONS, ModelCatalog

logger = logging.getLogger(__name__)

MIN_DURATION_SECONDS = 1
MAX_DURATION_SECONDS = 300


@dataclass(frozen=True)
class Bounds:
    minimum: Decimal
    maximum: Decimal

    def contains(self, value: Decimal) -> bool:
        return self.minimum <= value <= self.maximum


def _default_multipliers() -> Dict[str, Decimal]:
    return {
        "480p": Decimal("0.8"),
        "720p": Decimal("1.0"),
        "1080p": Decimal("1.2"),
        "4K": Decimal("1.5"),
    }


def _default_cost_table() -> Dict[Tuple[str, str], Decimal]:
    return {
        ("luma/ray-2-720p", "720p"): Decimal("0.18"),
        ("google/veo-3", "1080p"): Decimal("0.75"),
    }


@dataclass(frozen=True)
class PricingConfig:
    """Immutable pricing snapshot. A computation reads exactly one of these."""

    profit_margin: Decimal = Decimal("1.32")
    credits_per_dollar: Decimal = Decimal("50")
    resolution_multipliers: Dict[str, Decimal] = field(default_factory=_default_multipliers)
    cost_table: Dict[Tuple[str, str], Decimal] = field(default_factory=_default_cost_table)
    max_cost_per_second: Decimal = Decimal("5.00")
    max_credits_per_job: int = 10_000
    profit_margin_bounds: Bounds = Bounds(Decimal("1.0"), Decimal("3.0"))
    credits_per_dollar_bounds: Bounds = Bounds(Decimal("10"), Decimal("1000"))
    multiplier_bounds: Bounds = Bounds(Decimal("0.5"), Decimal("5.0"))


@dataclass(frozen=True)
class Quote:
    model_ref: str
    resolution: str
    duration_seconds: int
    cost_per_second: Decimal
    base_cost_usd: Decimal
    total_usd: Decimal
    credits: int


def to_decimal(value, name: str) -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be numeric")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite")
    return result


class PricingConfigStore:
    """Configuration store for pricing values.

    Readers take a snapshot; writers validate against the snapshot's bounds
    and swap in a new frozen config, so a computation in flight never sees a
    half-applied change.
    """

    EDITABLE_KEYS = {"profit_margin", "credits_per_dollar", "resolution_multiplier", "cost_per_second"}

    def __init__(self, config: Optional[PricingConfig] = None) -> None:
        self._config = config or PricingConfig()
        self._lock = threading.Lock()

    def snapshot(self) -> PricingConfig:
        with self._lock:
            return self._config

    def update(self, key: str, value, target: Optional[str] = None, model_ref: Optional[str] = None) -> PricingConfig:
        if key not in self.EDITABLE_KEYS:
            raise ValidationError(f"configuration '{key}' is not editable")
        amount = to_decimal(value, key)
        if target is not None and target not in RESOLUTIONS:
            raise ValidationError(f"unknown resolution {target}")
        with self._lock:
            current = self._config
            if key == "profit_margin":
                if not current.profit_margin_bounds.contains(amount):
                    raise ValidationError(f"profit_margin {amount} outside {current.profit_margin_bounds}")
                updated = replace(current, profit_margin=amount)
            elif key == "credits_per_dollar":
                if not current.credits_per_dollar_bounds.contains(amount):
                    raise ValidationError(f"credits_per_dollar {amount} outside {current.credits_per_dollar_bounds}")
                updated = replace(current, credits_per_dollar=amount)
            elif key == "resolution_multiplier":
                if not target:
                    raise ValidationError("resolution_multiplier requires a resolution")
                if not current.multiplier_bounds.contains(amount):
                    raise ValidationError(f"multiplier {amount} outside {current.multiplier_bounds}")
                multipliers = dict(current.resolution_multipliers)
                multipliers[target] = amount
                updated = replace(current, resolution_multipliers=multipliers)
            else:
                if not target or not model_ref:
                    raise ValidationError("cost_per_second requires a model and a resolution")
                if amount <= 0 or amount > current.max_cost_per_second:
                    raise ValidationError(f"cost_per_second {amount} outside (0, {current.max_cost_per_second}]")
                table = dict(current.cost_table)
                table[(model_ref, target)] = amount
                updated = replace(current, cost_table=table)
            self._config = updated
        logger.info("pricing configuration %s updated to %s", key, amount)
        return updated


class PricingEngine:
    def __init__(self, catalog: ModelCatalog, config_store: PricingConfigStore, disable_on_config_error: bool = True) -> None:
        self.catalog = catalog
        self.config_store = config_store
        self.disable_on_config_error = disable_on_config_error

    def compute_cost(self, model_ref: str, duration_seconds: int, resolution: Optional[str] = None) -> int:
        return self.quote(model_ref, duration_seconds, resolution).credits

    def quote(self, model_ref: str, duration_seconds: int, resolution: Optional[str] = None) -> Quote:
        _check_duration(duration_seconds)
        model = self.catalog.resolve(model_ref)
        chosen = resolution or model.default_resolution
        if chosen not in model.resolutions:
            raise ValidationError(
                f"model {model_ref} does not support resolution {chosen}",
                user_message=f"{model.name} does not support {chosen}",
            )
        config = self.config_store.snapshot()

        try:
            cost_per_second = self._cost_per_second(config, model_ref, model.default_cost_per_second, chosen)
            _check_business_config(config)
        except ConfigurationError:
            logger.error("pricing configuration invalid for %s at %s", model_ref, chosen, exc_info=True)
            if self.disable_on_config_error:
                self.catalog.set_active(model_ref, False)
                logger.error("model %s disabled until pricing is fixed", model_ref)
            raise

        base_cost = cost_per_second * duration_seconds
        total = base_cost * config.profit_margin
        credits = int((total * config.credits_per_dollar).to_integral_value(rounding=ROUND_CEILING))

        if credits <= 0:
            raise ValidationError(f"computed cost {credits} must be positive")
        if credits > config.max_credits_per_job:
            raise ValidationError(
                f"computed cost {credits} exceeds the per-job ceiling {config.max_credits_per_job}",
                user_message="This request exceeds the maximum cost allowed for one video",
            )
        return Quote(
            model_ref=model_ref,
            resolution=chosen,
            duration_seconds=duration_seconds,
            cost_per_second=cost_per_second,
            base_cost_usd=base_cost,
            total_usd=total,
            credits=credits,
        )

    def pricing_matrix(self, durations: Iterable[int] = (5, 8, 10)) -> Dict[str, Dict[str, Dict[str, int]]]:
        durations = tuple(durations)
        matrix: Dict[str, Dict[str, Dict[str, int]]] = {}
        for model in self.catalog.active_models():
            try:
                matrix[model.id] = {
                    resolution: {
                        str(duration): self.compute_cost(model.id, duration, resolution) for duration in durations
                    }
                    for resolution in model.resolutions
                }
            except ConfigurationError:
                logger.warning("leaving %s out of the pricing matrix", model.id)
        return matrix

    def _cost_per_second(self, config: PricingConfig, model_ref: str, default_cps: Decimal, resolution: str) -> Decimal:
        cps = config.cost_table.get((model_ref, resolution))
        if cps is None:
            multiplier = config.resolution_multipliers.get(resolution)
            if multiplier is None or default_cps is None:
                raise ConfigurationError(f"no cost-per-second resolvable for {model_ref} at {resolution}")
            if not config.multiplier_bounds.contains(multiplier):
                raise ConfigurationError(f"resolution multiplier {multiplier} for {resolution} out of bounds")
            cps = default_cps * multiplier
        if cps <= 0 or cps > config.max_cost_per_second:
            raise ConfigurationError(
                f"cost-per-second {cps} for {model_ref} at {resolution} outside (0, {config.max_cost_per_second}]"
            )
        return cps


def _check_duration(duration_seconds: int) -> None:
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
        raise ValidationError("duration must be a whole number of seconds")
    if not MIN_DURATION_SECONDS <= duration_seconds <= MAX_DURATION_SECONDS:
        raise ValidationError(f"duration must be between {MIN_DURATION_SECONDS} and {MAX_DURATION_SECONDS} seconds")


def _check_business_config(config: PricingConfig) -> None:
    if not config.profit_margin_bounds.contains(config.profit_margin):
        raise ConfigurationError(f"profit margin {config.profit_margin} out of bounds")
    if not config.credits_per_dollar_bounds.contains(config.credits_per_dollar):
        raise ConfigurationError(f"credits per dollar {config.credits_per_dollar} out of bounds")
