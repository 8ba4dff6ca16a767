"""
Engine configuration

Tunable thresholds for the four engines, grouped in dataclasses that validate
themselves on construction, plus a JSON schema and loader for configuration
files.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from jsonschema import validate

from metric_models import TimelineScale

logger = logging.getLogger(__name__)

# Unit conversions
LBS_TO_KG = 0.453592
INCHES_TO_METERS = 0.0254

# Standard FFMI height normalization: FFMI + 6.1 * (1.8 - height_m)
FFMI_NORMALIZATION_SLOPE = 6.1
FFMI_REFERENCE_HEIGHT_M = 1.8

WEIGHT_UNITS = ("kg", "lbs")


class ConfigError(ValueError):
    """Raised when engine configuration values are inconsistent"""

    pass


# ============================================================================
# CONFIG SECTIONS
# ============================================================================


@dataclass(frozen=True)
class InterpolationConfig:
    """Gap thresholds (in days) used to grade interpolated values"""

    high_confidence_max_gap_days: float = 7
    medium_confidence_max_gap_days: float = 14
    max_interpolation_gap_days: Optional[float] = None  # None = no limit
    max_staleness_days: float = 30
    weight_unit: str = "kg"
    normalize_ffmi: bool = True

    def __post_init__(self):
        if self.high_confidence_max_gap_days < 0:
            raise ConfigError("high_confidence_max_gap_days must be non-negative")
        if self.medium_confidence_max_gap_days < self.high_confidence_max_gap_days:
            raise ConfigError(
                "medium_confidence_max_gap_days must be >= high_confidence_max_gap_days"
            )
        if (
            self.max_interpolation_gap_days is not None
            and self.max_interpolation_gap_days <= 0
        ):
            raise ConfigError("max_interpolation_gap_days must be positive")
        if self.max_staleness_days < 0:
            raise ConfigError("max_staleness_days must be non-negative")
        if self.weight_unit not in WEIGHT_UNITS:
            raise ConfigError(f"Invalid weight unit: {self.weight_unit}")


DEFAULT_PERIODS_PER_SCALE = {
    TimelineScale.WEEK: 4,
    TimelineScale.MONTH: 12,
    TimelineScale.YEAR: 5,
}


@dataclass(frozen=True)
class AggregationConfig:
    """How far back bucket construction walks per scale"""

    periods_per_scale: Dict[TimelineScale, int] = field(
        default_factory=lambda: dict(DEFAULT_PERIODS_PER_SCALE)
    )
    height_in: Optional[float] = None  # needed for FFMI buckets

    def __post_init__(self):
        for scale in TimelineScale:
            count = self.periods_per_scale.get(scale)
            if count is None or count < 1:
                raise ConfigError(f"periods_per_scale[{scale.value}] must be >= 1")

    def periods_for(self, scale: TimelineScale) -> int:
        return self.periods_per_scale[scale]


@dataclass(frozen=True)
class ScrubberConfig:
    """
    Breakpoints of the three-piece scrubber mapping.

    The recent window maps to [recent_floor, 1.0], the history window to
    [history_floor, recent_floor], and everything older to [0.0, history_floor].
    """

    recent_window_days: float = 30
    history_window_days: float = 365
    recent_floor: float = 0.3
    history_floor: float = 0.1
    daily_tier_days: int = 7
    weekly_tier_days: int = 30
    monthly_tier_days: int = 365

    def __post_init__(self):
        if not 0 < self.recent_window_days < self.history_window_days:
            raise ConfigError(
                "Windows must satisfy 0 < recent_window_days < history_window_days"
            )
        if not 0.0 <= self.history_floor <= self.recent_floor <= 1.0:
            raise ConfigError(
                "Floors must satisfy 0 <= history_floor <= recent_floor <= 1"
            )
        if not 0 <= self.daily_tier_days <= self.weekly_tier_days <= self.monthly_tier_days:
            raise ConfigError("Tier thresholds must be non-decreasing")


# Maximum chart points per visible range
DEFAULT_RANGE_POINT_LIMITS = {
    "1W": 140,
    "1M": 180,
    "3M": 210,
    "6M": 240,
    "1Y": 260,
    "All": 320,
}


@dataclass(frozen=True)
class DownsampleConfig:
    """Point budgets and worker sizing for chart downsampling"""

    range_point_limits: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_RANGE_POINT_LIMITS)
    )
    background_threshold: int = 2000  # inputs at least this long go to a worker
    max_workers: int = 1

    def __post_init__(self):
        for name, limit in self.range_point_limits.items():
            if limit < 1:
                raise ConfigError(f"Point limit for {name} must be positive")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be >= 1")


@dataclass(frozen=True)
class EngineConfig:
    """All engine settings"""

    interpolation: InterpolationConfig = field(default_factory=InterpolationConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    scrubber: ScrubberConfig = field(default_factory=ScrubberConfig)
    downsample: DownsampleConfig = field(default_factory=DownsampleConfig)


# ============================================================================
# JSON LOADING
# ============================================================================

_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_NON_NEGATIVE_NUMBER = {"type": "number", "minimum": 0}
_FRACTION = {"type": "number", "minimum": 0, "maximum": 1}
_COUNT = {"type": "integer", "minimum": 1}

ENGINE_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "interpolation": {
            "type": "object",
            "properties": {
                "high_confidence_max_gap_days": _NON_NEGATIVE_NUMBER,
                "medium_confidence_max_gap_days": _NON_NEGATIVE_NUMBER,
                "max_interpolation_gap_days": {
                    "anyOf": [_POSITIVE_NUMBER, {"type": "null"}]
                },
                "max_staleness_days": _NON_NEGATIVE_NUMBER,
                "weight_unit": {"type": "string", "enum": list(WEIGHT_UNITS)},
                "normalize_ffmi": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "aggregation": {
            "type": "object",
            "properties": {
                "periods_per_scale": {
                    "type": "object",
                    "properties": {scale.value: _COUNT for scale in TimelineScale},
                    "additionalProperties": False,
                },
                "height_in": {"type": "number", "minimum": 12, "maximum": 120},
            },
            "additionalProperties": False,
        },
        "scrubber": {
            "type": "object",
            "properties": {
                "recent_window_days": _POSITIVE_NUMBER,
                "history_window_days": _POSITIVE_NUMBER,
                "recent_floor": _FRACTION,
                "history_floor": _FRACTION,
                "daily_tier_days": {"type": "integer", "minimum": 0},
                "weekly_tier_days": {"type": "integer", "minimum": 0},
                "monthly_tier_days": {"type": "integer", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "downsample": {
            "type": "object",
            "properties": {
                "range_point_limits": {
                    "type": "object",
                    "additionalProperties": _COUNT,
                },
                "background_threshold": _COUNT,
                "max_workers": _COUNT,
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


def engine_config_from_dict(data: dict) -> EngineConfig:
    """
    Build an EngineConfig from a plain dictionary.

    Missing sections and keys fall back to defaults.

    Raises:
        ValidationError: If the dictionary doesn't match ENGINE_CONFIG_SCHEMA.
        ConfigError: If values pass the schema but are inconsistent.
    """
    validate(data, ENGINE_CONFIG_SCHEMA)

    aggregation = dict(data.get("aggregation", {}))
    if "periods_per_scale" in aggregation:
        periods = dict(DEFAULT_PERIODS_PER_SCALE)
        for name, count in aggregation["periods_per_scale"].items():
            periods[TimelineScale(name)] = count
        aggregation["periods_per_scale"] = periods

    downsample = dict(data.get("downsample", {}))
    if "range_point_limits" in downsample:
        limits = dict(DEFAULT_RANGE_POINT_LIMITS)
        limits.update(downsample["range_point_limits"])
        downsample["range_point_limits"] = limits

    return EngineConfig(
        interpolation=InterpolationConfig(**data.get("interpolation", {})),
        aggregation=AggregationConfig(**aggregation),
        scrubber=ScrubberConfig(**data.get("scrubber", {})),
        downsample=DownsampleConfig(**downsample),
    )


def load_engine_config(config_path) -> EngineConfig:
    """
    Loads and validates a JSON engine configuration file.

    Args:
        config_path (str): Path to the JSON configuration file.

    Returns:
        EngineConfig: Parsed configuration.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        json.JSONDecodeError: If the JSON is malformed.
        ValidationError: If the JSON doesn't match the required schema.
        ConfigError: If values are inconsistent.
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        data = json.load(f)

    config = engine_config_from_dict(data)
    logger.info(f"Loaded engine configuration from {config_path}")
    return config
