"""
Metrics Interpolation Engine

Estimates a body metric at an arbitrary instant from a sparse, irregular
observation series. Every answer is one of the estimate variants from
metric_models:

- Measured: a reading exists on the requested day
- Interpolated: linear between the nearest readings before and after, graded
  by the width of the gap between them
- CarriedForward: the last reading, held for a bounded staleness window
- Missing: anything else, including dates before the first reading (the
  engine never extrapolates backwards)

The fat-free mass index (FFMI) is derived from independently resolved weight
and body fat values.
"""

import logging
from bisect import bisect_right
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import interp1d

from engine_config import (
    FFMI_NORMALIZATION_SLOPE,
    FFMI_REFERENCE_HEIGHT_M,
    INCHES_TO_METERS,
    LBS_TO_KG,
    InterpolationConfig,
)
from metric_models import (
    MISSING,
    CarriedForward,
    ConfidenceLevel,
    Interpolated,
    InterpolatedEstimate,
    Measured,
    MetricObservation,
    MetricType,
    as_datetime,
    sort_observations,
    to_epoch_seconds,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_DAY


def calculate_ffmi(lean_mass_kg, height_m, normalize=True):
    """
    Calculates the fat-free mass index.

    FFMI = lean_kg / height_m^2, optionally adjusted to a 1.8 m reference
    height with the standard + 6.1 * (1.8 - height_m) term.

    Args:
        lean_mass_kg (float): Fat-free mass in kilograms.
        height_m (float): Height in meters.
        normalize (bool): Apply the height normalization term.

    Returns:
        float: The FFMI in kg/m^2.
    """
    ffmi = lean_mass_kg / (height_m**2)
    if normalize:
        ffmi += FFMI_NORMALIZATION_SLOPE * (FFMI_REFERENCE_HEIGHT_M - height_m)
    return ffmi


def combine_estimates(
    value: float, *parts: InterpolatedEstimate
) -> InterpolatedEstimate:
    """
    Provenance of a value derived from several resolved inputs.

    Carried-forward inputs dominate, then interpolated ones; the result takes
    the weakest confidence of its inputs. Any missing input makes the result
    missing.
    """
    if not parts or any(part.is_missing for part in parts):
        return MISSING

    confidence = parts[0].confidence
    for part in parts[1:]:
        confidence = ConfidenceLevel.weakest(confidence, part.confidence)

    carried = [part for part in parts if isinstance(part, CarriedForward)]
    if carried:
        return CarriedForward(
            value=value,
            confidence=confidence,
            as_of_date=min(part.as_of_date for part in carried),
        )

    interpolated = [part for part in parts if isinstance(part, Interpolated)]
    if interpolated:
        return Interpolated(
            value=value,
            confidence=confidence,
            from_date=min(part.from_date for part in interpolated),
            to_date=max(part.to_date for part in interpolated),
        )

    return Measured(value=value, observed_at=max(part.observed_at for part in parts))


class InterpolationEngine:
    """Stateless estimator over caller-supplied observation snapshots"""

    def __init__(self, config: Optional[InterpolationConfig] = None):
        self.config = config or InterpolationConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def confidence_for_gap(self, gap_days: float) -> Optional[ConfidenceLevel]:
        """
        Grade an interpolation by the width of the gap between its anchors.

        Returns None when the gap exceeds max_interpolation_gap_days.
        """
        max_gap = self.config.max_interpolation_gap_days
        if max_gap is not None and gap_days > max_gap:
            return None
        if gap_days <= self.config.high_confidence_max_gap_days:
            return ConfidenceLevel.HIGH
        if gap_days <= self.config.medium_confidence_max_gap_days:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.LOW

    def estimate(
        self,
        target,
        metric: MetricType,
        observations: Iterable[MetricObservation],
        height_in: Optional[float] = None,
    ) -> InterpolatedEstimate:
        """
        Estimate a metric at the target instant.

        Args:
            target: Instant to estimate at (datetime or date).
            metric: Which metric to resolve.
            observations: Observation snapshot, in any order.
            height_in: Height in inches; only used for MetricType.FFMI.

        Returns:
            An estimate variant; MISSING when no trustworthy value exists.
        """
        if metric == MetricType.FFMI:
            return self.estimate_ffmi(target, observations, height_in)

        target = as_datetime(target)
        times, values = self._readings(metric, observations)
        if not times:
            return MISSING

        prev_idx = bisect_right(times, target) - 1
        return self._resolve(target, times, values, prev_idx)

    def estimate_series(
        self,
        targets: Sequence,
        metric: MetricType,
        observations: Iterable[MetricObservation],
        height_in: Optional[float] = None,
    ) -> List[InterpolatedEstimate]:
        """
        Estimate a metric at many instants at once.

        Produces the same variants as calling estimate() for each target,
        with anchor lookup and linear interpolation vectorized.
        """
        observations = list(observations)
        if metric == MetricType.FFMI:
            return [
                self.estimate_ffmi(target, observations, height_in)
                for target in targets
            ]

        targets = [as_datetime(target) for target in targets]
        times, values = self._readings(metric, observations)
        if not times:
            return [MISSING] * len(targets)
        if not targets:
            return []

        epochs = np.array([to_epoch_seconds(t) for t in times])
        target_epochs = np.array([to_epoch_seconds(t) for t in targets])
        prev_indices = np.searchsorted(epochs, target_epochs, side="right") - 1

        if len(times) >= 2:
            interpolator = interp1d(
                epochs,
                values,
                kind="linear",
                bounds_error=False,
                fill_value=np.nan,
                assume_sorted=True,
            )
            with np.errstate(divide="ignore", invalid="ignore"):
                interpolated = interpolator(target_epochs)
        else:
            interpolated = np.full(len(targets), np.nan)

        return [
            self._resolve(
                target,
                times,
                values,
                int(prev_idx),
                None if np.isnan(estimate) else float(estimate),
            )
            for target, prev_idx, estimate in zip(
                targets, prev_indices, interpolated
            )
        ]

    def estimate_lean_mass(
        self, target, observations: Iterable[MetricObservation]
    ) -> InterpolatedEstimate:
        """
        Calculate or estimate lean mass at the target instant.

        Lean mass = weight * (1 - body_fat / 100), in the configured weight unit.
        """
        observations = list(observations)
        weight = self.estimate(target, MetricType.WEIGHT, observations)
        body_fat = self.estimate(target, MetricType.BODY_FAT, observations)
        if weight.is_missing or body_fat.is_missing:
            return MISSING

        lean_mass = weight.value * (1 - body_fat.value / 100)
        return combine_estimates(lean_mass, weight, body_fat)

    def estimate_ffmi(
        self,
        target,
        observations: Iterable[MetricObservation],
        height_in: Optional[float],
    ) -> InterpolatedEstimate:
        """
        Calculate or estimate FFMI at the target instant.

        Requires a positive height; weight and body fat are each resolved with
        the usual rules and the result carries their combined provenance.
        """
        if height_in is None or height_in <= 0:
            return MISSING

        lean_mass = self.estimate_lean_mass(target, observations)
        if lean_mass.is_missing:
            return MISSING

        ffmi = self._ffmi_from_lean_mass(lean_mass.value, height_in)
        return replace(lean_mass, value=ffmi)

    def ffmi_from_values(
        self, weight: float, body_fat_percentage: float, height_in: float
    ) -> Optional[float]:
        """FFMI for one directly observed weight/body-fat pair"""
        if height_in is None or height_in <= 0:
            return None
        lean_mass = weight * (1 - body_fat_percentage / 100)
        return self._ffmi_from_lean_mass(lean_mass, height_in)

    def find_closest_observation(
        self,
        target,
        observations: Iterable[MetricObservation],
        max_days_difference: int = 7,
    ) -> Optional[MetricObservation]:
        """
        Find the observation closest to the target within a calendar-day window.

        Ties go to the earlier observation.
        """
        target = as_datetime(target)
        target_day = target.date()
        closest = None
        closest_distance = None
        for observation in sort_observations(observations):
            timestamp = as_datetime(observation.timestamp)
            if abs((timestamp.date() - target_day).days) > max_days_difference:
                continue
            distance = abs((timestamp - target).total_seconds())
            if closest_distance is None or distance < closest_distance:
                closest = observation
                closest_distance = distance
        return closest

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ffmi_from_lean_mass(self, lean_mass: float, height_in: float) -> float:
        lean_mass_kg = lean_mass
        if self.config.weight_unit == "lbs":
            lean_mass_kg = lean_mass * LBS_TO_KG
        height_m = height_in * INCHES_TO_METERS
        return calculate_ffmi(lean_mass_kg, height_m, self.config.normalize_ffmi)

    @staticmethod
    def _readings(
        metric: MetricType, observations: Iterable[MetricObservation]
    ) -> Tuple[List[datetime], np.ndarray]:
        """Sorted timestamps and values of the non-null readings of a metric"""
        times = []
        values = []
        for observation in sort_observations(observations):
            value = observation.value_for(metric)
            if value is None:
                continue
            times.append(as_datetime(observation.timestamp))
            values.append(float(value))
        return times, np.array(values, dtype=float)

    def _resolve(
        self,
        target: datetime,
        times: List[datetime],
        values: np.ndarray,
        prev_idx: int,
        interpolated_value: Optional[float] = None,
    ) -> InterpolatedEstimate:
        """Classify the target against its neighbouring readings"""
        count = len(times)
        next_idx = prev_idx + 1

        if prev_idx < 0:
            return MISSING

        # Same-day readings count as measured; closest in time wins.
        same_day = [
            idx
            for idx in (prev_idx, next_idx)
            if 0 <= idx < count and times[idx].date() == target.date()
        ]
        if same_day:
            best = min(same_day, key=lambda idx: abs(times[idx] - target))
            return Measured(value=float(values[best]), observed_at=times[best])

        prev_time = times[prev_idx]
        if next_idx >= count:
            staleness_days = _days_between(prev_time, target)
            if staleness_days > self.config.max_staleness_days:
                logger.debug(
                    f"Last reading {prev_time:%Y-%m-%d} is {staleness_days:.1f} days stale"
                )
                return MISSING
            return CarriedForward(
                value=float(values[prev_idx]),
                confidence=ConfidenceLevel.LOW,
                as_of_date=prev_time,
            )

        next_time = times[next_idx]
        confidence = self.confidence_for_gap(_days_between(prev_time, next_time))
        if confidence is None:
            return MISSING

        if interpolated_value is None:
            progress = (target - prev_time) / (next_time - prev_time)
            start = float(values[prev_idx])
            interpolated_value = start + (float(values[next_idx]) - start) * progress

        return Interpolated(
            value=interpolated_value,
            confidence=confidence,
            from_date=prev_time,
            to_date=next_time,
        )
