"""
Global Timeline Aggregation Engine

Builds weekly, monthly and yearly buckets for the global timeline from an
irregular observation series.

Aggregation rules:
- The newest bucket is the calendar period holding the newest observation;
  construction walks backwards a fixed number of periods per scale
- Periods without any weight, body fat or photo are skipped entirely
- Metric values are the median of direct readings in the period, falling back
  to the interpolation engine at the period midpoint
- The canonical photo is the one closest to the period midpoint
"""

import logging
from bisect import bisect_left
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from engine_config import AggregationConfig
from interpolation import InterpolationEngine
from metric_models import (
    MISSING_BUCKET_METRIC,
    Bucket,
    BucketCursor,
    BucketMetric,
    InterpolatedEstimate,
    Measured,
    MetricObservation,
    MetricPresence,
    MetricType,
    TimelineScale,
    as_datetime,
    sort_observations,
)

logger = logging.getLogger(__name__)

# Weeks run Monday through Sunday (ISO weeks)
PERIOD_FREQUENCIES = {
    TimelineScale.WEEK: "W-SUN",
    TimelineScale.MONTH: "M",
    TimelineScale.YEAR: "Y",
}


def period_bounds(scale: TimelineScale, when) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of the calendar period holding `when`"""
    period = pd.Timestamp(as_datetime(when)).to_period(PERIOD_FREQUENCIES[scale])
    return _bounds_of(period)


def _bounds_of(period: pd.Period) -> Tuple[datetime, datetime]:
    start = period.start_time.to_pydatetime()
    end = (period + 1).start_time.to_pydatetime()
    return start, end


def bucket_identifier(scale: TimelineScale, start: datetime) -> str:
    """Stable identifier for a calendar period, e.g. "week-2024-W03" """
    if scale == TimelineScale.WEEK:
        iso_year, iso_week, _ = start.isocalendar()
        return f"week-{iso_year:04d}-W{iso_week:02d}"
    if scale == TimelineScale.MONTH:
        return f"month-{start.year:04d}-{start.month:02d}"
    return f"year-{start.year:04d}"


def presence_for(estimate: InterpolatedEstimate) -> MetricPresence:
    if estimate.is_missing:
        return MetricPresence.MISSING
    if isinstance(estimate, Measured):
        return MetricPresence.PRESENT
    return MetricPresence.ESTIMATED


def bucket_for_date(buckets: Iterable[Bucket], when) -> Optional[Bucket]:
    """The bucket whose range contains `when`, if any"""
    for bucket in buckets:
        if bucket.contains(when):
            return bucket
    return None


class AggregationEngine:
    """Builds non-overlapping calendar buckets per timeline scale"""

    def __init__(
        self,
        interpolation_engine: Optional[InterpolationEngine] = None,
        config: Optional[AggregationConfig] = None,
    ):
        self.interpolation_engine = interpolation_engine or InterpolationEngine()
        self.config = config or AggregationConfig()

    def make_buckets(
        self, scale: TimelineScale, observations: Iterable[MetricObservation]
    ) -> List[Bucket]:
        """
        Build the buckets for one scale.

        Args:
            scale: Week, month or year.
            observations: Observation snapshot, in any order.

        Returns:
            Non-empty buckets sorted ascending by start date.
        """
        observations = sort_observations(observations)
        if not observations:
            return []

        times = [as_datetime(obs.timestamp) for obs in observations]
        earliest = times[0]
        period = pd.Timestamp(times[-1]).to_period(PERIOD_FREQUENCIES[scale])

        buckets = []
        for _ in range(self.config.periods_for(scale)):
            start, end = _bounds_of(period)
            if end <= earliest:
                break

            in_range = observations[bisect_left(times, start) : bisect_left(times, end)]
            if any(obs.has_any_data() for obs in in_range):
                buckets.append(
                    self._make_bucket(scale, start, end, in_range, observations)
                )
            period -= 1

        logger.debug(f"Built {len(buckets)} {scale.value} buckets")
        return sorted(buckets, key=lambda bucket: bucket.start)

    def make_all_buckets(
        self, observations: Iterable[MetricObservation]
    ) -> Dict[TimelineScale, List[Bucket]]:
        observations = sort_observations(observations)
        return {scale: self.make_buckets(scale, observations) for scale in TimelineScale}

    def make_initial_cursor(
        self, observations: Iterable[MetricObservation]
    ) -> Optional[BucketCursor]:
        """Cursor on the most recent non-empty week, for initial UI positioning"""
        weekly_buckets = self.make_buckets(TimelineScale.WEEK, observations)
        if not weekly_buckets:
            return None

        most_recent = weekly_buckets[-1]
        return BucketCursor(
            date=most_recent.end,
            scale=TimelineScale.WEEK,
            bucket_id=most_recent.id,
        )

    # ------------------------------------------------------------------
    # Bucket helpers
    # ------------------------------------------------------------------

    def _make_bucket(
        self,
        scale: TimelineScale,
        start: datetime,
        end: datetime,
        in_range: List[MetricObservation],
        all_observations: List[MetricObservation],
    ) -> Bucket:
        midpoint = start + (end - start) / 2

        metrics = {
            metric: self._direct_metric_value(
                metric, in_range, all_observations, midpoint
            )
            for metric in (MetricType.WEIGHT, MetricType.BODY_FAT)
        }
        metrics[MetricType.FFMI] = self._ffmi_value(in_range, all_observations, midpoint)

        photo = self._canonical_photo(in_range, midpoint)

        return Bucket(
            id=bucket_identifier(scale, start),
            scale=scale,
            start=start,
            end=end,
            metrics=metrics,
            canonical_photo_ref=photo.photo_ref if photo else None,
            canonical_photo_observation_id=photo.id if photo else None,
            has_photos_in_range=photo is not None,
            observation_count=len(in_range),
        )

    def _direct_metric_value(
        self,
        metric: MetricType,
        in_range: List[MetricObservation],
        all_observations: List[MetricObservation],
        midpoint: datetime,
    ) -> BucketMetric:
        readings = [
            (obs.timestamp, obs.value_for(metric))
            for obs in in_range
            if obs.value_for(metric) is not None
        ]
        if readings:
            return _median_metric(readings)

        estimate = self.interpolation_engine.estimate(midpoint, metric, all_observations)
        return _fallback_metric(estimate)

    def _ffmi_value(
        self,
        in_range: List[MetricObservation],
        all_observations: List[MetricObservation],
        midpoint: datetime,
    ) -> BucketMetric:
        height_in = self.config.height_in
        if height_in is None or height_in <= 0:
            return MISSING_BUCKET_METRIC

        readings = [
            (
                obs.timestamp,
                self.interpolation_engine.ffmi_from_values(
                    obs.weight, obs.body_fat_percentage, height_in
                ),
            )
            for obs in in_range
            if obs.weight is not None and obs.body_fat_percentage is not None
        ]
        if readings:
            return _median_metric(readings)

        estimate = self.interpolation_engine.estimate_ffmi(
            midpoint, all_observations, height_in
        )
        return _fallback_metric(estimate)

    @staticmethod
    def _canonical_photo(
        in_range: List[MetricObservation], midpoint: datetime
    ) -> Optional[MetricObservation]:
        """Photo closest to the midpoint; ties go to the earliest timestamp"""
        candidates = [obs for obs in in_range if obs.has_photo()]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda obs: (
                abs(as_datetime(obs.timestamp) - midpoint),
                as_datetime(obs.timestamp),
            ),
        )


def _median_metric(readings: List[Tuple[datetime, float]]) -> BucketMetric:
    value = float(np.median([value for _, value in readings]))
    latest = max(as_datetime(timestamp) for timestamp, _ in readings)
    return BucketMetric(
        value=value,
        presence=MetricPresence.PRESENT,
        estimate=Measured(value=value, observed_at=latest),
    )


def _fallback_metric(estimate: InterpolatedEstimate) -> BucketMetric:
    if estimate.is_missing:
        return MISSING_BUCKET_METRIC
    return BucketMetric(
        value=estimate.value, presence=presence_for(estimate), estimate=estimate
    )
