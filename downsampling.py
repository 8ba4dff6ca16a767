"""
Chart Series Downsampling

Reduces dense chart series to a bounded point budget with the
largest-triangle-three-buckets (LTTB) algorithm, which keeps the visual shape
of the series (peaks, troughs, turning points) instead of sampling uniformly.

Also provides:
- Freshness fingerprints and a background worker that drops stale results
- Per-range chart preprocessing (1W ... All) with range-specific point limits
- Trailing moving average and summary statistics for the chart header
"""

import hashlib
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from engine_config import DownsampleConfig
from metric_models import ChartPoint, as_datetime, to_epoch_seconds

logger = logging.getLogger(__name__)

MIN_TRIANGULATION_POINTS = 3


# ============================================================================
# LTTB
# ============================================================================


def _point_xy(point) -> Tuple[float, float]:
    """Numeric (x, y) for a ChartPoint or a (date-or-number, value) pair"""
    if isinstance(point, ChartPoint):
        x, y = point.date, point.value
    else:
        x, y = point
    if isinstance(x, (datetime, date)):
        x = to_epoch_seconds(x)
    return float(x), float(y)


def _average_point(
    xs: np.ndarray, ys: np.ndarray, start: int, end: int
) -> Tuple[float, float]:
    """Mean of points[start:end], with the range clamped to at least one point"""
    count = len(xs)
    safe_start = min(max(start, 0), count - 1)
    safe_end = max(min(end, count), safe_start + 1)
    return float(xs[safe_start:safe_end].mean()), float(ys[safe_start:safe_end].mean())


def lttb_indices(xs: Sequence[float], ys: Sequence[float], target: int) -> np.ndarray:
    """
    Indices selected by largest-triangle-three-buckets.

    Args:
        xs: Ordered x coordinates.
        ys: Values, same length as xs.
        target: Maximum number of points to keep.

    Returns:
        np.ndarray: Strictly increasing indices. All indices when the input
        already fits the budget or the budget is too small to triangulate.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    count = len(xs)

    if count <= target or target < MIN_TRIANGULATION_POINTS:
        return np.arange(count)

    bucket_size = (count - 2) / (target - 2)
    selected = np.empty(target, dtype=int)
    selected[0] = 0
    a_index = 0

    for bucket in range(target - 2):
        range_start = min(int(np.floor(bucket * bucket_size)) + 1, count - 2)
        range_end = min(int(np.floor((bucket + 1) * bucket_size)) + 1, count - 1)
        range_end = max(range_end, range_start + 1)

        avg_start = int(np.floor((bucket + 1) * bucket_size)) + 1
        avg_end = int(np.floor((bucket + 2) * bucket_size)) + 1
        cx, cy = _average_point(xs, ys, avg_start, avg_end)

        ax, ay = xs[a_index], ys[a_index]
        bx = xs[range_start:range_end]
        by = ys[range_start:range_end]
        areas = np.abs(ax * (by - cy) + bx * (cy - ay) + cx * (ay - by)) * 0.5

        a_index = range_start + int(np.argmax(areas))
        selected[bucket + 1] = a_index

    selected[-1] = count - 1
    return selected


def downsample(points: Sequence, target: int) -> list:
    """
    Reduce an ordered series to at most `target` points, preserving shape.

    Points may be ChartPoint objects or (x, value) pairs where x is a number,
    date or datetime. The result is a subsequence of the input; inputs that
    already fit, or budgets below three points, pass through unchanged.
    """
    points = list(points)
    if len(points) <= target or target < MIN_TRIANGULATION_POINTS:
        return points

    coordinates = [_point_xy(point) for point in points]
    xs = [x for x, _ in coordinates]
    ys = [y for _, y in coordinates]
    return [points[index] for index in lttb_indices(xs, ys, target)]


# ============================================================================
# BACKGROUND DOWNSAMPLING
# ============================================================================


def series_fingerprint(points: Sequence, target: Optional[int] = None) -> str:
    """
    Stable freshness key for a downsample request.

    Covers the point count, the boundary points and the target, which is
    enough to tell a new chart request from a stale one.
    """
    points = list(points)
    key_data = {"count": len(points), "target": target}
    if points:
        key_data["first"] = _point_xy(points[0])
        key_data["last"] = _point_xy(points[-1])

    json_str = json.dumps(key_data, sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


class DownsampleWorker:
    """
    Runs downsampling off the calling thread.

    Only the most recently submitted request is current: results of older
    requests are discarded when they complete (their future resolves to None
    and their callback is not called).
    """

    def __init__(self, config: Optional[DownsampleConfig] = None):
        self.config = config or DownsampleConfig()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="downsample"
        )
        self._lock = threading.RLock()
        self._latest_fingerprint: Optional[str] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()

    def should_offload(self, points: Sequence) -> bool:
        return len(points) >= self.config.background_threshold

    def is_current(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint == self._latest_fingerprint

    def submit(
        self,
        points: Sequence,
        target: int,
        callback: Optional[Callable[[list], None]] = None,
    ) -> Future:
        """Queue a request and make it the current one"""
        points = list(points)
        fingerprint = series_fingerprint(points, target)
        with self._lock:
            self._latest_fingerprint = fingerprint
        return self._executor.submit(self._run, points, target, fingerprint, callback)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
        logger.info("Downsample worker stopped")

    def _compute(self, points, target) -> list:
        return downsample(points, target)

    def _run(self, points, target, fingerprint, callback) -> Optional[list]:
        result = self._compute(points, target)
        # Check and delivery are atomic with respect to submit()
        with self._lock:
            if fingerprint != self._latest_fingerprint:
                logger.debug(f"Discarding stale downsample result {fingerprint[:12]}")
                return None
            if callback is not None:
                callback(result)
        return result


# ============================================================================
# CHART RANGE PREPROCESSING
# ============================================================================


class ChartRange(Enum):
    """Visible chart ranges"""

    WEEK_1 = "1W"
    MONTH_1 = "1M"
    MONTH_3 = "3M"
    MONTH_6 = "6M"
    YEAR_1 = "1Y"
    ALL = "All"

    @property
    def days(self) -> Optional[int]:
        """Length of the range in days, None for the full history"""
        return _RANGE_DAYS[self]


_RANGE_DAYS = {
    ChartRange.WEEK_1: 7,
    ChartRange.MONTH_1: 30,
    ChartRange.MONTH_3: 90,
    ChartRange.MONTH_6: 180,
    ChartRange.YEAR_1: 365,
    ChartRange.ALL: None,
}


class ChartSeriesPreprocessor:
    """Filters a series per visible range and downsamples to that range's budget"""

    def __init__(self, reference_date, config: Optional[DownsampleConfig] = None):
        self.reference_date = as_datetime(reference_date)
        self.config = config or DownsampleConfig()

    def max_point_count(self, chart_range: ChartRange) -> int:
        return self.config.range_point_limits[chart_range.value]

    def filter(
        self, points: List[ChartPoint], chart_range: ChartRange
    ) -> List[ChartPoint]:
        if chart_range.days is None:
            return list(points)
        cutoff = self.reference_date - timedelta(days=chart_range.days)
        return [
            point
            for point in points
            if cutoff <= as_datetime(point.date) <= self.reference_date
        ]

    def series_by_range(
        self, points: Sequence[ChartPoint]
    ) -> Dict[ChartRange, List[ChartPoint]]:
        if not points:
            return {}

        ordered = sorted(points, key=lambda point: as_datetime(point.date))
        return {
            chart_range: downsample(
                self.filter(ordered, chart_range), self.max_point_count(chart_range)
            )
            for chart_range in ChartRange
        }


def moving_average(points: Sequence[ChartPoint], window_size: int) -> List[ChartPoint]:
    """
    Trailing moving average used for the smoothed chart mode.

    A smoothed point is estimated when any point in its window is.
    """
    points = list(points)
    if window_size <= 1 or len(points) <= 1:
        return points

    values = pd.Series([point.value for point in points], dtype=float)
    estimated = pd.Series([point.is_estimated for point in points], dtype=float)
    averages = values.rolling(window_size, min_periods=1).mean()
    any_estimated = estimated.rolling(window_size, min_periods=1).max()

    return [
        ChartPoint(date=point.date, value=float(average), is_estimated=bool(flag))
        for point, average, flag in zip(points, averages, any_estimated)
    ]


@dataclass(frozen=True)
class SeriesStats:
    """Headline statistics for a chart series"""

    average: float
    delta: float
    percentage_change: float


def series_stats(points: Sequence[ChartPoint]) -> Optional[SeriesStats]:
    """Average, first-to-last delta and percentage change; None below two points"""
    if len(points) < 2:
        return None

    values = np.array([point.value for point in points], dtype=float)
    first, last = values[0], values[-1]
    delta = float(last - first)
    percentage_change = 0.0 if first == 0 else float(delta / first * 100)
    return SeriesStats(
        average=float(values.mean()), delta=delta, percentage_change=percentage_change
    )
