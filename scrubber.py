"""
Timeline Scrubber Positioning

Places observations on a non-linear [0, 1] scrubber track that gives recent
history most of the room:

- last 30 days          -> [0.3, 1.0]
- 30 days to 1 year     -> [0.1, 0.3]
- older than 1 year     -> [0.0, 0.1], linear from the oldest observation

Breakpoints come from ScrubberConfig. Each point also gets an importance tier
for tick density and a short human-readable label.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from engine_config import ScrubberConfig
from metric_models import (
    ImportanceTier,
    MetricObservation,
    ScrubberPoint,
    as_datetime,
    sort_observations,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)
MONTH_ABBREVIATIONS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


def format_label(when, now) -> str:
    """
    Display label for a scrubber point.

    "Today" / "Yesterday", the weekday name for the rest of the last week,
    "Jan 5" within the current calendar year, "Jan 2023" within the last
    twelve months of a prior year, and "2022" for anything older.
    """
    when = as_datetime(when)
    now = as_datetime(now)
    days_ago = (now.date() - when.date()).days

    if days_ago == 0:
        return "Today"
    if days_ago == 1:
        return "Yesterday"
    if 2 <= days_ago < 7:
        return WEEKDAY_NAMES[when.weekday()]

    month = MONTH_ABBREVIATIONS[when.month - 1]
    if when.year == now.year:
        return f"{month} {when.day}"

    one_year_ago = (pd.Timestamp(now) - pd.DateOffset(years=1)).to_pydatetime()
    if when >= one_year_ago:
        return f"{month} {when.year}"
    return f"{when.year}"


class ScrubberTimeline:
    """Scrubber points with position lookups"""

    def __init__(self, points: List[ScrubberPoint]):
        self.points = list(points)
        self._positions = np.array([point.position for point in self.points])

    def __len__(self):
        return len(self.points)

    def __iter__(self):
        return iter(self.points)

    @property
    def positions(self) -> np.ndarray:
        return self._positions.copy()

    def nearest_point(self, position: float) -> Optional[ScrubberPoint]:
        """
        Point whose position is closest to `position` (e.g. a drag location).

        Binary search over the monotonic positions; ties go to the earlier point.
        """
        if not self.points:
            return None

        right = int(np.searchsorted(self._positions, position, side="left"))
        right = min(right, len(self.points) - 1)
        left = max(right - 1, 0)
        if abs(self._positions[left] - position) <= abs(self._positions[right] - position):
            return self.points[left]
        return self.points[right]

    def position_for_index(self, index: int) -> Optional[float]:
        for point in self.points:
            if point.index == index:
                return point.position
        return None

    def index_for_position(self, position: float) -> Optional[int]:
        point = self.nearest_point(position)
        return point.index if point else None


class ScrubberPositionEngine:
    """Maps observation dates to weighted scrubber positions"""

    def __init__(self, config: Optional[ScrubberConfig] = None):
        self.config = config or ScrubberConfig()

    def build_timeline(
        self, observations: Iterable[MetricObservation], now
    ) -> ScrubberTimeline:
        """
        One ScrubberPoint per observation, oldest first.

        Args:
            observations: Observation snapshot (sorted chronologically if not already).
            now: Reference instant the recency windows are measured from.
        """
        now = as_datetime(now)
        observations = sort_observations(observations)
        if not observations:
            return ScrubberTimeline([])

        oldest = as_datetime(observations[0].timestamp)
        points = []
        for index, observation in enumerate(observations):
            timestamp = as_datetime(observation.timestamp)
            points.append(
                ScrubberPoint(
                    index=index,
                    observation_id=observation.id,
                    timestamp=timestamp,
                    position=self.position(timestamp, now, oldest),
                    tier=self.importance_tier(timestamp, now),
                    label=format_label(timestamp, now),
                )
            )

        logger.debug(f"Placed {len(points)} observations on the scrubber")
        return ScrubberTimeline(points)

    def importance_tier(self, when, now) -> ImportanceTier:
        days_ago = (as_datetime(now).date() - as_datetime(when).date()).days
        if days_ago <= self.config.daily_tier_days:
            return ImportanceTier.DAILY
        if days_ago <= self.config.weekly_tier_days:
            return ImportanceTier.WEEKLY
        if days_ago <= self.config.monthly_tier_days:
            return ImportanceTier.MONTHLY
        return ImportanceTier.YEARLY

    def position(self, when, now, oldest) -> float:
        """
        Normalized position of `when` on the scrubber track.

        Args:
            when: Timestamp to place.
            now: Reference instant (position 1.0).
            oldest: Oldest timestamp on the track (position 0.0 when it is
                older than the history window).
        """
        config = self.config
        when = as_datetime(when)
        now = as_datetime(now)
        age_days = max((now - when).total_seconds() / SECONDS_PER_DAY, 0.0)

        if age_days <= config.recent_window_days:
            fraction = 1.0 - age_days / config.recent_window_days
            position = config.recent_floor + fraction * (1.0 - config.recent_floor)
        elif age_days <= config.history_window_days:
            history_span = config.history_window_days - config.recent_window_days
            fraction = 1.0 - (age_days - config.recent_window_days) / history_span
            position = config.history_floor + fraction * (
                config.recent_floor - config.history_floor
            )
        else:
            boundary = now - timedelta(days=config.history_window_days)
            span = (boundary - as_datetime(oldest)).total_seconds()
            if span <= 0:
                position = 0.0
            else:
                elapsed = (when - as_datetime(oldest)).total_seconds()
                position = elapsed / span * config.history_floor

        return min(max(position, 0.0), 1.0)
