"""
Shared Data Models for the Body Metrics Engine

This module contains the dataclasses and enums shared by the interpolation,
aggregation, downsampling and scrubber engines.

Key types:
- MetricObservation: a single timestamped record captured by the user
- Estimate variants (Measured / Interpolated / CarriedForward / Missing)
- Bucket and BucketCursor for calendar aggregation
- ScrubberPoint for the timeline scrubber
- ChartPoint for chart series
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

# ============================================================================
# ENUMS
# ============================================================================


class ObservationSource(Enum):
    """Where an observation came from"""

    MANUAL = "manual"
    DEVICE_SYNC = "device_sync"
    INTEGRATION = "integration"


class MetricType(Enum):
    """Metrics the engines know how to resolve"""

    WEIGHT = "weight"
    BODY_FAT = "body_fat"
    FFMI = "ffmi"


class ConfidenceLevel(Enum):
    """Trust grade of an estimate, strongest first"""

    MEASURED = "measured"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher rank means more trustworthy"""
        return _CONFIDENCE_RANKS[self]

    @staticmethod
    def weakest(first: "ConfidenceLevel", second: "ConfidenceLevel"):
        return first if first.rank <= second.rank else second


_CONFIDENCE_RANKS = {
    ConfidenceLevel.MEASURED: 3,
    ConfidenceLevel.HIGH: 2,
    ConfidenceLevel.MEDIUM: 1,
    ConfidenceLevel.LOW: 0,
}


class Provenance(Enum):
    """How an estimate was produced"""

    MEASURED = "measured"
    INTERPOLATED = "interpolated"
    CARRIED_FORWARD = "carried_forward"


class TimelineScale(Enum):
    """Calendar bucket sizes for the global timeline"""

    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class MetricPresence(Enum):
    """Whether a bucket value was read directly, estimated, or is absent"""

    PRESENT = "present"
    ESTIMATED = "estimated"
    MISSING = "missing"


class ImportanceTier(Enum):
    """Scrubber tick density by recency"""

    DAILY = "daily"  # last 7 days
    WEEKLY = "weekly"  # 8-30 days
    MONTHLY = "monthly"  # 1-12 months
    YEARLY = "yearly"  # older than a year


# ============================================================================
# OBSERVATIONS
# ============================================================================


def as_datetime(value: Union[datetime, date, str]) -> datetime:
    """
    Normalize a date-like value to a naive wall-clock datetime.

    Engines work in the user's local wall-clock time, so timezone-aware values
    keep their clock reading and drop the tzinfo.
    """
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo is not None else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return as_datetime(pd.to_datetime(value).to_pydatetime())


_EPOCH = datetime(1970, 1, 1)


def to_epoch_seconds(value: datetime) -> float:
    """Seconds since 1970-01-01 for a naive wall-clock datetime"""
    return (as_datetime(value) - _EPOCH).total_seconds()


@dataclass(frozen=True)
class MetricObservation:
    """A single body metrics entry. Never mutated once created."""

    id: str
    timestamp: datetime
    weight: Optional[float] = None
    body_fat_percentage: Optional[float] = None
    photo_ref: Optional[str] = None
    source: ObservationSource = ObservationSource.MANUAL

    def value_for(self, metric: MetricType) -> Optional[float]:
        """Raw reading for a directly observed metric (None for derived ones)"""
        if metric == MetricType.WEIGHT:
            return self.weight
        if metric == MetricType.BODY_FAT:
            return self.body_fat_percentage
        return None

    def has_photo(self) -> bool:
        return bool(self.photo_ref)

    def has_any_data(self) -> bool:
        return (
            self.weight is not None
            or self.body_fat_percentage is not None
            or self.has_photo()
        )


def sort_observations(
    observations: Iterable[MetricObservation],
) -> List[MetricObservation]:
    """
    Return observations unique by id and ordered by (timestamp, id).

    When an id appears more than once the later entry in input order wins,
    matching how an edit supersedes the earlier visible state.
    """
    latest_by_id: Dict[str, MetricObservation] = {}
    for observation in observations:
        latest_by_id[observation.id] = observation
    return sorted(
        latest_by_id.values(),
        key=lambda obs: (as_datetime(obs.timestamp), obs.id),
    )


def observations_from_records(records: Iterable[dict]) -> List[MetricObservation]:
    """
    Convert plain dict records (as handed over by the persistence layer) to
    sorted MetricObservation objects.

    Expected keys: id, timestamp (ISO string or datetime), and optionally
    weight, body_fat_percentage, photo_ref, source.
    """
    observations = []
    for record in records:
        source = record.get("source") or ObservationSource.MANUAL.value
        observations.append(
            MetricObservation(
                id=str(record["id"]),
                timestamp=as_datetime(record["timestamp"]),
                weight=_optional_float(record.get("weight")),
                body_fat_percentage=_optional_float(
                    record.get("body_fat_percentage")
                ),
                photo_ref=record.get("photo_ref") or None,
                source=ObservationSource(source),
            )
        )
    return sort_observations(observations)


def _optional_float(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


# ============================================================================
# ESTIMATES
# ============================================================================


@dataclass(frozen=True)
class Measured:
    """A value read directly from an observation"""

    value: float
    observed_at: datetime

    confidence = ConfidenceLevel.MEASURED
    provenance = Provenance.MEASURED
    is_missing = False

    @property
    def anchor_dates(self) -> Tuple[datetime, ...]:
        return (self.observed_at,)


@dataclass(frozen=True)
class Interpolated:
    """A value linearly interpolated between two real readings"""

    value: float
    confidence: ConfidenceLevel
    from_date: datetime
    to_date: datetime

    provenance = Provenance.INTERPOLATED
    is_missing = False

    @property
    def anchor_dates(self) -> Tuple[datetime, ...]:
        return (self.from_date, self.to_date)


@dataclass(frozen=True)
class CarriedForward:
    """The last known value, held past the final reading"""

    value: float
    confidence: ConfidenceLevel
    as_of_date: datetime

    provenance = Provenance.CARRIED_FORWARD
    is_missing = False

    @property
    def anchor_dates(self) -> Tuple[datetime, ...]:
        return (self.as_of_date,)


@dataclass(frozen=True)
class Missing:
    """No trustworthy value exists for the requested instant"""

    value = None
    confidence = None
    provenance = None
    is_missing = True

    @property
    def anchor_dates(self) -> Tuple[datetime, ...]:
        return ()


InterpolatedEstimate = Union[Measured, Interpolated, CarriedForward, Missing]

MISSING = Missing()


# ============================================================================
# AGGREGATION STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class BucketMetric:
    """Per-metric value inside a bucket"""

    value: Optional[float]
    presence: MetricPresence
    estimate: InterpolatedEstimate = MISSING


MISSING_BUCKET_METRIC = BucketMetric(value=None, presence=MetricPresence.MISSING)


@dataclass(frozen=True)
class Bucket:
    """Aggregated observations for one calendar period at a given scale"""

    id: str
    scale: TimelineScale
    start: datetime
    end: datetime  # exclusive
    metrics: Dict[MetricType, BucketMetric] = field(default_factory=dict)
    canonical_photo_ref: Optional[str] = None
    canonical_photo_observation_id: Optional[str] = None
    has_photos_in_range: bool = False
    observation_count: int = 0

    @property
    def midpoint(self) -> datetime:
        return self.start + (self.end - self.start) / 2

    def metric(self, metric: MetricType) -> BucketMetric:
        return self.metrics.get(metric, MISSING_BUCKET_METRIC)

    def contains(self, when: datetime) -> bool:
        return self.start <= as_datetime(when) < self.end


@dataclass(frozen=True)
class BucketCursor:
    """Initial timeline selection handed to the UI"""

    date: datetime
    scale: TimelineScale
    bucket_id: str


# ============================================================================
# SCRUBBER AND CHART STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class ScrubberPoint:
    """One observation placed on the non-uniform scrubber track"""

    index: int  # index into the chronologically sorted observations
    observation_id: str
    timestamp: datetime
    position: float  # 0.0 = oldest, 1.0 = now
    tier: ImportanceTier
    label: str


@dataclass(frozen=True)
class ChartPoint:
    """A (date, value) pair of a chart series"""

    date: datetime
    value: float
    is_estimated: bool = False
