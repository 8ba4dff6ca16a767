"""
Test suite for the global timeline aggregation engine

Validates calendar anchoring, sparse bucket emission, median and fallback
metric values, canonical photo selection and stable identifiers.
"""

import unittest
from datetime import datetime, timedelta

from aggregation import (
    AggregationEngine,
    bucket_for_date,
    bucket_identifier,
    period_bounds,
)
from engine_config import AggregationConfig, InterpolationConfig
from interpolation import InterpolationEngine
from metric_models import (
    BucketCursor,
    CarriedForward,
    Interpolated,
    MetricObservation,
    MetricPresence,
    MetricType,
    TimelineScale,
)


def make_observation(obs_id, timestamp, weight=None, body_fat=None, photo=None):
    return MetricObservation(
        id=obs_id,
        timestamp=timestamp,
        weight=weight,
        body_fat_percentage=body_fat,
        photo_ref=photo,
    )


class TestPeriodHelpers(unittest.TestCase):
    """Calendar period bounds and identifiers"""

    def test_week_runs_monday_to_monday(self):
        start, end = period_bounds(TimelineScale.WEEK, datetime(2024, 1, 17, 15, 30))
        self.assertEqual(start, datetime(2024, 1, 15))
        self.assertEqual(end, datetime(2024, 1, 22))

    def test_month_and_year_bounds(self):
        self.assertEqual(
            period_bounds(TimelineScale.MONTH, datetime(2024, 2, 29)),
            (datetime(2024, 2, 1), datetime(2024, 3, 1)),
        )
        self.assertEqual(
            period_bounds(TimelineScale.YEAR, datetime(2024, 7, 4)),
            (datetime(2024, 1, 1), datetime(2025, 1, 1)),
        )

    def test_identifiers_are_pure_functions_of_scale_and_start(self):
        self.assertEqual(
            bucket_identifier(TimelineScale.WEEK, datetime(2024, 1, 15)), "week-2024-W03"
        )
        self.assertEqual(
            bucket_identifier(TimelineScale.WEEK, datetime(2024, 12, 30)), "week-2025-W01"
        )
        self.assertEqual(
            bucket_identifier(TimelineScale.MONTH, datetime(2024, 2, 1)), "month-2024-02"
        )
        self.assertEqual(
            bucket_identifier(TimelineScale.YEAR, datetime(2024, 1, 1)), "year-2024"
        )


class TestWeeklyBuckets(unittest.TestCase):
    """Weekly bucket construction"""

    def setUp(self):
        self.engine = AggregationEngine(
            InterpolationEngine(InterpolationConfig(weight_unit="lbs")),
            AggregationConfig(height_in=70.0),
        )
        self.observations = [
            make_observation("a", datetime(2024, 1, 1, 8), weight=180.0, body_fat=20.0),
            make_observation("b", datetime(2024, 1, 3, 8), weight=182.0),
            make_observation("c", datetime(2024, 1, 5, 8), weight=190.0),
            # nothing during the week of Jan 8
            make_observation("d", datetime(2024, 1, 17, 8), weight=178.0),
        ]

    def test_empty_weeks_are_absent(self):
        buckets = self.engine.make_buckets(TimelineScale.WEEK, self.observations)

        self.assertEqual([b.id for b in buckets], ["week-2024-W01", "week-2024-W03"])
        self.assertIsNone(bucket_for_date(buckets, datetime(2024, 1, 10)))

    def test_buckets_never_overlap_and_are_ascending(self):
        observations = [
            make_observation(f"obs{day}", datetime(2024, 1, 1) + timedelta(days=day), weight=180.0 - day * 0.1)
            for day in range(0, 60, 2)
        ]
        for scale in TimelineScale:
            buckets = self.engine.make_buckets(scale, observations)
            for earlier, later in zip(buckets, buckets[1:]):
                self.assertLessEqual(earlier.end, later.start)
                self.assertLess(earlier.start, later.start)

    def test_walks_back_a_fixed_number_of_weeks(self):
        observations = [
            make_observation(f"w{week}", datetime(2024, 1, 1) + timedelta(weeks=week), weight=180.0)
            for week in range(10)
        ]
        buckets = self.engine.make_buckets(TimelineScale.WEEK, observations)

        self.assertEqual(len(buckets), 4)
        self.assertEqual(buckets[-1].start, datetime(2024, 3, 4))
        self.assertEqual(buckets[0].start, datetime(2024, 2, 12))

    def test_weight_is_median_of_direct_readings(self):
        first_week = self.engine.make_buckets(TimelineScale.WEEK, self.observations)[0]
        weight = first_week.metric(MetricType.WEIGHT)

        self.assertEqual(weight.value, 182.0)
        self.assertEqual(weight.presence, MetricPresence.PRESENT)
        self.assertEqual(first_week.observation_count, 3)

    def test_missing_direct_reading_falls_back_to_estimate(self):
        last_week = self.engine.make_buckets(TimelineScale.WEEK, self.observations)[-1]
        body_fat = last_week.metric(MetricType.BODY_FAT)

        self.assertEqual(body_fat.presence, MetricPresence.ESTIMATED)
        self.assertEqual(body_fat.value, 20.0)
        self.assertIsInstance(body_fat.estimate, CarriedForward)

    def test_interpolated_fallback_between_weeks(self):
        observations = [
            make_observation("a", datetime(2024, 1, 1), weight=180.0, body_fat=20.0),
            make_observation("b", datetime(2024, 1, 17), weight=178.0),
            make_observation("c", datetime(2024, 1, 31), weight=176.0, body_fat=18.0),
        ]
        buckets = self.engine.make_buckets(TimelineScale.WEEK, observations)
        middle = next(b for b in buckets if b.id == "week-2024-W03")
        body_fat = middle.metric(MetricType.BODY_FAT)

        self.assertEqual(body_fat.presence, MetricPresence.ESTIMATED)
        self.assertIsInstance(body_fat.estimate, Interpolated)
        self.assertTrue(18.0 < body_fat.value < 20.0)

    def test_ffmi_present_when_both_inputs_in_range(self):
        first_week = self.engine.make_buckets(TimelineScale.WEEK, self.observations)[0]
        ffmi = first_week.metric(MetricType.FFMI)

        self.assertEqual(ffmi.presence, MetricPresence.PRESENT)
        expected = self.engine.interpolation_engine.ffmi_from_values(180.0, 20.0, 70.0)
        self.assertAlmostEqual(ffmi.value, expected)

    def test_ffmi_missing_without_height(self):
        engine = AggregationEngine()
        buckets = engine.make_buckets(TimelineScale.WEEK, self.observations)
        for bucket in buckets:
            self.assertEqual(bucket.metric(MetricType.FFMI).presence, MetricPresence.MISSING)
            self.assertIsNone(bucket.metric(MetricType.FFMI).value)

    def test_empty_input(self):
        self.assertEqual(self.engine.make_buckets(TimelineScale.WEEK, []), [])
        self.assertIsNone(self.engine.make_initial_cursor([]))

    def test_observations_without_data_do_not_create_buckets(self):
        observations = self.observations + [
            make_observation("empty", datetime(2024, 1, 10), photo="")
        ]
        buckets = self.engine.make_buckets(TimelineScale.WEEK, observations)
        self.assertNotIn("week-2024-W02", [b.id for b in buckets])


class TestPhotoSelection(unittest.TestCase):
    """Canonical photo per bucket"""

    def setUp(self):
        self.engine = AggregationEngine()

    def test_photo_only_week_is_emitted(self):
        observations = [make_observation("p", datetime(2024, 1, 3), photo="photo-1")]
        buckets = self.engine.make_buckets(TimelineScale.WEEK, observations)

        self.assertEqual(len(buckets), 1)
        self.assertEqual(buckets[0].canonical_photo_ref, "photo-1")
        self.assertEqual(buckets[0].metric(MetricType.WEIGHT).presence, MetricPresence.MISSING)

    def test_closest_to_midpoint_with_earliest_tie_break(self):
        # Week of Jan 1 2024 has its midpoint at Jan 4 12:00
        observations = [
            make_observation("early", datetime(2024, 1, 2, 12), photo="photo-early"),
            make_observation("late", datetime(2024, 1, 6, 12), photo="photo-late"),
            make_observation("edge", datetime(2024, 1, 7, 23), photo="photo-edge"),
        ]
        bucket = self.engine.make_buckets(TimelineScale.WEEK, observations)[0]

        self.assertEqual(bucket.canonical_photo_ref, "photo-early")
        self.assertEqual(bucket.canonical_photo_observation_id, "early")
        self.assertTrue(bucket.has_photos_in_range)

    def test_no_photo_in_range(self):
        observations = [make_observation("a", datetime(2024, 1, 3), weight=180.0)]
        bucket = self.engine.make_buckets(TimelineScale.WEEK, observations)[0]
        self.assertIsNone(bucket.canonical_photo_ref)
        self.assertFalse(bucket.has_photos_in_range)


class TestOtherScales(unittest.TestCase):
    """Monthly and yearly buckets"""

    def setUp(self):
        self.engine = AggregationEngine()
        self.observations = [
            make_observation("a", datetime(2022, 5, 1), weight=190.0),
            make_observation("b", datetime(2024, 1, 15), weight=180.0),
            make_observation("c", datetime(2024, 3, 10), weight=176.0),
        ]

    def test_yearly_buckets_skip_empty_years(self):
        buckets = self.engine.make_buckets(TimelineScale.YEAR, self.observations)
        self.assertEqual([b.id for b in buckets], ["year-2022", "year-2024"])
        self.assertEqual(buckets[1].metric(MetricType.WEIGHT).value, 178.0)

    def test_monthly_buckets(self):
        buckets = self.engine.make_buckets(TimelineScale.MONTH, self.observations)
        self.assertEqual([b.id for b in buckets], ["month-2024-01", "month-2024-03"])
        self.assertEqual(buckets[0].start, datetime(2024, 1, 1))
        self.assertEqual(buckets[0].end, datetime(2024, 2, 1))

    def test_identifiers_stable_across_recomputation(self):
        first = self.engine.make_buckets(TimelineScale.MONTH, self.observations)
        extended = self.observations + [
            make_observation("d", datetime(2024, 3, 20), weight=175.0)
        ]
        second = self.engine.make_buckets(TimelineScale.MONTH, extended)
        self.assertEqual([b.id for b in first], [b.id for b in second])

    def test_make_all_buckets(self):
        all_buckets = self.engine.make_all_buckets(self.observations)
        self.assertEqual(set(all_buckets), set(TimelineScale))


class TestInitialCursor(unittest.TestCase):
    def test_cursor_points_at_most_recent_week(self):
        engine = AggregationEngine()
        observations = [
            make_observation("a", datetime(2024, 1, 1), weight=180.0),
            make_observation("b", datetime(2024, 1, 17), weight=178.0),
        ]
        cursor = engine.make_initial_cursor(observations)

        self.assertEqual(
            cursor,
            BucketCursor(
                date=datetime(2024, 1, 22),
                scale=TimelineScale.WEEK,
                bucket_id="week-2024-W03",
            ),
        )


if __name__ == "__main__":
    unittest.main()
