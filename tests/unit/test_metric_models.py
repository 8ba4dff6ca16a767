"""
Test suite for shared data models
"""

import unittest
from datetime import date, datetime, timedelta, timezone

from metric_models import (
    MISSING,
    CarriedForward,
    ConfidenceLevel,
    Interpolated,
    Measured,
    MetricObservation,
    MetricType,
    ObservationSource,
    Provenance,
    as_datetime,
    observations_from_records,
    sort_observations,
)


class TestObservations(unittest.TestCase):
    def test_sort_orders_by_timestamp_and_dedupes_ids(self):
        observations = [
            MetricObservation(id="b", timestamp=datetime(2024, 1, 5), weight=181.0),
            MetricObservation(id="a", timestamp=datetime(2024, 1, 1), weight=180.0),
            MetricObservation(id="b", timestamp=datetime(2024, 1, 6), weight=182.0),
        ]
        ordered = sort_observations(observations)

        self.assertEqual([obs.id for obs in ordered], ["a", "b"])
        self.assertEqual(ordered[1].weight, 182.0)

    def test_value_for_and_data_flags(self):
        observation = MetricObservation(
            id="a", timestamp=datetime(2024, 1, 1), body_fat_percentage=18.5
        )
        self.assertIsNone(observation.value_for(MetricType.WEIGHT))
        self.assertEqual(observation.value_for(MetricType.BODY_FAT), 18.5)
        self.assertIsNone(observation.value_for(MetricType.FFMI))
        self.assertTrue(observation.has_any_data())
        self.assertFalse(observation.has_photo())

        empty = MetricObservation(id="e", timestamp=datetime(2024, 1, 1), photo_ref="")
        self.assertFalse(empty.has_any_data())

    def test_from_records(self):
        records = [
            {
                "id": 2,
                "timestamp": "2024-01-03T08:00:00",
                "weight": 180,
                "source": "device_sync",
            },
            {
                "id": "1",
                "timestamp": "2024-01-01",
                "body_fat_percentage": None,
                "photo_ref": "photo-1",
            },
        ]
        observations = observations_from_records(records)

        self.assertEqual([obs.id for obs in observations], ["1", "2"])
        self.assertEqual(observations[0].timestamp, datetime(2024, 1, 1))
        self.assertEqual(observations[0].photo_ref, "photo-1")
        self.assertEqual(observations[0].source, ObservationSource.MANUAL)
        self.assertEqual(observations[1].weight, 180.0)
        self.assertEqual(observations[1].source, ObservationSource.DEVICE_SYNC)

    def test_as_datetime(self):
        self.assertEqual(as_datetime(date(2024, 1, 2)), datetime(2024, 1, 2))
        aware = datetime(2024, 1, 2, 9, tzinfo=timezone(timedelta(hours=-5)))
        self.assertEqual(as_datetime(aware), datetime(2024, 1, 2, 9))


class TestEstimateVariants(unittest.TestCase):
    def test_variant_metadata(self):
        day = datetime(2024, 1, 1)
        measured = Measured(value=1.0, observed_at=day)
        interpolated = Interpolated(
            value=1.0,
            confidence=ConfidenceLevel.HIGH,
            from_date=day,
            to_date=day + timedelta(days=3),
        )
        carried = CarriedForward(value=1.0, confidence=ConfidenceLevel.LOW, as_of_date=day)

        self.assertEqual(measured.provenance, Provenance.MEASURED)
        self.assertEqual(interpolated.provenance, Provenance.INTERPOLATED)
        self.assertEqual(carried.provenance, Provenance.CARRIED_FORWARD)
        self.assertFalse(measured.is_missing)
        self.assertTrue(MISSING.is_missing)
        self.assertIsNone(MISSING.value)
        self.assertEqual(MISSING.anchor_dates, ())
        self.assertEqual(carried.anchor_dates, (day,))

    def test_weakest_confidence(self):
        self.assertEqual(
            ConfidenceLevel.weakest(ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM),
            ConfidenceLevel.MEDIUM,
        )
        self.assertEqual(
            ConfidenceLevel.weakest(ConfidenceLevel.MEASURED, ConfidenceLevel.LOW),
            ConfidenceLevel.LOW,
        )
        self.assertGreater(ConfidenceLevel.MEASURED.rank, ConfidenceLevel.HIGH.rank)


if __name__ == "__main__":
    unittest.main()
