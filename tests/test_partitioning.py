import unittest
import os
import sys
from datetime import datetime, timedelta, timezone

# Add the project root to the path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from kpe.errors import RangeQueryError
from kpe.partitioning import IngestionTimeRangeAnalyzer, TimeRange, calculate_partitions
from fakes import FakeQueryService, T0


class TestCalculatePartitions(unittest.TestCase):

    def test_last_partition_is_clamped(self):
        partitions = calculate_partitions(TimeRange(T0, T0 + timedelta(minutes=100)), timedelta(minutes=30))
        self.assertEqual(len(partitions), 4)
        self.assertEqual(partitions[-1].begin, T0 + timedelta(minutes=90))
        self.assertEqual(partitions[-1].end, T0 + timedelta(minutes=100))
        self.assertEqual([p.is_last for p in partitions], [False, False, False, True])
        self.assertEqual([p.index for p in partitions], [0, 1, 2, 3])

    def test_partitions_are_contiguous(self):
        time_range = TimeRange(T0, T0 + timedelta(hours=7, minutes=13, seconds=5))
        partitions = calculate_partitions(time_range, timedelta(minutes=17))
        self.assertEqual(partitions[0].begin, time_range.start)
        self.assertEqual(partitions[-1].end, time_range.end)
        for previous, current in zip(partitions, partitions[1:]):
            self.assertEqual(previous.end, current.begin)
            self.assertEqual(previous.end - previous.begin, timedelta(minutes=17))

    def test_exact_multiple_has_no_sliver(self):
        partitions = calculate_partitions(TimeRange(T0, T0 + timedelta(minutes=90)), timedelta(minutes=30))
        self.assertEqual(len(partitions), 3)
        self.assertEqual(partitions[-1].end - partitions[-1].begin, timedelta(minutes=30))

    def test_interval_longer_than_range(self):
        partitions = calculate_partitions(TimeRange(T0, T0 + timedelta(minutes=5)), timedelta(hours=1))
        self.assertEqual(len(partitions), 1)
        self.assertEqual(partitions[0].end, T0 + timedelta(minutes=5))
        self.assertTrue(partitions[0].row_filter().end_inclusive)

    def test_empty_range(self):
        self.assertEqual(calculate_partitions(TimeRange(T0, T0), timedelta(minutes=30)), [])

    def test_non_positive_interval_rejected(self):
        with self.assertRaises(ValueError):
            calculate_partitions(TimeRange(T0, T0 + timedelta(minutes=1)), timedelta(0))

    def test_only_last_filter_is_inclusive(self):
        partitions = calculate_partitions(TimeRange(T0, T0 + timedelta(minutes=60)), timedelta(minutes=30))
        self.assertFalse(partitions[0].row_filter().end_inclusive)
        self.assertTrue(partitions[1].row_filter().end_inclusive)
        self.assertTrue(partitions[1].label().endswith(']'))
        self.assertTrue(partitions[0].label().endswith(')'))


class TestTimeRange(unittest.TestCase):

    def test_start_after_end_rejected(self):
        with self.assertRaises(ValueError):
            TimeRange(T0 + timedelta(seconds=1), T0)

    def test_clip(self):
        time_range = TimeRange(T0, T0 + timedelta(hours=2))
        clipped = time_range.clip(T0 + timedelta(minutes=30), None)
        self.assertEqual(clipped, TimeRange(T0 + timedelta(minutes=30), T0 + timedelta(hours=2)))
        clipped = time_range.clip(None, T0 + timedelta(hours=5))
        self.assertEqual(clipped, time_range)

    def test_clip_disjoint_window_is_empty(self):
        time_range = TimeRange(T0, T0 + timedelta(hours=1))
        self.assertTrue(time_range.clip(T0 + timedelta(hours=3), T0 + timedelta(hours=4)).is_empty)


class TestIngestionTimeRangeAnalyzer(unittest.TestCase):

    def test_reads_min_and_max(self):
        query = FakeQueryService(start=T0, end=T0 + timedelta(days=1))
        time_range = IngestionTimeRangeAnalyzer(query, 'Telemetry', 'Events').get_time_range()
        self.assertEqual(time_range, TimeRange(T0, T0 + timedelta(days=1)))
        database, text = query.queries[0]
        self.assertEqual(database, 'Telemetry')
        self.assertEqual(text, "['Events'] | summarize Min=min(ingestion_time()), Max=max(ingestion_time())")

    def test_positional_rows_and_naive_datetimes(self):
        naive = datetime(2024, 3, 1, 12, 0)
        query = FakeQueryService(rows=[(naive, naive + timedelta(hours=1))])
        time_range = IngestionTimeRangeAnalyzer(query, 'db', 'T').get_time_range()
        self.assertEqual(time_range.start, datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
        self.assertEqual(time_range.end.tzinfo, timezone.utc)

    def test_string_timestamps(self):
        query = FakeQueryService(rows=[{'Min': '2024-01-01T00:00:00Z', 'Max': '2024-01-01T06:00:00Z'}])
        time_range = IngestionTimeRangeAnalyzer(query, 'db', 'T').get_time_range()
        self.assertEqual(time_range.end - time_range.start, timedelta(hours=6))

    def test_string_timestamps_with_ticks(self):
        query = FakeQueryService(rows=[{'Min': '2024-01-01T00:00:00.0000001Z', 'Max': '2024-01-01T06:00:00.9999999Z'}])
        time_range = IngestionTimeRangeAnalyzer(query, 'db', 'T').get_time_range()
        self.assertEqual(time_range.end, datetime(2024, 1, 1, 6, 0, 0, 999999, tzinfo=timezone.utc))
        last = calculate_partitions(time_range, timedelta(hours=1))[-1]
        self.assertEqual(last.row_filter().upper_bound, datetime(2024, 1, 1, 6, 0, 1, tzinfo=timezone.utc))

    def test_inverted_range_is_a_range_query_error(self):
        query = FakeQueryService(start=T0 + timedelta(hours=1), end=T0)
        with self.assertRaises(RangeQueryError):
            IngestionTimeRangeAnalyzer(query, 'db', 'T').get_time_range()

    def test_non_datetime_values_rejected(self):
        query = FakeQueryService(rows=[{'Min': 1, 'Max': 2}])
        with self.assertRaises(RangeQueryError):
            IngestionTimeRangeAnalyzer(query, 'db', 'T').get_time_range()


if __name__ == '__main__':
    unittest.main()
