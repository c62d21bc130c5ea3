"""Property tests for time bucketing."""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from dataflow.candle_aggregation.bucketing import (
    TIMEFRAMES,
    bucket_end,
    bucket_start,
    bucket_start_epoch,
    timeframe_seconds,
)

timeframes = st.sampled_from(list(TIMEFRAMES.keys()))
epochs = st.integers(min_value=0, max_value=4_102_444_800)  # through 2100


class TestBucketProperties:
    @given(seconds=epochs, timeframe=timeframes)
    @settings(max_examples=200, deadline=None)
    def test_bucket_contains_timestamp(self, seconds, timeframe):
        start = bucket_start_epoch(seconds, timeframe)
        assert start <= seconds < start + TIMEFRAMES[timeframe]
        assert start % TIMEFRAMES[timeframe] == 0

    @given(seconds=epochs, timeframe=timeframes)
    @settings(max_examples=200, deadline=None)
    def test_bucket_start_is_idempotent(self, seconds, timeframe):
        start = bucket_start_epoch(seconds, timeframe)
        assert bucket_start_epoch(start, timeframe) == start

    @given(
        moment=st.datetimes(
            min_value=datetime(1970, 1, 2),
            max_value=datetime(2100, 1, 1),
            timezones=st.just(timezone.utc),
        ),
        timeframe=timeframes,
    )
    @settings(max_examples=200, deadline=None)
    def test_datetime_bucket_contains_timestamp(self, moment, timeframe):
        start = bucket_start(moment, timeframe)
        assert start <= moment < bucket_end(start, timeframe)
        assert bucket_start(start, timeframe) == start


class TestBucketEdges:
    def test_boundary_belongs_to_bucket_it_starts(self):
        boundary = datetime(2024, 1, 15, 9, 35, tzinfo=timezone.utc)
        assert bucket_start(boundary, "5m") == boundary
        assert bucket_start(boundary - timedelta(microseconds=1), "5m") == boundary - timedelta(minutes=5)

    def test_each_timeframe(self):
        moment = datetime(2024, 1, 15, 9, 47, 31, tzinfo=timezone.utc)
        assert bucket_start(moment, "1m") == datetime(2024, 1, 15, 9, 47, tzinfo=timezone.utc)
        assert bucket_start(moment, "5m") == datetime(2024, 1, 15, 9, 45, tzinfo=timezone.utc)
        assert bucket_start(moment, "15m") == datetime(2024, 1, 15, 9, 45, tzinfo=timezone.utc)
        assert bucket_start(moment, "1h") == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        assert bucket_start(moment, "4h") == datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)
        assert bucket_start(moment, "1d") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        naive = datetime(2024, 1, 15, 9, 47, 31)
        assert bucket_start(naive, "1h") == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def test_other_timezones_are_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        moment = datetime(2024, 1, 15, 1, 30, tzinfo=plus_two)
        assert bucket_start(moment, "1d") == datetime(2024, 1, 14, tzinfo=timezone.utc)

    def test_unknown_timeframe(self):
        with pytest.raises(ValueError):
            timeframe_seconds("30m")

    def test_negative_epoch(self):
        with pytest.raises(ValueError):
            bucket_start_epoch(-1, "1m")
