"""Unit tests for fixed-window clock helpers."""

import datetime

import pytest

from quotaguard.services.window_clock import (
    GRANULARITIES,
    Granularity,
    as_utc,
    reset_epoch,
    retry_after,
    window_reset,
    window_start,
)

UTC = datetime.timezone.utc
T = datetime.datetime(2026, 10, 18, 14, 37, 58, 123456, tzinfo=UTC)


class TestWindowStart:
    """Flooring to the start of the current window."""

    def test_minute_floor(self):
        assert window_start(T, Granularity.MINUTE) == datetime.datetime(
            2026, 10, 18, 14, 37, tzinfo=UTC
        )

    def test_hour_floor(self):
        assert window_start(T, Granularity.HOUR) == datetime.datetime(
            2026, 10, 18, 14, tzinfo=UTC
        )

    def test_day_floor(self):
        assert window_start(T, Granularity.DAY) == datetime.datetime(
            2026, 10, 18, tzinfo=UTC
        )

    @pytest.mark.parametrize("granularity", GRANULARITIES)
    def test_flooring_is_idempotent(self, granularity):
        start = window_start(T, granularity)
        assert window_start(start, granularity) == start

    @pytest.mark.parametrize("granularity", GRANULARITIES)
    def test_start_never_after_timestamp(self, granularity):
        assert window_start(T, granularity) <= T

    def test_naive_timestamp_treated_as_utc(self):
        naive = T.replace(tzinfo=None)
        assert window_start(naive, Granularity.HOUR) == window_start(T, Granularity.HOUR)

    def test_other_timezone_normalized_to_utc(self):
        plus_two = datetime.timezone(datetime.timedelta(hours=2))
        local = T.astimezone(plus_two)  # 16:37 local
        assert window_start(local, Granularity.HOUR) == datetime.datetime(
            2026, 10, 18, 14, tzinfo=UTC
        )


class TestRetryAfter:
    """Seconds until the next boundary."""

    def test_second_58_of_minute_waits_two_seconds(self):
        assert retry_after(T, Granularity.MINUTE) == 2

    def test_exactly_on_boundary_waits_full_window(self):
        boundary = datetime.datetime(2026, 10, 18, 14, 0, 0, tzinfo=UTC)
        assert retry_after(boundary, Granularity.MINUTE) == 60
        assert retry_after(boundary, Granularity.HOUR) == 3600

    def test_hour_remaining(self):
        # 14:37:58 → 22 min 2 s to 15:00
        assert retry_after(T, Granularity.HOUR) == 22 * 60 + 2

    def test_day_remaining(self):
        # 14:37:58 → 9h 22m 2s to midnight
        assert retry_after(T, Granularity.DAY) == 9 * 3600 + 22 * 60 + 2

    @pytest.mark.parametrize("granularity", GRANULARITIES)
    def test_always_within_window(self, granularity):
        assert 1 <= retry_after(T, granularity) <= granularity.seconds


class TestReset:
    def test_window_reset_is_next_boundary(self):
        assert window_reset(T, Granularity.MINUTE) == datetime.datetime(
            2026, 10, 18, 14, 38, tzinfo=UTC
        )

    def test_reset_epoch_matches_window_reset(self):
        expected = int(datetime.datetime(2026, 10, 18, 15, tzinfo=UTC).timestamp())
        assert reset_epoch(T, Granularity.HOUR) == expected

    def test_as_utc_keeps_aware_instant(self):
        plus_two = datetime.timezone(datetime.timedelta(hours=2))
        assert as_utc(T.astimezone(plus_two)) == T
        assert as_utc(T.astimezone(plus_two)).tzinfo == UTC
