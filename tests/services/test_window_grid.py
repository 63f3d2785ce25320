"""Tests for window grid construction and invariant checks."""

from datetime import datetime, timedelta

import pytest

from services.window_grid import (
    InvalidTimesliceDurationError,
    Window,
    build_windows,
    build_windows_until,
    find_gaps,
    is_aligned,
    is_tiled,
    window_containing,
)

pytestmark = pytest.mark.unit

DAY = 86400
START = datetime(2018, 11, 24)
END = datetime(2018, 11, 30, 23, 59, 59)


class TestWindow:
    def test_duration_in_seconds(self):
        assert Window(START, START + timedelta(hours=12)).duration == 43200

    def test_contains_is_half_open(self):
        window = Window(START, START + timedelta(days=1))

        assert window.contains(START)
        assert window.contains(START + timedelta(hours=23, minutes=59))
        assert not window.contains(START + timedelta(days=1))
        assert not window.contains(START - timedelta(seconds=1))

    def test_adjacent_windows_do_not_overlap(self):
        first = Window(START, START + timedelta(days=1))
        second = Window(START + timedelta(days=1), START + timedelta(days=2))

        assert not first.overlaps(second)
        assert first.overlaps(Window(START + timedelta(hours=12), START + timedelta(days=2)))


class TestBuildWindows:
    def test_daily_windows_cover_course_week(self):
        windows = build_windows(START, END, DAY)

        assert len(windows) == 7
        assert windows[0].start == START
        assert windows[-1].start == datetime(2018, 11, 30)
        assert windows[-1].end == datetime(2018, 12, 1)

    def test_half_day_windows_double_the_count(self):
        assert len(build_windows(START, END, DAY // 2)) == 14

    def test_last_window_is_not_clipped(self):
        windows = build_windows(START, START + timedelta(hours=30), DAY)

        assert windows[-1] == Window(START + timedelta(days=1), START + timedelta(days=2))

    @pytest.mark.parametrize("end", [START, START - timedelta(days=1)])
    def test_empty_or_inverted_range_yields_no_windows(self, end):
        assert build_windows(START, end, DAY) == []

    @pytest.mark.parametrize("duration", [0, -DAY, 1.5, True, "86400"])
    def test_rejects_invalid_duration(self, duration):
        with pytest.raises(InvalidTimesliceDurationError):
            build_windows(START, END, duration)


class TestBuildWindowsUntil:
    def test_last_window_is_clipped_to_stop(self):
        stop = START + timedelta(hours=36)

        windows = build_windows_until(START, stop, DAY)

        assert windows == [
            Window(START, START + timedelta(days=1)),
            Window(START + timedelta(days=1), stop),
        ]

    def test_exact_multiple_needs_no_clipping(self):
        stop = START + timedelta(days=2)

        windows = build_windows_until(START, stop, DAY)

        assert windows[-1].end == stop
        assert all(window.duration == DAY for window in windows)


class TestTilingChecks:
    def test_built_grid_is_tiled(self):
        assert is_tiled(build_windows(START, END, DAY), START, END)

    def test_gap_is_reported(self):
        windows = build_windows(START, END, DAY)
        del windows[3]

        assert find_gaps(windows) == [(windows[2].end, windows[3].start)]
        assert not is_tiled(windows, START, END)

    def test_overlap_is_reported(self):
        windows = build_windows(START, END, DAY)
        windows.append(Window(START + timedelta(hours=12), START + timedelta(days=1, hours=12)))

        assert find_gaps(windows)
        assert not is_tiled(windows, START, END)

    def test_grid_must_start_at_course_start(self):
        windows = build_windows(START + timedelta(days=1), END, DAY)

        assert not is_tiled(windows, START, END)

    def test_empty_range_is_tiled_only_by_empty_grid(self):
        assert is_tiled([], START, START)
        assert not is_tiled([Window(START, START + timedelta(days=1))], START, START)


class TestLookup:
    def test_window_containing(self):
        windows = build_windows(START, END, DAY)

        found = window_containing(windows, datetime(2018, 11, 26, 13, 30))

        assert found == Window(datetime(2018, 11, 26), datetime(2018, 11, 27))
        assert window_containing(windows, datetime(2018, 12, 5)) is None

    def test_is_aligned(self):
        grid = build_windows(START, END, DAY)

        assert is_aligned(grid[2], grid)
        assert not is_aligned(Window(grid[2].start, grid[2].start + timedelta(hours=12)), grid)
