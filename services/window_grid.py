"""Window grid utilities.

A grid is the ordered, gapless sequence of ``[start, end)`` windows covering a
course's active range for one wiki. These helpers only deal with boundaries;
cached content lives on the timeslice rows.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta


class InvalidTimesliceDurationError(ValueError):
    """Raised when a window duration is not a positive number of seconds."""

    def __init__(self, duration: int) -> None:
        self.duration = duration
        super().__init__(f"Invalid timeslice duration: {duration!r} seconds")


@dataclass(frozen=True, order=True)
class Window:
    start: datetime
    end: datetime

    @property
    def duration(self) -> int:
        return int((self.end - self.start).total_seconds())

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def overlaps(self, other: "Window") -> bool:
        return self.start < other.end and other.start < self.end


def build_windows(start: datetime, end: datetime, duration: int) -> list[Window]:
    """Tile [start, end) with windows of ``duration`` seconds.

    The last window is not clipped, so its end may pass ``end``. An empty or
    inverted range yields no windows.

    Raises:
        InvalidTimesliceDurationError: If duration is not positive.
    """
    if not isinstance(duration, int) or isinstance(duration, bool) or duration <= 0:
        raise InvalidTimesliceDurationError(duration)

    step = timedelta(seconds=duration)
    windows: list[Window] = []
    current = start
    while current < end:
        windows.append(Window(current, current + step))
        current += step
    return windows


def build_windows_until(start: datetime, stop: datetime, duration: int) -> list[Window]:
    """Tile [start, stop) exactly, clipping the last window to end at ``stop``.

    Used to fill the gap in front of an existing grid without overlapping it.
    """
    windows = build_windows(start, stop, duration)
    if windows and windows[-1].end > stop:
        windows[-1] = Window(windows[-1].start, stop)
    return windows


def find_gaps(windows: Sequence[Window]) -> list[tuple[datetime, datetime]]:
    """Return (end, next_start) pairs where consecutive windows do not meet.

    Overlaps show up as pairs with next_start < end.
    """
    ordered = sorted(windows)
    return [
        (current.end, following.start)
        for current, following in zip(ordered, ordered[1:])
        if current.end != following.start
    ]


def is_tiled(windows: Sequence[Window], start: datetime, end: datetime) -> bool:
    """Check that windows tile [start, end) with no gaps or overlaps."""
    if start >= end:
        return not windows
    if not windows:
        return False
    ordered = sorted(windows)
    return (
        ordered[0].start == start
        and ordered[-1].end >= end
        and ordered[-1].start < end
        and not find_gaps(ordered)
    )


def window_containing(windows: Iterable[Window], ts: datetime) -> Window | None:
    for window in windows:
        if window.contains(ts):
            return window
    return None


def is_aligned(window: Window, grid: Iterable[Window]) -> bool:
    """A child window is aligned when it matches some grid window exactly."""
    return window in set(grid)
