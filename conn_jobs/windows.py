"""Time window planning for range-bounded upstream queries.

Everything here is pure: no clock reads, no I/O. Callers pass ``now``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as date_parser

# Smallest window forced when the planned range collapses.
MIN_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class Window:
    """Half-open time range ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(
                f"invalid window: start ({self.start.isoformat()}) must be before "
                f"end ({self.end.isoformat()})"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class WindowSettings:
    """Incremental sync window tuning."""

    overlap: timedelta = timedelta(minutes=15)
    safety_delay: timedelta = timedelta(minutes=2)
    bootstrap: timedelta = timedelta(hours=24)
    max_window: timedelta = timedelta(days=14)


def plan_sync_window(
    last_success_at: Optional[datetime],
    now: datetime,
    overlap: timedelta,
    safety_delay: timedelta,
    bootstrap: timedelta,
    max_window: timedelta,
) -> Window:
    """
    Compute the incremental sync window.

    - end = now - safety_delay
    - start = last_success_at - overlap, or now - bootstrap on the first run
    - the range is clamped to max_window
    - a collapsed range is widened to min(5 minutes, max_window)
    """
    if max_window <= timedelta(0):
        raise ValueError("max_window must be positive")

    end = now - safety_delay
    if last_success_at is not None:
        start = last_success_at - overlap
    else:
        start = now - bootstrap

    if end - start > max_window:
        start = end - max_window

    if start >= end:
        start = end - min(MIN_WINDOW, max_window)

    return Window(start=start, end=end)


def plan_from_settings(
    last_success_at: Optional[datetime], now: datetime, settings: WindowSettings
) -> Window:
    return plan_sync_window(
        last_success_at,
        now,
        overlap=settings.overlap,
        safety_delay=settings.safety_delay,
        bootstrap=settings.bootstrap,
        max_window=settings.max_window,
    )


def split_window(
    window: Window, max_span: timedelta, newest_first: bool = False
) -> List[Window]:
    """
    Slice a window into contiguous sub-windows no longer than max_span.

    The slices cover ``[window.start, window.end)`` exactly. With
    ``newest_first`` the slices are cut from the end backwards, so only the
    oldest slice may be short; otherwise only the newest one may be.
    """
    if max_span <= timedelta(0):
        raise ValueError("max_span must be positive")

    slices: List[Window] = []
    if newest_first:
        cursor = window.end
        while cursor > window.start:
            lower = max(cursor - max_span, window.start)
            slices.append(Window(start=lower, end=cursor))
            cursor = lower
    else:
        cursor = window.start
        while cursor < window.end:
            upper = min(cursor + max_span, window.end)
            slices.append(Window(start=cursor, end=upper))
            cursor = upper
    return slices


def _from_epoch_ms(value: Union[int, float], original: Any) -> datetime:
    try:
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError(f"invalid window bound: {original!r}") from e


def parse_window_bound(value: Union[int, float, str, datetime]) -> datetime:
    """
    Parse a manual window bound from job params.

    Accepts epoch milliseconds, ISO-8601 strings or datetimes. Naive values are
    taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise ValueError(f"invalid window bound: {value!r}")
    elif isinstance(value, (int, float)):
        parsed = _from_epoch_ms(value, value)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            parsed = _from_epoch_ms(int(text), value)
        else:
            try:
                parsed = date_parser.isoparse(text)
            except ValueError as e:
                raise ValueError(f"invalid window bound: {value!r}") from e
    else:
        raise ValueError(f"invalid window bound: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def manual_window(
    params: Dict[str, Any], default_end: datetime, default_span: timedelta
) -> Optional[Window]:
    """
    Build a window from ``startDate``/``endDate`` params, if either is given.

    A missing end defaults to ``default_end``; a missing start to
    ``end - default_span``.
    """
    raw_start = params.get("startDate")
    raw_end = params.get("endDate")
    if raw_start is None and raw_end is None:
        return None

    end = parse_window_bound(raw_end) if raw_end is not None else default_end
    if raw_start is not None:
        start = parse_window_bound(raw_start)
    else:
        start = end - default_span
    return Window(start=start, end=end)
