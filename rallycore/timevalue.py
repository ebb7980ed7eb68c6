"""
timevalue.py — Parsing, comparison and formatting of stage times.

Times are held as integer milliseconds so sums over many stages stay exact.
Accepted text forms: ``S[.f]``, ``M:SS[.f]`` and ``H:MM:SS[.f]`` with up to
three fractional digits, e.g. ``"45.7"``, ``"3:45.7"``, ``"1:02:10.3"``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from rallycore.errors import MalformedTime

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE

# Fixed display precisions; "auto" keeps every significant digit.
PRECISION_DIGITS = {"tenths": 1, "hundredths": 2, "thousandths": 3}

_TIME_PATTERNS = (
    re.compile(r"(?P<h>[0-9]+):(?P<m>[0-5][0-9]):(?P<s>[0-5][0-9])(?:\.(?P<f>[0-9]{1,3}))?"),
    re.compile(r"(?P<m>[0-9]+):(?P<s>[0-5][0-9])(?:\.(?P<f>[0-9]{1,3}))?"),
    re.compile(r"(?P<s>[0-9]+)(?:\.(?P<f>[0-9]{1,3}))?"),
)

_PENALTY_UNITS = re.compile(
    r"(?:(?P<h>[0-9]+)\s*h)?\s*"
    r"(?:(?P<m>[0-9]+)\s*m(?:in)?)?\s*"
    r"(?:(?P<s>[0-9]+(?:\.[0-9]{1,3})?)\s*s)?"
)


@dataclass(frozen=True, order=True)
class Duration:
    """A non-negative elapsed time in milliseconds."""

    ms: int

    def __add__(self, other: Duration) -> Duration:
        return Duration(self.ms + other.ms)

    def __sub__(self, other: Duration) -> Duration:
        return Duration(self.ms - other.ms)

    @property
    def seconds(self) -> float:
        return self.ms / MS_PER_SECOND

    @classmethod
    def from_seconds(cls, seconds: float) -> Duration:
        return cls(int(round(seconds * MS_PER_SECOND)))

    def __str__(self) -> str:
        return format_time(self)


ZERO = Duration(0)


def _fraction_to_ms(fraction: str | None) -> int:
    if not fraction:
        return 0
    return int(fraction.ljust(3, "0"))


def parse_time(text: str) -> Duration:
    """Parse elapsed-time text into a Duration.

    Raises MalformedTime for anything outside the grammar; never guesses.
    """
    if not isinstance(text, str):
        raise MalformedTime(text)
    raw = text.strip()
    for pattern in _TIME_PATTERNS:
        m = pattern.fullmatch(raw)
        if m is None:
            continue
        parts = m.groupdict()
        hours = int(parts.get("h") or 0)
        minutes = int(parts.get("m") or 0)
        seconds = int(parts["s"])
        return Duration(
            hours * MS_PER_HOUR
            + minutes * MS_PER_MINUTE
            + seconds * MS_PER_SECOND
            + _fraction_to_ms(parts.get("f"))
        )
    raise MalformedTime(text)


def parse_penalty(text: str) -> Duration:
    """Parse a penalty amount such as ``"+1m 30s"``, ``"10s"`` or ``"+0:30"``."""
    if not isinstance(text, str):
        raise MalformedTime(text)
    body = text.strip()
    if body.startswith("+"):
        body = body[1:].strip()

    m = _PENALTY_UNITS.fullmatch(body)
    if body and m is not None and any(m.groupdict().values()):
        hours = int(m["h"] or 0)
        minutes = int(m["m"] or 0)
        whole, _, fraction = (m["s"] or "0").partition(".")
        return Duration(
            hours * MS_PER_HOUR
            + minutes * MS_PER_MINUTE
            + int(whole) * MS_PER_SECOND
            + _fraction_to_ms(fraction)
        )

    try:
        return parse_time(body)
    except MalformedTime:
        raise MalformedTime(text) from None


def compare(a: Duration, b: Duration) -> int:
    """Return -1, 0 or 1 as a is less than, equal to or greater than b."""
    return (a > b) - (a < b)


def _round_ms(ms: int, precision: str) -> tuple[int, str]:
    """Round to the display precision and return (ms, fraction digits)."""
    if precision == "auto":
        millis = ms % MS_PER_SECOND
        return ms, f"{millis:03d}".rstrip("0") or "0"

    digits = PRECISION_DIGITS.get(precision)
    if digits is None:
        raise ValueError(f"Unknown precision: {precision!r}")
    unit = 10 ** (3 - digits)
    ms = (ms + unit // 2) // unit * unit
    millis = ms % MS_PER_SECOND
    return ms, f"{millis:03d}"[:digits]


def format_time(duration: Duration | None, precision: str = "auto") -> str:
    """Format to the canonical ``M:SS.f`` / ``H:MM:SS.f`` style."""
    if duration is None:
        return ""
    neg = duration.ms < 0
    ms, fraction = _round_ms(abs(duration.ms), precision)
    hours, rem = divmod(ms, MS_PER_HOUR)
    minutes, rem = divmod(rem, MS_PER_MINUTE)
    seconds = rem // MS_PER_SECOND

    if hours:
        text = f"{hours}:{minutes:02d}:{seconds:02d}.{fraction}"
    else:
        text = f"{minutes}:{seconds:02d}.{fraction}"
    return f"-{text}" if neg else text


def format_gap(gap: Duration | None, is_leader: bool = False,
               precision: str = "auto") -> str:
    """Format a gap to the leader: ``"-"``, ``"+2.0s"`` or ``"+1:02.5"``."""
    if is_leader:
        return "-"
    if gap is None:
        return ""
    if abs(gap.ms) < MS_PER_MINUTE:
        ms, fraction = _round_ms(abs(gap.ms), precision)
        if ms < MS_PER_MINUTE:
            return f"+{ms // MS_PER_SECOND}.{fraction}s"
    return f"+{format_time(gap, precision)}"
