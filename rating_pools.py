#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# Rating distributions per speed category, accumulated from PGN headers.
#
# Key conventions (explicit):
# - speed category is derived from TimeControl "<initial>+<increment>" as initial + 40 * increment seconds.
# - category ranges are half-open [low, high[ and must be ascending and disjoint.
# - histogram[value] = number of committed ratings equal to value (one per rated side, not one per game).
# - casual games are counted but still contribute their ratings.
#
# Notes:
# - Unclassifiable records are skipped and reported on stderr; they never abort the run.
# - A rating above the histogram maximum is fatal (the configured maximum is wrong for the data).

from __future__ import annotations

import math
import re
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple


# ----------------------------
# Constants
# ----------------------------

# Expected number of moves per game; increment is paid once per move.
ESTIMATED_MOVES = 40

DEFAULT_MAX_RATING = 3500

CASUAL_MARKERS: Tuple[str, ...] = ("casual", "simul")

EVENT_TAG = "Event"
SITE_TAG = "Site"
TIME_CONTROL_TAG = "TimeControl"
WHITE_RATING_TAG = "WhiteElo"
BLACK_RATING_TAG = "BlackElo"

UNKNOWN_RATING_MARKER = "?"

_TC_RE = re.compile(r"^\s*(\d+)\+(\d+)\s*$")
_NON_DIGIT_RE = re.compile(r"\D")


class HistogramRangeError(ValueError):
    """A value was pushed into a histogram outside of [0, max_value]."""


# ----------------------------
# Ratings
# ----------------------------

def parse_rating(raw: Optional[str]) -> Optional[int]:
    """Return the rating as a non-negative int, or None when there is no usable rating.

    "1500?" (provisional/unknown) and "-" / "" are None. Other non-digit characters are dropped.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value or value.endswith(UNKNOWN_RATING_MARKER):
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    if not digits:
        return None
    return int(digits)


# ----------------------------
# Speed categories
# ----------------------------

@dataclass(frozen=True)
class SpeedCategory:
    name: str
    low: int   # inclusive, seconds
    high: int  # exclusive, seconds

    def contains(self, seconds: int) -> bool:
        return self.low <= seconds < self.high


DEFAULT_CATEGORIES: Tuple[SpeedCategory, ...] = (
    SpeedCategory("ultrabullet", 0, 30),
    SpeedCategory("bullet", 30, 180),
    SpeedCategory("blitz", 180, 480),
    SpeedCategory("rapid", 480, 1500),
    SpeedCategory("classical", 1500, 21600),
)


def parse_time_control(raw: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse "<initial>+<increment>" into (initial, increment); anything else is None."""
    m = _TC_RE.match(raw or "")
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def estimate_game_seconds(initial: int, increment: int) -> int:
    return initial + ESTIMATED_MOVES * increment


def find_category(seconds: int, categories: Tuple[SpeedCategory, ...]) -> Optional[SpeedCategory]:
    for c in categories:
        if c.contains(seconds):
            return c
    return None


def classify_time_control(
    raw: Optional[str],
    categories: Tuple[SpeedCategory, ...] = DEFAULT_CATEGORIES,
) -> Optional[SpeedCategory]:
    tc = parse_time_control(raw)
    if tc is None:
        return None
    return find_category(estimate_game_seconds(*tc), categories)


def category_from_event(event: str, categories: Tuple[SpeedCategory, ...]) -> Optional[SpeedCategory]:
    # First name (in table order) found in the event text, e.g. "Rated Blitz game" -> blitz.
    # Note: "bullet" is a substring of "ultrabullet", so table order matters here.
    text = (event or "").lower()
    for c in categories:
        if c.name.lower() in text:
            return c
    return None


def is_casual_event(event: str, markers: Tuple[str, ...] = CASUAL_MARKERS) -> bool:
    text = (event or "").lower()
    return any(m in text for m in markers)


# ----------------------------
# Configuration
# ----------------------------

@dataclass(frozen=True)
class PoolConfig:
    categories: Tuple[SpeedCategory, ...] = DEFAULT_CATEGORIES
    max_rating: int = DEFAULT_MAX_RATING
    casual_markers: Tuple[str, ...] = CASUAL_MARKERS

    def __post_init__(self) -> None:
        if not self.categories:
            raise ValueError("At least one speed category is required.")
        if self.max_rating < 0:
            raise ValueError(f"max_rating must be >= 0, got {self.max_rating}.")

        names = [c.name for c in self.categories]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate category names: {names}")

        prev: Optional[SpeedCategory] = None
        for c in self.categories:
            if c.low < 0 or c.low >= c.high:
                raise ValueError(f"Invalid range for {c.name}: [{c.low},{c.high}[")
            if prev is not None and c.low < prev.high:
                raise ValueError(
                    f"Ranges must be ascending and disjoint: {prev.name}=[{prev.low},{prev.high}[ "
                    f"overlaps or precedes {c.name}=[{c.low},{c.high}["
                )
            prev = c


DEFAULT_CONFIG = PoolConfig()


# ----------------------------
# Histograms
# ----------------------------

class Histogram:
    """Dense counts for integer values in [0, max_value]."""

    def __init__(self, max_value: int = DEFAULT_MAX_RATING) -> None:
        self.max_value = max_value
        self._bins: List[int] = [0] * (max_value + 1)
        self._total = 0

    def increment(self, value: int) -> None:
        if not (0 <= value <= self.max_value):
            raise HistogramRangeError(f"value {value} outside [0, {self.max_value}]")
        self._bins[value] += 1
        self._total += 1

    def count(self, value: int) -> int:
        if not (0 <= value <= self.max_value):
            return 0
        return self._bins[value]

    def total_count(self) -> int:
        return self._total

    def bins(self) -> Iterator[Tuple[int, int]]:
        # Ascending (value, count) pairs, empty bins skipped.
        for value, count in enumerate(self._bins):
            if count:
                yield value, count

    def mean(self) -> Optional[float]:
        if not self._total:
            return None
        return sum(v * c for v, c in self.bins()) / self._total

    def stddev(self) -> Optional[float]:
        # Population standard deviation.
        mu = self.mean()
        if mu is None:
            return None
        var = sum(c * (v - mu) ** 2 for v, c in self.bins()) / self._total
        return math.sqrt(var)


class CategoryTable:
    def __init__(self, config: PoolConfig = DEFAULT_CONFIG) -> None:
        self.config = config
        self._histograms: Dict[str, Histogram] = {
            c.name: Histogram(config.max_rating) for c in config.categories
        }

    def categories(self) -> Tuple[SpeedCategory, ...]:
        return self.config.categories

    def histogram_for(self, category: SpeedCategory) -> Histogram:
        return self._histograms[category.name]

    def increment(self, category: SpeedCategory, value: int) -> None:
        self.histogram_for(category).increment(value)

    def classify(self, time_control: Optional[str]) -> Optional[SpeedCategory]:
        return classify_time_control(time_control, self.config.categories)

    def from_event(self, event: str) -> Optional[SpeedCategory]:
        return category_from_event(event, self.config.categories)


# ----------------------------
# Per-record state machine
# ----------------------------

@dataclass
class GameRecord:
    category: Optional[SpeedCategory] = None
    white_rating: Optional[int] = None
    black_rating: Optional[int] = None
    is_rated: bool = True

    site: Optional[str] = None  # diagnostics only
    time_control: Optional[str] = None  # raw tag; once set, Event no longer picks the category

    committed: int = 0  # ratings pushed into the category histogram


@dataclass
class RunSummary:
    games_seen: int = 0
    skipped_count: int = 0
    casual_count: int = 0
    ratings_committed: int = 0


@dataclass
class GameAggregator:
    """Consumes header events for one record at a time and commits ratings on record end.

    Protocol: begin_record(), on_header(key, value)*, end_record(). Movetext is never needed.
    """

    config: PoolConfig = DEFAULT_CONFIG
    table: CategoryTable = field(init=False)
    summary: RunSummary = field(default_factory=RunSummary)
    record: GameRecord = field(default_factory=GameRecord)
    state: str = "idle"  # idle | headers

    def __post_init__(self) -> None:
        self.table = CategoryTable(self.config)

    def begin_record(self) -> None:
        self.record = GameRecord()
        self.state = "headers"

    def on_header(self, key: str, value: str) -> None:
        if self.state != "headers":
            raise RuntimeError(f"Header {key!r} received outside of a record.")

        rec = self.record
        if key == TIME_CONTROL_TAG:
            rec.time_control = value
            rec.category = self.table.classify(value)
        elif key == EVENT_TAG:
            if is_casual_event(value, self.config.casual_markers):
                rec.is_rated = False
            # Event name is only a fallback when the record has no TimeControl.
            if rec.time_control is None:
                rec.category = self.table.from_event(value)
        elif key == WHITE_RATING_TAG:
            rec.white_rating = parse_rating(value)
        elif key == BLACK_RATING_TAG:
            rec.black_rating = parse_rating(value)
        elif key == SITE_TAG:
            rec.site = value

    def end_record(self) -> GameRecord:
        if self.state != "headers":
            raise RuntimeError("end_record() without begin_record().")

        rec = self.record
        s = self.summary
        s.games_seen += 1
        if not rec.is_rated:
            s.casual_count += 1

        if rec.category is None:
            s.skipped_count += 1
            print(f"skip: {self._skip_reason(rec)}{self._site_suffix(rec)}", file=sys.stderr, flush=True)
        else:
            for rating in (rec.white_rating, rec.black_rating):
                if rating is None:
                    continue
                try:
                    self.table.increment(rec.category, rating)
                except HistogramRangeError:
                    print("ERROR: rating above histogram maximum; aborting.", file=sys.stderr)
                    print(f"  category={rec.category.name} rating={rating} max={self.config.max_rating}", file=sys.stderr)
                    print(f"  site={rec.site or '?'}", file=sys.stderr, flush=True)
                    raise
                rec.committed += 1
                s.ratings_committed += 1

        self.state = "idle"
        return rec

    def _skip_reason(self, rec: GameRecord) -> str:
        if rec.time_control is None:
            return "no TimeControl and no category in Event"
        tc = parse_time_control(rec.time_control)
        if tc is None:
            return f"malformed TimeControl {rec.time_control!r}"
        return f"TimeControl {rec.time_control!r} (~{estimate_game_seconds(*tc)}s) matches no category"

    @staticmethod
    def _site_suffix(rec: GameRecord) -> str:
        return f" [{rec.site}]" if rec.site else ""


# ----------------------------
# Reporting
# ----------------------------

@dataclass(frozen=True)
class CategorySummary:
    name: str
    total_count: int
    mean: Optional[float]
    stddev: Optional[float]


def summarize(table: CategoryTable) -> List[CategorySummary]:
    out: List[CategorySummary] = []
    for c in table.categories():
        h = table.histogram_for(c)
        out.append(CategorySummary(name=c.name, total_count=h.total_count(), mean=h.mean(), stddev=h.stddev()))
    return out


def export_bins(histogram: Histogram) -> Iterator[Tuple[int, int]]:
    """Lazy (value, count) rows in ascending value order, zero-count bins omitted."""
    return histogram.bins()
