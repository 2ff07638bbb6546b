#!/usr/bin/env python3
"""
LOC Explorer - Commit History Exploration Engine (v1.0.0)

Turns a per-line code log (one row for every line of source touched by a
commit) into commit summaries and drives the interactive analytics view:

- Record loading with strict validation (no silent zero-filling)
- Commit aggregation in first-seen order
- Time-window cutoff driven by a 0-100 control position
- Rectangular brush selection over a projected (time, hour-of-day) view
- Summary statistics for the visible and the selected scopes
- A single coordinator that sequences recomputation on every event

The rendering surface (pixel mapping, drawing, pointer capture) lives outside
this module. It feeds control/selection events in and receives view-models.

Version: 1.0.0
"""

import json
import logging
import math
import os
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import click
import jsonschema
import pandas as pd
import regex as re
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm

# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

POSITION_MIN = 0.0
POSITION_MAX = 100.0

# Logs shorter than this are parsed without a progress bar
PROGRESS_MIN_ROWS = 5000

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================


class LocExplorerError(Exception):
    """Base class for explorer errors"""


class RecordLoadError(LocExplorerError):
    """
    A log row is missing a required field or holds an unparsable value.

    The whole load is aborted: every downstream statistic assumes the record
    set is complete.
    """

    def __init__(self, row: int, field_name: str, message: str):
        self.row = row
        self.field = field_name
        super().__init__(f"Row {row}: {message}")


class DatasetNotLoadedError(LocExplorerError):
    """An interaction event arrived before the log finished loading"""


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass(frozen=True)
class LineRecord:
    """One line of source code touched by a commit."""

    commit_id: str
    file: str
    line_number: int
    nesting_depth: int
    line_length: int
    language: str
    author: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit": self.commit_id,
            "file": self.file,
            "line": self.line_number,
            "depth": self.nesting_depth,
            "length": self.line_length,
            "type": self.language,
            "author": self.author,
            "datetime": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CommitSummary:
    """
    Aggregate view of all line records sharing a commit id.

    ``lines`` holds the constituent records. It is left out of repr,
    equality and ``to_dict()``; use ``iter_lines()`` or
    ``to_dict(include_lines=True)`` to traverse it.
    """

    id: str
    author: str
    timestamp: datetime
    fractional_hour: float
    total_lines: int
    url: Optional[str] = None
    lines: Tuple[LineRecord, ...] = field(default=(), repr=False, compare=False)

    @property
    def short_id(self) -> str:
        return self.id[:7]

    def to_dict(self, include_lines: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "author": self.author,
            "datetime": self.timestamp.isoformat(),
            "fractional_hour": self.fractional_hour,
            "total_lines": self.total_lines,
            "url": self.url,
        }
        if include_lines:
            data["lines"] = [record.to_dict() for record in self.lines]
        return data


class CategoryShare(NamedTuple):
    count: int
    proportion: float


# ============================================================================
# RECORD LOADER
# ============================================================================

# Accepted column names per logical field, first match wins
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "commit": ("commit", "commit_id", "hash"),
    "file": ("file", "path", "file_path"),
    "line": ("line", "line_number"),
    "depth": ("depth", "nesting_depth"),
    "length": ("length", "line_length"),
    "type": ("type", "language"),
    "author": ("author",),
    "date": ("date",),
    "time": ("time",),
    "timezone": ("timezone", "tz"),
    "datetime": ("datetime",),
}

_OFFSET_PATTERN = re.compile(r"(?P<sign>[+-])(?P<hours>\d{1,2}):?(?P<minutes>\d{2})?")
_TRAILING_ZULU = re.compile(r"[Zz]$")
_TRAILING_COMPACT_OFFSET = re.compile(r"(?<=T[\d:.]+)([+-])(\d{2})(\d{2})$")


def parse_utc_offset(value: str) -> timezone:
    """Parse '-08:00', '-0800', '+5' or 'Z' into a fixed-offset timezone."""
    text = value.strip()
    if text.upper() in ("Z", "UTC"):
        return timezone.utc

    match = _OFFSET_PATTERN.fullmatch(text)
    if not match:
        raise ValueError(f"invalid UTC offset: {value!r}")

    hours = int(match.group("hours"))
    minutes = int(match.group("minutes") or 0)
    if hours > 23 or minutes > 59:
        raise ValueError(f"UTC offset out of range: {value!r}")

    delta = timedelta(hours=hours, minutes=minutes)
    return timezone(-delta if match.group("sign") == "-" else delta)


def parse_datetime(text: str) -> datetime:
    """
    Parse an ISO 8601 timestamp, accepting 'Z' and compact '+0000' offsets.
    The result is naive when the text carries no offset.
    """
    normalized = _TRAILING_ZULU.sub("+00:00", text.strip())
    normalized = _TRAILING_COMPACT_OFFSET.sub(r"\1\2:\3", normalized)
    return datetime.fromisoformat(normalized)


def _lookup(row: Mapping[str, Any], name: str, columns: Mapping[str, str]) -> Any:
    if name in columns:
        return row.get(columns[name])
    for alias in FIELD_ALIASES[name]:
        if alias in row:
            return row[alias]
    return None


def _parse_int(raw: str, row_no: int, name: str, minimum: int) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise RecordLoadError(
            row_no, name, f"field '{name}' is not an integer: {raw!r}"
        ) from None
    if value < minimum:
        raise RecordLoadError(
            row_no, name, f"field '{name}' must be >= {minimum}, got {value}"
        )
    return value


def _parse_row(
    row: Mapping[str, Any], row_no: int, columns: Mapping[str, str]
) -> LineRecord:
    def text(name: str, required: bool = True) -> Optional[str]:
        raw = _lookup(row, name, columns)
        value = "" if raw is None else str(raw).strip()
        if not value:
            if required:
                raise RecordLoadError(
                    row_no, name, f"missing required field '{name}'"
                )
            return None
        return value

    commit_id = text("commit")
    file_path = text("file")
    line_number = _parse_int(text("line"), row_no, "line", minimum=1)
    depth = _parse_int(text("depth"), row_no, "depth", minimum=0)
    length = _parse_int(text("length"), row_no, "length", minimum=0)
    language = text("type")
    author = text("author")

    datetime_text = text("datetime", required=False)
    if datetime_text is not None:
        try:
            timestamp = parse_datetime(datetime_text)
        except ValueError as e:
            raise RecordLoadError(
                row_no, "datetime", f"unparsable datetime {datetime_text!r}: {e}"
            ) from e
    else:
        date_text = text("date")
        time_text = text("time")
        try:
            timestamp = parse_datetime(f"{date_text}T{time_text}")
        except ValueError as e:
            raise RecordLoadError(
                row_no,
                "date",
                f"unparsable date/time {date_text!r} {time_text!r}: {e}",
            ) from e

    if timestamp.tzinfo is None:
        tz_text = text("timezone")
        try:
            timestamp = timestamp.replace(tzinfo=parse_utc_offset(tz_text))
        except ValueError as e:
            raise RecordLoadError(row_no, "timezone", str(e)) from e

    return LineRecord(
        commit_id=commit_id,
        file=file_path,
        line_number=line_number,
        nesting_depth=depth,
        line_length=length,
        language=language,
        author=author,
        timestamp=timestamp,
    )


def read_rows(path: str) -> List[Dict[str, str]]:
    """Read a CSV log into row dicts, every value kept as text."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Log file not found: {path}")

    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        return []

    frame.columns = [str(column).strip() for column in frame.columns]
    return frame.to_dict(orient="records")


def load_records(
    rows: Iterable[Mapping[str, Any]],
    columns: Optional[Mapping[str, str]] = None,
    reporter: Optional["ProgressReporter"] = None,
) -> List[LineRecord]:
    """
    Parse raw rows into LineRecords, one per row, in source order.

    Args:
        rows: Mappings of column name to raw (text) value
        columns: Optional field -> column overrides (see FIELD_ALIASES)
        reporter: Shows a progress bar for large logs

    Raises:
        RecordLoadError: on the first missing or unparsable field
    """
    rows = list(rows)
    columns = dict(columns or {})
    unknown = set(columns) - set(FIELD_ALIASES)
    if unknown:
        raise ValueError(f"Unknown column mapping fields: {sorted(unknown)}")

    progress_bar = None
    if reporter is not None and len(rows) >= PROGRESS_MIN_ROWS:
        progress_bar = reporter.create_progress_bar(
            total=len(rows), desc="Parsing rows", unit=" rows"
        )

    records = []
    try:
        for row_no, row in enumerate(rows, start=1):
            records.append(_parse_row(row, row_no, columns))
            if progress_bar:
                progress_bar.update(1)
    finally:
        if progress_bar:
            progress_bar.close()

    logger.debug("Parsed %d line records", len(records))
    return records


def load_log(
    path: str,
    columns: Optional[Mapping[str, str]] = None,
    reporter: Optional["ProgressReporter"] = None,
) -> List[LineRecord]:
    """Read and parse a CSV log file"""
    rows = read_rows(path)
    logger.info("Read %d rows from %s", len(rows), path)
    return load_records(rows, columns=columns, reporter=reporter)


# ============================================================================
# COMMIT AGGREGATOR
# ============================================================================


def fractional_hour(timestamp: datetime) -> float:
    """Hour of day in the timestamp's own offset, e.g. 14.5 for 2:30pm"""
    return timestamp.hour + timestamp.minute / 60


def aggregate_commits(
    records: Iterable[LineRecord], url_base: Optional[str] = None
) -> List[CommitSummary]:
    """
    Group line records by commit id.

    Output order is first appearance in the input, not chronological.
    The first record of each group supplies author and timestamp.
    """
    groups: Dict[str, List[LineRecord]] = {}
    for record in records:
        groups.setdefault(record.commit_id, []).append(record)

    commits = []
    for commit_id, lines in groups.items():
        first = lines[0]
        if any(
            r.author != first.author or r.timestamp != first.timestamp for r in lines
        ):
            logger.warning(
                "Commit %s has records with differing author/timestamp; "
                "using the first record's",
                commit_id,
            )

        commits.append(
            CommitSummary(
                id=commit_id,
                author=first.author,
                timestamp=first.timestamp,
                fractional_hour=fractional_hour(first.timestamp),
                total_lines=len(lines),
                url=f"{url_base}{commit_id}" if url_base else None,
                lines=tuple(lines),
            )
        )

    return commits


def iter_lines(commits: Iterable[CommitSummary]) -> Iterator[LineRecord]:
    """Flatten the line records of a commit subset"""
    for commit in commits:
        yield from commit.lines


# ============================================================================
# TIME-WINDOW FILTER
# ============================================================================


def clamp_position(position: float) -> float:
    """Clamp a control position into [0, 100]"""
    value = float(position)
    if math.isnan(value):
        raise ValueError("Control position must be a number")
    return min(POSITION_MAX, max(POSITION_MIN, value))


class TimeScale:
    """
    Linear scale between the commit timestamp range and control positions.

    Fitted once at load time and never refit during interaction. A domain
    with a single distinct timestamp is constant: every position inverts to
    that timestamp. An empty domain inverts to None.
    """

    def __init__(self, start: Optional[datetime], end: Optional[datetime]):
        if (start is None) != (end is None):
            raise ValueError("TimeScale needs both domain ends or neither")
        if start is not None and end < start:
            raise ValueError(f"TimeScale domain is reversed: {start} > {end}")
        self.start = start
        self.end = end

    @classmethod
    def fit(cls, commits: Sequence[CommitSummary]) -> "TimeScale":
        if not commits:
            return cls(None, None)
        stamps = [commit.timestamp for commit in commits]
        return cls(min(stamps), max(stamps))

    @property
    def is_empty(self) -> bool:
        return self.start is None

    @property
    def span(self) -> timedelta:
        if self.is_empty:
            return timedelta(0)
        return self.end - self.start

    @property
    def is_degenerate(self) -> bool:
        return self.span == timedelta(0)

    def __call__(self, timestamp: datetime) -> float:
        if self.is_degenerate:
            return POSITION_MIN
        return (timestamp - self.start) / self.span * POSITION_MAX

    def invert(self, position: float) -> Optional[datetime]:
        if self.is_empty:
            return None

        position = clamp_position(position)
        if self.is_degenerate or position <= POSITION_MIN:
            return self.start
        if position >= POSITION_MAX:
            return self.end
        return self.start + self.span * (position / POSITION_MAX)

    def __repr__(self) -> str:
        return f"TimeScale({self.start!r}, {self.end!r})"


def filter_commits(
    commits: Iterable[CommitSummary], cutoff: Optional[datetime]
) -> List[CommitSummary]:
    """Commits at or before the cutoff, in their incoming order"""
    if cutoff is None:
        return []
    return [commit for commit in commits if commit.timestamp <= cutoff]


class WindowResult(NamedTuple):
    position: float
    cutoff: Optional[datetime]
    visible: List[CommitSummary]


def apply_control_position(
    scale: TimeScale, commits: Sequence[CommitSummary], position: float
) -> WindowResult:
    """Clamp the position, invert it to a cutoff and derive the visible set."""
    position = clamp_position(position)
    cutoff = scale.invert(position)
    return WindowResult(position, cutoff, filter_commits(commits, cutoff))


class TimeWindow:
    """
    The full commit list plus the scale fitted to it.

    Holds the last applied control position and cutoff so the visible set
    can be re-derived without touching the scale.
    """

    def __init__(self, commits: Sequence[CommitSummary]):
        self.commits = list(commits)
        self.scale = TimeScale.fit(self.commits)
        self.position = POSITION_MAX
        self.cutoff: Optional[datetime] = self.scale.end
        self.visible: List[CommitSummary] = list(self.commits)

    def set_control_position(self, position: float) -> List[CommitSummary]:
        window = apply_control_position(self.scale, self.commits, position)
        self.position = window.position
        self.cutoff = window.cutoff
        self.visible = window.visible
        return self.visible


# ============================================================================
# SELECTION PREDICATE
# ============================================================================


@dataclass(frozen=True)
class Region:
    """Axis-aligned rectangle in projected coordinate space."""

    x0: float
    y0: float
    x1: float
    y1: float

    @classmethod
    def from_corners(cls, corners) -> "Region":
        """Build from a ((x0, y0), (x1, y1)) pair as emitted by a brush"""
        (x0, y0), (x1, y1) = corners
        return cls(float(x0), float(y0), float(x1), float(y1))

    def normalized(self) -> "Region":
        return Region(
            min(self.x0, self.x1),
            min(self.y0, self.y1),
            max(self.x0, self.x1),
            max(self.y0, self.y1),
        )

    def contains(self, x: float, y: float) -> bool:
        r = self.normalized()
        return r.x0 <= x <= r.x1 and r.y0 <= y <= r.y1

    def to_dict(self) -> Dict[str, float]:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}


@dataclass(frozen=True)
class Projection:
    """
    Mapping from a commit's (timestamp, fractional hour) into the coordinate
    space selection regions are drawn in. Supplied by the rendering surface.
    """

    x: Callable[[datetime], float]
    y: Callable[[float], float]

    def project(self, commit: CommitSummary) -> Tuple[float, float]:
        return self.x(commit.timestamp), self.y(commit.fractional_hour)

    @classmethod
    def data_space(cls) -> "Projection":
        """x = POSIX seconds, y = hour of day"""
        return cls(x=lambda ts: ts.timestamp(), y=lambda hour: hour)


RegionLike = Union[Region, Tuple[Tuple[float, float], Tuple[float, float]], None]


def as_region(region: RegionLike) -> Optional[Region]:
    if region is None or isinstance(region, Region):
        return region
    return Region.from_corners(region)


def is_selected(
    region: Optional[Region], commit: CommitSummary, projection: Projection
) -> bool:
    """True when the commit's projected point lies inside the region (inclusive)"""
    if region is None:
        return False
    x, y = projection.project(commit)
    return region.contains(x, y)


def select_commits(
    region: Optional[Region],
    commits: Iterable[CommitSummary],
    projection: Projection,
) -> List[CommitSummary]:
    """Single pass over the commits; no region selects nothing."""
    if region is None:
        return []
    bounds = region.normalized()
    selected = []
    for commit in commits:
        x, y = projection.project(commit)
        if bounds.x0 <= x <= bounds.x1 and bounds.y0 <= y <= bounds.y1:
            selected.append(commit)
    return selected


# ============================================================================
# SUMMARY ENGINE
# ============================================================================


def total_line_count(lines: Sequence[LineRecord]) -> int:
    return len(lines)


def commit_count(commits: Sequence[CommitSummary]) -> int:
    return len(commits)


def distinct_file_count(lines: Iterable[LineRecord]) -> int:
    return len({record.file for record in lines})


def max_depth(lines: Iterable[LineRecord]) -> int:
    return max((record.nesting_depth for record in lines), default=0)


def max_line_length(lines: Iterable[LineRecord]) -> int:
    return max((record.line_length for record in lines), default=0)


def max_lines_in_any_file(lines: Iterable[LineRecord]) -> int:
    """Highest line number seen per file, then the largest across files"""
    per_file: Dict[str, int] = {}
    for record in lines:
        per_file[record.file] = max(per_file.get(record.file, 0), record.line_number)
    return max(per_file.values(), default=0)


def category_breakdown(lines: Sequence[LineRecord]) -> Dict[str, CategoryShare]:
    """
    Lines per language with their share of the subset, in first-seen order.
    An empty subset gives an empty breakdown.
    """
    total = len(lines)
    if total == 0:
        return {}
    counts = Counter(record.language for record in lines)
    return {
        language: CategoryShare(count, count / total)
        for language, count in counts.items()
    }


def per_file_line_units(lines: Iterable[LineRecord]) -> Dict[str, List[LineRecord]]:
    """Line records grouped by file, files and lines in first-seen order"""
    units: Dict[str, List[LineRecord]] = {}
    for record in lines:
        units.setdefault(record.file, []).append(record)
    return units


@dataclass(frozen=True)
class SubsetSummary:
    """Statistics for one commit subset (visible, or visible and selected)."""

    commits: int
    total_lines: int
    files: int
    max_depth: int
    max_line_length: int
    max_lines_in_file: int
    breakdown: Dict[str, CategoryShare]
    file_units: Dict[str, List[LineRecord]] = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commits": self.commits,
            "total_lines": self.total_lines,
            "files": self.files,
            "max_depth": self.max_depth,
            "max_line_length": self.max_line_length,
            "max_lines_in_file": self.max_lines_in_file,
            "breakdown": {
                language: {
                    "count": share.count,
                    "proportion": share.proportion,
                    "percent": format_percent(share.proportion),
                }
                for language, share in self.breakdown.items()
            },
            "file_lines": {
                name: len(records) for name, records in self.file_units.items()
            },
        }


def summarize(commits: Sequence[CommitSummary]) -> SubsetSummary:
    lines = list(iter_lines(commits))
    return SubsetSummary(
        commits=commit_count(commits),
        total_lines=total_line_count(lines),
        files=distinct_file_count(lines),
        max_depth=max_depth(lines),
        max_line_length=max_line_length(lines),
        max_lines_in_file=max_lines_in_any_file(lines),
        breakdown=category_breakdown(lines),
        file_units=per_file_line_units(lines),
    )


# ============================================================================
# PRESENTATION HELPERS
# ============================================================================


def format_selection_count(count: int) -> str:
    return f"{count or 'No'} commits selected"


def format_percent(proportion: float) -> str:
    """One decimal with a trailing '.0' trimmed: 0.375 -> '37.5%', 1.0 -> '100%'"""
    text = f"{proportion * 100:.1f}"
    if text.endswith(".0"):
        text = text[:-2]
    return f"{text}%"


def _clock(timestamp: datetime, pad_hour: bool = False) -> str:
    hour = timestamp.hour % 12 or 12
    suffix = "AM" if timestamp.hour < 12 else "PM"
    hour_text = f"{hour:02d}" if pad_hour else str(hour)
    return f"{hour_text}:{timestamp.minute:02d} {suffix}"


def format_cutoff(timestamp: Optional[datetime]) -> str:
    """Slider label, e.g. 'February 2, 2024 at 11:42 AM'"""
    if timestamp is None:
        return ""
    return f"{timestamp:%B} {timestamp.day}, {timestamp.year} at {_clock(timestamp)}"


def describe_commit(commit: CommitSummary) -> Dict[str, Any]:
    """Tooltip fields for one commit"""
    ts = commit.timestamp
    return {
        "id": commit.short_id,
        "url": commit.url,
        "date": f"{ts:%A}, {ts:%B} {ts.day}, {ts.year}",
        "time": _clock(ts, pad_hour=True),
        "author": commit.author,
        "lines": commit.total_lines,
    }


def day_period(hour: float) -> str:
    h = hour % 24
    if h < 6 or h >= 20:
        return "night"
    if h < 12:
        return "morning"
    if h < 18:
        return "afternoon"
    return "evening"


def file_unit_rows(units: Mapping[str, Sequence[LineRecord]]) -> List[Tuple[str, int]]:
    """(file, line count) rows for the file display, largest file first"""
    rows = [(name, len(records)) for name, records in units.items()]
    return sorted(rows, key=lambda row: -row[1])


SORT_ORDERS = ("lines-desc", "chronological", "source")


def sort_commits(
    commits: Sequence[CommitSummary], order: str = "lines-desc"
) -> List[CommitSummary]:
    """
    Order commits for rendering. 'lines-desc' puts large commits first so
    small markers are drawn on top; ties keep their incoming order.
    """
    if order == "lines-desc":
        return sorted(commits, key=lambda c: -c.total_lines)
    if order == "chronological":
        return sorted(commits, key=lambda c: c.timestamp)
    if order == "source":
        return list(commits)
    raise ValueError(f"Unknown sort order: {order!r} (expected one of {SORT_ORDERS})")


# ============================================================================
# VIEW-MODEL SCHEMA
# ============================================================================

_SUMMARY_SCHEMA = {
    "type": "object",
    "required": [
        "commits",
        "total_lines",
        "files",
        "max_depth",
        "max_line_length",
        "max_lines_in_file",
        "breakdown",
        "file_lines",
    ],
    "properties": {
        "commits": {"type": "integer", "minimum": 0},
        "total_lines": {"type": "integer", "minimum": 0},
        "files": {"type": "integer", "minimum": 0},
        "max_depth": {"type": "integer", "minimum": 0},
        "max_line_length": {"type": "integer", "minimum": 0},
        "max_lines_in_file": {"type": "integer", "minimum": 0},
        "breakdown": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["count", "proportion", "percent"],
                "properties": {
                    "count": {"type": "integer", "minimum": 1},
                    "proportion": {"type": "number", "minimum": 0, "maximum": 1},
                    "percent": {"type": "string"},
                },
            },
        },
        "file_lines": {
            "type": "object",
            "additionalProperties": {"type": "integer", "minimum": 1},
        },
    },
}

_COMMIT_SCHEMA = {
    "type": "object",
    "required": [
        "id",
        "author",
        "datetime",
        "fractional_hour",
        "total_lines",
        "day_period",
    ],
    "properties": {
        "id": {"type": "string"},
        "author": {"type": "string"},
        "datetime": {"type": "string"},
        "fractional_hour": {"type": "number", "minimum": 0, "exclusiveMaximum": 24},
        "total_lines": {"type": "integer", "minimum": 1},
        "url": {"type": ["string", "null"]},
        "day_period": {"enum": ["night", "morning", "afternoon", "evening"]},
    },
}

VIEW_MODEL_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "LOC Explorer view-model",
    "type": "object",
    "required": [
        "schema_version",
        "control_position",
        "window_cutoff",
        "cutoff_label",
        "visible_commits",
        "selection_region",
        "selected_commit_ids",
        "selection_count_text",
        "summaries",
    ],
    "properties": {
        "schema_version": {"type": "string"},
        "control_position": {"type": "number", "minimum": 0, "maximum": 100},
        "window_cutoff": {"type": ["string", "null"]},
        "cutoff_label": {"type": "string"},
        "visible_commits": {"type": "array", "items": _COMMIT_SCHEMA},
        "selection_region": {
            "oneOf": [
                {"type": "null"},
                {
                    "type": "object",
                    "required": ["x0", "y0", "x1", "y1"],
                    "properties": {
                        key: {"type": "number"} for key in ("x0", "y0", "x1", "y1")
                    },
                },
            ]
        },
        "selected_commit_ids": {"type": "array", "items": {"type": "string"}},
        "selection_count_text": {"type": "string"},
        "summaries": {
            "type": "object",
            "required": ["visible", "selected"],
            "properties": {
                "visible": _SUMMARY_SCHEMA,
                "selected": _SUMMARY_SCHEMA,
            },
        },
    },
}


def validate_view_model(document: Dict[str, Any]) -> None:
    """Raise jsonschema.ValidationError when the document is malformed"""
    jsonschema.validate(instance=document, schema=VIEW_MODEL_SCHEMA)


# ============================================================================
# INTERACTION COORDINATOR
# ============================================================================


@dataclass
class InteractionState:
    """Mutable session state. Only InteractionCoordinator writes to it."""

    control_position: float = POSITION_MAX
    window_cutoff: Optional[datetime] = None
    selection_region: Optional[Region] = None


@dataclass(frozen=True)
class ViewModel:
    """Everything the rendering surface needs after one recomputation."""

    control_position: float
    window_cutoff: Optional[datetime]
    visible_commits: List[CommitSummary]
    selection_region: Optional[Region]
    selected_commits: List[CommitSummary]
    visible: SubsetSummary
    selected: SubsetSummary

    @property
    def selection_count_text(self) -> str:
        return format_selection_count(len(self.selected_commits))

    @property
    def cutoff_label(self) -> str:
        return format_cutoff(self.window_cutoff)

    def to_dict(self) -> Dict[str, Any]:
        visible_commits = []
        for commit in self.visible_commits:
            entry = commit.to_dict()
            entry["day_period"] = day_period(commit.fractional_hour)
            visible_commits.append(entry)

        return {
            "schema_version": SCHEMA_VERSION,
            "control_position": self.control_position,
            "window_cutoff": (
                self.window_cutoff.isoformat() if self.window_cutoff else None
            ),
            "cutoff_label": self.cutoff_label,
            "visible_commits": visible_commits,
            "selection_region": (
                self.selection_region.to_dict() if self.selection_region else None
            ),
            "selected_commit_ids": [commit.id for commit in self.selected_commits],
            "selection_count_text": self.selection_count_text,
            "summaries": {
                "visible": self.visible.to_dict(),
                "selected": self.selected.to_dict(),
            },
        }


class InteractionCoordinator:
    """
    Single authority over InteractionState.

    Two external events drive it:
      - control change:   re-filter -> re-select -> both summaries -> emit
      - selection change: re-select against the current visible set ->
                          selected summary -> emit (never re-filters)

    A control change always re-selects, so commits that leave the time
    window drop out of the selection even when the stored rectangle still
    covers their projected point. Events before ``load()`` completes raise
    DatasetNotLoadedError.
    """

    def __init__(
        self,
        projection: Projection,
        sort_order: str = "lines-desc",
        initial_position: float = POSITION_MAX,
        url_base: Optional[str] = None,
    ):
        if sort_order not in SORT_ORDERS:
            raise ValueError(
                f"Unknown sort order: {sort_order!r} (expected one of {SORT_ORDERS})"
            )
        self.projection = projection
        self.sort_order = sort_order
        self.url_base = url_base
        self.state = InteractionState(control_position=clamp_position(initial_position))

        self.commits: List[CommitSummary] = []
        self.scale: Optional[TimeScale] = None
        self.window: Optional[TimeWindow] = None
        self.visible_commits: List[CommitSummary] = []
        self.selected_commits: List[CommitSummary] = []
        self.visible_summary = summarize([])
        self.selected_summary = summarize([])

        self._listeners: List[Callable[[ViewModel], None]] = []
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # ---------------------------------------------------------------- loading

    def load(self, records: Sequence[LineRecord]) -> ViewModel:
        """Aggregate commits, fit the time scale and emit the initial view."""
        self._loaded = False
        self.commits = aggregate_commits(records, url_base=self.url_base)
        self.window = TimeWindow(self.commits)
        self.scale = self.window.scale
        self._loaded = True

        logger.info(
            "Loaded %d line records into %d commits (%s)",
            len(records),
            len(self.commits),
            self.scale,
        )
        return self.on_control_change(self.state.control_position)

    def load_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        columns: Optional[Mapping[str, str]] = None,
        reporter: Optional["ProgressReporter"] = None,
    ) -> ViewModel:
        # a rejected reload must not keep serving the previous dataset
        self._loaded = False
        return self.load(load_records(rows, columns=columns, reporter=reporter))

    def load_path(
        self,
        path: str,
        columns: Optional[Mapping[str, str]] = None,
        reporter: Optional["ProgressReporter"] = None,
    ) -> ViewModel:
        self._loaded = False
        return self.load(load_log(path, columns=columns, reporter=reporter))

    # ----------------------------------------------------------------- events

    def on_control_change(self, position: float) -> ViewModel:
        self._require_loaded()
        self.visible_commits = self.window.set_control_position(position)
        self.state.control_position = self.window.position
        self.state.window_cutoff = self.window.cutoff
        self.visible_summary = summarize(self.visible_commits)

        logger.debug(
            "Control at %.2f -> cutoff %s, %d/%d commits visible",
            self.window.position,
            self.window.cutoff,
            len(self.visible_commits),
            len(self.commits),
        )
        return self._reselect()

    def on_selection_change(self, region: RegionLike) -> ViewModel:
        self._require_loaded()
        self.state.selection_region = as_region(region)
        return self._reselect()

    def on_projection_change(self, projection: Projection) -> ViewModel:
        """The surface refit its axes; stored regions are re-evaluated."""
        self._require_loaded()
        self.projection = projection
        return self._reselect()

    def clear_selection(self) -> ViewModel:
        return self.on_selection_change(None)

    # -------------------------------------------------------------- listeners

    def subscribe(self, listener: Callable[[ViewModel], None]):
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[ViewModel], None]):
        self._listeners.remove(listener)

    # ---------------------------------------------------------------- queries

    def view_model(self) -> ViewModel:
        self._require_loaded()
        return ViewModel(
            control_position=self.state.control_position,
            window_cutoff=self.state.window_cutoff,
            visible_commits=sort_commits(self.visible_commits, self.sort_order),
            selection_region=self.state.selection_region,
            selected_commits=sort_commits(self.selected_commits, self.sort_order),
            visible=self.visible_summary,
            selected=self.selected_summary,
        )

    def position_for(self, timestamp: datetime) -> float:
        """Control position whose cutoff is the given timestamp"""
        self._require_loaded()
        return clamp_position(self.scale(timestamp))

    def find_commit(self, prefix: str) -> CommitSummary:
        """Look up a commit by id or unambiguous id prefix"""
        self._require_loaded()
        matches = [c for c in self.commits if c.id.startswith(prefix)]
        if not matches:
            raise LocExplorerError(f"No commit matches {prefix!r}")
        if len(matches) > 1:
            exact = [c for c in matches if c.id == prefix]
            if exact:
                return exact[0]
            raise LocExplorerError(
                f"Commit prefix {prefix!r} is ambiguous ({len(matches)} matches)"
            )
        return matches[0]

    # --------------------------------------------------------------- internal

    def _require_loaded(self):
        if not self._loaded:
            raise DatasetNotLoadedError(
                "Commit log is not loaded yet; interaction events are rejected"
            )

    def _reselect(self) -> ViewModel:
        self.selected_commits = select_commits(
            self.state.selection_region, self.visible_commits, self.projection
        )
        self.selected_summary = summarize(self.selected_commits)
        logger.debug(
            "Selection %s -> %d/%d visible commits selected",
            self.state.selection_region,
            len(self.selected_commits),
            len(self.visible_commits),
        )

        view = self.view_model()
        for listener in list(self._listeners):
            listener(view)
        return view


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================

CONFIG_NAMES = (".loc-explorer.yaml", ".loc-explorer.yml", ".loc-explorer.json")

DEFAULTS: Dict[str, Any] = {
    "position": POSITION_MAX,
    "sort": "lines-desc",
    "commit_url_base": None,
    "columns": {},
    "quiet": False,
    "verbose": False,
    "no_color": False,
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")
    return data


def find_config_file(search_dir: str) -> Optional[str]:
    """
    Auto-discover a configuration file next to the log, then in the current
    directory.
    """
    for directory in (search_dir, os.getcwd()):
        for config_name in CONFIG_NAMES:
            config_path = os.path.join(directory, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        search_dir: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config: Dict[str, Any] = {}
        self.config_path = config_path

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(search_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_path = auto_path
                    logger.info("Auto-discovered configuration: %s", auto_path)
                except (OSError, ValueError, yaml.YAMLError) as e:
                    logger.warning("Found config file but failed to load: %s", e)

        # kebab-case keys from config files
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in DEFAULTS:
            return DEFAULTS[key]
        return default


# ============================================================================
# PROGRESS REPORTING & LOGGING
# ============================================================================

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False):
    """Route library logging to stderr; DEBUG when verbose"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )


class ProgressReporter:
    """
    Console reporting for the CLI
    - Color-coded output (colorama)
    - Progress bars for large logs (tqdm)
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times: Dict[str, float] = {}

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)
        print(stage_text)
        if message:
            print(f"   {message}")

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Mark completion of a processing stage"""
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        complete_text = self._colorize(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        print(complete_text)

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " rows"
    ) -> Optional[tqdm]:
        """Create a progress bar with ETA"""
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if not self.quiet:
            info_text = self._colorize("ℹ️  ", Fore.BLUE)
            print(f"{info_text}{message}")

    def warning(self, message: str):
        if not self.quiet:
            warning_text = self._colorize("⚠️  ", Fore.YELLOW + Style.BRIGHT)
            print(f"{warning_text}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        error_text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(error_text, file=sys.stderr)

    def success(self, message: str):
        if not self.quiet:
            success_text = self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT)
            print(success_text)

    def summary(self, stats: Dict[str, Any]):
        """Display final summary"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        header = self._colorize("📊 SUMMARY", Fore.MAGENTA + Style.BRIGHT)

        print(f"\n{separator}")
        print(header)
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")

        time_text = self._colorize(f"⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW)
        print(f"\n{time_text}")
        print(f"{separator}\n")


# ============================================================================
# CLI INTERFACE
# ============================================================================


def _session_options(resolver: ConfigResolver) -> Tuple[str, float]:
    """Check the resolved sort order and control position."""
    sort_order = resolver.get("sort")
    if sort_order not in SORT_ORDERS:
        raise ValueError(
            f"Unknown sort order: {sort_order!r} (expected one of {SORT_ORDERS})"
        )
    position = resolver.get("position")
    try:
        return sort_order, clamp_position(position)
    except (TypeError, ValueError):
        raise ValueError(f"position must be a number from 0 to 100, got {position!r}")


def _open_session(
    ctx: click.Context,
    log_path: str,
    position: Optional[float] = None,
    sort: Optional[str] = None,
) -> Tuple[ProgressReporter, InteractionCoordinator]:
    """Resolve configuration, load the log and apply the initial position."""
    options = dict(ctx.obj["cli"])
    options.update(position=position, sort=sort)
    search_dir = os.path.dirname(os.path.abspath(log_path))

    try:
        resolver = ConfigResolver(options, ctx.obj["config_path"], search_dir)
        sort_order, initial_position = _session_options(resolver)
    except (OSError, TypeError, ValueError, yaml.YAMLError) as e:
        ProgressReporter(use_colors=False).error(f"Invalid configuration: {e}")
        sys.exit(1)

    verbose = resolver.get("verbose")
    configure_logging(verbose)
    reporter = ProgressReporter(
        quiet=resolver.get("quiet"),
        verbose=verbose,
        use_colors=not resolver.get("no_color"),
    )
    if resolver.config_path and not ctx.obj["config_path"]:
        reporter.info(f"Using configuration from {resolver.config_path}")

    try:
        coordinator = InteractionCoordinator(
            Projection.data_space(),
            sort_order=sort_order,
            initial_position=initial_position,
            url_base=resolver.get("commit_url_base"),
        )
        reporter.stage_start("Loading", f"Reading {log_path}")
        view = coordinator.load_path(
            log_path, columns=resolver.get("columns"), reporter=reporter
        )
    except (LocExplorerError, OSError, ValueError) as e:
        reporter.error(f"Failed to load commit log: {e}")
        sys.exit(1)

    reporter.stage_complete(
        "Loading",
        {
            "Line records": f"{view.visible.total_lines:,} visible",
            "Commits": f"{len(coordinator.commits):,}",
            "Config": resolver.config_path or "defaults",
        },
    )
    if not coordinator.commits:
        reporter.warning(f"No line records found in {log_path}")
    return reporter, coordinator


def _data_space_region(values: Tuple[str, str, str, str]) -> Region:
    """--region X0 Y0 X1 Y1 with X as ISO datetimes and Y as hours"""
    x0_text, y0_text, x1_text, y1_text = values
    xs = []
    for text in (x0_text, x1_text):
        stamp = parse_datetime(text)
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        xs.append(stamp.timestamp())
    return Region(xs[0], float(y0_text), xs[1], float(y1_text))


def _print_breakdown(breakdown: Dict[str, CategoryShare]):
    if not breakdown:
        print("   (no lines)")
        return
    for language, share in breakdown.items():
        print(f"   {language}: {share.count} lines ({format_percent(share.proportion)})")


def _print_summary(title: str, summary: SubsetSummary):
    print(title)
    print(f"   TOTAL LOC: {summary.total_lines}")
    print(f"   COMMITS: {summary.commits}")
    print(f"   FILES: {summary.files}")
    print(f"   MAX DEPTH: {summary.max_depth}")
    print(f"   LONGEST LINE: {summary.max_line_length}")
    print(f"   MAX LINES: {summary.max_lines_in_file}")


position_option = click.option(
    "-p",
    "--position",
    type=float,
    help="Time-window control position, 0-100 (default: 100)",
)
region_option = click.option(
    "--region",
    nargs=4,
    type=str,
    default=None,
    metavar="X0 Y0 X1 Y1",
    help="Selection rectangle: ISO datetimes for X, hours of day for Y",
)
log_argument = click.argument("log_path", type=click.Path(exists=True, dir_okay=False))


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress and debug logging",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
@click.pass_context
def main(ctx, config, **kwargs):
    """
    LOC Explorer - explore a per-line commit log.

    LOG_PATH is a CSV with columns commit, file, line, depth, length, type,
    author and either datetime or date/time/timezone.
    """
    just_fix_windows_console()
    ctx.obj = {"config_path": config, "cli": kwargs}


@main.command()
@log_argument
@position_option
@click.pass_context
def stats(ctx, log_path, position):
    """Summary statistics for commits inside the time window."""
    _, coordinator = _open_session(ctx, log_path, position=position)
    view = coordinator.view_model()

    print(f"Commits until {view.cutoff_label or '-'} ({view.control_position:g}%)")
    _print_summary("Summary", view.visible)
    print("Languages")
    _print_breakdown(view.visible.breakdown)


@main.command()
@log_argument
@position_option
@click.option("--sort", type=click.Choice(SORT_ORDERS), help="Commit ordering")
@click.pass_context
def commits(ctx, log_path, position, sort):
    """List commits inside the time window."""
    _, coordinator = _open_session(ctx, log_path, position=position, sort=sort)
    view = coordinator.view_model()

    if not view.visible_commits:
        print("No commits in window")
        return
    for commit in view.visible_commits:
        print(
            f"{commit.short_id}  {commit.timestamp.isoformat()}  "
            f"{day_period(commit.fractional_hour):<9}  "
            f"{commit.total_lines:>6} lines  {commit.author}"
        )


@main.command()
@log_argument
@region_option
@position_option
@click.pass_context
def select(ctx, log_path, region, position):
    """Brush a rectangle over the (time, hour-of-day) view."""
    reporter, coordinator = _open_session(ctx, log_path, position=position)
    if not region:
        reporter.error("--region X0 Y0 X1 Y1 is required")
        sys.exit(2)

    try:
        view = coordinator.on_selection_change(_data_space_region(region))
    except ValueError as e:
        reporter.error(f"Invalid region: {e}")
        sys.exit(2)

    print(view.selection_count_text)
    for commit in view.selected_commits:
        print(f"   {commit.short_id}  {commit.timestamp.isoformat()}  {commit.author}")
    print("Languages")
    _print_breakdown(view.selected.breakdown)


@main.command()
@log_argument
@position_option
@click.pass_context
def files(ctx, log_path, position):
    """Per-file line counts for commits inside the time window."""
    _, coordinator = _open_session(ctx, log_path, position=position)
    view = coordinator.view_model()

    for name, count in file_unit_rows(view.visible.file_units):
        print(f"{name}  {count} lines")


@main.command()
@log_argument
@click.argument("commit_id")
@click.pass_context
def show(ctx, log_path, commit_id):
    """Tooltip details for one commit (id or unique prefix)."""
    reporter, coordinator = _open_session(ctx, log_path)
    try:
        commit = coordinator.find_commit(commit_id)
    except LocExplorerError as e:
        reporter.error(str(e))
        sys.exit(1)

    for key, value in describe_commit(commit).items():
        if value is not None:
            print(f"{key.upper()}: {value}")


@main.command()
@log_argument
@click.option(
    "-o",
    "--output",
    required=True,
    type=click.Path(dir_okay=False),
    help="Output JSON path",
)
@position_option
@region_option
@click.pass_context
def export(ctx, log_path, output, position, region):
    """Write the current view-model as JSON for a rendering surface."""
    reporter, coordinator = _open_session(ctx, log_path, position=position)

    try:
        if region:
            coordinator.on_selection_change(_data_space_region(region))
        document = coordinator.view_model().to_dict()
        validate_view_model(document)
    except ValueError as e:
        reporter.error(f"Invalid region: {e}")
        sys.exit(2)
    except jsonschema.ValidationError as e:
        reporter.error(f"View-model failed schema validation: {e.message}")
        sys.exit(1)

    directory = os.path.dirname(os.path.abspath(output))
    os.makedirs(directory, exist_ok=True)
    with open(output, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2, ensure_ascii=False)

    reporter.summary(
        {
            "Visible commits": len(document["visible_commits"]),
            "Selected commits": len(document["selected_commit_ids"]),
            "Output": output,
        }
    )
    reporter.success(f"View-model written to: {output}")


if __name__ == "__main__":
    main()
