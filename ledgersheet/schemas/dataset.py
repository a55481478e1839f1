"""
Dataset schemas - the definitions owned by the DatasetRegistry.

A Dataset names either a standard report or an ad-hoc read-query, the
Target where its table is written, optional Pagination and Schedule, and
the LastWrite snapshot taken after each successful run.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ledgersheet.a1 import normalize_anchor, parse_cell
from ledgersheet.errors import ValidationError

DAYS_OF_WEEK = (
    "MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY",
)

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_SHEET_NAME_INVALID = re.compile(r"[\[\]\*\?/\\:]")
_R1C1_PATTERN = re.compile(r"^[Rr]\d*[Cc]\d*$")
MAX_SHEET_NAME = 100
MAX_NAMED_RANGE = 250


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class DatasetType(str, Enum):
    """Kind of dataset."""
    STANDARD = "standard"
    QUERY = "query"


class Frequency(str, Enum):
    """Recurring schedule frequency."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def sanitize_sheet_name(name: str) -> str:
    """Strip characters the document surface rejects in sheet titles."""
    cleaned = _SHEET_NAME_INVALID.sub("_", name or "").strip().strip("'")
    return cleaned[:MAX_SHEET_NAME]


def sanitize_named_range(name: Optional[str]) -> Optional[str]:
    """
    Turn an alias into a legal named-range name, or None if nothing is left.

    Names may hold letters, digits and underscores, must not start with a
    digit and must not read as a cell reference.
    """
    if not name:
        return None
    cleaned = re.sub(r"[^A-Za-z0-9_]", "_", name.strip())
    if not re.search(r"[A-Za-z0-9]", cleaned):
        return None
    if cleaned[0].isdigit() or parse_cell(cleaned) or _R1C1_PATTERN.match(cleaned):
        cleaned = "_" + cleaned
    if cleaned.lower() in ("true", "false"):
        cleaned = "_" + cleaned
    return cleaned[:MAX_NAMED_RANGE]


@dataclass
class Target:
    """Where a dataset's table lands in the document."""
    sheet_id: Optional[int] = None
    sheet_name: str = ""
    anchor_cell: str = "A1"
    allow_resize: bool = True
    named_range: Optional[str] = None

    def normalized(self, default_sheet_name: str = "") -> "Target":
        """Return a copy with a usable sheet name, anchor and alias."""
        sheet_name = sanitize_sheet_name(self.sheet_name) or sanitize_sheet_name(default_sheet_name)
        return replace(
            self,
            sheet_name=sheet_name or "Sheet1",
            anchor_cell=normalize_anchor(self.anchor_cell),
            named_range=sanitize_named_range(self.named_range),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheet_id": self.sheet_id,
            "sheet_name": self.sheet_name,
            "anchor_cell": self.anchor_cell,
            "allow_resize": self.allow_resize,
            "named_range": self.named_range,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Target":
        data = data or {}
        sheet_id = data.get("sheet_id")
        return cls(
            sheet_id=int(sheet_id) if sheet_id is not None else None,
            sheet_name=data.get("sheet_name") or "",
            anchor_cell=data.get("anchor_cell") or "A1",
            allow_resize=bool(data.get("allow_resize", True)),
            named_range=data.get("named_range"),
        )


@dataclass
class Pagination:
    """
    Paging controls for query datasets.

    Attributes:
        start_position: 1-based offset of the first row to fetch
        max_results: Page size requested from the service (1..1000)
        fetch_all: Follow pages until exhausted; False fetches one page
        max_pages: Optional ceiling on pages fetched when fetch_all is set
    """
    start_position: int = 1
    max_results: int = 1000
    fetch_all: bool = True
    max_pages: Optional[int] = None

    def validate(self) -> None:
        if self.start_position < 1:
            raise ValidationError("start_position must be >= 1")
        if not 1 <= self.max_results <= 1000:
            raise ValidationError("max_results must be between 1 and 1000")
        if self.max_pages is not None and self.max_pages < 1:
            raise ValidationError("max_pages must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_position": self.start_position,
            "max_results": self.max_results,
            "fetch_all": self.fetch_all,
            "max_pages": self.max_pages,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Pagination":
        data = data or {}
        max_pages = data.get("max_pages")
        return cls(
            start_position=int(data.get("start_position", 1)),
            max_results=int(data.get("max_results", 1000)),
            fetch_all=bool(data.get("fetch_all", True)),
            max_pages=int(max_pages) if max_pages is not None else None,
        )


@dataclass
class Schedule:
    """Recurring schedule for a dataset."""
    enabled: bool = False
    freq: Frequency = Frequency.DAILY
    time_of_day: Optional[str] = None
    day_of_week: Optional[str] = None
    day_of_month: Optional[int] = None

    @property
    def hour(self) -> Optional[int]:
        if not self.time_of_day:
            return None
        match = _TIME_PATTERN.match(self.time_of_day.strip())
        return int(match.group(1)) if match else None

    def validate(self) -> None:
        """Check the schedule invariants. Raises ValidationError."""
        if self.freq != Frequency.HOURLY:
            if not self.time_of_day:
                raise ValidationError(f"time_of_day is required for {self.freq.value} schedules")
            if not _TIME_PATTERN.match(self.time_of_day.strip()):
                raise ValidationError(f"time_of_day must be HH:MM, got '{self.time_of_day}'")
        if self.freq == Frequency.WEEKLY:
            if (self.day_of_week or "").upper() not in DAYS_OF_WEEK:
                raise ValidationError(f"day_of_week must be one of {', '.join(DAYS_OF_WEEK)}")
        if self.freq == Frequency.MONTHLY:
            if self.day_of_month is None or not 1 <= self.day_of_month <= 31:
                raise ValidationError("day_of_month must be between 1 and 31")

    def describe(self) -> str:
        if self.freq == Frequency.HOURLY:
            return "hourly"
        if self.freq == Frequency.DAILY:
            return f"daily at {self.time_of_day}"
        if self.freq == Frequency.WEEKLY:
            return f"weekly on {(self.day_of_week or '').upper()} at {self.time_of_day}"
        return f"monthly on day {self.day_of_month} at {self.time_of_day}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "freq": self.freq.value,
            "time_of_day": self.time_of_day,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Schedule":
        data = data or {}
        try:
            freq = Frequency(str(data.get("freq", "daily")).lower())
        except ValueError:
            raise ValidationError(f"Unknown schedule frequency: {data.get('freq')}")
        day_of_month = data.get("day_of_month")
        day_of_week = data.get("day_of_week")
        return cls(
            enabled=bool(data.get("enabled", False)),
            freq=freq,
            time_of_day=data.get("time_of_day"),
            day_of_week=day_of_week.upper() if day_of_week else None,
            day_of_month=int(day_of_month) if day_of_month is not None else None,
        )


@dataclass
class LastWrite:
    """Snapshot of the most recent successful write."""
    rows: int
    cols: int
    wrote_at: datetime
    sheet_id: int
    range_a1: str
    schema_hash: str
    named_range: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": self.rows,
            "cols": self.cols,
            "wrote_at": self.wrote_at.isoformat(),
            "sheet_id": self.sheet_id,
            "range_a1": self.range_a1,
            "schema_hash": self.schema_hash,
            "named_range": self.named_range,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["LastWrite"]:
        if not data:
            return None
        return cls(
            rows=int(data["rows"]),
            cols=int(data["cols"]),
            wrote_at=datetime.fromisoformat(data["wrote_at"]),
            sheet_id=int(data["sheet_id"]),
            range_a1=data["range_a1"],
            schema_hash=data.get("schema_hash", ""),
            named_range=data.get("named_range"),
        )


@dataclass
class Dataset:
    """
    A named, runnable dataset definition.

    Attributes:
        id: Stable unique identifier (ds_<hex>)
        type: standard report or ad-hoc query
        name: Human-readable name
        params: {"report_name", "filters"} for standard, {"query"} for query
        target: Output location in the document
        pagination: Paging controls (query datasets)
        schedule: Optional recurring schedule
        last_write: Snapshot of the last successful write
        version: Bumped on every registry mutation
    """
    id: str
    type: DatasetType
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    target: Target = field(default_factory=Target)
    pagination: Pagination = field(default_factory=Pagination)
    schedule: Schedule = field(default_factory=Schedule)
    last_write: Optional[LastWrite] = None
    version: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def report_name(self) -> str:
        return str(self.params.get("report_name") or "")

    @property
    def query(self) -> str:
        return str(self.params.get("query") or "")

    @property
    def default_sheet_name(self) -> str:
        return f"QBO_{self.name}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage."""
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "params": self.params,
            "target": self.target.to_dict(),
            "pagination": self.pagination.to_dict(),
            "schedule": self.schedule.to_dict(),
            "last_write": self.last_write.to_dict() if self.last_write else None,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Dataset":
        """Deserialize from dictionary, validating the record shape."""
        try:
            dataset_type = DatasetType(data.get("type"))
        except ValueError:
            raise ValidationError(f"Unknown dataset type: {data.get('type')}")
        if not data.get("id"):
            raise ValidationError("Dataset record is missing 'id'")
        return cls(
            id=data["id"],
            type=dataset_type,
            name=data.get("name", ""),
            params=dict(data.get("params") or {}),
            target=Target.from_dict(data.get("target")),
            pagination=Pagination.from_dict(data.get("pagination")),
            schedule=Schedule.from_dict(data.get("schedule")),
            last_write=LastWrite.from_dict(data.get("last_write")),
            version=int(data.get("version", 1)),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utcnow(),
        )
