"""Data models for event normalization, calendar layout and sync."""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional


class Flag(str, Enum):
    """Tri-state value of a yes/no source column."""
    YES = 'yes'
    NO = 'no'
    BLANK = 'blank'

    @property
    def is_true(self) -> bool:
        return self is Flag.YES


class ErrorType(str, Enum):
    """Categories of the error log."""
    DATA = 'DATA'
    SYNC = 'SYNC'
    PARSE = 'PARSE'


class OverlayType(int, Enum):
    """Day overlay kinds; higher value wins when several cover one date."""
    NONE = 0
    WEEKEND = 1
    SCHOOL_BREAK = 2
    PUBLIC_HOLIDAY = 3
    STAFF_ABSENCE = 4


@dataclass(frozen=True)
class SourceRowRef:
    """Back-reference to a source row, for links and diagnostics only."""
    source_id: str
    row_number: int

    def __str__(self) -> str:
        return f"{self.source_id}!{self.row_number}"


@dataclass
class SourceTable:
    """Raw rows of one source table, header row first."""
    department: str
    source_id: str
    rows: List[list]


@dataclass(frozen=True)
class ColumnMapping:
    """Column positions detected in a source header row."""
    start: int
    service: int
    title: int
    is_legacy: bool = False
    end: Optional[int] = None
    on_site: Optional[int] = None
    on_calendar: Optional[int] = None


@dataclass(frozen=True)
class Event:
    """Normalized event, rebuilt from the sources on every refresh."""
    department: str
    start: datetime
    end: Optional[datetime]
    has_time: bool
    service: str
    title: str
    on_site: bool
    on_external_calendar_raw: Flag
    source_row_ref: SourceRowRef

    @property
    def on_external_calendar(self) -> bool:
        return self.on_external_calendar_raw.is_true


@dataclass
class ErrorRecord:
    """Entry of the error log."""
    error_type: ErrorType
    department: str
    row_ref: str
    description: str
    details: str = ''
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


@dataclass
class ProcessingResult:
    """Events produced from the sources plus the row errors met on the way."""
    events: List[Event]
    errors: List[ErrorRecord]


@dataclass(frozen=True)
class SpecialDay:
    """Date-range overlay: public holiday, school break or staff absence."""
    type: OverlayType
    label: str
    date_start: date
    date_end: date

    def covers(self, day: date) -> bool:
        return self.date_start <= day <= self.date_end


@dataclass
class DayCell:
    """One day of a month grid."""
    day: int
    date: date
    events: List[Event]
    display_events: List[Event]
    overflow: int
    is_today: bool
    is_weekend: bool
    overlays: List[SpecialDay]
    dominant: OverlayType
    label: Optional[str]


@dataclass
class MonthGrid:
    """Monday-first weeks of one month; None marks a padding cell."""
    year: int
    month: int
    weeks: List[List[Optional[DayCell]]]


@dataclass
class SyncTrackingEntry:
    """Link between a content hash and the external event created for it."""
    content_hash: str
    external_event_id: str
    department: str
    event_date: str
    last_synced_at: str


@dataclass
class SyncResult:
    """Result of a reconciliation run."""
    added: int
    deleted: int
    unchanged: int
    errors: List[ErrorRecord]
