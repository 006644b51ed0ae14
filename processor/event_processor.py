"""Event processor for sniffing source schemas and normalizing rows."""
import hashlib
import logging
import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from processor.models import (
    ColumnMapping,
    ErrorRecord,
    ErrorType,
    Event,
    Flag,
    ProcessingResult,
    SourceRowRef,
    SourceTable,
)

logger = logging.getLogger(__name__)

# Day zero of spreadsheet serial dates
SERIAL_EPOCH = datetime(1899, 12, 30)
MAX_SERIAL = 2958465

DATETIME_FORMATS = [
    '%Y-%m-%d',
    '%Y-%m-%d %H:%M',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%dT%H:%M',
    '%Y-%m-%dT%H:%M:%S',
    '%d/%m/%Y',
    '%d/%m/%Y %H:%M',
    '%d/%m/%Y %H:%M:%S',
    '%d/%m/%y',
    '%d-%m-%Y',
]

YES_VALUES = {'oui', 'yes', 'true', 'vrai', 'x', '1', '✓', '✔'}
NO_VALUES = {'non', 'no', 'false', 'faux', '0'}


def normalize_header(text) -> str:
    """
    Normalize a header cell for accent- and case-insensitive matching.

    Args:
        text: Raw header cell

    Returns:
        Lowercase, accent-free text with punctuation folded to spaces
    """
    decomposed = unicodedata.normalize('NFKD', str(text or ''))
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    folded = re.sub(r'[^a-z0-9]+', ' ', stripped.lower())
    return folded.strip()


def _find_column(headers: List[str], predicate) -> Optional[int]:
    for index, header in enumerate(headers):
        if header and predicate(header, header.split()):
            return index
    return None


def sniff_columns(header_row: Sequence) -> Optional[ColumnMapping]:
    """
    Detect whether a header row describes an event source.

    A source qualifies when it has a start column (or the legacy single
    date column), a service column and an event title column.

    Args:
        header_row: Cells of the first row of a source table

    Returns:
        ColumnMapping with the detected positions, or None
    """
    headers = [normalize_header(cell) for cell in header_row]

    start = _find_column(
        headers, lambda h, words: 'debut' in words or 'start' in words
    )
    is_legacy = False
    if start is None:
        start = _find_column(headers, lambda h, words: h == 'date')
        is_legacy = start is not None

    service = _find_column(headers, lambda h, words: 'service' in words)
    title = _find_column(
        headers,
        lambda h, words: any(
            w.startswith('evenement') or w in ('event', 'events', 'titre', 'title')
            for w in words
        )
    )

    if start is None or service is None or title is None:
        return None

    end = None
    if not is_legacy:
        end = _find_column(
            headers, lambda h, words: 'fin' in words or 'end' in words
        )

    on_site = _find_column(
        headers,
        lambda h, words: (
            'sur place' in h or 'sur site' in h or 'on site' in h
            or 'presentiel' in words or 'onsite' in words
        )
    )
    on_calendar = _find_column(
        headers,
        lambda h, words: (
            'calendrier' in words or 'agenda' in words or 'calendar' in words
        )
    )

    return ColumnMapping(
        start=start,
        service=service,
        title=title,
        is_legacy=is_legacy,
        end=end,
        on_site=on_site,
        on_calendar=on_calendar
    )


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _has_sub_day_component(value: datetime) -> bool:
    return bool(value.hour or value.minute or value.second)


def _from_serial(serial: float) -> Optional[datetime]:
    if not 0 < serial < MAX_SERIAL:
        return None
    whole_days = int(serial)
    seconds = round((serial - whole_days) * 86400)
    return SERIAL_EPOCH + timedelta(days=whole_days, seconds=seconds)


def parse_datetime_cell(value) -> Optional[Tuple[datetime, bool]]:
    """
    Parse a date or date-time cell.

    Accepts datetime/date objects, spreadsheet serial numbers and the
    textual formats listed in DATETIME_FORMATS.

    Args:
        value: Raw cell value

    Returns:
        Tuple of (datetime, has_time) or None if parsing fails. has_time is
        True when the value carries a non-zero time of day.
    """
    if _is_blank(value):
        return None

    if isinstance(value, datetime):
        return value, _has_sub_day_component(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day), False

    parsed = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_serial(float(value))
    else:
        text = str(value).strip()
        if re.fullmatch(r'\d+(\.\d+)?', text):
            parsed = _from_serial(float(text))
        else:
            for fmt in DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue

    if parsed is None:
        return None
    return parsed, _has_sub_day_component(parsed)


def parse_flag(value) -> Flag:
    """
    Parse a tri-state yes/no cell.

    Args:
        value: Raw cell value ("oui", "non", blank...)

    Returns:
        Flag.YES, Flag.NO or Flag.BLANK
    """
    if isinstance(value, bool):
        return Flag.YES if value else Flag.NO
    if _is_blank(value):
        return Flag.BLANK

    text = normalize_header(value) or str(value).strip()
    if text in YES_VALUES:
        return Flag.YES
    if text in NO_VALUES:
        return Flag.NO

    logger.warning(f"Unrecognised flag value {value!r}, treating as blank")
    return Flag.BLANK


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ''


def generate_content_hash(event: Event) -> str:
    """
    Generate the sync identity of an event from its content.

    Only department, start, end, on-site flag, service and title take part;
    the source row position never does.

    Args:
        event: Normalized event

    Returns:
        SHA256 hex digest
    """
    composite = '|'.join([
        event.department,
        _iso(event.start),
        _iso(event.end),
        '1' if event.on_site else '0',
        event.service,
        event.title,
    ])
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


class EventProcessor:
    """Processor turning raw source rows into normalized events."""

    def process_tables(self, tables: Iterable[SourceTable]) -> ProcessingResult:
        """
        Normalize every qualifying source table.

        Args:
            tables: Source tables in discovery order

        Returns:
            ProcessingResult with events sorted by start and the row errors
        """
        events = []
        errors = []

        for table in tables:
            result = self.process_table(table)
            events.extend(result.events)
            errors.extend(result.errors)

        # list.sort is stable: equal starts keep discovery order
        events.sort(key=lambda event: event.start)

        logger.info(
            f"Normalized {len(events)} events with {len(errors)} data errors"
        )
        return ProcessingResult(events=events, errors=errors)

    def process_table(self, table: SourceTable) -> ProcessingResult:
        """
        Normalize the rows of one source table.

        Args:
            table: Source table, header row first

        Returns:
            ProcessingResult for this table (empty if it is not an event source)
        """
        if not table.rows:
            return ProcessingResult(events=[], errors=[])

        mapping = sniff_columns(table.rows[0])
        if mapping is None:
            logger.info(
                f"Source '{table.department}' has no event columns, skipping"
            )
            return ProcessingResult(events=[], errors=[])

        events = []
        errors = []
        for row_number, row in enumerate(table.rows[1:], start=2):
            ref = SourceRowRef(table.source_id, row_number)
            event, row_errors = self._process_row(table.department, ref, row, mapping)
            errors.extend(row_errors)
            if event:
                events.append(event)

        events.sort(key=lambda event: event.start)
        return ProcessingResult(events=events, errors=errors)

    def _process_row(
        self,
        department: str,
        ref: SourceRowRef,
        row: Sequence,
        mapping: ColumnMapping
    ) -> Tuple[Optional[Event], List[ErrorRecord]]:
        """
        Process a single row.

        Returns:
            Tuple of (Event or None, errors reported for the row)
        """
        def cell(index):
            if index is None or index >= len(row):
                return None
            return row[index]

        raw_start = cell(mapping.start)
        raw_title = cell(mapping.title)
        title = '' if _is_blank(raw_title) else str(raw_title).strip()

        # Blank padding rows
        if _is_blank(raw_start) and not title:
            return None, []

        if not title:
            return None, [self._data_error(
                department, ref, 'Missing event title',
                f"date={raw_start!r}"
            )]

        start_parsed = parse_datetime_cell(raw_start)
        if start_parsed is None:
            description = 'Missing date' if _is_blank(raw_start) else 'Invalid date'
            return None, [self._data_error(
                department, ref, f"{description} for event '{title}'",
                f"date={raw_start!r}"
            )]
        start, start_has_time = start_parsed

        errors = []
        end = None
        end_has_time = False
        raw_end = cell(mapping.end)
        if not _is_blank(raw_end):
            end_parsed = parse_datetime_cell(raw_end)
            if end_parsed is None:
                errors.append(self._data_error(
                    department, ref, f"Invalid end date for event '{title}'",
                    f"end={raw_end!r}"
                ))
            else:
                end, end_has_time = end_parsed

        if end is not None:
            precedes = end < start if end_has_time else end.date() < start.date()
            if precedes:
                errors.append(self._data_error(
                    department, ref, f"End precedes start for event '{title}'",
                    f"start={start.isoformat()} end={end.isoformat()}"
                ))
                return None, errors

        raw_service = cell(mapping.service)
        service = '' if _is_blank(raw_service) else str(raw_service).strip()

        event = Event(
            department=department,
            start=start,
            end=end,
            has_time=start_has_time or end_has_time,
            service=service,
            title=title,
            on_site=parse_flag(cell(mapping.on_site)).is_true,
            on_external_calendar_raw=parse_flag(cell(mapping.on_calendar)),
            source_row_ref=ref
        )
        return event, errors

    def _data_error(
        self,
        department: str,
        ref: SourceRowRef,
        description: str,
        details: str
    ) -> ErrorRecord:
        logger.warning(f"{department} row {ref.row_number}: {description}")
        return ErrorRecord(
            error_type=ErrorType.DATA,
            department=department,
            row_ref=str(ref),
            description=description,
            details=details
        )
