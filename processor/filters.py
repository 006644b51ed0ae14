"""Academic-year windowing and secondary filters over normalized events."""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from processor.event_processor import normalize_header
from processor.models import Event

logger = logging.getLogger(__name__)

TIME_RANGE_ALL = 'all'
TIME_RANGE_CURRENT = 'currentAndUpcoming'
DEPARTMENT_ALL = 'all'

ANY = 'any'
YES = 'yes'
NO = 'no'

# Academic years start on August 1st
ACADEMIC_START_MONTH = 8

MONTH_NAMES = {
    'janvier': 1, 'january': 1,
    'fevrier': 2, 'february': 2,
    'mars': 3, 'march': 3,
    'avril': 4, 'april': 4,
    'mai': 5, 'may': 5,
    'juin': 6, 'june': 6,
    'juillet': 7, 'july': 7,
    'aout': 8, 'august': 8,
    'septembre': 9, 'september': 9,
    'octobre': 10, 'october': 10,
    'novembre': 11, 'november': 11,
    'decembre': 12, 'december': 12,
}

TRI_STATE_TOKENS = {
    'any': ANY, 'tous': ANY, 'all': ANY, '': ANY,
    'yes': YES, 'oui': YES,
    'no': NO, 'non': NO,
}


def current_academic_year(now: datetime) -> str:
    """Token of the academic year containing `now`, e.g. '2025-2026'."""
    first = now.year if now.month >= ACADEMIC_START_MONTH else now.year - 1
    return f"{first}-{first + 1}"


def academic_year_window(token: str, now: datetime) -> Tuple[datetime, datetime]:
    """
    Map a 'YYYY-YYYY' token to its August 1st - July 31st window.

    Malformed tokens fall back to the academic year containing `now`.

    Args:
        token: Academic year token
        now: Current time

    Returns:
        Tuple of (window start, window end), both inclusive
    """
    match = re.fullmatch(r'\s*(\d{4})\s*-\s*(\d{4})\s*', token or '')
    if match and int(match.group(2)) == int(match.group(1)) + 1:
        first = int(match.group(1))
    else:
        if token:
            logger.warning(f"Malformed academic year {token!r}, using current year")
        first = int(current_academic_year(now)[:4])

    return (
        datetime(first, ACADEMIC_START_MONTH, 1),
        datetime(first + 1, ACADEMIC_START_MONTH - 1, 31, 23, 59, 59)
    )


def academic_years_for(events: Iterable[Event]) -> List[str]:
    """Sorted academic year tokens covered by the events."""
    return sorted({current_academic_year(event.start) for event in events})


def month_from_name(name: str) -> Optional[int]:
    """Month number of a French or English month name."""
    return MONTH_NAMES.get(normalize_header(name))


@dataclass
class FilterSpec:
    """Filter controls of one render."""
    academic_year: str
    time_range: str = TIME_RANGE_CURRENT
    department: str = DEPARTMENT_ALL
    on_external_calendar: str = YES
    on_site: str = ANY
    free_text: str = ''

    @classmethod
    def defaults(cls, now: datetime) -> 'FilterSpec':
        """Reset values of the filter controls."""
        return cls(academic_year=current_academic_year(now))

    @classmethod
    def from_params(cls, params: Optional[Dict], now: datetime) -> 'FilterSpec':
        """
        Build a FilterSpec from plain control values.

        Missing or unrecognised values take their reset default.
        """
        params = params or {}
        spec = cls.defaults(now)

        if params.get('academic_year'):
            spec.academic_year = str(params['academic_year']).strip()
        if params.get('time_range'):
            spec.time_range = str(params['time_range']).strip()
        if params.get('department'):
            spec.department = str(params['department']).strip()
        spec.on_external_calendar = _tri_state(
            params.get('on_external_calendar'), spec.on_external_calendar
        )
        spec.on_site = _tri_state(params.get('on_site'), spec.on_site)
        spec.free_text = str(params.get('free_text') or '').strip()
        return spec


def _tri_state(value, default: str) -> str:
    if value is None:
        return default
    return TRI_STATE_TOKENS.get(normalize_header(value), default)


def _matches_tri_state(token: str, value: bool) -> bool:
    if token == YES:
        return value
    if token == NO:
        return not value
    return True


class FilterEngine:
    """Applies the academic-year window and secondary filters."""

    def __init__(self, now: datetime):
        self.now = now

    def window(self, spec: FilterSpec) -> Tuple[datetime, datetime]:
        return academic_year_window(spec.academic_year, self.now)

    def pinned_month(self, spec: FilterSpec) -> Optional[Tuple[int, int]]:
        """
        (year, month) selected by a month-name time range, if any.

        The year is taken from the academic year window.
        """
        month = month_from_name(spec.time_range)
        if month is None:
            return None
        start, end = self.window(spec)
        year = start.year if month >= ACADEMIC_START_MONTH else end.year
        return year, month

    def apply(self, events: Iterable[Event], spec: FilterSpec) -> List[Event]:
        """
        Filter events; every predicate must hold.

        Args:
            events: Normalized events
            spec: Filter controls

        Returns:
            Matching events, in input order
        """
        window_start, window_end = self.window(spec)
        time_predicate = self._time_range_predicate(spec)
        department = normalize_header(spec.department)
        needle = normalize_header(spec.free_text)

        result = []
        for event in events:
            if not window_start <= event.start <= window_end:
                continue
            if not time_predicate(event):
                continue
            if department != DEPARTMENT_ALL and normalize_header(event.department) != department:
                continue
            if not _matches_tri_state(spec.on_external_calendar, event.on_external_calendar):
                continue
            if not _matches_tri_state(spec.on_site, event.on_site):
                continue
            if needle and needle not in self._haystack(event):
                continue
            result.append(event)

        logger.debug(f"Filter kept {len(result)} events")
        return result

    def _time_range_predicate(self, spec: FilterSpec):
        if spec.time_range == TIME_RANGE_ALL:
            return lambda event: True

        pinned = self.pinned_month(spec)
        if pinned is not None:
            year, month = pinned
            return lambda event: (event.start.year, event.start.month) == (year, month)

        if spec.time_range != TIME_RANGE_CURRENT:
            logger.warning(
                f"Unknown time range {spec.time_range!r}, using {TIME_RANGE_CURRENT}"
            )
        month_start = datetime(self.now.year, self.now.month, 1)
        return lambda event: event.start >= month_start

    @staticmethod
    def _haystack(event: Event) -> str:
        return normalize_header(f"{event.title} {event.service} {event.department}")
