"""Month grid layout of filtered events with day overlays."""
import calendar
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from processor.models import DayCell, Event, Flag, MonthGrid, OverlayType
from processor.special_days import SpecialDayProvider

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_DAY = 4
MAX_WEEKS_PER_MONTH = 6
# Longest span an event is spread over in the grid
MAX_SPAN_DAYS = 366

MONTH_TITLES = [
    'Janvier', 'Février', 'Mars', 'Avril', 'Mai', 'Juin',
    'Juillet', 'Août', 'Septembre', 'Octobre', 'Novembre', 'Décembre'
]
WEEKDAY_NAMES = ['Lun', 'Mar', 'Mer', 'Jeu', 'Ven', 'Sam', 'Dim']

CALENDAR_GLYPHS = {
    Flag.YES: '📅',
    Flag.BLANK: '?',
    Flag.NO: '🚫',
}
DEPARTMENT_PALETTE = [
    '🔴', '🟠', '🟡', '🟢', '🔵', '🟣', '🟤', '⚫',
    '🟥', '🟧', '🟨', '🟩', '🟦', '🟪', '🟫', '⬛',
]
DEFAULT_DEPARTMENT_GLYPH = '•'

OVERLAY_BACKGROUNDS = {
    OverlayType.STAFF_ABSENCE: '#f4cccc',
    OverlayType.PUBLIC_HOLIDAY: '#fce5cd',
    OverlayType.SCHOOL_BREAK: '#d9ead3',
    OverlayType.WEEKEND: '#eeeeee',
    OverlayType.NONE: None,
}
TODAY_BACKGROUND = '#fff2cc'


def academic_month_key(year: int, month: int) -> Tuple[int, int]:
    """Sort key placing August first within an academic year."""
    first_year = year if month >= 8 else year - 1
    return first_year, (month - 8) % 12


def department_glyphs(departments: Iterable[str]) -> Dict[str, str]:
    """Assign a palette glyph to each department, in the given order."""
    glyphs = {}
    for department in departments:
        if department not in glyphs:
            glyphs[department] = DEPARTMENT_PALETTE[len(glyphs) % len(DEPARTMENT_PALETTE)]
    return glyphs


def event_prefix(event: Event, glyphs: Dict[str, str]) -> str:
    """Calendar status glyph followed by the department glyph."""
    return (
        CALENDAR_GLYPHS[event.on_external_calendar_raw]
        + glyphs.get(event.department, DEFAULT_DEPARTMENT_GLYPH)
    )


def event_line(event: Event, glyphs: Dict[str, str]) -> str:
    line = event_prefix(event, glyphs)
    if event.has_time:
        line += ' ' + event.start.strftime('%H:%M')
    return f"{line} {event.title}"


def cell_text(cell: Optional[DayCell], glyphs: Dict[str, str]) -> str:
    """Multi-line text block of a day cell ('' for padding)."""
    if cell is None:
        return ''
    lines = [str(cell.day)]
    if cell.label:
        lines.append(cell.label)
    lines.extend(event_line(event, glyphs) for event in cell.display_events)
    if cell.overflow:
        lines.append(f"+{cell.overflow} autre{'s' if cell.overflow > 1 else ''}")
    return '\n'.join(lines)


def render_month(grid: MonthGrid, glyphs: Dict[str, str]) -> List[List[str]]:
    """
    Render a month as a 7-column block.

    Returns:
        Rows: month header, weekday header, then one row per week
    """
    rows = [
        [f"{MONTH_TITLES[grid.month - 1]} {grid.year}"] + [''] * 6,
        list(WEEKDAY_NAMES),
    ]
    for week in grid.weeks:
        rows.append([cell_text(cell, glyphs) for cell in week])
    return rows


def render_backgrounds(grid: MonthGrid) -> List[List[Optional[str]]]:
    """Background colour of every week cell, aligned with render_month rows[2:]."""
    rows = []
    for week in grid.weeks:
        row = []
        for cell in week:
            if cell is None:
                row.append(None)
            elif cell.is_today:
                row.append(TODAY_BACKGROUND)
            else:
                row.append(OVERLAY_BACKGROUNDS[cell.dominant])
        rows.append(row)
    return rows


class GridBuilder:
    """Builds month grids from filtered events."""

    def __init__(
        self,
        provider: SpecialDayProvider,
        today: date,
        max_events_per_day: int = MAX_EVENTS_PER_DAY
    ):
        self.provider = provider
        self.today = today
        self.max_events_per_day = max_events_per_day
        self._calendar = calendar.Calendar(firstweekday=calendar.MONDAY)

    def build(
        self,
        events: List[Event],
        pinned_month: Optional[Tuple[int, int]] = None
    ) -> List[MonthGrid]:
        """
        Build the grids to render.

        Args:
            events: Filtered events in normalizer order
            pinned_month: (year, month) when the filter selects one month

        Returns:
            One MonthGrid per rendered month, in academic order
        """
        by_day = self._group_by_day(events)
        grids = [
            self.build_month(year, month, by_day)
            for year, month in self.months_to_render(events, pinned_month)
        ]
        logger.info(f"Built {len(grids)} month grids from {len(events)} events")
        return grids

    def months_to_render(
        self,
        events: Iterable[Event],
        pinned_month: Optional[Tuple[int, int]] = None
    ) -> List[Tuple[int, int]]:
        if pinned_month is not None:
            return [pinned_month]
        months = {(event.start.year, event.start.month) for event in events}
        return sorted(months, key=lambda ym: academic_month_key(*ym))

    def build_month(
        self,
        year: int,
        month: int,
        events_by_day: Dict[date, List[Event]]
    ) -> MonthGrid:
        weeks = []
        for week in self._calendar.monthdayscalendar(year, month)[:MAX_WEEKS_PER_MONTH]:
            weeks.append([
                self._build_cell(date(year, month, day), events_by_day) if day else None
                for day in week
            ])
        return MonthGrid(year=year, month=month, weeks=weeks)

    def _build_cell(
        self,
        day: date,
        events_by_day: Dict[date, List[Event]]
    ) -> DayCell:
        # Overlays are looked up by the cell's own date, never shared between cells
        events = list(events_by_day.get(day, []))
        return DayCell(
            day=day.day,
            date=day,
            events=events,
            display_events=events[:self.max_events_per_day],
            overflow=max(0, len(events) - self.max_events_per_day),
            is_today=day == self.today,
            is_weekend=day.weekday() >= 5,
            overlays=self.provider.overlays_for(day),
            dominant=self.provider.dominant(day),
            label=self.provider.label_for(day)
        )

    @staticmethod
    def _group_by_day(events: Iterable[Event]) -> Dict[date, List[Event]]:
        by_day = defaultdict(list)
        for event in events:
            first = event.start.date()
            last = event.end.date() if event.end else first
            span = min((last - first).days, MAX_SPAN_DAYS)
            for offset in range(span + 1):
                by_day[first + timedelta(days=offset)].append(event)
        return by_day
