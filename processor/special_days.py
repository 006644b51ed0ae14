"""Special-day overlays: public holidays, school breaks and staff absences."""
import logging
from datetime import date
from typing import Iterable, List, Optional, Sequence, Tuple

from processor.event_processor import normalize_header, parse_datetime_cell
from processor.models import ErrorRecord, ErrorType, OverlayType, SpecialDay

logger = logging.getLogger(__name__)

BREAK_LABEL = 'Vacances'

LABEL_WORDS = {
    'nom', 'label', 'libelle', 'ferie', 'feries', 'vacances',
    'absence', 'personne', 'description', 'name', 'holiday'
}


def _sniff(header_row: Sequence) -> Optional[Tuple[int, int, Optional[int]]]:
    headers = [normalize_header(cell) for cell in header_row]
    label = start = end = None
    for index, header in enumerate(headers):
        words = set(header.split())
        if start is None and ('debut' in words or 'start' in words or header == 'date'):
            start = index
        elif end is None and ('fin' in words or 'end' in words):
            end = index
        elif label is None and words & LABEL_WORDS:
            label = index
    if label is None or start is None:
        return None
    return label, start, end


def parse_special_days(
    rows: List[list],
    overlay_type: OverlayType,
    source_id: str = ''
) -> Tuple[List[SpecialDay], List[ErrorRecord]]:
    """
    Parse a special-day table (header row first).

    Args:
        rows: Raw table rows
        overlay_type: Overlay kind carried by every row of the table
        source_id: Source identifier used in error references

    Returns:
        Tuple of (special days, data errors)
    """
    if not rows:
        return [], []

    columns = _sniff(rows[0])
    if columns is None:
        logger.warning(f"Special-day table '{source_id}' has no label/date columns")
        return [], []
    label_index, start_index, end_index = columns

    days = []
    errors = []
    for row_number, row in enumerate(rows[1:], start=2):
        cells = list(row) + [None] * max(0, len(rows[0]) - len(row))
        label = str(cells[label_index] or '').strip()
        raw_start = cells[start_index]
        raw_end = cells[end_index] if end_index is not None else None

        if not label and (raw_start is None or not str(raw_start).strip()):
            continue

        start = parse_datetime_cell(raw_start)
        if start is None:
            errors.append(ErrorRecord(
                error_type=ErrorType.DATA,
                department=overlay_type.name,
                row_ref=f"{source_id}!{row_number}",
                description=f"Invalid date for '{label}'",
                details=f"date={raw_start!r}"
            ))
            continue

        end = parse_datetime_cell(raw_end)
        date_start = start[0].date()
        date_end = end[0].date() if end else date_start
        if date_end < date_start:
            errors.append(ErrorRecord(
                error_type=ErrorType.DATA,
                department=overlay_type.name,
                row_ref=f"{source_id}!{row_number}",
                description=f"End precedes start for '{label}'",
                details=f"start={date_start} end={date_end}"
            ))
            continue

        days.append(SpecialDay(
            type=overlay_type,
            label=label,
            date_start=date_start,
            date_end=date_end
        ))

    logger.info(f"Loaded {len(days)} {overlay_type.name.lower()} entries")
    return days, errors


class SpecialDayProvider:
    """Lookup of the overlays covering a given date."""

    def __init__(self, special_days: Iterable[SpecialDay] = ()):
        self.special_days = list(special_days)

    def overlays_for(self, day: date) -> List[SpecialDay]:
        """Overlays covering the day, highest priority first."""
        covering = [s for s in self.special_days if s.covers(day)]
        return sorted(covering, key=lambda s: s.type, reverse=True)

    def dominant(self, day: date) -> OverlayType:
        """
        Select the overlay that drives a day's background.

        Priority: staff absence > public holiday > school break > weekend.
        """
        overlays = self.overlays_for(day)
        if overlays:
            return overlays[0].type
        if day.weekday() >= 5:
            return OverlayType.WEEKEND
        return OverlayType.NONE

    def label_for(self, day: date) -> Optional[str]:
        """
        Text label for the day, independent of the dominant overlay.

        A public holiday shows its name; otherwise a school break shows
        the generic break label.
        """
        overlays = self.overlays_for(day)
        for overlay in overlays:
            if overlay.type is OverlayType.PUBLIC_HOLIDAY:
                return overlay.label
        for overlay in overlays:
            if overlay.type is OverlayType.SCHOOL_BREAK:
                return BREAK_LABEL
        return None
