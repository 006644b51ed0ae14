"""Shared fixtures."""
from datetime import datetime

import pytest

from processor.models import Event, Flag, SourceRowRef


@pytest.fixture
def make_event():
    """Factory for normalized events with sensible defaults."""
    def _make(
        title='Réunion parents',
        start=datetime(2025, 9, 15),
        end=None,
        has_time=False,
        department='Primaire',
        service='Direction',
        on_site=True,
        on_calendar=Flag.YES,
        row=2
    ):
        return Event(
            department=department,
            start=start,
            end=end,
            has_time=has_time,
            service=service,
            title=title,
            on_site=on_site,
            on_external_calendar_raw=on_calendar,
            source_row_ref=SourceRowRef(department, row)
        )
    return _make
