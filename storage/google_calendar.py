"""Google Calendar v3 REST client used as the external calendar store."""
import logging
import time
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

import requests

from processor.models import Event

logger = logging.getLogger(__name__)

API_BASE = 'https://www.googleapis.com/calendar/v3'
DEFAULT_DURATION = timedelta(hours=1)


class CalendarApiError(requests.HTTPError):
    """Non-success response from the calendar API."""


def build_event_body(
    event: Event,
    time_zone: str,
    content_hash: Optional[str] = None
) -> dict:
    """
    Build the API representation of an event.

    Timed events use start/end date-times, with DEFAULT_DURATION when there
    is no usable end. All-day events use dates with an exclusive end, so the
    last day is incremented by one.

    Args:
        event: Normalized event
        time_zone: IANA time zone of the naive source timestamps
        content_hash: Sync identity, stored as a private extended property

    Returns:
        Event resource dictionary
    """
    description = '\n'.join(part for part in (event.service, event.department) if part)
    body = {
        'summary': event.title,
        'description': description,
    }

    if event.has_time:
        end = event.end
        if end is None or end <= event.start:
            end = event.start + DEFAULT_DURATION
        body['start'] = {'dateTime': event.start.isoformat(), 'timeZone': time_zone}
        body['end'] = {'dateTime': end.isoformat(), 'timeZone': time_zone}
    else:
        last_day = (event.end or event.start).date()
        body['start'] = {'date': event.start.date().isoformat()}
        body['end'] = {'date': (last_day + timedelta(days=1)).isoformat()}

    if content_hash:
        body['extendedProperties'] = {'private': {'contentHash': content_hash}}

    return body


class GoogleCalendarClient:
    """Create/update/delete events of one calendar."""

    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds
    RETRY_STATUSES = {429, 500, 502, 503, 504}
    MISSING_STATUSES = {404, 410}

    def __init__(self, calendar_id: str, access_token: str, timeout: int = 30):
        """
        Initialize the client.

        Args:
            calendar_id: Target calendar identifier
            access_token: OAuth2 bearer token with calendar scope
            timeout: HTTP request timeout in seconds
        """
        self.calendar_id = calendar_id
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({'Authorization': f"Bearer {access_token}"})

    def create_event(self, body: dict) -> str:
        """
        Create an event.

        Returns:
            Identifier of the created event
        """
        response = self._request('POST', self._events_url(), json=body)
        event_id = response.json()['id']
        logger.info(f"Created calendar event {event_id}")
        return event_id

    def update_event(self, event_id: str, body: dict) -> dict:
        """Replace an existing event; returns the updated resource."""
        response = self._request('PUT', self._events_url(event_id), json=body)
        return response.json()

    def delete_event(self, event_id: str) -> bool:
        """
        Delete an event.

        Returns:
            True if deleted, False if it was already gone
        """
        response = self._request('DELETE', self._events_url(event_id), allow_missing=True)
        if response.status_code in self.MISSING_STATUSES:
            logger.info(f"Calendar event {event_id} already gone")
            return False
        logger.info(f"Deleted calendar event {event_id}")
        return True

    def _events_url(self, event_id: Optional[str] = None) -> str:
        url = f"{API_BASE}/calendars/{quote(self.calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    def _request(
        self,
        method: str,
        url: str,
        allow_missing: bool = False,
        **kwargs
    ) -> requests.Response:
        """
        Send a request, retrying transport errors and throttling responses.

        Raises:
            CalendarApiError: On a non-success response after retries
            requests.RequestException: If the transport fails on every attempt
        """
        for attempt in range(self.MAX_RETRIES):
            last_attempt = attempt == self.MAX_RETRIES - 1
            delay = self.BASE_DELAY * (2 ** attempt)

            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                if last_attempt:
                    logger.error(f"{method} {url} failed after {self.MAX_RETRIES} attempts: {e}")
                    raise
                logger.warning(f"{method} {url} failed: {e}. Retrying in {delay} seconds...")
                time.sleep(delay)
                continue

            if allow_missing and response.status_code in self.MISSING_STATUSES:
                return response
            if response.status_code in self.RETRY_STATUSES and not last_attempt:
                logger.warning(
                    f"{method} {url} returned {response.status_code}. "
                    f"Retrying in {delay} seconds..."
                )
                time.sleep(delay)
                continue
            if not response.ok:
                raise CalendarApiError(
                    f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                    response=response
                )
            return response
