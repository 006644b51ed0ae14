"""AWS Lambda handler for the school events calendar."""
import json
import logging
import os
import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Tuple
from zoneinfo import ZoneInfo

import requests

from processor.context import LookupCache
from processor.event_processor import EventProcessor
from processor.filters import FilterEngine, FilterSpec, academic_years_for
from processor.grid_builder import (
    GridBuilder,
    department_glyphs,
    render_backgrounds,
    render_month,
)
from processor.models import ErrorRecord, ErrorType, OverlayType, ProcessingResult, SpecialDay
from processor.special_days import SpecialDayProvider, parse_special_days
from reconcile.debounce import DebounceScheduler, EventBridgeBackend
from reconcile.reconciliation_engine import ReconciliationEngine
from sources.source_reader import SourceReader
from storage.dynamodb_manager import ErrorLog, TrackingStore
from storage.google_calendar import GoogleCalendarClient

logger = logging.getLogger(__name__)

SPECIAL_DAY_SOURCES = [
    ('holidays_url', OverlayType.PUBLIC_HOLIDAY),
    ('breaks_url', OverlayType.SCHOOL_BREAK),
    ('absences_url', OverlayType.STAFF_ABSENCE),
]


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_config() -> Dict[str, Any]:
    """Read configuration from environment variables."""
    return {
        'sources': json.loads(os.environ.get('SOURCES', '{}')),
        'holidays_url': os.environ.get('HOLIDAYS_URL', ''),
        'breaks_url': os.environ.get('BREAKS_URL', ''),
        'absences_url': os.environ.get('ABSENCES_URL', ''),
        'tracking_table': os.environ.get('TRACKING_TABLE', 'calendar-sync-tracking'),
        'error_table': os.environ.get('ERROR_TABLE', 'calendar-errors'),
        'calendar_id': os.environ.get('CALENDAR_ID', 'primary'),
        'google_access_token': os.environ.get('GOOGLE_ACCESS_TOKEN', ''),
        'time_zone': os.environ.get('TIME_ZONE', 'Asia/Hong_Kong'),
        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        'timeout_seconds': int(os.environ.get('TIMEOUT_SECONDS', '30')),
        'debounce_seconds': int(os.environ.get('DEBOUNCE_SECONDS', '120')),
        'sync_target_arn': os.environ.get('SYNC_TARGET_ARN', ''),
        'scheduler_role_arn': os.environ.get('SCHEDULER_ROLE_ARN', ''),
        'schedule_name': os.environ.get('SCHEDULE_NAME', 'calendar-sync-debounce'),
        'max_events_per_day': int(os.environ.get('MAX_EVENTS_PER_DAY', '4')),
    }


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body, ensure_ascii=False)}


def _error_response(message: str, error: Exception, start_time: float, **extra) -> Dict[str, Any]:
    return _response(500, {
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(time.time() - start_time, 2),
        **extra
    })


def _source_errors(failed: Dict[str, str], description: str) -> List[ErrorRecord]:
    return [
        ErrorRecord(
            error_type=ErrorType.DATA,
            department=name,
            row_ref='',
            description=description,
            details=error
        )
        for name, error in failed.items()
    ]


def load_events(
    config: Dict[str, Any],
    cache: LookupCache,
    reader: SourceReader,
    processor: EventProcessor
) -> Tuple[ProcessingResult, List[str], Dict[str, str]]:
    """
    Read and normalize the event sources.

    Returns:
        Tuple of (processing result, department list, failed departments
        mapped to the fetch error)

    Raises:
        ValueError: If no source is configured
    """
    if not config['sources']:
        raise ValueError('No event sources configured')

    tables, failed = cache.get('source_tables', lambda: reader.read_sources(config['sources']))
    result = cache.get('events', lambda: processor.process_tables(tables))
    departments = cache.get('departments', lambda: [table.department for table in tables])
    return result, departments, failed


def load_special_days(
    config: Dict[str, Any],
    cache: LookupCache,
    reader: SourceReader
) -> Tuple[List[SpecialDay], List[ErrorRecord]]:
    """
    Read the holiday, break and absence tables that are configured.

    A table that cannot be fetched is reported as a DATA error and its
    overlay is left out.
    """
    def read_all():
        days = []
        errors = []
        for key, overlay_type in SPECIAL_DAY_SOURCES:
            url = config.get(key)
            if not url:
                continue
            try:
                rows = reader.fetch_table(url)
            except requests.RequestException as e:
                logger.error(f"Failed to fetch special days '{key}': {e}")
                errors.extend(_source_errors({key: str(e)}, 'Failed to read special days'))
                continue
            parsed, parse_errors = parse_special_days(rows, overlay_type, source_id=key)
            days.extend(parsed)
            errors.extend(parse_errors)
        return days, errors

    return cache.get('special_days', read_all)


def handle_render(
    event: Dict[str, Any],
    config: Dict[str, Any],
    cache: LookupCache,
    reader: SourceReader,
    processor: EventProcessor,
    error_log: ErrorLog
) -> Dict[str, Any]:
    """Refresh the calendar view for the requested filters."""
    cache.clear()
    start_time = time.time()

    now = datetime.now(ZoneInfo(config['time_zone'])).replace(tzinfo=None)
    spec = FilterSpec.from_params(event.get('filters'), now)

    try:
        logger.info("Reading event sources")
        result, departments, failed = load_events(config, cache, reader, processor)
        special_days, special_errors = load_special_days(config, cache, reader)
    except Exception as e:
        logger.error(f"Failed to read sources: {e}", exc_info=True)
        return _error_response('Failed to read sources', e, start_time)

    data_errors = (
        _source_errors(failed, 'Failed to read event source')
        + result.errors
        + special_errors
    )
    error_log.clear_by_type(ErrorType.DATA)
    error_log.log_errors(data_errors)

    logger.info("Filtering events and building grid")
    engine = FilterEngine(now)
    filtered = engine.apply(result.events, spec)
    builder = GridBuilder(
        SpecialDayProvider(special_days),
        today=now.date(),
        max_events_per_day=config['max_events_per_day']
    )
    grids = builder.build(filtered, engine.pinned_month(spec))
    glyphs = department_glyphs(departments)

    return _response(200, {
        'message': 'Calendar rendered',
        'filters': asdict(spec),
        'academic_years': academic_years_for(result.events),
        'departments': departments,
        'statistics': {
            'events_total': len(result.events),
            'events_shown': len(filtered),
            'months': len(grids),
            'data_errors': len(data_errors),
            'duration_seconds': round(time.time() - start_time, 2)
        },
        'pages': [
            {
                'year': grid.year,
                'month': grid.month,
                'rows': render_month(grid, glyphs),
                'backgrounds': render_backgrounds(grid),
            }
            for grid in grids
        ]
    })


def handle_sync(
    event: Dict[str, Any],
    config: Dict[str, Any],
    cache: LookupCache,
    reader: SourceReader,
    processor: EventProcessor,
    error_log: ErrorLog
) -> Dict[str, Any]:
    """Reconcile the on-site events with the external calendar."""
    cache.clear()
    start_time = time.time()

    try:
        logger.info("Reading event sources")
        result, _, failed = load_events(config, cache, reader, processor)
        _, special_errors = load_special_days(config, cache, reader)
    except Exception as e:
        logger.error(f"Failed to read sources: {e}", exc_info=True)
        return _error_response('Failed to read sources', e, start_time)

    # DATA errors are replaced wholesale, so the special-day ones are re-logged too
    error_log.clear_by_type(ErrorType.DATA)
    error_log.log_errors(
        _source_errors(failed, 'Failed to read event source')
        + result.errors
        + special_errors
    )
    error_log.clear_by_type(ErrorType.SYNC)

    try:
        logger.info("Synchronizing events with calendar")
        engine = ReconciliationEngine(
            GoogleCalendarClient(
                config['calendar_id'],
                config['google_access_token'],
                timeout=config['timeout_seconds']
            ),
            TrackingStore(config['tracking_table']),
            time_zone=config['time_zone']
        )
        sync_result = engine.reconcile(result.events, unavailable_departments=failed)
    except Exception as e:
        logger.error(f"Error during calendar sync: {e}", exc_info=True)
        return _error_response(
            'Failed to sync events with calendar', e, start_time,
            note='Untracked events will be retried on the next run'
        )

    error_log.log_errors(sync_result.errors)

    return _response(200, {
        'message': 'Sync completed successfully',
        'trigger': event.get('trigger', 'direct'),
        'statistics': {
            'events_total': len(result.events),
            'events_created': sync_result.added,
            'events_deleted': sync_result.deleted,
            'events_unchanged': sync_result.unchanged,
            'sources_unavailable': len(failed),
            'sync_errors': len(sync_result.errors),
            'duration_seconds': round(time.time() - start_time, 2)
        }
    })


def handle_edit(config: Dict[str, Any]) -> Dict[str, Any]:
    """Replace any pending sync with one after the quiet period."""
    backend = EventBridgeBackend(
        schedule_name=config['schedule_name'],
        target_arn=config['sync_target_arn'],
        role_arn=config['scheduler_role_arn']
    )
    DebounceScheduler(backend, config['debounce_seconds']).notify_edit()
    return _response(200, {
        'message': 'Sync scheduled',
        'quiet_seconds': config['debounce_seconds']
    })


def handle_purge(config: Dict[str, Any], error_log: ErrorLog) -> Dict[str, Any]:
    """Delete every synced calendar event."""
    engine = ReconciliationEngine(
        GoogleCalendarClient(
            config['calendar_id'],
            config['google_access_token'],
            timeout=config['timeout_seconds']
        ),
        TrackingStore(config['tracking_table']),
        time_zone=config['time_zone']
    )
    result = engine.purge()
    error_log.log_errors(result.errors)
    return _response(200, {
        'message': 'Purge completed',
        'statistics': {'events_deleted': result.deleted, 'sync_errors': len(result.errors)}
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    Args:
        event: Invocation payload; `action` is one of render, sync, edit,
            purge, reset_filters, clear_errors (default: render)
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    event = event or {}
    config = load_config()

    setup_logging(config['log_level'])
    action = event.get('action', 'render')

    start_time = time.time()
    logger.info("Lambda execution started", extra={'action': action})

    try:
        if action == 'reset_filters':
            now = datetime.now(ZoneInfo(config['time_zone'])).replace(tzinfo=None)
            return _response(200, {'filters': asdict(FilterSpec.defaults(now))})

        if action == 'edit':
            return handle_edit(config)

        # Lookups are cached for this invocation only
        cache = LookupCache()
        reader = SourceReader(timeout=config['timeout_seconds'])
        processor = EventProcessor()
        error_log = ErrorLog(config['error_table'])

        if action == 'sync':
            response = handle_sync(event, config, cache, reader, processor, error_log)
        elif action == 'purge':
            response = handle_purge(config, error_log)
        elif action == 'clear_errors':
            removed = error_log.clear_by_type(ErrorType(event.get('error_type', 'DATA')))
            response = _response(200, {'message': 'Errors cleared', 'removed': removed})
        elif action == 'render':
            response = handle_render(event, config, cache, reader, processor, error_log)
        else:
            response = _response(400, {'message': f"Unknown action: {action}"})

        logger.info(
            "Lambda execution completed",
            extra={
                'action': action,
                'status_code': response['statusCode'],
                'duration_seconds': round(time.time() - start_time, 2)
            }
        )
        return response

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(f"{action.capitalize()} failed", e, start_time)
