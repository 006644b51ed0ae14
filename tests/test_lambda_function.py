"""Integration tests for Lambda handler."""
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest
import requests

from lambda_function import lambda_handler, setup_logging
from processor.models import ErrorRecord, ErrorType, SourceTable, SyncResult

SOURCE_URL = 'https://docs.google.com/spreadsheets/d/primaire/export?format=csv'


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'SOURCES': json.dumps({'Primaire': SOURCE_URL}),
        'HOLIDAYS_URL': 'https://example.com/holidays.csv',
        'TRACKING_TABLE': 'test-tracking',
        'ERROR_TABLE': 'test-errors',
        'CALENDAR_ID': 'school@example.com',
        'GOOGLE_ACCESS_TOKEN': 'token',
        'LOG_LEVEL': 'INFO',
        'DEBOUNCE_SECONDS': '60',
        'SYNC_TARGET_ARN': 'arn:aws:lambda:us-east-1:123456789012:function:calendar',
        'SCHEDULER_ROLE_ARN': 'arn:aws:iam::123456789012:role/scheduler',
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def source_table():
    """Source table with two valid rows and one data error."""
    return SourceTable(
        department='Primaire',
        source_id='Primaire',
        rows=[
            ['Début', 'Fin', 'Service', 'Évènement', 'Sur place', 'Calendrier'],
            ['2025-09-15 18:00', '', 'Direction', 'Réunion parents', 'oui', 'oui'],
            ['2025-10-01', '', 'Vie scolaire', 'Photo de classe', 'non', ''],
            ['TBD', '', 'Musique', 'Spring Concert', '', ''],
        ]
    )


@pytest.fixture
def mock_reader(source_table):
    with patch('lambda_function.SourceReader') as reader_class:
        reader = reader_class.return_value
        reader.read_sources.return_value = ([source_table], {})
        reader.fetch_table.return_value = [
            ['Nom', 'Début', 'Fin'],
            ['Fête nationale', '2025-10-01', ''],
        ]
        yield reader


@pytest.fixture
def mock_error_log():
    with patch('lambda_function.ErrorLog') as error_log_class:
        yield error_log_class.return_value


class TestRender:
    """Test cases for the render action."""

    def test_render_pages(self, mock_env, mock_context, mock_reader, mock_error_log):
        event = {
            'action': 'render',
            'filters': {
                'academic_year': '2025-2026',
                'time_range': 'all',
                'on_external_calendar': 'any',
            }
        }

        response = lambda_handler(event, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['statistics']['events_total'] == 2
        assert body['statistics']['events_shown'] == 2
        assert body['statistics']['data_errors'] == 1
        assert body['academic_years'] == ['2025-2026']
        assert body['departments'] == ['Primaire']
        assert [(p['year'], p['month']) for p in body['pages']] == [(2025, 9), (2025, 10)]

        october = body['pages'][1]['rows']
        assert october[0][0] == 'Octobre 2025'
        assert october[2][2].startswith('1\nFête nationale\n?')

        mock_error_log.clear_by_type.assert_called_once_with(ErrorType.DATA)
        logged = mock_error_log.log_errors.call_args[0][0]
        assert [e.row_ref for e in logged] == ['Primaire!4']

    def test_render_month_filter(self, mock_env, mock_context, mock_reader, mock_error_log):
        event = {'filters': {'academic_year': '2025-2026', 'time_range': 'Septembre'}}

        response = lambda_handler(event, mock_context)

        body = json.loads(response['body'])
        assert body['statistics']['events_shown'] == 1
        assert [(p['year'], p['month']) for p in body['pages']] == [(2025, 9)]

    def test_render_without_unreachable_holidays(self, mock_env, mock_context, mock_reader, mock_error_log):
        mock_reader.fetch_table.side_effect = requests.ConnectionError('503 Service Unavailable')

        response = lambda_handler({'filters': {'time_range': 'all'}}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['statistics']['data_errors'] == 2
        assert body['pages']
        logged = mock_error_log.log_errors.call_args[0][0]
        holiday_error = [e for e in logged if e.department == 'holidays_url'][0]
        assert holiday_error.error_type is ErrorType.DATA
        assert '503' in holiday_error.details

    def test_render_reports_unreachable_source(self, mock_env, mock_context, mock_reader, mock_error_log, source_table):
        mock_reader.read_sources.return_value = ([source_table], {'Secondaire': '503 Server Error'})

        response = lambda_handler({'action': 'render'}, mock_context)

        assert response['statusCode'] == 200
        logged = mock_error_log.log_errors.call_args[0][0]
        assert logged[0].department == 'Secondaire'
        assert logged[0].description == 'Failed to read event source'

    def test_render_without_sources(self, mock_context, mock_reader, mock_error_log):
        with patch.dict(os.environ, {'SOURCES': '{}'}):
            response = lambda_handler({'action': 'render'}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to read sources'
        assert body['error_type'] == 'ValueError'

    def test_sources_reread_on_each_invocation(self, mock_env, mock_context, mock_reader, mock_error_log):
        lambda_handler({'action': 'render'}, mock_context)
        lambda_handler({'action': 'render'}, mock_context)

        assert mock_reader.read_sources.call_count == 2


class TestSync:
    """Test cases for the sync action."""

    @patch('lambda_function.TrackingStore')
    @patch('lambda_function.GoogleCalendarClient')
    @patch('lambda_function.ReconciliationEngine')
    def test_sync_success(
        self,
        mock_engine_class,
        mock_calendar_class,
        mock_tracking_class,
        mock_env,
        mock_context,
        mock_reader,
        mock_error_log
    ):
        sync_error = ErrorRecord(ErrorType.SYNC, 'Primaire', 'Primaire!2', 'Failed to create')
        mock_engine_class.return_value.reconcile.return_value = SyncResult(
            added=1, deleted=2, unchanged=3, errors=[sync_error]
        )

        response = lambda_handler({'action': 'sync', 'trigger': 'debounce'}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['trigger'] == 'debounce'
        assert body['statistics']['events_created'] == 1
        assert body['statistics']['events_deleted'] == 2
        assert body['statistics']['events_unchanged'] == 3
        assert body['statistics']['sync_errors'] == 1

        events = mock_engine_class.return_value.reconcile.call_args[0][0]
        assert [e.title for e in events] == ['Réunion parents', 'Photo de classe']
        mock_calendar_class.assert_called_once_with('school@example.com', 'token', timeout=30)
        mock_tracking_class.assert_called_once_with('test-tracking')
        assert mock_error_log.clear_by_type.call_args_list[-1][0][0] is ErrorType.SYNC
        mock_error_log.log_errors.assert_called_with([sync_error])

    @patch('lambda_function.TrackingStore')
    @patch('lambda_function.GoogleCalendarClient')
    @patch('lambda_function.ReconciliationEngine')
    def test_sync_failure(
        self,
        mock_engine_class,
        mock_calendar_class,
        mock_tracking_class,
        mock_env,
        mock_context,
        mock_reader,
        mock_error_log
    ):
        mock_engine_class.return_value.reconcile.side_effect = Exception('DynamoDB error')

        response = lambda_handler({'action': 'sync'}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to sync events with calendar'
        assert 'DynamoDB error' in body['error']
        assert 'duration_seconds' in body

    @patch('lambda_function.TrackingStore')
    @patch('lambda_function.GoogleCalendarClient')
    @patch('lambda_function.ReconciliationEngine')
    def test_sync_keeps_events_of_unreachable_source(
        self,
        mock_engine_class,
        mock_calendar_class,
        mock_tracking_class,
        mock_env,
        mock_context,
        mock_reader,
        mock_error_log,
        source_table
    ):
        mock_reader.read_sources.return_value = ([source_table], {'Secondaire': '503 Server Error'})
        mock_engine_class.return_value.reconcile.return_value = SyncResult(
            added=0, deleted=0, unchanged=2, errors=[]
        )

        response = lambda_handler({'action': 'sync'}, mock_context)

        assert json.loads(response['body'])['statistics']['sources_unavailable'] == 1
        call = mock_engine_class.return_value.reconcile.call_args
        assert list(call.kwargs['unavailable_departments']) == ['Secondaire']
        data_errors = mock_error_log.log_errors.call_args_list[0][0][0]
        assert [e.department for e in data_errors if e.row_ref == ''] == ['Secondaire']

    @patch('lambda_function.TrackingStore')
    @patch('lambda_function.GoogleCalendarClient')
    @patch('lambda_function.ReconciliationEngine')
    def test_sync_relogs_special_day_errors(
        self,
        mock_engine_class,
        mock_calendar_class,
        mock_tracking_class,
        mock_env,
        mock_context,
        mock_reader,
        mock_error_log
    ):
        mock_reader.fetch_table.return_value = [
            ['Nom', 'Début', 'Fin'],
            ['Toussaint', 'bientôt', ''],
        ]
        mock_engine_class.return_value.reconcile.return_value = SyncResult(
            added=0, deleted=0, unchanged=0, errors=[]
        )

        lambda_handler({'action': 'sync'}, mock_context)

        mock_error_log.clear_by_type.assert_any_call(ErrorType.DATA)
        data_errors = mock_error_log.log_errors.call_args_list[0][0][0]
        assert 'holidays_url!2' in [e.row_ref for e in data_errors]

    @patch('lambda_function.TrackingStore')
    @patch('lambda_function.GoogleCalendarClient')
    @patch('lambda_function.ReconciliationEngine')
    def test_purge(
        self,
        mock_engine_class,
        mock_calendar_class,
        mock_tracking_class,
        mock_env,
        mock_context,
        mock_error_log
    ):
        mock_engine_class.return_value.purge.return_value = SyncResult(
            added=0, deleted=4, unchanged=0, errors=[]
        )

        response = lambda_handler({'action': 'purge'}, mock_context)

        assert json.loads(response['body'])['statistics']['events_deleted'] == 4


class TestOtherActions:
    """Test cases for edit, reset and housekeeping actions."""

    @patch('lambda_function.EventBridgeBackend')
    def test_edit_schedules_debounced_sync(self, mock_backend_class, mock_env, mock_context):
        backend = mock_backend_class.return_value
        backend.cancel.return_value = True

        response = lambda_handler({'action': 'edit'}, mock_context)

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['quiet_seconds'] == 60
        backend.cancel.assert_called_once()
        backend.schedule.assert_called_once_with(60)
        assert mock_backend_class.call_args.kwargs['target_arn'] == mock_env['SYNC_TARGET_ARN']

    def test_reset_filters(self, mock_env, mock_context):
        response = lambda_handler({'action': 'reset_filters'}, mock_context)

        filters = json.loads(response['body'])['filters']
        assert filters['time_range'] == 'currentAndUpcoming'
        assert filters['department'] == 'all'
        assert filters['on_external_calendar'] == 'yes'
        assert filters['on_site'] == 'any'

    def test_clear_errors(self, mock_env, mock_context, mock_error_log):
        mock_error_log.clear_by_type.return_value = 3

        response = lambda_handler({'action': 'clear_errors', 'error_type': 'SYNC'}, mock_context)

        assert json.loads(response['body'])['removed'] == 3
        mock_error_log.clear_by_type.assert_called_once_with(ErrorType.SYNC)

    def test_unknown_action(self, mock_env, mock_context, mock_error_log):
        response = lambda_handler({'action': 'explode'}, mock_context)

        assert response['statusCode'] == 400

    def test_logging_output(self, mock_env, mock_context, mock_reader, mock_error_log, caplog):
        with patch('lambda_function.setup_logging'):
            with caplog.at_level(logging.INFO, logger='lambda_function'):
                response = lambda_handler({'action': 'render'}, mock_context)

        assert response['statusCode'] == 200
        log_messages = [record.message for record in caplog.records]
        assert any('Lambda execution started' in msg for msg in log_messages)
        assert any('Reading event sources' in msg for msg in log_messages)
        assert any('Lambda execution completed' in msg for msg in log_messages)


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        """Test logging setup with DEBUG level."""
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_unknown_level(self):
        """Test unknown level falls back to INFO."""
        setup_logging('CHATTY')
        assert logging.getLogger().level == logging.INFO
