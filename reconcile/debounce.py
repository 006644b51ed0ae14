"""Debounced scheduling of sync runs after bursts of source edits."""
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_QUIET_SECONDS = 120


class TimerBackend:
    """In-process backend: the pending run is a threading.Timer."""

    def __init__(
        self,
        callback: Callable[[], None],
        timer_factory: Callable = threading.Timer
    ):
        self.callback = callback
        self.timer_factory = timer_factory
        self._timer = None
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """
        Cancel the pending run.

        A run that already started is not interrupted.

        Returns:
            True if a run was pending
        """
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is None:
            return False
        timer.cancel()
        return True

    def schedule(self, delay_seconds: float) -> None:
        timer = self.timer_factory(delay_seconds, lambda: self._fire(timer))
        timer.daemon = True
        with self._lock:
            self._timer = timer
        timer.start()

    def _fire(self, timer) -> None:
        # Only forget the handle if it still belongs to this timer
        with self._lock:
            if self._timer is timer:
                self._timer = None
        self.callback()


class EventBridgeBackend:
    """
    Backend for serverless deployments: the pending run is a one-time
    EventBridge Scheduler schedule invoking the sync function.
    """

    def __init__(
        self,
        schedule_name: str,
        target_arn: str,
        role_arn: str,
        payload: Optional[dict] = None,
        client=None
    ):
        self.schedule_name = schedule_name
        self.target_arn = target_arn
        self.role_arn = role_arn
        self.payload = payload or {'action': 'sync', 'trigger': 'debounce'}
        self.client = client or boto3.client('scheduler')

    def cancel(self) -> bool:
        try:
            self.client.delete_schedule(Name=self.schedule_name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ResourceNotFoundException':
                return False
            logger.error(f"Failed to delete schedule {self.schedule_name}: {e}")
            raise

    def schedule(self, delay_seconds: float) -> None:
        fire_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self.client.create_schedule(
            Name=self.schedule_name,
            ScheduleExpression=f"at({fire_at.strftime('%Y-%m-%dT%H:%M:%S')})",
            ScheduleExpressionTimezone='UTC',
            FlexibleTimeWindow={'Mode': 'OFF'},
            Target={
                'Arn': self.target_arn,
                'RoleArn': self.role_arn,
                'Input': json.dumps(self.payload),
            }
        )


class DebounceScheduler:
    """
    Coalesces edits: each edit replaces the pending run with a new one
    `quiet_seconds` later, so only the last edit of a burst triggers a sync.
    """

    def __init__(self, backend, quiet_seconds: float = DEFAULT_QUIET_SECONDS):
        self.backend = backend
        self.quiet_seconds = quiet_seconds

    def notify_edit(self) -> None:
        replaced = self.backend.cancel()
        self.backend.schedule(self.quiet_seconds)
        logger.info(
            f"Sync scheduled in {self.quiet_seconds}s"
            + (" (replaced pending run)" if replaced else "")
        )
