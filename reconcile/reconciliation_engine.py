"""Content-hash reconciliation of on-site events with the external calendar."""
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Tuple

from processor.event_processor import generate_content_hash
from processor.models import ErrorRecord, ErrorType, Event, SyncResult, SyncTrackingEntry
from storage.dynamodb_manager import TrackingStore
from storage.google_calendar import GoogleCalendarClient, build_event_body

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Mirrors the syncable events into the external calendar.

    Identity is the content hash: a hash present in both the tracking table
    and the current events is left alone, a new hash is created and a hash
    that disappeared is deleted. An edited event therefore becomes a delete
    of its old hash plus a create of its new one.
    """

    DELETE_BATCH_SIZE = 10
    BATCH_PAUSE_SECONDS = 1.0

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        tracking: TrackingStore,
        time_zone: str = 'Asia/Hong_Kong'
    ):
        self.calendar = calendar
        self.tracking = tracking
        self.time_zone = time_zone

    def reconcile(
        self,
        events: Iterable[Event],
        unavailable_departments: Iterable[str] = ()
    ) -> SyncResult:
        """
        Run one reconciliation pass.

        Args:
            events: Normalized events; only on-site ones are synced
            unavailable_departments: Departments whose source could not be
                read this run; their tracked events are kept as they are

        Returns:
            SyncResult with created/deleted/unchanged counts and SYNC errors
        """
        syncable = self.syncable_by_hash(events)
        existing = self.tracking.get_all_entries()
        unavailable = set(unavailable_departments)

        seen = [existing[h] for h in syncable if h in existing]
        new = [(h, event) for h, event in syncable.items() if h not in existing]
        held = []
        stale = []
        for h, entry in existing.items():
            if h in syncable:
                continue
            if entry.department in unavailable:
                held.append(entry)
            else:
                stale.append(entry)

        if held:
            logger.warning(
                f"Keeping {len(held)} tracked events of unreadable sources: "
                f"{sorted(unavailable)}"
            )
        logger.info(
            f"Sync plan: {len(new)} to create, {len(stale)} to delete, "
            f"{len(seen) + len(held)} unchanged"
        )

        errors = []
        created = self._create_events(new, errors)
        kept, deleted = self._delete_entries(stale, errors)

        self.tracking.replace_all(seen + held + created + kept)

        logger.info(
            f"Sync complete: {len(created)} created, {deleted} deleted, "
            f"{len(errors)} errors"
        )
        return SyncResult(
            added=len(created),
            deleted=deleted,
            unchanged=len(seen) + len(held),
            errors=errors
        )

    def purge(self) -> SyncResult:
        """
        Delete every tracked external event and empty the tracking table.

        Entries whose deletion fails stay tracked.
        """
        entries = list(self.tracking.get_all_entries().values())
        logger.info(f"Purging {len(entries)} synced calendar events")

        errors = []
        kept, deleted = self._delete_entries(entries, errors)
        self.tracking.replace_all(kept)
        return SyncResult(added=0, deleted=deleted, unchanged=0, errors=errors)

    @staticmethod
    def syncable_by_hash(events: Iterable[Event]) -> Dict[str, Event]:
        """On-site events keyed by content hash; identical rows collapse to one."""
        syncable = {}
        for event in events:
            if event.on_site:
                syncable.setdefault(generate_content_hash(event), event)
        return syncable

    def _create_events(
        self,
        new: List[Tuple[str, Event]],
        errors: List[ErrorRecord]
    ) -> List[SyncTrackingEntry]:
        created = []
        for content_hash, event in new:
            try:
                body = build_event_body(event, self.time_zone, content_hash)
                external_id = self.calendar.create_event(body)
            except Exception as e:
                logger.warning(f"Failed to create calendar event '{event.title}': {e}")
                errors.append(ErrorRecord(
                    error_type=ErrorType.SYNC,
                    department=event.department,
                    row_ref=str(event.source_row_ref),
                    description=f"Failed to create calendar event '{event.title}'",
                    details=str(e)
                ))
                continue

            created.append(SyncTrackingEntry(
                content_hash=content_hash,
                external_event_id=external_id,
                department=event.department,
                event_date=event.start.date().isoformat(),
                last_synced_at=datetime.now(timezone.utc).isoformat()
            ))
        return created

    def _delete_entries(
        self,
        entries: List[SyncTrackingEntry],
        errors: List[ErrorRecord]
    ) -> Tuple[List[SyncTrackingEntry], int]:
        """
        Delete the external events of `entries` in throttled batches.

        Returns:
            Tuple of (entries whose deletion failed, count of removed entries)
        """
        kept = []
        deleted = 0
        for i in range(0, len(entries), self.DELETE_BATCH_SIZE):
            if i:
                time.sleep(self.BATCH_PAUSE_SECONDS)

            for entry in entries[i:i + self.DELETE_BATCH_SIZE]:
                try:
                    self.calendar.delete_event(entry.external_event_id)
                except Exception as e:
                    logger.warning(
                        f"Failed to delete calendar event {entry.external_event_id}: {e}"
                    )
                    errors.append(ErrorRecord(
                        error_type=ErrorType.SYNC,
                        department=entry.department,
                        row_ref='',
                        description=f"Failed to delete calendar event of {entry.event_date}",
                        details=f"{entry.external_event_id}: {e}"
                    ))
                    kept.append(entry)
                    continue
                deleted += 1

        return kept, deleted
