"""DynamoDB persistence for sync tracking entries and the error log."""
import logging
import time
import uuid
from typing import Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import ErrorRecord, ErrorType, SyncTrackingEntry

logger = logging.getLogger(__name__)

BATCH_SIZE = 25  # DynamoDB batch operation limit


def _scan_all(table, **kwargs) -> List[dict]:
    """Scan a table, following pagination."""
    response = table.scan(**kwargs)
    items = response.get('Items', [])

    while 'LastEvaluatedKey' in response:
        response = table.scan(
            ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
        )
        items.extend(response.get('Items', []))

    return items


class TrackingStore:
    """Table of content hash -> external event id, rewritten on every sync."""

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the tracking table (hash key: content_hash)
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized TrackingStore for table: {table_name}")

    def get_all_entries(self) -> Dict[str, SyncTrackingEntry]:
        """
        Retrieve every tracking entry.

        Returns:
            Dictionary mapping content hash to SyncTrackingEntry
        """
        try:
            items = _scan_all(self.table)
        except ClientError as e:
            logger.error(f"Error scanning tracking table: {e}")
            raise

        entries = {}
        for item in items:
            entry = self._item_to_entry(item)
            if entry:
                entries[entry.content_hash] = entry

        logger.info(f"Retrieved {len(entries)} tracking entries")
        return entries

    def replace_all(self, entries: Iterable[SyncTrackingEntry]) -> None:
        """
        Rewrite the tracking table so it holds exactly `entries`.

        Args:
            entries: Complete new tracking set
        """
        entries = list(entries)
        keep = {entry.content_hash for entry in entries}
        stale = [h for h in self.get_all_entries() if h not in keep]

        try:
            with self.table.batch_writer() as writer:
                for content_hash in stale:
                    writer.delete_item(Key={'content_hash': content_hash})
                for entry in entries:
                    writer.put_item(Item=self._entry_to_item(entry))
        except ClientError as e:
            logger.error(f"Error rewriting tracking table: {e}")
            raise

        logger.info(
            f"Tracking table rewritten: {len(entries)} entries, {len(stale)} removed"
        )

    def _item_to_entry(self, item: dict) -> Optional[SyncTrackingEntry]:
        try:
            return SyncTrackingEntry(
                content_hash=item['content_hash'],
                external_event_id=item['external_event_id'],
                department=item.get('department', ''),
                event_date=item.get('event_date', ''),
                last_synced_at=item.get('last_synced_at', '')
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to SyncTrackingEntry: {e}")
            return None

    def _entry_to_item(self, entry: SyncTrackingEntry) -> dict:
        return {
            'content_hash': entry.content_hash,
            'external_event_id': entry.external_event_id,
            'department': entry.department,
            'event_date': entry.event_date,
            'last_synced_at': entry.last_synced_at,
        }


class ErrorLog:
    """
    Append-only error log table (hash key: error_id).

    Writing to the log never raises; when DynamoDB is unavailable the
    record goes to the application logger instead.
    """

    def __init__(self, table_name: str):
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)

    def log_error(self, record: ErrorRecord) -> bool:
        """
        Append one record.

        Returns:
            True if the record reached the table
        """
        try:
            self.table.put_item(Item=self._record_to_item(record))
            return True
        except (ClientError, BotoCoreError) as e:
            self._fallback(record, e)
            return False

    def log_errors(self, records: Iterable[ErrorRecord]) -> int:
        """
        Append several records in batches.

        Returns:
            Count of records written to the table
        """
        records = list(records)
        written = 0
        for i in range(0, len(records), BATCH_SIZE):
            batch = records[i:i + BATCH_SIZE]
            try:
                with self.table.batch_writer() as writer:
                    for record in batch:
                        writer.put_item(Item=self._record_to_item(record))
                written += len(batch)
            except (ClientError, BotoCoreError) as e:
                for record in batch:
                    self._fallback(record, e)
        return written

    def list_errors(self, error_type: Optional[ErrorType] = None) -> List[ErrorRecord]:
        """
        Read the log in chronological order.

        Args:
            error_type: Only return records of this type

        Returns:
            List of ErrorRecord objects, oldest first
        """
        kwargs = {}
        if error_type is not None:
            kwargs['FilterExpression'] = Attr('error_type').eq(ErrorType(error_type).value)

        items = _scan_all(self.table, **kwargs)
        items.sort(key=lambda item: (item.get('timestamp', ''), int(item.get('sequence', 0))))
        return [self._item_to_record(item) for item in items]

    def clear_by_type(self, error_type: ErrorType) -> int:
        """
        Remove every record of one type; other records are left untouched.

        Returns:
            Count of removed records
        """
        error_type = ErrorType(error_type)
        try:
            items = _scan_all(
                self.table,
                FilterExpression=Attr('error_type').eq(error_type.value)
            )
            with self.table.batch_writer() as writer:
                for item in items:
                    writer.delete_item(Key={'error_id': item['error_id']})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to clear {error_type.value} errors: {e}")
            return 0

        logger.info(f"Cleared {len(items)} {error_type.value} errors")
        return len(items)

    def _record_to_item(self, record: ErrorRecord) -> dict:
        return {
            'error_id': uuid.uuid4().hex,
            'sequence': time.time_ns(),
            'timestamp': record.timestamp,
            'error_type': ErrorType(record.error_type).value,
            'department': record.department,
            'row_ref': record.row_ref,
            'description': record.description,
            'details': record.details,
        }

    def _item_to_record(self, item: dict) -> ErrorRecord:
        return ErrorRecord(
            error_type=ErrorType(item['error_type']),
            department=item.get('department', ''),
            row_ref=item.get('row_ref', ''),
            description=item.get('description', ''),
            details=item.get('details', ''),
            timestamp=item.get('timestamp', '')
        )

    def _fallback(self, record: ErrorRecord, cause: Exception) -> None:
        logger.error(
            f"Error log unavailable ({cause}); "
            f"{ErrorType(record.error_type).value} {record.department} "
            f"{record.row_ref}: {record.description} {record.details}"
        )
