"""
=============================================================================
DYNAMODB SERVICE - Reading store backed by Amazon DynamoDB
=============================================================================

Implements the ReadingStore contract from token_meter_core.store so the API
can keep readings and recalculation batches in DynamoDB instead of memory.

Our Table Schema:
-----------------
Table: TokenReadings
- user_id (String)    - Partition Key - all readings of one household
- reading_id (String) - Sort Key      - uuid of the reading
- date (String)       - ISO timestamp of the meter reading
- kwh_value (Number)  - remaining balance on the meter
- token_cost / token_amount (Number, top-ups only)
- notes, photo_ref, created_at, updated_at

Table: RecalculationBatches
- user_id (String)  - Partition Key
- batch_id (String) - Sort Key
- created_at (String), rolled_back (Boolean)
- payload (String)  - the full batch as JSON (affected rows, trigger snapshot)

Example reading item:
{
    "user_id": "household-1",
    "reading_id": "6f1c...",
    "date": "2025-11-01T07:30:00",
    "kwh_value": 84.2,
    "created_at": "2025-11-01T07:31:02+00:00"
}

Atomic offsets:
---------------
A backdate shifts many readings at once. bulk_update_kwh writes them with
TransactWriteItems together with the batch record, so either every row moves
or none does. One transaction holds at most 100 items; larger sets are split
and earlier chunks are reverted if a later one fails.
=============================================================================
"""

# boto3 - AWS SDK for Python
import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer

# ClientError - Exception class for AWS API errors
from botocore.exceptions import ClientError

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from backend.lib.token_meter_core.errors import ReadingNotFound, StorageError
from backend.lib.token_meter_core.models import Reading, RecalculationBatch, reading_from_dict
from backend.lib.token_meter_core.store import KwhUpdate, ReadingStore

logger = logging.getLogger(__name__)

# DynamoDB rejects transactions with more items than this
TRANSACTION_LIMIT = 100


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decimal(value: float) -> Decimal:
    # via str() so 0.1 stays 0.1 instead of the binary float expansion
    return Decimal(str(value))


class DynamoDBService(ReadingStore):
    """
    ReadingStore on DynamoDB.

    Usage:
        db = DynamoDBService()
        db.create_tables_if_not_exist()
        db.insert(ConsumptionReading("household-1", datetime(2025, 11, 1), 84.2))
    """

    supports_transactions = True

    def __init__(self, table_name: str = None, batch_table_name: str = None):
        self.table_name = table_name or os.getenv('DYNAMODB_TABLE_NAME', 'TokenReadings')
        self.batch_table_name = batch_table_name or os.getenv('DYNAMODB_BATCH_TABLE_NAME', 'RecalculationBatches')
        self.region = os.getenv('AWS_REGION', 'us-east-1')

        session_token = os.getenv('AWS_SESSION_TOKEN')
        credentials = dict(
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=session_token if session_token else None,
        )

        # Resource: Table objects for single-item reads and writes
        self.dynamodb = boto3.resource('dynamodb', **credentials)
        # Client: describe_table and TransactWriteItems
        self.client = boto3.client('dynamodb', **credentials)

        self.table = self.dynamodb.Table(self.table_name)
        self.batch_table = self.dynamodb.Table(self.batch_table_name)
        self._serializer = TypeSerializer()

    # ------------------------------------------------------------------
    # tables
    # ------------------------------------------------------------------

    def create_tables_if_not_exist(self) -> bool:
        """Create both tables on demand (PAY_PER_REQUEST)."""
        return (self._create_table(self.table_name, 'reading_id')
                and self._create_table(self.batch_table_name, 'batch_id'))

    def _create_table(self, name: str, sort_key: str) -> bool:
        try:
            self.client.describe_table(TableName=name)
            logger.info("DynamoDB table '%s' exists", name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceNotFoundException':
                logger.error("Error checking table %s: %s", name, e)
                return False

        try:
            table = self.dynamodb.create_table(
                TableName=name,
                KeySchema=[
                    {'AttributeName': 'user_id', 'KeyType': 'HASH'},
                    {'AttributeName': sort_key, 'KeyType': 'RANGE'},
                ],
                AttributeDefinitions=[
                    {'AttributeName': 'user_id', 'AttributeType': 'S'},
                    {'AttributeName': sort_key, 'AttributeType': 'S'},
                ],
                BillingMode='PAY_PER_REQUEST',
            )
            table.wait_until_exists()
            logger.info("Created DynamoDB table '%s'", name)
            return True
        except ClientError as e:
            logger.error("Failed to create table %s: %s", name, e)
            return False

    # ------------------------------------------------------------------
    # item conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _to_item(reading: Reading) -> Dict:
        item = {
            'user_id': reading.user_id,
            'reading_id': reading.id,
            'date': reading.date.isoformat(),
            'kwh_value': _decimal(reading.kwh_value),
        }
        if reading.is_top_up:
            item['token_cost'] = _decimal(reading.token_cost)
            if reading.token_amount is not None:
                item['token_amount'] = _decimal(reading.token_amount)
        # optional text fields are left out when empty
        if reading.notes:
            item['notes'] = reading.notes
        if reading.photo_ref:
            item['photo_ref'] = reading.photo_ref
        return item

    @staticmethod
    def _from_item(item: Dict) -> Reading:
        return reading_from_dict({
            'id': item['reading_id'],
            'user_id': item['user_id'],
            'date': item['date'],
            # Decimal back to float
            'kwh_value': float(item['kwh_value']),
            'token_cost': float(item['token_cost']) if 'token_cost' in item else None,
            'token_amount': float(item['token_amount']) if 'token_amount' in item else None,
            'notes': item.get('notes'),
            'photo_ref': item.get('photo_ref'),
        })

    def _query_all(self, table, user_id: str) -> List[Dict]:
        """Query every item of a user, following LastEvaluatedKey pages."""
        kwargs = {'KeyConditionExpression': Key('user_id').eq(user_id)}
        items = []
        while True:
            response = table.query(**kwargs)
            items.extend(response.get('Items', []))
            if 'LastEvaluatedKey' not in response:
                return items
            kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']

    # ------------------------------------------------------------------
    # readings
    # ------------------------------------------------------------------

    def get_all_readings(self, user_id: str, limit: int = 1000) -> List[Reading]:
        try:
            items = self._query_all(self.table, user_id)
        except ClientError as e:
            logger.error("Failed to get readings for %s: %s", user_id, e)
            raise StorageError(f"Failed to get readings: {e}") from e
        # sort key is a uuid, so order by reading date here
        readings = sorted((self._from_item(i) for i in items), key=lambda r: r.date, reverse=True)
        return readings[:limit] if limit else readings

    def get_reading(self, user_id: str, reading_id: str) -> Optional[Reading]:
        try:
            response = self.table.get_item(Key={'user_id': user_id, 'reading_id': reading_id})
        except ClientError as e:
            raise StorageError(f"Failed to get reading {reading_id}: {e}") from e
        item = response.get('Item')
        return self._from_item(item) if item else None

    def insert(self, reading: Reading) -> Reading:
        if reading.id is None:
            reading = reading.with_id(str(uuid.uuid4()))
        item = self._to_item(reading)
        item['created_at'] = _now()
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.error("Failed to put reading: %s", e)
            raise StorageError(f"Failed to put reading: {e}") from e
        return reading

    def update(self, reading: Reading) -> Reading:
        item = self._to_item(reading)
        item['updated_at'] = _now()
        try:
            self.table.put_item(Item=item, ConditionExpression='attribute_exists(reading_id)')
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise ReadingNotFound(reading.id) from e
            logger.error("Failed to update reading %s: %s", reading.id, e)
            raise StorageError(f"Failed to update reading: {e}") from e
        return reading

    def delete(self, user_id: str, reading_id: str) -> None:
        try:
            self.table.delete_item(
                Key={'user_id': user_id, 'reading_id': reading_id},
                ConditionExpression='attribute_exists(reading_id)',
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise ReadingNotFound(reading_id) from e
            logger.error("Failed to delete reading %s: %s", reading_id, e)
            raise StorageError(f"Failed to delete reading: {e}") from e

    def update_kwh(self, user_id: str, reading_id: str, new_kwh: float) -> None:
        try:
            self.table.update_item(
                Key={'user_id': user_id, 'reading_id': reading_id},
                UpdateExpression='SET kwh_value = :k, updated_at = :t',
                ConditionExpression='attribute_exists(reading_id)',
                ExpressionAttributeValues={':k': _decimal(new_kwh), ':t': _now()},
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise ReadingNotFound(reading_id) from e
            raise StorageError(f"Failed to update reading {reading_id}: {e}") from e

    # ------------------------------------------------------------------
    # transactional offset update
    # ------------------------------------------------------------------

    def _kwh_update_op(self, user_id: str, update: KwhUpdate, stamp: str) -> Dict:
        return {
            'Update': {
                'TableName': self.table_name,
                'Key': {
                    'user_id': self._serializer.serialize(user_id),
                    'reading_id': self._serializer.serialize(update.reading_id),
                },
                'UpdateExpression': 'SET kwh_value = :k, updated_at = :t',
                'ConditionExpression': 'attribute_exists(reading_id)',
                'ExpressionAttributeValues': {
                    ':k': self._serializer.serialize(_decimal(update.new_kwh)),
                    ':t': self._serializer.serialize(stamp),
                },
            }
        }

    def _batch_put_op(self, batch: RecalculationBatch) -> Dict:
        item = self._batch_item(batch)
        return {
            'Put': {
                'TableName': self.batch_table_name,
                'Item': {k: self._serializer.serialize(v) for k, v in item.items()},
            }
        }

    def bulk_update_kwh(self, user_id: str, updates: List[KwhUpdate],
                        batch: Optional[RecalculationBatch] = None) -> None:
        """
        Shift many readings and record the batch in as few transactions as
        possible. If a later chunk fails, chunks already committed are written
        back to their previous balances before StorageError is raised.
        """
        stamp = _now()
        ops = [self._kwh_update_op(user_id, u, stamp) for u in updates]
        if batch is not None:
            # last, so the audit record only lands with the final chunk
            ops.append(self._batch_put_op(batch))
        chunks = [ops[i:i + TRANSACTION_LIMIT] for i in range(0, len(ops), TRANSACTION_LIMIT)]

        previous = {}
        if len(chunks) > 1:
            previous = {r.id: r.kwh_value for r in self.get_all_readings(user_id, limit=0)}

        committed = 0
        try:
            for chunk in chunks:
                self.client.transact_write_items(TransactItems=chunk)
                committed += len(chunk)
        except ClientError as e:
            logger.error("Transaction failed after %d of %d items: %s", committed, len(ops), e)
            if committed:
                self._revert(user_id, updates[:committed], previous)
            raise StorageError(f"Bulk kWh update failed: {e}") from e
        logger.info("Updated %d readings for %s in %d transaction(s)", len(updates), user_id, len(chunks))

    def _revert(self, user_id: str, done: List[KwhUpdate], previous: Dict[str, float]) -> None:
        for update in done:
            try:
                self.update_kwh(user_id, update.reading_id, previous[update.reading_id])
            except (StorageError, ReadingNotFound, KeyError) as e:
                logger.error("Could not revert reading %s: %s", update.reading_id, e)

    # ------------------------------------------------------------------
    # recalculation batches
    # ------------------------------------------------------------------

    @staticmethod
    def _batch_item(batch: RecalculationBatch) -> Dict:
        return {
            'user_id': batch.user_id,
            'batch_id': batch.id,
            'created_at': batch.created_at.isoformat(),
            'rolled_back': batch.rolled_back,
            'payload': json.dumps(batch.to_dict()),
        }

    def save_batch(self, batch: RecalculationBatch) -> None:
        try:
            self.batch_table.put_item(Item=self._batch_item(batch))
        except ClientError as e:
            logger.error("Failed to save batch %s: %s", batch.id, e)
            raise StorageError(f"Failed to save batch: {e}") from e

    def get_batch(self, user_id: str, batch_id: str) -> Optional[RecalculationBatch]:
        try:
            response = self.batch_table.get_item(Key={'user_id': user_id, 'batch_id': batch_id})
        except ClientError as e:
            raise StorageError(f"Failed to get batch {batch_id}: {e}") from e
        item = response.get('Item')
        return RecalculationBatch.from_dict(json.loads(item['payload'])) if item else None

    def list_batches(self, user_id: str) -> List[RecalculationBatch]:
        try:
            items = self._query_all(self.batch_table, user_id)
        except ClientError as e:
            raise StorageError(f"Failed to list batches: {e}") from e
        batches = [RecalculationBatch.from_dict(json.loads(i['payload'])) for i in items]
        return sorted(batches, key=lambda b: b.created_at, reverse=True)
