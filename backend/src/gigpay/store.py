"""
DynamoDB document store with optimistic multi-document transactions.

Reads go through the resource API; every write goes through a single
TransactWriteItems call so a unit of work lands completely or not at all.
Each written document carries a ``version`` attribute. A transaction remembers
the version of everything it read and conditions its commit on those versions,
so a concurrent writer makes the commit fail instead of being overwritten.
"""
import time
from collections import namedtuple
from typing import Any, Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .config import config
from .errors import NotFoundError, TransactionConflict
from .logging import logger

KEY_FIELD = 'id'
VERSION_FIELD = 'version'

# Cancellation reasons that mean "someone else wrote first"
CONFLICT_REASONS = ('ConditionalCheckFailed', 'TransactionConflict')


class _Sentinel:
    def __init__(self, name):
        self._name = name

    def __repr__(self):
        return self._name


# Field value meaning "remove this attribute" in Transaction.update
CLEAR = _Sentinel('CLEAR')

# Expected version of a document that was read as not existing
ABSENT = _Sentinel('ABSENT')


WriteOp = namedtuple(
    'WriteOp',
    ['kind', 'table', 'doc_id', 'item', 'set_fields', 'increments', 'removes', 'expected_version']
)


class RetryPolicy:
    """Bounded exponential backoff for transaction conflicts."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.max_attempts = max(1, max_attempts or config.TXN_MAX_ATTEMPTS)
        self.backoff_seconds = config.TXN_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.sleep = sleep

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class DocumentStore:
    """
    Contract the escrow core needs from a document database.

    Subclasses implement get/query/scan and an atomic commit of WriteOps that
    raises TransactionConflict when any expected version no longer matches.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    def get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def query(self, table: str, index_name: str, field: str, value: Any) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def scan(self, table: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def commit(self, ops: List[WriteOp]) -> None:
        raise NotImplementedError


class Transaction:
    """
    Unit of work against a DocumentStore.

    Writes are staged and only sent on commit. Several update() calls on the
    same document are merged into one operation.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._versions = {}
        self._puts = {}
        self._updates = {}
        self._order = []

    def get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        item = self._store.get(table, doc_id)
        self._remember(table, doc_id, item)
        return item

    def query(self, table: str, index_name: str, field: str, value: Any) -> List[Dict[str, Any]]:
        items = self._store.query(table, index_name, field, value)
        for item in items:
            self._remember(table, item[KEY_FIELD], item)
        return items

    def _remember(self, table, doc_id, item):
        # The first observed version is the one the commit is conditioned on
        self._versions.setdefault((table, doc_id), ABSENT if item is None else item.get(VERSION_FIELD))

    def update(
        self,
        table: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Stage an update.

        Args:
            table: Table name
            doc_id: Document id
            set_fields: Absolute values; a value of CLEAR removes the attribute
            increments: Relative numeric changes applied atomically (ADD)
        """
        key = (table, doc_id)
        if key in self._puts:
            raise ValueError(f"{table} document {doc_id} is being created in this transaction")
        if key not in self._versions:
            self.get(table, doc_id)
        if self._versions[key] is ABSENT:
            raise NotFoundError(f"{table} document {doc_id} not found")

        staged = self._updates.get(key)
        if staged is None:
            staged = {'set': {}, 'add': {}, 'remove': set()}
            self._updates[key] = staged
            self._order.append(key)

        for field, value in (set_fields or {}).items():
            if value is CLEAR:
                staged['set'].pop(field, None)
                staged['remove'].add(field)
            else:
                staged['remove'].discard(field)
                staged['set'][field] = value

        for field, amount in (increments or {}).items():
            staged['add'][field] = staged['add'].get(field, 0) + amount

        overlap = set(staged['add']) & (set(staged['set']) | staged['remove'])
        if overlap:
            raise ValueError(f"Fields {sorted(overlap)} both incremented and set on {table}/{doc_id}")

    def put(self, table: str, item: Dict[str, Any]) -> None:
        """Stage creation of a new document; the commit fails if it already exists."""
        key = (table, item[KEY_FIELD])
        if key in self._updates or self._versions.get(key, ABSENT) is not ABSENT:
            raise ValueError(f"{table} document {item[KEY_FIELD]} already exists")
        self._versions[key] = ABSENT
        self._puts[key] = dict(item)
        self._order.append(key)

    def operations(self) -> List[WriteOp]:
        """Staged writes followed by version checks for read-only documents."""
        ops = []
        for key in self._order:
            table, doc_id = key
            if key in self._puts:
                ops.append(WriteOp('put', table, doc_id, self._puts[key], None, None, None, ABSENT))
            else:
                staged = self._updates[key]
                ops.append(WriteOp(
                    'update', table, doc_id, None,
                    dict(staged['set']), dict(staged['add']), sorted(staged['remove']),
                    self._versions[key]
                ))
        if not ops:
            return []
        for key, version in self._versions.items():
            if key in self._puts or key in self._updates:
                continue
            table, doc_id = key
            ops.append(WriteOp('check', table, doc_id, None, None, None, None, version))
        return ops


def run_transaction(store: DocumentStore, fn: Callable[[Transaction], Any], retry_policy: RetryPolicy = None):
    """
    Execute fn(txn) and commit its writes atomically, retrying on conflict.

    fn is re-run from scratch on every attempt so every precondition is
    re-validated against fresh reads. Exceptions raised by fn abort the
    attempt before anything is written.

    Args:
        store: DocumentStore to read from and commit to
        fn: Callable receiving a Transaction; its return value is returned
        retry_policy: Overrides the store's policy

    Returns:
        Whatever fn returned on the committed attempt

    Raises:
        TransactionConflict: Still conflicting after the last attempt
    """
    policy = retry_policy or store.retry_policy
    attempt = 1
    while True:
        txn = Transaction(store)
        result = fn(txn)
        ops = txn.operations()
        if not ops:
            return result
        try:
            store.commit(ops)
            return result
        except TransactionConflict:
            if attempt >= policy.max_attempts:
                logger.error(f"Transaction conflict persisted after {attempt} attempts")
                raise
            delay = policy.delay(attempt)
            logger.warning(f"Transaction conflict on attempt {attempt}, retrying in {delay:.3f}s")
            policy.sleep(delay)
            attempt += 1


class _Expression:
    """Collects placeholder names and values for one DynamoDB expression."""

    def __init__(self, serializer: TypeSerializer):
        self._serializer = serializer
        self.names = {}
        self.values = {}
        self._name_for = {}

    def name(self, field: str) -> str:
        if field not in self._name_for:
            placeholder = f"#n{len(self._name_for)}"
            self._name_for[field] = placeholder
            self.names[placeholder] = field
        return self._name_for[field]

    def value(self, value: Any) -> str:
        placeholder = f":v{len(self.values)}"
        self.values[placeholder] = self._serializer.serialize(value)
        return placeholder

    def attach(self, params: dict) -> dict:
        if self.names:
            params['ExpressionAttributeNames'] = self.names
        if self.values:
            params['ExpressionAttributeValues'] = self.values
        return params


class DynamoStore(DocumentStore):
    """DocumentStore backed by DynamoDB tables keyed by ``id``."""

    def __init__(self, region_name: str = None, retry_policy: RetryPolicy = None):
        super().__init__(retry_policy)
        region = region_name or config.AWS_REGION
        self._dynamodb = boto3.resource('dynamodb', region_name=region)
        self._client = boto3.client('dynamodb', region_name=region)
        self._serializer = TypeSerializer()

    def get(self, table, doc_id):
        response = self._dynamodb.Table(table).get_item(Key={KEY_FIELD: doc_id}, ConsistentRead=True)
        return response.get('Item')

    def query(self, table, index_name, field, value):
        table_ref = self._dynamodb.Table(table)
        params = {
            'IndexName': index_name,
            'KeyConditionExpression': Key(field).eq(value)
        }
        items = []
        while True:
            response = table_ref.query(**params)
            items.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return items
            params['ExclusiveStartKey'] = last_key

    def scan(self, table):
        table_ref = self._dynamodb.Table(table)
        params = {'ConsistentRead': True}
        items = []
        while True:
            response = table_ref.scan(**params)
            items.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return items
            params['ExclusiveStartKey'] = last_key

    def commit(self, ops):
        transact_items = [self.build_transact_item(op) for op in ops]
        try:
            self._client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code == 'TransactionCanceledException':
                # Cancellation reasons correspond to the TransactItems list order
                reasons = [reason.get('Code', 'None') for reason in e.response.get('CancellationReasons', [])]
                if any(code in CONFLICT_REASONS for code in reasons):
                    raise TransactionConflict(f"Transaction cancelled: {reasons}") from e
            elif error_code == 'TransactionConflictException':
                raise TransactionConflict(str(e)) from e
            raise

    def build_transact_item(self, op: WriteOp) -> dict:
        """Translate one WriteOp into a TransactWriteItems entry."""
        expr = _Expression(self._serializer)
        key = {KEY_FIELD: self._serializer.serialize(op.doc_id)}

        if op.kind == 'put':
            item = dict(op.item)
            item[VERSION_FIELD] = 1
            params = {
                'TableName': op.table,
                'Item': {field: self._serializer.serialize(value) for field, value in item.items()},
                'ConditionExpression': f"attribute_not_exists({expr.name(KEY_FIELD)})"
            }
            return {'Put': expr.attach(params)}

        if op.kind == 'check':
            params = {
                'TableName': op.table,
                'Key': key,
                'ConditionExpression': self._version_condition(expr, op.expected_version)
            }
            return {'ConditionCheck': expr.attach(params)}

        set_parts = [
            f"{expr.name(field)} = {expr.value(value)}"
            for field, value in op.set_fields.items()
        ]
        version = expr.name(VERSION_FIELD)
        set_parts.append(f"{version} = if_not_exists({version}, {expr.value(0)}) + {expr.value(1)}")
        update_expression = 'SET ' + ', '.join(set_parts)
        if op.increments:
            update_expression += ' ADD ' + ', '.join(
                f"{expr.name(field)} {expr.value(amount)}" for field, amount in op.increments.items()
            )
        if op.removes:
            update_expression += ' REMOVE ' + ', '.join(expr.name(field) for field in op.removes)

        params = {
            'TableName': op.table,
            'Key': key,
            'UpdateExpression': update_expression,
            'ConditionExpression': self._version_condition(expr, op.expected_version)
        }
        return {'Update': expr.attach(params)}

    @staticmethod
    def _version_condition(expr: _Expression, expected) -> str:
        if expected is ABSENT:
            return f"attribute_not_exists({expr.name(KEY_FIELD)})"
        if expected is None:
            # Document written before versioning was introduced
            return (
                f"attribute_exists({expr.name(KEY_FIELD)}) AND "
                f"attribute_not_exists({expr.name(VERSION_FIELD)})"
            )
        return f"{expr.name(VERSION_FIELD)} = {expr.value(expected)}"


_store = None


def get_store() -> DocumentStore:
    """Module-level DynamoStore shared across warm Lambda invocations."""
    global _store
    if _store is None:
        _store = DynamoStore()
    return _store
