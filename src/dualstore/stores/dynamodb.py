"""
DynamoDBRecordStore - distributed (target) record store.

Wraps boto3's low-level DynamoDB client. Items are built by RecordCodec and
serialized with boto3's TypeSerializer; responses are deserialized with
TypeDeserializer and decoded back into records. Blocking boto3 calls run
in a worker thread via ``asyncio.to_thread``.

Responsibilities:
    - put_item for single writes
    - batch_write_item in chunks of 25 with UnprocessedItems re-driven
      once, then reported per record
    - Key and index queries with LastEvaluatedKey pagination
    - Select=COUNT queries over the date-bucket index for window counts
    - Mapping throttling, 5xx and connection errors onto TransientStoreError

Usage:
    >>> client = create_dynamodb_client(region="us-east-1")
    >>> store = DynamoDBRecordStore(
    ...     client,
    ...     table_name="LoanApp-IntegrationLogs-dev",
    ...     codec=RecordCodec(RecordClass.INTEGRATION_LOGS),
    ... )
    >>> result = await store.insert_batch(records)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from dualstore.codec import (
    APPLICATION_INDEX,
    DATE_INDEX,
    ERROR_INDEX,
    LOAN_INDEX,
    PAYMENT_ID_INDEX,
    PK,
    SK,
    STATUS_INDEX,
    RecordCodec,
    application_key,
    customer_key,
    date_key,
    error_key,
    loan_key,
    log_partition_key,
    log_sort_bound,
    payment_id_key,
    payment_sort_bound,
    status_key,
)
from dualstore.exceptions import RecordConversionError, StoreError, TransientStoreError
from dualstore.observability import (
    ATTR_APPLICATION_ID,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_RECORD_CLASS,
    ATTR_RECORD_COUNT,
    ATTR_SERVICE_NAME,
    ATTR_STORE_NAME,
    Tracer,
    create_tracer,
)
from dualstore.records import (
    LogRecord,
    PaymentRecord,
    PaymentStatus,
    Record,
    RecordClass,
    ensure_utc,
)
from dualstore.stores.interface import (
    BatchAccumulator,
    BatchWriteResult,
    check_record,
    require_record_class,
)

logger = logging.getLogger(__name__)

DYNAMODB_MAX_BATCH_SIZE = 25

TRANSIENT_ERROR_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
        "TransactionConflictException",
        "LimitExceededException",
    }
)

_TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def create_dynamodb_client(region: str, endpoint_url: str | None = None) -> Any:
    """Create a low-level DynamoDB client."""
    session = boto3.Session(region_name=region)
    return session.client("dynamodb", endpoint_url=endpoint_url)


def is_transient_client_error(error: Exception) -> bool:
    """Throttling, server-side and connection failures can be retried."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in TRANSIENT_ERROR_CODES or status >= 500
    return isinstance(error, _TRANSIENT_BOTOCORE_ERRORS)


class DynamoDBRecordStore:
    """
    DynamoDB implementation of RecordStore.

    One store instance maps to one table and one record class (the codec's).
    Index names follow the codec's layout: GSI1 (application or loan),
    GSI2 (date bucket), GSI3 (error day or payment status) and GSI4
    (payment id).
    """

    def __init__(
        self,
        client: Any,
        table_name: str,
        codec: RecordCodec,
        *,
        name: str = "dynamodb",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            client: boto3 DynamoDB client (``boto3.client("dynamodb")``)
            table_name: Table holding this record class
            codec: Codec for the table's record class
            name: Logical name reported in outcomes and logs
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._client = client
        self._table_name = table_name
        self._codec = codec
        self._name = name
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @property
    def name(self) -> str:
        return self._name

    @property
    def record_class(self) -> RecordClass:
        return self._codec.record_class

    @property
    def max_batch_size(self) -> int:
        return DYNAMODB_MAX_BATCH_SIZE

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def codec(self) -> RecordCodec:
        return self._codec

    # =========================================================================
    # Writes
    # =========================================================================

    async def insert(self, record: Record) -> None:
        """
        Put one item, overwriting any item with the same key.

        Raises:
            RecordConversionError: If the record cannot be encoded.
            TransientStoreError: On throttling, 5xx or connection errors.
            StoreError: On any other client error.
        """
        check_record(self._name, self.record_class, record, "insert")
        with self._tracer.span(
            "dualstore.dynamodb_store.insert",
            self._attributes("PutItem", {}),
        ):
            item = self._serialize(self._codec.encode(record))
            await self._call("put_item", TableName=self._table_name, Item=item)

    async def insert_batch(self, records: Sequence[Record]) -> BatchWriteResult:
        """
        Write records with batch_write_item, 25 per request.

        Records that fail to encode are reported without being sent.
        UnprocessedItems are re-sent once; whatever is still unprocessed is
        reported as failed and retryable. A chunk whose request raises
        reports all of its records.
        """
        acc = BatchAccumulator()
        with self._tracer.span(
            "dualstore.dynamodb_store.insert_batch",
            self._attributes("BatchWriteItem", {ATTR_RECORD_COUNT: len(records)}),
        ):
            encoded: list[tuple[Record, dict[str, Any]]] = []
            for record in records:
                check_record(self._name, self.record_class, record, "insert_batch")
                try:
                    encoded.append((record, self._serialize(self._codec.encode(record))))
                except RecordConversionError as e:
                    logger.warning("%s: cannot encode %s: %s", self._name, record.key_fields, e)
                    acc.add_failures([record], str(e), retryable=False)

            for start in range(0, len(encoded), DYNAMODB_MAX_BATCH_SIZE):
                chunk = encoded[start : start + DYNAMODB_MAX_BATCH_SIZE]
                await self._write_chunk(chunk, acc)
        return acc.result()

    async def _write_chunk(
        self,
        chunk: list[tuple[Record, dict[str, Any]]],
        acc: BatchAccumulator,
    ) -> None:
        by_key = {self._item_key(item): record for record, item in chunk}
        requests = [{"PutRequest": {"Item": item}} for _, item in chunk]

        with self._tracer.span(
            "dualstore.dynamodb_store.write_chunk",
            {ATTR_BATCH_SIZE: len(chunk), ATTR_STORE_NAME: self._name},
        ):
            try:
                unprocessed = await self._batch_write(requests)
                if unprocessed:
                    logger.debug(
                        "%s: re-sending %d unprocessed items",
                        self._name,
                        len(unprocessed),
                    )
                    unprocessed = await self._batch_write(unprocessed)
            except (ClientError, BotoCoreError) as e:
                logger.warning(
                    "%s: batch of %d items failed: %s",
                    self._name,
                    len(chunk),
                    e,
                )
                acc.add_failures(
                    [record for record, _ in chunk],
                    str(e),
                    retryable=is_transient_client_error(e),
                )
                return

        failed = [by_key[self._item_key(r["PutRequest"]["Item"])] for r in unprocessed]
        acc.written += len(chunk) - len(failed)
        if failed:
            logger.warning(
                "%s: %d items still unprocessed after re-send",
                self._name,
                len(failed),
            )
            acc.add_failures(failed, f"{len(failed)} items unprocessed", retryable=True)

    async def _batch_write(self, requests: list[dict[str, Any]]) -> list[dict[str, Any]]:
        response = await asyncio.to_thread(
            self._client.batch_write_item,
            RequestItems={self._table_name: requests},
        )
        unprocessed: list[dict[str, Any]] = response.get("UnprocessedItems", {}).get(
            self._table_name, []
        )
        return unprocessed

    # =========================================================================
    # Generic reads
    # =========================================================================

    async def get(self, record: Record) -> Record | None:
        check_record(self._name, self.record_class, record, "get")
        key = self._codec.key_for(record)
        with self._tracer.span(
            "dualstore.dynamodb_store.get",
            self._attributes("GetItem", {}),
        ):
            response = await self._call(
                "get_item",
                TableName=self._table_name,
                Key=self._serialize(key.to_item()),
                ConsistentRead=True,
            )
            item = response.get("Item")
            return self._decode(item) if item else None

    async def count_by_time_range(
        self,
        start: datetime,
        end: datetime,
        service: str | None = None,
    ) -> int:
        """
        Count items in ``[start, end)``.

        Without a service the date-bucket index is queried once per day;
        with a service the base table's ``{service}#{day}`` partitions are.
        """
        if service is not None:
            self._logs_only("count_by_time_range")
        with self._tracer.span(
            "dualstore.dynamodb_store.count_by_time_range",
            self._attributes("Query", {ATTR_SERVICE_NAME: service or ""}),
        ):
            total = 0
            for day, lower, upper in self._day_slices(start, end):
                if service is None:
                    kwargs = self._range_query(DATE_INDEX, date_key(day), lower, upper)
                else:
                    kwargs = self._range_query(
                        None, log_partition_key(service, day), lower, upper
                    )
                async for page in self._paginate("query", Select="COUNT", **kwargs):
                    total += int(page.get("Count", 0))
            return total

    async def iter_window(
        self,
        start: datetime,
        end: datetime,
        page_size: int = 500,
    ) -> AsyncIterator[Record | RecordConversionError]:
        for day, lower, upper in self._day_slices(start, end):
            kwargs = self._range_query(DATE_INDEX, date_key(day), lower, upper)
            async for page in self._paginate("query", Limit=page_size, **kwargs):
                for item in page.get("Items", []):
                    try:
                        yield self._decode(item)
                    except RecordConversionError as e:
                        yield e

    async def ping(self) -> None:
        await self._call("describe_table", TableName=self._table_name)

    # =========================================================================
    # Integration log reads
    # =========================================================================

    async def query_by_application(self, application_id: int) -> list[LogRecord]:
        self._logs_only("query_by_application")
        with self._tracer.span(
            "dualstore.dynamodb_store.query_by_application",
            self._attributes("Query", {ATTR_APPLICATION_ID: application_id}),
        ):
            items = await self._query_all(
                IndexName=APPLICATION_INDEX,
                KeyConditionExpression="GSI1PK = :pk",
                ExpressionAttributeValues=self._serialize({":pk": application_key(application_id)}),
                ScanIndexForward=False,
            )
            return self._decode_all(items, LogRecord)

    async def query_by_time_range(
        self,
        service: str,
        start: datetime,
        end: datetime,
    ) -> list[LogRecord]:
        self._logs_only("query_by_time_range")
        with self._tracer.span(
            "dualstore.dynamodb_store.query_by_time_range",
            self._attributes("Query", {ATTR_SERVICE_NAME: service}),
        ):
            items: list[dict[str, Any]] = []
            for day, lower, upper in self._day_slices(start, end):
                kwargs = self._range_query(None, log_partition_key(service, day), lower, upper)
                items.extend(await self._query_all(**kwargs))
            return self._decode_all(items, LogRecord)

    async def query_error_logs_by_date(self, day: date) -> list[LogRecord]:
        self._logs_only("query_error_logs_by_date")
        items = await self._query_all(
            IndexName=ERROR_INDEX,
            KeyConditionExpression="GSI3PK = :pk",
            ExpressionAttributeValues=self._serialize({":pk": error_key(day)}),
            ScanIndexForward=False,
        )
        return self._decode_all(items, LogRecord)

    async def distinct_service_names(self) -> list[str]:
        """Scan projected on ServiceName; intended for cached dropdown lookups."""
        self._logs_only("distinct_service_names")
        names: set[str] = set()
        async for page in self._paginate(
            "scan",
            TableName=self._table_name,
            ProjectionExpression="ServiceName",
        ):
            for item in page.get("Items", []):
                value = self._deserialize(item).get("ServiceName")
                if value:
                    names.add(value)
        return sorted(names)

    # =========================================================================
    # Payment reads
    # =========================================================================

    async def get_payment(self, payment_id: int) -> PaymentRecord | None:
        self._payments_only("get_payment")
        items = await self._query_all(
            IndexName=PAYMENT_ID_INDEX,
            KeyConditionExpression="GSI4PK = :pk",
            ExpressionAttributeValues=self._serialize({":pk": payment_id_key(payment_id)}),
        )
        payments = self._decode_all(items, PaymentRecord)
        return payments[0] if payments else None

    async def query_payments_by_customer(
        self,
        customer_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_customer")
        values: dict[str, Any] = {":pk": customer_key(customer_id)}
        condition = "PK = :pk"
        if start is not None or end is not None:
            lower = start or datetime(1970, 1, 1, tzinfo=UTC)
            upper = end or datetime(9999, 1, 1, tzinfo=UTC)
            condition += " AND SK BETWEEN :lower AND :upper"
            values[":lower"] = payment_sort_bound(lower)
            values[":upper"] = payment_sort_bound(upper)

        items: list[dict[str, Any]] = []
        async for page in self._paginate(
            "query",
            TableName=self._table_name,
            KeyConditionExpression=condition,
            ExpressionAttributeValues=self._serialize(values),
            ScanIndexForward=False,
            Limit=limit,
        ):
            items.extend(page.get("Items", []))
            if len(items) >= limit:
                break
        return self._decode_all(items[:limit], PaymentRecord)

    async def query_payments_by_status(self, status: PaymentStatus) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_status")
        items = await self._query_all(
            IndexName=STATUS_INDEX,
            KeyConditionExpression="GSI3PK = :pk",
            ExpressionAttributeValues=self._serialize({":pk": status_key(status)}),
            ScanIndexForward=False,
        )
        return self._decode_all(items, PaymentRecord)

    async def query_payments_by_loan(self, loan_id: int) -> list[PaymentRecord]:
        self._payments_only("query_payments_by_loan")
        items = await self._query_all(
            IndexName=LOAN_INDEX,
            KeyConditionExpression="GSI1PK = :pk",
            ExpressionAttributeValues=self._serialize({":pk": loan_key(loan_id)}),
            ScanIndexForward=False,
        )
        return self._decode_all(items, PaymentRecord)

    # =========================================================================
    # Client plumbing
    # =========================================================================

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        """Run a client method in a worker thread, translating errors."""
        method: Callable[..., dict[str, Any]] = getattr(self._client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except (ClientError, BotoCoreError) as e:
            if is_transient_client_error(e):
                raise TransientStoreError(self._name, operation, str(e)) from e
            raise StoreError(self._name, operation, str(e)) from e

    async def _paginate(self, operation: str, **kwargs: Any) -> AsyncIterator[dict[str, Any]]:
        """Yield response pages, following LastEvaluatedKey."""
        while True:
            response = await self._call(operation, **kwargs)
            yield response
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key

    async def _query_all(self, **kwargs: Any) -> list[dict[str, Any]]:
        kwargs.setdefault("TableName", self._table_name)
        items: list[dict[str, Any]] = []
        async for page in self._paginate("query", **kwargs):
            items.extend(page.get("Items", []))
        return items

    def _range_query(
        self,
        index: str | None,
        partition: str,
        lower: str,
        upper: str,
    ) -> dict[str, Any]:
        """Key condition over one partition with a half-open sort-key range."""
        pk_name = f"{index}PK" if index else PK
        sk_name = f"{index}SK" if index else SK
        kwargs: dict[str, Any] = {
            "TableName": self._table_name,
            "KeyConditionExpression": f"{pk_name} = :pk AND {sk_name} BETWEEN :lower AND :upper",
            "ExpressionAttributeValues": self._serialize(
                {":pk": partition, ":lower": lower, ":upper": upper}
            ),
        }
        if index:
            kwargs["IndexName"] = index
        return kwargs

    def _day_slices(self, start: datetime, end: datetime) -> list[tuple[date, str, str]]:
        """
        Split ``[start, end)`` into per-day sort-key ranges.

        A bare timestamp bound sorts before every ``{timestamp}#{id}`` key at
        the same instant, so BETWEEN(start, end) includes items at ``start``
        and excludes items at ``end``.
        """
        start, end = ensure_utc(start), ensure_utc(end)
        bound = payment_sort_bound if self.record_class is RecordClass.PAYMENTS else log_sort_bound
        slices: list[tuple[date, str, str]] = []
        day = start.date()
        while True:
            day_start = datetime.combine(day, time.min, tzinfo=UTC)
            if day_start >= end:
                break
            lower = max(start, day_start)
            upper = min(end, day_start + timedelta(days=1))
            if lower < upper:
                slices.append((day, bound(lower), bound(upper)))
            day += timedelta(days=1)
        return slices

    def _serialize(self, values: dict[str, Any]) -> dict[str, Any]:
        return {name: self._serializer.serialize(value) for name, value in values.items()}

    def _deserialize(self, item: dict[str, Any]) -> dict[str, Any]:
        return {name: self._deserializer.deserialize(value) for name, value in item.items()}

    def _decode(self, item: dict[str, Any]) -> Record:
        return self._codec.decode(self._deserialize(item))

    def _decode_all(self, items: list[dict[str, Any]], kind: type[Any]) -> list[Any]:
        records = []
        for item in items:
            try:
                record = self._decode(item)
            except RecordConversionError as e:
                logger.warning("%s: skipping undecodable item: %s", self._name, e)
                continue
            if isinstance(record, kind):
                records.append(record)
        return records

    @staticmethod
    def _item_key(item: dict[str, Any]) -> tuple[str, str]:
        return (item[PK]["S"], item[SK]["S"])

    def _attributes(self, operation: str, extra: dict[str, Any]) -> dict[str, Any]:
        return {
            ATTR_STORE_NAME: self._name,
            ATTR_RECORD_CLASS: self.record_class.value,
            ATTR_DB_SYSTEM: "dynamodb",
            ATTR_DB_OPERATION: operation,
            **extra,
        }

    def _logs_only(self, operation: str) -> None:
        require_record_class(self._name, self.record_class, RecordClass.INTEGRATION_LOGS, operation)

    def _payments_only(self, operation: str) -> None:
        require_record_class(self._name, self.record_class, RecordClass.PAYMENTS, operation)


__all__ = [
    "DynamoDBRecordStore",
    "DYNAMODB_MAX_BATCH_SIZE",
    "TRANSIENT_ERROR_CODES",
    "create_dynamodb_client",
    "is_transient_client_error",
]
