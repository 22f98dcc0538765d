"""
Record stores for dualstore.

The router, validator and backfill migrator depend only on the RecordStore
protocol. Concrete stores:

- SQLAlchemyRecordStore: relational source store (PostgreSQL, SQLite)
- DynamoDBRecordStore: DynamoDB target store
- InMemoryRecordStore: tests and dry runs
"""

from dualstore.stores.dynamodb import (
    DYNAMODB_MAX_BATCH_SIZE,
    DynamoDBRecordStore,
    create_dynamodb_client,
    is_transient_client_error,
)
from dualstore.stores.interface import (
    SOURCE_ROLE,
    TARGET_ROLE,
    BatchWriteResult,
    RecordStore,
    SupportsQualityChecks,
)
from dualstore.stores.memory import InMemoryRecordStore
from dualstore.stores.relational import (
    DEFAULT_SQL_BATCH_SIZE,
    SQLAlchemyRecordStore,
    is_transient_db_error,
)

__all__ = [
    "SOURCE_ROLE",
    "TARGET_ROLE",
    "BatchWriteResult",
    "RecordStore",
    "SupportsQualityChecks",
    "InMemoryRecordStore",
    "SQLAlchemyRecordStore",
    "DEFAULT_SQL_BATCH_SIZE",
    "is_transient_db_error",
    "DynamoDBRecordStore",
    "DYNAMODB_MAX_BATCH_SIZE",
    "create_dynamodb_client",
    "is_transient_client_error",
]
