"""
Storage Backend Abstraction Layer for Blocklister

This module provides pluggable storage backends for the block list: the set
of addresses currently blocked, each with the time it was added, its ttl and
the signature that put it there.

Supported Backends:
    - SQLiteBackend: Relational table, auto-provisioned (default)
    - DynamoDBBackend: Distributed storage with native TTL and conditional inserts
    - LocalFileBackend: JSON file storage for local development

Lifecycle:
    An entry is active while now < time_added + ttl. Entries are never updated
    once inserted; they are only deleted by expire_and_report(). The address is
    the uniqueness constraint: a second insert for the same address raises
    DuplicateEntryError, which callers treat as "already blocked".

Usage:
    backend = create_storage_backend(backend_type='sqlite', db_path='./blocklist.sqlite3')

    backend.expire_and_report()
    if not backend.exists('1.2.3.4'):
        backend.insert(BlockEntry('1.2.3.4', int(time.time()), 3600, 'POST with 403'))
    active = backend.list_active()
"""

import json
import logging
import os
import sqlite3
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.config import Config
from botocore.exceptions import ClientError

from blocklist_errors import BlocklisterError, ConfigurationError
from durations import format_duration

logger = logging.getLogger(__name__)

TABLE_NAME = "blocklist"

# Longest textual IPv6 form, e.g. an IPv4-mapped address
ADDRESS_MAX_LENGTH = 45
SIGNATURE_MAX_LENGTH = 255
DEFAULT_TTL = 60


class StorageError(BlocklisterError):
    """Raised when a storage operation fails."""

    exit_code = 3


class DuplicateEntryError(StorageError):
    """Raised when an entry for the address already exists."""

    pass


@dataclass
class BlockEntry:
    """A blocked address. Only the first insertion for an address persists."""

    address: str
    time_added: int
    ttl: int
    signature: str
    matched_signatures: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def expires_at(self) -> int:
        return self.time_added + self.ttl

    def is_active(self, now: int) -> bool:
        return now < self.expires_at

    def is_expired(self, now: int) -> bool:
        return self.expires_at < now


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else int(now)


def _report_removed(entries: List[BlockEntry], now: int) -> None:
    for entry in entries:
        logger.info(
            f"Client [{entry.address}] removed from blocklist after "
            f"{format_duration(now - entry.time_added)} for matching signature [{entry.signature}]"
        )


class StorageBackend(ABC):
    """
    Abstract base class for block list storage backends.

    All storage backends must implement these methods to ensure consistent
    behavior across different storage implementations.
    """

    @abstractmethod
    def expire_and_report(self, now: Optional[int] = None) -> List[BlockEntry]:
        """
        Delete all entries where time_added + ttl < now, logging each removal.

        Must run before any membership check or insert in a run.

        Returns:
            List[BlockEntry]: The entries that were removed.

        Raises:
            StorageError: If the storage is inaccessible.
        """
        pass

    @abstractmethod
    def get(self, address: str) -> Optional[BlockEntry]:
        """
        Get the entry for an address, active or not.

        Returns:
            Optional[BlockEntry]: The entry if present, None otherwise.
        """
        pass

    def exists(self, address: str) -> bool:
        return self.get(address) is not None

    @abstractmethod
    def insert(self, entry: BlockEntry) -> None:
        """
        Store a new entry.

        Raises:
            DuplicateEntryError: If an entry for the address already exists.
            StorageError: If the insert fails for any other reason.
        """
        pass

    @abstractmethod
    def list_active(self, now: Optional[int] = None) -> Set[str]:
        """
        Returns:
            Set[str]: Addresses whose entries satisfy time_added + ttl > now.
        """
        pass

    def close(self) -> None:
        pass


class SQLiteBackend(StorageBackend):
    """
    Relational storage backend.

    Table Schema (created when missing):
        - time_added (INTEGER): Epoch seconds when the entry was inserted
        - ttl (INTEGER, default 60): Seconds the entry stays active
        - address (VARCHAR(45), Primary Key): The blocked address
        - signature (VARCHAR(255)): Display name of the representative signature
        - matched_signatures (TEXT, optional): JSON list of all matched signatures,
          only with extended_schema=True

    Existing tables without the matched_signatures column are used as-is.
    """

    def __init__(self, db_path: str = "./blocklist.sqlite3", extended_schema: bool = False):
        self.db_path = db_path
        self.extended_schema = extended_schema
        self.conn: Optional[sqlite3.Connection] = None
        self.has_matched_column = False
        self.connect()
        self.init_db()

    def connect(self) -> None:
        if self.db_path != ":memory:":
            parent = Path(self.db_path).parent
            if str(parent) != ".":
                parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.db_path, timeout=10.0, check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError(f"Connection to {self.db_path} is closed")
        return self.conn

    def init_db(self) -> None:
        conn = self._connection()
        extra = ",\n                matched_signatures TEXT" if self.extended_schema else ""
        try:
            with conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                        time_added INTEGER NOT NULL,
                        ttl INTEGER NOT NULL DEFAULT {DEFAULT_TTL},
                        address VARCHAR({ADDRESS_MAX_LENGTH}) NOT NULL,
                        signature VARCHAR({SIGNATURE_MAX_LENGTH}) NOT NULL{extra},
                        PRIMARY KEY (address)
                    )
                    """
                )
            columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({TABLE_NAME})")}
        except sqlite3.Error as e:
            raise StorageError(f"Failed to provision table {TABLE_NAME}: {e}") from e
        self.has_matched_column = "matched_signatures" in columns

    def _row_to_entry(self, row: sqlite3.Row) -> BlockEntry:
        matched: Tuple[str, ...] = ()
        if self.has_matched_column and row["matched_signatures"]:
            matched = tuple(json.loads(row["matched_signatures"]))
        return BlockEntry(
            address=row["address"],
            time_added=int(row["time_added"]),
            ttl=int(row["ttl"]),
            signature=row["signature"],
            matched_signatures=matched,
        )

    def _columns(self) -> str:
        columns = "time_added, ttl, address, signature"
        if self.has_matched_column:
            columns += ", matched_signatures"
        return columns

    def expire_and_report(self, now: Optional[int] = None) -> List[BlockEntry]:
        conn = self._connection()
        now = _now(now)
        try:
            with conn:
                rows = conn.execute(
                    f"SELECT {self._columns()} FROM {TABLE_NAME} WHERE time_added + ttl < ?",
                    (now,),
                ).fetchall()
                expired = [self._row_to_entry(row) for row in rows]
                conn.execute(
                    f"DELETE FROM {TABLE_NAME} WHERE time_added + ttl < ?", (now,)
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to expire entries: {e}")
            raise StorageError(f"Failed to expire entries: {e}") from e

        _report_removed(expired, now)
        return expired

    def get(self, address: str) -> Optional[BlockEntry]:
        conn = self._connection()
        try:
            row = conn.execute(
                f"SELECT {self._columns()} FROM {TABLE_NAME} WHERE address = ?", (address,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to look up {address}: {e}") from e
        return self._row_to_entry(row) if row else None

    def insert(self, entry: BlockEntry) -> None:
        conn = self._connection()
        values: List[Any] = [entry.time_added, entry.ttl, entry.address, entry.signature]
        if self.has_matched_column:
            values.append(json.dumps(list(entry.matched_signatures)))
        placeholders = ", ".join("?" for _ in values)
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO {TABLE_NAME} ({self._columns()}) VALUES ({placeholders})",
                    values,
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateEntryError(f"{entry.address} is already in the blocklist") from e
        except sqlite3.Error as e:
            logger.error(f"Failed to insert {entry.address}: {e}")
            raise StorageError(f"Failed to insert {entry.address}: {e}") from e

    def list_active(self, now: Optional[int] = None) -> Set[str]:
        conn = self._connection()
        try:
            rows = conn.execute(
                f"SELECT address FROM {TABLE_NAME} WHERE time_added + ttl > ?", (_now(now),)
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list active entries: {e}") from e
        return {row["address"] for row in rows}

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


class DynamoDBBackend(StorageBackend):
    """
    DynamoDB storage backend with native TTL and conditional inserts.

    Table Schema:
        - address (String, Partition Key): The blocked address
        - time_added (Number): Epoch seconds when the entry was inserted
        - ttl (Number): Seconds the entry stays active
        - expires_at (Number): time_added + ttl, the DynamoDB TTL attribute
        - signature (String): Display name of the representative signature
        - matched_signatures (List): All signatures matched in the inserting run

    Required IAM Permissions:
        - dynamodb:GetItem
        - dynamodb:PutItem
        - dynamodb:Scan
        - dynamodb:BatchWriteItem
        - dynamodb:DescribeTable
        - dynamodb:CreateTable (optional, for auto-creation)

    DynamoDB deletes expired items lazily, so expiry and activity are always
    checked against expires_at rather than item presence.
    """

    def __init__(
        self,
        table_name: str,
        region: str = "us-east-1",
        create_table: bool = False,
        endpoint_url: Optional[str] = None,
    ):
        self.table_name = table_name
        self.region = region

        boto_config = Config(
            connect_timeout=10,
            read_timeout=30,
            retries={"max_attempts": 5, "mode": "adaptive"},
        )

        client_kwargs = {"region_name": region, "config": boto_config}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url

        self.dynamodb = boto3.client("dynamodb", **client_kwargs)
        self.table = boto3.resource("dynamodb", **client_kwargs).Table(table_name)

        if create_table:
            self._ensure_table_exists()

    def _ensure_table_exists(self) -> None:
        """Create the table if it doesn't exist."""
        try:
            self.dynamodb.describe_table(TableName=self.table_name)
            logger.info(f"DynamoDB table {self.table_name} exists")
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                logger.info(f"Creating DynamoDB table {self.table_name}")
                self._create_table()
            else:
                raise StorageError(f"Error checking table: {e}") from e

    def _create_table(self) -> None:
        try:
            self.dynamodb.create_table(
                TableName=self.table_name,
                KeySchema=[{"AttributeName": "address", "KeyType": "HASH"}],
                AttributeDefinitions=[{"AttributeName": "address", "AttributeType": "S"}],
                BillingMode="PAY_PER_REQUEST",
            )

            waiter = self.dynamodb.get_waiter("table_exists")
            waiter.wait(TableName=self.table_name)

            self.dynamodb.update_time_to_live(
                TableName=self.table_name,
                TimeToLiveSpecification={
                    "Enabled": True,
                    "AttributeName": "expires_at",
                },
            )

            logger.info(f"Created DynamoDB table {self.table_name} with TTL enabled")
        except ClientError as e:
            raise StorageError(f"Failed to create table: {e}") from e

    def _serialize_entry(self, entry: BlockEntry) -> Dict[str, Any]:
        return {
            "address": entry.address,
            "time_added": entry.time_added,
            "ttl": entry.ttl,
            "expires_at": entry.expires_at,
            "signature": entry.signature,
            "matched_signatures": list(entry.matched_signatures),
        }

    def _deserialize_item(self, item: Dict[str, Any]) -> BlockEntry:
        # The resource API returns numbers as Decimal
        return BlockEntry(
            address=item["address"],
            time_added=int(item.get("time_added", 0)),
            ttl=int(item.get("ttl", DEFAULT_TTL)),
            signature=item.get("signature", ""),
            matched_signatures=tuple(item.get("matched_signatures", [])),
        )

    def _scan(self, condition) -> List[BlockEntry]:
        entries = []
        scan_kwargs = {"FilterExpression": condition}
        while True:
            response = self.table.scan(**scan_kwargs)
            for item in response.get("Items", []):
                entries.append(self._deserialize_item(item))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return entries
            scan_kwargs["ExclusiveStartKey"] = last_key

    def expire_and_report(self, now: Optional[int] = None) -> List[BlockEntry]:
        now = _now(now)
        try:
            expired = self._scan(Attr("expires_at").lt(now))
            if expired:
                with self.table.batch_writer() as batch:
                    for entry in expired:
                        batch.delete_item(Key={"address": entry.address})
        except ClientError as e:
            logger.error(f"Failed to expire entries in DynamoDB: {e}")
            raise StorageError(f"Failed to expire entries: {e}") from e

        _report_removed(expired, now)
        return expired

    def get(self, address: str) -> Optional[BlockEntry]:
        try:
            response = self.table.get_item(Key={"address": address})
        except ClientError as e:
            logger.error(f"Failed to get {address} from DynamoDB: {e}")
            raise StorageError(f"Failed to get from DynamoDB: {e}") from e
        item = response.get("Item")
        return self._deserialize_item(item) if item else None

    def insert(self, entry: BlockEntry) -> None:
        try:
            self.table.put_item(
                Item=self._serialize_entry(entry),
                ConditionExpression=Attr("address").not_exists(),
            )
            logger.debug(f"Stored {entry.address} in DynamoDB")
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise DuplicateEntryError(f"{entry.address} is already in the blocklist") from e
            logger.error(f"Failed to put {entry.address} to DynamoDB: {e}")
            raise StorageError(f"Failed to put to DynamoDB: {e}") from e

    def list_active(self, now: Optional[int] = None) -> Set[str]:
        try:
            active = self._scan(Attr("expires_at").gt(_now(now)))
        except ClientError as e:
            logger.error(f"Failed to list active entries from DynamoDB: {e}")
            raise StorageError(f"Failed to list active entries: {e}") from e
        return {entry.address for entry in active}


class LocalFileBackend(StorageBackend):
    """
    Local JSON file storage backend.

    Uses atomic file writes to prevent corruption, but does not provide true
    concurrent access safety. Intended for local development and testing.
    """

    def __init__(self, file_path: str = "./blocklist.json"):
        self.file_path = file_path
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        parent = Path(self.file_path).parent
        if parent and str(parent) != ".":
            parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Dict]:
        """Load the block list from the JSON file."""
        if not os.path.exists(self.file_path):
            return {}
        try:
            with open(self.file_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to load block list from {self.file_path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Block list in {self.file_path} has invalid structure")
        return data

    def save(self, data: Dict[str, Dict]) -> None:
        """Save the block list to the JSON file atomically."""
        try:
            self._ensure_directory()

            temp_file = f"{self.file_path}.tmp"
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_file, self.file_path)
            logger.debug(f"Saved block list with {len(data)} entries to {self.file_path}")
        except OSError as e:
            logger.error(f"Failed to save block list: {e}")
            raise StorageError(f"Failed to save block list: {e}") from e

    def _to_entry(self, address: str, record: Dict) -> BlockEntry:
        return BlockEntry(
            address=address,
            time_added=int(record["time_added"]),
            ttl=int(record.get("ttl", DEFAULT_TTL)),
            signature=record.get("signature", ""),
            matched_signatures=tuple(record.get("matched_signatures", [])),
        )

    def expire_and_report(self, now: Optional[int] = None) -> List[BlockEntry]:
        now = _now(now)
        data = self.load()
        expired = [
            entry
            for entry in (self._to_entry(address, record) for address, record in data.items())
            if entry.is_expired(now)
        ]
        if expired:
            for entry in expired:
                del data[entry.address]
            self.save(data)

        _report_removed(expired, now)
        return expired

    def get(self, address: str) -> Optional[BlockEntry]:
        record = self.load().get(address)
        return self._to_entry(address, record) if record else None

    def insert(self, entry: BlockEntry) -> None:
        data = self.load()
        if entry.address in data:
            raise DuplicateEntryError(f"{entry.address} is already in the blocklist")
        data[entry.address] = {
            "time_added": entry.time_added,
            "ttl": entry.ttl,
            "signature": entry.signature,
            "matched_signatures": list(entry.matched_signatures),
        }
        self.save(data)

    def list_active(self, now: Optional[int] = None) -> Set[str]:
        now = _now(now)
        return {
            address
            for address, record in self.load().items()
            if self._to_entry(address, record).is_active(now)
        }


def create_storage_backend(
    backend_type: str = "sqlite",
    db_path: str = "./blocklist.sqlite3",
    extended_schema: bool = False,
    local_file: str = "./blocklist.json",
    dynamodb_table: Optional[str] = None,
    region: str = "us-east-1",
    create_dynamodb_table: bool = False,
    endpoint_url: Optional[str] = None,
) -> StorageBackend:
    """
    Factory function to create the appropriate storage backend.

    Args:
        backend_type: One of 'sqlite', 'dynamodb', or 'local'.
        db_path: Database file for the SQLite backend.
        extended_schema: Persist all matched signatures (SQLite only).
        local_file: Path for local file backend.
        dynamodb_table: Table name for DynamoDB backend.
        region: AWS region for DynamoDB.
        create_dynamodb_table: Whether to create DynamoDB table if missing.
        endpoint_url: Optional endpoint URL (for local DynamoDB testing).

    Raises:
        ConfigurationError: If required parameters are missing for the selected backend.
    """
    backend_type = backend_type.lower()

    if backend_type == "sqlite":
        logger.info(f"Using SQLite storage backend: {db_path}")
        return SQLiteBackend(db_path=db_path, extended_schema=extended_schema)

    elif backend_type == "dynamodb":
        if not dynamodb_table:
            raise ConfigurationError("dynamodb_table is required for DynamoDB backend")
        logger.info(f"Using DynamoDB storage backend: {dynamodb_table}")
        return DynamoDBBackend(
            table_name=dynamodb_table,
            region=region,
            create_table=create_dynamodb_table,
            endpoint_url=endpoint_url,
        )

    elif backend_type == "local":
        logger.info(f"Using local file storage backend: {local_file}")
        return LocalFileBackend(file_path=local_file)

    else:
        raise ConfigurationError(
            f"Unknown backend type: {backend_type}. Use 'sqlite', 'dynamodb', or 'local'"
        )
