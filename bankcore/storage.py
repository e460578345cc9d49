"""
Storage Backend Module

Provides the abstract storage interface, an explicit unit of work for atomic
multi-record mutations, and implementations for in-memory (testing) and
SQLite (persistence). All monetary values are stored as Decimal strings.

Writes made through a UnitOfWork are staged and applied all-or-nothing when
the unit commits. Record locks taken through the unit are held until it
finishes, so a read-compute-write cycle on a locked record cannot interleave
with another unit touching the same record.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field, fields
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
import json
import sqlite3
import threading
import uuid

from .currency import Currency, Money
from .errors import ConcurrencyConflictError, StoreFailureError
from .logging_config import get_logger


logger = get_logger("bankcore.storage")

T = TypeVar("T")


def _to_storable(value: Any) -> Any:
    """Convert a field value to its JSON-compatible storage form"""
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_storable(v) for v in value]
    return value


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy through JSON so stored shapes match what the backends return
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


@dataclass(frozen=True)
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _to_storable(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


@dataclass
class StagedWrite:
    """A single write waiting for its unit of work to commit"""
    op: str  # insert, save or delete
    table: str
    record_id: str
    data: Optional[Dict[str, Any]] = None
    expected_version: Optional[int] = None


@dataclass
class RecordLock:
    """A record's lock and the number of units holding or waiting on it"""
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class UnitOfWork:
    """
    Explicit transaction scope passed to every store operation in one
    atomic unit.

    Obtain one through ``StorageInterface.atomic()``; it commits when the
    ``with`` block exits normally and discards every staged write on any
    other exit path.
    """

    def __init__(self, storage: 'StorageInterface', lock_timeout: float):
        self.storage = storage
        self.lock_timeout = lock_timeout
        self.unit_id = str(uuid.uuid4())
        self._writes: List[StagedWrite] = []
        self._staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._held: List[Tuple[str, str]] = []
        self._committed = False
        self._closed = False

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def pending_writes(self) -> List[StagedWrite]:
        return list(self._writes)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Unit of work is already closed")

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        """
        Lock records for the rest of the unit.

        Locks are always acquired in ascending id order so two units locking
        the same pair of records cannot deadlock. A lock that cannot be taken
        within ``lock_timeout`` seconds raises ConcurrencyConflictError.
        """
        self._check_open()
        for record_id in sorted(set(record_ids)):
            key = (table, record_id)
            if key in self._held:
                continue
            if not self.storage._acquire_record_lock(key, self.lock_timeout):
                raise ConcurrencyConflictError(
                    f"Timed out after {self.lock_timeout}s waiting for lock on {table}:{record_id}"
                )
            self._held.append(key)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, seeing this unit's own staged writes"""
        self._check_open()
        key = (table, record_id)
        if key in self._staged:
            staged = self._staged[key]
            return _copy(staged) if staged is not None else None
        return self.storage.load(table, record_id)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, seeing this unit's own staged writes"""
        self._check_open()
        results = {record['id']: record for record in self.storage.find(table, filters)}
        for (staged_table, record_id), data in self._staged.items():
            if staged_table != table:
                continue
            results.pop(record_id, None)
            if data is not None and _matches(data, filters):
                results[record_id] = _copy(data)
        return list(results.values())

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Stage a new record; commit fails if the id already exists"""
        self._stage(StagedWrite("insert", table, record_id, _copy(data)))

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             expected_version: Optional[int] = None) -> None:
        """
        Stage an update. When ``expected_version`` is given the commit fails
        with ConcurrencyConflictError unless the stored record still carries
        that version.
        """
        self._stage(StagedWrite("save", table, record_id, _copy(data), expected_version))

    def delete(self, table: str, record_id: str) -> None:
        self._stage(StagedWrite("delete", table, record_id))

    def _stage(self, write: StagedWrite) -> None:
        self._check_open()
        self._writes.append(write)
        self._staged[(write.table, write.record_id)] = write.data

    def commit(self) -> None:
        self._check_open()
        if self._writes:
            self.storage._apply_writes(self._writes)
            logger.debug(f"Unit {self.unit_id} committed {len(self._writes)} writes")
        self._committed = True

    def close(self) -> None:
        """Discard uncommitted writes and release every held lock"""
        if self._closed:
            return
        if not self._committed and self._writes:
            logger.debug(f"Unit {self.unit_id} rolled back {len(self._writes)} staged writes")
        self._writes.clear()
        self._staged.clear()
        self._closed = True
        while self._held:
            self.storage._release_record_lock(self._held.pop())


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: float = 5.0, max_conflict_retries: int = 3):
        self.lock_timeout = lock_timeout
        self.max_conflict_retries = max_conflict_retries
        self._record_locks: Dict[Tuple[str, str], RecordLock] = {}
        self._registry_lock = threading.Lock()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record outside any unit of work"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def _apply_writes(self, writes: List[StagedWrite]) -> None:
        """Apply a unit's staged writes all-or-nothing"""
        pass

    def _acquire_record_lock(self, key: Tuple[str, str], timeout: float) -> bool:
        with self._registry_lock:
            entry = self._record_locks.get(key)
            if entry is None:
                entry = self._record_locks[key] = RecordLock()
            entry.users += 1
        if entry.lock.acquire(timeout=timeout):
            return True
        self._forget_record_lock(key)
        return False

    def _release_record_lock(self, key: Tuple[str, str]) -> None:
        self._record_locks[key].lock.release()
        self._forget_record_lock(key)

    def _forget_record_lock(self, key: Tuple[str, str]) -> None:
        # Entries live only while some unit holds or waits on them
        with self._registry_lock:
            entry = self._record_locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._record_locks[key]

    @staticmethod
    def _check_write(write: StagedWrite, existing: Optional[Dict[str, Any]]) -> None:
        """Raise ConcurrencyConflictError if a staged write no longer applies"""
        if write.op == "insert" and existing is not None:
            raise ConcurrencyConflictError(
                f"Record {write.table}:{write.record_id} already exists"
            )
        if write.op == "save" and write.expected_version is not None:
            found = existing.get('version') if existing else None
            if found != write.expected_version:
                raise ConcurrencyConflictError(
                    f"Record {write.table}:{write.record_id} changed concurrently "
                    f"(expected version {write.expected_version}, found {found})"
                )

    @contextmanager
    def atomic(self):
        """Context manager yielding a UnitOfWork that commits on normal exit"""
        uow = UnitOfWork(self, self.lock_timeout)
        try:
            yield uow
            uow.commit()
        finally:
            uow.close()

    def run_atomic(self, work: Callable[[UnitOfWork], T], retries: Optional[int] = None) -> T:
        """
        Run ``work`` inside a fresh unit of work, retrying the whole unit
        when it loses a concurrency conflict.

        Args:
            work: Callable receiving the UnitOfWork; its return value is returned
            retries: Extra attempts after the first (defaults to max_conflict_retries)

        Returns:
            Whatever ``work`` returned on the attempt that committed
        """
        retries = self.max_conflict_retries if retries is None else retries
        attempt = 0
        while True:
            try:
                with self.atomic() as uow:
                    result = work(uow)
                return result
            except ConcurrencyConflictError as e:
                if attempt >= retries:
                    logger.warning(f"Giving up after {attempt + 1} attempts: {e}")
                    raise
                attempt += 1
                logger.info(f"Concurrency conflict, retrying unit (attempt {attempt + 1}): {e}")


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: float = 5.0, max_conflict_retries: int = 3):
        super().__init__(lock_timeout, max_conflict_retries)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def _apply_writes(self, writes: List[StagedWrite]) -> None:
        with self._lock:
            # Validate every write against the state the batch would produce
            # before touching anything
            pending: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
            for write in writes:
                key = (write.table, write.record_id)
                if key in pending:
                    existing = pending[key]
                else:
                    existing = self._data.get(write.table, {}).get(write.record_id)
                self._check_write(write, existing)
                pending[key] = write.data if write.op != "delete" else None

            for (table, record_id), data in pending.items():
                self._ensure_table(table)
                if data is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = data


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:",
                 lock_timeout: float = 5.0, max_conflict_retries: int = 3):
        super().__init__(lock_timeout, max_conflict_retries)
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN/COMMIT explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def _write_row(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        self._connection.execute(f"""
            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                ?)
        """, (record_id, data_json, record_id, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            try:
                self._write_row(table, record_id, data)
            except sqlite3.Error as e:
                raise StoreFailureError(f"Failed to save {table}:{record_id}: {e}") from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def _apply_writes(self, writes: List[StagedWrite]) -> None:
        with self._lock:
            for table in {write.table for write in writes}:
                self._ensure_table(table)
            try:
                self._connection.execute("BEGIN IMMEDIATE")
                for write in writes:
                    self._check_write(write, self.load(write.table, write.record_id))
                    if write.op == "delete":
                        self._connection.execute(
                            f"DELETE FROM {write.table} WHERE id = ?", (write.record_id,)
                        )
                    else:
                        self._write_row(write.table, write.record_id, write.data)
                self._connection.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreFailureError(f"Commit failed: {e}") from e
            except BaseException:
                # Conflicts and interrupts (KeyboardInterrupt included)
                self._rollback()
                raise

    def _rollback(self) -> None:
        if not self._connection.in_transaction:
            return
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")


def create_storage(config) -> StorageInterface:
    """Build the storage backend named by the configuration"""
    if config.storage_backend == "memory":
        return InMemoryStorage(
            lock_timeout=config.lock_timeout_seconds,
            max_conflict_retries=config.max_conflict_retries
        )
    if config.storage_backend == "sqlite":
        return SQLiteStorage(
            config.sqlite_path,
            lock_timeout=config.lock_timeout_seconds,
            max_conflict_retries=config.max_conflict_retries
        )
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
