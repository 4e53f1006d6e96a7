"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and JSON files (persistence). All monetary values are stored as
Decimal strings. Backends raise StorageError when a read or write cannot
complete; callers turn that into a persistence failure result.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime
import json
import os
import tempfile
import threading
from pathlib import Path

from .logging_config import get_logger


logger = get_logger("atm.storage")


class StorageError(Exception):
    """Raised when a storage read or write did not complete"""
    pass


def _json_default(value: Any) -> Any:
    """Serialize Decimal and datetime values the way records store them"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
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
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=_json_default))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class JSONFileStorage(StorageInterface):
    """
    JSON file storage implementation for persistence

    Each table lives in ``<data_dir>/<table>.json`` as a JSON array of
    records, each carrying its key under ``_id``. Tables are cached in
    memory after the first read and the whole file is rewritten on every
    mutation, through a temp file and an atomic rename.
    """

    def __init__(self, data_dir: Union[str, Path] = "data"):
        self.data_dir = Path(data_dir)
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {self.data_dir}: {e}") from e
        logger.debug(f"JSON storage rooted at {self.data_dir}")

    def _table_path(self, table: str) -> Path:
        return self.data_dir / f"{table}.json"

    def _read_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Load a table file into the cache on first access"""
        if table in self._tables:
            return self._tables[table]

        path = self._table_path(table)
        records: Dict[str, Dict[str, Any]] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    content = json.load(f)
            except (OSError, ValueError) as e:
                raise StorageError(f"Cannot read table file {path}: {e}") from e

            if not isinstance(content, list):
                raise StorageError(f"Table file {path} is not a JSON array")

            for item in content:
                if isinstance(item, dict) and "_id" in item:
                    record_id = item.pop("_id")
                    records[record_id] = item

        self._tables[table] = records
        return records

    def _write_table(self, table: str, records: Dict[str, Dict[str, Any]]) -> None:
        """Rewrite a whole table file atomically"""
        path = self._table_path(table)
        payload = [dict(record, _id=record_id) for record_id, record in records.items()]

        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), prefix=f".{table}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, default=_json_default)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write table file {path}: {e}") from e

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record and flush the table to disk"""
        with self._lock:
            records = dict(self._read_table(table))
            records[record_id] = json.loads(json.dumps(data, default=_json_default))
            self._write_table(table, records)
            # Only publish to the cache once the file write succeeded
            self._tables[table] = records

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from the table file"""
        with self._lock:
            record = self._read_table(table).get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table file"""
        with self._lock:
            return [json.loads(json.dumps(record)) for record in self._read_table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record and flush the table to disk"""
        with self._lock:
            records = self._read_table(table)
            if record_id not in records:
                return False
            remaining = dict(records)
            del remaining[record_id]
            self._write_table(table, remaining)
            self._tables[table] = remaining
            return True

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._read_table(table)

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._read_table(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._write_table(table, {})
            self._tables[table] = {}

    def close(self) -> None:
        """Drop the in-memory cache; every mutation is already on disk"""
        with self._lock:
            self._tables = {}
