"""
Key-value storage backends for the ledger state.

DB is the persistent LevelDB backend (plyvel). MemoryDB keeps everything in a
dict and is used for ephemeral chains and tests. Both expose the same
get/put/delete/write_batch/iterator interface.
"""
import plyvel
import logging
from typing import Optional, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 64 * 1024 * 1024,  # 64MB
                 max_open_files: int = 1000,
                 compression: Optional[str] = 'snappy'):
        """
        Open (or create) a LevelDB database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
            compression: 'snappy' or None
        """
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
                compression=compression,
            )
            self._closed = False
            logger.info(f"Database opened at {db_path}")
        except Exception as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    def _ensure_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """Get value by key, None if missing."""
        self._ensure_open()
        try:
            return self._db.get(key)
        except Exception as e:
            logger.error(f"Error getting key {key.hex()[:16]}: {e}")
            raise

    def put(self, key: bytes, value: bytes):
        self._ensure_open()
        try:
            self._db.put(key, value)
        except Exception as e:
            logger.error(f"Error putting key {key.hex()[:16]}: {e}")
            raise

    def delete(self, key: bytes):
        self._ensure_open()
        try:
            self._db.delete(key)
        except Exception as e:
            logger.error(f"Error deleting key {key.hex()[:16]}: {e}")
            raise

    def exists(self, key: bytes) -> bool:
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        """
        Context manager for atomic batch writes.

        Example:
            with db.write_batch() as batch:
                batch.put(b'key1', b'value1')
                batch.delete(b'key2')
        """
        self._ensure_open()
        batch = self._db.write_batch()
        try:
            yield batch
            batch.write()
        except Exception as e:
            logger.error(f"Error in batch write: {e}")
            raise
        finally:
            batch.clear()

    def iterator(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        """Iterate (key, value) pairs whose key starts with ``prefix``."""
        self._ensure_open()
        return self._db.iterator(prefix=prefix)

    def close(self):
        if not self._closed:
            try:
                self._db.close()
                self._closed = True
                logger.info("Database closed")
            except Exception as e:
                logger.error(f"Error closing database: {e}")
                raise

    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class _MemoryBatch:
    def __init__(self):
        self.ops = []

    def put(self, key: bytes, value: bytes):
        self.ops.append(('put', key, value))

    def delete(self, key: bytes):
        self.ops.append(('delete', key, None))


class MemoryDB:
    """In-process dict backend with the same interface as DB."""

    def __init__(self):
        self._data: dict[bytes, bytes] = {}
        self._closed = False

    def _ensure_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        self._ensure_open()
        return self._data.get(key)

    def put(self, key: bytes, value: bytes):
        self._ensure_open()
        self._data[key] = value

    def delete(self, key: bytes):
        self._ensure_open()
        self._data.pop(key, None)

    def exists(self, key: bytes) -> bool:
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        self._ensure_open()
        batch = _MemoryBatch()
        yield batch
        for op, key, value in batch.ops:
            if op == 'put':
                self._data[key] = value
            else:
                self._data.pop(key, None)

    def iterator(self, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
        self._ensure_open()
        return iter(sorted(
            (k, v) for k, v in self._data.items() if k.startswith(prefix)
        ))

    def close(self):
        self._closed = True

    def is_closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
