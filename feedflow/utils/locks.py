import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class TableLockManager:
    """
    Per-table locks that serialise duplicate lookup and the following write.

    Two imports targeting the same table under SKIP or OVERRIDE would otherwise
    both see a key as absent and insert it twice.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, table_name: str) -> threading.Lock:
        with cls._global_lock:
            lock = cls._locks.get(table_name)
            if lock is None:
                lock = threading.Lock()
                cls._locks[table_name] = lock
            return lock

    @classmethod
    @contextmanager
    def acquire(cls, table_name: str):
        """Hold the lock for ``table_name`` for the duration of the block."""
        lock = cls.get_lock(table_name)
        if not lock.acquire(blocking=False):
            logger.debug("Waiting for write lock on table '%s'", table_name)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()
