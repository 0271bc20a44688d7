"""
Bounded pool running one operation per worker thread.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from feedflow.core.config import settings

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(self, max_workers: Optional[int] = None, name: str = "feedflow-worker"):
        self.max_workers = max_workers or settings.worker_pool_size
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, operation_id: str, fn: Callable, *args, **kwargs) -> Future:
        """Queue ``fn`` for ``operation_id`` and return immediately."""
        future = self._executor.submit(fn, *args, **kwargs)
        with self._lock:
            self._futures[operation_id] = future
        future.add_done_callback(lambda _: self._forget(operation_id))
        logger.debug("Submitted operation %s (%d tracked)", operation_id, len(self._futures))
        return future

    def _forget(self, operation_id: str) -> None:
        with self._lock:
            self._futures.pop(operation_id, None)

    def future_for(self, operation_id: str) -> Optional[Future]:
        with self._lock:
            return self._futures.get(operation_id)

    def is_running(self, operation_id: str) -> bool:
        future = self.future_for(operation_id)
        return future is not None and not future.done()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_default_pool: Optional[WorkerPool] = None
_pool_lock = threading.Lock()


def get_worker_pool() -> WorkerPool:
    global _default_pool
    with _pool_lock:
        if _default_pool is None:
            _default_pool = WorkerPool()
        return _default_pool


def shutdown_worker_pool(wait: bool = True) -> None:
    global _default_pool
    with _pool_lock:
        pool, _default_pool = _default_pool, None
    if pool is not None:
        pool.shutdown(wait=wait)
