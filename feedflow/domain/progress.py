"""
In-memory progress and cancellation state shared by workers and status callers.

The in-memory entry is updated on every chunk and is what status queries
read first. Durable writes go through a per-operation callback and are
throttled; they run outside the lock so a slow database never blocks
readers.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from feedflow.core.config import settings
from feedflow.core.exceptions import OperationCancelled

logger = logging.getLogger(__name__)

PersistCallback = Callable[["ProgressInfo"], None]
ProgressListener = Callable[["ProgressInfo"], None]

PERCENT_STEP = 1


def compute_percent(processed: int, total: Optional[int]) -> int:
    if not total or total <= 0:
        return 0
    return min(100, int(round(processed * 100.0 / total)))


@dataclass(frozen=True)
class ProgressInfo:
    operation_id: str
    processed: int = 0
    total: Optional[int] = None
    percent: int = 0
    status: str = "PROCESSING"
    stage: Optional[str] = None
    message: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    records_per_second: float = 0.0
    eta_seconds: Optional[float] = None


@dataclass
class _Entry:
    info: ProgressInfo
    started_monotonic: float
    persist: Optional[PersistCallback] = None
    persisted_processed: int = 0
    persisted_percent: int = 0
    persisted_at: float = 0.0


class ProgressTracker:
    """
    Process-wide map of operation id -> progress.

    Args:
        update_interval: Records between durable writes.
        min_persist_interval: Minimum seconds between record-count driven writes.
        percent_step: A percent change at least this large is always written.
    """

    def __init__(
        self,
        *,
        update_interval: Optional[int] = None,
        min_persist_interval: Optional[float] = None,
        percent_step: int = PERCENT_STEP,
    ):
        self.update_interval = update_interval or settings.progress_update_interval
        self.min_persist_interval = (
            settings.progress_persist_min_interval_seconds if min_persist_interval is None else min_persist_interval
        )
        self.percent_step = percent_step
        self._entries: Dict[str, _Entry] = {}
        self._listeners: List[ProgressListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: ProgressListener) -> None:
        """Register a callback receiving every throttled progress event."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start(
        self,
        operation_id: str,
        *,
        total: Optional[int] = None,
        stage: Optional[str] = None,
        persist: Optional[PersistCallback] = None,
    ) -> ProgressInfo:
        info = ProgressInfo(operation_id=operation_id, total=total, stage=stage)
        with self._lock:
            self._entries[operation_id] = _Entry(info=info, started_monotonic=time.monotonic(), persist=persist)
        return info

    def set_total(self, operation_id: str, total: int) -> Optional[ProgressInfo]:
        with self._lock:
            entry = self._entries.get(operation_id)
            if entry is None:
                return None
            info = entry.info
            entry.info = replace(
                info,
                total=total,
                percent=compute_percent(info.processed, total),
                updated_at=datetime.now(),
            )
            return entry.info

    def set_stage(self, operation_id: str, stage: str, message: Optional[str] = None) -> None:
        with self._lock:
            entry = self._entries.get(operation_id)
            if entry is not None:
                entry.info = replace(entry.info, stage=stage, message=message, updated_at=datetime.now())

    def update(self, operation_id: str, processed: int, *, force_persist: bool = False) -> Optional[ProgressInfo]:
        """
        Record ``processed`` for the operation. The in-memory value always
        changes; the durable callback fires only when the throttle allows.
        Processed counts never move backwards.
        """
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(operation_id)
            if entry is None:
                return None
            info = entry.info
            processed = max(processed, info.processed)
            total = info.total
            if total is not None and processed > total:
                # Estimates can undershoot; keep processed <= total.
                total = processed
            elapsed = max(now - entry.started_monotonic, 1e-6)
            rate = processed / elapsed
            eta = None
            if total and rate > 0:
                eta = max(0.0, (total - processed) / rate)
            percent = compute_percent(processed, total)
            entry.info = replace(
                info,
                processed=processed,
                total=total,
                percent=percent,
                updated_at=datetime.now(),
                records_per_second=rate,
                eta_seconds=eta,
            )

            should_persist = force_persist or (
                percent - entry.persisted_percent >= self.percent_step
            ) or (
                processed - entry.persisted_processed >= self.update_interval
                and now - entry.persisted_at >= self.min_persist_interval
            )
            if should_persist:
                entry.persisted_processed = processed
                entry.persisted_percent = percent
                entry.persisted_at = now
            snapshot = entry.info
            persist = entry.persist if should_persist else None
            listeners = list(self._listeners) if should_persist else []

        if persist is not None:
            try:
                persist(snapshot)
            except Exception as exc:
                logger.warning("Unable to persist progress for %s: %s", operation_id, exc)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                logger.warning("Progress listener failed for %s: %s", operation_id, exc)
        return snapshot

    def get(self, operation_id: str) -> Optional[ProgressInfo]:
        with self._lock:
            entry = self._entries.get(operation_id)
            return entry.info if entry else None

    def finish(self, operation_id: str, status: str, message: Optional[str] = None) -> Optional[ProgressInfo]:
        """Drop the entry and return its final state (with the terminal status)."""
        with self._lock:
            entry = self._entries.pop(operation_id, None)
            listeners = list(self._listeners)
        if entry is None:
            return None
        final = replace(entry.info, status=status, message=message, updated_at=datetime.now(), eta_seconds=0.0)
        for listener in listeners:
            try:
                listener(final)
            except Exception as exc:
                logger.warning("Progress listener failed for %s: %s", operation_id, exc)
        return final

    def active_operations(self) -> List[str]:
        with self._lock:
            return list(self._entries)


class CancellationRegistry:
    """Set of operation ids whose cancellation was requested."""

    def __init__(self):
        self._cancelled: Set[str] = set()
        self._lock = threading.Lock()

    def request(self, operation_id: str) -> None:
        with self._lock:
            self._cancelled.add(operation_id)
        logger.info("Cancellation requested for operation %s", operation_id)

    def is_cancelled(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._cancelled

    def check(self, operation_id: str) -> None:
        """Raise :class:`OperationCancelled` if cancellation was requested."""
        if self.is_cancelled(operation_id):
            raise OperationCancelled(operation_id)

    def clear(self, operation_id: str) -> None:
        with self._lock:
            self._cancelled.discard(operation_id)


progress_tracker = ProgressTracker()
cancellation_registry = CancellationRegistry()
