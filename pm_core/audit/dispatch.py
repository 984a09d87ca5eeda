# pm_core/audit/dispatch.py
"""
Audit persistence pipeline.

Recording is synchronous up to the enqueue: the entry is fully built (and,
when a spool path is configured, appended to a write-ahead JSON-lines file)
before the business operation continues. Persistence to the database then
happens inline (SYNC) or on a flusher thread (ASYNC), with bounded
exponential backoff. Exhausted retries raise an operational alert and never
reach the business operation.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import queue
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, close_old_connections, transaction

from pm_core.audit.models import AuditEntry
from pm_core.audit.signals import audit_write_failed

logger = logging.getLogger(__name__)
alerts = logging.getLogger("pm_core.audit.alerts")

MODE_SYNC = "sync"
MODE_ASYNC = "async"

MAX_BACKOFF_SECONDS = 30.0

ENTRY_FIELDS = (
    "event_id",
    "occurred_at",
    "actor_type",
    "actor_user_id",
    "action",
    "category",
    "severity",
    "target_type",
    "target_id",
    "tenant_id",
    "involves_protected_data",
    "protected_data_categories",
    "outcome",
    "outcome_reason",
    "before",
    "after",
    "metadata",
    "ip_address",
    "request_id",
    "corrects_event_id",
    "is_permanent",
)


class AuditWriteFailure(Exception):
    """Persisting an audit entry failed after every retry."""


def persist_entry(payload: dict[str, Any]) -> AuditEntry:
    """
    Insert one entry. Idempotent on event_id so spool replay and retries
    after an ambiguous commit never duplicate.
    """
    values = {k: payload.get(k) for k in ENTRY_FIELDS if k in payload}
    try:
        with transaction.atomic():
            return AuditEntry.objects.create(**values)
    except IntegrityError:
        existing = AuditEntry.objects.filter(event_id=values.get("event_id")).first()
        if existing is None:
            raise
        return existing


class AuditSpool:
    """
    Write-ahead JSON-lines file.

    Each entry is appended as {"op": "put", "entry": {...}} and fsynced
    before enqueue; a successful write appends {"op": "ack", "event_id": ...}.
    `pending()` returns puts without a matching ack (replayed by
    `manage.py replay_audit_spool`).

    Appends, reads and compaction all hold an exclusive flock on a sidecar
    `<spool>.lock` file, so a replay run from another process cannot drop
    entries the running app appends while the spool is rewritten.
    """

    def __init__(self, path):
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self):
        # the sidecar is never replaced, so the flock survives os.replace of the spool
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.lock_path.open("a") as lock_fh:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)

    def _append(self, record: dict[str, Any]) -> None:
        line = json.dumps(record, cls=DjangoJSONEncoder, separators=(",", ":"))
        with self._locked():
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()
                os.fsync(fh.fileno())

    def put(self, payload: dict[str, Any]) -> None:
        self._append({"op": "put", "entry": payload})

    def ack(self, event_id) -> None:
        self._append({"op": "ack", "event_id": str(event_id)})

    def _read_pending(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []

        puts: dict[str, dict[str, Any]] = {}
        acked: set[str] = set()
        with self.path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    # torn final write after a crash
                    logger.warning("audit spool %s: unreadable line %d skipped", self.path, lineno)
                    continue
                if record.get("op") == "put":
                    entry = record.get("entry") or {}
                    puts[str(entry.get("event_id"))] = entry
                elif record.get("op") == "ack":
                    acked.add(str(record.get("event_id")))

        return [entry for event_id, entry in puts.items() if event_id not in acked]

    def pending(self) -> list[dict[str, Any]]:
        with self._locked():
            return self._read_pending()

    def compact(self) -> int:
        """Rewrite the spool keeping only unacknowledged entries."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with self._locked():
            remaining = self._read_pending()
            with tmp.open("w", encoding="utf-8") as fh:
                for entry in remaining:
                    fh.write(json.dumps({"op": "put", "entry": entry}, cls=DjangoJSONEncoder) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        return len(remaining)


class AuditDispatcher:
    def __init__(
        self,
        *,
        sink: Callable[[dict[str, Any]], Any] = persist_entry,
        mode: str = MODE_SYNC,
        queue_size: int = 1000,
        max_retries: int = 5,
        backoff_seconds: float = 0.5,
        spool: Optional[AuditSpool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if mode not in (MODE_SYNC, MODE_ASYNC):
            raise ValueError(f"Unknown audit dispatch mode: {mode!r}")

        self.sink = sink
        self.mode = mode
        self.max_retries = max(0, int(max_retries))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.spool = spool
        self._sleep = sleep

        self._queue: queue.Queue = queue.Queue(maxsize=max(1, int(queue_size)))
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, payload: dict[str, Any]) -> None:
        """Durable enqueue; never raises on persistence failure."""
        if self.spool is not None:
            self.spool.put(payload)

        if self.mode == MODE_SYNC:
            self._write_with_retry(payload)
            return

        self._ensure_worker()
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            logger.warning("audit queue full (%d); flushing entry %s inline", self._queue.maxsize, payload.get("event_id"))
            self._write_with_retry(payload)

    def write_now(self, payload: dict[str, Any]) -> None:
        """Inline write that propagates AuditWriteFailure (durable records)."""
        if not self._write_with_retry(payload):
            raise AuditWriteFailure(f"audit entry {payload.get('event_id')} could not be persisted")

    def flush(self) -> None:
        """Block until every queued entry has been handled."""
        if self.mode == MODE_ASYNC and self._worker is not None:
            self._queue.join()

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        worker = self._worker
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout=timeout)
        self._worker = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write_with_retry(self, payload: dict[str, Any]) -> bool:
        delay = self.backoff_seconds
        attempt = 0
        while True:
            try:
                self.sink(payload)
            except Exception as exc:
                attempt += 1
                if attempt > self.max_retries:
                    self._alert(payload, exc, attempts=attempt)
                    return False
                logger.warning(
                    "audit write failed (attempt %d/%d) for %s: %s",
                    attempt,
                    self.max_retries + 1,
                    payload.get("event_id"),
                    exc,
                )
                if delay:
                    self._sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)
                continue

            if self.spool is not None:
                self.spool.ack(payload.get("event_id"))
            return True

    def _alert(self, payload: dict[str, Any], exc: Exception, *, attempts: int) -> None:
        alerts.critical(
            "audit entry %s (%s) dropped after %d attempts: %s",
            payload.get("event_id"),
            payload.get("action"),
            attempts,
            exc,
            extra={"audit_event_id": str(payload.get("event_id")), "audit_action": payload.get("action")},
        )
        audit_write_failed.send(sender=self.__class__, payload=payload, error=exc)

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="audit-flusher", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            try:
                if payload is None:
                    return
                close_old_connections()
                self._write_with_retry(payload)
            finally:
                self._queue.task_done()
