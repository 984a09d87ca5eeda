import json
import logging
import threading
import uuid

import pytest

from pm_core.audit.dispatch import MODE_ASYNC, AuditDispatcher, AuditSpool, AuditWriteFailure
from pm_core.audit.signals import audit_write_failed


def _payload(**extra):
    return {"event_id": str(uuid.uuid4()), "action": "thing.happened", **extra}


class FlakySink:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.written = []

    def __call__(self, payload):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("database unavailable")
        self.written.append(payload)


def test_sync_write_retries_with_backoff():
    sink = FlakySink(failures=2)
    sleeps = []
    dispatcher = AuditDispatcher(sink=sink, max_retries=3, backoff_seconds=0.5, sleep=sleeps.append)

    dispatcher.submit(_payload())

    assert len(sink.written) == 1
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_alert_and_never_raise(caplog, monkeypatch):
    # the alerts logger does not propagate to the root handlers by default
    monkeypatch.setattr(logging.getLogger("pm_core.audit.alerts"), "propagate", True)
    sink = FlakySink(failures=100)
    dispatcher = AuditDispatcher(sink=sink, max_retries=2, backoff_seconds=0, sleep=lambda _: None)
    received = []

    def _on_failure(sender, payload, error, **kwargs):
        received.append((payload["event_id"], str(error)))

    audit_write_failed.connect(_on_failure)
    try:
        with caplog.at_level(logging.CRITICAL, logger="pm_core.audit.alerts"):
            payload = _payload()
            dispatcher.submit(payload)
    finally:
        audit_write_failed.disconnect(_on_failure)

    assert sink.calls == 3
    assert received == [(payload["event_id"], "database unavailable")]
    alerts = [r for r in caplog.records if r.name == "pm_core.audit.alerts"]
    assert len(alerts) == 1
    assert payload["event_id"] in alerts[0].getMessage()


def test_write_now_propagates_failure():
    dispatcher = AuditDispatcher(sink=FlakySink(failures=100), max_retries=0, sleep=lambda _: None)

    with pytest.raises(AuditWriteFailure):
        dispatcher.write_now(_payload())


def test_async_mode_persists_in_order():
    sink = FlakySink()
    dispatcher = AuditDispatcher(sink=sink, mode=MODE_ASYNC, sleep=lambda _: None)
    payloads = [_payload(n=i) for i in range(5)]

    try:
        for p in payloads:
            dispatcher.submit(p)
        dispatcher.flush()
    finally:
        dispatcher.shutdown()

    assert [p["n"] for p in sink.written] == [0, 1, 2, 3, 4]
    assert dispatcher.pending == 0


def test_full_queue_writes_inline():
    written = []
    started = threading.Event()
    release = threading.Event()

    def blocking_sink(payload):
        if payload["n"] == 0:
            started.set()
            release.wait(timeout=5)
        written.append(payload["n"])

    dispatcher = AuditDispatcher(sink=blocking_sink, mode=MODE_ASYNC, queue_size=1, sleep=lambda _: None)
    try:
        dispatcher.submit(_payload(n=0))
        assert started.wait(timeout=5)
        dispatcher.submit(_payload(n=1))  # fills the queue
        dispatcher.submit(_payload(n=2))  # no room: written by the caller

        assert written == [2]

        release.set()
        dispatcher.flush()
    finally:
        release.set()
        dispatcher.shutdown()

    assert sorted(written) == [0, 1, 2]


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        AuditDispatcher(mode="carrier-pigeon")


def test_spool_tracks_unacknowledged_entries(tmp_path):
    spool = AuditSpool(tmp_path / "audit.jsonl")
    first, second = _payload(), _payload()

    spool.put(first)
    spool.put(second)
    spool.ack(first["event_id"])
    with spool.path.open("a", encoding="utf-8") as fh:
        fh.write('{"op": "put", "entr')  # torn write

    assert [e["event_id"] for e in spool.pending()] == [second["event_id"]]

    assert spool.compact() == 1
    lines = spool.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["entry"]["event_id"] == second["event_id"]


def test_dispatcher_acks_spool_only_after_write(tmp_path):
    ok = AuditDispatcher(sink=FlakySink(), spool=AuditSpool(tmp_path / "ok.jsonl"))
    broken = AuditDispatcher(
        sink=FlakySink(failures=100), spool=AuditSpool(tmp_path / "broken.jsonl"), max_retries=0,
        sleep=lambda _: None,
    )
    payload = _payload()

    ok.submit(payload)
    broken.submit(payload)

    assert ok.spool.pending() == []
    assert [e["event_id"] for e in broken.spool.pending()] == [payload["event_id"]]


def test_compaction_keeps_entries_appended_by_another_writer(tmp_path, monkeypatch):
    from pm_core.audit import dispatch

    path = tmp_path / "audit.jsonl"
    replayer, app = AuditSpool(path), AuditSpool(path)
    first, second = _payload(), _payload()
    replayer.put(first)

    real_replace = dispatch.os.replace
    observed = {}

    def replace_with_concurrent_put(src, dst):
        writer = threading.Thread(target=app.put, args=(second,))
        writer.start()
        writer.join(timeout=0.2)
        observed["writer_blocked"] = writer.is_alive()
        observed["writer"] = writer
        real_replace(src, dst)

    monkeypatch.setattr(dispatch.os, "replace", replace_with_concurrent_put)

    assert replayer.compact() == 1
    observed["writer"].join(timeout=5)

    assert observed["writer_blocked"] is True
    assert [e["event_id"] for e in app.pending()] == [first["event_id"], second["event_id"]]
