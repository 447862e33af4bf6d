import logging
from datetime import datetime, timezone

import pytest

from access_recorder import AccessRecorder
from errors import PersistenceError
from share_store import InMemoryShareStore, ShareRecord

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


class FlakyLogStore(InMemoryShareStore):
    def append_access_log(self, entry):
        raise PersistenceError("access_logs unavailable")


class FlakyViewCounterStore(InMemoryShareStore):
    def increment_view_count(self, share_id):
        raise PersistenceError("link_shares unavailable")


class FlakyCounterStore(InMemoryShareStore):
    def increment_download_count(self, share_id):
        raise PersistenceError("link_shares unavailable")


def seeded(store, **overrides):
    values = dict(id="s1", token="a" * 32, owner_id=1, certificate_ids=("c1",), created_at=NOW)
    values.update(overrides)
    store.insert_share(ShareRecord(**values))
    return store


def test_counters_track_recorded_events():
    store = seeded(InMemoryShareStore())
    recorder = AccessRecorder(store, clock=lambda: NOW)

    for _ in range(3):
        recorder.record_access("s1", "c1", "view", "link")
    for _ in range(2):
        recorder.record_access("s1", "c1", "download", "link")
    recorder.record_access("s1", "c1", "print", "link")
    recorder.record_access("s1", "c1", "email", "email", {"recipient_email": "bob@example.com"})

    share = store.get_by_id("s1")
    assert share.view_count == 3
    assert share.download_count == 2
    logs = store.list_access_logs(share_id="s1")
    assert len(logs) == 7
    assert {e.access_type for e in logs} == {"view", "download", "print", "email"}
    assert [e.recipient_email for e in logs if e.access_type == "email"] == ["bob@example.com"]


def test_metadata_is_copied_into_entry():
    store = seeded(InMemoryShareStore())
    AccessRecorder(store, clock=lambda: NOW).record_access(
        "s1", "c1", "view", "qrcode", {"user_agent": "pytest", "ip_address": "10.0.0.1"}
    )
    entry = store.list_access_logs()[0]
    assert entry.user_agent == "pytest"
    assert entry.ip_address == "10.0.0.1"
    assert entry.timestamp == NOW


def test_download_over_cap_is_refused_and_not_logged():
    store = seeded(InMemoryShareStore(), max_downloads=1)
    recorder = AccessRecorder(store, clock=lambda: NOW)

    assert recorder.record_access("s1", "c1", "download", "link") is True
    assert recorder.record_access("s1", "c1", "download", "link") is False
    assert len(store.list_access_logs()) == 1


def test_log_write_failure_is_swallowed(caplog):
    store = seeded(FlakyLogStore())
    recorder = AccessRecorder(store, clock=lambda: NOW)

    with caplog.at_level(logging.WARNING, logger="access_recorder"):
        assert recorder.record_access("s1", "c1", "download", "link") is True

    assert store.get_by_id("s1").download_count == 1
    assert "Access log write failed" in caplog.text


def test_download_counter_failure_refuses_download():
    store = seeded(FlakyCounterStore(), max_downloads=3)
    recorder = AccessRecorder(store, clock=lambda: NOW)

    with pytest.raises(PersistenceError):
        recorder.record_access("s1", "c1", "download", "link")

    assert store.list_access_logs() == []


def test_view_counter_failure_does_not_block_delivery(caplog):
    store = seeded(FlakyViewCounterStore())
    recorder = AccessRecorder(store, clock=lambda: NOW)

    with caplog.at_level(logging.WARNING, logger="access_recorder"):
        assert recorder.record_access("s1", "c1", "view", "link") is True

    assert len(store.list_access_logs()) == 1
    assert "View counter update failed" in caplog.text


def test_direct_events_have_no_share():
    store = InMemoryShareStore()
    AccessRecorder(store, clock=lambda: NOW).record_access(None, "c9", "print", "direct")
    entry = store.list_access_logs()[0]
    assert entry.share_id is None
    assert entry.access_method == "direct"
