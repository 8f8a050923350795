import pytest

from vigie.errors import DuplicateEntryError, ErrorKind, SessionErrorKind
from vigie.report import ReportBuilder, Status
from conftest import make_container


def test_summary_counts():
    builder = ReportBuilder()
    web, db, cache = make_container("web"), make_container("db"), make_container("cache")
    for container in (web, db, cache):
        builder.scanned(container)
    builder.stale(web, "sha256:old", "sha256:new")
    builder.updated(web, "sha256:old", "sha256:new", "web-new")
    builder.failed(db, ErrorKind.PULL_FAILED, "boom")
    builder.restarted(cache, "cache-new")
    report = builder.build()

    assert report.summary() == {"scanned": 3, "updated": 1, "failed": 1, "restarted": 1}
    assert [entry.status for entry in report.entries[3:]] == [Status.STALE, Status.UPDATED, Status.FAILED, Status.RESTARTED]
    assert report.find("db").kind is ErrorKind.PULL_FAILED
    assert report.find("missing") is None


def test_session_error_counts_as_failure():
    builder = ReportBuilder()
    builder.session_failed("EngineUnreachable: down", SessionErrorKind.ENGINE_UNREACHABLE)
    report = builder.build()
    assert report.session_error == "EngineUnreachable: down"
    assert report.session_kind is SessionErrorKind.ENGINE_UNREACHABLE
    assert report.summary()["failed"] == 1


def test_one_terminal_entry_per_container():
    builder = ReportBuilder()
    web = make_container("web")
    builder.fresh(web, "a", "a")
    with pytest.raises(DuplicateEntryError):
        builder.failed(web, ErrorKind.STOP_FAILED, "late")
    assert builder.has_outcome("web-id")


def test_duplicate_scan_rejected():
    builder = ReportBuilder()
    web = make_container("web")
    builder.scanned(web)
    with pytest.raises(DuplicateEntryError):
        builder.scanned(web)


def test_build_freezes():
    builder = ReportBuilder()
    report = builder.build()
    with pytest.raises(RuntimeError):
        builder.scanned(make_container("web"))
    assert report.duration >= 0
    assert report.session_kind is None


def test_entry_to_dict():
    builder = ReportBuilder()
    entry = builder.skipped(make_container("web"), ErrorKind.CANCELLED, "session cancelled")
    data = entry.to_dict()
    assert data["status"] == "skipped"
    assert data["kind"] == "Cancelled"
    assert data["error"] == "session cancelled"
    assert data["current_image_id"] == "sha256:old"


def test_monitor_only_entry_carries_kind():
    builder = ReportBuilder()
    entry = builder.monitor_only(make_container("web"), "a", "b")
    assert entry.status is Status.MONITOR_ONLY
    assert entry.kind is ErrorKind.MONITOR_ONLY_STALE
