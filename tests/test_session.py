from threading import Event
from unittest.mock import MagicMock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from vigie.container import (
    DEPENDS_ON_LABEL,
    MONITOR_ONLY_LABEL,
    PRE_UPDATE_LABEL,
    SCOPE_LABEL,
    SUPERVISOR_LABEL,
    SWARM_SERVICE_LABEL,
)
from vigie.errors import ErrorKind, SessionError, SessionErrorKind
from vigie.metrics import Metrics
from vigie.report import Status
from vigie.session import Session, Supervisor


def _run(engine, settings, **kwargs):
    return Session(engine, settings, **kwargs).run()


def test_updates_stale_containers(engine, settings):
    engine.add("db")
    engine.add("web", labels={DEPENDS_ON_LABEL: "db"})
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, settings).report
    assert report.summary() == {"scanned": 2, "updated": 2, "failed": 0, "restarted": 0}
    assert [entry.name for entry in report.stale] == ["db", "web"]
    assert engine.events_of("start") == ["db", "web"]


def test_second_session_is_a_no_op(engine, settings):
    engine.add("web")
    engine.publish("app:latest", "sha256:new")
    _run(engine, settings)
    engine.events.clear()
    report = _run(engine, settings).report
    assert engine.events == []
    assert report.summary()["updated"] == 0
    assert [entry.status for entry in report.fresh] == [Status.FRESH]


def test_nothing_stale(engine, settings):
    engine.add("web")
    report = _run(engine, settings).report
    assert report.find("web").status is Status.FRESH
    assert engine.events == []


def test_dependents_are_restarted_in_group_mode(engine, settings):
    engine.add("db", image="db:1", image_id="sha256:db-old")
    engine.add("web", image="web:1", image_id="sha256:web", labels={DEPENDS_ON_LABEL: "db"})
    engine.publish("db:1", "sha256:db-new")
    report = _run(engine, settings).report
    assert report.find("db").status is Status.UPDATED
    web = report.find("web")
    assert web.status is Status.RESTARTED
    assert report.fresh == ()
    assert engine.events_of("stop") == ["web", "db"]
    assert engine.by_name("web")["Image"] == "sha256:web"


def test_no_implicit_restart_in_rolling_mode(engine, make_settings):
    engine.add("db", image="db:1", image_id="sha256:db-old")
    engine.add("web", image="web:1", image_id="sha256:web", labels={DEPENDS_ON_LABEL: "db"})
    engine.publish("db:1", "sha256:db-new")
    report = _run(engine, make_settings(rolling_restart=True)).report
    assert report.find("web").status is Status.FRESH
    assert engine.events_of("stop") == ["db"]


def test_monitor_only_label(engine, settings):
    engine.add("watched", labels={MONITOR_ONLY_LABEL: "true"})
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, settings).report
    entry = report.find("watched")
    assert entry.status is Status.MONITOR_ONLY
    assert entry.candidate == "sha256:new"
    assert engine.events == []


def test_monitor_only_globally(engine, make_settings):
    engine.add("web")
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, make_settings(monitor_only=True)).report
    assert report.summary()["updated"] == 0
    assert len(report.monitor_only) == 1


def test_swarm_containers_are_skipped(engine, settings):
    engine.add("task", labels={SWARM_SERVICE_LABEL: "abc"})
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, settings).report
    entry = report.find("task")
    assert entry.status is Status.SKIPPED
    assert entry.kind is ErrorKind.FILTERED
    assert engine.pulls == []


def test_filtered_containers_are_untouched(engine, make_settings):
    engine.add("blue", labels={SCOPE_LABEL: "blue"})
    engine.add("green", labels={SCOPE_LABEL: "green"})
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, make_settings(scope="blue")).report
    assert [entry.name for entry in report.scanned] == ["blue"]
    assert report.find("green") is None
    assert engine.events_of("stop") == ["blue"]


def test_targeted_images(engine, settings):
    engine.add("web")
    engine.add("cache", image="redis:7", image_id="sha256:redis-old")
    engine.publish("app:latest", "sha256:new")
    engine.publish("redis:7", "sha256:redis-new")
    report = _run(engine, settings, images=["redis"]).report
    assert [entry.name for entry in report.updated] == ["cache"]
    assert engine.pulls == ["redis:7"]


def test_detection_failure_is_isolated(engine, settings):
    engine.add("broken", image="broken:1", image_id="sha256:b")
    engine.add("web")
    engine.fail("pull", "broken:1")
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, settings).report
    assert report.find("broken").kind is ErrorKind.PULL_FAILED
    assert report.find("web").status is Status.UPDATED


def test_cycle_members_fail(engine, settings):
    engine.add("a", labels={DEPENDS_ON_LABEL: "b"})
    engine.add("b", labels={DEPENDS_ON_LABEL: "a"})
    engine.add("c")
    engine.publish("app:latest", "sha256:new")
    report = _run(engine, settings).report
    assert report.find("a").kind is ErrorKind.DEPENDENCY_CYCLE
    assert report.find("b").kind is ErrorKind.DEPENDENCY_CYCLE
    assert report.find("c").status is Status.UPDATED
    assert "a" in engine.running_names()


def test_fresh_cycle_is_harmless(engine, settings):
    engine.add("a", labels={DEPENDS_ON_LABEL: "b"})
    engine.add("b", labels={DEPENDS_ON_LABEL: "a"})
    report = _run(engine, settings).report
    assert {entry.status for entry in report.fresh} == {Status.FRESH}
    assert report.failed == ()


def test_cleanup_removes_only_unreferenced_images(engine, make_settings):
    engine.add("web")
    engine.add("worker")
    engine.publish("app:latest", "sha256:new")
    result = _run(engine, make_settings(cleanup=True))
    assert result.cleaned == ("sha256:old",)
    assert "sha256:old" not in engine.images


def test_cleanup_keeps_images_still_in_use(engine, make_settings):
    engine.add("web")
    engine.add("pinned", image="legacy:1", image_id="sha256:old")
    engine.publish("app:latest", "sha256:new")
    result = _run(engine, make_settings(cleanup=True, names=("web",)))
    assert result.cleaned == ()
    assert "sha256:old" in engine.images


def test_no_cleanup_without_flag(engine, settings):
    engine.add("web")
    engine.publish("app:latest", "sha256:new")
    assert _run(engine, settings).cleaned == ()
    assert "sha256:old" in engine.images


def test_cancelled_before_detection(engine, settings):
    engine.add("web")
    engine.publish("app:latest", "sha256:new")
    cancel = Event()
    cancel.set()
    report = _run(engine, settings, cancel=cancel).report
    assert report.find("web").kind is ErrorKind.CANCELLED
    assert engine.pulls == []


def test_stale_self_is_planned_not_executed(engine, make_settings):
    engine.add("vigie", image="vigie:latest", labels={SUPERVISOR_LABEL: "true"})
    engine.publish("vigie:latest", "sha256:new")
    result = _run(engine, make_settings(), self_id="vigie-id")
    assert result.self_update is not None
    assert result.self_update.candidate == "sha256:new"
    assert result.report.find("vigie") is None
    assert [entry.name for entry in result.report.stale] == ["vigie"]
    assert engine.events == []


def test_self_update_disabled(engine, make_settings):
    engine.add("vigie", image="vigie:latest", labels={SUPERVISOR_LABEL: "true"})
    engine.publish("vigie:latest", "sha256:new")
    result = _run(engine, make_settings(no_self_update=True), self_id="vigie-id")
    assert result.self_update is None
    assert result.report.find("vigie").kind is ErrorKind.SELF_UPDATE_DISABLED


@pytest.fixture
def supervisor(engine, settings):
    return Supervisor(engine, settings, notifiers=[MagicMock()], metrics=Metrics())


def test_supervisor_runs_and_notifies(supervisor, engine):
    engine.add("web")
    engine.publish("app:latest", "sha256:new")
    report = supervisor.try_run()
    assert report.summary()["updated"] == 1
    assert supervisor.last_report is report
    assert not supervisor.lock.locked
    supervisor.notifiers[0].send.assert_called_once()
    assert supervisor.metrics.registry.get_sample_value("watchtower_containers_updated") == 1


def test_supervisor_skips_when_busy(supervisor):
    assert supervisor.lock.try_acquire()
    assert supervisor.try_run() is None
    registry = supervisor.metrics.registry
    assert registry.get_sample_value("watchtower_scans_total") == 1
    assert registry.get_sample_value("watchtower_scans_skipped_total") == 1
    supervisor.lock.release()


def test_engine_unreachable_becomes_session_error(supervisor, engine):
    def _down(*args, **kwargs):
        raise RequestsConnectionError("connection refused")

    engine.list_containers = _down
    report = supervisor.try_run()
    assert report.session_error.startswith("EngineUnreachable")
    assert report.summary()["failed"] == 1
    assert not supervisor.lock.locked
    supervisor.notifiers[0].send.assert_called_once()


def test_multiple_instances_abort_newest(engine, settings):
    labels = {SUPERVISOR_LABEL: "true"}
    engine.add("vigie-a", image="vigie:latest", labels=labels, created="2024-01-01T00:00:00Z")
    engine.add("vigie-b", image="vigie:latest", labels=labels, created="2024-02-01T00:00:00Z")
    supervisor = Supervisor(engine, settings, self_id="vigie-b-id")
    report = supervisor.try_run()
    assert report.session_error.startswith("MultipleInstances")
    assert engine.pulls == []
    assert report.session_kind is SessionErrorKind.MULTIPLE_INSTANCES
    assert supervisor.fatal is not None
    assert supervisor.stop.is_set()


def test_oldest_instance_keeps_running(engine, settings):
    labels = {SUPERVISOR_LABEL: "true"}
    engine.add("vigie-a", image="vigie:latest", labels=labels, created="2024-01-01T00:00:00Z")
    engine.add("vigie-b", image="vigie:latest", labels=labels, created="2024-02-01T00:00:00Z")
    report = Supervisor(engine, settings, self_id="vigie-a-id").try_run()
    assert report.session_error is None


def test_stale_self_stops_supervisor(engine, settings):
    engine.add("vigie", image="vigie:latest", labels={SUPERVISOR_LABEL: "true"})
    engine.publish("vigie:latest", "sha256:new")
    supervisor = Supervisor(engine, settings, self_id="vigie-id")
    supervisor.try_run()
    assert supervisor.pending_self_update is not None
    assert supervisor.stop.is_set()


def test_crashed_session_is_reported_and_frees_lock(supervisor, engine):
    def _broken(*args, **kwargs):
        raise ValueError("bad payload")

    engine.list_containers = _broken
    report = supervisor.try_run()
    assert report.session_error.startswith("session crashed")
    assert report.session_kind is None
    assert not supervisor.lock.locked
    supervisor.notifiers[0].send.assert_called_once()
    assert supervisor.try_run() is not None


def test_hook_timeout_leaves_nothing_stopped(engine, make_settings):
    engine.add("db", labels={PRE_UPDATE_LABEL: "backup"})
    engine.add("web", labels={DEPENDS_ON_LABEL: "db"})
    engine.publish("app:latest", "sha256:new")
    engine.exec_errors["backup"] = ReadTimeout("read timed out")
    supervisor = Supervisor(engine, make_settings(lifecycle_hooks=True), notifiers=[MagicMock()])

    report = supervisor.try_run()
    assert report.find("db").kind is ErrorKind.PRE_HOOK_FAILED
    assert report.find("web").status is Status.UPDATED
    assert engine.running_names() == {"db", "web"}
    assert not supervisor.lock.locked
    supervisor.notifiers[0].send.assert_called_once()


def test_startup_instance_check(engine, settings):
    labels = {SUPERVISOR_LABEL: "true"}
    engine.add("vigie-a", image="vigie:latest", labels=labels, created="2024-01-01T00:00:00Z")
    engine.add("vigie-b", image="vigie:latest", labels=labels, created="2024-02-01T00:00:00Z")
    Supervisor(engine, settings, self_id="vigie-a-id").check_instances()
    with pytest.raises(SessionError) as excinfo:
        Supervisor(engine, settings, self_id="vigie-b-id").check_instances()
    assert excinfo.value.kind is SessionErrorKind.MULTIPLE_INSTANCES


def test_startup_instance_check_engine_down(engine, settings):
    def _down(*args, **kwargs):
        raise RequestsConnectionError("connection refused")

    engine.list_containers = _down
    with pytest.raises(SessionError) as excinfo:
        Supervisor(engine, settings, self_id="vigie-id").check_instances()
    assert excinfo.value.kind is SessionErrorKind.ENGINE_UNREACHABLE
