from dataclasses import dataclass
from datetime import datetime
from logging import getLogger
from threading import Event
from typing import Callable, Iterable, Optional

from requests.exceptions import ConnectionError as RequestsConnectionError

from .cleanup import cleanup_images
from .config import Settings
from .container import Container, effective_policy
from .dependencies import DependencyGraph
from .errors import ENGINE_ERRORS, ErrorKind, SessionError, SessionErrorKind, UpdateError
from .filters import build_filter
from .lifecycle import run_post_checks, run_pre_checks
from .lock import UpdateLock
from .metrics import Metrics
from .notifier import Notifier, notify_all
from .registry import Credentials, RegistryProbe
from .report import Report, ReportBuilder
from .selfupdate import SelfUpdatePlan, check_multiple_instances, find_self, replace_self
from .staleness import StalenessResult, check_staleness
from .update import UpdateExecutor, UpdateTarget
from .utils import log_fields

LOG = getLogger(__name__)


@dataclass(frozen=True)
class SessionResult:
    report: Report
    self_update: Optional[SelfUpdatePlan] = None
    cleaned: tuple[str, ...] = ()


def _engine_failure(error: Exception, action: str) -> SessionError:
    if isinstance(error, RequestsConnectionError):
        return SessionError(SessionErrorKind.ENGINE_UNREACHABLE, f"engine unreachable while {action}: {error}")
    return SessionError(SessionErrorKind.DISCOVERY_FAILED, f"failed while {action}: {error}")


class Session:
    def __init__(
        self,
        engine,
        settings: Settings,
        images: Optional[Iterable[str]] = None,
        cancel: Optional[Event] = None,
        probe: Optional[RegistryProbe] = None,
        credentials: Optional[Credentials] = None,
        self_id: Optional[str] = None,
    ):
        self.engine = engine
        self.settings = settings
        self.images = list(images or [])
        self.cancel = cancel or Event()
        self.probe = probe
        self.credentials = credentials
        self.self_id = self_id
        self.report = ReportBuilder()

    def _discover(self) -> list[Container]:
        try:
            return self.engine.list_containers(self.settings.include_stopped, self.settings.include_restarting)
        except ENGINE_ERRORS as error:
            raise _engine_failure(error, "listing containers")

    def _select(self, containers: list[Container]) -> list[Container]:
        predicate, description = build_filter(self.settings, self.images)
        LOG.debug(description)
        selected: list[Container] = []
        for container in containers:
            if not predicate(container):
                LOG.debug("Filtered out %s", container.name)
                continue
            self.report.scanned(container)
            if container.is_swarm_managed:
                self.report.skipped(container, ErrorKind.FILTERED, "managed by swarm")
                continue
            selected.append(container)
        return selected

    def _detect(self, containers: list[Container]) -> dict[str, StalenessResult]:
        results: dict[str, StalenessResult] = {}
        for index, container in enumerate(containers):
            if self.cancel.is_set():
                for pending in containers[index:]:
                    self.report.skipped(pending, ErrorKind.CANCELLED, "session cancelled")
                break
            policy = effective_policy(container, self.settings)
            try:
                result = check_staleness(
                    self.engine,
                    container,
                    policy,
                    probe=self.probe,
                    credentials=self.credentials,
                    head_failure_strategy=self.settings.warn_on_head_failure,
                )
            except UpdateError as error:
                LOG.error(
                    "Could not check %s: %s",
                    container.name,
                    error,
                    extra=log_fields(container.id, container.name, container.image_ref, str(error.kind)),
                )
                self.report.failed(container, error.kind, str(error))
                continue
            results[container.id] = result
            if result.stale:
                self.report.stale(container, result.current, result.candidate)
        return results

    def run(self) -> SessionResult:
        containers = self._discover()
        self_container = find_self(containers, self.self_id) if self.self_id else None
        try:
            check_multiple_instances(self.engine, self_container, self.settings)
        except ENGINE_ERRORS as error:
            raise _engine_failure(error, "checking for other instances")

        selected = self._select(containers)
        if self.settings.lifecycle_hooks:
            run_pre_checks(self.engine, selected)

        results = self._detect(selected)
        graph = DependencyGraph(selected)
        blocked: set[str] = set()
        for cycle in graph.cycles():
            if not any(results.get(member) is not None and results[member].stale for member in cycle):
                continue
            names = ", ".join(sorted(graph.name(member) for member in cycle))
            for member in sorted(cycle, key=graph.position.get):
                blocked.add(member)
                if self.report.has_outcome(member):
                    continue
                container = graph.containers[member]
                result = results.get(member)
                LOG.error(
                    "Dependency cycle between %s",
                    names,
                    extra=log_fields(member, container.name, container.image_ref, str(ErrorKind.DEPENDENCY_CYCLE)),
                )
                self.report.failed(
                    container,
                    ErrorKind.DEPENDENCY_CYCLE,
                    f"dependency cycle between {names}",
                    result.current if result else "",
                    result.candidate if result else "",
                )

        plan: Optional[SelfUpdatePlan] = None
        targets: list[UpdateTarget] = []
        held: set[str] = set(blocked)
        for container in selected:
            result = results.get(container.id)
            if result is None or container.id in blocked:
                continue
            policy = effective_policy(container, self.settings)
            if policy.monitor_only:
                held.add(container.id)
                if result.stale:
                    LOG.info(
                        "Monitor only; not updating %s",
                        container.name,
                        extra=log_fields(container.id, container.name, container.image_ref, str(ErrorKind.MONITOR_ONLY_STALE)),
                    )
                    self.report.monitor_only(container, result.current, result.candidate)
                continue
            if self_container is not None and container.id == self_container.id:
                held.add(container.id)
                if not result.stale:
                    continue
                if self.settings.no_self_update:
                    self.report.skipped(
                        container, ErrorKind.SELF_UPDATE_DISABLED, "self update disabled", result.current, result.candidate
                    )
                else:
                    LOG.info("Own container is stale; scheduling self update", extra=log_fields(container.id, container.name))
                    plan = SelfUpdatePlan(container, result.current, result.candidate)
                continue
            if result.stale:
                targets.append(UpdateTarget(container, result.current, result.candidate))

        restart_ids: set[str] = set()
        if not self.settings.rolling_restart and targets:
            stale_ids = {target.id for target in targets}
            for dependent in graph.dependents_closure(stale_ids):
                if dependent in stale_ids or dependent in held or dependent not in results:
                    continue
                restart_ids.add(dependent)
                container = graph.containers[dependent]
                LOG.info("Restarting %s because a dependency is updated", container.name)
                targets.append(UpdateTarget(container, container.image_id, container.image_id, restart_only=True))

        for container in selected:
            result = results.get(container.id)
            if result is None or self.report.has_outcome(container.id) or container.id in restart_ids:
                continue
            if not result.stale:
                self.report.fresh(container, result.current, result.candidate)

        executor = UpdateExecutor(self.engine, self.settings, self.report, graph, self.cancel)
        executor.run(targets)

        if self.settings.lifecycle_hooks:
            predicate, _ = build_filter(self.settings, self.images)
            try:
                current = self.engine.list_containers(self.settings.include_stopped, self.settings.include_restarting)
                run_post_checks(self.engine, [container for container in current if predicate(container)])
            except ENGINE_ERRORS as error:
                LOG.warning("Skipping post-checks; could not list containers: %s", error)

        cleaned: list[str] = []
        if self.settings.cleanup and not self.cancel.is_set():
            cleaned = cleanup_images(self.engine, executor.cleanup_images)
        return SessionResult(self.report.build(), plan, tuple(cleaned))


class Supervisor:
    def __init__(
        self,
        engine,
        settings: Settings,
        notifiers: Optional[list[Notifier]] = None,
        metrics: Optional[Metrics] = None,
        probe: Optional[RegistryProbe] = None,
        credentials: Optional[Credentials] = None,
        self_id: Optional[str] = None,
        stop: Optional[Event] = None,
        lock: Optional[UpdateLock] = None,
    ):
        self.engine = engine
        self.settings = settings
        self.notifiers = notifiers or []
        self.metrics = metrics or Metrics()
        self.probe = probe
        self.credentials = credentials
        self.self_id = self_id
        self.stop = stop or Event()
        self.lock = lock or UpdateLock()
        self.pending_self_update: Optional[SelfUpdatePlan] = None
        self.last_report: Optional[Report] = None
        self.fatal: Optional[SessionError] = None

    def run_session(self, images: Optional[Iterable[str]] = None) -> SessionResult:
        session = Session(
            self.engine,
            self.settings,
            images=images,
            cancel=self.stop,
            probe=self.probe,
            credentials=self.credentials,
            self_id=self.self_id,
        )
        try:
            return session.run()
        except SessionError as error:
            LOG.error("Session aborted (%s): %s", error.kind, error, extra={"kind": str(error.kind)})
            session.report.session_failed(f"{error.kind}: {error}", error.kind)
            if error.kind is SessionErrorKind.MULTIPLE_INSTANCES:
                self.fatal = error
                self.stop.set()
        except Exception as error:
            LOG.exception("Session crashed")
            session.report.session_failed(f"session crashed: {error!r}")
        return SessionResult(session.report.build())

    def check_instances(self) -> None:
        """Raise SessionError when this instance must not run."""
        try:
            containers = self.engine.list_containers()
            self_container = find_self(containers, self.self_id) if self.self_id else None
            check_multiple_instances(self.engine, self_container, self.settings)
        except ENGINE_ERRORS as error:
            raise _engine_failure(error, "checking for other instances")

    def _locked_run(self, images: Optional[Iterable[str]]) -> Report:
        try:
            result = self.run_session(images)
        finally:
            self.lock.release()
        report = result.report
        self.last_report = report
        self.metrics.register_scan(report)
        LOG.info(
            "Session done: %s",
            ", ".join(f"{key}={value}" for key, value in report.summary().items()),
        )
        notify_all(
            self.notifiers,
            report,
            self.settings.notification_split_by_container,
            self.settings.notifications_hostname,
        )
        if result.self_update is not None:
            self.pending_self_update = result.self_update
            self.stop.set()
        return report

    def try_run(self, images: Optional[Iterable[str]] = None) -> Optional[Report]:
        if not self.lock.try_acquire():
            LOG.info("Skipping update; another update is already running")
            self.metrics.register_scan(None)
            return None
        return self._locked_run(images)

    def run_when_free(
        self,
        images: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
        abort: Optional[Callable[[], bool]] = None,
    ) -> Optional[Report]:
        if not self.lock.acquire(timeout=timeout, abort=abort):
            return None
        return self._locked_run(images)

    def complete_self_update(self) -> None:
        plan = self.pending_self_update
        if plan is None:
            return
        self.pending_self_update = None
        replace_self(self.engine, plan, self.settings)

    def startup_message(self, next_run: Optional[datetime]) -> None:
        _, description = build_filter(self.settings)
        LOG.info(description)
        if self.settings.scope:
            LOG.info("Only checking containers in scope %s", self.settings.scope)
        if next_run is not None:
            LOG.info("Scheduling first run: %s", next_run.isoformat())
        elif self.settings.run_once:
            LOG.info("Running a one time update")
        else:
            LOG.info("Periodic runs are not enabled")
