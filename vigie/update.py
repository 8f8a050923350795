from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from threading import Event
from typing import Optional

from .config import Settings
from .container import Container
from .dependencies import DependencyGraph
from .errors import ENGINE_ERRORS, ErrorKind, UpdateError
from .lifecycle import run_post_update, run_pre_update
from .report import ReportBuilder
from .utils import log_fields, short_id

LOG = getLogger(__name__)


class UpdateState(str, Enum):
    SELECTED = "selected"
    PRE_HOOK = "pre-hook"
    STOPPING = "stopping"
    REMOVED = "removed"
    RECREATED = "recreated"
    STARTING = "starting"
    POST_HOOK = "post-hook"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UpdateTarget:
    container: Container
    current: str
    candidate: str
    restart_only: bool = False

    @property
    def id(self) -> str:
        return self.container.id


class UpdateExecutor:
    def __init__(
        self,
        engine,
        settings: Settings,
        report: ReportBuilder,
        graph: DependencyGraph,
        cancel: Optional[Event] = None,
    ):
        self.engine = engine
        self.settings = settings
        self.report = report
        self.graph = graph
        self.cancel = cancel or Event()
        self.cleanup_images: set[str] = set()
        self.states: dict[str, UpdateState] = {}

    def _transition(self, target: UpdateTarget, state: UpdateState) -> None:
        self.states[target.id] = state
        LOG.debug("%s -> %s", target.container.name, state.value)

    def _fail(self, target: UpdateTarget, error: UpdateError, new_id: Optional[str] = None) -> None:
        self._transition(target, UpdateState.FAILED)
        container = target.container
        LOG.error(
            "Update of %s failed: %s",
            container.name,
            error,
            extra=log_fields(container.id, container.name, container.image_ref, str(error.kind)),
        )
        self.report.failed(container, error.kind, str(error), target.current, target.candidate, new_id)

    def _skip(self, target: UpdateTarget, kind: ErrorKind, reason: str) -> None:
        self._transition(target, UpdateState.SKIPPED)
        container = target.container
        LOG.info(
            "Skipping %s: %s",
            container.name,
            reason,
            extra=log_fields(container.id, container.name, container.image_ref, str(kind)),
        )
        self.report.skipped(container, kind, reason, target.current, target.candidate)

    def run(self, targets: list[UpdateTarget]) -> None:
        if not targets:
            return
        by_id = {target.id: target for target in targets}
        ordered = [by_id[container_id] for container_id in self.graph.order(by_id)]
        for target in ordered:
            self._transition(target, UpdateState.SELECTED)
        if self.settings.rolling_restart:
            self._run_rolling(ordered)
        else:
            self._run_group(ordered)

    def _run_group(self, ordered: list[UpdateTarget]) -> None:
        stopped: set[str] = set()
        try:
            for index, target in enumerate(reversed(ordered)):
                if self.cancel.is_set():
                    for pending in list(reversed(ordered))[index:]:
                        self._skip(pending, ErrorKind.CANCELLED, "session cancelled")
                    break
                if self._stop(target):
                    stopped.add(target.id)
        finally:
            # stopped containers are always brought back
            for target in ordered:
                if target.id in stopped:
                    self._replace(target)

    def _run_rolling(self, ordered: list[UpdateTarget]) -> None:
        for index, target in enumerate(ordered):
            if self.cancel.is_set():
                for pending in ordered[index:]:
                    self._skip(pending, ErrorKind.CANCELLED, "session cancelled")
                return
            succeeded = self._stop(target) and self._replace(target)
            if succeeded or self.states.get(target.id) == UpdateState.SKIPPED:
                continue
            if self.graph.dependents.get(target.id):
                reason = f"dependency {target.container.name} failed to update"
                for pending in ordered[index + 1:]:
                    self._skip(pending, ErrorKind.DEPENDENCY_FAILED, reason)
                return

    def _stop(self, target: UpdateTarget) -> bool:
        container = target.container
        if self.settings.lifecycle_hooks and not target.restart_only:
            self._transition(target, UpdateState.PRE_HOOK)
            try:
                run_pre_update(self.engine, container, self.settings)
            except UpdateError as error:
                if error.kind == ErrorKind.PRE_HOOK_SKIPPED:
                    self._skip(target, error.kind, str(error))
                else:
                    self._fail(target, error)
                return False
        self._transition(target, UpdateState.STOPPING)
        try:
            self.engine.stop_container(container, self.settings.stop_timeout)
        except ENGINE_ERRORS as error:
            self._fail(target, UpdateError(ErrorKind.STOP_FAILED, f"failed to stop {container.name}", error))
            return False
        return True

    def _replace(self, target: UpdateTarget) -> bool:
        container = target.container
        settings = self.settings
        try:
            self.engine.remove_container(container.id, settings.remove_volumes)
        except ENGINE_ERRORS as error:
            self._fail(target, UpdateError(ErrorKind.REMOVE_FAILED, f"failed to remove {container.name}", error))
            return False
        self._transition(target, UpdateState.REMOVED)

        try:
            new_id = self.engine.create_container(container, container.image_ref, settings.cpu_copy_mode)
        except ENGINE_ERRORS as error:
            self._fail(target, UpdateError(ErrorKind.CREATE_FAILED, f"failed to create {container.name}", error))
            return False
        self._transition(target, UpdateState.RECREATED)
        LOG.info(
            "Created %s (%s) from %s",
            container.name,
            short_id(new_id),
            short_id(target.candidate),
            extra=log_fields(new_id, container.name, container.image_ref),
        )

        should_start = not settings.no_restart and (container.running or container.restarting or settings.revive_stopped)
        if should_start:
            self._transition(target, UpdateState.STARTING)
            try:
                self.engine.start_container(new_id)
                running = self.engine.wait_running(new_id, settings.stop_timeout)
            except ENGINE_ERRORS as error:
                self._fail(target, UpdateError(ErrorKind.START_FAILED, f"failed to start {container.name}", error), new_id)
                return False
            if not running:
                self._fail(
                    target,
                    UpdateError(ErrorKind.START_FAILED, f"{container.name} did not reach running within {settings.stop_timeout}s"),
                    new_id,
                )
                return False
            if settings.lifecycle_hooks and not target.restart_only:
                self._transition(target, UpdateState.POST_HOOK)
                try:
                    run_post_update(self.engine, container, new_id, settings)
                except UpdateError as error:
                    self.cleanup_images.add(target.current)
                    self._fail(target, error, new_id)
                    return True
        else:
            LOG.info("Leaving %s stopped", container.name, extra=log_fields(new_id, container.name))

        self._transition(target, UpdateState.DONE)
        if target.restart_only:
            self.report.restarted(container, new_id)
        else:
            self.cleanup_images.add(target.current)
            self.report.updated(container, target.current, target.candidate, new_id)
            LOG.info(
                "Updated %s",
                container.name,
                extra=log_fields(new_id, container.name, container.image_ref),
            )
        return True
