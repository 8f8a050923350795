from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Optional

from .container import Container
from .errors import DuplicateEntryError, ErrorKind, SessionErrorKind
from .utils import now_utc


class Status(str, Enum):
    SCANNED = "scanned"
    STALE = "stale"
    FRESH = "fresh"
    UPDATED = "updated"
    FAILED = "failed"
    SKIPPED = "skipped"
    MONITOR_ONLY = "monitor-only-stale"
    RESTARTED = "restarted"

    def __str__(self) -> str:
        return self.value


TERMINAL_STATUSES = (
    Status.FRESH,
    Status.UPDATED,
    Status.FAILED,
    Status.SKIPPED,
    Status.MONITOR_ONLY,
    Status.RESTARTED,
)


@dataclass(frozen=True)
class ContainerReport:
    id: str
    name: str
    image: str
    status: Status
    current: str = ""
    candidate: str = ""
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    new_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "status": str(self.status),
            "current_image_id": self.current,
            "latest_image_id": self.candidate,
            "kind": str(self.kind) if self.kind is not None else None,
            "error": self.error,
            "new_id": self.new_id,
        }


@dataclass(frozen=True)
class Report:
    scanned: tuple[ContainerReport, ...] = ()
    stale: tuple[ContainerReport, ...] = ()
    fresh: tuple[ContainerReport, ...] = ()
    updated: tuple[ContainerReport, ...] = ()
    failed: tuple[ContainerReport, ...] = ()
    skipped: tuple[ContainerReport, ...] = ()
    monitor_only: tuple[ContainerReport, ...] = ()
    restarted: tuple[ContainerReport, ...] = ()
    entries: tuple[ContainerReport, ...] = ()
    session_error: Optional[str] = None
    session_kind: Optional[SessionErrorKind] = None
    started: datetime = field(default_factory=now_utc)
    finished: datetime = field(default_factory=now_utc)

    @property
    def duration(self) -> float:
        return (self.finished - self.started).total_seconds()

    def summary(self) -> dict[str, int]:
        return {
            "scanned": len(self.scanned),
            "updated": len(self.updated),
            "failed": len(self.failed) + (1 if self.session_error else 0),
            "restarted": len(self.restarted),
        }

    def find(self, name: str) -> Optional[ContainerReport]:
        for entry in reversed(self.entries):
            if entry.name == name and entry.status in TERMINAL_STATUSES:
                return entry
        return None


class ReportBuilder:
    def __init__(self):
        self._lock = Lock()
        self._entries: list[ContainerReport] = []
        self._seen: dict[Status, set[str]] = {}
        self._terminal: set[str] = set()
        self._started = now_utc()
        self._session_error: Optional[str] = None
        self._session_kind: Optional[SessionErrorKind] = None
        self._closed = False

    def _add(self, entry: ContainerReport) -> ContainerReport:
        with self._lock:
            if self._closed:
                raise RuntimeError("report already finalised")
            if entry.status in TERMINAL_STATUSES:
                if entry.id in self._terminal:
                    raise DuplicateEntryError(f"{entry.name} ({entry.id}) already has an outcome")
                self._terminal.add(entry.id)
            else:
                seen = self._seen.setdefault(entry.status, set())
                if entry.id in seen:
                    raise DuplicateEntryError(f"{entry.name} ({entry.id}) already {entry.status}")
                seen.add(entry.id)
            self._entries.append(entry)
            return entry

    def has_outcome(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._terminal

    def scanned(self, container: Container) -> ContainerReport:
        return self._add(
            ContainerReport(container.id, container.name, container.image_ref, Status.SCANNED, current=container.image_id)
        )

    def stale(self, container: Container, current: str, candidate: str) -> ContainerReport:
        return self._add(
            ContainerReport(container.id, container.name, container.image_ref, Status.STALE, current, candidate)
        )

    def fresh(self, container: Container, current: str, candidate: str) -> ContainerReport:
        return self._add(
            ContainerReport(container.id, container.name, container.image_ref, Status.FRESH, current, candidate)
        )

    def updated(self, container: Container, current: str, candidate: str, new_id: str) -> ContainerReport:
        return self._add(
            ContainerReport(
                container.id, container.name, container.image_ref, Status.UPDATED, current, candidate, new_id=new_id
            )
        )

    def restarted(self, container: Container, new_id: str) -> ContainerReport:
        return self._add(
            ContainerReport(
                container.id,
                container.name,
                container.image_ref,
                Status.RESTARTED,
                container.image_id,
                container.image_id,
                new_id=new_id,
            )
        )

    def failed(
        self,
        container: Container,
        kind: ErrorKind,
        error: str,
        current: str = "",
        candidate: str = "",
        new_id: Optional[str] = None,
    ) -> ContainerReport:
        return self._add(
            ContainerReport(
                container.id,
                container.name,
                container.image_ref,
                Status.FAILED,
                current or container.image_id,
                candidate,
                kind,
                error,
                new_id,
            )
        )

    def skipped(
        self, container: Container, kind: ErrorKind, reason: str = "", current: str = "", candidate: str = ""
    ) -> ContainerReport:
        return self._add(
            ContainerReport(
                container.id,
                container.name,
                container.image_ref,
                Status.SKIPPED,
                current or container.image_id,
                candidate,
                kind,
                reason or None,
            )
        )

    def monitor_only(self, container: Container, current: str, candidate: str) -> ContainerReport:
        return self._add(
            ContainerReport(
                container.id,
                container.name,
                container.image_ref,
                Status.MONITOR_ONLY,
                current,
                candidate,
                ErrorKind.MONITOR_ONLY_STALE,
            )
        )

    def session_failed(self, message: str, kind: Optional[SessionErrorKind] = None) -> None:
        with self._lock:
            self._session_error = message
            self._session_kind = kind

    def build(self) -> Report:
        with self._lock:
            self._closed = True
            entries = tuple(self._entries)

        def _of(status: Status) -> tuple[ContainerReport, ...]:
            return tuple(entry for entry in entries if entry.status == status)

        return Report(
            scanned=_of(Status.SCANNED),
            stale=_of(Status.STALE),
            fresh=_of(Status.FRESH),
            updated=_of(Status.UPDATED),
            failed=_of(Status.FAILED),
            skipped=_of(Status.SKIPPED),
            monitor_only=_of(Status.MONITOR_ONLY),
            restarted=_of(Status.RESTARTED),
            entries=entries,
            session_error=self._session_error,
            session_kind=self._session_kind,
            started=self._started,
            finished=now_utc(),
        )
