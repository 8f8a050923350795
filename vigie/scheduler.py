from dataclasses import dataclass
from datetime import datetime, timedelta
from logging import getLogger
from threading import Event, Thread
from typing import Callable, Optional

from croniter import croniter

from .errors import SessionError, SessionErrorKind
from .utils import format_duration, now_tz, parse_duration

LOG = getLogger(__name__)

EVERY_PREFIX = "@every"


@dataclass(frozen=True)
class Schedule:
    expression: str
    interval: Optional[float] = None
    second_at_beginning: bool = False

    @classmethod
    def parse(cls, expression: str) -> "Schedule":
        expression = (expression or "").strip()
        if not expression:
            raise SessionError(SessionErrorKind.INVALID_SCHEDULE, "empty schedule")
        if expression.startswith(EVERY_PREFIX):
            try:
                interval = parse_duration(expression[len(EVERY_PREFIX):])
            except ValueError as error:
                raise SessionError(SessionErrorKind.INVALID_SCHEDULE, f"invalid schedule {expression!r}: {error}")
            if interval <= 0:
                raise SessionError(SessionErrorKind.INVALID_SCHEDULE, f"invalid schedule {expression!r}: must be positive")
            return cls(expression, interval=interval)

        fields = expression.split()
        if not expression.startswith("@") and len(fields) not in (5, 6):
            raise SessionError(
                SessionErrorKind.INVALID_SCHEDULE,
                f"invalid schedule {expression!r}: expected 5 or 6 fields, got {len(fields)}",
            )
        schedule = cls(expression, second_at_beginning=len(fields) == 6)
        try:
            schedule._iterator(datetime.now())
        except (ValueError, KeyError) as error:
            raise SessionError(SessionErrorKind.INVALID_SCHEDULE, f"invalid schedule {expression!r}: {error}")
        return schedule

    def _iterator(self, start: datetime) -> croniter:
        if self.second_at_beginning:
            return croniter(self.expression, start, second_at_beginning=True)
        return croniter(self.expression, start)

    def next_after(self, reference: datetime) -> datetime:
        if self.interval is not None:
            return reference + timedelta(seconds=self.interval)
        return self._iterator(reference).get_next(datetime)


class Scheduler:
    def __init__(
        self,
        schedule: Schedule,
        job: Callable[[], object],
        stop: Event,
        timezone: str = "UTC",
        update_on_start: bool = False,
    ):
        self.schedule = schedule
        self.job = job
        self.stop = stop
        self.timezone = timezone
        self.update_on_start = update_on_start
        self._workers: list[Thread] = []

    def next_run(self) -> datetime:
        return self.schedule.next_after(now_tz(self.timezone))

    def _run_job(self) -> None:
        try:
            self.job()
        except Exception:
            LOG.exception("Scheduled update crashed")

    def _fire(self) -> None:
        self._workers = [worker for worker in self._workers if worker.is_alive()]
        worker = Thread(target=self._run_job, name="vigie-session", daemon=True)
        self._workers.append(worker)
        worker.start()

    def run(self) -> None:
        if self.update_on_start and not self.stop.is_set():
            LOG.info("Running update on start")
            self._run_job()
        while not self.stop.is_set():
            now = now_tz(self.timezone)
            next_run = self.schedule.next_after(now)
            delay = max((next_run - now).total_seconds(), 0.0)
            LOG.debug("Next scheduled run at %s (in %s)", next_run.isoformat(), format_duration(delay))
            if self.stop.wait(delay):
                break
            self._fire()
        self.shutdown()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        for worker in self._workers:
            if worker.is_alive():
                LOG.info("Waiting for the running update to finish")
                worker.join(timeout)
        self._workers = [worker for worker in self._workers if worker.is_alive()]
