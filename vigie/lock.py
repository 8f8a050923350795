from threading import Condition
from time import monotonic
from typing import Callable, Optional


class UpdateLock:
    def __init__(self):
        self._condition = Condition()
        self._held = False

    @property
    def locked(self) -> bool:
        with self._condition:
            return self._held

    def try_acquire(self) -> bool:
        with self._condition:
            if self._held:
                return False
            self._held = True
            return True

    def acquire(
        self,
        timeout: Optional[float] = None,
        abort: Optional[Callable[[], bool]] = None,
        poll: float = 0.1,
    ) -> bool:
        deadline = monotonic() + timeout if timeout else None
        with self._condition:
            while self._held:
                if abort is not None and abort():
                    return False
                wait = poll
                if deadline is not None:
                    remaining = deadline - monotonic()
                    if remaining <= 0:
                        return False
                    wait = min(wait, remaining)
                self._condition.wait(wait)
            self._held = True
            return True

    def release(self) -> None:
        with self._condition:
            if not self._held:
                raise RuntimeError("release of an unheld update lock")
            self._held = False
            self._condition.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        deadline = monotonic() + timeout if timeout else None
        with self._condition:
            while self._held:
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True
