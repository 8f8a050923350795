from enum import Enum
from typing import Optional

from docker.errors import DockerException
from requests import RequestException


class ErrorKind(str, Enum):
    IMAGE_UNRESOLVABLE = "ImageUnresolvable"
    PULL_FAILED = "PullFailed"
    STOP_FAILED = "StopFailed"
    REMOVE_FAILED = "RemoveFailed"
    CREATE_FAILED = "CreateFailed"
    START_FAILED = "StartFailed"
    PRE_HOOK_FAILED = "PreHookFailed"
    PRE_HOOK_SKIPPED = "PreHookSkipped"
    POST_HOOK_FAILED = "PostHookFailed"
    DEPENDENCY_CYCLE = "DependencyCycle"
    DEPENDENCY_FAILED = "DependencyFailed"
    CANCELLED = "Cancelled"
    FILTERED = "Filtered"
    MONITOR_ONLY_STALE = "MonitorOnlyStale"
    SELF_UPDATE_DISABLED = "SelfUpdateDisabled"

    def __str__(self) -> str:
        return self.value


class SessionErrorKind(str, Enum):
    ENGINE_UNREACHABLE = "EngineUnreachable"
    MULTIPLE_INSTANCES = "MultipleInstances"
    INVALID_SCHEDULE = "InvalidSchedule"
    DISCOVERY_FAILED = "DiscoveryFailed"

    def __str__(self) -> str:
        return self.value


# docker-py surfaces socket timeouts as requests exceptions
ENGINE_ERRORS = (DockerException, RequestException)


class UpdateError(Exception):
    def __init__(self, kind: ErrorKind, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    def __str__(self) -> str:
        message = super().__str__()
        if self.cause is not None:
            return f"{message}: {self.cause}"
        return message


class SessionError(Exception):
    def __init__(self, kind: SessionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class ConfigError(Exception):
    pass


class DuplicateEntryError(ValueError):
    pass
