from json import dumps
from logging import getLogger
from typing import Optional

from .config import Settings
from .container import (
    POST_UPDATE_GID_LABEL,
    POST_UPDATE_TIMEOUT_LABEL,
    POST_UPDATE_UID_LABEL,
    PRE_UPDATE_GID_LABEL,
    PRE_UPDATE_TIMEOUT_LABEL,
    PRE_UPDATE_UID_LABEL,
    Container,
)
from .errors import ENGINE_ERRORS, ErrorKind, UpdateError
from .utils import log_fields

LOG = getLogger(__name__)

EX_TEMPFAIL = 75
CHECK_TIMEOUT = 60.0
HOOK_ERRORS = ENGINE_ERRORS + (TimeoutError,)


def hook_environment(container: Container) -> dict[str, str]:
    payload = {
        "name": container.name,
        "id": container.id,
        "image": container.image_ref,
        "image_id": container.image_id,
        "labels": container.labels,
    }
    return {"WT_CONTAINER": dumps(payload, sort_keys=True)}


def _execute(
    engine,
    container: Container,
    target_id: str,
    command: str,
    user: str,
    timeout: float,
) -> int:
    return engine.exec_command(
        target_id,
        command,
        user=user,
        environment=hook_environment(container),
        timeout=timeout,
    )


def _run_check(engine, container: Container, command: str, phase: str) -> None:
    if not command:
        return
    LOG.debug("Running %s command for %s", phase, container.name)
    try:
        exit_code = _execute(engine, container, container.id, command, "", CHECK_TIMEOUT)
    except HOOK_ERRORS as error:
        LOG.warning("%s command failed for %s: %s", phase, container.name, error)
        return
    if exit_code != 0:
        LOG.warning("%s command for %s exited with %s", phase, container.name, exit_code)


def run_pre_checks(engine, containers: list[Container]) -> None:
    for container in containers:
        if container.running:
            _run_check(engine, container, container.pre_check_command, "pre-check")


def run_post_checks(engine, containers: list[Container]) -> None:
    for container in containers:
        _run_check(engine, container, container.post_check_command, "post-check")


def run_pre_update(engine, container: Container, settings: Settings) -> None:
    # exit code 75 skips the update; advisory hooks only warn
    command = container.pre_update_command
    if not command:
        return
    if not container.running:
        LOG.debug("Skipping pre-update command for stopped container %s", container.name)
        return
    user = container.hook_user(
        PRE_UPDATE_UID_LABEL, PRE_UPDATE_GID_LABEL, settings.lifecycle_uid, settings.lifecycle_gid
    )
    timeout = container.hook_timeout(PRE_UPDATE_TIMEOUT_LABEL)
    LOG.info("Executing pre-update command for %s", container.name, extra=log_fields(container.id, container.name))
    error: Optional[BaseException] = None
    try:
        exit_code = _execute(engine, container, container.id, command, user, timeout)
    except HOOK_ERRORS as failure:
        exit_code, error = None, failure

    if exit_code == 0:
        return
    if exit_code == EX_TEMPFAIL:
        raise UpdateError(ErrorKind.PRE_HOOK_SKIPPED, "pre-update command asked to skip the update")
    message = f"pre-update command exited with {exit_code}" if error is None else "pre-update command failed"
    if container.pre_update_advisory:
        LOG.warning(
            "%s; continuing because the hook is advisory",
            message,
            extra=log_fields(container.id, container.name, kind=str(ErrorKind.PRE_HOOK_FAILED)),
        )
        return
    raise UpdateError(ErrorKind.PRE_HOOK_FAILED, message, error)


def run_post_update(engine, container: Container, new_container_id: str, settings: Settings) -> None:
    command = container.post_update_command
    if not command:
        return
    user = container.hook_user(
        POST_UPDATE_UID_LABEL, POST_UPDATE_GID_LABEL, settings.lifecycle_uid, settings.lifecycle_gid
    )
    timeout = container.hook_timeout(POST_UPDATE_TIMEOUT_LABEL)
    LOG.info("Executing post-update command for %s", container.name, extra=log_fields(new_container_id, container.name))
    try:
        exit_code = _execute(engine, container, new_container_id, command, user, timeout)
    except HOOK_ERRORS as error:
        raise UpdateError(ErrorKind.POST_HOOK_FAILED, "post-update command failed", error)
    if exit_code != 0:
        raise UpdateError(ErrorKind.POST_HOOK_FAILED, f"post-update command exited with {exit_code}")
