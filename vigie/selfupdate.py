import re
from dataclasses import dataclass
from logging import getLogger
from os import getenv
from typing import Iterable, Optional

from .config import Settings
from .container import Container, parse_image_reference
from .errors import ENGINE_ERRORS, SessionError, SessionErrorKind
from .filters import filter_by_scope
from .utils import rand_name, short_id

LOG = getLogger(__name__)

MOUNTINFO_PATH = "/proc/self/mountinfo"
CGROUP_PATH = "/proc/self/cgroup"
_MOUNTINFO_ID = re.compile(r"/(?:docker|containers)/containers/([0-9a-f]{64})/")
_CGROUP_ID = re.compile(r"(?:docker[-/]|libpod[-/]|/)([0-9a-f]{64})(?:\.scope)?\s*$")


def _scan(path: str, pattern: re.Pattern) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                match = pattern.search(line)
                if match:
                    return match.group(1)
    except OSError:
        return None
    return None


def detect_current_container_id(mountinfo: str = MOUNTINFO_PATH, cgroup: str = CGROUP_PATH) -> Optional[str]:
    return _scan(mountinfo, _MOUNTINFO_ID) or _scan(cgroup, _CGROUP_ID)


def find_self(
    containers: Iterable[Container],
    container_id: Optional[str] = None,
    hostname: Optional[str] = None,
) -> Optional[Container]:
    containers = list(containers)
    if container_id:
        for container in containers:
            if container.id == container_id or container.id.startswith(container_id):
                return container
    hostname = hostname if hostname is not None else getenv("HOSTNAME")
    if not hostname:
        return None
    matches = [
        container
        for container in containers
        if container.hostname == hostname or container.id.startswith(hostname)
    ]
    if len(matches) > 1:
        labelled = [container for container in matches if container.is_supervisor]
        matches = labelled or matches
    return matches[0] if matches else None


def _repository(container: Container) -> Optional[str]:
    try:
        return parse_image_reference(container.image_ref).name
    except ValueError:
        return None


def supervisor_peers(containers: Iterable[Container], self_container: Container, scope: Optional[str]) -> list[Container]:
    """Running supervisor instances in the same scope, oldest first, including self."""
    in_scope = filter_by_scope(scope)
    repository = _repository(self_container)
    peers = [
        container
        for container in containers
        if container.running
        and in_scope(container)
        and (container.id == self_container.id or container.is_supervisor or _repository(container) == repository)
    ]
    if self_container.id not in {peer.id for peer in peers}:
        peers.append(self_container)
    return sorted(peers, key=lambda container: container.created)


def check_multiple_instances(engine, self_container: Optional[Container], settings: Settings) -> None:
    if self_container is None:
        LOG.debug("Own container unknown; skipping multiple instance check")
        return
    peers = supervisor_peers(engine.list_containers(), self_container, settings.scope)
    if len(peers) <= 1 or peers[-1].id != self_container.id:
        return

    remaining: list[Container] = []
    for peer in peers[:-1]:
        if not settings.cleanup or peer.image_id == self_container.image_id:
            remaining.append(peer)
            continue
        LOG.info("Removing superseded instance %s (%s)", peer.name, short_id(peer.id))
        try:
            engine.stop_container(peer, settings.stop_timeout)
            engine.remove_container(peer.id, settings.remove_volumes)
        except ENGINE_ERRORS as error:
            LOG.warning("Could not remove instance %s: %s", peer.name, error)
            remaining.append(peer)

    if remaining:
        names = ", ".join(peer.name for peer in remaining)
        raise SessionError(
            SessionErrorKind.MULTIPLE_INSTANCES,
            f"another instance ({names}) is already running in this scope",
        )


@dataclass(frozen=True)
class SelfUpdatePlan:
    container: Container
    current: str
    candidate: str


def replace_self(engine, plan: SelfUpdatePlan, settings: Settings) -> None:
    """Exits the process with status 0 once the replacement is running."""
    container = plan.container
    placeholder = f"{container.name}-{rand_name(8)}"
    LOG.info("Replacing own container %s from %s", container.name, short_id(plan.candidate))
    engine.rename_container(container.id, placeholder)
    new_id: Optional[str] = None
    try:
        new_id = engine.create_container(container, container.image_ref, settings.cpu_copy_mode, name=container.name)
        engine.start_container(new_id)
    except ENGINE_ERRORS:
        LOG.error("Could not start replacement; restoring %s", container.name)
        if new_id is not None:
            engine.remove_container(new_id)
        engine.rename_container(container.id, container.name)
        raise
    LOG.info("Replacement %s started; removing %s", short_id(new_id), placeholder)
    engine.remove_container(container.id, settings.remove_volumes)
    raise SystemExit(0)
