from dataclasses import dataclass
from logging import DEBUG, WARNING, getLogger
from typing import Optional

from docker.errors import ImageNotFound
from requests import RequestException

from .container import Container, EffectivePolicy, ImageReference, parse_image_reference
from .errors import ENGINE_ERRORS, ErrorKind, UpdateError
from .registry import Credentials, RegistryError, RegistryProbe
from .utils import log_fields, short_id

LOG = getLogger(__name__)

# registries known to answer HEAD requests reliably
HEAD_WARNING_REGISTRIES = {"docker.io", "ghcr.io", "index.docker.io"}


@dataclass(frozen=True)
class StalenessResult:
    stale: bool
    current: str
    candidate: str
    image_ref: str


def _repo_digests(image_attrs: Optional[dict]) -> set[str]:
    digests = set()
    for entry in (image_attrs or {}).get("RepoDigests") or []:
        _, _, digest = entry.partition("@")
        if digest:
            digests.add(digest)
    return digests


def _head_failure_level(strategy: str, reference: ImageReference) -> int:
    if strategy == "always":
        return WARNING
    if strategy == "never":
        return DEBUG
    return WARNING if reference.registry in HEAD_WARNING_REGISTRIES else DEBUG


def _head_says_fresh(
    engine,
    container: Container,
    reference: ImageReference,
    probe: RegistryProbe,
    head_failure_strategy: str,
) -> bool:
    try:
        remote = probe.manifest_digest(reference)
    except (RegistryError, RequestException) as error:
        LOG.log(
            _head_failure_level(head_failure_strategy, reference),
            "Could not do a HEAD request for %s, falling back to a pull: %s",
            reference,
            error,
            extra=log_fields(container.id, container.name, reference.reference),
        )
        return False
    try:
        local = _repo_digests(engine.inspect_image(container.image_id))
    except ENGINE_ERRORS as error:
        LOG.debug("Could not inspect running image of %s: %s", container.name, error)
        return False
    if remote in local:
        LOG.debug("Digest for %s matches the registry; skipping pull", reference)
        return True
    return False


def check_staleness(
    engine,
    container: Container,
    policy: EffectivePolicy,
    probe: Optional[RegistryProbe] = None,
    credentials: Optional[Credentials] = None,
    head_failure_strategy: str = "auto",
) -> StalenessResult:
    try:
        reference = parse_image_reference(container.image_ref)
    except ValueError as error:
        raise UpdateError(ErrorKind.IMAGE_UNRESOLVABLE, f"cannot parse image {container.image_ref!r}", error)
    image_ref = reference.reference

    if reference.pinned:
        LOG.debug("%s is pinned to %s", container.name, reference.digest)
        return StalenessResult(False, container.image_id, container.image_id, image_ref)

    if policy.no_pull:
        LOG.debug("Skipping pull for %s", container.name)
    else:
        if probe is not None and _head_says_fresh(engine, container, reference, probe, head_failure_strategy):
            return StalenessResult(False, container.image_id, container.image_id, image_ref)
        auth_config = credentials.for_registry(reference.registry) if credentials is not None else None
        LOG.debug("Pulling %s for %s", image_ref, container.name)
        try:
            engine.pull_image(image_ref, auth_config)
        except ImageNotFound as error:
            raise UpdateError(ErrorKind.IMAGE_UNRESOLVABLE, f"{image_ref} not found in registry", error)
        except ENGINE_ERRORS as error:
            raise UpdateError(ErrorKind.PULL_FAILED, f"failed to pull {image_ref}", error)

    try:
        latest = engine.inspect_image(image_ref)
    except ENGINE_ERRORS as error:
        raise UpdateError(ErrorKind.IMAGE_UNRESOLVABLE, f"cannot inspect {image_ref}", error)
    if latest is None:
        raise UpdateError(ErrorKind.IMAGE_UNRESOLVABLE, f"no local image for {image_ref}")

    candidate = latest.get("Id", "")
    stale = candidate != container.image_id
    if stale:
        LOG.info(
            "Found new %s image (%s)",
            image_ref,
            short_id(candidate),
            extra=log_fields(container.id, container.name, image_ref),
        )
    return StalenessResult(stale, container.image_id, candidate, image_ref)
