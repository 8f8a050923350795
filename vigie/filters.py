import re
from logging import getLogger
from typing import Callable, Iterable, Optional

from .config import Settings
from .container import Container, parse_image_reference

LOG = getLogger(__name__)

ContainerFilter = Callable[[Container], bool]


def _name_matches(name: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns:
        pattern = pattern.lstrip("/")
        if name == pattern:
            return True
        try:
            if re.fullmatch(pattern, name):
                return True
        except re.error:
            continue
    return False


def filter_by_names(names: Iterable[str]) -> ContainerFilter:
    names = tuple(names)
    if not names:
        return lambda container: True
    return lambda container: _name_matches(container.name, names)


def filter_by_disabled(disabled: Iterable[str]) -> ContainerFilter:
    disabled = tuple(disabled)
    if not disabled:
        return lambda container: True
    return lambda container: not _name_matches(container.name, disabled)


def filter_by_enable_label(label_enable: bool) -> ContainerFilter:
    def _accept(container: Container) -> bool:
        enabled = container.enabled
        if label_enable:
            return enabled is True
        return enabled is not False

    return _accept


def filter_by_scope(scope: Optional[str]) -> ContainerFilter:
    # "none" selects unscoped containers explicitly
    if scope == "none":
        scope = None
    return lambda container: container.scope == scope


def filter_by_images(images: Optional[Iterable[str]]) -> ContainerFilter:
    if not images:
        return lambda container: True
    wanted = set()
    for image in images:
        try:
            wanted.add(parse_image_reference(image).name)
        except ValueError:
            LOG.warning("Ignoring unparsable image filter %r", image)

    def _accept(container: Container) -> bool:
        try:
            return parse_image_reference(container.image_ref).name in wanted
        except ValueError:
            return False

    return _accept


def build_filter(settings: Settings, images: Optional[Iterable[str]] = None) -> tuple[ContainerFilter, str]:
    predicates = [
        filter_by_names(settings.names),
        filter_by_disabled(settings.disable_containers),
        filter_by_enable_label(settings.label_enable),
        filter_by_scope(settings.scope),
        filter_by_images(images),
    ]

    def _predicate(container: Container) -> bool:
        return all(predicate(container) for predicate in predicates)

    return _predicate, describe_filter(settings, images)


def describe_filter(settings: Settings, images: Optional[Iterable[str]] = None) -> str:
    parts: list[str] = []
    if settings.names:
        parts.append("containers named " + ", ".join(settings.names))
    else:
        parts.append("all containers")
    if settings.disable_containers:
        parts.append("except " + ", ".join(settings.disable_containers))
    if settings.label_enable:
        parts.append("with the enable label set")
    if settings.scope and settings.scope != "none":
        parts.append(f"in scope {settings.scope}")
    images = list(images or [])
    if images:
        parts.append("running " + ", ".join(images))
    return "Checking " + " ".join(parts)
