from copy import deepcopy
from itertools import count
from typing import Callable, Optional

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from vigie.config import Settings
from vigie.container import Container, DEPENDS_ON_LABEL, SCOPE_LABEL, recreate_config


def make_attrs(
    name: str,
    image: str = "app:latest",
    image_id: str = "sha256:old",
    labels: Optional[dict] = None,
    running: bool = True,
    links: Optional[list[str]] = None,
    created: str = "2024-01-01T00:00:00Z",
    hostname: Optional[str] = None,
    container_id: Optional[str] = None,
    networks: Optional[dict] = None,
    host_config: Optional[dict] = None,
) -> dict:
    return {
        "Id": container_id or f"{name}-id",
        "Name": f"/{name}",
        "Image": image_id,
        "Created": created,
        "Config": {
            "Image": image,
            "Hostname": hostname or name,
            "Labels": dict(labels or {}),
            "Env": ["PATH=/usr/bin", f"NAME={name}"],
            "Cmd": ["run"],
        },
        "HostConfig": {"Links": links or [], "NetworkMode": "bridge", **(host_config or {})},
        "NetworkSettings": {"Networks": networks or {"bridge": {"Aliases": None}}},
        "State": {"Running": running, "Restarting": False, "Status": "running" if running else "exited"},
    }


def make_container(name: str, **kwargs) -> Container:
    return Container.from_attrs(make_attrs(name, **kwargs))


class FakeEngine:
    """In-memory engine; records every mutating call in `events`."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.tags: dict[str, str] = {}
        self.images: dict[str, dict] = {}
        self.registry: dict[str, str] = {}
        self.events: list[tuple[str, str]] = []
        self.exec_results: dict[str, int] = {}
        self.exec_calls: list[dict] = []
        self.exec_errors: dict[str, Exception] = {}
        self.failures: dict[str, set[str]] = {}
        self.down: set[str] = set()
        self.max_down = 0
        self.pulls: list[str] = []
        self.on_stop: Optional[Callable[[Container], None]] = None
        self._ids = count(1)

    # setup helpers

    def add_image(self, image_id: str, tag: Optional[str] = None, repo_digests: Optional[list[str]] = None) -> None:
        self.images[image_id] = {"Id": image_id, "RepoDigests": list(repo_digests or []), "Config": {"Env": ["PATH=/usr/bin"]}}
        if tag is not None:
            self.tags[tag] = image_id

    def add(self, name: str, **kwargs) -> Container:
        attrs = make_attrs(name, **kwargs)
        image = attrs["Config"]["Image"]
        if attrs["Image"] not in self.images:
            self.add_image(attrs["Image"])
        self.tags.setdefault(image, attrs["Image"])
        self.containers[attrs["Id"]] = attrs
        return Container.from_attrs(attrs)

    def publish(self, tag: str, image_id: str) -> None:
        """Make the registry advertise `image_id` for `tag`."""
        self.registry[tag] = image_id

    def fail(self, operation: str, name: str) -> None:
        self.failures.setdefault(operation, set()).add(name)

    def _check(self, operation: str, name: str) -> None:
        if name in self.failures.get(operation, set()):
            raise APIError(f"{operation} failed for {name}")

    def by_name(self, name: str) -> Optional[dict]:
        for attrs in self.containers.values():
            if attrs["Name"].lstrip("/") == name:
                return attrs
        return None

    def running_names(self) -> set[str]:
        return {attrs["Name"].lstrip("/") for attrs in self.containers.values() if attrs["State"]["Running"]}

    def events_of(self, kind: str) -> list[str]:
        return [name for event, name in self.events if event == kind]

    # engine capabilities

    def list_containers(self, include_stopped: bool = False, include_restarting: bool = False) -> list[Container]:
        result = []
        for attrs in self.containers.values():
            if attrs["State"]["Running"] or include_stopped:
                result.append(Container.from_attrs(attrs))
        return result

    def get_container(self, container_id: str) -> Container:
        if container_id not in self.containers:
            raise NotFound(container_id)
        return Container.from_attrs(self.containers[container_id])

    def referenced_image_ids(self) -> set[str]:
        return {attrs["Image"] for attrs in self.containers.values()}

    def is_running(self, container_id: str) -> bool:
        attrs = self.containers.get(container_id)
        return bool(attrs and attrs["State"]["Running"])

    def stop_container(self, container: Container, timeout: float) -> None:
        self._check("stop", container.name)
        if self.on_stop is not None:
            self.on_stop(container)
        attrs = self.containers[container.id]
        if attrs["State"]["Running"]:
            attrs["State"]["Running"] = False
            self.down.add(container.name)
            self.max_down = max(self.max_down, len(self.down))
        self.events.append(("stop", container.name))

    def remove_container(self, container_id: str, remove_volumes: bool = False) -> None:
        attrs = self.containers.get(container_id)
        if attrs is None:
            return
        name = attrs["Name"].lstrip("/")
        self._check("remove", name)
        del self.containers[container_id]
        self.events.append(("remove", name))

    def rename_container(self, container_id: str, name: str) -> None:
        self.containers[container_id]["Name"] = f"/{name}"
        self.events.append(("rename", name))

    def create_container(self, container: Container, image_ref: str, cpu_copy_mode: str = "auto", name: Optional[str] = None) -> str:
        name = name or container.name
        self._check("create", name)
        if self.by_name(name) is not None:
            raise APIError(f"Conflict. The container name /{name} is already in use")
        image_id = self.tags.get(image_ref) or self.tags.get(container.image_ref)
        if image_id is None:
            raise ImageNotFound(image_ref)
        kwargs = recreate_config(container, image_ref, self.images.get(container.image_id, {}).get("Config"), cpu_copy_mode)
        new_id = f"{name}-new{next(self._ids)}"
        attrs = deepcopy(container.attrs)
        attrs.update({"Id": new_id, "Name": f"/{name}", "Image": image_id, "Created": "2099-01-01T00:00:00Z"})
        attrs["Config"]["Labels"] = dict(container.labels)
        attrs["State"] = {"Running": False, "Restarting": False, "Status": "created"}
        attrs["CreateKwargs"] = kwargs
        self.containers[new_id] = attrs
        self.events.append(("create", name))
        return new_id

    def start_container(self, container_id: str) -> None:
        attrs = self.containers[container_id]
        name = attrs["Name"].lstrip("/")
        self._check("start", name)
        attrs["State"]["Running"] = True
        self.down.discard(name)
        self.events.append(("start", name))

    def wait_running(self, container_id: str, timeout: float) -> bool:
        return self.is_running(container_id)

    def pull_image(self, image_ref: str, auth_config: Optional[dict] = None) -> None:
        self.pulls.append(image_ref)
        if image_ref in self.failures.get("pull", set()):
            raise DockerException(f"pull failed for {image_ref}")
        if image_ref in self.failures.get("resolve", set()):
            raise ImageNotFound(f"manifest for {image_ref} not found")
        image_id = self.registry.get(image_ref)
        if image_id is None:
            return
        if image_id not in self.images:
            self.add_image(image_id)
        self.tags[image_ref] = image_id

    def inspect_image(self, image: str) -> Optional[dict]:
        if image in self.images:
            return self.images[image]
        image_id = self.tags.get(image)
        if image_id is None:
            return None
        return self.images.get(image_id)

    def remove_image(self, image_id: str) -> None:
        if image_id not in self.images:
            raise ImageNotFound(image_id)
        del self.images[image_id]
        self.tags = {tag: value for tag, value in self.tags.items() if value != image_id}
        self.events.append(("remove_image", image_id))

    def exec_command(self, container_id: str, command: str, user: str = "", environment=None, timeout: float = 60.0) -> int:
        self.exec_calls.append(
            {"container_id": container_id, "command": command, "user": user, "environment": environment, "timeout": timeout}
        )
        if command in self.exec_errors:
            raise self.exec_errors[command]
        return self.exec_results.get(command, 0)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def settings() -> Settings:
    return Settings(docker_host="unix://test", stop_timeout=1.0, cpu_copy_mode="full")


@pytest.fixture
def make_settings(settings: Settings) -> Callable[..., Settings]:
    def _make(**overrides) -> Settings:
        return Settings(**(settings.__dict__ | overrides))

    return _make


@pytest.fixture
def scoped_labels() -> Callable[..., dict]:
    def _make(scope: Optional[str] = None, depends_on: Optional[str] = None, **extra) -> dict:
        labels = dict(extra)
        if scope is not None:
            labels[SCOPE_LABEL] = scope
        if depends_on is not None:
            labels[DEPENDS_ON_LABEL] = depends_on
        return labels

    return _make
