from logging import getLogger
from time import monotonic, sleep
from typing import Optional

from docker import DockerClient
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .container import Container, network_endpoints, primary_network, recreate_config
from .utils import rand_name, short_id

LOG = getLogger(__name__)

POLL_INTERVAL = 0.5
NAME_CONFLICT_RETRY_DELAY = 1.0
_UNRESOLVABLE_MARKERS = ("manifest unknown", "not found", "does not exist", "no such image")


class Engine:
    def __init__(self, client: DockerClient, poll_interval: float = POLL_INTERVAL):
        self._client = client
        self._poll_interval = poll_interval
        self._podman: Optional[bool] = None

    @property
    def api(self):
        return self._client.api

    def is_podman(self) -> bool:
        if self._podman is None:
            try:
                version = self.api.version()
            except DockerException as error:
                LOG.debug("Could not read engine version: %s", error)
                return False
            components = version.get("Components") or []
            names = [str(component.get("Name", "")) for component in components]
            names.append(str(version.get("Platform", {}).get("Name", "")))
            self._podman = any("podman" in name.lower() for name in names)
        return self._podman

    def list_container_ids(self, include_stopped: bool = False, include_restarting: bool = False) -> list[str]:
        statuses = ["running"]
        if include_stopped:
            statuses.extend(["created", "exited"])
        if include_restarting:
            statuses.append("restarting")
        summaries = self.api.containers(all=True, filters={"status": statuses})
        return [summary["Id"] for summary in summaries]

    def get_container(self, container_id: str) -> Container:
        return Container.from_attrs(self.api.inspect_container(container_id))

    def list_containers(self, include_stopped: bool = False, include_restarting: bool = False) -> list[Container]:
        return [
            self.get_container(container_id)
            for container_id in self.list_container_ids(include_stopped, include_restarting)
        ]

    def referenced_image_ids(self) -> set[str]:
        return {summary.get("ImageID") for summary in self.api.containers(all=True) if summary.get("ImageID")}

    def is_running(self, container_id: str) -> bool:
        try:
            state = self.api.inspect_container(container_id).get("State") or {}
        except NotFound:
            return False
        return bool(state.get("Running"))

    def _wait_stopped(self, container_id: str, timeout: float) -> bool:
        deadline = monotonic() + timeout
        while True:
            if not self.is_running(container_id):
                return True
            if monotonic() >= deadline:
                return False
            sleep(self._poll_interval)

    def stop_container(self, container: Container, timeout: float) -> None:
        if not self.is_running(container.id):
            LOG.debug("%s is not running; nothing to stop", container.name)
            return
        signal = container.stop_signal
        LOG.info("Stopping %s (%s) with %s", container.name, short_id(container.id), signal)
        self.api.kill(container.id, signal=signal)
        if self._wait_stopped(container.id, timeout):
            return
        LOG.warning("%s did not stop within %ss; killing", container.name, timeout)
        self.api.kill(container.id, signal="SIGKILL")
        if not self._wait_stopped(container.id, timeout):
            raise DockerException(f"{container.name} is still running after SIGKILL")

    def remove_container(self, container_id: str, remove_volumes: bool = False) -> None:
        try:
            self.api.remove_container(container_id, v=remove_volumes, force=True)
        except NotFound:
            LOG.debug("Container %s already removed", short_id(container_id))

    def rename_container(self, container_id: str, name: str) -> None:
        self.api.rename(container_id, name)

    def create_container(
        self,
        container: Container,
        image_ref: str,
        cpu_copy_mode: str = "auto",
        name: Optional[str] = None,
    ) -> str:
        image_attrs = self.inspect_image(container.image_id) or {}
        create_kwargs = recreate_config(
            container,
            image_ref,
            image_config=image_attrs.get("Config"),
            cpu_copy_mode=cpu_copy_mode,
            is_podman=self.is_podman() if cpu_copy_mode == "auto" else False,
            name=name,
        )
        endpoints = network_endpoints(container)
        primary = primary_network(container, endpoints)
        if primary is not None:
            create_kwargs["networking_config"] = self.api.create_networking_config(
                {primary: self.api.create_endpoint_config(**endpoints[primary])}
            )

        try:
            created = self.api.create_container(**create_kwargs)
        except APIError as error:
            if error.status_code != 409:
                raise
            LOG.info("Name %s still in use; retrying", create_kwargs["name"])
            sleep(NAME_CONFLICT_RETRY_DELAY)
            try:
                created = self.api.create_container(**create_kwargs)
            except APIError as retry_error:
                if retry_error.status_code != 409:
                    raise
                create_kwargs["name"] = f"{create_kwargs['name']}-{rand_name(8)}"
                LOG.warning("Name conflict persisted; creating %s instead", create_kwargs["name"])
                created = self.api.create_container(**create_kwargs)

        new_id = created.get("Id")
        if new_id is None:
            raise DockerException("create_container returned no Id")
        for network_name, endpoint_kwargs in endpoints.items():
            if network_name == primary:
                continue
            self.api.connect_container_to_network(new_id, network_name, **endpoint_kwargs)
        return new_id

    def start_container(self, container_id: str) -> None:
        self.api.start(container_id)

    def wait_running(self, container_id: str, timeout: float) -> bool:
        deadline = monotonic() + timeout
        while True:
            if self.is_running(container_id):
                return True
            if monotonic() >= deadline:
                return False
            sleep(self._poll_interval)

    def pull_image(self, image_ref: str, auth_config: Optional[dict] = None) -> None:
        """Pull `image_ref`, raising ImageNotFound when the registry has no such tag."""
        try:
            for event in self.api.pull(image_ref, auth_config=auth_config, stream=True, decode=True):
                message = event.get("error") if isinstance(event, dict) else None
                if message:
                    if any(marker in message.lower() for marker in _UNRESOLVABLE_MARKERS):
                        raise ImageNotFound(message)
                    raise APIError(message)
        except NotFound as error:
            raise ImageNotFound(str(error)) from error

    def inspect_image(self, image: str) -> Optional[dict]:
        try:
            return self.api.inspect_image(image)
        except ImageNotFound:
            return None

    def remove_image(self, image_id: str) -> None:
        self.api.remove_image(image_id, force=True, noprune=False)

    def exec_command(
        self,
        container_id: str,
        command: str,
        user: str = "",
        environment: Optional[dict] = None,
        timeout: float = 60.0,
    ) -> int:
        exec_id = self.api.exec_create(
            container_id,
            ["sh", "-c", command],
            user=user,
            environment=environment,
        )["Id"]
        self.api.exec_start(exec_id, detach=True)
        deadline = monotonic() + timeout
        while True:
            details = self.api.exec_inspect(exec_id)
            if not details.get("Running"):
                return int(details.get("ExitCode") or 0)
            if timeout > 0 and monotonic() >= deadline:
                raise TimeoutError(f"command did not finish within {timeout}s")
            sleep(self._poll_interval)
