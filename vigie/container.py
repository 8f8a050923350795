import re
from copy import deepcopy
from dataclasses import dataclass, field
from logging import getLogger
from typing import Optional

from .config import Settings

LOG = getLogger(__name__)

LABEL_PREFIX = "com.centurylinklabs.watchtower"
SUPERVISOR_LABEL = LABEL_PREFIX
ENABLE_LABEL = f"{LABEL_PREFIX}.enable"
SCOPE_LABEL = f"{LABEL_PREFIX}.scope"
DEPENDS_ON_LABEL = f"{LABEL_PREFIX}.depends-on"
MONITOR_ONLY_LABEL = f"{LABEL_PREFIX}.monitor-only"
NO_PULL_LABEL = f"{LABEL_PREFIX}.no-pull"
STOP_SIGNAL_LABEL = f"{LABEL_PREFIX}.stop-signal"
PRE_CHECK_LABEL = f"{LABEL_PREFIX}.lifecycle.pre-check"
POST_CHECK_LABEL = f"{LABEL_PREFIX}.lifecycle.post-check"
PRE_UPDATE_LABEL = f"{LABEL_PREFIX}.lifecycle.pre-update"
POST_UPDATE_LABEL = f"{LABEL_PREFIX}.lifecycle.post-update"
PRE_UPDATE_UID_LABEL = f"{LABEL_PREFIX}.lifecycle.pre-update-uid"
PRE_UPDATE_GID_LABEL = f"{LABEL_PREFIX}.lifecycle.pre-update-gid"
POST_UPDATE_UID_LABEL = f"{LABEL_PREFIX}.lifecycle.post-update-uid"
POST_UPDATE_GID_LABEL = f"{LABEL_PREFIX}.lifecycle.post-update-gid"
PRE_UPDATE_TIMEOUT_LABEL = f"{LABEL_PREFIX}.lifecycle.pre-update-timeout"
POST_UPDATE_TIMEOUT_LABEL = f"{LABEL_PREFIX}.lifecycle.post-update-timeout"
PRE_UPDATE_ADVISORY_LABEL = f"{LABEL_PREFIX}.lifecycle.pre-update-advisory"
COMPOSE_DEPENDS_LABEL = "com.docker.compose.depends_on"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"
SWARM_SERVICE_LABEL = "com.docker.swarm.service.id"

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"
DEFAULT_STOP_SIGNAL = "SIGTERM"
DEFAULT_HOOK_TIMEOUT_MINUTES = 1

CPU_FIELDS = (
    "CpuShares",
    "CpuPeriod",
    "CpuQuota",
    "CpuRealtimePeriod",
    "CpuRealtimeRuntime",
    "CpusetCpus",
    "CpusetMems",
    "NanoCpus",
    "CpuCount",
    "CpuPercent",
)

_TRUE_VALUES = {"1", "t", "true", "yes", "on"}
_FALSE_VALUES = {"0", "f", "false", "no", "off"}
_REPOSITORY_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: Optional[str]
    digest: Optional[str]

    @property
    def pinned(self) -> bool:
        return self.digest is not None

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def familiar_name(self) -> str:
        if self.registry != DEFAULT_REGISTRY:
            return self.name
        if self.repository.startswith("library/"):
            return self.repository[len("library/"):]
        return self.repository

    @property
    def reference(self) -> str:
        if self.digest is not None:
            return f"{self.familiar_name}@{self.digest}"
        return f"{self.familiar_name}:{self.tag or DEFAULT_TAG}"

    def __str__(self) -> str:
        return self.reference


def parse_image_reference(value: Optional[str]) -> ImageReference:
    if not value or value.startswith(":"):
        raise ValueError(f"invalid image reference {value!r}")
    remainder = value
    digest: Optional[str] = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST_PATTERN.match(digest):
            raise ValueError(f"invalid digest in {value!r}")
    tag: Optional[str] = None
    last_slash = remainder.rfind("/")
    last_colon = remainder.rfind(":")
    if last_colon > last_slash:
        remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]
        if not _TAG_PATTERN.match(tag):
            raise ValueError(f"invalid tag in {value!r}")
    parts = remainder.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry, repository = parts
    else:
        registry, repository = DEFAULT_REGISTRY, remainder
    if registry in {"index.docker.io", "registry-1.docker.io"}:
        registry = DEFAULT_REGISTRY
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"
    if not _REPOSITORY_PATTERN.match(repository):
        raise ValueError(f"invalid repository in {value!r}")
    if tag is None and digest is None:
        tag = DEFAULT_TAG
    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


def parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


def _strip_slash(name: Optional[str]) -> str:
    return (name or "").lstrip("/")


@dataclass(frozen=True)
class Container:
    id: str
    name: str
    image_ref: str
    image_id: str
    labels: dict = field(default_factory=dict)
    created: str = ""
    running: bool = False
    restarting: bool = False
    attrs: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_attrs(cls, attrs: dict) -> "Container":
        config = attrs.get("Config") or {}
        state = attrs.get("State") or {}
        return cls(
            id=attrs.get("Id", ""),
            name=_strip_slash(attrs.get("Name")),
            image_ref=config.get("Image") or "",
            image_id=attrs.get("Image") or "",
            labels=dict(config.get("Labels") or {}),
            created=attrs.get("Created") or "",
            running=bool(state.get("Running")),
            restarting=bool(state.get("Restarting")),
            attrs=deepcopy(attrs),
        )

    @property
    def config(self) -> dict:
        return self.attrs.get("Config") or {}

    @property
    def host_config(self) -> dict:
        return self.attrs.get("HostConfig") or {}

    @property
    def hostname(self) -> Optional[str]:
        return self.config.get("Hostname")

    @property
    def enabled(self) -> Optional[bool]:
        raw = self.labels.get(ENABLE_LABEL)
        if raw is None:
            return None
        parsed = parse_bool(raw)
        if parsed is None:
            LOG.warning("Ignoring invalid %s value %r on %s", ENABLE_LABEL, raw, self.name)
        return parsed

    @property
    def scope(self) -> Optional[str]:
        value = self.labels.get(SCOPE_LABEL)
        return value if value else None

    @property
    def is_supervisor(self) -> bool:
        return parse_bool(self.labels.get(SUPERVISOR_LABEL)) is True

    @property
    def is_swarm_managed(self) -> bool:
        return SWARM_SERVICE_LABEL in self.labels

    @property
    def compose_project(self) -> Optional[str]:
        return self.labels.get(COMPOSE_PROJECT_LABEL)

    @property
    def compose_service(self) -> Optional[str]:
        return self.labels.get(COMPOSE_SERVICE_LABEL)

    @property
    def depends_on(self) -> tuple[str, ...]:
        raw = self.labels.get(DEPENDS_ON_LABEL, "")
        return tuple(_strip_slash(item.strip()) for item in raw.split(",") if item.strip())

    @property
    def compose_depends_on(self) -> tuple[str, ...]:
        # entries look like "db:service_started:false"
        raw = self.labels.get(COMPOSE_DEPENDS_LABEL, "")
        return tuple(item.strip().split(":", 1)[0] for item in raw.split(",") if item.strip())

    @property
    def links(self) -> tuple[str, ...]:
        names: list[str] = []
        for link in self.host_config.get("Links") or []:
            # engine reports "/db:/web/db"
            source = link.split(":", 1)[0]
            names.append(_strip_slash(source))
        return tuple(names)

    @property
    def stop_signal(self) -> str:
        return self.labels.get(STOP_SIGNAL_LABEL) or self.config.get("StopSignal") or DEFAULT_STOP_SIGNAL

    @property
    def pre_check_command(self) -> str:
        return self.labels.get(PRE_CHECK_LABEL, "")

    @property
    def post_check_command(self) -> str:
        return self.labels.get(POST_CHECK_LABEL, "")

    @property
    def pre_update_command(self) -> str:
        return self.labels.get(PRE_UPDATE_LABEL, "")

    @property
    def post_update_command(self) -> str:
        return self.labels.get(POST_UPDATE_LABEL, "")

    @property
    def pre_update_advisory(self) -> bool:
        return parse_bool(self.labels.get(PRE_UPDATE_ADVISORY_LABEL)) is True

    def hook_timeout(self, label: str) -> float:
        """Hook timeout in seconds from a minutes-valued label."""
        raw = self.labels.get(label)
        if raw is None:
            return DEFAULT_HOOK_TIMEOUT_MINUTES * 60.0
        try:
            minutes = int(raw)
        except ValueError:
            LOG.warning("Invalid %s value %r on %s; using default", label, raw, self.name)
            return DEFAULT_HOOK_TIMEOUT_MINUTES * 60.0
        return float(max(minutes, 0) * 60)

    def hook_user(self, uid_label: str, gid_label: str, default_uid: int, default_gid: int) -> str:
        uid = _label_int(self.labels.get(uid_label), default_uid)
        gid = _label_int(self.labels.get(gid_label), default_gid)
        if uid > 0 and gid > 0:
            return f"{uid}:{gid}"
        if uid > 0:
            return str(uid)
        if gid > 0:
            return f":{gid}"
        return ""

    def label_bool(self, label: str) -> Optional[bool]:
        return parse_bool(self.labels.get(label))


def _label_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class EffectivePolicy:
    monitor_only: bool
    no_pull: bool


def _container_or_global(container: Container, label: str, global_value: bool, label_precedence: bool) -> bool:
    label_value = container.label_bool(label)
    if label_value is None:
        return global_value
    if label_precedence:
        return label_value
    return label_value or global_value


def effective_policy(container: Container, settings: Settings) -> EffectivePolicy:
    return EffectivePolicy(
        monitor_only=_container_or_global(
            container, MONITOR_ONLY_LABEL, settings.monitor_only, settings.label_precedence
        ),
        no_pull=_container_or_global(container, NO_PULL_LABEL, settings.no_pull, settings.label_precedence),
    )


def _subtract_list(values: Optional[list], defaults: Optional[list]) -> Optional[list]:
    if values is None:
        return None
    defaults = defaults or []
    return [value for value in values if value not in defaults]


def _subtract_map(values: Optional[dict], defaults: Optional[dict]) -> Optional[dict]:
    if values is None:
        return None
    defaults = defaults or {}
    return {key: value for key, value in values.items() if defaults.get(key) != value}


def apply_cpu_copy_mode(host_config: dict, mode: str, is_podman: bool) -> dict:
    adjusted = dict(host_config)
    if mode == "none":
        for key in CPU_FIELDS:
            adjusted.pop(key, None)
    elif mode == "auto" and adjusted.get("NanoCpus"):
        # period/quota are derived from NanoCpus and some engines reject both
        if is_podman or adjusted.get("CpuPeriod") or adjusted.get("CpuQuota"):
            adjusted.pop("CpuPeriod", None)
            adjusted.pop("CpuQuota", None)
    return adjusted


def _port_tuple(port_key: str):
    port, _, proto = port_key.partition("/")
    try:
        number = int(port)
    except ValueError:
        return port_key
    return (number, proto or "tcp")


def _filter_aliases(aliases: Optional[list], container_id: str) -> Optional[list]:
    if not aliases:
        return None
    short = container_id[:12]
    kept = [alias for alias in aliases if alias != short]
    return kept or None


def _links_mapping(links: Optional[list]) -> Optional[dict]:
    if not links:
        return None
    mapping: dict[str, Optional[str]] = {}
    for link in links:
        source, _, alias = link.partition(":")
        mapping[source] = alias or None
    return mapping


def network_endpoints(container: Container) -> dict[str, dict]:
    mode = container.host_config.get("NetworkMode") or ""
    if mode in {"host", "none"} or mode.startswith("container:"):
        return {}
    networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
    endpoints: dict[str, dict] = {}
    for network_name, network_cfg in networks.items():
        network_cfg = network_cfg or {}
        ipam_cfg = network_cfg.get("IPAMConfig") or {}
        endpoint_kwargs = {
            "aliases": _filter_aliases(network_cfg.get("Aliases"), container.id),
            "links": _links_mapping(network_cfg.get("Links")),
            "ipv4_address": ipam_cfg.get("IPv4Address") or None,
            "ipv6_address": ipam_cfg.get("IPv6Address") or None,
            "link_local_ips": ipam_cfg.get("LinkLocalIPs") or None,
            "driver_opt": network_cfg.get("DriverOpts") or None,
        }
        endpoints[network_name] = {key: value for key, value in endpoint_kwargs.items() if value is not None}
    return endpoints


def primary_network(container: Container, endpoints: dict[str, dict]) -> Optional[str]:
    if not endpoints:
        return None
    mode = container.host_config.get("NetworkMode")
    if mode in endpoints:
        return mode
    return next(iter(endpoints))


def recreate_config(
    container: Container,
    image_ref: str,
    image_config: Optional[dict] = None,
    cpu_copy_mode: str = "full",
    is_podman: bool = False,
    name: Optional[str] = None,
) -> dict:
    config = container.config
    host_config = apply_cpu_copy_mode(deepcopy(container.host_config), cpu_copy_mode, is_podman)
    image_config = image_config or {}

    hostname = config.get("Hostname")
    mode = host_config.get("NetworkMode") or ""
    if mode.startswith("container:") or host_config.get("UTSMode"):
        hostname = None

    working_dir = config.get("WorkingDir")
    if working_dir == image_config.get("WorkingDir"):
        working_dir = None
    user = config.get("User")
    if user == image_config.get("User"):
        user = None
    entrypoint = config.get("Entrypoint")
    command = config.get("Cmd")
    if entrypoint == image_config.get("Entrypoint"):
        entrypoint = None
        if command == image_config.get("Cmd"):
            command = None
    healthcheck = config.get("Healthcheck")
    if healthcheck and healthcheck == image_config.get("Healthcheck"):
        healthcheck = None

    exposed = dict(_subtract_map(config.get("ExposedPorts"), image_config.get("ExposedPorts")) or {})
    for port_key in host_config.get("PortBindings") or {}:
        exposed.setdefault(port_key, {})
    ports = [_port_tuple(key) for key in exposed] or None

    host_config["Links"] = [link for link in host_config.get("Links") or [] if ":" in link] or None

    create_kwargs = {
        "image": image_ref,
        "name": name or container.name,
        "command": command,
        "entrypoint": entrypoint,
        "environment": _subtract_list(config.get("Env"), image_config.get("Env")),
        "labels": _subtract_map(config.get("Labels"), image_config.get("Labels")),
        "volumes": _subtract_map(config.get("Volumes"), image_config.get("Volumes")),
        "healthcheck": healthcheck,
        "host_config": host_config,
        "hostname": hostname,
        "domainname": config.get("Domainname"),
        "mac_address": config.get("MacAddress"),
        "network_disabled": config.get("NetworkDisabled"),
        "ports": ports,
        "runtime": host_config.get("Runtime"),
        "stdin_open": config.get("OpenStdin"),
        "stop_signal": config.get("StopSignal"),
        "stop_timeout": config.get("StopTimeout"),
        "tty": config.get("Tty"),
        "user": user,
        "working_dir": working_dir,
    }
    return {key: value for key, value in create_kwargs.items() if value is not None}
