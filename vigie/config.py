from argparse import ArgumentParser
from dataclasses import dataclass
from logging import getLogger
from os import getenv
from os.path import isfile
from typing import Optional, Sequence

from .errors import ConfigError
from .utils import parse_duration

LOG = getLogger(__name__)

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
DEFAULT_POLL_INTERVAL = 86400
DEFAULT_STOP_TIMEOUT = 10.0
DEFAULT_HTTP_API_PORT = 8080
DEFAULT_PUSHOVER_API = "https://api.pushover.net/1/messages.json"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_TZ = "UTC"
CPU_COPY_MODES = ("full", "auto", "none")
HEAD_WARNING_STRATEGIES = ("always", "auto", "never")
LOG_FORMATS = ("plain", "json")


@dataclass(frozen=True)
class Settings:
    docker_host: str = DEFAULT_DOCKER_HOST
    tls_verify: bool = False
    api_version: str = "auto"
    schedule: Optional[str] = None
    interval: int = DEFAULT_POLL_INTERVAL
    run_once: bool = False
    update_on_start: bool = False
    cleanup: bool = False
    no_restart: bool = False
    no_pull: bool = False
    monitor_only: bool = False
    rolling_restart: bool = False
    lifecycle_hooks: bool = False
    include_stopped: bool = False
    include_restarting: bool = False
    revive_stopped: bool = False
    remove_volumes: bool = False
    label_enable: bool = False
    label_precedence: bool = False
    no_self_update: bool = False
    scope: Optional[str] = None
    disable_containers: tuple[str, ...] = ()
    names: tuple[str, ...] = ()
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    lifecycle_uid: int = 0
    lifecycle_gid: int = 0
    cpu_copy_mode: str = "auto"
    warn_on_head_failure: str = "auto"
    http_api_update: bool = False
    http_api_metrics: bool = False
    http_api_periodic_polls: bool = False
    http_api_host: str = ""
    http_api_port: int = DEFAULT_HTTP_API_PORT
    http_api_token: Optional[str] = None
    http_api_queue_timeout: float = 0.0
    notification_url: Optional[str] = None
    pushover_token: Optional[str] = None
    pushover_user: Optional[str] = None
    pushover_api: str = DEFAULT_PUSHOVER_API
    notifications_hostname: Optional[str] = None
    notification_split_by_container: bool = False
    repo_user: Optional[str] = None
    repo_pass: Optional[str] = None
    timezone: str = DEFAULT_TZ
    log_level: str = DEFAULT_LOG_LEVEL
    log_format: str = "plain"

    @property
    def effective_schedule(self) -> str:
        if self.schedule:
            return self.schedule
        return f"@every {self.interval}s"


def _env_bool(name: str, default: bool) -> bool:
    value = getenv(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    return lowered in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_csv_list(name: str, default: str = "") -> list[str]:
    raw = getenv(name, default)
    return _split_csv([raw])


def _split_csv(values: Sequence[str]) -> list[str]:
    items: list[str] = []
    for value in values:
        for part in value.replace(" ", ",").split(","):
            part = part.strip()
            if part:
                items.append(part)
    return items


def _read_secret(value: Optional[str]) -> Optional[str]:
    """Swap a secret for the trimmed contents of the file it names, if any."""
    if not value:
        return value
    if isfile(value):
        try:
            with open(value, "r", encoding="utf-8") as handle:
                return handle.read().strip()
        except OSError as error:
            raise ConfigError(f"Unable to read secret file {value}: {error}") from error
    return value


def _parse_seconds(name: str, value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as error:
        raise ConfigError(f"Invalid duration for {name}: {value!r}") from error


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="vigie",
        description="Keep running containers up to date with their registry images.",
    )
    parser.add_argument("names", nargs="*", help="only watch containers with these names")
    parser.add_argument("--host", "-H", default=getenv("DOCKER_HOST", DEFAULT_DOCKER_HOST))
    parser.add_argument("--tlsverify", action="store_true", default=_env_bool("DOCKER_TLS_VERIFY", False))
    parser.add_argument("--api-version", "-a", default=getenv("DOCKER_API_VERSION", "auto"))

    schedule = parser.add_argument_group("scheduling")
    schedule.add_argument("--schedule", "-s", default=getenv("WATCHTOWER_SCHEDULE"))
    schedule.add_argument("--interval", "-i", type=int, default=None)
    schedule.add_argument("--run-once", "-R", action="store_true", default=_env_bool("WATCHTOWER_RUN_ONCE", False))
    schedule.add_argument(
        "--update-on-start", action="store_true", default=_env_bool("WATCHTOWER_UPDATE_ON_START", False)
    )

    policy = parser.add_argument_group("update policy")
    for flag, env_name in (
        ("--cleanup", "WATCHTOWER_CLEANUP"),
        ("--no-restart", "WATCHTOWER_NO_RESTART"),
        ("--no-pull", "WATCHTOWER_NO_PULL"),
        ("--monitor-only", "WATCHTOWER_MONITOR_ONLY"),
        ("--rolling-restart", "WATCHTOWER_ROLLING_RESTART"),
        ("--enable-lifecycle-hooks", "WATCHTOWER_LIFECYCLE_HOOKS"),
        ("--include-stopped", "WATCHTOWER_INCLUDE_STOPPED"),
        ("--include-restarting", "WATCHTOWER_INCLUDE_RESTARTING"),
        ("--revive-stopped", "WATCHTOWER_REVIVE_STOPPED"),
        ("--remove-volumes", "WATCHTOWER_REMOVE_VOLUMES"),
        ("--label-enable", "WATCHTOWER_LABEL_ENABLE"),
        ("--label-take-precedence", "WATCHTOWER_LABEL_TAKE_PRECEDENCE"),
        ("--no-self-update", "WATCHTOWER_NO_SELF_UPDATE"),
        ("--notification-split-by-container", "WATCHTOWER_NOTIFICATION_SPLIT_BY_CONTAINER"),
    ):
        policy.add_argument(flag, action="store_true", default=_env_bool(env_name, False))
    policy.add_argument("--scope", default=getenv("WATCHTOWER_SCOPE"))
    policy.add_argument("--disable-containers", "-x", action="append", default=None)
    policy.add_argument("--stop-timeout", default=getenv("WATCHTOWER_TIMEOUT", str(DEFAULT_STOP_TIMEOUT)))
    policy.add_argument("--lifecycle-uid", type=int, default=_env_int("WATCHTOWER_LIFECYCLE_UID", 0))
    policy.add_argument("--lifecycle-gid", type=int, default=_env_int("WATCHTOWER_LIFECYCLE_GID", 0))
    policy.add_argument("--cpu-copy-mode", default=getenv("WATCHTOWER_CPU_COPY_MODE", "auto"))
    policy.add_argument(
        "--warn-on-head-failure", default=getenv("WATCHTOWER_WARN_ON_HEAD_FAILURE", "auto")
    )

    api = parser.add_argument_group("http api")
    api.add_argument("--http-api-update", action="store_true", default=_env_bool("WATCHTOWER_HTTP_API_UPDATE", False))
    api.add_argument(
        "--http-api-metrics", action="store_true", default=_env_bool("WATCHTOWER_HTTP_API_METRICS", False)
    )
    api.add_argument(
        "--http-api-periodic-polls",
        action="store_true",
        default=_env_bool("WATCHTOWER_HTTP_API_PERIODIC_POLLS", False),
    )
    api.add_argument("--http-api-host", default=getenv("WATCHTOWER_HTTP_API_HOST", ""))
    api.add_argument(
        "--http-api-port", type=int, default=_env_int("WATCHTOWER_HTTP_API_PORT", DEFAULT_HTTP_API_PORT)
    )
    api.add_argument("--http-api-token", default=getenv("WATCHTOWER_HTTP_API_TOKEN"))
    api.add_argument("--http-api-queue-timeout", default=getenv("WATCHTOWER_HTTP_API_QUEUE_TIMEOUT", "0"))

    notify = parser.add_argument_group("notifications")
    notify.add_argument("--notification-url", default=getenv("WATCHTOWER_NOTIFICATION_URL"))
    notify.add_argument("--pushover-token", default=getenv("WATCHTOWER_PUSHOVER_TOKEN"))
    notify.add_argument("--pushover-user", default=getenv("WATCHTOWER_PUSHOVER_USER"))
    notify.add_argument("--pushover-api", default=getenv("WATCHTOWER_PUSHOVER_API", DEFAULT_PUSHOVER_API))
    notify.add_argument("--notifications-hostname", default=getenv("WATCHTOWER_NOTIFICATIONS_HOSTNAME"))

    parser.add_argument("--timezone", default=getenv("WATCHTOWER_TIMEZONE", getenv("TZ", DEFAULT_TZ)))
    parser.add_argument("--log-level", default=getenv("WATCHTOWER_LOG_LEVEL", DEFAULT_LOG_LEVEL))
    parser.add_argument("--log-format", default=getenv("WATCHTOWER_LOG_FORMAT", "plain"))
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    args = build_parser().parse_args(list(argv or []))

    if args.interval is not None:
        interval_set = True
        interval = args.interval
    else:
        interval_set = getenv("WATCHTOWER_POLL_INTERVAL") is not None
        interval = _env_int("WATCHTOWER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
    if args.schedule and interval_set:
        raise ConfigError("Only schedule or interval can be defined, not both")
    if interval <= 0:
        raise ConfigError(f"Poll interval must be positive, got {interval}")

    cpu_copy_mode = args.cpu_copy_mode.strip().lower()
    if cpu_copy_mode not in CPU_COPY_MODES:
        raise ConfigError(f"Invalid cpu copy mode {args.cpu_copy_mode!r}; expected one of {CPU_COPY_MODES}")
    warn_on_head_failure = args.warn_on_head_failure.strip().lower()
    if warn_on_head_failure not in HEAD_WARNING_STRATEGIES:
        raise ConfigError(
            f"Invalid head failure strategy {args.warn_on_head_failure!r}; expected one of {HEAD_WARNING_STRATEGIES}"
        )
    log_format = args.log_format.strip().lower()
    if log_format not in LOG_FORMATS:
        raise ConfigError(f"Invalid log format {args.log_format!r}")

    if args.disable_containers is not None:
        disabled = _split_csv(args.disable_containers)
    else:
        disabled = _env_csv_list("WATCHTOWER_DISABLE_CONTAINERS")

    names = list(args.names) or _env_csv_list("WATCHTOWER_CONTAINER_NAMES")

    token = _read_secret(args.http_api_token)
    if args.http_api_update and not token:
        raise ConfigError("The HTTP API update endpoint requires --http-api-token")

    return Settings(
        docker_host=args.host,
        tls_verify=args.tlsverify,
        api_version=args.api_version,
        schedule=args.schedule or None,
        interval=interval,
        run_once=args.run_once,
        update_on_start=args.update_on_start,
        cleanup=args.cleanup,
        no_restart=args.no_restart,
        no_pull=args.no_pull,
        monitor_only=args.monitor_only,
        rolling_restart=args.rolling_restart,
        lifecycle_hooks=args.enable_lifecycle_hooks,
        include_stopped=args.include_stopped,
        include_restarting=args.include_restarting,
        revive_stopped=args.revive_stopped,
        remove_volumes=args.remove_volumes,
        label_enable=args.label_enable,
        label_precedence=args.label_take_precedence,
        no_self_update=args.no_self_update,
        scope=args.scope or None,
        disable_containers=tuple(disabled),
        names=tuple(names),
        stop_timeout=_parse_seconds("stop-timeout", args.stop_timeout),
        lifecycle_uid=args.lifecycle_uid,
        lifecycle_gid=args.lifecycle_gid,
        cpu_copy_mode=cpu_copy_mode,
        warn_on_head_failure=warn_on_head_failure,
        http_api_update=args.http_api_update,
        http_api_metrics=args.http_api_metrics,
        http_api_periodic_polls=args.http_api_periodic_polls,
        http_api_host=args.http_api_host,
        http_api_port=args.http_api_port,
        http_api_token=token,
        http_api_queue_timeout=_parse_seconds("http-api-queue-timeout", args.http_api_queue_timeout),
        notification_url=_read_secret(args.notification_url),
        pushover_token=_read_secret(args.pushover_token),
        pushover_user=_read_secret(args.pushover_user),
        pushover_api=args.pushover_api,
        notifications_hostname=args.notifications_hostname,
        notification_split_by_container=args.notification_split_by_container,
        repo_user=getenv("REPO_USER"),
        repo_pass=_read_secret(getenv("REPO_PASS")),
        timezone=args.timezone,
        log_level=args.log_level.upper(),
        log_format=log_format,
    )
