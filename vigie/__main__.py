import os
import signal
import sys
from logging import getLogger
from threading import Event
from typing import Optional, Sequence

from docker import DockerClient, tls
from docker.errors import DockerException
from requests import RequestException

from .api import ApiServer
from .config import Settings, load_settings
from .engine import Engine
from .errors import ConfigError, SessionError, SessionErrorKind
from .metrics import Metrics
from .notifier import build_notifiers, close_all
from .registry import Credentials, RegistryProbe
from .scheduler import Schedule, Scheduler
from .selfupdate import detect_current_container_id
from .session import Supervisor
from .utils import configure_logging

LOG = getLogger(__name__)

FATAL_SESSION_KINDS = (SessionErrorKind.ENGINE_UNREACHABLE, SessionErrorKind.MULTIPLE_INSTANCES)


def _tls_config(settings: Settings):
    if not settings.tls_verify:
        return False
    cert_path = os.getenv("DOCKER_CERT_PATH")
    if not cert_path:
        return tls.TLSConfig(verify=True)
    return tls.TLSConfig(
        client_cert=(os.path.join(cert_path, "cert.pem"), os.path.join(cert_path, "key.pem")),
        ca_cert=os.path.join(cert_path, "ca.pem"),
        verify=True,
    )


def build_client(settings: Settings) -> DockerClient:
    try:
        client = DockerClient(base_url=settings.docker_host, version=settings.api_version, tls=_tls_config(settings))
        client.ping()
        return client
    except (DockerException, RequestException) as error:
        raise SystemExit(f"Unable to connect to Docker: {error}") from error


def install_signal_handlers(stop: Event) -> None:
    # a second signal exits without waiting
    def _handle(signum, _frame) -> None:
        if stop.is_set():
            LOG.warning("Second signal received; exiting without waiting")
            os._exit(1)
        LOG.info("Received %s; shutting down after the running update", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _self_id() -> Optional[str]:
    return detect_current_container_id() or os.getenv("HOSTNAME")


def serve(supervisor: Supervisor, settings: Settings, schedule: Schedule) -> None:
    stop = supervisor.stop
    if settings.http_api_update and not settings.http_api_periodic_polls:
        supervisor.startup_message(None)
        LOG.info("Periodic runs disabled; waiting for HTTP API requests")
        if settings.update_on_start:
            supervisor.try_run()
        stop.wait()
    else:
        scheduler = Scheduler(
            schedule,
            supervisor.try_run,
            stop,
            timezone=settings.timezone,
            update_on_start=settings.update_on_start,
        )
        supervisor.startup_message(scheduler.next_run())
        scheduler.run()
    # sessions started over HTTP run on server threads the scheduler does not own
    if supervisor.lock.locked:
        LOG.info("Waiting for the running update to finish")
    supervisor.lock.wait_idle()


def run(settings: Settings) -> int:
    try:
        schedule = Schedule.parse(settings.effective_schedule)
    except SessionError as error:
        LOG.error("%s", error)
        return 1

    client = build_client(settings)
    engine = Engine(client)
    stop = Event()
    install_signal_handlers(stop)
    credentials = Credentials.from_settings(settings)
    notifiers = build_notifiers(settings)
    probe = RegistryProbe(credentials)
    supervisor = Supervisor(
        engine,
        settings,
        notifiers=notifiers,
        metrics=Metrics(),
        probe=probe,
        credentials=credentials,
        self_id=_self_id(),
        stop=stop,
    )

    api: Optional[ApiServer] = None
    try:
        supervisor.check_instances()
        if settings.run_once:
            supervisor.startup_message(None)
            report = supervisor.try_run()
            if report is not None and report.session_kind in FATAL_SESSION_KINDS:
                return 1
        else:
            if settings.http_api_update or settings.http_api_metrics:
                api = ApiServer(supervisor, settings)
                api.start()
            serve(supervisor, settings, schedule)
            if supervisor.fatal is not None:
                return 1
    except SessionError as error:
        LOG.error("%s: %s", error.kind, error, extra={"kind": str(error.kind)})
        return 1
    finally:
        if api is not None:
            api.stop()
        close_all(notifiers)
        probe.close()

    supervisor.complete_self_update()
    LOG.info("Stopped")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    try:
        settings = load_settings(sys.argv[1:] if argv is None else argv)
    except ConfigError as error:
        configure_logging("INFO")
        LOG.error("%s", error)
        raise SystemExit(1)
    configure_logging(settings.log_level, settings.log_format)
    raise SystemExit(run(settings))


if __name__ == "__main__":
    main()
