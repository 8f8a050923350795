from http.client import HTTPConnection, HTTPSConnection
from json import dumps
from logging import getLogger
from socket import gethostname
from typing import Iterable, Optional
from urllib.parse import urlencode, urlsplit

from .config import Settings
from .report import ContainerReport, Report
from .utils import short_id

LOG = getLogger(__name__)

NOTIFY_TIMEOUT = 10


def _describe(entry: ContainerReport) -> str:
    if entry.kind is not None and entry.error:
        return f"{entry.name} ({entry.kind}): {entry.error}"
    if entry.kind is not None:
        return f"{entry.name} ({entry.kind})"
    if entry.new_id:
        return f"{entry.name} ({short_id(entry.current)} -> {short_id(entry.candidate)})"
    return entry.name


def format_report(report: Report, hostname: str) -> tuple[str, str]:
    summary = report.summary()
    title = f"Vigie updates on {hostname}"
    lines = [
        f"Scanned {summary['scanned']}, updated {summary['updated']}, "
        f"failed {summary['failed']}, restarted {summary['restarted']}"
    ]
    if report.session_error:
        lines.append(f"Session failed: {report.session_error}")
    for heading, entries in (
        ("Updated", report.updated),
        ("Restarted", report.restarted),
        ("Failed", report.failed),
        ("Skipped", report.skipped),
        ("Monitor only", report.monitor_only),
    ):
        if entries:
            lines.append(f"{heading}:")
            lines.extend(f"- {_describe(entry)}" for entry in entries)
    return title, "\n".join(lines)


def format_entry(entry: ContainerReport, hostname: str) -> tuple[str, str]:
    return f"Vigie updated {entry.name} on {hostname}", _describe(entry)


def is_noteworthy(report: Report) -> bool:
    return bool(
        report.updated
        or report.failed
        or report.restarted
        or report.monitor_only
        or report.session_error
    )


class Notifier:
    def name(self) -> str:
        raise NotImplementedError

    def send_message(self, title: str, message: str) -> None:
        raise NotImplementedError

    def send(self, report: Report, hostname: str) -> None:
        self.send_message(*format_report(report, hostname))

    def close(self) -> None:
        return None


class LogNotifier(Notifier):
    def name(self) -> str:
        return "log"

    def send_message(self, title: str, message: str) -> None:
        LOG.info("%s: %s", title, message.replace("\n", "; "))


def _post(url: str, body: bytes, content_type: str, label: str) -> None:
    endpoint = urlsplit(url)
    if endpoint.scheme == "https":
        connection = HTTPSConnection(endpoint.netloc, timeout=NOTIFY_TIMEOUT)
    else:
        connection = HTTPConnection(endpoint.netloc, timeout=NOTIFY_TIMEOUT)
    path = endpoint.path or "/"
    if endpoint.query:
        path = f"{path}?{endpoint.query}"

    try:
        connection.request("POST", path, body=body, headers={"Content-Type": content_type})
        response = connection.getresponse()
        if response.status >= 300:
            LOG.warning("%s returned %s: %s", label, response.status, response.reason)
    except OSError as error:
        LOG.warning("Failed to send %s notification: %s", label, error)
    finally:
        connection.close()


class PushoverNotifier(Notifier):
    def __init__(self, token: str, user: str, api_url: str):
        self.token = token
        self.user = user
        self.api_url = api_url

    def name(self) -> str:
        return "pushover"

    def send_message(self, title: str, message: str) -> None:
        body = urlencode(
            {
                "token": self.token,
                "user": self.user,
                "title": title,
                "message": message,
            }
        ).encode("ascii")
        _post(self.api_url, body, "application/x-www-form-urlencoded", "Pushover")


class WebhookNotifier(Notifier):
    def __init__(self, url: str):
        self.url = url

    def name(self) -> str:
        return "webhook"

    def send_message(self, title: str, message: str, report: Optional[Report] = None) -> None:
        payload = {"title": title, "message": message}
        if report is not None:
            payload["summary"] = report.summary()
            payload["entries"] = [
                entry.to_dict() for entry in report.entries if entry.status.value not in {"scanned", "stale"}
            ]
        _post(self.url, dumps(payload).encode("utf-8"), "application/json", "Webhook")

    def send(self, report: Report, hostname: str) -> None:
        title, message = format_report(report, hostname)
        self.send_message(title, message, report)


def build_notifiers(settings: Settings) -> list[Notifier]:
    notifiers: list[Notifier] = [LogNotifier()]
    if settings.pushover_token and settings.pushover_user:
        notifiers.append(PushoverNotifier(settings.pushover_token, settings.pushover_user, settings.pushover_api))
    elif settings.pushover_token or settings.pushover_user:
        LOG.warning("Pushover disabled; both token and user are required")
    if settings.notification_url:
        notifiers.append(WebhookNotifier(settings.notification_url))
    return notifiers


def notify_all(
    notifiers: Iterable[Notifier],
    report: Report,
    split_by_container: bool = False,
    hostname: Optional[str] = None,
) -> None:
    if not is_noteworthy(report):
        LOG.debug("Nothing to report")
        return
    hostname = hostname or gethostname()
    for notifier in notifiers:
        try:
            if split_by_container:
                for entry in report.updated:
                    notifier.send_message(*format_entry(entry, hostname))
            notifier.send(report, hostname)
        except (OSError, ValueError) as error:
            LOG.warning("Notifier %s failed: %s", notifier.name(), error)


def close_all(notifiers: Iterable[Notifier]) -> None:
    for notifier in notifiers:
        notifier.close()
