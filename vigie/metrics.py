from logging import getLogger
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

from .report import Report

LOG = getLogger(__name__)


class Metrics:
    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.scanned = Gauge(
            "watchtower_containers_scanned", "Number of containers scanned for changes in the last scan", registry=self.registry
        )
        self.updated = Gauge(
            "watchtower_containers_updated", "Number of containers updated in the last scan", registry=self.registry
        )
        self.failed = Gauge(
            "watchtower_containers_failed", "Number of containers where update failed in the last scan", registry=self.registry
        )
        self.scans = Counter("watchtower_scans", "Number of scans since the supervisor started", registry=self.registry)
        self.skipped = Counter(
            "watchtower_scans_skipped", "Number of skipped scans since the supervisor started", registry=self.registry
        )

    def register_scan(self, report: Optional[Report]) -> None:
        """Record one scan; `None` marks a scan skipped because another was running."""
        self.scans.inc()
        if report is None:
            self.skipped.inc()
            summary = {"scanned": 0, "updated": 0, "failed": 0}
        else:
            summary = report.summary()
        self.scanned.set(summary["scanned"])
        self.updated.set(summary["updated"])
        self.failed.set(summary["failed"])

    def render(self) -> bytes:
        return generate_latest(self.registry)
