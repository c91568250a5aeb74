"""
Prometheus textfile export of the run statistics.

Only the current values are kept; the file is rewritten atomically by
write_to_textfile() so a node_exporter textfile collector never sees a
partial file.
"""

import logging

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from .common import NO_NS_IN_SEC, PROGRAM_NAME

log = logging.getLogger(__name__)


class MetricsFile:
    def __init__(self, path, config, source_name: str,
                 registry: CollectorRegistry | None = None):
        self.path = str(path)
        self.registry = registry if registry is not None else CollectorRegistry()
        labels = ["source"]
        prefix = f"{PROGRAM_NAME}_"

        def gauge(name, desc):
            return Gauge(prefix + name, desc, labels,
                         registry=self.registry).labels(source_name)

        self.runtime = gauge("runtime_seconds", "Seconds since the loop started")
        self.not_scheduled = gauge(
            "not_scheduled", "Times the process was not scheduled on time")
        self.last_delay = gauge(
            "last_not_scheduled_seconds",
            "Wall time of the most recent late cycle")
        self.last_steal = gauge(
            "last_steal_percent",
            "Steal time percentage of the most recent late cycle")
        self.timeout = gauge("timeout_seconds", "Configured timeout")
        self.steal_threshold = gauge("steal_threshold_percent",
                                     "Configured steal percent threshold")

        self.timeout.set(config.max_allowed_diff_ns / NO_NS_IN_SEC)
        self.steal_threshold.set(config.steal_threshold)

    def publish(self, stats, now_ns: int, result=None) -> None:
        """Update gauges from the statistics (and a late cycle) and write the file."""
        elapsed, count = stats.report(now_ns)
        self.runtime.set(elapsed)
        self.not_scheduled.set(count)
        if result is not None:
            self.last_delay.set(result.wall_delta_ns / NO_NS_IN_SEC)
            self.last_steal.set(result.steal_percent)
        self.write()

    def write(self) -> bool:
        try:
            write_to_textfile(self.path, self.registry)
        except OSError as e:
            log.warning("Can't write metrics to %s: %s", self.path, e)
            return False
        return True
