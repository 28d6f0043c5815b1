"""
In-memory build and request metrics, exported in Prometheus text format.
"""
import threading
from collections import defaultdict
from typing import Dict

PREFIX = "launchpad"

# counter name -> help text
COUNTERS = {
    "requests_total": "Total HTTP requests",
    "builds_submitted_total": "Total builds accepted",
    "builds_running_total": "Total builds that reached running",
    "builds_failed_total": "Total builds that failed",
    "builds_cancelled_total": "Total builds cancelled by a caller",
}

STATUS_CLASSES = ("2xx", "4xx", "5xx")


class Metrics:
    """Thread-safe counters, per-stage failure counts and the in-flight gauge."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
        for status_class in STATUS_CLASSES:
            self._counters[f"requests_{status_class}"] = 0
        self._stage_failures: Dict[str, int] = defaultdict(int)
        self._builds_in_flight = 0

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def stage_failed(self, stage: str) -> None:
        with self._lock:
            self._stage_failures[stage] += 1

    def set_builds_in_flight(self, count: int) -> None:
        with self._lock:
            self._builds_in_flight = count

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        with self._lock:
            counters = dict(self._counters)
            stage_failures = dict(self._stage_failures)
            in_flight = self._builds_in_flight

        lines = []
        for name, help_text in COUNTERS.items():
            lines.append(f"# HELP {PREFIX}_{name} {help_text}")
            lines.append(f"# TYPE {PREFIX}_{name} counter")
            lines.append(f"{PREFIX}_{name} {counters[name]}")

        lines.append(f"# HELP {PREFIX}_requests_by_status HTTP requests by status class")
        lines.append(f"# TYPE {PREFIX}_requests_by_status counter")
        for status_class in STATUS_CLASSES:
            value = counters[f"requests_{status_class}"]
            lines.append(f'{PREFIX}_requests_by_status{{status="{status_class}"}} {value}')

        lines.append(f"# HELP {PREFIX}_build_stage_failures_total Failed builds by stage")
        lines.append(f"# TYPE {PREFIX}_build_stage_failures_total counter")
        for stage in sorted(stage_failures):
            lines.append(
                f'{PREFIX}_build_stage_failures_total{{stage="{stage}"}} {stage_failures[stage]}'
            )

        lines.append(f"# HELP {PREFIX}_builds_in_flight Builds with a running pipeline task")
        lines.append(f"# TYPE {PREFIX}_builds_in_flight gauge")
        lines.append(f"{PREFIX}_builds_in_flight {in_flight}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
