import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterator
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


class StructuredLogger:
    """
    Structured JSON logger.
    Every line carries ts, level, event and the current request_id.
    """

    def __init__(self, name: str = "classroom_mdm"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def _base_fields(self) -> Dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(),
        }

    def log_event(
        self,
        event: str,
        level: str = "INFO",
        **fields
    ) -> None:
        """
        Log a structured event with additional fields.

        Args:
            event: Dotted event name (e.g., "command.enqueued", "presence.sweep.demoted")
            level: Log level (DEBUG, INFO, WARN, ERROR)
            **fields: Additional event-specific fields
        """
        log_entry = self._base_fields()
        log_entry["level"] = level
        log_entry["event"] = event
        log_entry.update(fields)

        log_line = json.dumps(log_entry, default=str)

        if level == "ERROR":
            self.logger.error(log_line)
        elif level == "WARN":
            self.logger.warning(log_line)
        elif level == "DEBUG":
            self.logger.debug(log_line)
        else:
            self.logger.info(log_line)


class MetricsCollector:
    """
    In-memory metrics for Prometheus text exposition.
    Counters, gauges and latency histograms keyed by sorted label tuples.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, Dict[tuple, float]] = defaultdict(dict)
        self._histograms: Dict[str, Dict[tuple, list]] = defaultdict(lambda: defaultdict(list))

        self.latency_buckets = [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000]

    @staticmethod
    def _label_tuple(labels: Optional[Dict[str, str]]) -> tuple:
        return tuple(sorted((labels or {}).items()))

    @staticmethod
    def _format_labels(label_tuple: tuple) -> str:
        return ",".join(f'{k}="{v}"' for k, v in label_tuple)

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        label_tuple = self._label_tuple(labels)
        with self._lock:
            self._counters[metric_name][label_tuple] += value

    def set_gauge(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = self._label_tuple(labels)
        with self._lock:
            self._gauges[metric_name][label_tuple] = value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = self._label_tuple(labels)
        with self._lock:
            self._histograms[metric_name][label_tuple].append(value)

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(metric_name, {}).get(self._label_tuple(labels), 0)

    def get_prometheus_text(self) -> str:
        lines = []

        with self._lock:
            for metric_name, label_data in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{self._format_labels(label_tuple)}}} {count}")
                    else:
                        lines.append(f"{metric_name} {count}")

            for metric_name, label_data in sorted(self._gauges.items()):
                lines.append(f"# TYPE {metric_name} gauge")
                for label_tuple, value in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{self._format_labels(label_tuple)}}} {value}")
                    else:
                        lines.append(f"{metric_name} {value}")

            for metric_name, label_data in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for label_tuple, observations in sorted(label_data.items()):
                    label_dict = dict(label_tuple)

                    for bucket in self.latency_buckets:
                        count = sum(1 for obs in observations if obs <= bucket)
                        bucket_labels = tuple(sorted({**label_dict, "le": str(bucket)}.items()))
                        lines.append(f"{metric_name}_bucket{{{self._format_labels(bucket_labels)}}} {count}")

                    inf_labels = tuple(sorted({**label_dict, "le": "+Inf"}.items()))
                    lines.append(f"{metric_name}_bucket{{{self._format_labels(inf_labels)}}} {len(observations)}")

                    suffix = f"{{{self._format_labels(label_tuple)}}}" if label_tuple else ""
                    lines.append(f"{metric_name}_count{suffix} {len(observations)}")
                    if observations:
                        lines.append(f"{metric_name}_sum{suffix} {sum(observations)}")

        return "\n".join(lines) + "\n"


@contextmanager
def best_effort(event: str, **fields) -> Iterator[None]:
    """
    Run a side effect whose failure must never affect the caller.

    Exceptions are logged as `<event>.failed` and swallowed. Used for webhook
    scheduling, activity history and notification writes.
    """
    try:
        yield
    except Exception as e:
        structured_logger.log_event(
            f"{event}.failed",
            level="WARN",
            error=str(e),
            error_type=type(e).__name__,
            **fields
        )
        metrics.inc_counter("best_effort_failures_total", {"operation": event})


structured_logger = StructuredLogger()
metrics = MetricsCollector()
