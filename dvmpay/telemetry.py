"""
Fire-and-forget metrics.

A MetricsSink receives (category, action, label, value) tuples. Sinks may be
slow or broken; track_safely makes sure neither ever affects the job it is
reporting on.
"""

import logging
from typing import List, Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)

Value = Union[str, int, float, None]


class MetricsSink(Protocol):
    def track(self, category: str, action: str, label: Optional[str] = None, value: Value = None) -> None:
        ...


class NullMetricsSink:
    def track(self, category: str, action: str, label: Optional[str] = None, value: Value = None) -> None:
        return None


class LoggingMetricsSink:
    """Write metrics to the dvmpay.metrics logger at DEBUG."""

    def __init__(self, name: str = "dvmpay.metrics"):
        self._log = logging.getLogger(name)

    def track(self, category: str, action: str, label: Optional[str] = None, value: Value = None) -> None:
        self._log.debug("%s.%s label=%s value=%s", category, action, label, value)


class RecordingMetricsSink:
    """Keeps every event in memory. Handy for tests and the history server."""

    def __init__(self):
        self.events: List[Tuple[str, str, Optional[str], Value]] = []

    def track(self, category: str, action: str, label: Optional[str] = None, value: Value = None) -> None:
        self.events.append((category, action, label, value))


def track_safely(
    sink: Optional[MetricsSink],
    category: str,
    action: str,
    label: Optional[str] = None,
    value: Value = None,
) -> None:
    if sink is None:
        return
    try:
        sink.track(category, action, label, value)
    except Exception as e:
        logger.debug("metrics sink failed on %s.%s: %s", category, action, e)
