import logging
from collections import Counter, defaultdict
from typing import Any, Dict, Optional

from ..models.metrics import MetricRecord

logger = logging.getLogger(__name__)


class MetricsService:
    """
    Records engine events. Events are logged and aggregated in process;
    `snapshot()` exposes the counters for whoever exports them.
    """

    def __init__(self):
        self.event_counts: Counter = Counter()
        # Running totals per event; individual samples are not kept
        self.duration_counts: Counter = Counter()
        self.duration_totals_ms: Dict[str, float] = defaultdict(float)

    def record_event(
        self,
        event_name: str,
        author_id: Optional[str] = None,
        operation: Optional[str] = None,
        duration_ms: Optional[float] = None,
        count: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> MetricRecord:
        """
        Records a metric event.
        Args:
            event_name: The name of the event being recorded.
            author_id: The author the event relates to, if any.
            operation: The engine operation during which the event occurred.
            duration_ms: The duration of the event in milliseconds.
            count: A count associated with the event (e.g., number of matches).
            metadata: Additional key-value pairs for context.
        """
        metric = MetricRecord(
            event_name=event_name,
            author_id=author_id,
            operation=operation,
            duration_ms=duration_ms,
            count=count,
            metadata=metadata
        )
        self.event_counts[event_name] += 1 if count is None else count
        if duration_ms is not None:
            self.duration_counts[event_name] += 1
            self.duration_totals_ms[event_name] += duration_ms
        logger.debug(f"Metric '{event_name}': author={author_id}, op={operation}, duration_ms={duration_ms}, count={count}, meta={metadata}")
        return metric

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counts": dict(self.event_counts),
            "avg_duration_ms": {
                name: total / self.duration_counts[name] for name, total in self.duration_totals_ms.items()
            },
        }
