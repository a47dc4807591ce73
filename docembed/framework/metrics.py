"""
Metrics Collection
==================

File-based metrics collection for pipeline runs.
"""

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collect run metrics to a JSONL file.

    Features:
    - Counter metrics (incremental)
    - Timer metrics (duration samples, safe for concurrent timers of one name)
    - Gauge metrics (point-in-time values)
    - Thread-safe operations
    """

    def __init__(self, component: str, metrics_dir: Optional[Union[str, Path]] = None):
        """
        Initialize metrics collector.

        Args:
            component: Name of the component or run being measured
            metrics_dir: Directory for metrics.jsonl (defaults to ./logs)
        """
        self.component = component
        self.metrics: Dict[str, Any] = {
            'component': component,
            'start_time': time.time(),
            'counters': {},
            'timers': {},
            'gauges': {},
            'errors': []
        }
        self.lock = Lock()
        self.metrics_dir = Path(metrics_dir) if metrics_dir else Path.cwd() / "logs"

    def increment(self, metric: str, value: int = 1):
        """Increment a counter metric."""
        with self.lock:
            counters = self.metrics['counters']
            counters[metric] = counters.get(metric, 0) + value

    def counter(self, metric: str) -> int:
        with self.lock:
            return self.metrics['counters'].get(metric, 0)

    def record_duration(self, metric: str, seconds: float):
        """Append one duration sample to a timer."""
        with self.lock:
            self.metrics['timers'].setdefault(metric, []).append(seconds)

    @contextmanager
    def timer(self, metric: str) -> Iterator[None]:
        """Time the enclosed block, recording the sample even if it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_duration(metric, time.perf_counter() - start)

    def gauge(self, metric: str, value: float):
        """Set a gauge metric."""
        with self.lock:
            self.metrics['gauges'][metric] = value

    def record_error(self, error: str):
        """Record an error."""
        with self.lock:
            self.metrics['errors'].append({
                'timestamp': datetime.now().isoformat(),
                'error': str(error)
            })

    @staticmethod
    def _timer_stats(timers: Dict[str, List[float]]) -> Dict[str, Dict[str, float]]:
        stats = {}
        for name, durations in timers.items():
            if not durations:
                continue
            ordered = sorted(durations)
            total = sum(ordered)
            stats[name] = {
                'count': len(ordered),
                'total': total,
                'average': total / len(ordered),
                'min': ordered[0],
                'p95': ordered[min(len(ordered) - 1, int(0.95 * len(ordered)))],
                'max': ordered[-1],
            }
        return stats

    def get_summary(self) -> Dict[str, Any]:
        """
        Get metrics summary.

        Returns:
            Dictionary of counters, gauges, errors, timer statistics and runtime
        """
        with self.lock:
            summary = {
                'component': self.component,
                'counters': dict(self.metrics['counters']),
                'gauges': dict(self.metrics['gauges']),
                'errors': list(self.metrics['errors']),
                'timer_stats': self._timer_stats(self.metrics['timers']),
                'runtime': time.time() - self.metrics['start_time'],
            }
            return summary

    def flush(self) -> Optional[Path]:
        """Append the current summary to metrics.jsonl and return the file path."""
        summary = self.get_summary()
        metrics_file = self.metrics_dir / "metrics.jsonl"
        try:
            metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with metrics_file.open('a') as f:
                json.dump({'timestamp': datetime.now().isoformat(), **summary}, f)
                f.write('\n')
        except (OSError, TypeError) as e:
            logger.warning(f"Failed to save metrics for {self.component}: {e}")
            return None
        return metrics_file
