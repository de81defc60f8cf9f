"""
Dispatch Statistics Module
Counters and latency timings for pipeline introspection
"""

from collections import Counter, defaultdict, deque
from typing import Any, Deque, Dict

import numpy as np


class DispatchStatistics:
    """Track dispatch counters and timings"""

    def __init__(self, max_timings: int = 1000):
        """Initialize Statistics

        Args:
            max_timings: Samples retained per timing metric
        """
        self.counters = Counter()
        self.timings: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=max_timings))

    def increment(self, metric: str, value: int = 1):
        """Increment counter

        Args:
            metric: Metric name
            value: Increment value
        """
        self.counters[metric] += value

    def record_timing(self, metric: str, duration: float):
        """Record timing

        Args:
            metric: Metric name
            duration: Duration in seconds
        """
        self.timings[metric].append(duration)

    def get(self, metric: str) -> int:
        return self.counters.get(metric, 0)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics

        Returns:
            Statistics dictionary
        """
        stats: Dict[str, Any] = dict(self.counters)

        for metric, values in self.timings.items():
            if values:
                samples = np.fromiter(values, dtype=float)
                stats[f'{metric}_avg'] = float(np.mean(samples))
                stats[f'{metric}_p50'] = float(np.percentile(samples, 50))
                stats[f'{metric}_p95'] = float(np.percentile(samples, 95))

        return stats

    def reset(self):
        self.counters.clear()
        self.timings.clear()
