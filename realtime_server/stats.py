import math
from collections import Counter, deque

class EndpointStats:
    """Per-path rolling latency window (ms) plus lifetime status-code counts."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self.latencies: dict[str, deque[int]] = {}
        self.statuses: dict[str, Counter[int]] = {}

    def record(self, path: str, status: int, latency_ms: int):
        self.latencies.setdefault(path, deque(maxlen=self.capacity)).append(latency_ms)
        self.statuses.setdefault(path, Counter())[status] += 1

    def summary(self, path: str) -> dict[str, object]:
        window = sorted(self.latencies.get(path, ()))
        n = len(window)

        def pick(p: float) -> float:
            if n == 0:
                return 0.0
            return float(window[max(0, min(n - 1, math.ceil(p * n) - 1))])

        return {
            "p50": pick(0.50),
            "p95": pick(0.95),
            "p99": pick(0.99),
            "max": float(window[-1]) if window else 0.0,
            "count": n,
            "status": {str(code): c for code, c in sorted(self.statuses.get(path, Counter()).items())},
        }
