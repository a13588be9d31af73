"""
Metrics collection for observability.

Tracks packet counts, cache efficiency, reconnects and round-trip latency.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any
from collections import deque


@dataclass
class RoundTripTiming:
    """Timing deltas for a single answered call, in milliseconds."""

    request_id: str
    request_type: str
    client_delta_ms: float
    server_delta_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Traffic
    packets_sent: int = 0
    packets_received: int = 0
    pushes_received: int = 0
    responses_unmatched: int = 0
    decode_errors: int = 0
    sign_errors: int = 0

    # Cache
    cache_hits: int = 0
    cache_misses: int = 0

    # Latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # Connection
    reconnects: int = 0
    server_errors: int = 0

    # Timestamp
    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Metrics collector for a Connection.

    All updates happen on the connection's event loop, so no locking is
    needed.

    Usage:
        metrics = Metrics()
        metrics.record_sent()
        metrics.record_round_trip(RoundTripTiming("ping--1", "ping", 12.0))
        print(metrics.snapshot().latency_avg_ms)
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples
        self._latencies: deque = deque(maxlen=max_latency_samples)
        self.reset()

    def reset(self):
        """Reset all metrics."""
        self._packets_sent = 0
        self._packets_received = 0
        self._pushes_received = 0
        self._responses_unmatched = 0
        self._decode_errors = 0
        self._sign_errors = 0
        self._cache_hits = 0
        self._cache_misses = 0
        self._reconnects = 0
        self._server_errors = 0
        self._latencies.clear()

    @property
    def packets_sent(self) -> int:
        return self._packets_sent

    @property
    def packets_received(self) -> int:
        return self._packets_received

    def record_sent(self):
        self._packets_sent += 1

    def record_received(self, push: bool = False):
        self._packets_received += 1
        if push:
            self._pushes_received += 1

    def record_unmatched(self):
        self._responses_unmatched += 1

    def record_decode_error(self):
        self._decode_errors += 1

    def record_sign_error(self):
        self._sign_errors += 1

    def record_cache(self, hit: bool):
        if hit:
            self._cache_hits += 1
        else:
            self._cache_misses += 1

    def record_reconnect(self):
        self._reconnects += 1

    def record_server_error(self):
        self._server_errors += 1

    def record_round_trip(self, timing: RoundTripTiming):
        """Store the client-side round trip of an answered call."""
        self._latencies.append(timing.client_delta_ms)

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        latencies = list(self._latencies)

        # Calculate percentiles
        if latencies:
            sorted_latencies = sorted(latencies)
            n = len(sorted_latencies)
            p50_idx = int(n * 0.50)
            p95_idx = int(n * 0.95)
            p99_idx = int(n * 0.99)

            latency_avg = sum(latencies) / n
            latency_p50 = sorted_latencies[min(p50_idx, n - 1)]
            latency_p95 = sorted_latencies[min(p95_idx, n - 1)]
            latency_p99 = sorted_latencies[min(p99_idx, n - 1)]
            latency_min = sorted_latencies[0]
            latency_max = sorted_latencies[-1]
        else:
            latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
            latency_min = latency_max = 0.0

        return MetricsSnapshot(
            packets_sent=self._packets_sent,
            packets_received=self._packets_received,
            pushes_received=self._pushes_received,
            responses_unmatched=self._responses_unmatched,
            decode_errors=self._decode_errors,
            sign_errors=self._sign_errors,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            latency_avg_ms=latency_avg,
            latency_p50_ms=latency_p50,
            latency_p95_ms=latency_p95,
            latency_p99_ms=latency_p99,
            latency_min_ms=latency_min,
            latency_max_ms=latency_max,
            reconnects=self._reconnects,
            server_errors=self._server_errors,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        lookups = snapshot.cache_hits + snapshot.cache_misses
        return {
            "packets": {
                "sent": snapshot.packets_sent,
                "received": snapshot.packets_received,
                "pushes": snapshot.pushes_received,
                "unmatched": snapshot.responses_unmatched,
            },
            "errors": {
                "decode": snapshot.decode_errors,
                "sign": snapshot.sign_errors,
                "server": snapshot.server_errors,
            },
            "cache": {
                "hits": snapshot.cache_hits,
                "misses": snapshot.cache_misses,
                "hit_rate": snapshot.cache_hits / lookups if lookups > 0 else 0.0,
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "connection": {
                "reconnects": snapshot.reconnects,
            },
        }
