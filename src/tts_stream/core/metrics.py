"""
Prometheus Metrics for tts-stream.

Metrics Exposed:
    tts_stream_requests_total            - Entry-point calls by operation and outcome
    tts_stream_cache_lookups_total       - Cache lookups by tier and result
    tts_stream_chunk_tasks_total         - Chunk task outcomes by kind
    tts_stream_provider_seconds          - Histogram of provider call latency
    tts_stream_audio_bytes_total         - Bytes received from the provider
    tts_stream_queue_depth               - Tasks waiting (ready + delayed)
    tts_stream_active_workers            - Workers currently running a task

Cache tiers:
    whole_text      - generate-cached lookups
    job             - start_job finding a completed job
    material_chunk  - chunks already generated for a material/voice

Usage:
    from tts_stream.core.metrics import metrics

    metrics.record_request("start_job", "joined")
    metrics.record_cache("hit", tier="whole_text")
    metrics.record_chunk("job", "success")
    metrics.observe_provider(1.84, "success", audio_bytes=31_000)

    content, content_type = metrics.get_metrics_response()

See Also:
    - api/routes.py: /metrics endpoint
    - tts/queue.py: queue depth and worker gauges
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class StreamMetrics:
    """
    Metric collection for the service, on a private CollectorRegistry.

    A private registry keeps repeated instantiation (tests, reloads) from
    colliding with metrics already registered in the default registry.
    """

    def __init__(self):
        self._registry = CollectorRegistry()

        self._requests_total = Counter(
            "tts_stream_requests_total",
            "Entry-point calls",
            ["operation", "outcome"],
            registry=self._registry,
        )
        self._cache_lookups = Counter(
            "tts_stream_cache_lookups_total",
            "Cache lookups",
            ["tier", "result"],
            registry=self._registry,
        )
        self._chunk_tasks = Counter(
            "tts_stream_chunk_tasks_total",
            "Chunk task outcomes",
            ["kind", "outcome"],
            registry=self._registry,
        )
        self._provider_seconds = Histogram(
            "tts_stream_provider_seconds",
            "Speech provider call duration in seconds",
            ["status"],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )
        self._audio_bytes_total = Counter(
            "tts_stream_audio_bytes_total",
            "Audio bytes received from the provider",
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "tts_stream_queue_depth",
            "Tasks waiting in the worker queue",
            registry=self._registry,
        )
        self._active_workers = Gauge(
            "tts_stream_active_workers",
            "Workers currently running a task",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_request(self, operation: str, outcome: str) -> None:
        """
        Count an entry-point call.

        Args:
            operation: "generate", "generate_cached", "start_job", "start_material"
            outcome: "created", "joined", "cache_hit", "error", ...
        """
        self._requests_total.labels(operation=operation, outcome=outcome).inc()

    def record_cache(self, result: str, tier: str) -> None:
        self._cache_lookups.labels(tier=tier, result=result).inc()

    def record_chunk(self, kind: str, outcome: str) -> None:
        """
        Count a chunk task outcome.

        Args:
            kind: "job" or "material"
            outcome: "success", "error" (retryable), "failed", "rate_limited", "dropped"
        """
        self._chunk_tasks.labels(kind=kind, outcome=outcome).inc()

    def observe_provider(self, seconds: float, status: str, audio_bytes: int = 0) -> None:
        self._provider_seconds.labels(status=status).observe(seconds)
        if audio_bytes > 0:
            self._audio_bytes_total.inc(audio_bytes)

    def set_queue_depth(self, depth: int) -> None:
        self._queue_depth.set(depth)

    def set_active_workers(self, count: int) -> None:
        self._active_workers.set(count)

    def get_metrics_response(self) -> tuple[bytes, str]:
        """Return ``(body, content_type)`` in Prometheus text format."""
        return generate_latest(self._registry), CONTENT_TYPE_LATEST


# Global metrics instance: from tts_stream.core.metrics import metrics
metrics = StreamMetrics()
