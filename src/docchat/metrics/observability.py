"""Observability helpers for DocChat."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "docchat") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    embedding_latency = Histogram(
        "docchat_embedding_duration_seconds",
        "Time spent embedding questions.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
    )
    retrieval_latency = Histogram(
        "docchat_retrieval_duration_seconds",
        "Time spent retrieving context chunks.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_source_count = Histogram(
        "docchat_retrieved_source_count",
        "Number of sources attached to an answer.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "docchat_grounding_score",
        "Similarity of retrieved sources to the question.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "docchat_generation_duration_seconds",
        "Time spent streaming answers.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
    )
    rate_limit_rejections = Counter(
        "docchat_rate_limit_rejections_total",
        "Requests rejected by the rate limiter.",
        ["scope"],
    )
    upstream_failures = Counter(
        "docchat_upstream_failures_total",
        "Embedding, retrieval or generation failures.",
        ["stage"],
    )
    stream_outcomes = Counter(
        "docchat_stream_outcomes_total",
        "Answer streams by terminal state.",
        ["outcome"],
    )
    persistence_failures = Counter(
        "docchat_persistence_failures_total",
        "Exchanges that could not be written after a completed stream.",
    )

    @classmethod
    def observe_embedding(cls, duration_seconds: float) -> None:
        cls.embedding_latency.observe(duration_seconds)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        source_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_source_count.observe(source_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float, outcome: str) -> None:
        cls.generation_latency.observe(duration_seconds)
        cls.stream_outcomes.labels(outcome=outcome).inc()

    @classmethod
    def record_rate_limited(cls, scope: str) -> None:
        cls.rate_limit_rejections.labels(scope=scope).inc()

    @classmethod
    def record_upstream_failure(cls, stage: str) -> None:
        cls.upstream_failures.labels(stage=stage).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
