from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram

REGISTRY = CollectorRegistry()

# Latency buckets (seconds) for upload/analysis calls and the whole generation fan-out.
PIPELINE_BUCKETS = (
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    20.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
    1800.0,
)

# Jobs
jobs_created = Counter(
    "sound_design_jobs_created_total", "Jobs admitted", registry=REGISTRY
)
jobs_finished = Counter(
    "sound_design_jobs_finished_total",
    "Jobs finished by terminal status",
    labelnames=("status",),
    registry=REGISTRY,
)

# Generation fan-out
generation_outcomes = Counter(
    "sound_design_generation_outcomes_total",
    "Generation outcomes by track kind and status",
    labelnames=("kind", "status"),
    registry=REGISTRY,
)

# Stage durations
stage_seconds = Histogram(
    "sound_design_stage_seconds",
    "Pipeline stage latency (seconds)",
    labelnames=("stage",),
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Context manager to time a block and observe into a histogram.
    Usage:
        with time_hist(stage_seconds.labels(stage="generating")) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)
