import os
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile


def build_registry() -> CollectorRegistry:
    """Build a dedicated Prometheus registry so CLI runs can dump only our series."""
    return CollectorRegistry()


REGISTRY: CollectorRegistry = build_registry()

# GitHub API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    registry=REGISTRY,
)
github_rate_limit_reset = Gauge(
    "github_rate_limit_reset",
    "Epoch seconds when GitHub rate limit resets",
    registry=REGISTRY,
)

# Client-side limiter metrics
limiter_wait_seconds = Histogram(
    "limiter_wait_seconds",
    "Time spent blocked waiting for a limiter token",
    labelnames=("limiter",),
    registry=REGISTRY,
    buckets=(0.001, 0.01, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60),
)

# Local git metrics
git_commands_total = Counter(
    "git_commands_total",
    "git subprocess invocations by operation and result",
    labelnames=("operation", "result"),
    registry=REGISTRY,
)

# Publish behavior metrics
publish_total = Counter(
    "publish_total",
    "Publish attempts by result and failing stage",
    labelnames=("result", "stage"),
    registry=REGISTRY,
)
publish_stage_seconds = Histogram(
    "publish_stage_seconds",
    "Publish stage durations",
    labelnames=("stage",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)
pull_requests_total = Counter(
    "pull_requests_total",
    "Reconciliation outcomes",
    labelnames=("outcome",),
    registry=REGISTRY,
)
branch_lock_total = Counter(
    "branch_lock_total",
    "Per-branch lock acquisition attempts",
    labelnames=("result",),
    registry=REGISTRY,
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def dump_metrics(path: str) -> None:
    """Write the registry in textfile-collector format."""
    write_to_textfile(path, REGISTRY)
