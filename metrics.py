from __future__ import annotations

import os
from typing import Dict

from prometheus_client import Counter, Histogram

# Labels kept small to avoid cardinality explosions
API_REQUESTS_TOTAL = Counter(
    "dbexplorer_api_requests_total",
    "Total API requests",
    ["path", "method", "status"],
)

API_LATENCY_SECONDS = Histogram(
    "dbexplorer_api_latency_seconds",
    "API request latency (seconds)",
    ["path"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21),
)

LLM_LATENCY_SECONDS = Histogram(
    "dbexplorer_llm_latency_seconds",
    "Completion call latency (seconds)",
    ["purpose"],  # describe | classify | answer
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21),
)

ROUTER_DECISIONS_TOTAL = Counter(
    "dbexplorer_router_decisions_total",
    "Table router outcomes",
    ["outcome"],  # cache_hit | classified | fallback
)

SNAPSHOT_BUILDS_TOTAL = Counter(
    "dbexplorer_snapshot_builds_total",
    "Snapshot builds",
    ["status"],  # ok | failed | rejected
)

SNAPSHOT_BUILD_SECONDS = Histogram(
    "dbexplorer_snapshot_build_seconds",
    "Snapshot build runtime (seconds)",
    buckets=(0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21, 34),
)

JOBS_ENQUEUED_TOTAL = Counter(
    "dbexplorer_jobs_enqueued_total",
    "Background jobs enqueued",
    ["kind"],
)


def env_flags() -> Dict[str, str]:
    return {
        "redis_enabled": "1" if bool(os.getenv("REDIS_URL")) else "0",
        "async_enabled": os.getenv("ASYNC_ENABLED", "1"),
    }
