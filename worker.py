from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional
from dotenv import load_dotenv
load_dotenv()
from rq import Worker, Queue
from redis import Redis
from sqlalchemy import create_engine

from database import target_key_for_url
from infra import get_redis, configure_logging
from llm import optional_default_client
from snapshot import ArtifactStore, SnapshotBuilder

log = configure_logging()

QUEUE_NAME = os.getenv("RQ_QUEUE_NAME", "dbexplorer")


def run_snapshot_job(*, db_url: str, artifact_dir: Optional[str] = None) -> Dict[str, Any]:
    """
    Background job:
    - Builds the explorer snapshot against a fresh engine
    - Returns a payload compatible with /db/explorer/build responses
    """
    t0 = time.time()
    engine = create_engine(db_url, pool_pre_ping=True)
    try:
        artifacts = ArtifactStore(artifact_dir) if artifact_dir else ArtifactStore()
        builder = SnapshotBuilder(artifacts, llm=optional_default_client())
        _, store = builder.build_from_engine(engine, target=target_key_for_url(db_url))
    finally:
        engine.dispose()

    return {
        "message": "Snapshot built",
        "tables": list(store.keys()),
        "latency_ms": int((time.time() - t0) * 1000),
    }


def main() -> None:
    r: Optional[Redis] = get_redis()
    if not r:
        raise RuntimeError("REDIS_URL is required to run the RQ worker.")

    q = Queue(QUEUE_NAME, connection=r)
    w = Worker([q], connection=r)
    log.info("rq_worker_start", extra={"queue": QUEUE_NAME})
    w.work(with_scheduler=True)


if __name__ == "__main__":
    main()
