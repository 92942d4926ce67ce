from __future__ import annotations

import os
import re
import threading
import time
from typing import Any, Dict, Optional
from uuid import uuid4

from dotenv import load_dotenv
from flask import Flask, jsonify, request, g
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from chat import ChatService
from conversations import ConversationStore, TopicCache
from database import DatabaseRegistry, fetch_schema
from errors import ExplorerError
from infra import configure_logging, get_redis
from llm import build_default_client, optional_default_client
from metrics import API_REQUESTS_TOTAL, API_LATENCY_SECONDS, JOBS_ENQUEUED_TOTAL, env_flags
from snapshot import ArtifactStore, SnapshotBuilder

load_dotenv()

# ------------------------------------------------------------
# App
# ------------------------------------------------------------
app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_CONTENT_LENGTH", "262144"))  # 256 KB
log = configure_logging()

# ------------------------------------------------------------
# CORS (restrict in production)
# ------------------------------------------------------------
origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
CORS(app, resources={r"/*": {"origins": [o.strip() for o in origins]}})

# ------------------------------------------------------------
# Rate limiting
# ------------------------------------------------------------
storage_uri = os.getenv("RATE_LIMIT_STORAGE_URI") or os.getenv("REDIS_URL") or "memory://"

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=["60 per minute"],
    storage_uri=storage_uri,
)

# ------------------------------------------------------------
# Async job system (RQ + Redis)
# ------------------------------------------------------------
RQ_QUEUE_NAME = os.getenv("RQ_QUEUE_NAME", "dbexplorer")
JOB_RESULT_TTL_SECONDS = int(os.getenv("JOB_RESULT_TTL_SECONDS", "3600"))
MAX_PROMPT_CHARS = int(os.getenv("MAX_PROMPT_CHARS", "4000"))

# ------------------------------------------------------------
# Shared state
# ------------------------------------------------------------
registry = DatabaseRegistry()
artifacts = ArtifactStore()
conversations = ConversationStore()
topic_cache = TopicCache()

_services_lock = threading.Lock()
_chat_service: Optional[ChatService] = None
_snapshot_builder: Optional[SnapshotBuilder] = None


def get_chat_service() -> ChatService:
    """Built on first use so the app imports without an API key."""
    global _chat_service
    with _services_lock:
        if _chat_service is None:
            _chat_service = ChatService(build_default_client(), artifacts, conversations, topic_cache)
        return _chat_service


def get_snapshot_builder() -> SnapshotBuilder:
    global _snapshot_builder
    with _services_lock:
        if _snapshot_builder is None:
            _snapshot_builder = SnapshotBuilder(artifacts, llm=optional_default_client())
        return _snapshot_builder


def _safe_error(msg: str) -> str:
    """Best-effort redaction for user-facing errors."""
    msg = msg or "Request failed"
    msg = re.sub(r"(postgres(?:ql)?(?:\+\w+)?://)([^:@\s]+):([^@\s]+)@", r"\1***:***@", msg, flags=re.IGNORECASE)
    msg = re.sub(r"(mysql(?:\+\w+)?://)([^:@\s]+):([^@\s]+)@", r"\1***:***@", msg, flags=re.IGNORECASE)
    msg = re.sub(r"(password=)[^\s&]+", r"\1***", msg, flags=re.IGNORECASE)
    msg = re.sub(r"AIza[0-9A-Za-z\-_]{20,}", "AIza***REDACTED***", msg)
    return msg


def _error_response(e: Exception, event: str):
    status = e.status_code if isinstance(e, ExplorerError) else 500
    if status >= 500:
        log.exception(event, extra={"request_id": getattr(g, "request_id", "")})
    else:
        log.warning(event, extra={"request_id": getattr(g, "request_id", ""), "error": _safe_error(str(e))})
    return jsonify({"error": _safe_error(str(e))}), status


# ------------------------------------------------------------
# Request lifecycle: request id + security headers + structured logs + metrics
# ------------------------------------------------------------
@app.before_request
def _before_request():
    g.request_id = (request.headers.get("X-Request-ID") or str(uuid4())).strip()
    g.start_time = time.time()


@app.after_request
def _after_request(resp):
    # Security headers
    resp.headers["X-Request-ID"] = getattr(g, "request_id", "")
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["Referrer-Policy"] = "no-referrer"
    resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

    latency_s = max(0.0, time.time() - getattr(g, "start_time", time.time()))
    path = request.url_rule.rule if request.url_rule is not None else "unmatched"
    API_REQUESTS_TOTAL.labels(path=path, method=request.method, status=str(resp.status_code)).inc()
    API_LATENCY_SECONDS.labels(path=path).observe(latency_s)

    log.info(
        "request",
        extra={
            "request_id": getattr(g, "request_id", ""),
            "path": request.path,
            "method": request.method,
            "status": resp.status_code,
            "latency_ms": int(latency_s * 1000),
        },
    )
    return resp


# ------------------------------------------------------------
# Async helpers (RQ)
# ------------------------------------------------------------
def _get_queue() -> Optional[Queue]:
    r = get_redis()
    if not r:
        return None
    return Queue(RQ_QUEUE_NAME, connection=r, default_timeout=int(os.getenv("RQ_JOB_TIMEOUT_SECONDS", "600")))


def _job_status(job: Job) -> str:
    if job.is_finished:
        return "finished"
    if job.is_failed:
        return "failed"
    if job.is_started:
        return "running"
    return "queued"


# ------------------------------------------------------------
# API Discovery endpoints
# ------------------------------------------------------------
@app.route("/", methods=["GET"])
@limiter.exempt
def home():
    return jsonify(
        {
            "name": "DB Explorer",
            "status": "running",
            "usage": {"POST": "/api/chat", "body": {"prompt": "Which tables hold customer data?", "conversationId": "demo"}},
            "features": {
                "db_available": registry.is_available(),
                "redis_enabled": env_flags()["redis_enabled"] == "1",
            },
        }
    )


@app.route("/health", methods=["GET"])
@limiter.exempt
def health():
    return jsonify({"status": "ok"})


@app.route("/metrics", methods=["GET"])
@limiter.exempt
def metrics():
    return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}


# ------------------------------------------------------------
# Chat
# ------------------------------------------------------------
def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _required_text(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


@app.route("/api/chat", methods=["POST"])
@limiter.limit("20 per minute; 500 per day")
def api_chat():
    data = _json_body()
    prompt = _required_text(data, "prompt")
    conversation_id = _required_text(data, "conversationId")
    if not prompt:
        return jsonify({"error": "Missing 'prompt' in the request body"}), 400
    if not conversation_id:
        return jsonify({"error": "Missing 'conversationId' in the request body"}), 400
    if len(prompt) > MAX_PROMPT_CHARS:
        return jsonify({"error": "prompt too long"}), 400

    try:
        reply = get_chat_service().handle(prompt, conversation_id)
    except Exception as e:
        return _error_response(e, "chat_failed")
    return jsonify({"id": reply.id, "message": reply.message})


# ------------------------------------------------------------
# Database connection
# ------------------------------------------------------------
@app.route("/db/connect", methods=["POST"])
@limiter.limit("6 per minute; 60 per day")
def db_connect():
    data = _json_body()
    cfg = {k: data.get(k) for k in ("host", "port", "user", "password", "database", "ssl", "db_url")}
    try:
        registry.connect(cfg)
    except Exception as e:
        return _error_response(e, "db_connect_failed")
    return jsonify({"message": "Connected"})


@app.route("/db/connect-demo", methods=["POST"])
@limiter.limit("6 per minute; 60 per day")
def db_connect_demo():
    try:
        registry.connect_demo()
    except Exception as e:
        return _error_response(e, "db_connect_demo_failed")
    return jsonify({"message": "Connected to demo DB"})


@app.route("/db/status", methods=["GET"])
@limiter.exempt
def db_status():
    return jsonify(registry.status())


@app.route("/health/db", methods=["GET"])
@limiter.exempt
def health_db():
    if not registry.is_available():
        return jsonify({"status": "unavailable", "error": "DB connection not available"}), 503
    try:
        return jsonify(registry.health())
    except Exception as e:
        return _error_response(e, "db_health_failed")


@app.route("/db/schema", methods=["GET"])
def db_schema():
    try:
        return jsonify(fetch_schema(registry.get_engine()))
    except Exception as e:
        return _error_response(e, "db_schema_failed")


# ------------------------------------------------------------
# Explorer snapshot
# ------------------------------------------------------------
@app.route("/db/explorer/build", methods=["POST"])
@limiter.limit("6 per minute")
def explorer_build():
    data = _json_body()
    try:
        engine = registry.get_engine()

        if bool(data.get("async", False)):
            q = _get_queue()
            if not q:
                return jsonify({"error": "Async requires Redis. Configure REDIS_URL."}), 400

            from worker import run_snapshot_job  # local import to keep web lean

            job = q.enqueue(
                run_snapshot_job,
                db_url=registry.url_string(),
                result_ttl=JOB_RESULT_TTL_SECONDS,
                ttl=JOB_RESULT_TTL_SECONDS,
                failure_ttl=JOB_RESULT_TTL_SECONDS,
            )
            JOBS_ENQUEUED_TOTAL.labels(kind="snapshot").inc()
            return jsonify({"status": "queued", "job_id": job.id}), 202

        _, store = get_snapshot_builder().build_from_engine(engine, target=registry.target_key())
    except Exception as e:
        return _error_response(e, "explorer_build_failed")

    return jsonify({"message": "Snapshot built", "tables": list(store.keys())})


@app.route("/db/explorer/clear", methods=["POST"])
@limiter.limit("10 per minute")
def explorer_clear():
    data = _json_body()
    conversation_id = _required_text(data, "conversationId")
    try:
        get_snapshot_builder().clear()
        if conversation_id:
            conversations.reset(conversation_id)
            topic_cache.clear(conversation_id)
    except Exception as e:
        return _error_response(e, "explorer_clear_failed")
    return jsonify({"message": "Snapshot cleared", "conversation_reset": bool(conversation_id)})


# ------------------------------------------------------------
# Jobs (polling)
# ------------------------------------------------------------
@app.route("/job/<job_id>", methods=["GET"])
@limiter.exempt
def job_get(job_id: str):
    q = _get_queue()
    if not q:
        return jsonify({"error": "Redis not configured"}), 400
    try:
        job = Job.fetch(job_id, connection=q.connection)
    except NoSuchJobError:
        return jsonify({"error": "Job not found"}), 404

    status = _job_status(job)
    if status == "finished":
        return jsonify({"status": status, "result": job.return_value()})
    if status == "failed":
        return jsonify({"status": status, "error": _safe_error(str(job.exc_info or "Job failed"))}), 500
    return jsonify({"status": status})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG", "0") == "1")
