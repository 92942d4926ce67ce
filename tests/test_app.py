import pytest

import app as app_module
from chat import DEFAULT_INSTRUCTIONS, ChatService
from conversations import ConversationStore, TopicCache
from database import DatabaseRegistry
from errors import CompletionError
from snapshot import SnapshotBuilder


@pytest.fixture
def client(monkeypatch, artifacts):
    monkeypatch.setattr(app_module.limiter, "enabled", False)
    monkeypatch.setattr(app_module, "registry", DatabaseRegistry())
    monkeypatch.setattr(app_module, "artifacts", artifacts)
    monkeypatch.setattr(app_module, "conversations", ConversationStore(use_redis=False))
    monkeypatch.setattr(app_module, "topic_cache", TopicCache(use_redis=False))
    monkeypatch.setattr(app_module, "_snapshot_builder", SnapshotBuilder(artifacts))
    monkeypatch.setattr(app_module, "_chat_service", None)
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c
    app_module.registry.dispose()


def _use_llm(monkeypatch, llm):
    service = ChatService(
        llm, app_module.artifacts, app_module.conversations, app_module.topic_cache, template=DEFAULT_INSTRUCTIONS
    )
    monkeypatch.setattr(app_module, "_chat_service", service)


def test_health_and_headers(client):
    resp = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_home_and_metrics(client):
    assert client.get("/").get_json()["features"]["db_available"] is False
    client.get("/health")
    body = client.get("/metrics").get_data(as_text=True)
    assert "dbexplorer_api_requests_total" in body


@pytest.mark.parametrize(
    "body",
    [{}, {"prompt": "  ", "conversationId": "c1"}, {"prompt": "hi"}, {"prompt": 5, "conversationId": "c1"}],
)
def test_chat_validation(client, body):
    resp = client.post("/api/chat", json=body)
    assert resp.status_code == 400
    assert "error" in resp.get_json()


def test_chat_round_trip(client, monkeypatch, fake_llm):
    _use_llm(monkeypatch, fake_llm(answer=["There are two tables."]))
    resp = client.post("/api/chat", json={"prompt": "How many tables?", "conversationId": "c1"})
    assert resp.status_code == 200
    assert resp.get_json() == {"id": "fake-1", "message": "There are two tables."}
    assert len(app_module.conversations.recent("c1", 10)) == 2


def test_chat_completion_error_is_502(client, monkeypatch, fake_llm):
    _use_llm(monkeypatch, fake_llm(answer=[CompletionError("answer completion failed: AIzaSyA1234567890abcdefghijkl leaked")]))
    resp = client.post("/api/chat", json={"prompt": "hi", "conversationId": "c1"})
    assert resp.status_code == 502
    assert "AIzaSyA1234567890" not in resp.get_json()["error"]


def test_chat_without_api_key_is_400(client, monkeypatch):
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    resp = client.post("/api/chat", json={"prompt": "hi", "conversationId": "c1"})
    assert resp.status_code == 400
    assert "GOOGLE_API_KEY" in resp.get_json()["error"]


def test_db_routes_unavailable(client):
    assert client.get("/db/status").get_json() == {"available": False}
    assert client.get("/health/db").status_code == 503
    assert client.get("/db/schema").status_code == 503
    assert client.post("/db/explorer/build", json={}).status_code == 503


def test_connect_validation(client, monkeypatch):
    resp = client.post("/db/connect", json={"host": "db.local"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Host, user and database are required"

    for var in ("DEMO_DB_HOST", "DEMO_DB_USER", "DEMO_DB_NAME", "DEMO_DATABASE_URL"):
        monkeypatch.delenv(var, raising=False)
    assert client.post("/db/connect-demo").status_code == 400


def test_connect_build_and_clear(client, engine, db_url, artifacts):
    assert client.post("/db/connect", json={"db_url": db_url}).get_json() == {"message": "Connected"}
    assert client.get("/db/status").get_json() == {"available": True}
    assert client.get("/health/db").get_json()["status"] == "ok"

    schema = client.get("/db/schema").get_json()
    assert {"customers", "orders"} == {row["table_name"] for row in schema}

    resp = client.post("/db/explorer/build", json={})
    assert resp.status_code == 200
    assert resp.get_json()["tables"] == ["customers", "orders"]
    assert "user1@example.com" in artifacts.read_snapshot()

    app_module.conversations.append("c1", "user", "hi")
    app_module.topic_cache.set("c1", ["orders"])
    resp = client.post("/db/explorer/clear", json={"conversationId": "c1"})
    assert resp.get_json()["conversation_reset"] is True
    assert artifacts.read_snapshot() == ""
    assert artifacts.load_metadata() is None
    assert app_module.conversations.recent("c1", 10) == []
    assert app_module.topic_cache.get("c1") is None


def test_build_in_progress_is_409(client, engine, db_url):
    client.post("/db/connect", json={"db_url": db_url})
    lock = app_module._snapshot_builder._local_lock(app_module.registry.target_key())
    lock.acquire()
    try:
        assert client.post("/db/explorer/build", json={}).status_code == 409
    finally:
        lock.release()


def test_async_paths_need_redis(client, engine, db_url):
    client.post("/db/connect", json={"db_url": db_url})
    assert client.post("/db/explorer/build", json={"async": True}).status_code == 400
    assert client.get("/job/abc").status_code == 400


def test_safe_error_redacts_credentials():
    msg = app_module._safe_error("could not connect to postgresql+psycopg2://app:hunter2@db:5432/shop password=hunter2")
    assert "hunter2" not in msg
    assert app_module._safe_error("") == "Request failed"
