import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from sqlalchemy import create_engine, text

from conversations import ConversationStore, TopicCache
from llm import Completion
from snapshot import ArtifactStore


class RecordingLLM:
    """Stand-in for LLMClient: replies are queued per purpose and every call is recorded."""

    def __init__(self, **replies):
        self.replies = {purpose: list(items) for purpose, items in replies.items()}
        self.calls = []

    def complete(self, messages, *, temperature, max_tokens, purpose="answer"):
        self.calls.append(
            {"messages": list(messages), "temperature": temperature, "max_tokens": max_tokens, "purpose": purpose}
        )
        queue = self.replies.get(purpose) or []
        reply = queue.pop(0) if queue else ""
        if isinstance(reply, Exception):
            raise reply
        return Completion(id=f"fake-{len(self.calls)}", content=reply)

    def purposes(self):
        return [c["purpose"] for c in self.calls]


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(str(tmp_path / "artifacts"))


@pytest.fixture
def conversations():
    return ConversationStore(use_redis=False)


@pytest.fixture
def topic_cache():
    return TopicCache(use_redis=False)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'shop.db'}"


@pytest.fixture
def engine(db_url):
    eng = create_engine(db_url)
    with eng.begin() as conn:
        conn.execute(text("CREATE TABLE customers (id INTEGER PRIMARY KEY, email TEXT)"))
        conn.execute(
            text(
                "CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER, total REAL, status TEXT, "
                "FOREIGN KEY(customer_id) REFERENCES customers(id))"
            )
        )
        conn.execute(text("INSERT INTO customers (id, email) VALUES (1, 'alice@x.com'), (2, 'bob@x.com')"))
        conn.execute(
            text("INSERT INTO orders (id, customer_id, total, status) VALUES (10, 1, 19.5, 'shipped'), (11, 2, 7.25, 'pending')")
        )
    yield eng
    eng.dispose()


@pytest.fixture
def fake_llm():
    return RecordingLLM
