"""Chat turn orchestration: route, assemble context, answer, remember."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from conversations import ConversationStore, TopicCache
from llm import LLMClient
from schema_context import render_partial_context
from snapshot import ArtifactStore
from table_router import RouteResult, TableRouter

logger = logging.getLogger("dbexplorer.chat")

CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.2"))
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "500"))
HISTORY_WINDOW = int(os.getenv("HISTORY_WINDOW", "10"))
CHATBOT_TEMPLATE_PATH = os.getenv("CHATBOT_TEMPLATE_PATH", "").strip()

SCHEMA_PLACEHOLDER = "{{dbSchema}}"

DEFAULT_INSTRUCTIONS = """You are DB Explorer, an assistant that helps users understand a relational database.

Answer questions about the tables, columns, relationships and the kind of data stored,
using only the schema context below. Sample values have been anonymized; never present
them as real customer data. If the context does not contain the answer, say so plainly
and suggest which table the user could look at. Keep answers short and concrete.

Database schema context:

{{dbSchema}}
"""


@dataclass(frozen=True)
class ChatReply:
    id: str
    message: str


def load_template(path: str = CHATBOT_TEMPLATE_PATH) -> str:
    if not path:
        return DEFAULT_INSTRUCTIONS
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def build_instructions(schema_context: str, template: Optional[str] = None) -> str:
    """Merge schema context into the instruction template (first placeholder only)."""
    return (template if template is not None else DEFAULT_INSTRUCTIONS).replace(SCHEMA_PLACEHOLDER, schema_context, 1)


class ChatService:
    def __init__(
        self,
        llm: LLMClient,
        artifacts: ArtifactStore,
        conversations: ConversationStore,
        topic_cache: TopicCache,
        router: Optional[TableRouter] = None,
        template: Optional[str] = None,
    ):
        self.llm = llm
        self.artifacts = artifacts
        self.conversations = conversations
        self.router = router or TableRouter(llm, topic_cache)
        self.template = template if template is not None else load_template()

    def schema_context(self, route: RouteResult, metadata) -> str:
        if route.is_fallback:
            return self.artifacts.read_snapshot()
        return render_partial_context(route.tables, metadata)

    def build_messages(self, instructions: str, conversation_id: str, prompt: str) -> List[Dict[str, str]]:
        history = [e.as_message() for e in self.conversations.recent(conversation_id, HISTORY_WINDOW)]
        return [{"role": "system", "content": instructions}, *history, {"role": "user", "content": prompt}]

    def handle(self, prompt: str, conversation_id: str) -> ChatReply:
        with self.conversations.lock(conversation_id):
            t0 = time.time()
            metadata = self.artifacts.load_metadata()
            route = self.router.route(prompt, conversation_id, metadata)

            instructions = build_instructions(self.schema_context(route, metadata), self.template)
            messages = self.build_messages(instructions, conversation_id, prompt)

            reply = self.llm.complete(
                messages,
                temperature=CHAT_TEMPERATURE,
                max_tokens=CHAT_MAX_TOKENS,
                purpose="answer",
            )

            self.conversations.append(conversation_id, "user", prompt)
            self.conversations.append(conversation_id, "assistant", reply.content)

            logger.info(
                "chat_answered",
                extra={
                    "conversation_id": conversation_id,
                    "tables": list(route.tables),
                    "cache_hit": route.cache_hit,
                    "route_reason": route.reason,
                    "latency_ms": int((time.time() - t0) * 1000),
                },
            )
            return ChatReply(id=reply.id, message=reply.content)
