"""Completion-service client.

Every call site (descriptions, routing, answers) goes through ``LLMClient`` so
deadlines, latency metrics and error wrapping live in one place.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from uuid import uuid4

from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from errors import CompletionError, ConfigError
from metrics import LLM_LATENCY_SECONDS

logger = logging.getLogger("dbexplorer.llm")

load_dotenv()

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

MessageLike = Union[BaseMessage, Mapping[str, str]]
ModelFactory = Callable[[float, int], BaseChatModel]


@dataclass(frozen=True)
class Completion:
    id: str
    content: str


_ROLE_TO_MESSAGE = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


def to_langchain_messages(messages: Sequence[MessageLike]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for m in messages:
        if isinstance(m, BaseMessage):
            out.append(m)
            continue
        role = (m.get("role") or "").lower()
        cls = _ROLE_TO_MESSAGE.get(role)
        if cls is None:
            raise ValueError(f"Unsupported message role: {role!r}")
        out.append(cls(content=m.get("content") or ""))
    return out


def _content_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Gemini may return a list of content parts
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def gemini_factory(api_key: Optional[str] = None, model: str = GEMINI_MODEL, timeout: float = LLM_TIMEOUT_SECONDS) -> ModelFactory:
    def build(temperature: float, max_tokens: int) -> BaseChatModel:
        return ChatGoogleGenerativeAI(
            model=model,
            temperature=temperature,
            max_output_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
            google_api_key=api_key,
        )

    return build


class LLMClient:
    """Thin wrapper over a LangChain chat model returning ``Completion``."""

    def __init__(self, model_factory: ModelFactory):
        self._factory = model_factory
        self._models: Dict[Tuple[float, int], BaseChatModel] = {}
        self._lock = threading.Lock()

    def _model(self, temperature: float, max_tokens: int) -> BaseChatModel:
        key = (float(temperature), int(max_tokens))
        with self._lock:
            model = self._models.get(key)
            if model is None:
                model = self._factory(*key)
                self._models[key] = model
        return model

    def complete(
        self,
        messages: Sequence[MessageLike],
        *,
        temperature: float,
        max_tokens: int,
        purpose: str = "answer",
    ) -> Completion:
        lc_messages = to_langchain_messages(messages)
        t0 = time.time()
        try:
            reply = self._model(temperature, max_tokens).invoke(lc_messages)
        except Exception as e:
            logger.warning("completion_failed", extra={"purpose": purpose, "error": str(e)})
            raise CompletionError(f"{purpose} completion failed: {e}", purpose=purpose) from e
        finally:
            LLM_LATENCY_SECONDS.labels(purpose=purpose).observe(max(0.0, time.time() - t0))

        return Completion(
            id=getattr(reply, "id", None) or f"chatcmpl-{uuid4().hex}",
            content=_content_text(reply),
        )


def build_default_client() -> LLMClient:
    api_key = os.getenv("GOOGLE_API_KEY", "").strip()
    if not api_key:
        raise ConfigError("GOOGLE_API_KEY is not set")
    return LLMClient(gemini_factory(api_key=api_key))


def optional_default_client() -> Optional[LLMClient]:
    """Default client, or None when no API key is configured."""
    try:
        return build_default_client()
    except ConfigError:
        logger.info("llm_not_configured")
        return None


def strip_code_fences(raw: str) -> str:
    """Drop ```json fences models like to wrap JSON answers in."""
    return re.sub(r"```(?:json)?\s*|\s*```", "", raw or "").strip()

