"""Request and record types for the chat relay."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ROLES = ("assistant", "user")


@dataclass(frozen=True)
class OpenAIModel:
    """A chat model the primary provider can serve."""

    id: str
    name: str
    max_length: int  # characters
    token_limit: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "name": self.name,
            "maxLength": self.max_length,
            "tokenLimit": self.token_limit,
        }


OPENAI_MODELS: Dict[str, OpenAIModel] = {
    m.id: m
    for m in (
        OpenAIModel(id="gpt-3.5-turbo", name="GPT-3.5", max_length=12000, token_limit=4000),
        OpenAIModel(id="gpt-35-az", name="GPT-3.5", max_length=12000, token_limit=4000),
        OpenAIModel(id="gpt-4", name="GPT-4", max_length=24000, token_limit=8000),
        OpenAIModel(id="gpt-4-32k", name="GPT-4-32K", max_length=96000, token_limit=32000),
    )
}


def resolve_model(data: Any, fallback_id: str) -> OpenAIModel:
    """Resolve a model from an id string or `{id, ...}` object, keeping unknown ids as-is."""
    mid = ""
    if isinstance(data, dict):
        mid = str(data.get("id") or "")
    elif isinstance(data, str):
        mid = data
    mid = mid.strip() or fallback_id
    known = OPENAI_MODELS.get(mid)
    if known is not None:
        return known
    name = data.get("name") if isinstance(data, dict) else None
    return OpenAIModel(id=mid, name=str(name or mid), max_length=12000, token_limit=4000)


@dataclass(frozen=True)
class Message:
    """A single chat turn."""

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> Message:
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        role = data.get("role")
        if role not in ROLES:
            raise ValueError(f"message role must be one of {ROLES}, got {role!r}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(role=role, content=content)


@dataclass(frozen=True)
class ChatRequest:
    """Normalized input for the primary (chat-completion) pipeline."""

    model: OpenAIModel
    messages: List[Message]
    prompt: str
    temperature: float
    key: str = ""


@dataclass(frozen=True)
class ConversationRequest:
    """Normalized input for the secondary (conversation) pipeline.

    An empty ``conversation_id`` starts a new upstream conversation.
    """

    query: str
    key: str = ""
    user: str = ""
    conversation_id: str = ""


@dataclass
class RequestDescriptor:
    """Fully formed outbound HTTP request."""

    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    method: str = "POST"


@dataclass(frozen=True)
class ConversationRecord:
    """One output record of the conversation pipeline."""

    conversation_id: str
    answer: str

    def to_line(self) -> bytes:
        """Serialize as a newline-terminated JSON object."""
        rec = {"conversation_id": self.conversation_id, "answer": self.answer}
        return (json.dumps(rec, ensure_ascii=False) + "\n").encode("utf-8")


@dataclass
class ChatBody:
    """Inbound payload of the chat endpoint."""

    model: OpenAIModel
    messages: List[Message] = field(default_factory=list)
    key: str = ""
    prompt: str = ""
    temperature: float = 1.0
    dify_conversation_id: str = ""

    @classmethod
    def from_dict(
        cls,
        data: Any,
        *,
        default_model: str,
        default_prompt: str = "",
        default_temperature: float = 1.0,
    ) -> ChatBody:
        """Validate and normalize a decoded JSON body. Raises ValueError on bad shapes."""
        if not isinstance(data, dict):
            raise ValueError("expected object")

        raw_messages = data.get("messages") or []
        if not isinstance(raw_messages, list):
            raise ValueError("'messages' field must be an array")
        messages = [Message.from_dict(m) for m in raw_messages]

        temperature = data.get("temperature")
        if temperature is None:
            temperature = default_temperature
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise ValueError("'temperature' must be a number")
        try:
            temperature = float(temperature)
        except OverflowError:
            raise ValueError("'temperature' is out of range")
        if not math.isfinite(temperature):
            raise ValueError("'temperature' must be finite")

        prompt = data.get("prompt")
        if prompt is None:
            prompt = default_prompt
        if not isinstance(prompt, str):
            raise ValueError("'prompt' must be a string")

        key = data.get("key") or ""
        if not isinstance(key, str):
            raise ValueError("'key' must be a string")

        conv_id = data.get("Dify_ConversationId") or ""
        if not isinstance(conv_id, str):
            raise ValueError("'Dify_ConversationId' must be a string")

        return cls(
            model=resolve_model(data.get("model"), default_model),
            messages=messages,
            key=key,
            prompt=prompt,
            temperature=temperature,
            dify_conversation_id=conv_id,
        )

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest(
            model=self.model,
            messages=list(self.messages),
            prompt=self.prompt,
            temperature=self.temperature,
            key=self.key,
        )

    def last_user_query(self) -> Optional[str]:
        """Content of the most recent user message, if any."""
        for m in reversed(self.messages):
            if m.role == "user":
                return m.content
        return None
