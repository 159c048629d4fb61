"""
Data models for the conversation engine.
These define the shape of data flowing between the session, the
completion backend and the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
ROLES = (USER_ROLE, ASSISTANT_ROLE, SYSTEM_ROLE)


@dataclass
class Citation:
    """A source surfaced by a search-augmented completion."""
    title: str
    url: str
    text: str | None = None
    number: int = 0  # 1-based, assigned at first sight

    def to_dict(self) -> dict:
        return {"title": self.title, "url": self.url, "text": self.text, "number": self.number}


@dataclass(frozen=True)
class InlineReference:
    """Citation fragment from an `annotations` entry of type `url_citation`."""
    url: str
    title: str = ""
    content: str | None = None

    @classmethod
    def parse(cls, annotation: dict) -> "InlineReference | None":
        if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
            return None
        ref = annotation.get("url_citation")
        if not isinstance(ref, dict) or not ref.get("url"):
            return None
        return cls(url=str(ref["url"]), title=str(ref.get("title") or ""), content=ref.get("content"))

    def to_citation(self, number: int) -> Citation:
        return Citation(title=self.title, url=self.url, text=self.content, number=number)


@dataclass(frozen=True)
class DeltaCitation:
    """Citation fragment from the older `citations` list on a delta."""
    url: str
    title: str = ""
    text: str | None = None

    @classmethod
    def parse(cls, item: dict) -> "DeltaCitation | None":
        if not isinstance(item, dict) or not item.get("url"):
            return None
        return cls(url=str(item["url"]), title=str(item.get("title") or ""), text=item.get("text"))

    def to_citation(self, number: int) -> Citation:
        return Citation(title=self.title, url=self.url, text=self.text, number=number)


CitationFragment = InlineReference | DeltaCitation


def fragments_from_delta(delta: dict) -> list[CitationFragment]:
    """Collect citation fragments of both shapes, annotations first, in arrival order."""
    fragments: list[CitationFragment] = []
    for annotation in delta.get("annotations") or []:
        ref = InlineReference.parse(annotation)
        if ref is not None:
            fragments.append(ref)
    for item in delta.get("citations") or []:
        cit = DeltaCitation.parse(item)
        if cit is not None:
            fragments.append(cit)
    return fragments


@dataclass
class Message:
    """
    A single message in a transcript.

    `id` stays None until the message is first persisted. Before that the
    message is addressed by its position in the transcript.
    """
    role: str
    content: str = ""
    id: str | None = None
    model: str | None = None
    citations: list[Citation] = field(default_factory=list)
    is_streaming: bool = False

    @property
    def source(self) -> str:
        """The tag the store keeps for this message: role, or model for the assistant."""
        if self.role == ASSISTANT_ROLE:
            return self.model or ASSISTANT_ROLE
        return self.role

    @classmethod
    def from_source(cls, content: str, source: str, message_id: str | None = None) -> "Message":
        """Inverse of `source`: anything that isn't user/system is an assistant model tag."""
        if source in (USER_ROLE, SYSTEM_ROLE):
            return cls(role=source, content=content, id=message_id)
        model = None if source == ASSISTANT_ROLE else source
        return cls(role=ASSISTANT_ROLE, content=content, id=message_id, model=model)

    def to_openai_format(self) -> dict:
        """Export in OpenAI messages array format (what the provider expects)."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "model": self.model,
            "citations": [c.to_dict() for c in self.citations],
            "is_streaming": self.is_streaming,
        }


@dataclass
class Conversation:
    """Summary row for a stored conversation."""
    id: str
    title: str = "New Chat"
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class StreamEvent:
    """
    One decoded completion chunk.

    Every field is optional; a chunk can carry any mix of a content
    fragment, the model the server routed to, and citation fragments.
    """
    content: str = ""
    model: str | None = None
    citations: list[CitationFragment] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_chunk(cls, chunk: dict) -> "StreamEvent":
        """Build an event from an OpenAI/OpenRouter streaming chunk."""
        choices = chunk.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else {}
        delta = first.get("delta") if isinstance(first, dict) else None
        if not isinstance(delta, dict):
            delta = {}

        error = chunk.get("error")
        if isinstance(error, dict):
            error = error.get("message") or str(error)

        content = delta.get("content") or ""
        return cls(
            content=content if isinstance(content, str) else "",
            model=chunk.get("model") or None,
            citations=fragments_from_delta(delta),
            error=str(error) if error else None,
        )
