from __future__ import annotations

from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from researchlens.models.schemas import ResearchStatus

DEFAULT_CONVERSATION_TITLE = "New Chat"


def _new_id() -> str:
    return uuid4().hex


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    role: Literal["user", "assistant"]
    content: str
    timestamp: float
    has_research: bool = False


class Marker(BaseModel):
    name: str
    value: str
    unit: str | None = None


class EntityMemory(BaseModel):
    """An uploaded document and the structured fields extracted from it."""

    id: str = Field(default_factory=_new_id)
    filename: str
    file_type: str = ""
    uploaded_at: float
    raw_text: str | None = None
    markers: list[Marker] = Field(default_factory=list)
    summary: str | None = None
    research_status: ResearchStatus | None = None
    research_queries: list[str] = Field(default_factory=list)


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_CONVERSATION_TITLE
    messages: list[ChatMessage] = Field(default_factory=list)
    entity_ids: list[str] = Field(default_factory=list)
    created_at: float
    updated_at: float


class GlobalProfile(BaseModel):
    entities: list[EntityMemory] = Field(default_factory=list)
    all_past_messages: list[ChatMessage] = Field(default_factory=list)
    last_updated: float = 0.0
