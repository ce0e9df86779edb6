"""Conversations and cross-conversation memory used to build model context."""
from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Callable

from loguru import logger
from pydantic import BaseModel, Field

from researchlens.config import settings
from researchlens.models.memory import (
    DEFAULT_CONVERSATION_TITLE,
    ChatMessage,
    Conversation,
    EntityMemory,
    GlobalProfile,
)
from researchlens.services.persistence import PersistenceBackend, load_payload, save_payload
from researchlens.tools import web_utils

CONVERSATION_MEMORY_VERSION = 1
NAMESPACE = "conversations"

TITLE_MAX_CHARS = 50
TITLE_FILLER_PREFIX = re.compile(
    r"^(hey|hi|hello|can you|could you|please|i need|i want to|i would like to)\s+",
    re.IGNORECASE,
)
DUPLICATE_UPLOAD_WINDOW_SECONDS = 1.0
ACTIVE_PREVIEW_CHARS = 150
GLOBAL_PREVIEW_CHARS = 100


class ConversationStorePayload(BaseModel):
    schema_version: int = CONVERSATION_MEMORY_VERSION
    conversations: list[Conversation] = Field(default_factory=list)
    active_conversation_id: str | None = None
    global_profile: GlobalProfile = Field(default_factory=GlobalProfile)


def generate_title(content: str) -> str:
    """Title from a first user message: filler stripped, capitalised, capped."""
    title = TITLE_FILLER_PREFIX.sub("", content, count=1).strip()
    if title:
        title = title[0].upper() + title[1:]
    if len(title) > TITLE_MAX_CHARS:
        title = title[: TITLE_MAX_CHARS - 3] + "..."
    return title or DEFAULT_CONVERSATION_TITLE


def _format_date(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def _tail(items: list[ChatMessage], count: int) -> list[ChatMessage]:
    return items[-count:] if count > 0 else []


def _role_label(message: ChatMessage) -> str:
    return "User" if message.role == "user" else "Assistant"


class ConversationMemoryStore:
    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        max_conversations: int | None = None,
        max_messages_per_conversation: int | None = None,
        max_global_messages: int | None = None,
        recent_messages: int | None = None,
        global_messages: int | None = None,
        entity_char_cap: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.max_conversations = max(int(max_conversations or settings.max_conversations), 1)
        self.max_messages_per_conversation = max(
            int(max_messages_per_conversation or settings.max_messages_per_conversation), 1
        )
        self.max_global_messages = max(int(max_global_messages or settings.max_global_messages), 1)
        self.recent_messages = int(recent_messages or settings.context_recent_messages)
        self.global_messages = int(global_messages or settings.context_global_messages)
        self.entity_char_cap = int(entity_char_cap or settings.context_entity_char_cap)
        self._clock = clock
        payload = load_payload(
            backend, NAMESPACE, ConversationStorePayload, version=CONVERSATION_MEMORY_VERSION
        )
        self._store = payload or ConversationStorePayload(
            global_profile=GlobalProfile(last_updated=clock())
        )

    # --- Conversation CRUD ---

    def create(self, title: str = DEFAULT_CONVERSATION_TITLE) -> Conversation:
        now = self._clock()
        conversation = Conversation(title=title, created_at=now, updated_at=now)
        self._store.conversations.append(conversation)
        self._store.active_conversation_id = conversation.id
        self._save()
        return conversation

    def start_new(self) -> Conversation:
        """Switch to an untouched "New Chat" if one exists, otherwise create one."""
        for conversation in self._store.conversations:
            if conversation.title == DEFAULT_CONVERSATION_TITLE and not conversation.messages:
                self._store.active_conversation_id = conversation.id
                self._save()
                return conversation
        return self.create()

    def get(self, conversation_id: str) -> Conversation | None:
        for conversation in self._store.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def get_active(self) -> Conversation | None:
        if not self._store.active_conversation_id:
            return None
        return self.get(self._store.active_conversation_id)

    def list_conversations(self) -> list[Conversation]:
        return sorted(self._store.conversations, key=lambda c: c.updated_at, reverse=True)

    def set_active(self, conversation_id: str) -> None:
        if self.get(conversation_id) is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        self._store.active_conversation_id = conversation_id
        self._save()

    def delete(self, conversation_id: str) -> None:
        self._store.conversations = [
            c for c in self._store.conversations if c.id != conversation_id
        ]
        if self._store.active_conversation_id == conversation_id:
            self._store.active_conversation_id = None
        self._save()

    def rename(self, conversation_id: str, title: str) -> None:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        conversation.title = title
        conversation.updated_at = self._clock()
        self._save()

    # --- Messages and entities ---

    def append_message(
        self,
        message: ChatMessage,
        conversation_id: str | None = None,
    ) -> Conversation:
        """Append to the given or active conversation, creating one if needed."""
        conversation = self._resolve_conversation(conversation_id)
        self._store.global_profile.all_past_messages.append(message)
        conversation.messages.append(message)

        if message.role == "user" and conversation.title == DEFAULT_CONVERSATION_TITLE:
            conversation.title = generate_title(message.content)

        conversation.updated_at = self._clock()
        self._save()
        return conversation

    def attach_entity(
        self,
        entity: EntityMemory,
        conversation_id: str | None = None,
    ) -> Conversation:
        """Attach to the global profile and to the given or active conversation."""
        profile = self._store.global_profile
        stored = self._find_duplicate_entity(entity)
        if stored is None:
            profile.entities.append(entity)
            stored = entity

        conversation = self._resolve_conversation(conversation_id)
        if stored.id not in conversation.entity_ids:
            conversation.entity_ids.append(stored.id)
            conversation.updated_at = self._clock()
        self._save()
        return conversation

    def get_entities(self) -> list[EntityMemory]:
        return list(self._store.global_profile.entities)

    def get_global_profile(self) -> GlobalProfile:
        return self._store.global_profile

    def delete_entity(self, entity_id: str) -> None:
        profile = self._store.global_profile
        profile.entities = [e for e in profile.entities if e.id != entity_id]
        for conversation in self._store.conversations:
            conversation.entity_ids = [i for i in conversation.entity_ids if i != entity_id]
        self._save()

    def clear_all(self) -> None:
        self._store = ConversationStorePayload(
            global_profile=GlobalProfile(last_updated=self._clock())
        )
        self.backend.clear(NAMESPACE)

    # --- Context ---

    def build_context(self, conversation_id: str | None = None) -> str:
        """Model context: entities first, then the conversation, then other conversations."""
        conversation = (
            self.get(conversation_id) if conversation_id is not None else self.get_active()
        )
        parts: list[str] = []

        entities = self._store.global_profile.entities
        if entities:
            parts.append("## User's Documents (Available in All Conversations):\n\n")
            for entity in entities:
                parts.append(self._format_entity(entity))

        if conversation is not None and conversation.messages:
            parts.append("## Current Conversation:\n\n")
            for message in _tail(conversation.messages, self.recent_messages):
                text = web_utils.preview(message.content, ACTIVE_PREVIEW_CHARS)
                parts.append(f"{_role_label(message)}: {text}\n\n")

        own_ids = {m.id for m in conversation.messages} if conversation is not None else set()
        others = _tail(
            [m for m in self._store.global_profile.all_past_messages if m.id not in own_ids],
            self.global_messages,
        )
        if others:
            parts.append("## Relevant Context from Previous Conversations:\n\n")
            for message in others:
                text = web_utils.preview(message.content, GLOBAL_PREVIEW_CHARS)
                parts.append(f"{_role_label(message)}: {text}\n")
            parts.append("\n")

        return "".join(parts)

    def _format_entity(self, entity: EntityMemory) -> str:
        lines = [
            f"### File: {entity.filename}\n",
            f"Uploaded: {_format_date(entity.uploaded_at)}\n\n",
        ]
        if entity.markers:
            lines.append("**Extracted Markers:**\n")
            for marker in entity.markers:
                unit = f" {marker.unit}" if marker.unit else ""
                lines.append(f"- {marker.name}: {marker.value}{unit}\n")
            lines.append("\n")
        if entity.summary:
            lines.append(f"**Summary:** {entity.summary}\n\n")
        if entity.raw_text:
            content = web_utils.truncate_with_marker(entity.raw_text, self.entity_char_cap)
            lines.append(f"**Full File Content:**\n{content}\n\n")
        lines.append("---\n\n")
        return "".join(lines)

    # --- Internals ---

    def _resolve_conversation(self, conversation_id: str | None) -> Conversation:
        if conversation_id is not None:
            conversation = self.get(conversation_id)
            if conversation is None:
                raise KeyError(f"Unknown conversation: {conversation_id}")
            return conversation
        conversation = self.get_active()
        if conversation is None:
            logger.debug("No active conversation; creating one")
            conversation = self.create()
        return conversation

    def _find_duplicate_entity(self, entity: EntityMemory) -> EntityMemory | None:
        for existing in self._store.global_profile.entities:
            if existing.id == entity.id:
                return existing
            if (
                existing.filename == entity.filename
                and abs(existing.uploaded_at - entity.uploaded_at) < DUPLICATE_UPLOAD_WINDOW_SECONDS
            ):
                return existing
        return None

    def _trim(self) -> None:
        store = self._store
        if len(store.conversations) > self.max_conversations:
            ranked = sorted(
                enumerate(store.conversations),
                key=lambda pair: (pair[1].updated_at, pair[0]),
                reverse=True,
            )
            store.conversations = [c for _, c in ranked[: self.max_conversations]]
            kept = {c.id for c in store.conversations}
            if store.active_conversation_id not in kept:
                store.active_conversation_id = None

        for conversation in store.conversations:
            if len(conversation.messages) > self.max_messages_per_conversation:
                conversation.messages = conversation.messages[-self.max_messages_per_conversation :]

        profile = store.global_profile
        if len(profile.all_past_messages) > self.max_global_messages:
            profile.all_past_messages = profile.all_past_messages[-self.max_global_messages :]

    def _save(self) -> None:
        self._trim()
        self._store.global_profile.last_updated = self._clock()
        save_payload(self.backend, NAMESPACE, self._store)
