"""
schema.py - Collection descriptors.

A CollectionSchema tells the generic remote client and merge engine
how one collection maps between its local JSON shape and the remote
tables: which local field feeds which column, defaults for missing
values, which nested list holds child rows, and which fields the
duplicate heuristic compares.

Built-in descriptors cover the four study collections.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Final

from hybrid_sync.config import (
    FIELD_REMOTE_ID,
    FIELD_UPDATED_AT,
    RESERVED_FIELDS,
    KEY_NOTES,
    KEY_FLASHCARDS,
    KEY_QUIZZES,
    KEY_AI_CHATS,
    DUPLICATE_PREFIX_CHARS,
)
from hybrid_sync.errors import ConfigurationError

PayloadHook = Callable[[dict, dict], dict]


@dataclass(frozen=True)
class FieldMap:
    """
    One local field <-> remote column mapping.

    aliases are alternative local names read when the primary one is
    missing (older local shapes used e.g. "text" for note content).
    """
    local: str
    remote: str
    default: Any = None
    aliases: tuple[str, ...] = ()

    def read_local(self, record: dict) -> Any:
        for name in (self.local, *self.aliases):
            value = record.get(name)
            if value is not None:
                return value
        return copy.deepcopy(self.default)

    def read_remote(self, row: dict) -> Any:
        value = row.get(self.remote)
        return copy.deepcopy(self.default) if value is None else value


def _fields_to_remote(fields: tuple[FieldMap, ...], record: dict) -> dict:
    return {f.remote: f.read_local(record) for f in fields}


def _fields_from_remote(fields: tuple[FieldMap, ...], row: dict) -> dict:
    return {f.local: f.read_remote(row) for f in fields}


@dataclass(frozen=True)
class ChildSchema:
    """Nested child rows replaced wholesale on every write."""
    local_field: str
    table: str
    parent_column: str
    fields: tuple[FieldMap, ...]
    order_by: str = "created_at"

    def to_remote(self, parent_remote_id: str, record: dict) -> list[dict]:
        children = record.get(self.local_field) or []
        if not isinstance(children, list):
            return []
        rows = []
        for child in children:
            if not isinstance(child, dict):
                continue
            row = _fields_to_remote(self.fields, child)
            row[self.parent_column] = parent_remote_id
            rows.append(row)
        return rows

    def from_remote(self, rows: list[dict]) -> list[dict]:
        return [_fields_from_remote(self.fields, row) for row in rows]


@dataclass(frozen=True)
class CollectionSchema:
    """Mapping descriptor for one synchronized collection."""
    key: str
    table: str
    fields: tuple[FieldMap, ...]
    children: ChildSchema | None = None
    title_field: str | None = "title"
    content_field: str | None = None
    placeholder_titles: frozenset[str] = field(default_factory=frozenset)
    payload_hook: PayloadHook | None = None
    id_column: str = "id"
    principal_column: str = "user_id"
    updated_column: str = "updated_at"

    def to_remote(self, record: dict) -> dict:
        """Build the parent row payload for a local record (without children)."""
        payload = _fields_to_remote(self.fields, record)
        if record.get(FIELD_UPDATED_AT) is not None:
            payload[self.updated_column] = record[FIELD_UPDATED_AT]
        if self.payload_hook is not None:
            payload = self.payload_hook(record, payload)
        return payload

    def from_remote(self, row: dict, child_rows: list[dict] | None = None) -> dict:
        """Build a local-shaped record (without local_id) from a remote row."""
        record = _fields_from_remote(self.fields, row)
        record[FIELD_REMOTE_ID] = row.get(self.id_column)
        record[FIELD_UPDATED_AT] = row.get(self.updated_column)
        if self.children is not None:
            record[self.children.local_field] = self.children.from_remote(child_rows or [])
        return record

    def is_placeholder_title(self, title: str) -> bool:
        return title.casefold() in {t.casefold() for t in self.placeholder_titles}


def _note_payload(record: dict, payload: dict) -> dict:
    content = payload.get("content") or ""
    if not record.get("title"):
        payload["title"] = content[:DUPLICATE_PREFIX_CHARS] or "Untitled Note"
    payload["word_count"] = len(content.split())
    return payload


NOTES: Final[CollectionSchema] = CollectionSchema(
    key=KEY_NOTES,
    table="user_notes",
    fields=(
        FieldMap("title", "title", "Untitled Note"),
        FieldMap("content", "content", "", aliases=("text",)),
        FieldMap("subject", "subject", "General"),
        FieldMap("tags", "tags", []),
        FieldMap("wordCount", "word_count", 0),
    ),
    content_field="content",
    placeholder_titles=frozenset({"Untitled Note"}),
    payload_hook=_note_payload,
)

FLASHCARD_DECKS: Final[CollectionSchema] = CollectionSchema(
    key=KEY_FLASHCARDS,
    table="user_flashcards",
    fields=(
        FieldMap("title", "title", "Untitled Deck"),
        FieldMap("subject", "subject", "General"),
    ),
    children=ChildSchema(
        local_field="cards",
        table="flashcard_cards",
        parent_column="deck_id",
        fields=(
            FieldMap("front", "front_text", "", aliases=("front_text",)),
            FieldMap("back", "back_text", "", aliases=("back_text",)),
        ),
    ),
    placeholder_titles=frozenset({"Untitled Deck"}),
)

QUIZZES: Final[CollectionSchema] = CollectionSchema(
    key=KEY_QUIZZES,
    table="user_quizzes",
    fields=(
        FieldMap("title", "title", "Untitled Quiz"),
    ),
    children=ChildSchema(
        local_field="questions",
        table="quiz_questions",
        parent_column="quiz_id",
        fields=(
            FieldMap("question", "question_text", "", aliases=("question_text",)),
            FieldMap("options", "options", []),
            FieldMap("correctAnswer", "correct_answer", 0, aliases=("correct_answer",)),
            FieldMap("explanation", "explanation", ""),
            FieldMap("subject", "subject", "General"),
        ),
    ),
    placeholder_titles=frozenset({"Untitled Quiz"}),
)

AI_CHATS: Final[CollectionSchema] = CollectionSchema(
    key=KEY_AI_CHATS,
    table="ai_chats",
    fields=(
        FieldMap("title", "title", "New Chat"),
    ),
    children=ChildSchema(
        local_field="messages",
        table="ai_messages",
        parent_column="chat_id",
        fields=(
            FieldMap("text", "message_text", "", aliases=("message_text",)),
            FieldMap("sender", "sender", "user"),
            FieldMap("type", "message_type", "chat", aliases=("message_type",)),
        ),
    ),
    placeholder_titles=frozenset({"New Chat"}),
)

DEFAULT_SCHEMAS: Final[tuple[CollectionSchema, ...]] = (
    NOTES,
    FLASHCARD_DECKS,
    QUIZZES,
    AI_CHATS,
)


def schema_registry(schemas: tuple[CollectionSchema, ...] = DEFAULT_SCHEMAS) -> dict[str, CollectionSchema]:
    """Index schemas by collection key, rejecting duplicates."""
    registry: dict[str, CollectionSchema] = {}
    for schema in schemas:
        if schema.key in registry:
            raise ConfigurationError("Duplicate collection key", setting="key", value=schema.key)
        if any(f.local in RESERVED_FIELDS for f in schema.fields):
            raise ConfigurationError(
                "Schema maps a reserved record field", setting="fields", value=schema.key
            )
        registry[schema.key] = schema
    return registry
