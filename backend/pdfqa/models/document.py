"""Document data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    """Answering personas selectable per chat request."""

    STRICT_QA = "strict_qa"
    ADVOCATE = "advocate"
    CONCISE_HR = "concise_hr"
    INTERVIEW_COACH = "interview_coach"
    TECHNICAL_EXPLAINER = "technical_explainer"
    FRIEND = "friend"
    STORYTELLER = "storyteller"


@dataclass
class ChunkSpan:
    """A chunk of text with its recovered offsets in the source text."""

    chunk_index: int
    text: str
    char_start: int
    char_end: int


@dataclass
class Chunk:
    """Represents a text chunk with metadata."""

    id: str
    document_id: str
    chunk_index: int
    char_start: int
    char_end: int
    page_number: int
    text: str


@dataclass(frozen=True)
class Document:
    """Represents an ingested document; its id is the chat session id."""

    session_id: str
    filename: str
    total_pages: int
    total_chunks: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RetrievedChunk:
    """A chunk returned by similarity search together with its score."""

    id: str
    content: str
    page_number: int
    similarity: float
