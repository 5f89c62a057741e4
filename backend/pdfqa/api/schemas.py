"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pdfqa.models.document import Role


class UploadResponse(BaseModel):
    """Response schema for document upload."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    session_id: str = Field(..., alias="sessionId", description="Session id scoping later questions")


class ErrorResponse(BaseModel):
    """Error body; validation failures carry a machine-readable code."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    code: Optional[str] = None
    request_id: Optional[str] = Field(None, alias="requestId")


class ChatMessage(BaseModel):
    """One message of the conversation resent by the client."""

    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """Request schema for asking a question about an uploaded document."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage]
    session_id: str = Field(..., alias="sessionId", min_length=1)
    role: Role = Role.STRICT_QA
    allow_ungrounded: bool = Field(False, alias="allowUngrounded")

    @field_validator("messages")
    @classmethod
    def last_message_from_user(cls, v: List[ChatMessage]) -> List[ChatMessage]:
        """
        Require a non-empty conversation ending with a user message.

        Args:
            v: Messages as sent

        Returns:
            The unchanged messages
        """
        if not v:
            raise ValueError("No messages provided")
        if v[-1].role != "user":
            raise ValueError("Last message must be from the user")
        return v

    @property
    def question(self) -> str:
        return self.messages[-1].content


class Source(BaseModel):
    """Source entry returned before the streamed answer."""

    page: int
    similarity: float
    excerpt: str


class InsufficientContextResponse(BaseModel):
    """Non-streamed answer when the grounding gate is not met."""

    answer: Literal["INSUFFICIENT_CONTEXT"] = "INSUFFICIENT_CONTEXT"
    reason: Literal["no_chunks_found", "low_similarity"]
    top_similarity: float = Field(..., alias="topSimilarity")
    sources: List[Source]


class DocumentResponse(BaseModel):
    """Metadata of an ingested document."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    filename: str
    total_pages: int = Field(..., alias="totalPages")
    total_chunks: int = Field(..., alias="totalChunks")
    created_at: datetime = Field(..., alias="createdAt")
