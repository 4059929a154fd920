"""Request and response schemas for the HTTP API."""
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from models.conversation import ConversationTurn


class TurnPayload(BaseModel):
    """A conversation turn as sent by the client."""
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """Request body for /chat and /chat/stream."""
    model_config = ConfigDict(populate_by_name=True)

    messages: List[TurnPayload] = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, alias="sessionId")

    def to_turns(self) -> List[ConversationTurn]:
        return [ConversationTurn(role=m.role, content=m.content) for m in self.messages]


class ChatResponse(BaseModel):
    """Response body for non-streaming chat."""
    message: str
    usage: Dict[str, Any] = Field(default_factory=dict)


class ContentRequest(BaseModel):
    """Request body carrying raw content to analyze."""
    content: str = Field(..., min_length=1)


class AnalysisResponse(BaseModel):
    title: str
    summary: str
    categories: List[str]
    tags: List[str]


class TagsResponse(BaseModel):
    tags: List[str]


class CategoriesResponse(BaseModel):
    categories: List[str]


class CreateSessionRequest(BaseModel):
    title: Optional[str] = None


class SaveSessionRequest(BaseModel):
    """Request body for saving a chat session as an inspiration."""
    messages: List[TurnPayload] = Field(..., min_length=1)
    title: Optional[str] = None

    def to_turns(self) -> List[ConversationTurn]:
        return [ConversationTurn(role=m.role, content=m.content) for m in self.messages]


class SaveSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    inspiration: Optional[Dict[str, Any]] = None
    messages_saved: int = Field(..., alias="messagesSaved")


BatchAction = Literal[
    "delete",
    "addCategories",
    "removeCategories",
    "replaceCategories",
    "addTags",
    "removeTags",
    "replaceTags",
    "export",
]


class BatchRequest(BaseModel):
    """Request body for /inspirations/batch."""
    model_config = ConfigDict(populate_by_name=True)

    action: BatchAction
    inspiration_ids: List[str] = Field(..., min_length=1, alias="inspirationIds")
    data: Dict[str, Any] = Field(default_factory=dict)


class CreateInspirationRequest(BaseModel):
    """Request body for creating an inspiration directly, e.g. from an analysis result."""
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    summary: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
