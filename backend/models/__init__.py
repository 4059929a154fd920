"""Data models for the Inspiration Chat backend."""
from .conversation import ConversationTurn, ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM
from .inspiration import InspirationAnalysis, VALID_CATEGORIES, DEFAULT_CATEGORY
from .api import (
    ChatRequest,
    ChatResponse,
    ContentRequest,
    AnalysisResponse,
    SaveSessionRequest,
    SaveSessionResponse,
    BatchRequest,
    CreateInspirationRequest,
)

__all__ = [
    "ConversationTurn",
    "ROLE_USER",
    "ROLE_ASSISTANT",
    "ROLE_SYSTEM",
    "InspirationAnalysis",
    "VALID_CATEGORIES",
    "DEFAULT_CATEGORY",
    "ChatRequest",
    "ChatResponse",
    "ContentRequest",
    "AnalysisResponse",
    "SaveSessionRequest",
    "SaveSessionResponse",
    "BatchRequest",
    "CreateInspirationRequest",
]
