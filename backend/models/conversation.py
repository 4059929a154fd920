"""Conversation data models."""
from dataclasses import dataclass
from typing import Dict

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

VALID_ROLES = (ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM)


@dataclass(frozen=True)
class ConversationTurn:
    """Represents a single turn in a conversation."""
    role: str
    content: str

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"Invalid role: {self.role}")

    def to_dict(self) -> Dict[str, str]:
        """Wire format expected by chat-completion APIs."""
        return {"role": self.role, "content": self.content}
