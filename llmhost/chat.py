"""
Chat message types shared by every backend.

Messages are immutable once constructed and may be shared by reference
across the history of several prompt requests.
"""

from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Author of a chat message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChatMessage(BaseModel):
    """
    A single message in a conversation.

    `images` holds base64-encoded blobs for vision models. `thoughts` carries
    model reasoning; Ollama reports it as `thinking`, both names are accepted.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, use_enum_values=False)

    role: Role
    content: str = ""
    images: Optional[tuple[str, ...]] = None
    thoughts: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("thoughts", "thinking"),
        serialization_alias="thinking",
    )

    def to_wire(self) -> dict:
        """Serialize for a backend request, omitting unset optional fields."""
        return self.model_dump(mode="json", exclude_none=True, by_alias=True)


class ChatResponse(BaseModel):
    """One decoded record of a streaming chat completion."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    done: bool
    message: ChatMessage


def system(content: str) -> ChatMessage:
    return ChatMessage(role=Role.SYSTEM, content=content)


def user(content: str, images: Optional[list[str]] = None) -> ChatMessage:
    return ChatMessage(role=Role.USER, content=content, images=tuple(images) if images else None)


def assistant(content: str, thoughts: Optional[str] = None) -> ChatMessage:
    return ChatMessage(role=Role.ASSISTANT, content=content, thoughts=thoughts)
