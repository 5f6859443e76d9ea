"""Pydantic models for API request/response types, plus the shared frame encoder."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chat_core.domain.models import ChatTurnRequest, Fragment, Message


class ChatMessageIn(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: str


class ChatRequest(BaseModel):
    """Body of POST /api/chat and of every WebSocket text message."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessageIn] = Field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    session_key: Optional[str] = Field(None, alias="sessionKey")

    @field_validator("messages")
    @classmethod
    def _not_empty(cls, value: List[ChatMessageIn]) -> List[ChatMessageIn]:
        if not value:
            raise ValueError("at least one message is required")
        return value

    def to_turn(self) -> ChatTurnRequest:
        return ChatTurnRequest(
            messages=[Message(role=m.role, content=m.content) for m in self.messages],
            session_key=self.session_key or None,
            provider=self.provider or None,
            model=self.model or None,
            system_prompt=self.system_prompt or None,
        )


class ChatFrame(BaseModel):
    """One streamed frame; identical for the event stream and the WebSocket."""

    model_config = ConfigDict(populate_by_name=True)

    content: str = ""
    done: bool = False
    error: Optional[str] = None
    code: Optional[str] = None
    session_key: str = Field(..., alias="sessionKey")


class MessageOut(BaseModel):
    role: str
    content: str
    timestamp: int


class SessionInfo(BaseModel):
    key: str
    messages: int
    updated: int


class ModelsResponse(BaseModel):
    provider: str
    models: List[str]


class DeleteResponse(BaseModel):
    success: bool


def encode_fragment(fragment: Fragment, session_key: str) -> dict:
    frame = ChatFrame(
        content=fragment.content,
        done=fragment.kind == "done",
        error=fragment.error,
        code=fragment.code,
        session_key=session_key,
    )
    return frame.model_dump(by_alias=True, exclude_none=True)


def error_frame(message: str, code: str, session_key: str = "") -> dict:
    return encode_fragment(Fragment.failure(message, code=code), session_key)
