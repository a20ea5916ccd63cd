from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field


class ChatRequest(BaseModel):
    """Body of a chat turn. Accepts the browser client's PascalCase keys too."""

    thread_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("threadId", "ThreadId", "thread_id"),
    )
    # Left optional so an empty or missing message is reported as invalid input
    message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("message", "Message"),
    )


class ChatResponse(BaseModel):
    thread_id: str = Field(alias="threadId")
    response: str
    agent_name: str = Field(alias="agentName")
    timestamp: datetime

    model_config = {"populate_by_name": True}


class ThreadResponse(BaseModel):
    thread_id: str = Field(alias="threadId")

    model_config = {"populate_by_name": True}


class ErrorBody(BaseModel):
    kind: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorBody
    agent_name: str | None = Field(default=None, alias="agentName")
    timestamp: datetime

    model_config = {"populate_by_name": True}
