"""
Request models for the HTTP surface.

Field names are camelCase on the wire and snake_case in Python.
"""

from __future__ import annotations

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentRunRequest(BaseModel):
    """Body of POST /agent/run and POST /agent/stream."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str = Field(min_length=1, max_length=20000)
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=200)
    use_memory: bool = Field(default=True, alias="useMemory")
    model: Optional[str] = Field(default=None, max_length=100)
    temperature: float = Field(default=0.2, ge=0, le=2)
    max_tokens: int = Field(default=400, ge=1, le=4000, alias="maxTokens")
    chain: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value

    @property
    def debug(self) -> bool:
        return self.chain == "debug"


class Message(BaseModel):
    """A single message appended through the sessions API."""

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Any]]


class AppendMessagesRequest(BaseModel):
    messages: List[Message] = Field(min_length=1)
