"""
Core request models for the relay.

This module provides:
- Message structures for the inbound conversation
- The validated inbound request body
- Upstream connection settings
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(Enum):
    """OpenAI-compatible message roles accepted from the client."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single conversation turn."""
    model_config = ConfigDict(extra="ignore")

    role: MessageRole
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ChatRequest(BaseModel):
    """Inbound chat request body.

    ``stream`` is accepted for compatibility, the gateway mode decides
    whether the relay streams.
    """
    model_config = ConfigDict(extra="ignore")

    messages: list[ChatMessage] | None = None
    model: str | None = Field(default=None, min_length=1)
    stream: bool | None = None

    def conversation(self) -> list[dict[str, str]]:
        """Messages as upstream payload dicts, in turn order."""
        return [message.to_payload() for message in self.messages or []]


@dataclass(frozen=True)
class UpstreamConfig:
    """Upstream completion API settings."""
    base_url: str
    default_model: str
    app_title: str
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    write_timeout: float = 10.0
    pool_timeout: float = 10.0

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> UpstreamConfig:
        timeouts = config.get("timeouts", {})
        return cls(
            base_url=config["base_url"],
            default_model=config["default_model"],
            app_title=config["app_title"],
            connect_timeout=timeouts.get("connect", 10.0),
            read_timeout=timeouts.get("read", 60.0),
            write_timeout=timeouts.get("write", 10.0),
            pool_timeout=timeouts.get("pool", 10.0),
        )
