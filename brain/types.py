"""
brain/types.py — SRSForge Brain Data Models

Shared types passed between the specialist loop, the planner and any
LanguageModel adapter. Adapters map their native request/response shapes
onto these.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from pydantic import BaseModel


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Provider(str, Enum):
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single chat message sent to the model."""
    role: Role
    content: str = ""

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)


# ─────────────────────────────────────────────────────────────────────────────
# Request options
# ─────────────────────────────────────────────────────────────────────────────


class ModelOptions(BaseModel):
    """Per-request options handed to LanguageModel.send_request()."""
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 4096
    stream: bool = True
