"""
brain/llm_client.py — Language Model Interface

The core depends on exactly one model capability:

    send_request(messages, options) -> str | AsyncIterator[str]

Adapters may return the whole reply at once or stream it in fragments,
and raise ModelTransportError (with an optional machine-readable code)
instead of returning text. collect_text() drains either shape.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Protocol, Union, runtime_checkable

from brain.types import Message, ModelOptions
from exceptions import ModelTransportError

ModelReply = Union[str, AsyncIterator[str]]


@runtime_checkable
class LanguageModel(Protocol):
    """Structural type for anything the specialist loop can talk to."""

    async def send_request(self, messages: list[Message], options: ModelOptions) -> ModelReply:
        ...


class BaseLanguageModel(ABC):
    """
    Convenience base for concrete adapters.

    Subclasses must implement:
      - send_request() -> full text or an async iterator of text fragments
      - health_check() -> verify connectivity to the provider
    """

    def __init__(self, model: str = ""):
        self.model = model

    @abstractmethod
    async def send_request(self, messages: list[Message], options: ModelOptions) -> ModelReply:
        """Send the conversation and return the reply text (possibly streamed)."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the provider is reachable and the key is valid."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} model={self.model!r}>"


async def collect_text(reply: ModelReply) -> str:
    """
    Await the full text of a model reply.

    Transport errors raised mid-stream propagate unchanged; anything else
    the iterator raises is wrapped as a ModelTransportError so the
    classifier sees one error family.
    """
    if isinstance(reply, str):
        return reply
    parts: list[str] = []
    try:
        async for fragment in reply:
            parts.append(fragment)
    except ModelTransportError:
        raise
    except (OSError, RuntimeError, ValueError) as e:
        raise ModelTransportError(str(e)) from e
    return "".join(parts)
