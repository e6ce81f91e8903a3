"""
Value types returned by the conversation store.

These are read-only snapshots: ``SessionSummary.message_count`` is computed at
read time and never written back.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field

from .timestamps import ZERO_TIME


class Message(BaseModel):
    """One entry of a conversation."""
    role: str = Field(description="Speaker role, e.g. user / assistant / system")
    content: str = Field("", description="Message text, may be empty")
    created_at: datetime = Field(default=ZERO_TIME, description="Set by the store on insert")

    def to_chat(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class SessionSummary(BaseModel):
    """A saved conversation with its live message count."""
    id: int
    name: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0


class Transcript(BaseModel):
    """A session summary together with every message, oldest first."""
    summary: SessionSummary
    messages: List[Message] = Field(default_factory=list)

    def to_history(self) -> List[Dict[str, str]]:
        """Messages as ``{"role", "content"}`` dicts for a chat completion request."""
        return [m.to_chat() for m in self.messages]
