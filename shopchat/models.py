from __future__ import annotations

import time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class ConversationTurn(BaseModel):
    """One stored message of a user's recent history."""
    role: Literal["user", "assistant"]
    content: str


class MergedItem(BaseModel):
    """Product line extracted by the normalizer."""
    product: str
    qty: Optional[float] = None
    unit: Optional[str] = None


class MergedTurn(BaseModel):
    """Normalized user utterance produced from one buffer flush."""
    merged_text: str
    items: List[MergedItem] = Field(default_factory=list)
    followups: List[str] = Field(default_factory=list)


class InboundEvent(BaseModel):
    """Transport-neutral inbound text message handed to the core."""
    user_id: str
    text: str
    timestamp: float = Field(default_factory=time.time)
    platform: str = "messenger"
    message_id: Optional[str] = None


class HealthResponse(BaseModel):
    """Payload returned by the health endpoint."""
    status: str
    catalog_products: int
    pending_buffers: int


class ReloadResponse(BaseModel):
    """Payload returned after a catalog reload attempt."""
    reloaded: bool
    catalog_products: int
    detail: str = ""
