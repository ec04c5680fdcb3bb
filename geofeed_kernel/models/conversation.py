"""Pairwise conversations and their append-only messages."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TurnState(str, Enum):
    MY_TURN = "my_turn"
    THEIR_TURN = "their_turn"
    SENDING = "sending"


class ChannelStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    UNAVAILABLE = "unavailable"     # Subscription denied or failed


class Message(BaseModel):
    """A single message. Never mutated after creation."""

    id: str
    sender_id: str
    sender_name: Optional[str] = None
    text: str
    created_at: Optional[datetime] = None


class Conversation(BaseModel):
    """Conversation metadata. ``id`` is derived from the sorted participants."""

    id: str
    participants: List[str] = Field(min_length=2, max_length=2)
    last_sender_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_viewed: Dict[str, datetime] = {}
    last_updated: Optional[datetime] = None
