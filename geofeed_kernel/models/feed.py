"""Feed items held in a bounded, rolling feed."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class FeedItem(BaseModel):
    """A post in a zone feed. Payload fields (text, creator...) are kept as extras."""

    model_config = ConfigDict(extra="allow")

    id: str
    feed_id: str
    created_at: Optional[datetime] = None
