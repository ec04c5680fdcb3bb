"""Geofeed kernel data models."""

from geofeed_kernel.models.conversation import (
    ChannelStatus,
    Conversation,
    Message,
    TurnState,
)
from geofeed_kernel.models.feed import FeedItem
from geofeed_kernel.models.geo import GeoPoint, IndexedDocument, Zone
from geofeed_kernel.models.proximity import ProximityQuery, ThrottleConfig
from geofeed_kernel.models.roaming import (
    DEFAULT_RARITY_TABLE,
    MotionState,
    RarityTier,
    RoamingEntity,
    SimulatorConfig,
    SimulatorState,
)

__all__ = [
    "ChannelStatus",
    "Conversation",
    "DEFAULT_RARITY_TABLE",
    "FeedItem",
    "GeoPoint",
    "IndexedDocument",
    "Message",
    "MotionState",
    "ProximityQuery",
    "RarityTier",
    "RoamingEntity",
    "SimulatorConfig",
    "SimulatorState",
    "ThrottleConfig",
    "TurnState",
    "Zone",
]
