"""Roaming entity state, simulator configuration and rarity tables."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from geofeed_kernel.models.geo import GeoPoint


class RarityTier(BaseModel):
    """One tier of the weighted rarity table."""

    name: str                               # e.g., "common", "rare", "ultra"
    weight: float = Field(gt=0, le=1)       # Probability mass of this tier
    kinds: List[str] = Field(min_length=1)  # Payloads drawn uniformly within the tier


DEFAULT_RARITY_TABLE = [
    RarityTier(name="ultra", weight=0.15, kinds=[
        "🐉", "🦄", "🦈", "🦅", "🦋", "🌍", "🌕", "🌟", "🌈", "⚡", "🔥", "🏆", "🥇",
        "Vibing", "Adventurous", "Wants 🍺", "Wants 💬",
    ]),
    RarityTier(name="rare", weight=0.30, kinds=[
        "👻", "👽", "👾", "🤖", "💎", "👑", "🎩", "🎸", "🎷", "🥁", "🚲", "🛵", "❤️", "💜",
    ]),
    RarityTier(name="common", weight=0.55, kinds=[
        "😀", "😄", "😉", "🤩", "🥳", "👋", "👍", "🐶", "🐱", "🦊", "🐸", "🌵", "🍀",
        "🍎", "🍕", "🌮", "⚽", "🏀",
    ]),
]


class SimulatorConfig(BaseModel):
    """Tunable constants for the roaming entity simulator."""

    spawn_interval_seconds: float = 5.0
    move_interval_seconds: float = 0.1

    spawn_min_distance_m: float = 80.0
    spawn_max_distance_m: float = 200.0
    spawn_attempts: int = Field(ge=1, default=5)
    zone_safety_margin_m: float = 10.0

    collect_radius_m: float = 75.0
    lifetime_seconds: float = 15 * 60
    cooldown_min_seconds: float = 60.0
    cooldown_max_seconds: float = 120.0

    first_move_delay_seconds: float = 5.0
    move_min_distance_m: float = 60.0
    move_max_distance_m: float = 150.0
    speed_m_per_s: float = Field(gt=0, default=2.5)
    pause_min_seconds: float = 10.0
    pause_max_seconds: float = 30.0
    retry_move_seconds: float = 5.0
    bearing_jitter_rad: float = 0.3

    rarity_table: List[RarityTier] = DEFAULT_RARITY_TABLE

    @model_validator(mode="after")
    def check_ranges(self):
        if self.spawn_min_distance_m > self.spawn_max_distance_m:
            raise ValueError("spawn_min_distance_m must not exceed spawn_max_distance_m")
        if self.cooldown_min_seconds > self.cooldown_max_seconds:
            raise ValueError("cooldown_min_seconds must not exceed cooldown_max_seconds")
        if self.move_min_distance_m > self.move_max_distance_m:
            raise ValueError("move_min_distance_m must not exceed move_max_distance_m")
        total = sum(t.weight for t in self.rarity_table)
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"rarity weights must sum to 1, got {total}")
        return self


class MotionState(BaseModel):
    """Movement bookkeeping for a roaming entity."""

    is_moving: bool = False
    start: GeoPoint
    target: GeoPoint
    started_at: Optional[datetime] = None
    duration_ms: float = 0.0
    next_move_at: datetime


class RoamingEntity(BaseModel):
    """A client-local collectible that wanders near the user."""

    id: str
    position: GeoPoint
    kind: str                               # The collectible payload
    rarity: str
    spawned_at: datetime
    despawn_at: datetime
    motion: MotionState


class SimulatorState(BaseModel):
    """Serializable simulator snapshot mirrored to the persistence port."""

    active: Optional[RoamingEntity] = None
    next_spawn_at: Optional[datetime] = None
