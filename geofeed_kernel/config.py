"""
Configuration settings using Pydantic Settings.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

METERS_PER_MILE = 1609.34


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (prefix ``GEOFEED_``)."""

    # Proximity queries
    ZONE_QUERY_RADIUS_M: float = 50_000.0
    MOOD_QUERY_RADIUS_M: float = 5_000.0
    SHOUT_QUERY_RADIUS_MILES: float = 10.0
    RECENTER_THRESHOLD_M: float = 300.0

    # Document lifetimes
    SHOUT_LIFETIME_SECONDS: int = 24 * 60 * 60
    ZONE_LIFETIME_SECONDS: int = 24 * 60 * 60
    MOOD_LIFETIME_SECONDS: int = 2 * 60 * 60

    # Feeds and conversations
    FEED_CAP: int = 50
    MESSAGE_HISTORY_LIMIT: int = 50
    MAX_MESSAGE_LENGTH: int = 200

    # Roaming entities
    ROAMING_STATE_PATH: str = ":memory:"
    ROAMING_STATE_KEY: str = "geochat_npc_state_v2"
    ROAMING_SEED: Optional[int] = None

    # Physical TTL cleanup
    SWEEP_SCHEDULE: str = "*/15 * * * *"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="GEOFEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def shout_query_radius_m(self) -> float:
        return self.SHOUT_QUERY_RADIUS_MILES * METERS_PER_MILE


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    :return: Cached Settings instance
    :rtype: Settings
    """
    return Settings()
