"""
Roaming Entity Simulator — ephemeral collectibles that wander near the user.

Lifecycle per entity:
  ABSENT (cooldown) → SPAWNING → IDLE ⇄ MOVING → DESPAWNED → ABSENT

Two periodic ticks drive it: a slow spawn tick that creates an entity in
an annulus around the user once the cooldown has elapsed, and a fast
movement tick that parks, steers and interpolates the entity. Movement is
biased toward the user and never targets a point inside a chat zone.

Behavioral Contract:
- At most one entity is active at a time
- A spawn point or completed move never lies within zone.radius + margin
- An expired entity is removed on the next tick and a cooldown starts
- collect() destroys the entity before rewarding; a second collect fails
- Persistence failures are logged and never interrupt a tick
"""

import asyncio
import math
import random
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from geofeed_kernel.geo.ranges import (
    distance_meters,
    initial_bearing,
    point_at_bearing,
    wrap_longitude,
)
from geofeed_kernel.logging import get_logger
from geofeed_kernel.models.geo import GeoPoint, Zone
from geofeed_kernel.models.roaming import (
    MotionState,
    RarityTier,
    RoamingEntity,
    SimulatorConfig,
    SimulatorState,
)
from geofeed_kernel.roaming.persistence import InMemoryStatePort, StatePort
from geofeed_kernel.store.base import SERVER_TIMESTAMP, DocumentStore, increment
from geofeed_kernel.store.exceptions import StoreError
from geofeed_kernel.utils.time import Clock, now_utc

logger = get_logger("roaming")

TWO_PI = 2 * math.pi


class SimulatorError(Exception):
    """Base class for roaming simulator failures."""
    pass


class NothingToCollect(SimulatorError):
    """No active entity (already collected, despawned, or never spawned)."""
    pass


class OutOfRange(SimulatorError):
    """The user is farther than the collect radius from the entity."""
    pass


class CollectError(SimulatorError):
    """The entity was taken but the inventory reward could not be written."""
    pass


def draw_kind(rng: random.Random, table: Sequence[RarityTier]) -> Tuple[str, str]:
    """Weighted draw of (rarity, kind) from a rarity table."""
    roll = rng.random()
    cumulative = 0.0
    for tier in table:
        cumulative += tier.weight
        if roll < cumulative:
            return tier.name, rng.choice(tier.kinds)
    last = table[-1]
    return last.name, rng.choice(last.kinds)


def is_safe(point: GeoPoint, zones: Sequence[Zone], margin_m: float) -> bool:
    """True if ``point`` is clear of every zone by more than ``margin_m``."""
    return all(
        distance_meters(point, zone.center) > zone.radius_m + margin_m
        for zone in zones
    )


def _lerp(start: GeoPoint, target: GeoPoint, fraction: float) -> GeoPoint:
    # Along the shorter longitude arc.
    d_lng = wrap_longitude(target.lng - start.lng)
    return GeoPoint(
        lat=start.lat + (target.lat - start.lat) * fraction,
        lng=wrap_longitude(start.lng + d_lng * fraction),
    )


class RoamingSimulator:
    """
    Owns the single active roaming entity for one user.
    Only the simulator's own ticks mutate the entity's position.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[SimulatorConfig] = None,
        state_port: Optional[StatePort] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.config = config or SimulatorConfig()
        self.state_port = state_port or InMemoryStatePort()
        self.rng = rng or random.Random()
        self._clock = clock or now_utc

        self._entity: Optional[RoamingEntity] = None
        self._next_spawn_at: Optional[datetime] = None
        self._running = False

    # --- Read side ---

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    @property
    def entities(self) -> List[RoamingEntity]:
        return [self._entity] if self._entity else []

    @property
    def active_entity(self) -> Optional[RoamingEntity]:
        return self._entity

    @property
    def next_spawn_at(self) -> Optional[datetime]:
        return self._next_spawn_at

    def collectible(self, user_position: Optional[GeoPoint]) -> Optional[RoamingEntity]:
        """The entity if it is within collect range of the user, else None."""
        if self._entity is None or user_position is None:
            return None
        if distance_meters(user_position, self._entity.position) <= self.config.collect_radius_m:
            return self._entity
        return None

    # --- Persistence ---

    def restore(self, now: Optional[datetime] = None) -> Optional[RoamingEntity]:
        """
        Reload the persisted state. An unexpired entity comes back as-is;
        otherwise a pending cooldown is honored.
        """
        if now is None:
            now = self._clock()

        try:
            state = self.state_port.load()
        except Exception as e:
            logger.error("Failed to load roaming state: %s", e)
            return None
        if state is None:
            return None

        if state.active is not None and now < state.active.despawn_at:
            self._entity = state.active
            self._next_spawn_at = None
            logger.info("Restored roaming entity %s (%s)", state.active.id, state.active.kind)
        else:
            self._entity = None
            self._next_spawn_at = state.next_spawn_at
        return self._entity

    def _persist(self) -> None:
        state = SimulatorState(active=self._entity, next_spawn_at=self._next_spawn_at)
        try:
            self.state_port.save(state)
        except Exception as e:
            logger.warning("Failed to persist roaming state: %s", e)

    # --- Lifecycle ---

    def _start_cooldown(self, now: datetime) -> None:
        seconds = self.rng.uniform(
            self.config.cooldown_min_seconds, self.config.cooldown_max_seconds
        )
        self._next_spawn_at = now + timedelta(seconds=seconds)

    def _expire_if_due(self, now: datetime) -> bool:
        if self._entity is None or now < self._entity.despawn_at:
            return False
        logger.info("Roaming entity %s despawned", self._entity.id)
        self._entity = None
        self._start_cooldown(now)
        self._persist()
        return True

    def spawn_tick(
        self,
        user_position: Optional[GeoPoint],
        zones: Sequence[Zone] = (),
        now: Optional[datetime] = None,
    ) -> Optional[RoamingEntity]:
        """
        Run one spawn cycle. Returns the active entity after the tick, if any.
        """
        if now is None:
            now = self._clock()

        if self._expire_if_due(now):
            return None

        if self._entity is not None:
            self._persist()
            return self._entity

        if user_position is None:
            return None
        if self._next_spawn_at is not None and now < self._next_spawn_at:
            return None

        cfg = self.config
        for attempt in range(cfg.spawn_attempts):
            distance = self.rng.uniform(cfg.spawn_min_distance_m, cfg.spawn_max_distance_m)
            bearing = self.rng.uniform(0, TWO_PI)
            candidate = point_at_bearing(user_position, distance, bearing)
            if not is_safe(candidate, zones, cfg.zone_safety_margin_m):
                continue

            rarity, kind = draw_kind(self.rng, cfg.rarity_table)
            self._entity = RoamingEntity(
                id=f"npc_{self.rng.getrandbits(48):012x}",
                position=candidate,
                kind=kind,
                rarity=rarity,
                spawned_at=now,
                despawn_at=now + timedelta(seconds=cfg.lifetime_seconds),
                motion=MotionState(
                    start=candidate,
                    target=candidate,
                    next_move_at=now + timedelta(seconds=cfg.first_move_delay_seconds),
                ),
            )
            self._next_spawn_at = None
            self._persist()
            logger.info(
                "Spawned %s entity %s at %.0fm after %d attempt(s)",
                rarity, self._entity.id, distance, attempt + 1,
            )
            return self._entity

        logger.debug("No safe spawn point after %d attempts", cfg.spawn_attempts)
        return None

    def move_tick(
        self,
        user_position: Optional[GeoPoint],
        zones: Sequence[Zone] = (),
        now: Optional[datetime] = None,
    ) -> Optional[RoamingEntity]:
        """Advance movement by one tick. Returns the active entity, if any."""
        if now is None:
            now = self._clock()

        if self._expire_if_due(now) or self._entity is None:
            return None

        entity = self._entity
        motion = entity.motion
        cfg = self.config

        if motion.is_moving:
            elapsed_ms = (now - motion.started_at).total_seconds() * 1000
            fraction = 1.0 if motion.duration_ms <= 0 else elapsed_ms / motion.duration_ms
            fraction = min(1.0, max(0.0, fraction))

            if fraction >= 1.0:
                pause = self.rng.uniform(cfg.pause_min_seconds, cfg.pause_max_seconds)
                self._entity = entity.model_copy(update={
                    "position": motion.target,
                    "motion": motion.model_copy(update={
                        "is_moving": False,
                        "next_move_at": now + timedelta(seconds=pause),
                    }),
                })
                self._persist()
            else:
                self._entity = entity.model_copy(update={
                    "position": _lerp(motion.start, motion.target, fraction),
                })
            return self._entity

        if now < motion.next_move_at:
            return entity

        distance = self.rng.uniform(cfg.move_min_distance_m, cfg.move_max_distance_m)
        if user_position is not None:
            jitter = self.rng.uniform(-cfg.bearing_jitter_rad, cfg.bearing_jitter_rad)
            bearing = initial_bearing(entity.position, user_position) + jitter
        else:
            bearing = self.rng.uniform(0, TWO_PI)

        target = point_at_bearing(entity.position, distance, bearing)
        if not is_safe(target, zones, cfg.zone_safety_margin_m):
            target = point_at_bearing(entity.position, distance, self.rng.uniform(0, TWO_PI))

        if is_safe(target, zones, cfg.zone_safety_margin_m):
            self._entity = entity.model_copy(update={
                "motion": MotionState(
                    is_moving=True,
                    start=entity.position,
                    target=target,
                    started_at=now,
                    duration_ms=distance / cfg.speed_m_per_s * 1000,
                    next_move_at=motion.next_move_at,
                ),
            })
            self._persist()
        else:
            self._entity = entity.model_copy(update={
                "motion": motion.model_copy(update={
                    "next_move_at": now + timedelta(seconds=cfg.retry_move_seconds),
                }),
            })
        return self._entity

    # --- Interaction ---

    async def collect(
        self,
        user_id: str,
        user_position: Optional[GeoPoint],
        now: Optional[datetime] = None,
    ) -> RoamingEntity:
        """
        Collect the active entity into the user's inventory.

        The entity is destroyed synchronously before the reward write, so a
        concurrent second attempt observes no entity.

        Raises:
            NothingToCollect: No entity is active.
            OutOfRange: The user is not within the collect radius.
            CollectError: The inventory increment failed.
        """
        if now is None:
            now = self._clock()

        self._expire_if_due(now)
        entity = self._entity
        if entity is None:
            raise NothingToCollect("no roaming entity to collect")
        if self.collectible(user_position) is None:
            raise OutOfRange(
                f"entity {entity.id} is beyond {self.config.collect_radius_m:.0f}m"
            )

        self._entity = None
        self._start_cooldown(now)
        self._persist()

        try:
            await self.store.set(
                "users",
                user_id,
                {
                    "inventory": {entity.kind: increment(1)},
                    "last_collected_at": SERVER_TIMESTAMP,
                },
                merge=True,
            )
        except StoreError as e:
            logger.error("Inventory reward for %s failed: %s", user_id, e)
            raise CollectError(f"could not reward {entity.kind} to {user_id}") from e

        logger.info("User %s collected %s (%s)", user_id, entity.kind, entity.rarity)
        return entity

    # --- Scheduling ---

    async def run_async(
        self,
        position_provider: Callable[[], Optional[GeoPoint]],
        zone_provider: Callable[[], Sequence[Zone]],
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Run the spawn and movement ticks until ``stop_event`` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        self.restore()
        try:
            await asyncio.gather(
                self._tick_loop(
                    self.config.spawn_interval_seconds, self.spawn_tick,
                    position_provider, zone_provider, stop_event,
                ),
                self._tick_loop(
                    self.config.move_interval_seconds, self.move_tick,
                    position_provider, zone_provider, stop_event,
                ),
            )
        finally:
            self._running = False

    async def _tick_loop(
        self,
        interval: float,
        tick: Callable[..., Optional[RoamingEntity]],
        position_provider: Callable[[], Optional[GeoPoint]],
        zone_provider: Callable[[], Sequence[Zone]],
        stop_event: asyncio.Event,
    ) -> None:
        while not stop_event.is_set():
            tick(position_provider(), zone_provider())
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
