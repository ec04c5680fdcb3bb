"""Tests for the Roaming Entity Simulator."""

import asyncio
import random
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from geofeed_kernel.geo.ranges import distance_meters
from geofeed_kernel.models.geo import GeoPoint, Zone
from geofeed_kernel.models.roaming import DEFAULT_RARITY_TABLE, SimulatorConfig
from geofeed_kernel.roaming.persistence import InMemoryStatePort
from geofeed_kernel.roaming.simulator import (
    CollectError,
    NothingToCollect,
    OutOfRange,
    RoamingSimulator,
    _lerp,
    draw_kind,
    is_safe,
)
from geofeed_kernel.store.exceptions import WriteError
from geofeed_kernel.store.memory import InMemoryDocumentStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
USER = GeoPoint(lat=40.0, lng=-3.7)


def _simulator(seed: int = 1, store=None, port=None, config=None) -> RoamingSimulator:
    return RoamingSimulator(
        store or InMemoryDocumentStore(clock=lambda: T0),
        config=config,
        state_port=port or InMemoryStatePort(),
        rng=random.Random(seed),
        clock=lambda: T0,
    )


class FailingSetStore(InMemoryDocumentStore):
    async def set(self, collection, doc_id, data, *, merge=False):
        raise WriteError("store offline")


class TestRarity:
    def test_default_weights(self):
        assert [t.name for t in DEFAULT_RARITY_TABLE] == ["ultra", "rare", "common"]
        assert sum(t.weight for t in DEFAULT_RARITY_TABLE) == pytest.approx(1.0)

    def test_draw_distribution(self):
        rng = random.Random(7)
        counts = Counter(draw_kind(rng, DEFAULT_RARITY_TABLE)[0] for _ in range(10_000))
        assert counts["ultra"] / 10_000 == pytest.approx(0.15, abs=0.02)
        assert counts["rare"] / 10_000 == pytest.approx(0.30, abs=0.02)
        assert counts["common"] / 10_000 == pytest.approx(0.55, abs=0.02)

    def test_draw_kind_belongs_to_tier(self):
        rng = random.Random(0)
        tiers = {t.name: t.kinds for t in DEFAULT_RARITY_TABLE}
        for _ in range(100):
            rarity, kind = draw_kind(rng, DEFAULT_RARITY_TABLE)
            assert kind in tiers[rarity]


class TestSpawn:
    def test_spawns_in_annulus(self):
        sim = _simulator()
        entity = sim.spawn_tick(USER, now=T0)
        assert entity is not None
        assert 80 - 0.01 <= distance_meters(USER, entity.position) <= 200 + 0.01
        assert entity.despawn_at == T0 + timedelta(minutes=15)
        assert entity.motion.next_move_at == T0 + timedelta(seconds=5)
        assert sim.entities == [entity]

    def test_at_most_one_entity(self):
        sim = _simulator()
        first = sim.spawn_tick(USER, now=T0)
        second = sim.spawn_tick(USER, now=T0 + timedelta(seconds=5))
        assert second.id == first.id
        assert len(sim.entities) == 1

    def test_no_position_no_spawn(self):
        sim = _simulator()
        assert sim.spawn_tick(None, now=T0) is None

    def test_spawn_avoids_zones(self):
        """A spawned entity is never within zone radius plus margin."""
        zones = [Zone(id="z", center=USER, radius_m=150)]
        spawned = 0
        for seed in range(30):
            sim = _simulator(seed)
            entity = sim.spawn_tick(USER, zones, now=T0)
            if entity is None:
                continue
            spawned += 1
            assert distance_meters(entity.position, USER) > 160
            assert is_safe(entity.position, zones, 10)
        assert spawned > 0

    def test_fully_covered_area_never_spawns(self):
        sim = _simulator()
        zones = [Zone(id="huge", center=USER, radius_m=5000)]
        assert sim.spawn_tick(USER, zones, now=T0) is None
        assert sim.active_entity is None


class TestExpiry:
    def test_expired_entity_removed_and_cooldown_honored(self):
        sim = _simulator()
        sim.spawn_tick(USER, now=T0)
        expiry = T0 + timedelta(minutes=15)

        assert sim.move_tick(USER, now=expiry) is None
        assert sim.entities == []
        cooldown = sim.next_spawn_at - expiry
        assert timedelta(seconds=60) <= cooldown <= timedelta(seconds=120)

        assert sim.spawn_tick(USER, now=expiry + timedelta(seconds=59)) is None
        assert sim.spawn_tick(USER, now=sim.next_spawn_at) is not None

    def test_spawn_tick_also_expires(self):
        sim = _simulator()
        sim.spawn_tick(USER, now=T0)
        assert sim.spawn_tick(USER, now=T0 + timedelta(minutes=16)) is None
        assert sim.next_spawn_at is not None


class TestMovement:
    def test_waits_for_first_move(self):
        sim = _simulator()
        entity = sim.spawn_tick(USER, now=T0)
        moved = sim.move_tick(USER, now=T0 + timedelta(seconds=1))
        assert moved.position == entity.position
        assert not moved.motion.is_moving

    def test_move_interpolates_and_arrives(self):
        sim = _simulator()
        entity = sim.spawn_tick(USER, now=T0)
        start = T0 + timedelta(seconds=5)

        moving = sim.move_tick(USER, now=start)
        motion = moving.motion
        assert motion.is_moving
        leg = distance_meters(entity.position, motion.target)
        assert 60 - 0.01 <= leg <= 150 + 0.01
        assert motion.duration_ms == pytest.approx(leg / 2.5 * 1000, rel=1e-6)

        halfway = sim.move_tick(USER, now=start + timedelta(milliseconds=motion.duration_ms / 2))
        assert distance_meters(halfway.position, entity.position) == pytest.approx(leg / 2, rel=0.01)

        arrived = sim.move_tick(USER, now=start + timedelta(milliseconds=motion.duration_ms + 1))
        assert arrived.position == motion.target
        assert not arrived.motion.is_moving
        pause = arrived.motion.next_move_at - (start + timedelta(milliseconds=motion.duration_ms + 1))
        assert timedelta(seconds=10) <= pause <= timedelta(seconds=30)

    def test_moves_toward_user(self):
        sim = _simulator(5)
        entity = sim.spawn_tick(USER, now=T0)
        before = distance_meters(entity.position, USER)
        moving = sim.move_tick(USER, now=T0 + timedelta(seconds=5))
        after = distance_meters(moving.motion.target, USER)
        assert after < before

    def test_completed_moves_stay_clear_of_zones(self):
        zone = Zone(id="z", center=USER, radius_m=40)
        for seed in range(10):
            sim = _simulator(seed)
            sim.spawn_tick(USER, [zone], now=T0)
            now = T0 + timedelta(seconds=5)
            for _ in range(20):
                entity = sim.move_tick(USER, [zone], now=now)
                if entity is None:
                    break
                if not entity.motion.is_moving:
                    assert is_safe(entity.position, [zone], 10)
                now += timedelta(seconds=35)

    def test_blocked_move_retries_later(self):
        sim = _simulator()
        sim.spawn_tick(USER, now=T0)
        wall = [Zone(id="wall", center=USER, radius_m=2000)]
        now = T0 + timedelta(seconds=5)
        entity = sim.move_tick(USER, wall, now=now)
        assert not entity.motion.is_moving
        assert entity.motion.next_move_at == now + timedelta(seconds=5)

    def test_interpolation_crosses_antimeridian(self):
        start = GeoPoint(lat=0, lng=179.9)
        target = GeoPoint(lat=0, lng=-179.9)
        mid = _lerp(start, target, 0.5)
        assert abs(mid.lng) == pytest.approx(180)
        assert distance_meters(start, mid) == pytest.approx(distance_meters(start, target) / 2, rel=1e-6)
        assert _lerp(start, target, 1.0).lng == pytest.approx(-179.9)


class TestCollect:
    def test_collect_rewards_inventory(self):
        store = InMemoryDocumentStore(clock=lambda: T0)
        sim = _simulator(store=store)
        entity = sim.spawn_tick(USER, now=T0)

        collected = asyncio.run(sim.collect("u1", entity.position, now=T0))
        assert collected.id == entity.id
        assert sim.active_entity is None
        assert sim.next_spawn_at > T0

        user = asyncio.run(store.get("users", "u1"))
        assert user.data["inventory"] == {entity.kind: 1}
        assert user.data["last_collected_at"] == T0

    def test_second_collect_fails(self):
        sim = _simulator()
        entity = sim.spawn_tick(USER, now=T0)

        async def double_tap():
            return await asyncio.gather(
                sim.collect("u1", entity.position, now=T0),
                sim.collect("u1", entity.position, now=T0),
                return_exceptions=True,
            )

        first, second = asyncio.run(double_tap())
        assert first.id == entity.id
        assert isinstance(second, NothingToCollect)

    def test_out_of_range(self):
        sim = _simulator()
        sim.spawn_tick(USER, now=T0)
        far = GeoPoint(lat=USER.lat + 0.01, lng=USER.lng)
        with pytest.raises(OutOfRange):
            asyncio.run(sim.collect("u1", far, now=T0))
        assert sim.active_entity is not None

    def test_collectible_window(self):
        sim = _simulator()
        entity = sim.spawn_tick(USER, now=T0)
        assert sim.collectible(entity.position) == entity
        assert sim.collectible(None) is None

    def test_nothing_to_collect(self):
        with pytest.raises(NothingToCollect):
            asyncio.run(_simulator().collect("u1", USER, now=T0))

    def test_failed_reward_keeps_entity_destroyed(self):
        sim = _simulator(store=FailingSetStore())
        entity = sim.spawn_tick(USER, now=T0)
        with pytest.raises(CollectError):
            asyncio.run(sim.collect("u1", entity.position, now=T0))
        assert sim.active_entity is None


class TestRestore:
    def test_restore_active_entity(self):
        port = InMemoryStatePort()
        sim = _simulator(port=port)
        entity = sim.spawn_tick(USER, now=T0)

        reloaded = _simulator(port=port)
        restored = reloaded.restore(now=T0 + timedelta(minutes=1))
        assert restored.id == entity.id
        assert restored.despawn_at == entity.despawn_at

    def test_restore_expired_honors_cooldown(self):
        port = InMemoryStatePort()
        sim = _simulator(port=port)
        sim.spawn_tick(USER, now=T0)
        asyncio.run(sim.collect("u1", sim.active_entity.position, now=T0))

        reloaded = _simulator(port=port)
        assert reloaded.restore(now=T0 + timedelta(seconds=1)) is None
        assert reloaded.next_spawn_at == sim.next_spawn_at
        assert reloaded.spawn_tick(USER, now=T0 + timedelta(seconds=2)) is None

    def test_restore_with_broken_port(self):
        class BrokenPort(InMemoryStatePort):
            def load(self):
                raise OSError("disk gone")

        sim = _simulator(port=BrokenPort())
        assert sim.restore(now=T0) is None

    def test_persist_failure_does_not_break_tick(self):
        class ReadOnlyPort(InMemoryStatePort):
            def save(self, state):
                raise OSError("read-only")

        sim = _simulator(port=ReadOnlyPort())
        assert sim.spawn_tick(USER, now=T0) is not None


class TestConfig:
    def test_invalid_ranges_rejected(self):
        with pytest.raises(ValueError):
            SimulatorConfig(spawn_min_distance_m=300, spawn_max_distance_m=200)

    def test_custom_config_used(self):
        sim = _simulator(config=SimulatorConfig(spawn_min_distance_m=10, spawn_max_distance_m=20))
        entity = sim.spawn_tick(USER, now=T0)
        assert distance_meters(USER, entity.position) <= 20.01


class TestRunAsync:
    def test_ticks_until_stopped(self):
        config = SimulatorConfig(spawn_interval_seconds=0.01, move_interval_seconds=0.01)
        sim = RoamingSimulator(InMemoryDocumentStore(), config=config, rng=random.Random(2))

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(sim.run_async(lambda: USER, lambda: [], stop))
            await asyncio.sleep(0.05)
            assert sim.status == "running"
            stop.set()
            await task

        asyncio.run(scenario())
        assert sim.status == "stopped"
        assert sim.active_entity is not None
