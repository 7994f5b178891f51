"""
Traffic manager: spawning, isolation, abort and reporting.
"""
import asyncio
import random
from collections import defaultdict
from dataclasses import replace

import pytest

from trafficsim.config import TrafficConfig
from trafficsim.errors import ConfigError, SimulationError
from trafficsim.traffic import (
    SpawnWindow,
    TrafficManager,
    TrafficStats,
    next_spawn_delay,
    spawn_ceiling,
    spawn_window,
)
from trafficsim.virtual_user import UserState, VirtualUser

QUICK_BUYERS = [100, 0, 0, 0, 0, 0]


def paying_config(config_factory, **traffic):
    config = config_factory(base_success_rate=1.0, large_order_penalty=0.0, card_type_penalties={})
    if traffic:
        config = replace(config, traffic=replace(config.traffic, **traffic))
    return config


class TestRun:
    def test_every_session_checks_out_in_its_own_trace(self, config_factory, tracer_provider,
                                                        span_exporter, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                stats = await manager.run(10, QUICK_BUYERS, concurrency_limit=4)
                return manager, stats, api

        manager, stats, api = asyncio.run(scenario())
        assert stats.sessions_started == 10
        assert stats.sessions_completed == 10
        assert stats.orders_created == 10
        assert stats.conversion_rate == 100
        assert stats.journey_counts == {"Quick Buyer": 10}
        assert len(api.requests_to("POST", "/api/orders")) == 10

        by_trace = defaultdict(list)
        for span in span_exporter.get_finished_spans():
            by_trace[span.context.trace_id].append(span.name)
        sessions = [names for names in by_trace.values() if "user_session" in names]
        assert len(sessions) == 10
        assert all("checkout_process" in names for names in sessions)
        assert len(manager.recently_completed()) == 10

    def test_same_seed_same_users(self, config_factory, tracer_provider):
        async def spawn():
            manager = TrafficManager(config_factory(seed=42), tracer_provider=tracer_provider)
            await manager.start(8)
            manager.stop_all()
            await manager.wait()
            return [(u.journey.name, u.customer.full_name) for u in manager.users.values()]

        assert asyncio.run(spawn()) == asyncio.run(spawn())

    def test_user_crash_is_isolated(self, config_factory, tracer_provider, restaurant_api, monkeypatch):
        original = VirtualUser._checkout

        async def flaky_checkout(self, step, span):
            if self.user_id == "virtual-user-1":
                raise RuntimeError("checkout exploded")
            await original(self, step, span)

        monkeypatch.setattr(VirtualUser, "_checkout", flaky_checkout)

        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                return await manager.run(5, QUICK_BUYERS)

        stats = asyncio.run(scenario())
        assert stats.sessions_failed == 1
        assert stats.sessions_completed == 4

    def test_all_bounce(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory, bounce_rate=1.0),
                                         base_url=api.base_url, tracer_provider=tracer_provider)
                stats = await manager.run(4)
                return manager, stats, api

        manager, stats, api = asyncio.run(scenario())
        assert stats.sessions_bounced == 4
        assert stats.bounce_rate == 100
        assert all(u.state is UserState.BOUNCED for u in manager.users.values())
        assert len(api.requests_to("GET", "/api/health")) == 4


class TestControl:
    def test_stop_all_ends_every_session(self, config_factory, tracer_provider,
                                         span_exporter, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory, time_scale=0.01),
                                         base_url=api.base_url, tracer_provider=tracer_provider)
                await manager.start(5, "browsers", concurrency_limit=5)
                await asyncio.sleep(0.05)
                aborted = manager.stop_all()
                stats = await manager.wait()
                return manager, stats, aborted

        manager, stats, aborted = asyncio.run(scenario())
        assert aborted == 5
        assert stats.sessions_aborted == 5
        assert all(u.tracker.ended for u in manager.users.values())
        assert not manager.running

        sessions = [s for s in span_exporter.get_finished_spans() if s.name == "user_session"]
        assert len(sessions) == 5
        assert {s.attributes["session.end_reason"] for s in sessions} == {"aborted"}

    def test_start_while_running_is_rejected(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory, time_scale=0.01),
                                         base_url=api.base_url, tracer_provider=tracer_provider)
                await manager.start(2, "browsers")
                try:
                    with pytest.raises(SimulationError):
                        await manager.start(2)
                finally:
                    manager.stop_all()
                    await manager.wait()

        asyncio.run(scenario())

    def test_invalid_arguments(self, fast_config, tracer_provider):
        async def scenario():
            manager = TrafficManager(fast_config, tracer_provider=tracer_provider)
            with pytest.raises(ConfigError):
                await manager.start(0)
            with pytest.raises(ConfigError):
                await manager.start(1, "shoppers")
            with pytest.raises(ConfigError):
                await manager.start(1, concurrency_limit=0)
            assert not manager.running

        asyncio.run(scenario())

    def test_snapshot_lists_only_live_users(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory, time_scale=0.01),
                                         base_url=api.base_url, tracer_provider=tracer_provider)
                await manager.start(3, "browsers", concurrency_limit=1)
                await asyncio.sleep(0.02)
                during = manager.get_activity_snapshot()
                manager.stop_all()
                await manager.wait()
                return during, manager.get_activity_snapshot()

        during, after = asyncio.run(scenario())
        assert len(during) == 3
        assert sum(1 for info in during.values() if info["activity"] == "queued") >= 2
        assert after == {}


    def test_previous_wait_leaves_next_run_alone(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(paying_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                await manager.start(2, QUICK_BUYERS)
                while manager.running:
                    await asyncio.sleep(0.01)
                first = manager.stats
                previous = asyncio.create_task(manager.wait())
                await asyncio.sleep(0)
                await manager.start(3, QUICK_BUYERS)
                await previous
                second = await manager.wait()
                return first, second, api

        first, second, api = asyncio.run(scenario())
        assert first.sessions_completed == 2
        assert first.end_time
        assert second is not first
        assert second.sessions_completed == 3
        assert second.sessions_failed == 0
        assert len(api.requests_to("POST", "/api/orders")) == 5


class TestStats:
    def test_empty_stats(self):
        stats = TrafficStats()
        assert stats.bounce_rate == 0.0
        assert stats.conversion_rate == 0.0
        assert stats.average_session_duration == 0.0
        assert stats.to_dict()["sessions"]["started"] == 0


# ── continuous traffic ────────────────────────────────────────────────────────

class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


def continuous_config(config_factory, **traffic):
    settings = {
        "time_scale": 0.02,
        "spawn_interval_min": 0.01,
        "spawn_interval_max": 0.02,
        "burst_spawn_interval": 0.0,
    }
    settings.update(traffic)
    return paying_config(config_factory, **settings)


class TestSpawnTiming:
    @pytest.mark.parametrize("timing,expected", [
        ("steady", (5, 14, 1.0)),
        ("peak", (3, 10, 1.5)),
        ("low", (20, 60, 0.6)),
        ("normal", (10, 20, 1.0)),
    ])
    def test_profile_windows(self, timing, expected):
        traffic = TrafficConfig(spawn_interval_min=10, spawn_interval_max=20, traffic_timing=timing)
        window = spawn_window(traffic, random.Random(1))
        assert (window.min_s, window.max_s, window.target_adjustment) == pytest.approx(expected)

    @pytest.mark.parametrize("roll,expected", [(0.1, (1, 4, 2.0)), (0.9, (40, 120, 0.3))])
    def test_burst_rolls_between_spikes_and_lulls(self, roll, expected):
        traffic = TrafficConfig(spawn_interval_min=10, spawn_interval_max=20, traffic_timing="burst")
        window = spawn_window(traffic, FixedRandom(roll))
        assert (window.min_s, window.max_s, window.target_adjustment) == pytest.approx(expected)

    @pytest.mark.parametrize("active,expected", [(2, 1.0), (5, 3.0), (4, 1.5)])
    def test_steady_delays(self, active, expected):
        delay, _ = next_spawn_delay(active, 4, "steady", SpawnWindow(1.0, 2.0, 1.0), random.Random(1))
        assert delay == pytest.approx(expected)

    def test_variable_delays(self):
        window = SpawnWindow(1.0, 2.0, 1.0)
        rng = random.Random(1)
        assert next_spawn_delay(1, 4, "normal", window, rng)[0] == 1.0
        assert next_spawn_delay(6, 4, "normal", window, rng)[0] == 4.0
        delay, reason = next_spawn_delay(4, 4, "normal", window, rng)
        assert 1.0 <= delay <= 2.0
        assert reason.startswith("Normal range")

    def test_ceilings(self):
        assert spawn_ceiling(4, "steady", SpawnWindow(1.0, 2.0, 1.0)) == 4
        assert spawn_ceiling(4, "normal", SpawnWindow(1.0, 2.0, 1.0)) == 6
        assert spawn_ceiling(5, "peak", SpawnWindow(1.0, 2.0, 1.5)) == 10


class TestContinuous:
    def test_steady_holds_target(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(continuous_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                await manager.start_continuous(3, "browsers", "steady")
                await asyncio.sleep(0.2)
                during = (manager.active_count, manager.stats.sessions_started, manager.get_stats())
                manager.stop_all()
                await manager.wait()
                return manager, during

        manager, (active, started, stats) = asyncio.run(scenario())
        assert active == 3
        assert started == 3
        assert stats["continuous"] is True
        assert stats["target_users"] == 3
        assert not manager.running

    def test_peak_allows_more_users(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(continuous_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                await manager.start_continuous(2, "browsers", "peak")
                await asyncio.sleep(0.2)
                active = manager.active_count
                manager.stop_all()
                await manager.wait()
                return active

        # Target 2 scaled by 1.5, plus the variance band
        assert asyncio.run(scenario()) == 5

    def test_stop_cancels_spawner(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(continuous_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                await manager.start_continuous(2, "browsers")
                await asyncio.sleep(0.05)
                aborted = manager.stop_all()
                stats = await manager.wait()
                started = stats.sessions_started
                await asyncio.sleep(0.05)
                return manager, stats, aborted, started

        manager, stats, aborted, started = asyncio.run(scenario())
        assert aborted == 2
        assert not manager.spawning
        assert not manager.running
        assert stats.sessions_started == started == 2
        assert stats.sessions_aborted == 2
        assert all(u.tracker.ended for u in manager.users.values())

    def test_stop_spawning_lets_users_finish(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(continuous_config(config_factory, time_scale=0.0),
                                         base_url=api.base_url, tracer_provider=tracer_provider)
                await manager.start_continuous(2, QUICK_BUYERS)
                await asyncio.sleep(0.2)
                assert manager.stop_spawning()
                assert not manager.stop_spawning()
                stats = await manager.wait()
                return manager, stats

        manager, stats = asyncio.run(scenario())
        # Finished users are dropped from the live pool as the spawner runs
        assert stats.sessions_completed > 2
        assert len(manager.users) < stats.sessions_started
        assert stats.sessions_aborted == 0
        assert stats.orders_created == stats.sessions_completed

    def test_config_update_restarts_spawner(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(continuous_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                await manager.start_continuous(2, "browsers")
                await asyncio.sleep(0.1)
                before = manager.active_count
                traffic = await manager.update_traffic_config(target_concurrent_users=4)
                await asyncio.sleep(0.15)
                after = manager.active_count
                spawning = manager.spawning
                manager.stop_all()
                await manager.wait()
                return before, after, spawning, traffic

        before, after, spawning, traffic = asyncio.run(scenario())
        assert before == 2
        assert after == 4
        assert spawning
        assert traffic.target_concurrent_users == 4

    def test_rejected_starts_and_updates(self, config_factory, tracer_provider, restaurant_api):
        async def scenario():
            async with restaurant_api() as api:
                manager = TrafficManager(continuous_config(config_factory), base_url=api.base_url,
                                         tracer_provider=tracer_provider)
                with pytest.raises(ConfigError):
                    await manager.start_continuous(2, timing="hurricane")
                with pytest.raises(ConfigError):
                    await manager.start_continuous(0)
                assert not manager.running

                await manager.start_continuous(1, "browsers")
                try:
                    with pytest.raises(SimulationError):
                        await manager.start_continuous(1)
                    with pytest.raises(SimulationError):
                        await manager.start(1)
                    with pytest.raises(ConfigError):
                        await manager.update_traffic_config(seed=3)
                    with pytest.raises(ConfigError):
                        await manager.update_traffic_config(target_concurrent_users="three")
                    with pytest.raises(ConfigError):
                        await manager.update_traffic_config(traffic_timing="hurricane")
                    assert manager.config.traffic.target_concurrent_users == 1
                finally:
                    manager.stop_all()
                    await manager.wait()

        asyncio.run(scenario())
