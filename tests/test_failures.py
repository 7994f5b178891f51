"""
Failure scenarios: activation, timers, restoration.
"""
import asyncio
import copy
import logging
import math

import pytest

from trafficsim.config import FailureConfig
from trafficsim.data_store import DataStore
from trafficsim.failures import (
    FINAL_CASCADE_STAGE,
    FailureScenario,
    FailureSimulator,
    SystemFlags,
    validate_failure_request,
)


def make_store(order_count=4):
    store = DataStore()
    for i in range(order_count):
        store.add_order({"total": 10.0 + i, "items": [{"productId": "1", "quantity": 1}],
                         "customerEmail": f"guest{i}@example.com"})
    return store


@pytest.fixture
def simulator(fast_config):
    return FailureSimulator(make_store(), fast_config.failures)


def run(coro):
    return asyncio.run(coro)


# ── start / stop ──────────────────────────────────────────────────────────────

class TestStartStop:
    def test_second_start_is_rejected(self, simulator):
        async def scenario():
            first = simulator.start_failure("connection_pool", 30)
            second = simulator.start_failure("memory_leak", 30)
            flags = simulator.flags.to_dict()
            await simulator.shutdown()
            return first, second, flags

        first, second, flags = run(scenario())
        assert first["success"] is True
        assert second["success"] is False
        assert second["current_scenario"] == "connection_pool"
        assert flags["db_pool_exhausted"] and not flags["memory_leaking"]

    @pytest.mark.parametrize("scenario_name,duration", [
        ("meteor_strike", 30),
        ("memory_leak", 0),
        ("memory_leak", "10"),
        ("memory_leak", None),
        ("memory_leak", True),
    ])
    def test_invalid_start_changes_nothing(self, simulator, scenario_name, duration):
        async def scenario():
            return simulator.start_failure(scenario_name, duration)

        assert run(scenario())["success"] is False
        assert not simulator.active
        assert simulator.flags == SystemFlags()

    def test_double_stop(self, simulator):
        async def scenario():
            simulator.start_failure("payment_gateway", 30)
            return simulator.stop_failure(), simulator.stop_failure()

        first, second = run(scenario())
        assert first["success"] is True
        assert first["scenario"] == "payment_gateway"
        assert second["success"] is False
        assert not simulator.flags.payment_gateway_down

    def test_status(self, simulator):
        async def scenario():
            simulator.start_failure("memory_leak", 30)
            await asyncio.sleep(0.03)
            status = simulator.get_failure_status()
            await simulator.shutdown()
            return status

        status = run(scenario())
        assert status["active"] is True
        assert status["scenario"] == "memory_leak"
        assert 0 <= status["progress"] <= 100
        assert status["remaining"] <= 30
        assert status["details"]["memory_leaking"] is True
        assert simulator.get_failure_status() == {"active": False, "scenario": None}

    def test_auto_stop_restores(self, simulator):
        async def scenario():
            simulator.start_failure("cascading_failure", 0.05)
            await asyncio.sleep(0.2)
            return simulator.stop_failure()

        after = run(scenario())
        assert not simulator.active
        assert simulator.flags == SystemFlags()
        assert after["success"] is False

    def test_restart_leaves_no_stale_flags(self, simulator):
        async def scenario():
            simulator.start_failure("cascading_failure", 30)
            await asyncio.sleep(0.07)
            simulator.stop_failure()
            simulator.start_failure("payment_gateway", 30)
            await asyncio.sleep(0.1)
            flags = simulator.flags.to_dict()
            await simulator.shutdown()
            return flags

        flags = run(scenario())
        assert flags["payment_gateway_down"] is True
        assert not flags["cascading_failure"]
        assert not flags["product_service_degraded"]
        assert not flags["system_failure"]


# ── scenarios ─────────────────────────────────────────────────────────────────

class TestCascade:
    def test_stop_midway_clears_everything(self, simulator):
        async def scenario():
            simulator.start_failure("cascading_failure", 30)
            await asyncio.sleep(0.05)
            reached = simulator.state.cascade_stage
            simulator.stop_failure()
            await asyncio.sleep(0.1)
            return reached

        reached = run(scenario())
        assert reached >= 1
        assert simulator.flags == SystemFlags()
        assert simulator.state.cascade_stage == 0

    def test_stops_at_final_stage(self, simulator):
        async def scenario():
            simulator.start_failure("cascading_failure", 30)
            await asyncio.sleep(0.3)
            stage = simulator.state.cascade_stage
            flags = simulator.flags.to_dict()
            await simulator.shutdown()
            return stage, flags

        stage, flags = run(scenario())
        assert stage == FINAL_CASCADE_STAGE
        assert flags["system_failure"] and flags["reservation_service_down"]


class TestConnectionPool:
    def test_queue_overflow_is_critical(self, simulator, caplog):
        async def scenario():
            simulator.start_failure("connection_pool", 30)
            await asyncio.sleep(0.3)
            await simulator.shutdown()

        with caplog.at_level(logging.WARNING, logger="trafficsim.failures"):
            run(scenario())

        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert critical
        assert critical[0].event["error_code"] == "QUEUE_OVERFLOW"


class TestMemoryLeak:
    def test_pressure_escalates_then_releases(self, simulator):
        async def scenario():
            simulator.start_failure("memory_leak", 30)
            await asyncio.sleep(0.2)
            latency = simulator.flags.added_latency_ms
            blocks = len(simulator.state.leaked_blocks)
            simulator.stop_failure()
            return latency, blocks

        latency, blocks = run(scenario())
        assert latency == 3000
        # 4 KiB budget of 1 KiB blocks
        assert blocks == 4
        assert simulator.flags.added_latency_ms == 0
        assert simulator.state.leaked_blocks == []


class TestDataCorruption:
    def test_corrupt_then_restore(self, simulator):
        store = simulator.data_store
        products_before = copy.deepcopy(store.products)
        orders_before = copy.deepcopy(store.orders)

        async def scenario():
            simulator.start_failure("data_corruption", 30)
            corrupted = copy.deepcopy(store.products), copy.deepcopy(store.orders)
            simulator.stop_failure()
            return corrupted

        products, orders = run(scenario())
        assert products[0]["price"] == -99.99
        assert products[1]["price"] == "CORRUPTED"
        assert products[2]["price"] is None
        assert products[3]["name"] is None
        assert "Buffer overflow" in products[3]["description"]
        assert math.isnan(orders[0]["total"]) and orders[0]["items"] is None
        assert math.isnan(orders[3]["total"])
        assert orders[1] == orders_before[1]

        assert store.products == products_before
        assert store.orders == orders_before
        assert not simulator.flags.data_corrupted

    def test_nothing_to_corrupt(self, fast_config):
        store = DataStore(products=[{"id": "1", "price": 5.0}], orders=[])
        simulator = FailureSimulator(store, fast_config.failures)

        async def scenario():
            result = simulator.start_failure("data_corruption", 30)
            corrupted = simulator.flags.data_corrupted
            await simulator.shutdown()
            return result, corrupted

        result, corrupted = run(scenario())
        assert result["success"] is True
        assert corrupted is False
        assert store.products == [{"id": "1", "price": 5.0}]


# ── validation and flags ──────────────────────────────────────────────────────

class TestValidation:
    def test_valid_request(self):
        assert validate_failure_request("memory_leak", 60) == (FailureScenario.MEMORY_LEAK, 60)

    @pytest.mark.parametrize("scenario,duration", [
        ("meteor_strike", 60),
        ("memory_leak", 5),
        ("memory_leak", 301),
        ("memory_leak", "60"),
        ("memory_leak", True),
        ("memory_leak", None),
    ])
    def test_invalid_request(self, scenario, duration):
        with pytest.raises(ValueError):
            validate_failure_request(scenario, duration)

    def test_bounds_from_config(self):
        config = FailureConfig(min_duration=1, max_duration=5)
        assert validate_failure_request("connection_pool", 1, config)[1] == 1
        with pytest.raises(ValueError):
            validate_failure_request("connection_pool", 6, config)


class TestSystemFlags:
    def test_is_failure_active(self):
        flags = SystemFlags(payment_gateway_down=True)
        assert flags.is_failure_active("payment")
        assert not flags.is_failure_active("db_pool")
        assert flags.is_failure_active()

    def test_reset(self):
        flags = SystemFlags(memory_leaking=True, added_latency_ms=3000, system_failure=True)
        flags.reset()
        assert flags == SystemFlags()
        assert not flags.is_failure_active()
