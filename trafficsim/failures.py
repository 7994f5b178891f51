"""
Failure simulator
=================
Injects one named failure scenario at a time into shared system state.

Recurring behaviour runs as asyncio tasks whose handles are kept and cancelled
synchronously by stop_failure(), before any flag is cleared. Manual stop and
the duration-based auto-stop go through the same stop_failure() call.

Usage::

    simulator = FailureSimulator(data_store, FailureConfig())
    simulator.start_failure("cascading_failure", 30)
    ...
    simulator.stop_failure()
"""

import asyncio
import logging
import random
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from trafficsim.config import FailureConfig
from trafficsim.data_store import DataStore

logger = logging.getLogger(__name__)


class FailureScenario(Enum):
    CONNECTION_POOL = "connection_pool"
    PAYMENT_GATEWAY = "payment_gateway"
    MEMORY_LEAK = "memory_leak"
    CASCADING_FAILURE = "cascading_failure"
    DATA_CORRUPTION = "data_corruption"


SCENARIO_NAMES = [s.value for s in FailureScenario]


@dataclass
class SystemFlags:
    """Process-wide failure flags read by request handlers."""
    db_pool_exhausted: bool = False
    payment_gateway_down: bool = False
    memory_leaking: bool = False
    cascading_failure: bool = False
    data_corrupted: bool = False
    added_latency_ms: int = 0
    product_service_degraded: bool = False
    product_service_down: bool = False
    order_service_down: bool = False
    reservation_service_down: bool = False
    system_failure: bool = False

    def is_failure_active(self, kind: Optional[str] = None) -> bool:
        by_kind = {
            "db_pool": self.db_pool_exhausted,
            "payment": self.payment_gateway_down,
            "memory": self.memory_leaking,
            "cascade": self.cascading_failure,
            "data": self.data_corrupted,
        }
        if kind in by_kind:
            return by_kind[kind]
        return any(by_kind.values())

    def reset(self):
        for f in fields(self):
            setattr(self, f.name, f.default)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FailureState:
    active: bool = False
    scenario: Optional[FailureScenario] = None
    start_time: Optional[float] = None  # epoch seconds
    duration: float = 0.0  # seconds
    cascade_stage: int = 0
    active_connections: int = 0
    max_connections: int = 3
    connection_queue: List[float] = field(default_factory=list)
    payment_retries: int = 0
    leaked_blocks: List[bytearray] = field(default_factory=list)
    # (record, field name, had field, original value)
    corruption_snapshot: List[Tuple[Dict[str, Any], str, bool, Any]] = field(default_factory=list)


# stage -> (flag, level, message, event fields)
CASCADE_STAGES = {
    1: ("product_service_degraded", logging.WARNING, "Product service degradation detected",
        {"service": "products", "response_time_ms": 5000, "error_rate": 0.3, "status": "degraded"}),
    2: ("product_service_down", logging.ERROR, "Product service failure",
        {"service": "products", "status": "DOWN", "error_code": "SERVICE_UNAVAILABLE",
         "severity": "high", "impact": "menu_unavailable"}),
    3: ("order_service_down", logging.ERROR, "Order service failure - cascade from product service",
        {"service": "orders", "dependency": "products", "root_cause": "product_service_failure",
         "error_code": "CASCADE_FAILURE", "severity": "high", "impact": "checkout_unavailable"}),
    4: ("reservation_service_down", logging.CRITICAL, "Reservation service failure - cascade effect",
        {"service": "reservations", "affected_services": ["products", "orders", "reservations"],
         "error_code": "CASCADE_FAILURE", "severity": "critical"}),
    5: ("system_failure", logging.CRITICAL, "CRITICAL: Complete system failure",
        {"services": ["products", "orders", "reservations", "health"], "error_code": "SYSTEM_FAILURE",
         "severity": "critical", "alert": "immediate_action_required"}),
}
FINAL_CASCADE_STAGE = max(CASCADE_STAGES)


def validate_failure_request(scenario: Any, duration: Any,
                             config: Optional[FailureConfig] = None) -> Tuple[FailureScenario, int]:
    """Check an operator request. Raises ValueError with a readable message."""
    config = config or FailureConfig()
    try:
        parsed = FailureScenario(scenario)
    except ValueError:
        raise ValueError(
            f"Invalid scenario '{scenario}'. Must be one of: {', '.join(SCENARIO_NAMES)}"
        ) from None
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        raise ValueError("Duration must be a number of seconds")
    if not config.min_duration <= duration <= config.max_duration:
        raise ValueError(
            f"Duration must be between {config.min_duration} and {config.max_duration} seconds"
        )
    return parsed, int(duration)


def _log(level: int, message: str, **event):
    logger.log(level, message, extra={"event": event})


class FailureSimulator:
    """Owns the failure state and flags; at most one scenario is active."""

    def __init__(self, data_store: Optional[DataStore] = None,
                 config: Optional[FailureConfig] = None,
                 flags: Optional[SystemFlags] = None):
        self.data_store = data_store if data_store is not None else DataStore()
        self.config = config or FailureConfig()
        self.flags = flags if flags is not None else SystemFlags()
        self.state = FailureState(max_connections=self.config.max_connections)
        self._started_monotonic = 0.0
        self._timers: List[asyncio.Task] = []
        self._auto_stop: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.state.active

    # =========================================================================
    # START / STOP
    # =========================================================================

    def start_failure(self, scenario: Any, duration_seconds: float) -> Dict[str, Any]:
        """Activate a scenario. Must be called from a running event loop."""
        if self.state.active:
            return {
                "success": False,
                "error": "A failure simulation is already active",
                "current_scenario": self.state.scenario.value,
            }
        try:
            parsed = FailureScenario(scenario)
        except ValueError:
            return {"success": False, "error": f"Unknown failure scenario '{scenario}'"}
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)):
            return {"success": False, "error": "Duration must be a number of seconds"}
        if duration_seconds <= 0:
            return {"success": False, "error": "Duration must be positive"}

        self.state.active = True
        self.state.scenario = parsed
        self.state.start_time = time.time()
        self.state.duration = float(duration_seconds)
        self._started_monotonic = time.monotonic()

        expected_end = self.state.start_time + self.state.duration
        _log(logging.WARNING, "System failure simulation started",
             scenario=parsed.value, duration=duration_seconds,
             start_time=_iso(self.state.start_time), expected_end_time=_iso(expected_end))

        starters: Dict[FailureScenario, Callable[[], None]] = {
            FailureScenario.CONNECTION_POOL: self._start_connection_pool,
            FailureScenario.PAYMENT_GATEWAY: self._start_payment_gateway,
            FailureScenario.MEMORY_LEAK: self._start_memory_leak,
            FailureScenario.CASCADING_FAILURE: self._start_cascading_failure,
            FailureScenario.DATA_CORRUPTION: self._start_data_corruption,
        }
        starters[parsed]()
        self._auto_stop = asyncio.get_running_loop().create_task(self._auto_stop_after(self.state.duration))

        return {
            "success": True,
            "scenario": parsed.value,
            "start_time": self.state.start_time,
            "duration": self.state.duration,
            "expected_end_time": expected_end,
        }

    def stop_failure(self) -> Dict[str, Any]:
        """Cancel timers, clear every flag, restore data and reset state."""
        if not self.state.active:
            return {"success": False, "error": "No failure simulation is active"}

        self._cancel_timers()

        scenario = self.state.scenario
        run_time = time.monotonic() - self._started_monotonic
        self.flags.reset()
        self._restore_corrupted_data()
        self._release_leaked_memory()
        self.state = FailureState(max_connections=self.config.max_connections)

        _log(logging.INFO, "System failure simulation stopped",
             scenario=scenario.value, run_time=round(run_time, 3))
        return {
            "success": True,
            "scenario": scenario.value,
            "run_time": round(run_time, 3),
            "stopped": datetime.now(timezone.utc).isoformat(),
        }

    def get_failure_status(self) -> Dict[str, Any]:
        if not self.state.active:
            return {"active": False, "scenario": None}

        elapsed = time.monotonic() - self._started_monotonic
        duration = self.state.duration
        return {
            "active": True,
            "scenario": self.state.scenario.value,
            "start_time": self.state.start_time,
            "elapsed": round(elapsed, 3),
            "remaining": round(max(0.0, duration - elapsed), 3),
            "duration": duration,
            "progress": min(100, round(elapsed / duration * 100)) if duration else 100,
            "details": {
                **self.flags.to_dict(),
                "cascade_stage": self.state.cascade_stage,
                "active_connections": self.state.active_connections,
                "max_connections": self.state.max_connections,
                "connection_queue_length": len(self.state.connection_queue),
                "leaked_blocks": len(self.state.leaked_blocks),
                "corrupted_fields": len(self.state.corruption_snapshot),
            },
        }

    async def shutdown(self):
        """Stop any active scenario and let cancelled timers finish unwinding."""
        tasks = list(self._timers)
        if self._auto_stop is not None:
            tasks.append(self._auto_stop)
        if self.state.active:
            self.stop_failure()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # TIMERS
    # =========================================================================

    def _every(self, interval: float, tick: Callable[[], bool]):
        """Run `tick` every `interval` seconds until it returns False or is cancelled."""
        async def loop():
            while True:
                await asyncio.sleep(interval)
                if not tick():
                    return

        self._timers.append(asyncio.get_running_loop().create_task(loop()))

    async def _auto_stop_after(self, seconds: float):
        await asyncio.sleep(seconds)
        scenario = self.state.scenario
        result = self.stop_failure()
        if result["success"]:
            _log(logging.INFO, "Failure simulation auto-stopped after duration",
                 scenario=scenario.value, duration=seconds, run_time=result["run_time"])

    def _cancel_timers(self):
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        handles = self._timers + ([self._auto_stop] if self._auto_stop else [])
        for task in handles:
            if task is not current and not task.done():
                task.cancel()
        self._timers = []
        self._auto_stop = None

    # =========================================================================
    # CONNECTION POOL
    # =========================================================================

    def _start_connection_pool(self):
        self.flags.db_pool_exhausted = True
        self.state.active_connections = self.state.max_connections
        _log(logging.ERROR, "Database connection pool exhausted",
             pool_size=self.state.max_connections, active_connections=self.state.active_connections,
             queue_length=0, error_code="POOL_EXHAUSTED", severity="high")
        self._every(self.config.pool_queue_interval, self._connection_pool_tick)

    def _connection_pool_tick(self) -> bool:
        queue = self.state.connection_queue
        queue.append(time.time())
        _log(logging.WARNING, "Database pool metrics",
             metric_name="db_pool_queue_size", value=len(queue), unit="connections",
             pool_utilization=100, active_connections=self.state.active_connections,
             max_connections=self.state.max_connections)
        if len(queue) > self.config.queue_overflow_threshold:
            _log(logging.CRITICAL, "Critical: Database connection queue overflow",
                 queue_size=len(queue), wait_time_ms=int((time.time() - queue[0]) * 1000),
                 error_code="QUEUE_OVERFLOW", severity="critical")
        return True

    # =========================================================================
    # PAYMENT GATEWAY
    # =========================================================================

    def _start_payment_gateway(self):
        self.flags.payment_gateway_down = True
        _log(logging.ERROR, "Payment gateway connection failed",
             gateway="stripe", endpoint="https://api.stripe.com/v1/charges",
             error="ECONNREFUSED", error_code="GATEWAY_UNREACHABLE", severity="high")
        self._every(self.config.payment_retry_interval, self._payment_gateway_tick)

    def _payment_gateway_tick(self) -> bool:
        self.state.payment_retries += 1
        _log(logging.WARNING, "Payment gateway retry attempt failed",
             gateway="stripe", retry_count=self.state.payment_retries,
             last_error="Connection timeout", next_retry_s=self.config.payment_retry_interval)
        _log(logging.ERROR, "Payment failures metric",
             metric_name="payment_gateway_failures", value=1, unit="count",
             gateway="stripe", error_type="connection_timeout")
        return True

    # =========================================================================
    # MEMORY LEAK
    # =========================================================================

    def _start_memory_leak(self):
        self.flags.memory_leaking = True
        self.state.leaked_blocks = []
        self._every(self.config.memory_leak_interval, self._memory_leak_tick)

    def _retained_bytes(self) -> int:
        return sum(len(block) for block in self.state.leaked_blocks)

    def _memory_leak_tick(self) -> bool:
        cfg = self.config
        # Allocation stops at the budget; pressure logging continues.
        if self._retained_bytes() < cfg.heap_budget_bytes:
            self.state.leaked_blocks.append(bytearray(cfg.leak_block_bytes))

        retained = self._retained_bytes()
        blocks = len(self.state.leaked_blocks)
        heap_pct = round(retained / cfg.heap_budget_bytes * 100)
        _log(logging.WARNING, "Memory usage increasing",
             metric_name="memory_heap_used", value=retained, unit="bytes",
             heap_total=cfg.heap_budget_bytes, heap_percentage=heap_pct, leak_block_count=blocks)

        if 60 < heap_pct <= 80:
            _log(logging.WARNING, "Memory usage high",
                 percentage=heap_pct, threshold="warning")
        elif 80 < heap_pct <= 90:
            self.flags.added_latency_ms = 1000
            _log(logging.ERROR, "Critical memory pressure",
                 percentage=heap_pct, threshold="critical", severity="high")
        elif heap_pct > 90:
            self.flags.added_latency_ms = 3000
            _log(logging.CRITICAL, "CRITICAL: Out of memory imminent",
                 percentage=heap_pct, threshold="fatal", severity="critical")

        if blocks and blocks % cfg.gc_pressure_every == 0:
            _log(logging.WARNING, "Garbage collection pressure detected",
                 metric="gc_pause_time", value=150 + blocks * 10, unit="milliseconds",
                 gc_type="major", heap_percentage=heap_pct)
        return True

    def _release_leaked_memory(self):
        count = len(self.state.leaked_blocks)
        if count:
            freed = self._retained_bytes()
            self.state.leaked_blocks.clear()
            _log(logging.INFO, "Memory leak blocks released",
                 blocks_cleared=count, memory_freed=freed)

    # =========================================================================
    # CASCADING FAILURE
    # =========================================================================

    def _start_cascading_failure(self):
        self.flags.cascading_failure = True
        self.state.cascade_stage = 0
        self._every(self.config.cascade_stage_interval, self._cascade_tick)

    def _cascade_tick(self) -> bool:
        self.state.cascade_stage += 1
        stage = self.state.cascade_stage
        flag, level, message, event = CASCADE_STAGES[stage]
        setattr(self.flags, flag, True)
        _log(level, message, cascade_stage=stage, **event)
        return stage < FINAL_CASCADE_STAGE

    # =========================================================================
    # DATA CORRUPTION
    # =========================================================================

    def _corrupt(self, record: Dict[str, Any], name: str, value: Any):
        self.state.corruption_snapshot.append((record, name, name in record, record.get(name)))
        record[name] = value

    def _start_data_corruption(self):
        products = self.data_store.products
        orders = self.data_store.orders

        if len(products) <= 2 and not orders:
            _log(logging.ERROR, "Data corruption skipped: no corruptible records",
                 product_count=len(products), order_count=len(orders))
            return

        self.flags.data_corrupted = True

        if len(products) > 2:
            self._corrupt(products[0], "price", -99.99)
            self._corrupt(products[1], "price", "CORRUPTED")
            self._corrupt(products[2], "price", None)
            _log(logging.ERROR, "Data corruption detected in products table",
                 corrupted_fields=["price"], affected_ids=[p.get("id") for p in products[:3]],
                 corruption_type="invalid_values", severity="high")

            if len(products) > 3:
                self._corrupt(products[3], "name", None)
                self._corrupt(products[3], "description",
                              f"🚫 ERROR: Buffer overflow at 0x{random.getrandbits(32):08x}")
                _log(logging.ERROR, "Additional data corruption in product metadata",
                     product_id=products[3].get("id"), corrupted_fields=["name", "description"],
                     error_pattern="buffer_overflow_simulation")

        corrupted_orders = []
        for index, order in enumerate(orders):
            if index % 3 == 0:
                original_total = order.get("total")
                self._corrupt(order, "total", float("nan"))
                self._corrupt(order, "items", None)
                corrupted_orders.append(order.get("id"))
                _log(logging.ERROR, "Order data integrity violation",
                     order_id=order.get("id"), violations=["total_is_NaN", "items_is_null"],
                     customer_id=order.get("customerEmail", "unknown"),
                     original_total=original_total, severity="high")
        if corrupted_orders:
            _log(logging.ERROR, "Batch data corruption detected in orders",
                 affected_order_count=len(corrupted_orders), order_ids=corrupted_orders,
                 corruption_type="data_integrity_violation")

    def _restore_corrupted_data(self):
        snapshot = self.state.corruption_snapshot
        if not snapshot:
            return
        # Reverse order so a field corrupted twice ends at its first value.
        for record, name, had_field, original in reversed(snapshot):
            if had_field:
                record[name] = original
            else:
                record.pop(name, None)
        _log(logging.INFO, "Data restored after corruption simulation",
             restored_fields=len(snapshot))
        snapshot.clear()


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat()
