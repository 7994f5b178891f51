"""
Traffic manager
===============
Supervises a pool of virtual users: one asyncio task per user, gated by a
semaphore, all sharing one aiohttp ClientSession. A run is either a fixed
batch or continuous, where a spawner task holds the pool near a target size
shaped by a timing profile (steady, peak, low, burst, normal).
"""

import asyncio
import logging
import random
import statistics
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, List, Optional, Tuple

import aiohttp

from trafficsim.config import SimulatorConfig, TrafficConfig
from trafficsim.data_store import DataStore
from trafficsim.errors import ConfigError, SimulationError
from trafficsim.journeys import Journey, JourneyMix, apply_journey_mix, select_weighted_journey
from trafficsim.telemetry import tracing_enabled
from trafficsim.virtual_user import UserState, VirtualUser

logger = logging.getLogger(__name__)

RECENT_LIMIT = 50


# =============================================================================
# METRICS
# =============================================================================

@dataclass
class TrafficStats:
    """Aggregate outcome of one traffic run."""
    sessions_started: int = 0
    sessions_completed: int = 0
    sessions_failed: int = 0
    sessions_aborted: int = 0
    sessions_bounced: int = 0

    checkouts_completed: int = 0
    checkouts_abandoned: int = 0
    orders_created: int = 0
    reservations_made: int = 0
    http_failures: int = 0

    journey_counts: Dict[str, int] = field(default_factory=dict)
    session_durations: List[float] = field(default_factory=list)

    start_time: float = 0
    end_time: float = 0

    @property
    def sessions_finished(self) -> int:
        return (self.sessions_completed + self.sessions_failed
                + self.sessions_aborted + self.sessions_bounced)

    @property
    def duration(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time if self.start_time else 0.0

    @property
    def average_session_duration(self) -> float:
        return statistics.mean(self.session_durations) if self.session_durations else 0.0

    @property
    def bounce_rate(self) -> float:
        if self.sessions_finished == 0:
            return 0.0
        return self.sessions_bounced / self.sessions_finished * 100

    @property
    def conversion_rate(self) -> float:
        if self.sessions_finished == 0:
            return 0.0
        return self.orders_created / self.sessions_finished * 100

    def record(self, user: VirtualUser):
        if user.state is UserState.COMPLETED:
            self.sessions_completed += 1
        elif user.state is UserState.FAILED:
            self.sessions_failed += 1
        elif user.state is UserState.BOUNCED:
            self.sessions_bounced += 1
        else:
            self.sessions_aborted += 1

        self.checkouts_completed += user.completed_checkouts
        self.checkouts_abandoned += user.failed_checkouts
        self.orders_created += user.orders_created
        self.reservations_made += user.reservations_made
        self.http_failures += user.http_failures
        self.session_durations.append(user.duration_s)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": {
                "started": self.sessions_started,
                "completed": self.sessions_completed,
                "failed": self.sessions_failed,
                "aborted": self.sessions_aborted,
                "bounced": self.sessions_bounced,
            },
            "funnel": {
                "checkouts_completed": self.checkouts_completed,
                "checkouts_abandoned": self.checkouts_abandoned,
                "orders_created": self.orders_created,
                "reservations_made": self.reservations_made,
                "conversion_rate": round(self.conversion_rate, 2),
            },
            "http_failures": self.http_failures,
            "journeys": dict(self.journey_counts),
            "average_session_duration_s": round(self.average_session_duration, 3),
            "bounce_rate": round(self.bounce_rate, 2),
            "duration_s": round(self.duration, 3),
        }




# =============================================================================
# SPAWN TIMING
# =============================================================================

# (min interval factor, max interval factor, target adjustment)
TIMING_PROFILES: Dict[str, Tuple[float, float, float]] = {
    "steady": (0.5, 0.7, 1.0),
    "peak": (0.3, 0.5, 1.5),
    "low": (2.0, 3.0, 0.6),
    "normal": (1.0, 1.0, 1.0),
}
BURST_ON = (0.1, 0.2, 2.0)
BURST_OFF = (4.0, 6.0, 0.3)
BURST_PROBABILITY = 0.3
MAX_TARGET_ADJUSTMENT = 2.0
TARGET_VARIANCE = 2

UPDATABLE_TRAFFIC_SETTINGS = {
    "target_concurrent_users": (int,),
    "spawn_interval_min": (int, float),
    "spawn_interval_max": (int, float),
    "traffic_timing": (str,),
    "burst_spawn_interval": (int, float),
    "bounce_rate": (int, float),
}


@dataclass(frozen=True)
class SpawnWindow:
    """Spawn gap bounds in seconds plus the multiplier applied to the target."""
    min_s: float
    max_s: float
    target_adjustment: float

    def adjusted_target(self, target: int) -> int:
        return int(target * self.target_adjustment + 0.5)


def spawn_window(traffic: TrafficConfig, rng: random.Random) -> SpawnWindow:
    """Scale the configured spawn interval by the timing profile.

    "burst" re-rolls on every call: 30% of the time it spawns fast toward a
    doubled target, otherwise it idles toward a reduced one.
    """
    if traffic.traffic_timing == "burst":
        factors = BURST_ON if rng.random() < BURST_PROBABILITY else BURST_OFF
    else:
        factors = TIMING_PROFILES[traffic.traffic_timing]
    min_factor, max_factor, adjustment = factors
    return SpawnWindow(traffic.spawn_interval_min * min_factor,
                       traffic.spawn_interval_max * max_factor,
                       adjustment)


def next_spawn_delay(active: int, target: int, timing: str, window: SpawnWindow,
                     rng: random.Random) -> Tuple[float, str]:
    """Seconds until the next spawn attempt, and the reason."""
    adjusted = window.adjusted_target(target)
    if timing == "steady":
        if active < adjusted:
            return window.min_s, f"Maintaining steady target ({active} < {adjusted})"
        if active > adjusted:
            return window.max_s * 1.5, f"Over steady target ({active} > {adjusted})"
        return window.min_s * 1.5, f"At steady target ({active} = {adjusted})"

    low, high = max(1, adjusted - TARGET_VARIANCE), adjusted + TARGET_VARIANCE
    if active < low:
        return window.min_s, f"Need users ({active} < {low})"
    if active >= high:
        return window.max_s * 2, f"At capacity ({active} >= {high})"
    return rng.uniform(window.min_s, window.max_s), f"Normal range ({active} in {low}-{high})"


def spawn_ceiling(target: int, timing: str, window: SpawnWindow) -> int:
    """Most live users a spawn may bring the pool up to."""
    adjusted = window.adjusted_target(target)
    return adjusted if timing == "steady" else adjusted + TARGET_VARIANCE


# =============================================================================
# MANAGER
# =============================================================================

class TrafficManager:
    """Spawns, tracks and aborts virtual users.

    Two modes share one pool: ``start`` runs a fixed batch of users, and
    ``start_continuous`` keeps a spawner task topping the pool up toward a
    target until it is stopped.
    """

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        base_url: Optional[str] = None,
        tracer_provider=None,
        products: Optional[List[Dict[str, Any]]] = None,
        data_store: Optional[DataStore] = None,
    ):
        config = config or SimulatorConfig()
        if base_url:
            config = replace(config, http=replace(config.http, base_url=base_url))
        self.config = config
        self.tracer_provider = tracer_provider
        self.data_store = data_store
        self.products = products
        self.rng = random.Random(config.traffic.seed)

        self.users: Dict[str, VirtualUser] = {}
        self.stats = TrafficStats()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=RECENT_LIMIT)
        self._session: Optional[aiohttp.ClientSession] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._spawner: Optional[asyncio.Task] = None
        self._journeys: List[Journey] = []
        self._user_counter = 0

    @property
    def base_url(self) -> str:
        return self.config.http.base_url

    @property
    def spawning(self) -> bool:
        return self._spawner is not None and not self._spawner.done()

    @property
    def running(self) -> bool:
        return self.spawning or any(not task.done() for task in self._tasks.values())

    @property
    def active_count(self) -> int:
        return sum(1 for user in self.users.values() if not user.finished)

    def _catalog(self) -> List[Dict[str, Any]]:
        if self.products is not None:
            return [dict(p) for p in self.products]
        if self.data_store is not None:
            return self.data_store.product_catalog()
        return DataStore().product_catalog()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def _open_run(self, journey_mix: JourneyMix, limit: int):
        if self.running:
            raise SimulationError("Traffic is already running; stop it first")
        journeys = apply_journey_mix(journey_mix)

        if not tracing_enabled(self.tracer_provider):
            logger.warning("OpenTelemetry tracer provider not initialized; spans will not be exported")

        await self.close()
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.http.timeout),
            connector=aiohttp.TCPConnector(limit=limit * 2),
        )
        self._semaphore = asyncio.Semaphore(limit)
        self._journeys = journeys
        self._spawner = None
        self.users = {}
        self._tasks = {}
        self.stats = TrafficStats(start_time=time.time())

    def _spawn(self) -> VirtualUser:
        self._user_counter += 1
        user_id = f"virtual-user-{self._user_counter}"
        journey = select_weighted_journey(self._journeys, self.rng)
        user = VirtualUser(
            user_id,
            journey,
            self._session,
            self._catalog(),
            self.config,
            tracer_provider=self.tracer_provider,
            rng=random.Random(self.rng.getrandbits(64)),
        )
        bounce_rate = self.config.traffic.bounce_rate
        bounce = bounce_rate > 0 and self.rng.random() < bounce_rate

        self.users[user_id] = user
        self.stats.sessions_started += 1
        self.stats.journey_counts[journey.name] = self.stats.journey_counts.get(journey.name, 0) + 1
        self._tasks[user_id] = asyncio.create_task(self._run_user(user, bounce))
        return user

    async def start(self, count: int, journey_mix: JourneyMix = None,
                    concurrency_limit: Optional[int] = None) -> List[str]:
        """Create `count` users and schedule them. Returns their session ids."""
        if count < 1:
            raise ConfigError("User count must be >= 1")
        limit = self.config.traffic.concurrency_limit if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ConfigError("Concurrency limit must be >= 1")
        await self._open_run(journey_mix, limit)

        session_ids = [self._spawn().session_id for _ in range(count)]
        logger.info("🚀 Started %d virtual users (concurrency %d) against %s",
                    count, limit, self.base_url)
        return session_ids

    async def start_continuous(self, target: Optional[int] = None, journey_mix: JourneyMix = None,
                               timing: Optional[str] = None):
        """Keep about `target` users live until stop_spawning() or stop_all()."""
        changes = {}
        if target is not None:
            changes["target_concurrent_users"] = target
        if timing is not None:
            changes["traffic_timing"] = timing
        traffic = self._checked_traffic(changes)

        ceiling = int(traffic.target_concurrent_users * MAX_TARGET_ADJUSTMENT + 0.5) + TARGET_VARIANCE
        await self._open_run(journey_mix, ceiling)
        self.config = replace(self.config, traffic=traffic)
        self._spawner = asyncio.create_task(self._spawn_loop(initial_burst=True))

        logger.info("🚦 Continuous traffic: target %d, timing %s, spawn interval %.1f-%.1fs against %s",
                    traffic.target_concurrent_users, traffic.traffic_timing,
                    traffic.spawn_interval_min, traffic.spawn_interval_max, self.base_url)

    async def _initial_burst(self):
        traffic = self.config.traffic
        window = spawn_window(traffic, self.rng)
        needed = window.adjusted_target(traffic.target_concurrent_users) - self.active_count
        if needed <= 0:
            logger.debug("🎯 Already at target, skipping burst")
            return
        logger.info("🚀 Initial burst: spawning %d users", needed)
        for i in range(needed):
            if i:
                await asyncio.sleep(traffic.burst_spawn_interval)
            self._spawn()

    async def _spawn_loop(self, initial_burst: bool):
        if initial_burst:
            await self._initial_burst()
        while True:
            self._forget_finished()
            traffic = self.config.traffic
            target, timing = traffic.target_concurrent_users, traffic.traffic_timing
            window = spawn_window(traffic, self.rng)
            delay, reason = next_spawn_delay(self.active_count, target, timing, window, self.rng)
            logger.debug("⏰ Next spawn in %.2fs - %s (timing %s)", delay, reason, timing)
            await asyncio.sleep(delay)

            if self.active_count < spawn_ceiling(target, timing, window):
                self._spawn()

    def _forget_finished(self):
        # Finished users are already in the stats and the recent list
        for user_id in [uid for uid, task in self._tasks.items() if task.done()]:
            del self._tasks[user_id]
            del self.users[user_id]

    def _checked_traffic(self, changes: Dict[str, Any]) -> TrafficConfig:
        for name, value in changes.items():
            types = UPDATABLE_TRAFFIC_SETTINGS.get(name)
            if types is None:
                raise ConfigError(f"Unknown traffic setting '{name}'")
            if isinstance(value, bool) or not isinstance(value, types):
                raise ConfigError(f"Invalid value for traffic setting '{name}': {value!r}")
        traffic = replace(self.config.traffic, **changes)
        replace(self.config, traffic=traffic).validate()
        return traffic

    async def update_traffic_config(self, **changes) -> TrafficConfig:
        """Apply traffic settings. A live spawner restarts with them; users keep running."""
        traffic = self._checked_traffic(changes)
        self.config = replace(self.config, traffic=traffic)
        if self.spawning:
            previous = self._spawner
            previous.cancel()
            self._spawner = asyncio.create_task(self._spawn_loop(initial_burst=False))
            await asyncio.gather(previous, return_exceptions=True)
            logger.info("🔄 Continuous traffic restarted: target %d, timing %s",
                        traffic.target_concurrent_users, traffic.traffic_timing)
        return traffic

    async def _run_user(self, user: VirtualUser, bounce: bool):
        try:
            async with self._semaphore:
                if bounce:
                    await user.bounce()
                else:
                    await user.execute_journey()
        except Exception:
            logger.exception("Virtual user %s failed", user.user_id)
        finally:
            # A user cancelled while still queued never opened its journey.
            if not user.tracker.ended:
                user.tracker.end_session("aborted")
                user.state, user.end_reason = UserState.ABORTED, "aborted"
            self.stats.record(user)
            self._recent.append(self._summary(user))

    def stop_spawning(self) -> bool:
        """Cancel the continuous spawner. Live users finish their journeys."""
        if not self.spawning:
            return False
        self._spawner.cancel()
        logger.info("🛑 Continuous spawning stopped; %d users finishing", self.active_count)
        return True

    def stop_all(self) -> int:
        """Stop spawning and abort every live user; each finishes its current step and closes its session."""
        self.stop_spawning()
        live = [user for user in self.users.values() if not user.finished]
        for user in live:
            user.abort()
        if live:
            logger.info("🛑 Aborting %d virtual users", len(live))
        return len(live)

    async def wait(self) -> TrafficStats:
        """Wait for the current run to end, then release that run's HTTP session.

        A continuous run ends once its spawner is stopped and its users finish.
        """
        session, stats, tasks = self._session, self.stats, self._tasks
        while self._session is session and self.spawning:
            (outcome,) = await asyncio.gather(self._spawner, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.error("Continuous spawner failed: %r", outcome)
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        stats.end_time = time.time()

        if session is not None and not session.closed:
            await session.close()
        if self._session is session:
            self._session = None
        return stats

    async def run(self, count: int, journey_mix: JourneyMix = None,
                  concurrency_limit: Optional[int] = None) -> TrafficStats:
        await self.start(count, journey_mix, concurrency_limit)
        return await self.wait()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # =========================================================================
    # REPORTING
    # =========================================================================

    def get_activity_snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Per live user: journey, step position and what it is doing now."""
        snapshot = {}
        for user_id, user in self.users.items():
            if user.finished:
                continue
            snapshot[user_id] = {
                "journey": user.journey.name,
                "step_index": user.current_step,
                "total_steps": len(user.journey.steps),
                "progress": user.progress(),
                "activity": user.activity if user.state is not UserState.IDLE else "queued",
                "state": user.state.value,
                "customer": user.customer.full_name,
                "session_id": user.session_id,
                "trace_id": user.trace_id,
                "cart_items": user.cart_items(),
            }
        return snapshot

    def recently_completed(self) -> List[Dict[str, Any]]:
        return list(self._recent)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.to_dict()
        stats["active_users"] = self.active_count
        stats["running"] = self.running
        stats["continuous"] = self.spawning
        if self.spawning:
            stats["target_users"] = self.config.traffic.target_concurrent_users
            stats["traffic_timing"] = self.config.traffic.traffic_timing
        return stats

    @staticmethod
    def _summary(user: VirtualUser) -> Dict[str, Any]:
        return {
            "user_id": user.user_id,
            "journey": user.journey.name,
            "customer": user.customer.full_name,
            "session_id": user.session_id,
            "trace_id": user.trace_id,
            "end_reason": user.end_reason,
            "state": user.state.value,
            "duration_s": round(user.duration_s, 3),
            "checkouts": user.completed_checkouts,
            "orders": user.orders_created,
            "completed_at": time.time(),
        }
