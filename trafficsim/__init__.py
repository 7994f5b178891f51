"""
🍕 trafficsim
=============
Synthetic restaurant traffic and failure injection for observability
pipelines.

Virtual users walk weighted journeys (browse, cart, checkout, reservations)
against a restaurant API. Every session is one OpenTelemetry trace, and every
log line carries its trace id. A failure simulator flips shared failure flags
and corrupts in-memory data on a timer, then restores everything on stop.

Requirements:
    pip install aiohttp faker rich opentelemetry-sdk opentelemetry-exporter-otlp-proto-http

Usage:
    python -m trafficsim run --base-url http://localhost:3001 --users 20
"""

__version__ = "1.0.0"

from trafficsim.config import SimulatorConfig, load_config
from trafficsim.data_store import DataStore
from trafficsim.errors import ConfigError, SimulatedNetworkError, SimulationError
from trafficsim.failures import FailureScenario, FailureSimulator, SystemFlags
from trafficsim.journeys import USER_JOURNEYS, Journey, Step, StepAction
from trafficsim.session import SessionTracker
from trafficsim.traffic import TrafficManager, TrafficStats
from trafficsim.virtual_user import HttpResult, UserState, VirtualUser

__all__ = [
    "ConfigError",
    "DataStore",
    "FailureScenario",
    "FailureSimulator",
    "HttpResult",
    "Journey",
    "SessionTracker",
    "SimulatedNetworkError",
    "SimulationError",
    "SimulatorConfig",
    "Step",
    "StepAction",
    "SystemFlags",
    "TrafficManager",
    "TrafficStats",
    "USER_JOURNEYS",
    "UserState",
    "VirtualUser",
    "load_config",
]
