"""Exceptions raised by the simulation engine."""


class SimulationError(Exception):
    """Base class for simulation engine errors."""


class ConfigError(SimulationError):
    """Invalid configuration file or value."""


class SimulatedNetworkError(SimulationError):
    """Synthetic network failure injected to diversify the error-log corpus."""
