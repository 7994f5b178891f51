"""
Journey catalog
===============
Named, weighted templates of the steps a virtual user walks through, plus
weighted selection and think-time helpers.
"""

import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from trafficsim.errors import ConfigError

DEFAULT_THINK_TIME_MS = 3000


class StepAction(Enum):
    NAVIGATE = "navigate"
    BROWSE = "browse"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    CHECKOUT = "checkout"
    VIEW_DETAILS = "view_details"
    MAKE_RESERVATION = "make_reservation"


@dataclass(frozen=True)
class DurationRange:
    min_ms: int
    max_ms: int


@dataclass(frozen=True)
class Step:
    action: StepAction
    target: Optional[str] = None
    probability: Optional[float] = None  # None means always run
    duration: Optional[DurationRange] = None


@dataclass(frozen=True)
class Journey:
    name: str
    weight: float
    steps: Tuple[Step, ...]
    description: str = ""

    @property
    def slug(self) -> str:
        return self.name.lower().replace(" ", "_")

    def count(self, action: StepAction) -> int:
        return sum(1 for step in self.steps if step.action is action)


def _step(action: str, min_ms: int, max_ms: int, target: Optional[str] = None,
          probability: Optional[float] = None) -> Step:
    return Step(StepAction(action), target, probability, DurationRange(min_ms, max_ms))


# =============================================================================
# CATALOG
# =============================================================================

USER_JOURNEYS: Tuple[Journey, ...] = (
    Journey("Quick Buyer", 30, (
        _step("navigate", 3000, 8000, "/"),
        _step("navigate", 5000, 10000, "/menu"),
        _step("add_to_cart", 3000, 5000),
        _step("add_to_cart", 3000, 5000, probability=0.7),
        _step("checkout", 10000, 20000),
    ), "User who knows what they want and purchases quickly"),

    Journey("Browser", 40, (
        _step("navigate", 5000, 10000, "/"),
        _step("navigate", 8000, 15000, "/menu"),
        _step("browse", 15000, 45000),
        _step("view_details", 8000, 15000),
        _step("navigate", 5000, 10000, "/reservations"),
        _step("browse", 10000, 20000),
        _step("navigate", 3000, 5000, "/"),
    ), "User who browses extensively before leaving"),

    Journey("Researcher", 20, (
        _step("navigate", 3000, 5000, "/"),
        _step("navigate", 5000, 10000, "/menu"),
        _step("view_details", 10000, 20000),
        _step("view_details", 10000, 20000),
        _step("view_details", 10000, 20000),
        _step("add_to_cart", 3000, 5000, probability=0.5),
        _step("navigate", 5000, 10000, "/reservations"),
        _step("navigate", 3000, 5000, "/menu"),
        _step("add_to_cart", 3000, 5000, probability=0.5),
        _step("checkout", 15000, 25000, probability=0.3),
    ), "User who researches thoroughly before making a decision"),

    Journey("Reservation Maker", 10, (
        _step("navigate", 3000, 5000, "/"),
        _step("navigate", 3000, 5000, "/reservations"),
        _step("make_reservation", 15000, 30000),
        _step("navigate", 5000, 8000, "/menu"),
        _step("browse", 10000, 20000),
    ), "User focused on making a reservation"),

    Journey("Indecisive Shopper", 15, (
        _step("navigate", 5000, 8000, "/"),
        _step("navigate", 5000, 10000, "/menu"),
        _step("add_to_cart", 3000, 5000),
        _step("add_to_cart", 3000, 5000),
        _step("browse", 10000, 15000),
        _step("remove_from_cart", 2000, 3000),
        _step("add_to_cart", 3000, 5000),
        _step("view_details", 8000, 15000),
        _step("checkout", 15000, 25000, probability=0.4),
    ), "User who adds and removes items multiple times"),

    Journey("Complete Journey", 10, (
        _step("navigate", 5000, 8000, "/"),
        _step("navigate", 5000, 8000, "/menu"),
        _step("browse", 10000, 15000),
        _step("add_to_cart", 3000, 5000),
        _step("add_to_cart", 3000, 5000),
        _step("navigate", 3000, 5000, "/reservations"),
        _step("make_reservation", 15000, 25000, probability=0.8),
        _step("checkout", 15000, 25000),
    ), "User who completes a full purchase journey with reservation"),
)


# =============================================================================
# SELECTION
# =============================================================================

def select_weighted_journey(journeys: Sequence[Journey],
                            rng: Optional[random.Random] = None) -> Journey:
    """Pick a journey with probability proportional to its weight."""
    if not journeys:
        raise ConfigError("No journeys to select from")
    r = rng or random
    remaining = r.random() * sum(j.weight for j in journeys)
    for journey in journeys:
        remaining -= journey.weight
        if remaining <= 0:
            return journey
    return journeys[0]


def should_execute_step(step: Step, rng: Optional[random.Random] = None) -> bool:
    if step.probability is None:
        return True
    return (rng or random).random() < step.probability


def get_think_time(step: Step, rng: Optional[random.Random] = None) -> int:
    """Think time in ms, inflated 10-30% to model reading and deciding."""
    if step.duration is None:
        return DEFAULT_THINK_TIME_MS
    r = rng or random
    base = r.randint(step.duration.min_ms, step.duration.max_ms)
    return int(base * (1 + 0.1 + r.random() * 0.2))


def expected_duration_ms(journey: Journey) -> int:
    """Mean think time across steps, weighted by execution probability."""
    total = 0.0
    for step in journey.steps:
        p = 1.0 if step.probability is None else step.probability
        if step.duration is None:
            mean = DEFAULT_THINK_TIME_MS
        else:
            mean = (step.duration.min_ms + step.duration.max_ms) / 2 * 1.2
        total += p * mean
    return int(total)


# =============================================================================
# JOURNEY MIX
# =============================================================================

JOURNEY_PATTERNS = ("mixed", "buyers", "browsers", "researchers")


def _filter_pattern(pattern: str, journeys: Sequence[Journey]) -> List[Journey]:
    if pattern == "buyers":
        return [j for j in journeys
                if "buyer" in j.name.lower() or j.count(StepAction.CHECKOUT)]
    if pattern == "browsers":
        return [j for j in journeys
                if "browser" in j.name.lower() or not j.count(StepAction.CHECKOUT)]
    if pattern == "researchers":
        return [j for j in journeys
                if "researcher" in j.name.lower() or j.count(StepAction.VIEW_DETAILS) > 1]
    return list(journeys)


JourneyMix = Union[None, str, Sequence[float], Dict[str, float]]


def apply_journey_mix(mix: JourneyMix,
                      journeys: Sequence[Journey] = USER_JOURNEYS) -> List[Journey]:
    """
    Resolve an operator-supplied mix into a weighted journey list.

    Accepts None (catalog weights), a pattern name, a list of weights aligned
    with the catalog order, or a {journey name: weight} mapping. Journeys
    left with zero weight are dropped.
    """
    if mix is None:
        return list(journeys)

    if isinstance(mix, str):
        if mix not in JOURNEY_PATTERNS:
            raise ConfigError(f"Unknown journey pattern '{mix}' (expected one of {', '.join(JOURNEY_PATTERNS)})")
        selected = _filter_pattern(mix, journeys)
    elif isinstance(mix, dict):
        by_name = {j.name: j for j in journeys}
        unknown = set(mix) - set(by_name)
        if unknown:
            raise ConfigError(f"Unknown journeys in mix: {', '.join(sorted(unknown))}")
        selected = [replace(by_name[name], weight=weight) for name, weight in mix.items()]
    else:
        weights = list(mix)
        if len(weights) != len(journeys):
            raise ConfigError(f"Journey mix needs {len(journeys)} weights, got {len(weights)}")
        selected = [replace(j, weight=w) for j, w in zip(journeys, weights)]

    for journey in selected:
        if not isinstance(journey.weight, (int, float)) or journey.weight < 0:
            raise ConfigError(f"Invalid weight for '{journey.name}': {journey.weight!r}")

    selected = [j for j in selected if j.weight > 0]
    if not selected:
        raise ConfigError("Journey mix has no positive weights")
    return selected
