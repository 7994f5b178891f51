"""
Session trace tracker
=====================
One trace per virtual user session:

    user_session                       (root)
      navigation_<path>                (replaced on each navigation)
        checkout_process / http_* / step_*   (operation spans)

The active span is handed out as an explicit Context value; nothing relies on
the ambient OpenTelemetry context.
"""

import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, Status, StatusCode, format_trace_id

from trafficsim.fake_data import BrowserFingerprint
from trafficsim.telemetry import get_tracer

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_session_id(rng: Optional[random.Random] = None) -> str:
    r = rng or random
    suffix = "".join(r.choice(_BASE36) for _ in range(9))
    return f"session-{int(time.time() * 1000)}-{suffix}"


class SessionTracker:
    """Owns the root session span and the current navigation span."""

    def __init__(self, user_id: Optional[str] = None, journey_name: Optional[str] = None,
                 fingerprint: Optional[BrowserFingerprint] = None,
                 tracer_provider=None, rng: Optional[random.Random] = None):
        self.tracer = get_tracer("restaurant-app-session", tracer_provider)
        self.session_id = generate_session_id(rng)
        self.page_views = 0
        self.interactions = 0
        self.total_interactions = 0
        self.ended = False
        self.current_path: Optional[str] = None

        self._session_start = time.monotonic()
        self._navigation_start = self._session_start
        self._navigation_span: Optional[Span] = None

        attributes: Dict[str, Any] = {
            "session.id": self.session_id,
            "session.start_time": _now_iso(),
            "app.version": "1.0.0",
            "app.environment": "demo",
        }
        if user_id is not None:
            attributes["user.id"] = user_id
        if journey_name is not None:
            attributes["user.journey.type"] = journey_name
        if fingerprint is not None:
            attributes.update(fingerprint.span_attributes())

        # Empty Context: every session is the root of its own trace.
        self._session_span = self.tracer.start_span("user_session", context=Context(),
                                                    attributes=attributes)
        self._session_context = trace.set_span_in_context(self._session_span)
        self.trace_id = format_trace_id(self._session_span.get_span_context().trace_id)

    @property
    def session_span(self) -> Span:
        return self._session_span

    @property
    def navigation_span(self) -> Optional[Span]:
        return self._navigation_span

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._session_start) * 1000)

    def active_context(self) -> Context:
        """Context whose current span is the active navigation (or the session)."""
        if self._navigation_span is not None:
            return trace.set_span_in_context(self._navigation_span, self._session_context)
        return self._session_context

    # =========================================================================
    # NAVIGATION
    # =========================================================================

    def _finish_navigation(self):
        if self._navigation_span is None:
            return
        elapsed = max(0, int((time.monotonic() - self._navigation_start) * 1000))
        self._navigation_span.set_attributes({
            "navigation.duration_ms": elapsed,
            "navigation.interactions": self.interactions,
        })
        self._navigation_span.end()
        self._navigation_span = None

    def start_navigation(self, path: str, previous_path: Optional[str] = None) -> Span:
        self._finish_navigation()
        self.interactions = 0
        self.page_views += 1
        self._navigation_start = time.monotonic()
        previous = previous_path if previous_path is not None else self.current_path

        self._navigation_span = self.tracer.start_span(
            f"navigation_{path}",
            context=self._session_context,
            attributes={
                "route.path": path,
                "route.previous": previous or "unknown",
                "navigation.type": "spa_route_change",
                "navigation.page_view_count": self.page_views,
            },
        )
        self._session_span.add_event("page_navigation", {
            "route.from": previous or "initial",
            "route.to": path,
            "timestamp": _now_iso(),
        })
        self.current_path = path
        return self._navigation_span

    def record_interaction(self, kind: str, info: Any = None):
        if self._navigation_span is None:
            return
        self.interactions += 1
        self.total_interactions += 1
        self._navigation_span.add_event("user_interaction", {
            "interaction.type": kind,
            "interaction.element": str(info) if info is not None else "",
            "interaction.count": self.interactions,
        })

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def start_operation(self, name: str, attributes: Optional[Dict[str, Any]] = None,
                        parent: Optional[Context] = None) -> Span:
        return self.tracer.start_span(name, context=parent or self.active_context(),
                                      attributes=attributes)

    def start_checkout(self, order_id: str, amount: float, item_count: int) -> Span:
        """Open the checkout span under the active navigation. Caller ends it."""
        if self._navigation_span is None:
            logger.warning("No active navigation for checkout in %s, creating one", self.session_id)
            self.start_navigation("/checkout", "unknown")

        span = self.start_operation("checkout_process", {
            "checkout.order_id": order_id,
            "checkout.amount": round(amount, 2),
            "checkout.currency": "USD",
            "checkout.item_count": item_count,
            "checkout.start_time": _now_iso(),
        })
        self._session_span.add_event("checkout_started", {
            "order.id": order_id,
            "order.value": round(amount, 2),
        })
        return span

    # =========================================================================
    # END
    # =========================================================================

    def end_session(self, reason: str = "normal"):
        if self.ended:
            logger.debug("Session %s already ended", self.session_id)
            return
        self._finish_navigation()

        duration = self.duration_ms
        self._session_span.set_attributes({
            "session.end_time": _now_iso(),
            "session.duration_ms": duration,
            "session.page_views": self.page_views,
            "session.end_reason": reason,
        })
        self._session_span.add_event("session_ended", {
            "reason": reason,
            "duration_ms": duration,
            "pages_visited": self.page_views,
        })
        self._session_span.set_status(Status(StatusCode.OK))
        self._session_span.end()
        self.ended = True
