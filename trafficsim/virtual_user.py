"""
Virtual user
============
One synthetic customer walking one journey. Each step gets its own span under
the session trace, emits correlated log events and, for network steps, calls
the restaurant API through aiohttp.

HTTP failures are soft: they come back as HttpResult(failed=True) and the
journey carries on. Unexpected exceptions in a step handler end the journey.
"""

import asyncio
import json
import logging
import math
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.propagate import inject
from opentelemetry.trace import Span, Status, StatusCode

from trafficsim.config import SimulatorConfig
from trafficsim.errors import SimulatedNetworkError
from trafficsim.fake_data import (
    add_timing_jitter,
    format_credit_card_number,
    generate_browser_fingerprint,
    generate_customer_profile,
    generate_network_timing,
    generate_order_type,
    generate_party_size,
    generate_reservation_slot,
    generate_special_request,
)
from trafficsim.journeys import Journey, Step, StepAction, get_think_time, should_execute_step
from trafficsim.logs import EventLog
from trafficsim.session import SessionTracker
from trafficsim.telemetry import get_tracer

logger = logging.getLogger(__name__)

# Page route -> API call the page makes when it loads
PAGE_LOADS = {
    "/": "/api/health",
    "/menu": "/api/products",
    "/reservations": "/api/reservations",
}

RESERVATION_FIELDS = [
    ("Date Field", "input#reservation-date", 400),
    ("Time Field", "select#reservation-time", 300),
    ("Guest Count Field", "input#guest-count", 200),
    ("Name Field", "input#customer-name", 600),
    ("Email Field", "input#customer-email", 800),
    ("Phone Field", "input#customer-phone", 500),
    ("Special Requests Field", "textarea#special-requests", 600),
]

PAYMENT_FIELDS = [
    ("card-number-field", 500, 800),
    ("expiry-date-field", 300, 600),
    ("cvv-field", 200, 700),
    ("cardholder-name-field", 800, 0),
]


class UserState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    THINKING = "thinking"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"
    BOUNCED = "bounced"


FINISHED_STATES = (UserState.COMPLETED, UserState.ABORTED, UserState.FAILED, UserState.BOUNCED)


@dataclass
class HttpResult:
    """Outcome of one collaborator call; failures are values, not exceptions."""
    status: int
    latency_ms: float
    data: Any = None
    failed: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def retryable(self) -> bool:
        return self.failed and (self.status == 0 or self.status >= 500)


def activity_for_step(step: Step) -> str:
    if step.action is StepAction.NAVIGATE:
        page = (step.target or "/page").strip("/") or "home"
        return f"navigating_to_{page}"
    return {
        StepAction.BROWSE: "browsing_menu",
        StepAction.ADD_TO_CART: "adding_item_to_cart",
        StepAction.REMOVE_FROM_CART: "removing_item_from_cart",
        StepAction.CHECKOUT: "starting_checkout",
        StepAction.VIEW_DETAILS: "examining_product_details",
        StepAction.MAKE_RESERVATION: "booking_table",
    }[step.action]


def unit_price(product: Dict[str, Any]) -> float:
    """Price usable in arithmetic; corrupted values count as zero."""
    price = product.get("price")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price):
        return 0.0
    return float(price)


class VirtualUser:
    """A single synthetic customer executing one journey."""

    def __init__(
        self,
        user_id: str,
        journey: Journey,
        http: aiohttp.ClientSession,
        products: List[Dict[str, Any]],
        config: Optional[SimulatorConfig] = None,
        tracer_provider=None,
        rng: Optional[random.Random] = None,
        on_activity: Optional[Callable[["VirtualUser", str], None]] = None,
    ):
        self.user_id = user_id
        self.journey = journey
        self.http = http
        self.products = products
        self.config = config or SimulatorConfig()
        self.rng = rng or random.Random()
        self.on_activity = on_activity
        self.tracer = get_tracer("virtual-user", tracer_provider)

        self.customer = generate_customer_profile(self.rng)
        self.fingerprint = generate_browser_fingerprint(self.rng)
        self.tracker = SessionTracker(user_id, journey.name, self.fingerprint,
                                      tracer_provider=tracer_provider, rng=self.rng)
        self.events = EventLog(self.tracker.session_id, self.tracker.trace_id, user_id)

        self.cart: Dict[str, int] = {}
        self.state = UserState.IDLE
        self.activity = "idle"
        self.current_step = 0
        self.completed_checkouts = 0
        self.failed_checkouts = 0
        self.orders_created = 0
        self.reservations_made = 0
        self.http_failures = 0
        self.end_reason: Optional[str] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self._aborted = False

        self._handlers = {
            StepAction.NAVIGATE: self._navigate,
            StepAction.BROWSE: self._browse,
            StepAction.ADD_TO_CART: self._add_to_cart,
            StepAction.REMOVE_FROM_CART: self._remove_from_cart,
            StepAction.CHECKOUT: self._checkout,
            StepAction.VIEW_DETAILS: self._view_details,
            StepAction.MAKE_RESERVATION: self._make_reservation,
        }

    def __repr__(self):
        return f"VirtualUser({self.user_id!r}, {self.journey.name!r}, state={self.state.value})"

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def session_id(self) -> str:
        return self.tracker.session_id

    @property
    def trace_id(self) -> str:
        return self.tracker.trace_id

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def duration_s(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.finished_at or time.monotonic()) - self.started_at

    def cart_total(self) -> float:
        by_id = {p["id"]: p for p in self.products}
        return sum(unit_price(by_id.get(pid, {})) * qty for pid, qty in self.cart.items())

    def cart_items(self) -> int:
        return sum(self.cart.values())

    def progress(self) -> float:
        """Percent of steps reached."""
        if self.state is UserState.COMPLETED:
            return 100.0
        total = len(self.journey.steps)
        if not total or self.state is UserState.IDLE:
            return 0.0
        return round((self.current_step + 1) / total * 100, 1)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def abort(self):
        """Stop at the next step boundary. An in-flight step always completes."""
        self._aborted = True

    async def execute_journey(self):
        self.state = UserState.RUNNING
        self.started_at = time.monotonic()
        total = len(self.journey.steps)
        finished_loop = False
        failed = False
        self._set_activity(f"starting_{self.journey.slug}")
        logger.info("🎭 %s (%s) starting journey: %s with %d steps",
                    self.customer.full_name, self.user_id, self.journey.name, total)

        try:
            for index, step in enumerate(self.journey.steps):
                if self._aborted:
                    break
                self.current_step = index
                if not should_execute_step(step, self.rng):
                    logger.debug("%s skipping step %d: %s", self.user_id, index + 1, step.action.value)
                    continue

                self.state = UserState.RUNNING
                self._set_activity(activity_for_step(step))
                await self._execute_step(step, index)

                if self._aborted:
                    break
                self.state = UserState.THINKING
                self._set_activity(f"thinking_after_{step.action.value}")
                await self._sleep(get_think_time(step, self.rng))
            else:
                finished_loop = True
        except Exception:
            failed = True
            self._set_activity("journey_failed")
            raise
        finally:
            if failed:
                self.state, self.end_reason = UserState.FAILED, "journey_failed"
            elif finished_loop and not self._aborted:
                self.state, self.end_reason = UserState.COMPLETED, "journey_complete"
                self._set_activity("journey_completed")
            else:
                self.state, self.end_reason = UserState.ABORTED, "aborted"
                self._set_activity("aborted")
            self.finished_at = time.monotonic()
            self.tracker.end_session(self.end_reason)

        logger.info("✅ %s (%s) finished journey %s: %s",
                    self.customer.full_name, self.user_id, self.journey.name, self.end_reason)

    async def bounce(self):
        """Land on the home page and leave."""
        self.state = UserState.RUNNING
        self.started_at = time.monotonic()
        self._set_activity("bounced")
        try:
            self.tracker.start_navigation("/")
            await self.fetch_with_tracing("/api/health", "GET", self.tracker.active_context())
            await self._sleep(self.rng.uniform(1000, 6000))
        finally:
            self.state, self.end_reason = UserState.BOUNCED, "bounced"
            self.finished_at = time.monotonic()
            self.tracker.end_session("bounced")

    async def _execute_step(self, step: Step, index: int):
        span = self.tracker.start_operation(
            f"step_{index}_{step.action.value}",
            {
                "step.index": index,
                "step.action": step.action.value,
                "step.target": step.target or "unknown",
                "user.id": self.user_id,
                "journey.name": self.journey.name,
            },
        )
        try:
            await self._handlers[step.action](step, span)
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
        finally:
            span.end()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _set_activity(self, activity: str):
        self.activity = activity
        if self.on_activity is not None:
            self.on_activity(self, activity)

    async def _sleep(self, ms: float):
        delay = max(0.0, ms) / 1000 * self.config.traffic.time_scale
        await asyncio.sleep(delay)

    def _click(self, element: str):
        self.tracker.record_interaction("click", element)
        self.events.user_interaction("click", element)

    def _pick_product(self) -> Dict[str, Any]:
        return self.rng.choice(self.products)

    def _product(self, product_id: str) -> Dict[str, Any]:
        for product in self.products:
            if product["id"] == product_id:
                return product
        return {"id": product_id, "name": product_id, "price": 0.0, "category": None}

    # =========================================================================
    # STEP HANDLERS
    # =========================================================================

    async def _navigate(self, step: Step, span: Span):
        path = step.target or "/"
        self._click(f"nav-link-{path}")
        await self._sleep(self.rng.uniform(100, 300))
        self.events.user_interaction("navigate", f"page-{path}")
        self.tracker.start_navigation(path)

        api_path = PAGE_LOADS.get(path)
        if api_path:
            await self.fetch_with_tracing(api_path, "GET", trace.set_span_in_context(span))

    async def _browse(self, step: Step, span: Span):
        self.tracker.record_interaction("scroll", "down")
        self._click("product-grid")
        await self._sleep(add_timing_jitter(300, 0.4, self.rng))
        self.events.user_interaction("browse", "product-catalog")

        for i in range(self.rng.randint(2, 5)):
            if not self.products:
                break
            product = self._pick_product()
            if i > 0 and self.rng.random() > 0.7:
                self.tracker.record_interaction("scroll", "down")
            self._click(f"product-card-{product['id']}")
            await self._sleep(add_timing_jitter(200, 0.3, self.rng))

            engagement = add_timing_jitter(2500, 0.6, self.rng)
            span.add_event("product_viewed", {
                "product.id": product["id"],
                "product.name": str(product["name"]),
                "product.price": unit_price(product),
            })
            self.events.product_view(product, engagement)
            await self._sleep(engagement)

    async def _view_details(self, step: Step, span: Span):
        if not self.products:
            return
        product = self._pick_product()
        self._click(f"product-details-{product['id']}")
        await self._sleep(self.rng.uniform(400, 700))
        self.events.user_interaction("view_details", f"product-details-{product['id']}")

        # Optional deeper looks, each with its own dwell
        for element, chance, low, high in (
            ("product-image", 0.6, 600, 1000),
            ("product-description", 0.4, 1000, 1800),
            ("product-details-section", 0.3, 800, 1400),
        ):
            if self.rng.random() < chance:
                self._click(element)
                await self._sleep(self.rng.uniform(low, high))

        span.add_event("product_details_viewed", {
            "product.id": product["id"],
            "product.name": str(product["name"]),
        })
        await self._sleep(self.rng.uniform(2000, 4000))

    async def _add_to_cart(self, step: Optional[Step], span: Span):
        if not self.products:
            logger.warning("%s has no products to add to cart", self.user_id)
            return
        product = self._pick_product()
        quantity = self.rng.randint(1, 3)
        self._click(f"add-to-cart-{product['id']}")
        await self._sleep(self.rng.uniform(150, 250))

        before = self.cart.get(product["id"], 0)
        self.cart[product["id"]] = before + quantity
        after = self.cart[product["id"]]

        self.events.cart_action("ADD", product, before, after, self.cart_total())
        span.add_event("item_added_to_cart", {
            "product.id": product["id"],
            "product.name": str(product["name"]),
            "quantity": quantity,
            "cart.total_items": self.cart_items(),
        })
        self.tracker.record_interaction("add_to_cart", product["id"])

    async def _remove_from_cart(self, step: Step, span: Span):
        if not self.cart:
            return
        product_id = self.rng.choice(list(self.cart))
        product = self._product(product_id)
        self._click(f"remove-from-cart-{product_id}")
        await self._sleep(self.rng.uniform(100, 180))

        before = self.cart[product_id]
        if before > 1:
            self.cart[product_id] = before - 1
        else:
            del self.cart[product_id]
        after = self.cart.get(product_id, 0)

        self.events.cart_action("REMOVE", product, before, after, self.cart_total())
        span.add_event("item_removed_from_cart", {
            "product.id": product_id,
            "cart.total_items": self.cart_items(),
        })
        self.tracker.record_interaction("remove_from_cart", product_id)

    async def _checkout(self, step: Step, span: Span):
        self._set_activity("preparing_checkout")
        if not self.cart:
            self._set_activity("adding_items_for_checkout")
            await self._add_to_cart(step, span)
        if not self.cart:
            return

        amount = self.cart_total()
        order_id = f"virtual-order-{self.user_id}-{int(time.time() * 1000)}"
        logger.info("💳 %s starting checkout - %d items, $%.2f",
                    self.customer.full_name, self.cart_items(), amount)

        checkout_span = self.tracker.start_checkout(order_id, amount, self.cart_items())
        try:
            completed = await self._process_payment(checkout_span, order_id, amount)
            checkout_span.set_status(Status(StatusCode.OK))
            if completed:
                self.cart.clear()
                self.completed_checkouts += 1
                self._set_activity("checkout_completed")
            else:
                self.failed_checkouts += 1
                logger.info("🛒 %s checkout abandoned, cart kept", self.customer.full_name)
        except Exception as e:
            self._set_activity("checkout_failed")
            checkout_span.record_exception(e)
            checkout_span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
        finally:
            checkout_span.end()

    async def _make_reservation(self, step: Step, span: Span):
        self._set_activity("starting_reservation")
        span.add_event("reservation_started")
        self.events.user_interaction("start_reservation", "reservation-form")

        self._set_activity("filling_reservation_form")
        for label, element, typing_ms in RESERVATION_FIELDS:
            self.tracker.record_interaction("focus", label)
            await self._sleep(self.rng.uniform(200, 500))
            self.events.user_interaction("input", element, typing_ms)
            await self._sleep(add_timing_jitter(typing_ms + 500, 0.4, self.rng))
            self.tracker.record_interaction("blur", label)

        await self._sleep(self.rng.uniform(1000, 1500))
        self._click("submit-reservation")
        self._set_activity("submitting_reservation")

        body = self.reservation_body()
        reservation_id = f"virtual-reservation-{self.user_id}-{int(time.time() * 1000)}"
        result = await self.fetch_with_tracing("/api/reservations", "POST",
                                               trace.set_span_in_context(span), body=body)
        if result.ok:
            self.reservations_made += 1
            self._set_activity("reservation_confirmed")
            self.events.reservation(reservation_id, body)
            self.events.data_operation("CREATE", "reservation", reservation_id, body, 200)
        else:
            self._set_activity("reservation_failed")
        span.add_event("reservation_completed", {"reservation.failed": result.failed})

    # =========================================================================
    # PAYMENT
    # =========================================================================

    def payment_success_rate(self, amount: float) -> float:
        cfg = self.config.payment
        rate = cfg.base_success_rate
        if amount > cfg.large_order_threshold:
            rate -= cfg.large_order_penalty
        if amount > cfg.very_large_order_threshold:
            rate -= cfg.large_order_penalty
        rate -= cfg.card_type_penalties.get(self.customer.credit_card.type, 0.0)
        return min(1.0, max(0.0, rate))

    async def _process_payment(self, checkout_span: Span, order_id: str, amount: float) -> bool:
        """Run the payment stages. True only when payment and order creation both succeed."""
        cfg = self.config.payment
        card = self.customer.credit_card
        ctx = trace.set_span_in_context(checkout_span)
        payment = {
            "card_number": format_credit_card_number(card.number),
            "card_type": card.type,
            "expiry_date": card.expiry,
            "cvv": card.cvv,
            "card_holder_name": card.holder_name,
        }
        customer = self.customer.contact()
        transaction = {
            "order_id": order_id,
            "amount": round(amount, 2),
            "currency": "USD",
            "order_type": generate_order_type(self.rng),
        }

        # Stage 1: initiated
        self._set_activity("entering_payment_details")
        for element, typing_ms, pause_ms in PAYMENT_FIELDS:
            self.tracker.record_interaction("focus", element)
            self.events.user_interaction("input", element, add_timing_jitter(typing_ms, 0.3, self.rng))
            if pause_ms:
                await self._sleep(add_timing_jitter(pause_ms, 0.5, self.rng))
        checkout_span.add_event("payment_initiated", {
            "payment.method": "credit_card",
            "payment.card_type": card.type,
        })
        self.events.payment_attempt("initiated", payment, customer, transaction)

        await self._sleep(self.rng.uniform(1000, 1500))
        self._click("process-payment")
        await self._sleep(self.rng.uniform(1000, 2000))

        # Stage 2: processing
        self._set_activity("processing_payment")
        checkout_span.add_event("payment_processing")
        self.events.payment_attempt("processing", payment, customer, transaction, 1500)
        await self._sleep(self.rng.uniform(4000, 6000))

        # Stage 3: success or declined
        if self.rng.random() < self.payment_success_rate(amount):
            self._set_activity("payment_successful")
            checkout_span.add_event("payment_success")
            self.events.payment_attempt("success", payment, customer, transaction,
                                        add_timing_jitter(2500, 0.3, self.rng))
            return await self._create_order(ctx, order_id, transaction)

        self._set_activity("payment_declined")
        checkout_span.add_event("payment_failed", {
            "error.code": "payment_declined",
            "error.message": "Card declined",
        })
        self.events.payment_attempt("failed", payment, customer, transaction, 2500)
        logger.info("💸 %s payment failed - card declined", self.customer.full_name)

        # One retry at most
        if self.rng.random() < cfg.retry_probability:
            self._set_activity("retrying_payment")
            checkout_span.add_event("payment_retry_attempt")
            await self._sleep(add_timing_jitter(3000, 0.5, self.rng))
            self.tracker.record_interaction("focus", "card-number-field")
            await self._sleep(add_timing_jitter(2000, 0.4, self.rng))

            retry_transaction = dict(transaction, retry_attempt=1)
            if self.rng.random() < cfg.retry_success_rate:
                self._set_activity("payment_successful")
                checkout_span.add_event("payment_success_after_retry")
                self.events.payment_attempt("success", payment, customer, retry_transaction,
                                            add_timing_jitter(2800, 0.3, self.rng))
                return await self._create_order(ctx, order_id, retry_transaction)

            checkout_span.add_event("payment_failed_after_retry")
            self.events.payment_attempt("failed", payment, customer, retry_transaction,
                                        add_timing_jitter(2500, 0.3, self.rng))

        await self._sleep(add_timing_jitter(2000, 0.5, self.rng))
        self._set_activity("checkout_abandoned")
        checkout_span.add_event("checkout_abandoned")
        return False

    async def _create_order(self, ctx: Context, order_id: str, transaction: Dict[str, Any]) -> bool:
        self._set_activity("creating_order")
        body = self.order_body(transaction["order_type"])
        result = await self.fetch_with_retries("/api/orders", "POST", ctx, body=body, max_retries=1)
        if result.failed:
            self._set_activity("order_failed")
            logger.warning("%s order %s was not accepted (status %s)",
                           self.customer.full_name, order_id, result.status)
            return False

        self.orders_created += 1
        self.events.data_operation("CREATE", "order", order_id,
                                   dict(body, retry_attempt=transaction.get("retry_attempt", 0)), 300)
        self._set_activity("order_confirmed")
        logger.info("📦 %s order %s posted", self.customer.full_name, order_id)
        return True

    # =========================================================================
    # REQUEST BODIES
    # =========================================================================

    def order_body(self, order_type: str) -> Dict[str, Any]:
        body = {
            "items": [
                {"productId": pid, "quantity": qty, "price": unit_price(self._product(pid))}
                for pid, qty in self.cart.items()
            ],
            "total": round(self.cart_total(), 2),
            "customerName": self.customer.full_name,
            "customerEmail": self.customer.email,
            "customerPhone": self.customer.phone,
            "orderType": order_type,
        }
        if order_type == "delivery":
            address = self.customer.address
            body["deliveryAddress"] = {
                "street": address.street,
                "city": address.city,
                "state": address.state,
                "zipCode": address.zip_code,
            }
        return body

    def reservation_body(self) -> Dict[str, Any]:
        slot = generate_reservation_slot(self.rng)
        return {
            "date": slot["date"],
            "time": slot["time"],
            "guests": generate_party_size(self.rng),
            "name": self.customer.full_name,
            "email": self.customer.email,
            "phone": self.customer.phone,
            "specialRequests": generate_special_request(self.rng),
        }

    # =========================================================================
    # HTTP
    # =========================================================================

    def request_headers(self, ctx: Context) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.fingerprint.user_agent,
            "Accept-Language": self.fingerprint.language,
            "X-Virtual-User": self.user_id,
            "X-Request-Source": self.config.http.request_source,
            "X-Trace-Id": self.trace_id,
            "X-Session-Id": self.session_id,
        }
        inject(headers, context=ctx)
        return headers

    async def fetch_with_tracing(self, path: str, method: str, parent: Context,
                                 body: Optional[Dict[str, Any]] = None) -> HttpResult:
        """One traced call to the collaborator API. Never raises for HTTP or transport errors."""
        url = f"{self.config.http.base_url.rstrip('/')}{path}"
        timing = generate_network_timing(rng=self.rng)
        span = self.tracer.start_span(
            f"http_{method.lower()}",
            context=parent,
            attributes={
                "http.method": method,
                "http.url": url,
                "http.target": path,
                "http.user_agent": self.fingerprint.user_agent,
                "network.domain_lookup_duration": timing.dns_ms,
                "network.connect_duration": timing.connect_ms,
                "network.request_start": timing.request_start,
                "network.response_start": timing.response_start,
            },
        )
        start = time.perf_counter()

        try:
            await self._sleep(max(10, add_timing_jitter(timing.time_to_first_byte_ms, 0.4, self.rng)))
            headers = self.request_headers(trace.set_span_in_context(span, parent))
            async with self.http.request(method, url, headers=headers, json=body) as response:
                raw = await response.read()
                status = response.status
                reason = response.reason
            text = raw.decode("utf-8", errors="replace")
            latency = (time.perf_counter() - start) * 1000

            span.set_attributes({
                "http.status_code": status,
                "http.response_content_length": len(raw),
                "network.transfer_size": timing.transfer_size,
                "network.encoded_body_size": timing.encoded_body_size,
                "network.decoded_body_size": timing.decoded_body_size,
                "network.total_duration": int(latency),
            })

            if not 200 <= status < 300:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {status}"))
                result = HttpResult(status, latency, {"error": reason}, failed=True, error=f"HTTP {status}")
            else:
                try:
                    data = json.loads(text) if text else {}
                except json.JSONDecodeError:
                    data = text
                result = HttpResult(status, latency, data)

        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            latency = (time.perf_counter() - start) * 1000
            error = str(e) or type(e).__name__
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, error))
            result = HttpResult(0, latency, {"error": error}, failed=True, error=error)
        finally:
            span.end()

        if result.failed:
            self.http_failures += 1
            logger.info("⚠️ %s %s %s failed (%s) - continuing session",
                        self.customer.full_name, method, path, result.error)
        self.events.http_request(method, path, result.status, int(result.latency_ms), result.failed)
        return result

    async def _attempt(self, path: str, method: str, parent: Context,
                       body: Optional[Dict[str, Any]], attempt: int) -> HttpResult:
        if attempt == 0 and self.rng.random() < self.config.http.synthetic_error_rate:
            raise SimulatedNetworkError("Network timeout - simulated")
        return await self.fetch_with_tracing(path, method, parent, body)

    async def fetch_with_retries(self, path: str, method: str, parent: Context,
                                 body: Optional[Dict[str, Any]] = None,
                                 max_retries: Optional[int] = None) -> HttpResult:
        """fetch_with_tracing with linear backoff. 4xx responses are never retried."""
        cfg = self.config.http
        retries = cfg.max_retries if max_retries is None else max_retries
        attempt = 0

        while True:
            try:
                result = await self._attempt(path, method, parent, body, attempt)
            except SimulatedNetworkError as e:
                logger.info("🔄 %s simulating network error on %s %s", self.customer.full_name, method, path)
                self.events.http_request(method, path, 0, 0, True)
                result = HttpResult(0, 0.0, {"error": str(e)}, failed=True, error=str(e))

            if not result.retryable or attempt >= retries:
                if result.failed and attempt:
                    logger.info("🚫 %s all retries failed for %s", self.customer.full_name, path)
                return result

            attempt += 1
            delay = add_timing_jitter(cfg.retry_backoff_ms * attempt, cfg.retry_jitter, self.rng)
            logger.debug("%s retrying %s in %dms (attempt %d)", self.user_id, path, delay, attempt)
            await self._sleep(delay)
