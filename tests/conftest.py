"""
Shared fixtures: in-memory span capture, a fast config and a fake restaurant
API served by aiohttp's TestServer.
"""
import logging
from dataclasses import replace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from trafficsim.config import FailureConfig, HttpConfig, SimulatorConfig, TrafficConfig
from trafficsim.logs import ROOT_LOGGER


def make_fast_config(seed=1234, **payment) -> SimulatorConfig:
    """No waiting, no synthetic errors, fast failure timers."""
    config = SimulatorConfig(
        http=HttpConfig(synthetic_error_rate=0.0, timeout=5.0),
        traffic=TrafficConfig(time_scale=0.0, seed=seed),
        failures=FailureConfig(
            pool_queue_interval=0.01,
            payment_retry_interval=0.01,
            memory_leak_interval=0.01,
            cascade_stage_interval=0.02,
            leak_block_bytes=1024,
            heap_budget_bytes=4096,
        ),
    )
    if payment:
        config = replace(config, payment=replace(config.payment, **payment))
    return config


class FakeRestaurantApi:
    """Stand-in for the restaurant backend; records every request it sees."""

    def __init__(self, order_status=201, reservation_status=201, products_status=200, products_body=None):
        self.order_status = order_status
        self.reservation_status = reservation_status
        self.products_status = products_status
        self.products_body = products_body
        self.requests = []
        self.server = None

        app = web.Application()
        app.router.add_get("/api/health", self._health)
        app.router.add_get("/api/products", self._products)
        app.router.add_get("/api/reservations", self._reservations)
        app.router.add_post("/api/orders", self._create_order)
        app.router.add_post("/api/reservations", self._create_reservation)
        self.app = app

    async def __aenter__(self):
        self.server = TestServer(self.app)
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc):
        await self.server.close()

    @property
    def base_url(self) -> str:
        return f"http://{self.server.host}:{self.server.port}"

    async def _record(self, request):
        body = await request.json() if request.can_read_body else None
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "headers": request.headers.copy(),
            "body": body,
        })

    def requests_to(self, method, path):
        return [r for r in self.requests if r["method"] == method and r["path"] == path]

    async def _health(self, request):
        await self._record(request)
        return web.json_response({"status": "ok"})

    async def _products(self, request):
        await self._record(request)
        if self.products_body is not None:
            return web.Response(body=self.products_body, status=self.products_status,
                                content_type="application/json")
        return web.json_response([{"id": "1", "name": "Margherita Pizza"}], status=self.products_status)

    async def _reservations(self, request):
        await self._record(request)
        return web.json_response([])

    async def _create_order(self, request):
        await self._record(request)
        return web.json_response({"id": len(self.requests)}, status=self.order_status)

    async def _create_reservation(self, request):
        await self._record(request)
        return web.json_response({"id": len(self.requests)}, status=self.reservation_status)


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter):
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    yield provider
    provider.shutdown()


@pytest.fixture
def fast_config():
    return make_fast_config()


@pytest.fixture
def config_factory():
    return make_fast_config


@pytest.fixture
def restaurant_api():
    return FakeRestaurantApi


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
