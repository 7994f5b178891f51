"""
Operator control API
====================
aiohttp.web application exposing traffic and failure controls:

    POST /api/traffic/start      {"users": 10, "journey_mix": "mixed", "concurrency": 5}
    POST /api/traffic/continuous {"target": 5, "timing": "peak", "journey_mix": "buyers"}
    POST /api/traffic/config     {"target_concurrent_users": 8}
    POST /api/traffic/stop
    GET  /api/traffic/status
    POST /api/simulate/failure   {"scenario": "memory_leak", "duration": 60}
    GET  /api/simulate/status
    POST /api/simulate/stop
"""

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from aiohttp import web

from trafficsim.config import SimulatorConfig
from trafficsim.data_store import DataStore
from trafficsim.errors import ConfigError, SimulationError
from trafficsim.failures import FailureSimulator, validate_failure_request
from trafficsim.traffic import TrafficManager

logger = logging.getLogger(__name__)

TRAFFIC_KEY = web.AppKey("traffic", TrafficManager)
SIMULATOR_KEY = web.AppKey("simulator", FailureSimulator)
WAITERS_KEY = web.AppKey("traffic_waiters", set)

routes = web.RouteTableDef()


def _error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({"success": False, "error": message, **extra}, status=status)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(text=json.dumps({"success": False, "error": "Invalid JSON body"}),
                                 content_type="application/json")
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text=json.dumps({"success": False, "error": "Body must be a JSON object"}),
                                 content_type="application/json")
    return data


# =============================================================================
# TRAFFIC
# =============================================================================

def _watch(app: web.Application, manager: TrafficManager):
    """Release the run's HTTP session once it ends."""
    waiters = app[WAITERS_KEY]
    waiter = asyncio.create_task(manager.wait())
    waiters.add(waiter)
    waiter.add_done_callback(waiters.discard)


@routes.post("/api/traffic/start")
async def start_traffic(request: web.Request) -> web.Response:
    body = await _json_body(request)
    users = body.get("users", 1)
    concurrency = body.get("concurrency")
    if isinstance(users, bool) or not isinstance(users, int) or users < 1:
        return _error(400, "users must be a positive integer")
    if concurrency is not None and (isinstance(concurrency, bool) or not isinstance(concurrency, int)):
        return _error(400, "concurrency must be an integer")

    manager = request.app[TRAFFIC_KEY]
    try:
        session_ids = await manager.start(users, body.get("journey_mix"), concurrency)
    except ConfigError as e:
        return _error(400, str(e))
    except SimulationError as e:
        return _error(409, str(e))

    _watch(request.app, manager)
    return web.json_response({"success": True, "users": len(session_ids), "session_ids": session_ids})


@routes.post("/api/traffic/continuous")
async def start_continuous_traffic(request: web.Request) -> web.Response:
    body = await _json_body(request)
    manager = request.app[TRAFFIC_KEY]
    try:
        await manager.start_continuous(body.get("target"), body.get("journey_mix"), body.get("timing"))
    except ConfigError as e:
        return _error(400, str(e))
    except SimulationError as e:
        return _error(409, str(e))

    _watch(request.app, manager)
    traffic = manager.config.traffic
    return web.json_response({
        "success": True,
        "target": traffic.target_concurrent_users,
        "timing": traffic.traffic_timing,
    })


@routes.post("/api/traffic/config")
async def update_traffic_config(request: web.Request) -> web.Response:
    body = await _json_body(request)
    manager = request.app[TRAFFIC_KEY]
    try:
        traffic = await manager.update_traffic_config(**body)
    except ConfigError as e:
        return _error(400, str(e))
    return web.json_response({"success": True, "spawning": manager.spawning, "config": asdict(traffic)})


@routes.post("/api/traffic/stop")
async def stop_traffic(request: web.Request) -> web.Response:
    aborted = request.app[TRAFFIC_KEY].stop_all()
    return web.json_response({"success": True, "aborted": aborted})


@routes.get("/api/traffic/status")
async def traffic_status(request: web.Request) -> web.Response:
    manager = request.app[TRAFFIC_KEY]
    return web.json_response({
        "running": manager.running,
        "active": manager.get_activity_snapshot(),
        "stats": manager.get_stats(),
        "recently_completed": manager.recently_completed(),
    })


# =============================================================================
# FAILURES
# =============================================================================

@routes.post("/api/simulate/failure")
async def start_failure(request: web.Request) -> web.Response:
    body = await _json_body(request)
    simulator = request.app[SIMULATOR_KEY]
    try:
        scenario, duration = validate_failure_request(body.get("scenario"), body.get("duration"),
                                                      simulator.config)
    except ValueError as e:
        return _error(400, str(e))

    result = simulator.start_failure(scenario, duration)
    if not result["success"]:
        return web.json_response(result, status=409)
    logger.warning("Failure scenario %s started for %ss", scenario.value, duration)
    return web.json_response(result)


@routes.get("/api/simulate/status")
async def failure_status(request: web.Request) -> web.Response:
    return web.json_response(request.app[SIMULATOR_KEY].get_failure_status())


@routes.post("/api/simulate/stop")
async def stop_failure(request: web.Request) -> web.Response:
    result = request.app[SIMULATOR_KEY].stop_failure()
    return web.json_response(result, status=200 if result["success"] else 409)


# =============================================================================
# APP
# =============================================================================

async def _cleanup(app: web.Application):
    await app[SIMULATOR_KEY].shutdown()
    manager = app[TRAFFIC_KEY]
    manager.stop_all()
    waiters = app[WAITERS_KEY]
    if waiters:
        await asyncio.gather(*list(waiters), return_exceptions=True)
    await manager.close()


def create_app(config: Optional[SimulatorConfig] = None,
               data_store: Optional[DataStore] = None,
               tracer_provider=None) -> web.Application:
    config = config or SimulatorConfig()
    data_store = data_store if data_store is not None else DataStore()

    app = web.Application()
    app[TRAFFIC_KEY] = TrafficManager(config, tracer_provider=tracer_provider, data_store=data_store)
    app[SIMULATOR_KEY] = FailureSimulator(data_store, config.failures)
    app[WAITERS_KEY] = set()
    app.add_routes(routes)
    app.on_cleanup.append(_cleanup)
    return app
