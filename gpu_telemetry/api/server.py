"""Telemetry query API — read-only views over nodes, metrics and alerts (aiohttp).

The only write path is alert resolution, shared with the alert engine's store.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from aiohttp import web

from gpu_telemetry.alert_engine.config import EngineConfig
from gpu_telemetry.alert_engine.logs import setup_logging
from gpu_telemetry.alert_engine.models import MetricSample
from gpu_telemetry.alert_engine.store import AlertNotFoundError, StoreError, TelemetryStore

logger = logging.getLogger("gpu_telemetry.api")

DEFAULT_METRICS_LIMIT = 100
MAX_METRICS_LIMIT = 1000
ALERTS_PAGE = 100

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _metric_json(m: MetricSample) -> dict[str, Any]:
    return {
        "node_id": m.node_id,
        "gpu_index": m.gpu_index,
        "temperature_c": m.temperature_c,
        "power_w": m.power_w,
        "mem_used_mb": m.mem_used_mb,
        "mem_total_mb": m.mem_total_mb,
        "utilization_pct": m.utilization_pct,
        "clock_mhz": m.clock_mhz,
        "collected_at": m.collected_at.isoformat() if m.collected_at else None,
    }


@web.middleware
async def store_errors(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except StoreError as e:
        logger.error("Store error on %s %s: %s", request.method, request.path, e)
        return web.json_response({"error": "store unavailable"}, status=500)


def _store(request: web.Request) -> TelemetryStore:
    return request.app["store"]


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "healthy", "time": datetime.now(timezone.utc).isoformat()})


async def handle_nodes(request: web.Request) -> web.Response:
    return web.json_response([n.to_dict() for n in _store(request).list_nodes()])


async def handle_node(request: web.Request) -> web.Response:
    node = _store(request).get_node(request.match_info["node_id"])
    if node is None:
        return web.json_response({"error": "Node not found"}, status=404)
    return web.json_response(node.to_dict())


async def handle_node_metrics(request: web.Request) -> web.Response:
    raw = request.query.get("limit", str(DEFAULT_METRICS_LIMIT))
    try:
        limit = int(raw)
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)
    if not 1 <= limit <= MAX_METRICS_LIMIT:
        return web.json_response({"error": f"limit must be between 1 and {MAX_METRICS_LIMIT}"}, status=400)
    metrics = _store(request).node_metrics(request.match_info["node_id"], limit)
    return web.json_response([_metric_json(m) for m in metrics])


async def handle_alerts(request: web.Request) -> web.Response:
    return web.json_response([a.to_dict() for a in _store(request).list_alerts(ALERTS_PAGE)])


async def handle_active_alerts(request: web.Request) -> web.Response:
    return web.json_response([a.to_dict() for a in _store(request).list_active_alerts()])


async def handle_resolve_alert(request: web.Request) -> web.Response:
    try:
        alert_id = int(request.match_info["alert_id"])
    except ValueError:
        return web.json_response({"error": "alert_id must be an integer"}, status=400)
    try:
        alert = _store(request).resolve_alert(alert_id)
    except AlertNotFoundError:
        return web.json_response({"error": "Alert not found"}, status=404)
    logger.info("Alert %d resolved", alert.id)
    return web.json_response({"message": "Alert resolved", "alert_id": alert.id})


async def handle_latest_metrics(request: web.Request) -> web.Response:
    return web.json_response([_metric_json(m) for m in _store(request).latest_metrics()])


async def close_store(app: web.Application) -> None:
    app["store"].close()


def create_app(config: EngineConfig, store: TelemetryStore | None = None) -> web.Application:
    app = web.Application(middlewares=[store_errors])
    app["config"] = config
    app["store"] = store or TelemetryStore(config.db_path)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/api/v1/nodes", handle_nodes)
    app.router.add_get("/api/v1/nodes/{node_id}", handle_node)
    app.router.add_get("/api/v1/nodes/{node_id}/metrics", handle_node_metrics)
    app.router.add_get("/api/v1/alerts", handle_alerts)
    app.router.add_get("/api/v1/alerts/active", handle_active_alerts)
    app.router.add_post("/api/v1/alerts/{alert_id}/resolve", handle_resolve_alert)
    app.router.add_get("/api/v1/metrics/latest", handle_latest_metrics)
    app.on_cleanup.append(close_store)
    return app


def main() -> None:
    config = EngineConfig.from_env()
    setup_logging(config, "api")
    app = create_app(config)
    logger.info("Starting API server on %s:%d", config.api_host, config.api_port)
    web.run_app(app, host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
