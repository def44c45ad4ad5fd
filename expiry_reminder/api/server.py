"""Operational HTTP API.

Runs in the same asyncio event loop as the scheduler.  Uses aiohttp's
AppRunner/TCPSite for non-blocking start/stop.

Routes:
    GET  /health                   liveness + this instance's holder id
    GET  /leases                   every unexpired lease
    GET  /leases/{task_name}       current lease holder and expiry
    GET  /tasks/{task_name}        local trigger state + last execution record
    PUT  /policies/{task_name}     save a reminder policy and rebuild the local trigger
    DELETE /policies/{task_name}   remove the policy and stop the local trigger
    POST /tasks/{task_name}/run    run the action now, under the lease
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from expiry_reminder.config import settings
from expiry_reminder.scheduler.models import InvalidPolicy, ReminderPolicy

if TYPE_CHECKING:
    from expiry_reminder.app import Runtime

logger = logging.getLogger(__name__)

RUNTIME_KEY: web.AppKey[Runtime] = web.AppKey("runtime")

_TEXT_FIELDS = ("frequency", "reminder_time")
_NUMBER_FIELDS = ("weekday", "day_of_month")
_POLICY_FIELDS = {*_TEXT_FIELDS, *_NUMBER_FIELDS}


def _runtime(request: web.Request) -> Runtime:
    return request.app[RUNTIME_KEY]


def _policy_payload_error(payload: Any) -> str | None:
    """Return why *payload* cannot be stored as a policy, or None.

    Only shapes are checked here.  Whether the values describe a usable
    schedule is decided by ``compile_policy`` after saving.
    """
    if not isinstance(payload, dict):
        return "policy must be a JSON object"
    unknown = set(payload) - _POLICY_FIELDS
    if unknown:
        return f"unknown policy field(s): {', '.join(sorted(unknown))}"
    for name in _TEXT_FIELDS:
        value = payload.get(name)
        if value is not None and not isinstance(value, str):
            return f"{name} must be a string"
    for name in _NUMBER_FIELDS:
        value = payload.get(name)
        if value is None or isinstance(value, str):
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            return f"{name} must be an integer"
    return None


async def _health(request: web.Request) -> web.Response:
    """GET /health: basic liveness check."""
    runtime = _runtime(request)
    return web.json_response(
        {
            "status": "ok",
            "instance_id": runtime.leases.holder_id.value,
            "scheduler_running": runtime.engine.running,
        }
    )


async def _list_leases(request: web.Request) -> web.Response:
    held = await _runtime(request).leases.list_held()
    if held is None:
        return web.json_response({"error": "lease store unavailable"}, status=503)
    return web.json_response({"leases": [status.to_dict() for status in held]})


async def _lease_status(request: web.Request) -> web.Response:
    task_name = request.match_info["task_name"]
    status = await _runtime(request).leases.status(task_name)
    return web.json_response(status.to_dict(), status=503 if status.error else 200)


async def _task_status(request: web.Request) -> web.Response:
    task_name = request.match_info["task_name"]
    runtime = _runtime(request)
    data: dict[str, Any] = runtime.engine.status(task_name)
    try:
        data["last_execution"] = await runtime.execution_log.get(task_name)
    except Exception:
        logger.warning("Could not read execution record for %s", task_name, exc_info=True)
        data["last_execution"] = None
    return web.json_response(data)


async def _put_policy(request: web.Request) -> web.Response:
    """PUT /policies/{task_name}: persist, then apply locally via restart."""
    task_name = request.match_info["task_name"]
    runtime = _runtime(request)

    try:
        payload = await request.json()
    except Exception:
        return web.json_response({"error": "invalid JSON"}, status=400)
    error = _policy_payload_error(payload)
    if error:
        return web.json_response({"error": error}, status=400)

    policy = ReminderPolicy.from_dict(payload)
    await runtime.policies.save(task_name, policy)
    result = await runtime.engine.restart(task_name, runtime.policies)

    body: dict[str, Any] = {"saved": True, "policy": policy.to_dict()}
    if isinstance(result, InvalidPolicy):
        body.update(scheduled=False, reason=result.reason)
    else:
        body.update(scheduled=True, schedule=result.describe())
    logger.info("Policy updated via API for %s (scheduled=%s)", task_name, body["scheduled"])
    return web.json_response(body)


async def _delete_policy(request: web.Request) -> web.Response:
    """DELETE /policies/{task_name}: remove the policy and stop the local trigger."""
    task_name = request.match_info["task_name"]
    runtime = _runtime(request)
    deleted = await runtime.policies.delete(task_name)
    await runtime.engine.stop(task_name)
    logger.info("Policy deleted via API for %s (existed=%s)", task_name, deleted)
    return web.json_response(
        {"deleted": deleted, "scheduled": False}, status=200 if deleted else 404
    )


async def _run_now(request: web.Request) -> web.Response:
    task_name = request.match_info["task_name"]
    outcome = await _runtime(request).executor.run_now(task_name)
    status = 200 if outcome.ran_action else 409
    return web.json_response(
        {"task_name": task_name, "outcome": str(outcome), "ran": outcome.ran_action},
        status=status,
    )


def create_web_app(runtime: Runtime) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/health", _health)
    app.router.add_get("/leases", _list_leases)
    app.router.add_get("/leases/{task_name}", _lease_status)
    app.router.add_get("/tasks/{task_name}", _task_status)
    app.router.add_put("/policies/{task_name}", _put_policy)
    app.router.add_delete("/policies/{task_name}", _delete_policy)
    app.router.add_post("/tasks/{task_name}/run", _run_now)
    return app


class ApiServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(self, runtime: Runtime, host: str | None = None, port: int | None = None) -> None:
        self._runtime = runtime
        self.host = host or settings.api_host
        self.port = settings.api_port if port is None else port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening. Port 0 disables the API."""
        if not self.port:
            logger.info("API_PORT is 0, operational API disabled")
            return
        app = create_web_app(self._runtime)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Operational API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Operational API stopped")

