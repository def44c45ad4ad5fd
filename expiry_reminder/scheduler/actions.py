"""ActionInvoker adapters.

The scheduler core treats the action as opaque.  These adapters only turn
"something that performs the reminder" into an ``ActionResult``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from expiry_reminder.config import settings
from expiry_reminder.scheduler.models import ActionResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


def to_action_result(value: Any) -> ActionResult:
    """Normalise an action's return value.

    Accepts an ``ActionResult``, a bool, a ``{"success": ..., "message": ...}``
    mapping, or None (treated as success).
    """
    if isinstance(value, ActionResult):
        return value
    if value is None:
        return ActionResult(success=True)
    if isinstance(value, bool):
        return ActionResult(success=value)
    if isinstance(value, dict):
        detail = value.get("message") or value.get("detail") or ""
        return ActionResult(success=bool(value.get("success", False)), detail=str(detail))
    msg = f"Unsupported action result type: {type(value).__name__}"
    raise TypeError(msg)


class CallableAction:
    """Wrap an async callable ``(task_name) -> result`` as an ActionInvoker."""

    def __init__(self, func: Callable[[str], Awaitable[Any]]) -> None:
        self._func = func

    async def run(self, task_name: str) -> ActionResult:
        return to_action_result(await self._func(task_name))


class WebhookAction:
    """Ask an external notifier service to send the reminder.

    POSTs ``{"task_name": ...}`` to *url*.  A 2xx response is a success unless
    its JSON body carries ``"success": false``.

    Args:
        url: Endpoint to call (default from settings).
        timeout: Request timeout in seconds (default from settings).
    """

    def __init__(self, url: str | None = None, timeout: float | None = None) -> None:
        self.url = url or settings.action_webhook_url
        self.timeout = timeout or settings.action_timeout_seconds

    async def run(self, task_name: str) -> ActionResult:
        if not self.url:
            logger.warning("No action webhook configured, nothing to run for %s", task_name)
            return ActionResult(success=False, detail="action webhook URL not configured")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json={"task_name": task_name})

        if resp.status_code >= 300:
            return ActionResult(
                success=False, detail=f"HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            body = resp.json()
        except ValueError:
            return ActionResult(success=True, detail=f"HTTP {resp.status_code}")
        if isinstance(body, dict) and "success" in body:
            return to_action_result(body)
        return ActionResult(success=True, detail=f"HTTP {resp.status_code}")
