"""
Replays queued actions against the REST API.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx

from shared.config.logging import get_logger
from .actions import ActionType, QueuedAction
from .errors import PermanentExecutionError, TransientExecutionError

logger = get_logger(__name__)

# 4xx answers that may succeed later
RETRYABLE_STATUS = frozenset({408, 425, 429})

# Server logs for a replay carry the queued action id
REQUEST_ID_HEADER = "X-Request-ID"


class ActionExecutor(ABC):
    @abstractmethod
    async def execute(self, action: QueuedAction) -> dict[str, Any]:
        """
        Perform the action remotely and return the server's answer.

        Raises:
            TransientExecutionError: worth retrying later
            PermanentExecutionError: the server rejected the action
        """


def _require(action: QueuedAction, field: str) -> str:
    value = action.payload.get(field)
    if not value or not isinstance(value, str):
        raise PermanentExecutionError(f"{action.action_type} payload is missing '{field}'")
    return quote(value, safe="")


def build_request(action: QueuedAction) -> tuple[str, str, dict[str, Any]]:
    """Map an action to (method, path, json body)."""
    payload = action.payload
    kind = action.action_type

    if kind == ActionType.CREATE_ORDER:
        return "POST", "/api/orders", payload
    if kind == ActionType.UPDATE_ORDER_STATUS:
        order_id = _require(action, "orderId")
        return "PATCH", f"/api/orders/{order_id}/status", {"status": payload.get("status")}
    if kind == ActionType.GENERATE_BILL:
        order_id = _require(action, "orderId")
        return "POST", f"/api/orders/{order_id}/generate-bill", {}
    if kind == ActionType.CREATE_PAYMENT:
        body = {
            "billId": payload.get("billId"),
            "method": payload.get("method"),
            "amount": payload.get("amount"),
        }
        if payload.get("provider"):
            body["provider"] = payload["provider"]
        if payload.get("idempotencyKey"):
            body["idempotencyKey"] = payload["idempotencyKey"]
        return "POST", "/api/payments", body
    if kind == ActionType.VERIFY_PAYMENT:
        body = {"paymentId": payload.get("paymentId")}
        if payload.get("gatewayResponse") is not None:
            body["gatewayResponse"] = payload["gatewayResponse"]
        return "POST", "/api/payments/verify", body

    raise PermanentExecutionError(f"Unknown action type '{kind}'")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict):
            return str(detail.get("message") or detail)
        if detail:
            return str(detail)
        if body.get("message"):
            return str(body["message"])
    return str(body)[:200]


class HttpActionExecutor(ActionExecutor):
    """
    Executes actions over HTTP with httpx.

    Usage:
        async with httpx.AsyncClient(base_url="http://localhost:8000") as client:
            executor = HttpActionExecutor(client)
    """

    def __init__(self, client: httpx.AsyncClient, timeout: float = 10.0):
        self._client = client
        self._timeout = timeout

    async def execute(self, action: QueuedAction) -> dict[str, Any]:
        method, path, body = build_request(action)
        try:
            response = await self._client.request(
                method,
                path,
                json=body,
                headers={REQUEST_ID_HEADER: action.id},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientExecutionError(f"Timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientExecutionError(f"Network error: {e}") from e

        if response.is_success:
            try:
                result = response.json()
            except ValueError:
                result = {}
            logger.debug(
                "Action replayed",
                action_id=action.id,
                action_type=action.action_type,
                status_code=response.status_code,
            )
            return result if isinstance(result, dict) else {"result": result}

        message = _error_message(response)
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise TransientExecutionError(message, status_code=response.status_code)
        raise PermanentExecutionError(message, status_code=response.status_code)
