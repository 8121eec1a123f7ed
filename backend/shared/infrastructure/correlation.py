"""
Request correlation.

Every request gets an id that is stamped on its log lines and echoed back in
X-Request-ID. Offline replays send the queued action id as their request id,
so a server log line can be traced back to the device action that caused it,
across however many retries it took.
"""

import re
import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"

# Client ids end up verbatim in log lines
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return request_id_var.get()


def resolve_request_id(header_value: str | None) -> str:
    """Use the client's id when it is well formed, otherwise mint one."""
    if header_value and _REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return uuid.uuid4().hex


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = request_id_var.set(request_id)
        try:
            request.state.request_id = request_id
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            request_id_var.reset(token)


class CorrelationIdFilter:
    """
    Logging filter that puts request_id on every record ("-" outside requests).

    Attached to the root handler by setup_logging().
    """

    def filter(self, record) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True
