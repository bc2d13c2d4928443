"""ASGI middleware timing every HTTP request and tagging it with ids."""

from typing import Callable, Any
from urllib.parse import parse_qs
import time
import uuid

from fastapi import FastAPI

from farehold.obs.context import request_id_var, search_id_var, clear_context
from farehold.obs.logger import log_event
from farehold.obs.metrics import record_timing, inc_counter


class ObservabilityMiddleware:
    def __init__(self, app: FastAPI):
        self.app = app

    async def __call__(self, scope: dict, receive: Callable, send: Callable[[dict], Any]):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        request_id_var.set(str(uuid.uuid4()))
        # resumable URLs carry ?searchId=...; tag every log line with it
        query = parse_qs(scope.get("query_string", b"").decode("latin-1"))
        search_id_var.set((query.get("searchId") or [None])[0])

        method = scope.get("method", "")
        route = scope.get("path", "")
        start = time.monotonic()
        status_code = 500

        async def send_wrapper(message: dict):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 200))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (time.monotonic() - start) * 1000.0
            record_timing("request_latency_ms", elapsed_ms, {"route": route})
            inc_counter("requests_total", {"route": route, "status": str(status_code)})
            log_event(
                "request",
                method=method,
                route=route,
                status=status_code,
                ms_total=round(elapsed_ms, 2),
            )
            clear_context()
