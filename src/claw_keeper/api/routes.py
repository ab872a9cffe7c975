from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse


MAX_LOG_TAIL_LINES = 5000


def register_keeper_routes(app: FastAPI, *, state: Any, logger: logging.Logger) -> None:
    @app.get("/api/status")
    def api_status() -> dict[str, Any]:
        return state.status_service.status_payload()

    @app.post("/api/gateway/ensure")
    async def api_ensure_gateway(request: Request) -> dict[str, Any]:
        timeout: float | None = None
        body = await request.body()
        if body.strip():
            try:
                payload = await request.json()
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc
            if not isinstance(payload, dict):
                raise HTTPException(status_code=400, detail="Invalid JSON payload.")
            raw_timeout = payload.get("timeout_seconds")
            if raw_timeout is not None:
                if isinstance(raw_timeout, bool) or not isinstance(raw_timeout, (int, float)) or raw_timeout <= 0:
                    raise HTTPException(status_code=400, detail="timeout_seconds must be a positive number.")
                timeout = float(raw_timeout)
        process = await asyncio.to_thread(state.gateway_service.ensure_gateway_running, timeout=timeout)
        logger.debug(
            "Gateway ensure request completed pid=%s",
            process.get("pid"),
            extra={"component": "api", "operation": "ensure_gateway", "result": "ready"},
        )
        return {"gateway": process}

    @app.get("/api/gateway/logs", response_class=PlainTextResponse)
    def api_gateway_logs(lines: int = 100) -> PlainTextResponse:
        if lines <= 0 or lines > MAX_LOG_TAIL_LINES:
            raise HTTPException(status_code=400, detail=f"lines must be between 1 and {MAX_LOG_TAIL_LINES}.")
        return PlainTextResponse(state.gateway_service.output_tail(lines))

    @app.post("/api/storage/sync")
    async def api_trigger_sync() -> dict[str, Any]:
        run = await asyncio.to_thread(state.storage_service.trigger_manual_sync)
        logger.debug(
            "Manual sync request completed outcome=%s",
            run.get("outcome"),
            extra={"component": "api", "operation": "manual_sync", "trigger": "manual", "result": run.get("outcome")},
        )
        return {"sync": run}
