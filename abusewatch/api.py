"""
Status API (optional).

Exposes:
  GET /api/status   → rate-limit state, buffer/cache sizes, pending IP buffers
  GET /api/reports  → recent dispatch outcomes from the history store
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from abusewatch import __version__

if TYPE_CHECKING:
    from abusewatch.runtime import Runtime


def create_app(runtime: "Runtime") -> FastAPI:
    app = FastAPI(title="abusewatch", version=__version__)

    @app.get("/api/status")
    async def api_status() -> JSONResponse:
        status = runtime.dispatcher.status()
        status["pending"] = {w.honeypot.lower(): w.pending() for w in runtime.watchers}
        status["own_ips"] = len(runtime.own_ips.get())
        return JSONResponse(status)

    @app.get("/api/reports")
    async def api_reports(limit: int = 100) -> JSONResponse:
        rows = await runtime.history.fetch_recent(max(1, min(limit, 1000)))
        return JSONResponse(rows)

    return app
