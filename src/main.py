from uuid import uuid4

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.auth import require_internal_caller
from src.observability import metric_totals, metrics_snapshot
from src.routers import (
    webhook_ingest,
    sheets_export,
)

app = FastAPI(title="CRM Webhook Ingest", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhook_ingest.router)
app.include_router(sheets_export.router)


@app.get("/internal/metrics", dependencies=[Depends(require_internal_caller)])
async def internal_metrics(prefix: str | None = None):
    return {"counters": metrics_snapshot(prefix), "totals": metric_totals(prefix)}


@app.get("/")
async def root():
    return {"status": "ok", "service": "crm-webhook-ingest"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
