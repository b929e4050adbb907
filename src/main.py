import logging
from contextlib import asynccontextmanager
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import settings
from src.observability import log_event
from src.routers import billing, webhooks


@asynccontextmanager
async def lifespan(app: FastAPI):
    missing = settings.missing_webhook_secrets()
    if missing and settings.is_production:
        log_event("startup_webhook_secrets_missing", level=logging.CRITICAL, missing=missing)
        raise RuntimeError(f"Webhook secrets must be configured in production: {', '.join(missing)}")
    if missing:
        log_event(
            "startup_webhook_secrets_missing",
            level=logging.WARNING,
            missing=missing,
            app_env=settings.app_env,
            allow_unsigned=settings.webhook_allow_unsigned,
        )
    yield


app = FastAPI(title="CoreComm Webhooks", version="0.1.0", lifespan=lifespan)

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

app.include_router(webhooks.router)
app.include_router(billing.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "corecomm-webhooks"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/health/ready")
async def ready():
    try:
        async with httpx.AsyncClient(timeout=settings.connectivity_timeout_seconds) as client:
            response = await client.get(
                f"{settings.supabase_url.rstrip('/')}/rest/v1/",
                headers={"apikey": settings.supabase_service_role_key},
            )
    except httpx.HTTPError as exc:
        log_event("readiness_check_failed", level=logging.WARNING, error=str(exc))
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "unreachable"})
    if response.status_code >= 500:
        log_event("readiness_check_failed", level=logging.WARNING, status_code=response.status_code)
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "error"})
    return {"status": "ready", "database": "reachable"}
