import logging

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.observability import (
    http_exception_handler,
    log_event,
    logger,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from app.db.session import engine
from app.routers import (
    agent,
    agents,
    audit,
    auth,
    notifications,
    orders,
    payout_holds,
    payouts,
    refunds,
    vendor,
    webhooks,
)

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Order fulfilment API for the CampusDrop marketplace.\n\n"
        "Swagger quick test flow:\n"
        "1. Call `POST /auth/register` or `POST /auth/login`.\n"
        "2. Click **Authorize** and use your email + password "
        "(OAuth token URL: `/auth/token`).\n"
        "3. Walk an order through `/orders`, `/vendor/orders`, and `/agent/*`."
    ),
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "auth", "description": "Account registration and access tokens."},
        {"name": "agents", "description": "Pickup agent administration."},
        {"name": "orders", "description": "Customer orders and the fulfilment status lifecycle."},
        {"name": "vendor", "description": "Vendor order queue and preparation."},
        {"name": "agent", "description": "Drop-off acceptance and pickup code verification at the counter."},
        {"name": "refunds", "description": "Refund requests, vendor decisions, and admin overrides."},
        {"name": "payout-holds", "description": "Funds withheld from vendor payouts to cover refunds."},
        {"name": "payouts", "description": "Vendor balances, payout requests, and approvals."},
        {"name": "notifications", "description": "In-app notification inbox."},
        {"name": "webhooks", "description": "Signed payment provider callbacks."},
        {"name": "audit", "description": "Audit trail for sensitive operations."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if not allow_origin_regex and env_value in {"dev", "development", "staging", "stage"}:
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, agents, orders, vendor, agent, refunds, payout_holds, payouts, notifications, webhooks, audit):
    app.include_router(module.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        log_event(logger, "readiness_failed", level=logging.ERROR, error=str(exc))
        return JSONResponse(status_code=503, content={"ok": False, "database": "unavailable"})
    return {"ok": True, "database": "ok"}
