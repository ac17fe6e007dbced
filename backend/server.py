from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from auth import require_jwt_secret
from routes import billing, coupons, webhooks, entitlements, team, catalogues
from services.entitlement_overrides import EntitlementOverrides
from services.entitlements import entitlement_checker
from services.plan_catalog import plan_catalog, PLAN_ORDER
from models import BillingCycle
from utils.errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _log_stripe_config():
    """Log Stripe mode and which price IDs are configured (never the keys)."""
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Paid checkout will fail.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
    if not os.environ.get("STRIPE_WEBHOOK_SECRET"):
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Webhooks will be refused unless unsigned mode is enabled.")
    for tier in PLAN_ORDER[1:]:
        for cycle in BillingCycle:
            logger.info(
                "Stripe price IDs plan=%s cycle=%s price_id=%s",
                tier.value, cycle.value, plan_catalog.price_id_for(tier, cycle) or "(missing)"
            )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Subscription & Entitlement API")
    require_jwt_secret()
    await database.connect()

    _log_stripe_config()

    overrides = EntitlementOverrides.from_env()
    await overrides.load()
    entitlement_checker.configure(overrides)

    yield

    # Shutdown
    logger.info("Shutting down Subscription & Entitlement API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Subscription & Entitlement API",
    description="Plans, coupons, subscriptions and plan-limit enforcement",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing.router)
app.include_router(coupons.router)
app.include_router(webhooks.router)
app.include_router(entitlements.router)
app.include_router(team.router)  # Collaborator invitations and seats
app.include_router(catalogues.router)  # Metered resource creation

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Subscription & Entitlement Engine",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Engine errors carry their own status and reason code
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
                 "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
