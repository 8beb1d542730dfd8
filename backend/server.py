from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import payments, subscriptions, entitlements, webhooks, admin_billing
from services.billing_errors import BillingError
from services.payment_gateway import _get_webhook_secret
from services.plan_catalog import plan_catalog

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

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Artisan Subscriptions API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix, never the key itself
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Card payments will fail.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
    if not _get_webhook_secret():
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Every payment webhook will be rejected.")

    try:
        seeded = await plan_catalog.seed_defaults()
        if seeded:
            logger.info(f"Plan catalog seeded with {seeded} plans")
    except Exception as e:
        logger.warning(f"Plan catalog seed failed: {e}")
    
    yield
    
    # Shutdown
    logger.info("Shutting down Artisan Subscriptions API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Artisan Subscriptions API",
    description="Plans, payments, entitlements and webhook reconciliation",
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
app.include_router(payments.router)
app.include_router(subscriptions.router)
app.include_router(entitlements.router)
app.include_router(webhooks.router)
app.include_router(admin_billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Billing errors carry their own status code and body
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "BILLING_ERROR path=%s error_code=%s status=%s message=%s",
        request.url.path, exc.error_code, exc.status_code, exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())

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
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return JSONResponse(
        status_code=400,
        content={
            "error": f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request")),
            "error_code": "VALIDATION_ERROR",
            "detail": jsonable_encoder(errors),
            "request_id": request_id,
        },
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
