"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Logging — one root configuration from LOG_LEVEL
  2. Lifespan manager — tables, correlation-store sweepers, client cleanup
  3. CORS middleware — the web wallet calls us with credentials (cookies)
  4. Exception handlers — maps domain errors to {error, message} bodies
  5. Router registration — web, mobile, payment and step-up endpoint groups

Running locally:
    uvicorn wsim.main:app --reload --port 3003
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wsim import models  # noqa: F401  (registers every table on Base.metadata)
from wsim.config import settings
from wsim.database import engine, Base
from wsim.dependencies import bsim_client, enrollment_store, login_challenge_store
from wsim.exceptions import register_exception_handlers
from wsim.routers import auth, enrollment, mobile, mobile_payment, step_up, wallet

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      Creates all database tables if they don't exist (development
      convenience; production schemas are managed separately) and starts
      the periodic sweep of the enrollment and login-challenge stores.

    Shutdown:
      Stops the sweepers, closes the bank HTTP client and disposes of the
      database engine.
    """
    # --- Startup ---
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await enrollment_store.start()
    await login_challenge_store.start()
    logger.info("%s %s started (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    yield
    # --- Shutdown ---
    await enrollment_store.stop()
    await login_challenge_store.stop()
    await bsim_client.aclose()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Wallet simulator: bank enrollment, tokenized cards and mobile payment approval",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(enrollment.router, prefix="/api/enrollment", tags=["Enrollment"])
app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
app.include_router(wallet.router, prefix="/api/wallet", tags=["Wallet"])
app.include_router(mobile.router, prefix="/api/mobile", tags=["Mobile"])
app.include_router(mobile_payment.router, prefix="/api/mobile/payment", tags=["Mobile Payments"])
app.include_router(step_up.router, prefix="/api/mobile/step-up", tags=["Step-Up"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness check for load balancers and orchestrators."""
    return {"status": "ok", "version": settings.APP_VERSION}
