"""
BlinkPay Checkout API

Redirect-based bank payments: create a BlinkPay consent, send the buyer to
their bank, verify and draw the payment when they come back.

Endpoints:
  /api/health                      -- health check
  /api/v1/status                   -- API status and capabilities
  /api/v1/payments/start           -- start a single / enduring / quick flow
  /api/v1/payments/callback        -- gateway redirect target
  /api/v1/payments/resume          -- app-foreground resume
  /api/v1/payments/state           -- current flow state
  /api/v1/payments/reset           -- reset the flow
  /api/v1/cart                     -- cart contents
  /api/docs                        -- Swagger UI documentation

Run with:
    uvicorn app:app --host 127.0.0.1 --port 8190
"""

import datetime
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
from routers import cart, payments

# --- Logging ---
logging.basicConfig(
  level=logging.INFO,
  format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("checkout.api")

# --- FastAPI app ---
app = FastAPI(
  title="BlinkPay Checkout API",
  description="Redirect-based bank payments via BlinkPay consents.",
  version=config.API_VERSION,
  docs_url="/api/docs",
  redoc_url="/api/redoc",
  openapi_url="/api/openapi.json",
)

# --- Register routers ---
app.include_router(payments.router)
app.include_router(cart.router)


# --- Health and status ---

class HealthResponse(BaseModel):
  status: str
  service: str
  version: str
  timestamp: str
  gateway_configured: bool
  payment_phase: str


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
  """Health check endpoint for monitoring and load balancers."""
  return HealthResponse(
    status="healthy",
    service="blinkpay-checkout-api",
    version=config.API_VERSION,
    timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
    gateway_configured=bool(config.BLINKPAY_CLIENT_ID and config.BLINKPAY_CLIENT_SECRET),
    payment_phase=payments.get_consent_orchestrator().state.phase.value,
  )


@app.get("/api/v1/status")
async def api_status():
  """API status and capabilities."""
  return JSONResponse(
    content={
      "ok": True,
      "data": {
        "status": "operational",
        "version": config.API_VERSION,
        "capabilities": [
          "health-check",
          "single-consent",
          "enduring-consent",
          "quick-payment",
          "completion-polling",
          "cart",
        ],
        "endpoints": {
          "health": "/api/health",
          "start": "/api/v1/payments/start",
          "callback": "/api/v1/payments/callback",
          "resume": "/api/v1/payments/resume",
          "state": "/api/v1/payments/state",
          "reset": "/api/v1/payments/reset",
          "receipt": "/api/v1/payments/receipt",
          "cart": "/api/v1/cart",
          "docs": "/api/docs",
        },
      },
      "error": None,
    }
  )


@app.get("/api/")
async def api_root():
  """API root -- discovery."""
  return JSONResponse(
    content={
      "ok": True,
      "data": {
        "message": "BlinkPay Checkout API",
        "docs": "/api/docs",
        "health": "/api/health",
        "status": "/api/v1/status",
      },
      "error": None,
    }
  )


if __name__ == "__main__":
  import uvicorn
  logger.info("Starting BlinkPay Checkout API on %s:%d", config.API_HOST, config.API_PORT)
  uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
