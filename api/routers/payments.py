"""
BlinkPay Checkout -- Payments Router

HTTP surface for the consent orchestrator:

  POST /api/v1/payments/start            -- start (or restart) a flow
  GET  /api/v1/payments/callback         -- gateway redirect target (resume)
  POST /api/v1/payments/resume           -- app-foreground resume
  POST /api/v1/payments/redirect/open    -- redirect view shown
  POST /api/v1/payments/redirect/closed  -- redirect view dismissed
  GET  /api/v1/payments/state            -- current flow snapshot
  POST /api/v1/payments/reset            -- unconditional reset
  GET  /api/v1/payments/receipt          -- final consent of the last success

The "launcher" for an HTTP client is simply handing back the gateway URL;
the client opens it and the gateway sends the buyer to /callback.
"""

import collections
import logging
import urllib.parse

from fastapi import APIRouter, BackgroundTasks, Query, Request
from fastapi.responses import JSONResponse

from services.blinkpay_gateway_client import get_blinkpay_gateway_client
from services.consent_orchestrator import ConsentOrchestrator
from services.payment_errors import LaunchError
from services.payment_flow_models import parse_flow_kind
from services.redirect_return_service import parse_redirect_return
from services.shopping_cart_service import get_shopping_cart

logger = logging.getLogger("checkout.payments_router")

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


def _error_response(http_status_code, error_code, error_message):
  """Build a standard error envelope."""
  return JSONResponse(
    status_code=http_status_code,
    content={
      "ok": False,
      "data": None,
      "error": {"code": error_code, "message": error_message},
    },
  )


def _success_response(data, http_status_code=200):
  """Build a standard success envelope."""
  return JSONResponse(
    status_code=http_status_code,
    content={"ok": True, "data": data, "error": None},
  )


# =========================================================================
# Collaborators for the HTTP client
# =========================================================================

class PendingRedirectLauncher:
  """
  Checks the gateway URL is openable in a browser. The URL itself reaches
  the client through the state snapshot.
  """

  async def __call__(self, url):
    parts = urllib.parse.urlsplit(url or "")
    if parts.scheme not in ("https", "http") or not parts.netloc:
      raise LaunchError(f"Cannot launch non-web URL in browser: {url!r}")
    logger.info("Redirect URL ready for client: %s", url)


class UserMessageLog:
  """Keeps the most recent status messages for GET /state."""

  def __init__(self, max_messages=20):
    self.messages = collections.deque(maxlen=max_messages)

  def __call__(self, success, message):
    logger.info("User message (success=%s): %s", success, message)
    self.messages.append({"success": bool(success), "message": message})


def _log_reported_error(message):
  logger.error("Payment error reported to client: %s", message)


# =========================================================================
# Module-level singleton
# =========================================================================

_consent_orchestrator_singleton = None
_user_message_log = UserMessageLog()


def get_consent_orchestrator():
  """Get the process-wide orchestrator (one flow at a time)."""
  global _consent_orchestrator_singleton
  if _consent_orchestrator_singleton is None:
    _consent_orchestrator_singleton = ConsentOrchestrator(
      gateway=get_blinkpay_gateway_client(),
      cart=get_shopping_cart(),
      launch_redirect=PendingRedirectLauncher(),
      show_user_message=_user_message_log,
      report_error=_log_reported_error,
    )
  return _consent_orchestrator_singleton


def _state_payload(orchestrator):
  payload = orchestrator.state.to_dict()
  payload["messages"] = list(_user_message_log.messages)
  return payload


# =========================================================================
# POST /api/v1/payments/start
# =========================================================================

@router.post("/start")
async def start_payment_flow(request: Request):
  """
  Create a consent and hand back the gateway URL the buyer must visit.

  Request body (JSON):
    {
      "kind": "single" | "enduring" | "quick",
      "restart": false     // true supersedes a flow already in progress
    }
  """
  try:
    body = await request.json()
  except Exception:
    return _error_response(400, "INVALID_JSON", "Request body must be valid JSON")

  if not isinstance(body, dict):
    return _error_response(400, "INVALID_JSON", "Request body must be a JSON object")

  try:
    kind = parse_flow_kind(body.get("kind", ""))
  except ValueError:
    return _error_response(400, "INVALID_KIND", "'kind' must be one of: single, enduring, quick")

  orchestrator = get_consent_orchestrator()
  if body.get("restart") is True:
    state = await orchestrator.restart(kind)
  else:
    state = await orchestrator.start(kind)

  if state is None:
    return _error_response(
      409, "FLOW_ACTIVE",
      "A payment is already in progress. Finish it or restart the flow.",
    )

  if state.error:
    return _error_response(502, "PAYMENT_FLOW_ERROR", state.error)

  return _success_response(_state_payload(orchestrator))


# =========================================================================
# GET /api/v1/payments/callback  (gateway redirect target)
# =========================================================================

@router.get("/callback")
async def receive_gateway_redirect(
  background_tasks: BackgroundTasks,
  cid: str = Query(default=None),
  error: str = Query(default=None),
  error_description: str = Query(default=None),
):
  """
  The gateway sends the buyer here after the bank page. Verification runs
  in the background; clients follow it via GET /state.
  """
  orchestrator = get_consent_orchestrator()
  logger.info("Gateway redirect received: cid=%s, error=%s", cid, error)

  background_tasks.add_task(
    orchestrator.resume,
    consent_id=cid or None,
    error=error or None,
    error_description=error_description or None,
  )
  return _success_response(_state_payload(orchestrator))


# =========================================================================
# POST /api/v1/payments/resume  (app-foreground)
# =========================================================================

@router.post("/resume")
async def resume_payment_flow(request: Request):
  """
  Resume after the buyer returns. Waits for verification to finish.

  Request body (JSON), either:
    {"return_url": "<full gateway return URL>"}
  or:
    {"consent_id": "...", "error": "...", "error_description": "..."}
  """
  try:
    body = await request.json()
  except Exception:
    body = {}
  if not isinstance(body, dict):
    return _error_response(400, "INVALID_JSON", "Request body must be a JSON object")

  if body.get("return_url"):
    redirect_return = parse_redirect_return(body["return_url"])
    if redirect_return is None:
      return _error_response(400, "UNRECOGNISED_RETURN_URL", "Return URL does not match the redirect URI")
    consent_id = redirect_return.consent_id
    error = redirect_return.error
    error_description = redirect_return.error_description
  else:
    consent_id = body.get("consent_id") or None
    error = body.get("error") or None
    error_description = body.get("error_description") or None

  orchestrator = get_consent_orchestrator()
  await orchestrator.resume(consent_id=consent_id, error=error, error_description=error_description)
  return _success_response(_state_payload(orchestrator))


# =========================================================================
# Redirect bookkeeping, state, reset, receipt
# =========================================================================

@router.post("/redirect/open")
async def mark_redirect_open():
  orchestrator = get_consent_orchestrator()
  await orchestrator.mark_redirect_open()
  return _success_response(_state_payload(orchestrator))


@router.post("/redirect/closed")
async def mark_redirect_closed():
  orchestrator = get_consent_orchestrator()
  await orchestrator.mark_redirect_closed()
  return _success_response(_state_payload(orchestrator))


@router.get("/state")
async def get_payment_state():
  return _success_response(_state_payload(get_consent_orchestrator()))


@router.post("/reset")
async def reset_payment_flow():
  """Unconditionally return to Idle and empty the cart."""
  orchestrator = get_consent_orchestrator()
  await orchestrator.reset_payment_state()
  _user_message_log.messages.clear()
  return _success_response(_state_payload(orchestrator))


@router.get("/receipt")
async def get_last_receipt():
  orchestrator = get_consent_orchestrator()
  if orchestrator.last_receipt is None:
    return _error_response(404, "NO_RECEIPT", "No completed payment yet")
  return _success_response(orchestrator.last_receipt)
