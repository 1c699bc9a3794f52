"""
BlinkPay Checkout -- Cart Router

  GET  /api/v1/cart            -- quantity, unit price, total
  POST /api/v1/cart/quantity   -- {"change": +1/-1} or {"quantity": n}

Quantity is locked while a payment flow is in progress.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from routers.payments import get_consent_orchestrator
from services.shopping_cart_service import get_shopping_cart

router = APIRouter(prefix="/api/v1/cart", tags=["cart"])


def _error_response(http_status_code, error_code, error_message):
  return JSONResponse(
    status_code=http_status_code,
    content={
      "ok": False,
      "data": None,
      "error": {"code": error_code, "message": error_message},
    },
  )


@router.get("")
async def get_cart():
  return JSONResponse(content={"ok": True, "data": get_shopping_cart().to_dict(), "error": None})


@router.post("/quantity")
async def update_cart_quantity(request: Request):
  try:
    body = await request.json()
  except Exception:
    return _error_response(400, "INVALID_JSON", "Request body must be valid JSON")
  if not isinstance(body, dict):
    return _error_response(400, "INVALID_JSON", "Request body must be a JSON object")

  if get_consent_orchestrator().state.is_disabled:
    return _error_response(409, "FLOW_ACTIVE", "Cart cannot change while a payment is in progress")

  cart = get_shopping_cart()
  if "quantity" in body:
    if not cart.set_quantity(body["quantity"]):
      return _error_response(400, "INVALID_QUANTITY", "'quantity' must be a positive integer")
  elif "change" in body:
    change = body["change"]
    if not isinstance(change, int) or isinstance(change, bool):
      return _error_response(400, "INVALID_QUANTITY", "'change' must be an integer")
    cart.change_quantity(change)
  else:
    return _error_response(400, "MISSING_FIELD", "'quantity' or 'change' is required")

  return JSONResponse(content={"ok": True, "data": cart.to_dict(), "error": None})
