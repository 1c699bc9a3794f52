"""
BlinkPay Checkout -- BlinkPay Gateway Client

BlinkPay Payments API integration using direct HTTP calls via httpx.

Endpoints used:
  POST   /oauth2/token                          -- client_credentials bearer token
  POST   /payments/v1/single-consents           -- single consent
  POST   /payments/v1/enduring-consents         -- enduring (recurring) consent
  POST   /payments/v1/quick-payments            -- combined consent + payment
  GET    /payments/v1/{kind}/{id}               -- status document
  POST   /payments/v1/payments                  -- draw a payment on a consent
  DELETE /payments/v1/{kind}/{id}               -- revoke

No UI or state-machine knowledge lives here.
"""

import asyncio
import datetime
import logging
import time
from zoneinfo import ZoneInfo

import httpx

import config
from services.payment_errors import (
  AuthError,
  AuthTimeoutError,
  ConsentCreationError,
  GatewayApiError,
  GatewayNetworkError,
  PaymentCreationError,
  VerificationError,
)
from services.payment_flow_models import FlowKind
from services.payment_gateway_interface import PaymentGatewayInterface

logger = logging.getLogger("checkout.gateway")

_CONSENT_PATHS_BY_KIND = {
  FlowKind.SINGLE: "/payments/v1/single-consents",
  FlowKind.ENDURING: "/payments/v1/enduring-consents",
  FlowKind.QUICK: "/payments/v1/quick-payments",
}

_PAYMENTS_PATH = "/payments/v1/payments"
_TOKEN_PATH = "/oauth2/token"

# DELETE outcomes. 409 = someone already revoked it; 422 = probably completed.
_REVOKE_RESULTS_BY_STATUS = {204: True, 409: True, 422: False}


def format_merchant_timestamp(moment=None, timezone_name=None):
  """
  ISO-8601 local time in the merchant's zone with an explicit numeric
  offset and millisecond precision, e.g. 2026-10-19T14:03:07.412+13:00.
  """
  zone = ZoneInfo(timezone_name or config.MERCHANT_TIMEZONE)
  if moment is None:
    moment = datetime.datetime.now(zone)
  else:
    moment = moment.astimezone(zone)
  return moment.isoformat(timespec="milliseconds")


def _money(total):
  return {"total": total, "currency": config.CURRENCY}


class BlinkPayGatewayClient(PaymentGatewayInterface):
  """BlinkPay Payments API v1 client."""

  def __init__(
    self,
    api_host=None,
    client_id=None,
    client_secret=None,
    redirect_uri=None,
    transport=None,
    clock=time.time,
  ):
    self.api_base_url = f"https://{api_host or config.BLINKPAY_API_HOST}"
    self.client_id = client_id if client_id is not None else config.BLINKPAY_CLIENT_ID
    self.client_secret = client_secret if client_secret is not None else config.BLINKPAY_CLIENT_SECRET
    self.redirect_uri = redirect_uri or config.REDIRECT_URI
    self.request_timeout_seconds = config.GATEWAY_REQUEST_TIMEOUT_SECONDS
    self._transport = transport
    self._clock = clock

    self._access_token = None
    self._access_token_expires_at = 0
    # Single-flight: overlapping callers wait for one refresh, then reuse it.
    self._token_lock = asyncio.Lock()

  def _http_client(self, timeout_seconds):
    return httpx.AsyncClient(
      base_url=self.api_base_url,
      timeout=timeout_seconds,
      transport=self._transport,
    )

  # -----------------------------------------------------------------------
  # OAuth2 bearer token
  # -----------------------------------------------------------------------

  async def _get_access_token(self):
    """
    Get a bearer token via client_credentials. Cached until near expiry.
    The whole exchange is bounded by TOKEN_REQUEST_TIMEOUT_SECONDS.
    """
    async with self._token_lock:
      if self._access_token and self._clock() < self._access_token_expires_at:
        return self._access_token

      timeout_seconds = config.TOKEN_REQUEST_TIMEOUT_SECONDS
      try:
        async with self._http_client(timeout_seconds) as http_client:
          response = await asyncio.wait_for(
            http_client.post(
              _TOKEN_PATH,
              json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
              },
            ),
            timeout=timeout_seconds,
          )
      except (asyncio.TimeoutError, httpx.TimeoutException) as timeout_error:
        logger.error("BlinkPay token request timed out after %ss", timeout_seconds)
        raise AuthTimeoutError(
          f"Authentication token request timeout after {timeout_seconds}s"
        ) from timeout_error
      except httpx.RequestError as network_error:
        logger.error("BlinkPay token request failed: %s", network_error)
        raise AuthError(f"Authentication token request failed: {network_error}") from network_error

      if response.status_code != 200:
        logger.error(
          "BlinkPay token request rejected: HTTP %s %s",
          response.status_code, response.text[:200],
        )
        raise AuthError(f"Failed to get token: HTTP {response.status_code}")

      try:
        token_data = response.json()
        if not isinstance(token_data, dict):
          raise ValueError(f"token response is {type(token_data).__name__}, not an object")
        expires_in = int(token_data.get("expires_in", 3600))
      except (ValueError, TypeError) as decode_error:
        logger.error("BlinkPay token response unreadable: %s %s", decode_error, response.text[:200])
        raise AuthError("Failed to get token: unreadable token response") from decode_error

      access_token = token_data.get("access_token")
      if not access_token:
        raise AuthError("Failed to get token: no access_token in response")

      self._access_token = access_token
      self._access_token_expires_at = (
        self._clock() + expires_in - config.TOKEN_EXPIRY_MARGIN_SECONDS
      )

      logger.info("BlinkPay OAuth2 token refreshed (expires_in=%s)", expires_in)
      return self._access_token

  def _forget_access_token(self):
    self._access_token = None
    self._access_token_expires_at = 0

  # -----------------------------------------------------------------------
  # Transport
  # -----------------------------------------------------------------------

  async def _send(self, method, endpoint, body=None):
    """Authenticated request. Returns the httpx.Response, whatever its status."""
    token = await self._get_access_token()
    headers = {"Authorization": f"Bearer {token}"}

    try:
      async with self._http_client(self.request_timeout_seconds) as http_client:
        response = await http_client.request(method, endpoint, json=body, headers=headers)
    except httpx.TimeoutException as timeout_error:
      logger.error("BlinkPay %s %s timed out", method, endpoint)
      raise GatewayNetworkError("Network connection to gateway timed out") from timeout_error
    except httpx.RequestError as network_error:
      logger.error("BlinkPay %s %s network error: %s", method, endpoint, network_error)
      raise GatewayNetworkError(
        f"Network error talking to gateway: {type(network_error).__name__}"
      ) from network_error

    if response.status_code == 401:
      # Token revoked server-side; next call fetches a fresh one.
      self._forget_access_token()

    return response

  async def _request_json(self, method, endpoint, body=None):
    response = await self._send(method, endpoint, body)
    if response.status_code in (200, 201):
      try:
        response_data = response.json()
      except ValueError:
        response_data = None
      if isinstance(response_data, dict):
        return response_data
      logger.error(
        "BlinkPay API returned a non-object body (%s %s): HTTP %s %s",
        method, endpoint, response.status_code, response.text[:500],
      )
      raise GatewayApiError(
        f"API request failed: unreadable body with HTTP {response.status_code}",
        status_code=response.status_code,
        response_text=response.text,
      )

    logger.error(
      "BlinkPay API error (%s %s): HTTP %s %s",
      method, endpoint, response.status_code, response.text[:500],
    )
    raise GatewayApiError(
      f"API request failed: HTTP {response.status_code}",
      status_code=response.status_code,
      response_text=response.text,
    )

  # -----------------------------------------------------------------------
  # Consents
  # -----------------------------------------------------------------------

  def _build_consent_payload(self, kind, pcr, amount, max_amount):
    flow = {"detail": {"type": "gateway", "redirect_uri": self.redirect_uri}}

    if kind == FlowKind.ENDURING:
      return {
        "flow": flow,
        "maximum_amount_period": _money(max_amount or amount),
        "period": config.ENDURING_PERIOD,
        "from_timestamp": format_merchant_timestamp(),
        "maximum_amount_payment": _money(amount),
      }

    return {
      "flow": flow,
      "pcr": pcr.to_wire(),
      "amount": _money(amount),
    }

  async def create_consent(self, kind, pcr, amount, max_amount=None):
    """
    Create a single, enduring or quick-payment consent.
    Returns (consent_id, redirect_url).
    """
    payload = self._build_consent_payload(kind, pcr, amount, max_amount)
    endpoint = _CONSENT_PATHS_BY_KIND[kind]

    try:
      consent_data = await self._request_json("POST", endpoint, payload)
    except GatewayApiError as api_error:
      raise ConsentCreationError(
        f"Consent creation failed: HTTP {api_error.status_code}"
      ) from api_error

    if kind == FlowKind.QUICK:
      consent_id = consent_data.get("quick_payment_id") or consent_data.get("consent_id")
    else:
      consent_id = consent_data.get("consent_id")
    redirect_url = consent_data.get("redirect_uri")

    if not consent_id or not isinstance(consent_id, str):
      raise ConsentCreationError("No valid consent ID returned from consent creation")
    if not redirect_url or not isinstance(redirect_url, str):
      raise ConsentCreationError("No redirect URI provided by consent creation")

    logger.info(
      "BlinkPay consent created: kind=%s, consent_id=%s, amount=%s",
      kind.value, consent_id, amount,
    )
    return consent_id, redirect_url

  async def get_consent(self, consent_id, kind):
    """Fetch the consent (or quick payment) status document."""
    try:
      return await self._request_json("GET", f"{_CONSENT_PATHS_BY_KIND[kind]}/{consent_id}")
    except GatewayApiError as api_error:
      raise VerificationError(
        f"Status verification failed: HTTP {api_error.status_code}"
      ) from api_error

  async def revoke_consent(self, consent_id, kind):
    """
    Revoke a consent. True on 204 (revoked) and 409 (already revoked),
    False on 422 (may have completed). Anything else raises GatewayApiError.
    """
    response = await self._send("DELETE", f"{_CONSENT_PATHS_BY_KIND[kind]}/{consent_id}")

    if response.status_code in _REVOKE_RESULTS_BY_STATUS:
      revoked = _REVOKE_RESULTS_BY_STATUS[response.status_code]
      logger.info(
        "BlinkPay consent revoke: consent_id=%s, kind=%s, http=%s, revoked=%s",
        consent_id, kind.value, response.status_code, revoked,
      )
      return revoked

    logger.error(
      "BlinkPay revoke failed: consent_id=%s, HTTP %s %s",
      consent_id, response.status_code, response.text[:500],
    )
    raise GatewayApiError(
      f"Revocation failed: HTTP {response.status_code}",
      status_code=response.status_code,
      response_text=response.text,
    )

  # -----------------------------------------------------------------------
  # Payments
  # -----------------------------------------------------------------------

  async def create_payment(self, consent_id, pcr=None, amount=None):
    """
    Draw a payment on an authorised consent and return its payment id.
    Single consents already carry the amount, so pcr/amount are omitted.
    """
    payload = {"consent_id": consent_id}
    if pcr is not None and amount is not None:
      payload["pcr"] = pcr.to_wire()
      payload["amount"] = _money(amount)

    try:
      payment_data = await self._request_json("POST", _PAYMENTS_PATH, payload)
    except GatewayApiError as api_error:
      raise PaymentCreationError(
        f"Failed to create payment: HTTP {api_error.status_code}"
      ) from api_error

    payment_id = payment_data.get("payment_id")
    if not payment_id or not isinstance(payment_id, str):
      logger.error("Payment ID missing or invalid in response: %s", payment_data)
      raise PaymentCreationError("Payment ID missing or invalid in API response")

    logger.info("BlinkPay payment created: consent_id=%s, payment_id=%s", consent_id, payment_id)
    return payment_id


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_blinkpay_client_singleton = None


def get_blinkpay_gateway_client():
  """Get the BlinkPay gateway client singleton."""
  global _blinkpay_client_singleton
  if _blinkpay_client_singleton is None:
    _blinkpay_client_singleton = BlinkPayGatewayClient()
  return _blinkpay_client_singleton
