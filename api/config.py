"""
BlinkPay Checkout API -- Configuration

All configuration values with sensible defaults.
Override via environment variables (CHECKOUT_* prefix).
"""

import os

# --- API Settings ---
API_VERSION = "0.1.0"
API_HOST = os.environ.get("CHECKOUT_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("CHECKOUT_API_PORT", "8190"))

# --- Public URL (gateway redirects the buyer back here) ---
PUBLIC_BASE_URL = os.environ.get("CHECKOUT_PUBLIC_URL", "http://127.0.0.1:8190")
REDIRECT_URI = os.environ.get(
  "CHECKOUT_REDIRECT_URI", f"{PUBLIC_BASE_URL}/api/v1/payments/callback"
)

# --- BlinkPay REST API ---
# SECURITY: No hardcoded defaults -- must be set via environment variable or systemd unit
BLINKPAY_API_HOST = os.environ.get("CHECKOUT_BLINKPAY_API_HOST", "sandbox.debit.blinkpay.co.nz")
BLINKPAY_CLIENT_ID = os.environ.get("CHECKOUT_BLINKPAY_CLIENT_ID", "")
BLINKPAY_CLIENT_SECRET = os.environ.get("CHECKOUT_BLINKPAY_CLIENT_SECRET", "")

TOKEN_REQUEST_TIMEOUT_SECONDS = 10
TOKEN_EXPIRY_MARGIN_SECONDS = 30  # refresh slightly before the gateway's expiry
GATEWAY_REQUEST_TIMEOUT_SECONDS = float(os.environ.get("CHECKOUT_GATEWAY_TIMEOUT", "30"))

# --- Wire constants ---
CURRENCY = "NZD"
PCR_MAX_LENGTH = 12  # gateway limit for particulars/code/reference
ENDURING_PERIOD = "fortnightly"
MERCHANT_TIMEZONE = os.environ.get("CHECKOUT_MERCHANT_TIMEZONE", "Pacific/Auckland")

# --- Product / PCR ---
PRODUCT_NAME = os.environ.get("CHECKOUT_PRODUCT_NAME", "Red Heart Lollipop")
PCR_CODE = os.environ.get("CHECKOUT_PCR_CODE", "code-1234")
PCR_REFERENCE = os.environ.get("CHECKOUT_PCR_REFERENCE", "REF001")
UNIT_PRICE = os.environ.get("CHECKOUT_UNIT_PRICE", "1.00")
# Per-payment draw-down for enduring consents. "0.00" falls back to 2x cart total.
ENDURING_PAYMENT_AMOUNT = os.environ.get("CHECKOUT_ENDURING_PAYMENT_AMOUNT", "0.10")

# --- Completion polling ---
STATUS_POLL_MAX_ATTEMPTS = int(os.environ.get("CHECKOUT_POLL_MAX_ATTEMPTS", "10"))
STATUS_POLL_INTERVAL_SECONDS = float(os.environ.get("CHECKOUT_POLL_INTERVAL", "1.0"))

# Extra consent re-reads while the buyer's bank is still authorising
CONSENT_PENDING_RECHECK_ATTEMPTS = int(os.environ.get("CHECKOUT_PENDING_RECHECKS", "3"))
