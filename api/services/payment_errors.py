"""
BlinkPay Checkout -- Payment Errors

Exception taxonomy for the consent/payment flow, plus the classification
step that turns raw technical error text into a user-facing message.

Raw detail (status codes, response bodies) is for logs only. Anything shown
to the buyer goes through get_user_friendly_message().
"""

import enum


class PaymentFlowError(Exception):
  """Base for every error raised by the checkout flow."""


class AuthError(PaymentFlowError):
  """Bearer token could not be obtained from the gateway."""


class AuthTimeoutError(AuthError):
  """Token exchange exceeded its hard timeout."""


class GatewayApiError(PaymentFlowError):
  """Gateway answered with a status we do not accept for this call."""

  def __init__(self, message, status_code=None, response_text=""):
    super().__init__(message)
    self.status_code = status_code
    self.response_text = (response_text or "")[:500]


class GatewayNetworkError(PaymentFlowError):
  """Transport-level failure talking to the gateway."""


class ConsentCreationError(PaymentFlowError):
  pass


class VerificationError(PaymentFlowError):
  pass


class PaymentCreationError(PaymentFlowError):
  pass


class CompletionTimeoutError(PaymentFlowError):
  pass


class LaunchError(PaymentFlowError):
  pass


class StaleContextError(PaymentFlowError):
  """
  A continuation woke up after its flow was superseded or reset.
  Internal to the orchestrator; never surfaced to the buyer.
  """


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class ErrorCategory(enum.Enum):
  AUTH_CONSENT = "auth_consent"
  VERIFICATION = "verification"
  NETWORK = "network"
  LAUNCH = "launch"
  GENERIC = "generic"


_USER_MESSAGES_BY_CATEGORY = {
  ErrorCategory.AUTH_CONSENT: (
    "There was an issue setting up or authorizing the payment with your bank. "
    "Please try again."
  ),
  ErrorCategory.VERIFICATION: (
    "Payment status check timed out or failed. "
    "Please check your bank app/account before retrying."
  ),
  ErrorCategory.NETWORK: (
    "Network error. Please check your internet connection and try again."
  ),
  ErrorCategory.LAUNCH: (
    "Could not open the bank app or website. "
    "Please ensure you have the necessary apps installed and try again."
  ),
  ErrorCategory.GENERIC: (
    "An unexpected error occurred during the payment process. Please try again later."
  ),
}


def _contains_any(*keywords):
  def predicate(lowercase_text):
    return any(keyword in lowercase_text for keyword in keywords)
  return predicate


# Evaluated top to bottom, first match wins.
_CLASSIFICATION_RULES = (
  (_contains_any("token", "authentication", "consent"), ErrorCategory.AUTH_CONSENT),
  (_contains_any("timeout", "verify", "verification"), ErrorCategory.VERIFICATION),
  (_contains_any("network", "socket", "connection"), ErrorCategory.NETWORK),
  (_contains_any("browser", "launch"), ErrorCategory.LAUNCH),
)


def classify_error_message(raw_error_message):
  """Map raw error text to an ErrorCategory (GENERIC if nothing matches)."""
  lowercase_text = str(raw_error_message or "").lower()
  for predicate, category in _CLASSIFICATION_RULES:
    if predicate(lowercase_text):
      return category
  return ErrorCategory.GENERIC


def get_user_friendly_message(raw_error_message):
  """Sanitized message for the buyer. Raw text is never echoed back."""
  return _USER_MESSAGES_BY_CATEGORY[classify_error_message(raw_error_message)]


def get_message_for_category(category):
  return _USER_MESSAGES_BY_CATEGORY[category]
