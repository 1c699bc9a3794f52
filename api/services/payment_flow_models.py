"""
BlinkPay Checkout -- Flow Data Model

Closed enums for everything the gateway sends back as strings, plus the
small immutable records the orchestrator passes around.

Wire status strings are parsed here, once, on receipt. Anything we do not
recognise becomes UNKNOWN instead of raising.
"""

import dataclasses
import enum

import config


class FlowKind(enum.Enum):
  SINGLE = "single"
  ENDURING = "enduring"
  QUICK = "quick"  # combined consent + payment


class FlowPhase(enum.Enum):
  IDLE = "idle"
  CREATING_CONSENT = "creating_consent"
  AWAITING_REDIRECT = "awaiting_redirect"
  VERIFYING = "verifying"
  ERROR = "error"


class ConsentStatus(enum.Enum):
  AUTHORISED = "Authorised"
  AWAITING_AUTHORISATION = "AwaitingAuthorisation"
  GATEWAY_AWAITING_SUBMISSION = "GatewayAwaitingSubmission"
  REJECTED = "Rejected"
  REVOKED = "Revoked"
  GATEWAY_TIMEOUT = "GatewayTimeout"
  UNKNOWN = "Unknown"


class PaymentStatus(enum.Enum):
  ACCEPTED_SETTLEMENT_COMPLETED = "AcceptedSettlementCompleted"
  ACCEPTED_SETTLEMENT_IN_PROCESS = "AcceptedSettlementInProcess"
  PENDING = "Pending"
  REJECTED = "Rejected"
  UNKNOWN = "Unknown"


# Bank is still working on it; worth another look before giving up.
PENDING_CONSENT_STATUSES = frozenset({
  ConsentStatus.AWAITING_AUTHORISATION,
  ConsentStatus.GATEWAY_AWAITING_SUBMISSION,
})

_BUSY_PHASES = frozenset({
  FlowPhase.CREATING_CONSENT,
  FlowPhase.AWAITING_REDIRECT,
  FlowPhase.VERIFYING,
})


def parse_flow_kind(raw_value):
  """Parse 'single' / 'enduring' / 'quick' (case-insensitive). Raises ValueError."""
  if isinstance(raw_value, FlowKind):
    return raw_value
  return FlowKind(str(raw_value or "").strip().lower())


def parse_consent_status(raw_value):
  try:
    return ConsentStatus(raw_value)
  except ValueError:
    return ConsentStatus.UNKNOWN


def parse_payment_status(raw_value):
  try:
    return PaymentStatus(raw_value)
  except ValueError:
    return PaymentStatus.UNKNOWN


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class FlowIdentity:
  """The consent currently being processed. At most one is live at a time."""
  consent_id: str
  kind: FlowKind

  def to_dict(self):
    return {"consent_id": self.consent_id, "kind": self.kind.value}


def truncate_pcr_value(value, max_length=None):
  """Gateway rejects PCR fields longer than PCR_MAX_LENGTH; cut, don't fail."""
  if value is None:
    return None
  if max_length is None:
    max_length = config.PCR_MAX_LENGTH
  return value[:max_length]


@dataclasses.dataclass(frozen=True)
class PCR:
  """Particulars / code / reference shown on the buyer's bank statement."""
  particulars: str
  code: str = None
  reference: str = None

  def to_wire(self):
    wire = {"particulars": truncate_pcr_value(self.particulars)}
    if self.code is not None:
      wire["code"] = truncate_pcr_value(self.code)
    if self.reference is not None:
      wire["reference"] = truncate_pcr_value(self.reference)
    return wire


@dataclasses.dataclass(frozen=True)
class FlowState:
  """Snapshot handed to observers. Never mutated after creation."""
  phase: FlowPhase = FlowPhase.IDLE
  identity: FlowIdentity = None
  error: str = None
  redirect_open: bool = False
  redirect_url: str = None

  @property
  def is_loading(self):
    return self.phase in (FlowPhase.CREATING_CONSENT, FlowPhase.VERIFYING)

  @property
  def is_disabled(self):
    return self.phase in _BUSY_PHASES

  def to_dict(self):
    return {
      "phase": self.phase.value,
      "identity": self.identity.to_dict() if self.identity else None,
      "error": self.error,
      "redirect_open": self.redirect_open,
      "redirect_url": self.redirect_url,
      "is_loading": self.is_loading,
      "is_disabled": self.is_disabled,
    }


# ---------------------------------------------------------------------------
# Consent document helpers
#
# Single and enduring consents carry status/payments at the top level.
# Quick payments nest them under "consent".
# ---------------------------------------------------------------------------

def _consent_body(consent_document):
  if not isinstance(consent_document, dict):
    return {}
  if "status" not in consent_document and isinstance(consent_document.get("consent"), dict):
    return consent_document["consent"]
  return consent_document


def read_consent_status(consent_document):
  return parse_consent_status(_consent_body(consent_document).get("status"))


def list_consent_payments(consent_document):
  payments = _consent_body(consent_document).get("payments")
  if not isinstance(payments, list):
    return []
  return [payment for payment in payments if isinstance(payment, dict)]


def read_payment_id(payment):
  payment_id = payment.get("payment_id") or payment.get("id")
  return str(payment_id) if payment_id is not None else None


def find_payment(consent_document, payment_id):
  """
  Locate a payment record inside a consent document.
  payment_id=None means "whichever payment is listed first" (quick payments
  are created by the gateway, so we may not know the id up front).
  Returns the payment dict, or None if it is not visible yet.
  """
  payments = list_consent_payments(consent_document)
  if payment_id is None:
    return payments[0] if payments else None
  for payment in payments:
    if read_payment_id(payment) == str(payment_id):
      return payment
  return None
