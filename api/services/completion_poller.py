"""
BlinkPay Checkout -- Completion Poller

Payment completion is eventually-consistent state behind the consent
resource, not a push notification. Payment ids are scoped to their consent,
so each attempt re-reads the consent and looks the payment up inside it.

Per attempt:
  not visible yet          -> wait, retry
  AcceptedSettlementCompleted -> success, stop
  Rejected                 -> failure, stop (more polling cannot change it)
  anything else            -> wait, retry
  fetch raised             -> failure, stop

Worst case is max_attempts fetches with an interval between them. When the
budget runs out, single-use consents get a best-effort revoke; enduring
consents are left alone because they outlive this one draw-down.
"""

import asyncio
import dataclasses
import enum
import logging

import config
from services.payment_flow_models import (
  FlowKind,
  PaymentStatus,
  find_payment,
  parse_payment_status,
  read_payment_id,
)

logger = logging.getLogger("checkout.poller")

_REVOKE_ON_TIMEOUT_KINDS = frozenset({FlowKind.SINGLE, FlowKind.QUICK})


class AttemptClassification(enum.Enum):
  TERMINAL_SUCCESS = "terminal_success"
  TERMINAL_FAILURE = "terminal_failure"
  RETRY = "retry"
  NOT_YET_FOUND = "not_yet_found"


class PollOutcome(enum.Enum):
  COMPLETED = "completed"
  REJECTED = "rejected"
  TIMED_OUT = "timed_out"
  ERROR = "error"


@dataclasses.dataclass(frozen=True)
class PollResult:
  outcome: PollOutcome
  attempts: int
  payment_id: str = None
  revoked: bool = None  # only set when a timeout revoke was attempted

  @property
  def succeeded(self):
    return self.outcome == PollOutcome.COMPLETED


def classify_attempt(consent_document, payment_id):
  """Returns (AttemptClassification, payment record or None)."""
  payment = find_payment(consent_document, payment_id)
  if payment is None:
    return AttemptClassification.NOT_YET_FOUND, None

  status = parse_payment_status(payment.get("status"))
  if status == PaymentStatus.ACCEPTED_SETTLEMENT_COMPLETED:
    return AttemptClassification.TERMINAL_SUCCESS, payment
  if status == PaymentStatus.REJECTED:
    return AttemptClassification.TERMINAL_FAILURE, payment
  return AttemptClassification.RETRY, payment


class CompletionPoller:
  """Bounded status polling for one payment on one consent."""

  def __init__(self, gateway, max_attempts=None, interval_seconds=None, sleep=asyncio.sleep):
    self.gateway = gateway
    self.max_attempts = max_attempts if max_attempts is not None else config.STATUS_POLL_MAX_ATTEMPTS
    self.interval_seconds = (
      interval_seconds if interval_seconds is not None else config.STATUS_POLL_INTERVAL_SECONDS
    )
    self._sleep = sleep

  async def poll(self, consent_id, payment_id, kind):
    """
    Poll until the payment reaches a terminal status or the attempt budget
    runs out. payment_id may be None for quick payments (first payment wins).
    Never raises; failures come back as a PollResult.
    """
    logger.info(
      "Waiting for payment completion: consent_id=%s, payment_id=%s, kind=%s",
      consent_id, payment_id, kind.value,
    )

    for attempt in range(1, self.max_attempts + 1):
      try:
        consent_document = await self.gateway.get_consent(consent_id, kind)
      except Exception as fetch_error:
        logger.error(
          "Status check attempt %d/%d failed for consent %s: %s",
          attempt, self.max_attempts, consent_id, fetch_error,
        )
        return PollResult(PollOutcome.ERROR, attempt, payment_id)

      classification, payment = classify_attempt(consent_document, payment_id)
      found_payment_id = read_payment_id(payment) if payment else payment_id

      if classification == AttemptClassification.TERMINAL_SUCCESS:
        logger.info("Payment %s completed (attempt %d)", found_payment_id, attempt)
        return PollResult(PollOutcome.COMPLETED, attempt, found_payment_id)

      if classification == AttemptClassification.TERMINAL_FAILURE:
        logger.info("Payment %s rejected (attempt %d)", found_payment_id, attempt)
        return PollResult(PollOutcome.REJECTED, attempt, found_payment_id)

      if classification == AttemptClassification.NOT_YET_FOUND:
        logger.info("Payment %s not visible yet (attempt %d/%d)", payment_id, attempt, self.max_attempts)
      else:
        logger.info(
          "Payment %s status=%s (attempt %d/%d)",
          found_payment_id, payment.get("status"), attempt, self.max_attempts,
        )

      if attempt < self.max_attempts:
        await self._sleep(self.interval_seconds)

    logger.warning(
      "Payment check timed out after %d attempts: consent_id=%s, payment_id=%s",
      self.max_attempts, consent_id, payment_id,
    )
    revoked = await self._revoke_after_timeout(consent_id, kind)
    return PollResult(PollOutcome.TIMED_OUT, self.max_attempts, payment_id, revoked)

  async def _revoke_after_timeout(self, consent_id, kind):
    if kind not in _REVOKE_ON_TIMEOUT_KINDS:
      logger.info("Enduring consent %s not revoked on timeout", consent_id)
      return None

    try:
      revoked = await self.gateway.revoke_consent(consent_id, kind)
    except Exception as revoke_error:
      logger.error("Error revoking consent %s after timeout: %s", consent_id, revoke_error)
      return False

    logger.info("Consent %s revocation after timeout: revoked=%s", consent_id, revoked)
    return revoked
