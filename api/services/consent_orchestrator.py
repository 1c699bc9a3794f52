"""
BlinkPay Checkout -- Consent Orchestrator

The consent/payment state machine:

  Idle -> CreatingConsent -> AwaitingRedirect -> Verifying -> Idle
                 |                  |                |
                 +------------------+----------------+--> Error -> Idle

One flow at a time. Every gateway call and the redirect hand-off are
suspension points, and the flow may be reset or superseded while we are
suspended. So each continuation captures (attempt, identity) before it
awaits, and re-checks both plus the expected phase under the state lock
before it touches anything. A continuation that lost the race raises
StaleContextError internally and becomes a no-op.

The lock is never held across a gateway call; it only serializes the
check-then-mutate of phase/identity/error.
"""

import asyncio
import dataclasses
import logging

import config
from services.completion_poller import CompletionPoller
from services.payment_errors import (
  CompletionTimeoutError,
  PaymentFlowError,
  StaleContextError,
  VerificationError,
  get_user_friendly_message,
)
from services.payment_flow_models import (
  PCR,
  ConsentStatus,
  FlowIdentity,
  FlowKind,
  FlowPhase,
  FlowState,
  PENDING_CONSENT_STATUSES,
  find_payment,
  parse_flow_kind,
  read_consent_status,
  read_payment_id,
)
from services.shopping_cart_service import ShoppingCart

logger = logging.getLogger("checkout.orchestrator")

LAUNCH_FAILED_MESSAGE = "Failed to open payment page."
VERIFYING_MESSAGE = "Verifying payment status..."
COMPLETED_MESSAGE = "Payment completed successfully!"


class ConsentOrchestrator:
  """
  Owns the current flow's phase and identity.

  Collaborators (all optional):
    launch_redirect(url)            -- async; shows the gateway page to the buyer
    show_user_message(success, msg) -- transient status message
    report_error(msg)               -- error-reporting hook for launch failures
  """

  def __init__(
    self,
    gateway,
    cart=None,
    poller=None,
    launch_redirect=None,
    show_user_message=None,
    report_error=None,
    pending_recheck_attempts=None,
    recheck_interval_seconds=None,
    sleep=asyncio.sleep,
  ):
    self.gateway = gateway
    self.cart = cart if cart is not None else ShoppingCart()
    self.poller = poller if poller is not None else CompletionPoller(gateway, sleep=sleep)
    self._launch_redirect = launch_redirect
    self._show_user_message = show_user_message
    self._report_error = report_error
    self.pending_recheck_attempts = (
      pending_recheck_attempts if pending_recheck_attempts is not None
      else config.CONSENT_PENDING_RECHECK_ATTEMPTS
    )
    self.recheck_interval_seconds = (
      recheck_interval_seconds if recheck_interval_seconds is not None
      else config.STATUS_POLL_INTERVAL_SECONDS
    )
    self._sleep = sleep

    self._state = FlowState()
    self._attempt = 0
    self._state_lock = asyncio.Lock()
    self._observers = []
    self.last_receipt = None

  # -----------------------------------------------------------------------
  # Observers
  # -----------------------------------------------------------------------

  @property
  def state(self):
    return self._state

  def subscribe(self, observer):
    """observer(FlowState) is called after every state change. Returns an unsubscribe callable."""
    self._observers.append(observer)

    def unsubscribe():
      if observer in self._observers:
        self._observers.remove(observer)

    return unsubscribe

  def _notify_observers(self, snapshot):
    for observer in list(self._observers):
      try:
        observer(snapshot)
      except Exception as observer_error:
        logger.error("State observer %r failed: %s", observer, observer_error)

  # -----------------------------------------------------------------------
  # State mutation (caller holds _state_lock)
  # -----------------------------------------------------------------------

  def _set_state(self, **changes):
    new_state = dataclasses.replace(self._state, **changes)

    # Error text only lives in the Error phase; Idle has no flow context.
    if new_state.phase != FlowPhase.ERROR and new_state.error is not None:
      new_state = dataclasses.replace(new_state, error=None)
    if new_state.phase == FlowPhase.IDLE and (new_state.identity or new_state.redirect_url):
      new_state = dataclasses.replace(new_state, identity=None, redirect_url=None)

    if new_state == self._state:
      return
    if new_state.phase != self._state.phase:
      logger.info("Payment state changed: %s -> %s", self._state.phase.value, new_state.phase.value)
    self._state = new_state
    self._notify_observers(new_state)

  def _is_current(self, attempt, expected_phase, identity=None):
    return (
      attempt == self._attempt
      and self._state.phase == expected_phase
      and self._state.identity == identity
    )

  def _ensure_current(self, attempt, expected_phase, identity=None):
    if not self._is_current(attempt, expected_phase, identity):
      raise StaleContextError(
        f"flow changed (attempt {attempt} vs {self._attempt}, "
        f"phase {self._state.phase.value}, expected {expected_phase.value})"
      )

  def _begin_attempt(self):
    prior_identity = self._state.identity
    self._attempt += 1
    self._set_state(
      phase=FlowPhase.CREATING_CONSENT,
      identity=None,
      error=None,
      redirect_url=None,
    )
    return self._attempt, prior_identity

  def _reset_locked(self, **extra_changes):
    self._attempt += 1
    self._set_state(
      phase=FlowPhase.IDLE, identity=None, error=None, redirect_url=None, **extra_changes
    )

  # -----------------------------------------------------------------------
  # Collaborator calls
  # -----------------------------------------------------------------------

  def _send_user_message(self, success, message):
    if self._show_user_message is None:
      return
    try:
      self._show_user_message(success, message)
    except Exception as message_error:
      logger.error("User message callback failed: %s", message_error)

  def _send_error_report(self, message):
    if self._report_error is None:
      return
    try:
      self._report_error(message)
    except Exception as report_error:
      logger.error("Error-report callback failed: %s", report_error)

  async def _revoke_best_effort(self, identity, reason):
    """Revocation failures are logged, never surfaced."""
    logger.info("Revoking consent %s (%s): %s", identity.consent_id, identity.kind.value, reason)
    try:
      revoked = await self.gateway.revoke_consent(identity.consent_id, identity.kind)
    except Exception as revoke_error:
      logger.error("Revocation of consent %s failed: %s", identity.consent_id, revoke_error)
      return False
    logger.info("Revocation status for %s: %s", identity.consent_id, revoked)
    return revoked

  def _build_pcr(self):
    return PCR(
      particulars=config.PRODUCT_NAME,
      code=config.PCR_CODE,
      reference=config.PCR_REFERENCE,
    )

  # -----------------------------------------------------------------------
  # Inbound: start / restart
  # -----------------------------------------------------------------------

  async def start(self, kind):
    """
    Start a new flow from Idle or Error. Returns the resulting state, or
    None when a flow is already in progress (the request is ignored).
    """
    kind = parse_flow_kind(kind)
    async with self._state_lock:
      if self._state.is_disabled:
        logger.info(
          "Ignoring start(%s): already processing (phase=%s)",
          kind.value, self._state.phase.value,
        )
        return None
      attempt, prior_identity = self._begin_attempt()

    return await self._create_consent_and_launch(attempt, kind, prior_identity)

  async def restart(self, kind):
    """Supersede whatever flow is in progress and start a new one."""
    kind = parse_flow_kind(kind)
    async with self._state_lock:
      attempt, prior_identity = self._begin_attempt()

    return await self._create_consent_and_launch(attempt, kind, prior_identity)

  async def _create_consent_and_launch(self, attempt, kind, prior_identity):
    if prior_identity is not None:
      # Proceed regardless of the outcome.
      await self._revoke_best_effort(prior_identity, "superseded by a new flow")

    try:
      async with self._state_lock:
        self._ensure_current(attempt, FlowPhase.CREATING_CONSENT)

      if kind == FlowKind.ENDURING:
        amount = self.cart.enduring_payment_amount()
        logger.info("Initiating enduring consent with max amount: %s", amount)
        consent_id, redirect_url = await self.gateway.create_consent(
          kind, self._build_pcr(), amount, max_amount=amount,
        )
      else:
        amount = self.cart.total_amount
        logger.info("Initiating %s consent for amount: %s", kind.value, amount)
        consent_id, redirect_url = await self.gateway.create_consent(kind, self._build_pcr(), amount)

      identity = FlowIdentity(consent_id, kind)
      async with self._state_lock:
        self._ensure_current(attempt, FlowPhase.CREATING_CONSENT)
        self._set_state(
          phase=FlowPhase.AWAITING_REDIRECT,
          identity=identity,
          redirect_url=redirect_url,
        )

    except StaleContextError as stale_error:
      logger.info("Dropping consent-creation result for superseded flow: %s", stale_error)
      return self._state

    except Exception as creation_error:
      logger.error("Error initiating %s consent: %s", kind.value, creation_error)
      async with self._state_lock:
        if not self._is_current(attempt, FlowPhase.CREATING_CONSENT):
          logger.info("Ignoring initiation error for an old attempt (phase=%s)", self._state.phase.value)
          return self._state
        user_message = get_user_friendly_message(str(creation_error))
        self._set_state(phase=FlowPhase.ERROR, identity=None, error=user_message)
      self._send_user_message(False, user_message)
      return self._state

    return await self._launch(attempt, identity, redirect_url)

  async def _launch(self, attempt, identity, redirect_url):
    async with self._state_lock:
      if not self._is_current(attempt, FlowPhase.AWAITING_REDIRECT, identity):
        logger.info("Launch skipped: flow changed before redirect")
        return self._state
      self._set_state(redirect_open=True)

    if self._launch_redirect is None:
      logger.warning("No redirect launcher configured; consent %s awaits manual redirect", identity.consent_id)
      return self._state

    try:
      logger.info("Launching redirect URL for consent %s", identity.consent_id)
      await self._launch_redirect(redirect_url)
    except Exception as launch_error:
      logger.error("Error launching URL for consent %s: %s", identity.consent_id, launch_error)
      async with self._state_lock:
        if not self._is_current(attempt, FlowPhase.AWAITING_REDIRECT, identity):
          logger.info("Ignoring launch failure for a flow that already moved on")
          return self._state
        # Identity and kind stay for diagnostics.
        self._set_state(
          phase=FlowPhase.ERROR,
          identity=identity,
          error=LAUNCH_FAILED_MESSAGE,
          redirect_open=False,
        )
      self._send_error_report(LAUNCH_FAILED_MESSAGE)

    return self._state

  # -----------------------------------------------------------------------
  # Inbound: resume (deep link / app foreground)
  # -----------------------------------------------------------------------

  async def resume(self, consent_id=None, error=None, error_description=None):
    """
    The buyer came back from the gateway. Verifies the current flow when
    consent_id matches it; a mismatched or missing id discards the flow.
    Returns the resulting state.
    """
    async with self._state_lock:
      if self._state.phase != FlowPhase.AWAITING_REDIRECT:
        logger.info("Ignoring resume for %s: phase is %s", consent_id, self._state.phase.value)
        return self._state

      identity = self._state.identity
      matches_current = consent_id is not None and consent_id == identity.consent_id
      error_for_current = error is not None and (consent_id is None or matches_current)

      if not (matches_current or error_for_current):
        logger.info(
          "Discarding stale resume: got consent %s, current is %s",
          consent_id, identity.consent_id,
        )
        self._reset_locked()
        return self._state

      attempt = self._attempt
      redirect_open = self._state.redirect_open
      self._set_state(phase=FlowPhase.VERIFYING)

    if not redirect_open:
      self._send_user_message(True, VERIFYING_MESSAGE)

    return await self._verify(attempt, identity, error, error_description)

  async def _read_consent_until_settled(self, attempt, identity):
    """Re-read while the bank is still authorising, up to pending_recheck_attempts extra reads."""
    for recheck in range(self.pending_recheck_attempts + 1):
      consent_document = await self.gateway.get_consent(identity.consent_id, identity.kind)
      async with self._state_lock:
        self._ensure_current(attempt, FlowPhase.VERIFYING, identity)

      status = read_consent_status(consent_document)
      logger.info("Consent %s status: %s", identity.consent_id, status.value)
      if status not in PENDING_CONSENT_STATUSES or recheck == self.pending_recheck_attempts:
        return consent_document
      await self._sleep(self.recheck_interval_seconds)

  async def _draw_payment(self, identity, consent_document):
    if identity.kind == FlowKind.QUICK:
      # The gateway already created it; id may not be listed yet.
      payment = find_payment(consent_document, None)
      return read_payment_id(payment) if payment else None

    if identity.kind == FlowKind.ENDURING:
      return await self.gateway.create_payment(
        identity.consent_id,
        pcr=self._build_pcr(),
        amount=self.cart.enduring_payment_amount(),
      )

    return await self.gateway.create_payment(identity.consent_id)

  async def _verify(self, attempt, identity, error, error_description):
    try:
      if error is not None:
        await self._revoke_best_effort(identity, f"gateway returned error {error}")
        raise VerificationError(
          f"Consent authorisation failed: {error} ({error_description or 'no description'})"
        )

      consent_document = await self._read_consent_until_settled(attempt, identity)
      status = read_consent_status(consent_document)

      if status != ConsentStatus.AUTHORISED:
        if status != ConsentStatus.REVOKED:
          await self._revoke_best_effort(identity, f"non-authorised status {status.value}")
        if status == ConsentStatus.UNKNOWN:
          raise PaymentFlowError("Unrecognised gateway status")
        raise VerificationError(f"Consent not authorised. Status: {status.value}")

      payment_id = await self._draw_payment(identity, consent_document)
      async with self._state_lock:
        self._ensure_current(attempt, FlowPhase.VERIFYING, identity)
      logger.info("Waiting for payment (%s) completion on consent %s", payment_id, identity.consent_id)

      poll_result = await self.poller.poll(identity.consent_id, payment_id, identity.kind)
      async with self._state_lock:
        self._ensure_current(attempt, FlowPhase.VERIFYING, identity)

      if not poll_result.succeeded:
        raise CompletionTimeoutError(
          f"Payment verification failed: {poll_result.outcome.value} "
          f"after {poll_result.attempts} attempts"
        )

      await self._complete(attempt, identity)

    except StaleContextError as stale_error:
      logger.info("Dropping verification result for superseded flow: %s", stale_error)

    except Exception as verification_error:
      logger.error("Payment check process error for consent %s: %s", identity.consent_id, verification_error)
      async with self._state_lock:
        if not self._is_current(attempt, FlowPhase.VERIFYING, identity):
          logger.info("Ignoring error for a previous/changed payment operation")
          return self._state
        user_message = get_user_friendly_message(str(verification_error))
        # Identity retained for diagnostics.
        self._set_state(phase=FlowPhase.ERROR, error=user_message)
      self._send_user_message(False, user_message)

    return self._state

  async def _complete(self, attempt, identity):
    if not self._state.redirect_open:
      self._send_user_message(True, COMPLETED_MESSAGE)

    try:
      receipt = await self.gateway.get_consent(identity.consent_id, identity.kind)
    except Exception as receipt_error:
      logger.warning("Could not fetch final consent %s: %s", identity.consent_id, receipt_error)
      receipt = None

    async with self._state_lock:
      self._ensure_current(attempt, FlowPhase.VERIFYING, identity)
      self.last_receipt = receipt
      self._reset_locked(redirect_open=False)
    self.cart.reset()
    logger.info("Payment flow for consent %s completed", identity.consent_id)

  # -----------------------------------------------------------------------
  # Inbound: resets and redirect bookkeeping
  # -----------------------------------------------------------------------

  async def reset(self):
    """Back to Idle from any phase; clears identity and error. Idempotent."""
    async with self._state_lock:
      self._reset_locked()
    return self._state

  async def reset_payment_state(self):
    """Unconditional clear: Idle, redirect closed, cart emptied."""
    async with self._state_lock:
      self._reset_locked(redirect_open=False)
    self.cart.reset()
    logger.info("State reset to idle")
    return self._state

  async def mark_redirect_open(self):
    async with self._state_lock:
      self._set_state(redirect_open=True)

  async def mark_redirect_closed(self):
    async with self._state_lock:
      if self._state.redirect_open:
        logger.info("Marking redirect view as closed")
      self._set_state(redirect_open=False)
