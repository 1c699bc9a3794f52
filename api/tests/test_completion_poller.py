"""
BlinkPay Checkout -- Tests for the Completion Poller

Bounded polling of a payment inside its consent document:
  - success / rejection stop immediately
  - payments not visible yet are retried
  - the attempt budget is never exceeded, and sleeping stays inside it
  - single-use consents are revoked once on timeout, enduring ones never
"""

import asyncio
from unittest.mock import AsyncMock

from services.completion_poller import (
  AttemptClassification,
  CompletionPoller,
  PollOutcome,
  classify_attempt,
)
from services.payment_flow_models import FlowKind


def _consent_with_payment(payment_status, payment_id="p1"):
  return {
    "consent_id": "c1",
    "status": "Authorised",
    "payments": [{"payment_id": payment_id, "status": payment_status}],
  }


def _gateway_returning(*documents):
  """get_consent yields the documents in order, then repeats the last one."""
  gateway = AsyncMock()
  remaining = list(documents)

  def get_consent(consent_id, kind):
    return remaining.pop(0) if len(remaining) > 1 else remaining[0]

  gateway.get_consent.side_effect = get_consent
  gateway.revoke_consent.return_value = True
  return gateway


class SleepRecorder:

  def __init__(self):
    self.calls = []

  async def __call__(self, seconds):
    self.calls.append(seconds)


def _poller(gateway, max_attempts=10, interval_seconds=1.0):
  sleep = SleepRecorder()
  poller = CompletionPoller(gateway, max_attempts=max_attempts, interval_seconds=interval_seconds, sleep=sleep)
  return poller, sleep


# ===========================================================================
# Test: Per-attempt classification
# ===========================================================================

class TestClassifyAttempt:

  def test_completed_is_terminal_success(self):
    classification, payment = classify_attempt(_consent_with_payment("AcceptedSettlementCompleted"), "p1")
    assert classification == AttemptClassification.TERMINAL_SUCCESS
    assert payment["payment_id"] == "p1"

  def test_rejected_is_terminal_failure(self):
    classification, _ = classify_attempt(_consent_with_payment("Rejected"), "p1")
    assert classification == AttemptClassification.TERMINAL_FAILURE

  def test_in_process_and_pending_retry(self):
    for status in ("AcceptedSettlementInProcess", "Pending", "SomethingNew"):
      classification, _ = classify_attempt(_consent_with_payment(status), "p1")
      assert classification == AttemptClassification.RETRY

  def test_unknown_payment_id_not_yet_found(self):
    classification, payment = classify_attempt(_consent_with_payment("Pending", payment_id="other"), "p1")
    assert classification == AttemptClassification.NOT_YET_FOUND
    assert payment is None

  def test_none_payment_id_takes_first_listed(self):
    classification, payment = classify_attempt(_consent_with_payment("AcceptedSettlementCompleted", "q-pay"), None)
    assert classification == AttemptClassification.TERMINAL_SUCCESS
    assert payment["payment_id"] == "q-pay"

  def test_quick_payment_nested_consent(self):
    document = {
      "quick_payment_id": "q1",
      "consent": {"status": "Authorised", "payments": [{"payment_id": "p9", "status": "Rejected"}]},
    }
    classification, _ = classify_attempt(document, "p9")
    assert classification == AttemptClassification.TERMINAL_FAILURE


# ===========================================================================
# Test: Polling loop
# ===========================================================================

class TestPoll:

  def test_success_on_third_attempt(self):
    gateway = _gateway_returning(
      _consent_with_payment("Pending"),
      _consent_with_payment("AcceptedSettlementInProcess"),
      _consent_with_payment("AcceptedSettlementCompleted"),
    )
    poller, sleep = _poller(gateway)
    result = asyncio.run(poller.poll("c1", "p1", FlowKind.SINGLE))

    assert result.outcome == PollOutcome.COMPLETED
    assert result.succeeded
    assert result.attempts == 3
    assert result.payment_id == "p1"
    assert gateway.get_consent.await_count == 3
    assert sleep.calls == [1.0, 1.0]
    gateway.revoke_consent.assert_not_awaited()

  def test_rejected_stops_immediately(self):
    gateway = _gateway_returning(_consent_with_payment("Pending"), _consent_with_payment("Rejected"))
    poller, _ = _poller(gateway)
    result = asyncio.run(poller.poll("c1", "p1", FlowKind.SINGLE))

    assert result.outcome == PollOutcome.REJECTED
    assert not result.succeeded
    assert result.attempts == 2
    assert gateway.get_consent.await_count == 2
    gateway.revoke_consent.assert_not_awaited()

  def test_payment_not_visible_then_completed(self):
    gateway = _gateway_returning(
      {"consent_id": "c1", "status": "Authorised", "payments": []},
      {"consent_id": "c1", "status": "Authorised"},
      _consent_with_payment("AcceptedSettlementCompleted"),
    )
    poller, _ = _poller(gateway)
    result = asyncio.run(poller.poll("c1", "p1", FlowKind.SINGLE))
    assert result.outcome == PollOutcome.COMPLETED
    assert result.attempts == 3

  def test_quick_payment_without_known_id(self):
    gateway = _gateway_returning({
      "quick_payment_id": "q1",
      "consent": {
        "status": "Authorised",
        "payments": [{"payment_id": "gw-made", "status": "AcceptedSettlementCompleted"}],
      },
    })
    poller, _ = _poller(gateway)
    result = asyncio.run(poller.poll("q1", None, FlowKind.QUICK))
    assert result.succeeded
    assert result.payment_id == "gw-made"

  def test_timeout_respects_attempt_budget_and_revokes_once(self):
    gateway = _gateway_returning(_consent_with_payment("Pending"))
    poller, sleep = _poller(gateway, max_attempts=10, interval_seconds=1.0)
    result = asyncio.run(poller.poll("c1", "p1", FlowKind.SINGLE))

    assert result.outcome == PollOutcome.TIMED_OUT
    assert result.attempts == 10
    assert result.revoked is True
    assert gateway.get_consent.await_count == 10
    # No sleep after the final attempt
    assert len(sleep.calls) == 9
    assert sum(sleep.calls) <= 10 * 1.0
    gateway.revoke_consent.assert_awaited_once_with("c1", FlowKind.SINGLE)

  def test_quick_payment_timeout_revokes(self):
    gateway = _gateway_returning(_consent_with_payment("Pending"))
    poller, _ = _poller(gateway, max_attempts=2)
    result = asyncio.run(poller.poll("q1", None, FlowKind.QUICK))
    assert result.outcome == PollOutcome.TIMED_OUT
    gateway.revoke_consent.assert_awaited_once_with("q1", FlowKind.QUICK)

  def test_enduring_timeout_does_not_revoke(self):
    gateway = _gateway_returning(_consent_with_payment("Pending"))
    poller, _ = _poller(gateway, max_attempts=3)
    result = asyncio.run(poller.poll("e1", "p1", FlowKind.ENDURING))
    assert result.outcome == PollOutcome.TIMED_OUT
    assert result.revoked is None
    gateway.revoke_consent.assert_not_awaited()

  def test_revoke_failure_after_timeout_is_reported_not_raised(self):
    gateway = _gateway_returning(_consent_with_payment("Pending"))
    gateway.revoke_consent.side_effect = RuntimeError("gateway down")
    poller, _ = _poller(gateway, max_attempts=2)
    result = asyncio.run(poller.poll("c1", "p1", FlowKind.SINGLE))
    assert result.outcome == PollOutcome.TIMED_OUT
    assert result.revoked is False

  def test_fetch_error_stops_polling(self):
    gateway = AsyncMock()
    gateway.get_consent.side_effect = [_consent_with_payment("Pending"), RuntimeError("boom")]
    poller, _ = _poller(gateway)
    result = asyncio.run(poller.poll("c1", "p1", FlowKind.SINGLE))

    assert result.outcome == PollOutcome.ERROR
    assert result.attempts == 2
    assert gateway.get_consent.await_count == 2
    gateway.revoke_consent.assert_not_awaited()
