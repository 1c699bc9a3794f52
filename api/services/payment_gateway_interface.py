"""
BlinkPay Checkout -- Payment Gateway Interface

Abstract base for redirect-based consent gateways. The orchestrator and
poller only talk to this interface, so tests can hand them a fake.
"""

from abc import ABC, abstractmethod


class PaymentGatewayInterface(ABC):
  """Abstract base for consent/payment gateways."""

  @abstractmethod
  async def create_consent(self, kind, pcr, amount, max_amount=None):
    """
    Create a consent the buyer must authorise on the gateway's page.

    Args:
      kind: FlowKind.
      pcr: PCR record (ignored for enduring consents).
      amount: Decimal string, e.g. "1.00". For enduring consents this is
        the maximum per payment.
      max_amount: Enduring only -- maximum per period (defaults to amount).

    Returns: (consent_id, redirect_url). Both are always non-empty.
    """
    ...

  @abstractmethod
  async def get_consent(self, consent_id, kind):
    """Fetch the consent status document (dict) for a consent."""
    ...

  @abstractmethod
  async def create_payment(self, consent_id, pcr=None, amount=None):
    """
    Draw a payment against an authorised consent.
    pcr/amount are sent only when both are given (enduring draw-downs).

    Returns: the gateway's payment id (non-empty string).
    """
    ...

  @abstractmethod
  async def revoke_consent(self, consent_id, kind):
    """
    Revoke a consent.

    Returns: True if revoked (or already revoked), False if the gateway
    refused because the consent may have completed.
    """
    ...
