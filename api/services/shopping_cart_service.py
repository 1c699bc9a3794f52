"""
BlinkPay Checkout -- Shopping Cart Service

One product, a quantity, and a total. Amounts are integer cents internally
and only become decimal strings ("1.00") at the gateway boundary.
"""

import decimal
import logging

import config

logger = logging.getLogger("checkout.cart")


def parse_amount_to_cents(amount_text):
  """'1.00' -> 100. Raises ValueError on anything that isn't a money amount."""
  try:
    amount = decimal.Decimal(str(amount_text).strip())
  except decimal.InvalidOperation as parse_error:
    raise ValueError(f"Invalid amount: {amount_text!r}") from parse_error
  if not amount.is_finite() or amount < 0:
    raise ValueError(f"Invalid amount: {amount_text!r}")
  return int((amount * 100).quantize(decimal.Decimal("1"), rounding=decimal.ROUND_HALF_UP))


def format_cents_as_amount(amount_cents):
  """100 -> '1.00'"""
  return f"{amount_cents // 100}.{amount_cents % 100:02d}"


class ShoppingCart:
  """Quantity is always at least 1."""

  def __init__(self, unit_price=None):
    self.unit_price_cents = parse_amount_to_cents(unit_price or config.UNIT_PRICE)
    self.quantity = 1

  @property
  def total_cents(self):
    return self.unit_price_cents * self.quantity

  @property
  def total_amount(self):
    return format_cents_as_amount(self.total_cents)

  def change_quantity(self, change):
    self.quantity = max(1, self.quantity + int(change))
    return self.quantity

  def set_quantity(self, quantity):
    """Returns False (and keeps the old quantity) for anything below 1."""
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
      return False
    self.quantity = quantity
    return True

  def reset(self):
    self.quantity = 1
    logger.info("Cart reset")

  def enduring_payment_amount(self):
    """
    Per-payment (and per-period) maximum for an enduring consent.
    Uses ENDURING_PAYMENT_AMOUNT, or twice the cart total when that is zero.
    """
    configured_cents = parse_amount_to_cents(config.ENDURING_PAYMENT_AMOUNT)
    if configured_cents > 0:
      return format_cents_as_amount(configured_cents)
    return format_cents_as_amount(self.total_cents * 2)

  def to_dict(self):
    return {
      "product_name": config.PRODUCT_NAME,
      "quantity": self.quantity,
      "unit_price": format_cents_as_amount(self.unit_price_cents),
      "total": self.total_amount,
      "currency": config.CURRENCY,
    }


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_shopping_cart_singleton = None


def get_shopping_cart():
  """Get the process-wide cart singleton."""
  global _shopping_cart_singleton
  if _shopping_cart_singleton is None:
    _shopping_cart_singleton = ShoppingCart()
  return _shopping_cart_singleton
