"""
BlinkPay Checkout -- Redirect Return Service

Turns the URL the gateway sends the buyer back to into resume() arguments.
The gateway appends:
  cid                -- consent id (absent for some flows)
  error              -- set when the bank declined or the buyer cancelled
  error_description  -- human-readable detail for error
"""

import dataclasses
import logging
import urllib.parse

import config

logger = logging.getLogger("checkout.redirect_return")


@dataclasses.dataclass(frozen=True)
class RedirectReturn:
  consent_id: str = None
  error: str = None
  error_description: str = None


def _first_non_empty(query_parameters, name):
  values = query_parameters.get(name) or []
  for value in values:
    if value.strip():
      return value.strip()
  return None


def parse_redirect_return(return_url, redirect_uri=None):
  """
  Parse a gateway return URL. Returns None for URLs that are not ours.
  parse_qs already percent-decodes the values.
  """
  expected_prefix = redirect_uri or config.REDIRECT_URI
  if not return_url or not return_url.startswith(expected_prefix):
    logger.info("Ignoring return URL from unexpected source: %s", return_url)
    return None

  query_parameters = urllib.parse.parse_qs(urllib.parse.urlsplit(return_url).query)
  redirect_return = RedirectReturn(
    consent_id=_first_non_empty(query_parameters, "cid"),
    error=_first_non_empty(query_parameters, "error"),
    error_description=_first_non_empty(query_parameters, "error_description"),
  )
  logger.info(
    "Redirect return received: consent_id=%s, error=%s",
    redirect_return.consent_id, redirect_return.error,
  )
  return redirect_return
