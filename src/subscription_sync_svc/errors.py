"""
Error taxonomy for webhook ingestion and the mapping from failures to
HTTP responses.

Stripe redelivers any event answered with a non-2xx status, so the status
code chosen here decides whether a failure is retried:

* 400 - the request itself is bad (signature); redelivery cannot help.
* 200 with ``should_retry: false`` - a known business error; acknowledge so
  Stripe stops retrying.
* 500 with ``should_retry: true`` - transient; nothing was committed and a
  redelivery is safe.
"""
import logging
from typing import NamedTuple, Optional

import stripe
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError


class WebhookError(Exception):
    status_code = 500
    should_retry = True

    def __init__(self, message: str, event_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.event_id = event_id


class AuthenticationError(WebhookError):
    """Missing or invalid webhook signature."""
    status_code = 400
    should_retry = False


class ConfigurationError(WebhookError):
    """Operator error, e.g. the endpoint secret is not set."""
    status_code = 500
    should_retry = False


class TransientStoreError(WebhookError):
    """The store could not be reached; the transaction did not commit."""
    status_code = 500
    should_retry = True


class MalformedEventError(WebhookError):
    """The event verified but its content cannot be processed."""
    status_code = 200
    should_retry = False


class ProviderError(WebhookError):
    """
    A call back to Stripe failed. Invalid-request and authentication errors
    will fail identically on redelivery; connection, rate-limit and API
    errors may not.
    """

    def __init__(self, message: str, retryable: bool, event_id: Optional[str] = None) -> None:
        super().__init__(message, event_id)
        self.should_retry = retryable
        self.status_code = 500 if retryable else 200


class HandlerPreconditionMiss(WebhookError):
    """The event's subject is not known locally. Acknowledged as a no-op."""
    status_code = 200
    should_retry = False


class SideEffectFailure(WebhookError):
    """A notification or analytics call failed. Never surfaced to Stripe."""
    status_code = 200
    should_retry = False


_NON_RETRYABLE_STRIPE_ERRORS = (
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
)

_RETRYABLE_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


class ErrorClassification(NamedTuple):
    status_code: int
    should_retry: bool
    error_type: str


def from_stripe_error(error: Exception, event_id: Optional[str] = None) -> ProviderError:
    retryable = not isinstance(error, _NON_RETRYABLE_STRIPE_ERRORS)
    return ProviderError(f"Stripe request failed: {error}", retryable=retryable, event_id=event_id)


def from_store_error(error: Exception, event_id: Optional[str] = None) -> Exception:
    """Wrap connectivity failures from SQLAlchemy; integrity errors pass through."""
    if isinstance(error, IntegrityError):
        return error
    if isinstance(error, (OperationalError, DBAPIError)):
        return TransientStoreError(f"Store unavailable: {error.__class__.__name__}", event_id=event_id)
    return error


def classify_error(error: Exception) -> ErrorClassification:
    if isinstance(error, WebhookError):
        return ErrorClassification(error.status_code, error.should_retry, error.__class__.__name__)
    if isinstance(error, _NON_RETRYABLE_STRIPE_ERRORS):
        return ErrorClassification(200, False, error.__class__.__name__)
    if isinstance(error, _RETRYABLE_STRIPE_ERRORS):
        return ErrorClassification(500, True, error.__class__.__name__)
    if isinstance(error, IntegrityError):
        # A constraint other than the ledger key; redelivery will hit it again.
        return ErrorClassification(200, False, "IntegrityError")
    if isinstance(error, (OperationalError, DBAPIError)):
        return ErrorClassification(500, True, "TransientStoreError")
    logging.debug(f"Unclassified error {error.__class__.__name__}; treating as retryable")
    return ErrorClassification(500, True, error.__class__.__name__)
