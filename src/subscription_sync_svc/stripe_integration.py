import json
import time
import logging
from typing import Any, Dict, Optional

import stripe

from subscription_sync_svc.config import get_settings
from subscription_sync_svc.errors import (
    AuthenticationError,
    ConfigurationError,
    MalformedEventError,
    from_stripe_error,
)

SIGNATURE_TOLERANCE_SECONDS = 300


def _to_plain(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return json.loads(json.dumps(obj))
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class StripeIntegration:
    """
    Encapsulates the two calls this service makes to Stripe: verifying
    inbound webhook payloads and re-fetching a subscription when a webhook
    only carries its id.
    """

    def __init__(self, api_key: Optional[str] = None, max_retries: Optional[int] = None,
                 retry_delay: Optional[float] = None) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.stripe_api_key
        self.max_retries = max_retries if max_retries is not None else settings.stripe_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.stripe_retry_delay

    def process_webhook_event(self, payload: bytes, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Validate a webhook payload against its Stripe-Signature header and parse it.

        :param payload: The raw request body, exactly as received.
        :param sig_header: The Stripe-Signature header value.
        :param endpoint_secret: The webhook endpoint secret used for signature verification.
        :return: The event as a plain dictionary.
        :raises AuthenticationError: if the signature is missing or does not match.
        :raises MalformedEventError: if the verified payload is not a JSON object.
        """
        if not endpoint_secret:
            raise ConfigurationError("Stripe endpoint secret not configured")
        if not sig_header:
            raise AuthenticationError("Missing signature")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise MalformedEventError('Invalid payload')
        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, endpoint_secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}')
            raise AuthenticationError('Invalid signature')

        try:
            event = json.loads(payload)
        except (TypeError, ValueError) as e:
            logging.error(f'Webhook payload is not valid JSON: {e}')
            raise MalformedEventError('Invalid payload')
        if not isinstance(event, dict):
            raise MalformedEventError('Invalid payload')
        return event

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription from Stripe, retrying connection failures.

        :param subscription_id: The Stripe subscription id.
        :return: The subscription as a plain dictionary.
        :raises ValueError: if subscription_id is empty.
        :raises ConfigurationError: if no Stripe API key is configured.
        :raises ProviderError: if Stripe rejects the request or stays unreachable.
        """
        if not subscription_id or not subscription_id.strip():
            raise ValueError("subscription_id cannot be empty")
        if not self.api_key:
            raise ConfigurationError("Stripe API key (STRIPE_API_KEY) not set")

        attempt = 0
        last_error: Optional[Exception] = None
        while attempt <= self.max_retries:
            try:
                subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
                return _to_plain(subscription)
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                last_error = e
                logging.warning(f"Error retrieving subscription {subscription_id} (attempt {attempt + 1}): {e}")
                attempt += 1
                if attempt <= self.max_retries:
                    time.sleep(self.retry_delay)
            except stripe.StripeError as e:
                logging.error(f"Stripe rejected retrieval of subscription {subscription_id}: {e}", exc_info=True)
                raise from_stripe_error(e)
        raise from_stripe_error(last_error)
