"""Stripe gateway client.

Every Stripe API call in the project goes through a GatewayClient built
for one processor. The API key and version travel with each request
(``api_key=`` / ``stripe_version=``) instead of being set on the global
``stripe`` module, so two processors can be used in the same process.

Stripe exceptions are converted to the payment error taxonomy here and
never leave this module.
"""

import logging
from dataclasses import dataclass

import stripe
from flask import current_app

from crm_stripe.services.errors import (
    WebhookSignatureInvalid,
    classify_gateway_error,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorConfig:
    """Immutable per-processor client configuration."""

    processor_id: int
    secret_key: str
    api_version: str
    publishable_key: str = None
    webhook_secret: str = None
    is_test: bool = False


def processor_config(processor, api_version=None):
    """Build the client configuration for a PaymentProcessor row."""
    if api_version is None:
        api_version = current_app.config["STRIPE_API_VERSION"]
    return ProcessorConfig(
        processor_id=processor.id,
        secret_key=processor.secret_key,
        api_version=api_version,
        publishable_key=processor.publishable_key,
        webhook_secret=processor.webhook_secret or None,
        is_test=bool(processor.is_test),
    )


# ──────────────────────────────────────────────
# Lookup results
# ──────────────────────────────────────────────

@dataclass
class Found:
    obj: object


@dataclass
class NotFound:
    reason: str = ""


@dataclass
class LookupFailed:
    error: Exception


def _is_missing(exc):
    return isinstance(exc, stripe.InvalidRequestError) and (
        exc.code == "resource_missing" or exc.http_status == 404
    )


class GatewayClient:
    """Typed wrapper over the Stripe resources used by this integration."""

    def __init__(self, config):
        self.config = config

    def __repr__(self):
        mode = "test" if self.config.is_test else "live"
        return f"<GatewayClient processor={self.config.processor_id} ({mode})>"

    def _call(self, method, *args, **params):
        try:
            return method(
                *args,
                api_key=self.config.secret_key,
                stripe_version=self.config.api_version,
                **params,
            )
        except stripe.StripeError as e:
            error = classify_gateway_error(e)
            logger.info(
                f"Stripe call {getattr(method, '__qualname__', method)} failed "
                f"for processor {self.config.processor_id}: {error.detail}"
            )
            raise error from e

    def _lookup(self, method, object_id, **params):
        """Retrieve an object, reporting absence as NotFound instead of raising."""
        try:
            obj = method(
                object_id,
                api_key=self.config.secret_key,
                stripe_version=self.config.api_version,
                **params,
            )
        except stripe.StripeError as e:
            if _is_missing(e):
                return NotFound(str(e))
            return LookupFailed(classify_gateway_error(e))
        if obj.get("deleted"):
            return NotFound(f"{object_id} is deleted")
        return Found(obj)

    # --- Payment intents ---

    def create_payment_intent(self, **params):
        return self._call(stripe.PaymentIntent.create, **params)

    def retrieve_payment_intent(self, intent_id, **params):
        return self._call(stripe.PaymentIntent.retrieve, intent_id, **params)

    def update_payment_intent(self, intent_id, **params):
        return self._call(stripe.PaymentIntent.modify, intent_id, **params)

    def confirm_payment_intent(self, intent_id, **params):
        return self._call(stripe.PaymentIntent.confirm, intent_id, **params)

    def capture_payment_intent(self, intent_id, **params):
        return self._call(stripe.PaymentIntent.capture, intent_id, **params)

    def cancel_payment_intent(self, intent_id, **params):
        return self._call(stripe.PaymentIntent.cancel, intent_id, **params)

    # --- Setup intents ---

    def create_setup_intent(self, **params):
        return self._call(stripe.SetupIntent.create, **params)

    def cancel_setup_intent(self, intent_id, **params):
        return self._call(stripe.SetupIntent.cancel, intent_id, **params)

    def cancel_intent(self, intent_id, **params):
        """Cancel a payment or setup intent, picked by its ID prefix."""
        if intent_id.startswith("seti_"):
            return self.cancel_setup_intent(intent_id, **params)
        return self.cancel_payment_intent(intent_id, **params)

    # --- Customers ---

    def create_customer(self, **params):
        return self._call(stripe.Customer.create, **params)

    def find_customer(self, customer_id):
        return self._lookup(stripe.Customer.retrieve, customer_id)

    def attach_payment_method(self, payment_method_id, **params):
        return self._call(stripe.PaymentMethod.attach, payment_method_id, **params)

    # --- Plans / products / subscriptions ---

    def find_plan(self, plan_id):
        return self._lookup(stripe.Plan.retrieve, plan_id)

    def create_product(self, **params):
        return self._call(stripe.Product.create, **params)

    def create_plan(self, **params):
        return self._call(stripe.Plan.create, **params)

    def create_subscription(self, **params):
        return self._call(stripe.Subscription.create, **params)

    def retrieve_subscription(self, subscription_id, **params):
        return self._call(stripe.Subscription.retrieve, subscription_id, **params)

    def list_subscriptions(self, **params):
        return self._call(stripe.Subscription.list, **params)

    def retrieve_invoice(self, invoice_id, **params):
        return self._call(stripe.Invoice.retrieve, invoice_id, **params)

    def list_invoices(self, **params):
        return self._call(stripe.Invoice.list, **params)

    # --- Charges / refunds / balance ---

    def retrieve_charge(self, charge_id, **params):
        return self._call(stripe.Charge.retrieve, charge_id, **params)

    def list_refunds(self, **params):
        return self._call(stripe.Refund.list, **params)

    def retrieve_balance_transaction(self, balance_transaction_id):
        return self._call(stripe.BalanceTransaction.retrieve, balance_transaction_id)

    # --- Events / webhooks ---

    def retrieve_event(self, event_id):
        return self._call(stripe.Event.retrieve, event_id)

    def list_webhook_endpoints(self, **params):
        return self._call(stripe.WebhookEndpoint.list, **params)

    def create_webhook_endpoint(self, **params):
        return self._call(stripe.WebhookEndpoint.create, **params)

    def modify_webhook_endpoint(self, endpoint_id, **params):
        return self._call(stripe.WebhookEndpoint.modify, endpoint_id, **params)

    def delete_webhook_endpoint(self, endpoint_id):
        return self._call(stripe.WebhookEndpoint.delete, endpoint_id)

    def construct_event(self, payload, sig_header):
        """Verify a webhook signature and parse the event.

        Raises WebhookSignatureInvalid on a bad signature or body.
        """
        if not self.config.webhook_secret:
            raise WebhookSignatureInvalid("No webhook signing secret configured")
        try:
            return stripe.Webhook.construct_event(
                payload, sig_header, self.config.webhook_secret
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            raise classify_gateway_error(e) from e


def gateway_for_processor(processor):
    return GatewayClient(processor_config(processor))
