"""Payment error taxonomy.

Every Stripe exception is converted to one of these before it leaves the
gateway / engine layer. Each error carries:
  - user_message: safe to show to the person paying
  - detail: the internal reason (codes, request IDs) for logs and staff

Declines of every kind share one user message so the response never tells
a card tester whether fraud screening or the issuer rejected the card.
"""

import stripe

GENERIC_ERROR_MESSAGE = "An error occurred while processing your payment. Please try again."
DECLINED_MESSAGE = "Your card was declined. Please try another payment method."


class PaymentError(Exception):
    """Base class for all payment errors."""

    user_message = GENERIC_ERROR_MESSAGE

    def __init__(self, detail="", user_message=None, code=None, http_status=None,
                 error_body=None):
        super().__init__(detail or self.user_message)
        self.detail = detail
        self.code = code
        self.http_status = http_status
        self.error_body = error_body or {}  # Stripe's "error" object, if any
        if user_message is not None:
            self.user_message = user_message

    def message_for(self, staff=False):
        """Return the message to display: full detail for staff, safe text otherwise."""
        if staff and self.detail:
            return self.detail
        return self.user_message


class MissingParameter(PaymentError):
    """A required parameter was not supplied (caller bug, never retried)."""

    user_message = "Bad request"


class InvalidAmount(PaymentError):
    user_message = "Invalid amount"


class GatewayDeclined(PaymentError):
    user_message = DECLINED_MESSAGE


class GatewayRequestInvalid(PaymentError):
    user_message = "Invalid request"


class GatewayRateLimited(PaymentError):
    pass


class GatewayAuthFailed(PaymentError):
    pass


class GatewayConnectionFailed(PaymentError):
    pass


class WebhookSignatureInvalid(PaymentError):
    user_message = "Invalid signature"


class DuplicateEvent(PaymentError):
    """Logged and acknowledged, not an error for the caller."""


class UnmatchedContribution(PaymentError):
    """No contribution matches the event; delegated to the unmatched hook."""


class RefundAlreadyApplied(PaymentError):
    """The refund is already on the ledger; nothing to do."""


class ContributionNotPayable(PaymentError):
    """The contribution is not Pending, so there is nothing left to pay."""

    user_message = "This contribution cannot be paid"


class ImportRejected(PaymentError):
    """A Stripe object could not be imported onto the ledger."""


def _error_body(exc):
    body = getattr(exc, "json_body", None) or {}
    return body.get("error") or {}


def classify_gateway_error(exc):
    """Convert a Stripe exception into the payment error taxonomy.

    Non-Stripe exceptions are returned unchanged when they are already a
    PaymentError, otherwise wrapped as a generic connection failure.
    """
    if isinstance(exc, PaymentError):
        return exc

    error = _error_body(exc)
    code = getattr(exc, "code", None) or error.get("code")
    http_status = getattr(exc, "http_status", None)
    request_id = getattr(exc, "request_id", None)
    detail = f"{request_id or ''};{getattr(exc, 'user_message', None) or exc}"
    if error.get("decline_code"):
        detail = f"{detail} (decline_code={error['decline_code']})"

    if isinstance(exc, stripe.CardError):
        cls = GatewayDeclined
    elif isinstance(exc, stripe.RateLimitError):
        cls = GatewayRateLimited
    elif isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        cls = GatewayAuthFailed
    elif isinstance(exc, stripe.InvalidRequestError):
        cls = GatewayRequestInvalid
    elif isinstance(exc, (stripe.SignatureVerificationError, ValueError)):
        # ValueError is what construct_event raises for an unparseable body
        cls = WebhookSignatureInvalid
    else:
        # APIConnectionError, APIError and anything unexpected
        cls = GatewayConnectionFailed

    return cls(detail, code=code, http_status=http_status, error_body=error)


def is_fraud_decline(exc):
    """True when a card decline carries a fraud indicator.

    Either the issuer said "fraudulent", or Stripe Radar blocked one of the
    charges attached to the failed PaymentIntent. Accepts the raw Stripe
    CardError or the GatewayDeclined it was classified as.
    """
    if isinstance(exc, GatewayDeclined):
        error = exc.error_body
    elif isinstance(exc, stripe.CardError):
        error = _error_body(exc)
    else:
        return False

    if error.get("decline_code") == "fraudulent":
        return True

    intent = error.get("payment_intent") or {}
    charges = (intent.get("charges") or {}).get("data") or []
    for charge in charges:
        if (charge.get("outcome") or {}).get("type") == "blocked":
            return True
    return False
