"""Payment service: pay a Pending contribution from a payment form.

Ties the pieces together the way a contribution page needs them:
  1. Resolve (or create) the contact's Stripe customer
  2. Recurring series: attach the card to the customer and start the
     subscription with the series' billing terms
  3. One-off: confirm/capture the browser's PaymentIntent, or create and
     capture one for the payment method, with the customer set

Returns an IntentResult (one-off) or a SubscriptionResult (recurring);
both have to_response() for the endpoint. Caller mistakes raise.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from crm_stripe.extensions import db
from crm_stripe.models.contribution import Contribution
from crm_stripe.services import ledger
from crm_stripe.services.customer_service import find_or_create_customer
from crm_stripe.services.errors import (
    ContributionNotPayable,
    MissingParameter,
    PaymentError,
)
from crm_stripe.services.intent_service import IntentEngine, IntentRequest, IntentResult
from crm_stripe.services.recur_service import (
    RecurRequest,
    RecurringOrchestrator,
    SubscriptionResult,
)

logger = logging.getLogger(__name__)


@dataclass
class PaymentRequest:
    contribution_id: int = None
    payment_method_id: str = None
    payment_intent_id: str = None  # created by the browser (Stripe Elements)
    email: str = None
    description: str = None
    receive_date: datetime = None  # recurring only; future date = delayed start
    extra_data: str = None
    referrer: str = None
    ip_address: str = None


def _payable_contribution(contribution_id):
    if not contribution_id:
        raise MissingParameter("contribution_id is required")
    contribution = db.session.get(Contribution, contribution_id)
    if contribution is None:
        raise MissingParameter(f"Contribution {contribution_id} not found")
    if contribution.status != "Pending":
        raise ContributionNotPayable(
            f"Contribution {contribution.id} is {contribution.status}"
        )
    return contribution


def process_payment(gateway, request, engine=None, now=None):
    """Take payment for one Pending contribution.

    Raises MissingParameter / ContributionNotPayable before anything is
    sent to Stripe. Gateway errors come back as a failed result.
    """
    contribution = _payable_contribution(request.contribution_id)
    recurring = contribution.recurring_contribution_id is not None
    if recurring and not request.payment_method_id:
        raise MissingParameter("payment_method_id is required for a recurring contribution")
    if not request.payment_method_id and not request.payment_intent_id:
        raise MissingParameter("payment_method_id or payment_intent_id is required")

    engine = engine or IntentEngine(gateway)

    try:
        customer = find_or_create_customer(
            contribution.contact, gateway, email=request.email
        )
        if recurring:
            gateway.attach_payment_method(
                request.payment_method_id, customer=customer["id"]
            )
    except PaymentError as e:
        return _failed(gateway, engine, contribution, request, e, recurring)

    if recurring:
        return _start_series(gateway, engine, contribution, request, customer, now)
    return _pay_once(engine, contribution, request, customer)


def _start_series(gateway, engine, contribution, request, customer, now):
    recur = contribution.recurring_contribution
    orchestrator = RecurringOrchestrator(gateway, engine, now=now)
    return orchestrator.start_subscription(RecurRequest(
        recurring_contribution_id=recur.id,
        contribution_id=contribution.id,
        amount=contribution.total_amount,
        currency=contribution.currency,
        frequency_unit=recur.frequency_unit,
        frequency_interval=recur.frequency_interval or 1,
        installments=recur.installments,
        receive_date=request.receive_date,
        payment_method_id=request.payment_method_id,
        description=request.description or contribution.description,
    ), customer)


def _pay_once(engine, contribution, request, customer):
    intent_request = IntentRequest(
        payment_method_id=request.payment_method_id,
        payment_intent_id=request.payment_intent_id,
        amount=contribution.total_amount,
        currency=contribution.currency,
        customer_id=customer["id"],
        capture=True,
        description=request.description or contribution.description,
        contribution_id=contribution.id,
        extra_data=request.extra_data,
        referrer=request.referrer,
        ip_address=request.ip_address,
        receipt_email=request.email or contribution.contact.email,
    )
    result = engine.process_payment_intent(intent_request)

    # A new intent is created for manual capture; take the money now.
    if result.status == "requires_capture" and not request.payment_intent_id:
        intent_request.payment_intent_id = result.intent_id
        intent_request.payment_method_id = None
        result = engine.process_payment_intent(intent_request)
    return result


def _failed(gateway, engine, contribution, request, error, recurring):
    logger.info(
        f"Payment for contribution {contribution.id} stopped before the charge: "
        f"{type(error).__name__} {error.detail}"
    )
    ledger.upsert_intent_record(
        None,
        gateway.config.processor_id,
        "failed",
        contribution_id=contribution.id,
        description=f"{error.detail};{request.description or ''}"[:255],
        referrer=request.referrer,
        extra_data=request.extra_data,
    )
    message = error.message_for(staff=engine.staff)
    if recurring:
        return SubscriptionResult(ok=False, status="failed", message=message)
    return IntentResult(ok=False, status="failed", message=message)
