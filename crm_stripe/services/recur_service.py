"""Recurring orchestrator: Stripe subscriptions for recurring contributions.

Responsible for:
- Find-or-create of the Stripe plan for a set of billing terms
- Creating the subscription and computing the CRM billing schedule
- Reconciling the first invoice's charge onto the first contribution
- Never reporting an incomplete subscription as accepted
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from crm_stripe.extensions import db
from crm_stripe.models.contribution import Contribution, RecurringContribution
from crm_stripe.services import ledger
from crm_stripe.services.amounts import from_minor_units, to_minor_units
from crm_stripe.services.errors import MissingParameter, PaymentError
from crm_stripe.services.gateway import Found, LookupFailed
from crm_stripe.services.intent_service import PAYMENT_FAILED_MESSAGE
from crm_stripe.services.reconciliation import (
    as_utc,
    schedule,
    subscription_status_to_ledger_status,
)

logger = logging.getLogger(__name__)


@dataclass
class RecurRequest:
    recurring_contribution_id: int = None
    contribution_id: int = None  # first contribution of the series
    amount: object = None
    currency: str = None
    frequency_unit: str = None
    frequency_interval: int = 1
    installments: int = None
    receive_date: datetime = None  # future date = delayed start; naive is UTC
    payment_method_id: str = None
    description: str = None


@dataclass
class SubscriptionResult:
    ok: bool
    status: str = None
    subscription_id: str = None
    invoice_id: str = None
    intent_id: str = None
    client_secret: str = None
    trxn_id: str = None
    fee_amount: object = None
    message: str = ""

    def to_response(self) -> dict:
        """JSON body for the payment endpoint, shaped like IntentResult's."""
        if self.client_secret:
            # First invoice needs authentication in the browser.
            return {
                "requires_action": True,
                "paymentIntentClientSecret": self.client_secret,
            }
        if self.ok:
            return {
                "success": True,
                "subscription": {"id": self.subscription_id, "status": self.status},
            }
        return {"error": {"message": self.message}}


def plan_id_for(amount_minor, currency, frequency_unit, frequency_interval,
                is_test=False):
    """Deterministic plan ID for a set of billing terms."""
    plan_id = (
        f"every-{frequency_interval}-{frequency_unit}-{amount_minor}-{currency.lower()}"
    )
    if is_test:
        plan_id += "-test"
    return plan_id


class RecurringOrchestrator:

    def __init__(self, gateway, engine, now=None):
        self.gateway = gateway
        self.engine = engine
        self._now = now or (lambda: datetime.now(timezone.utc))

    def find_or_create_plan(self, amount_minor, currency, frequency_unit,
                            frequency_interval):
        """Return the plan for these terms, creating product + plan if absent."""
        plan_id = plan_id_for(
            amount_minor, currency, frequency_unit, frequency_interval,
            is_test=self.gateway.config.is_test,
        )
        result = self.gateway.find_plan(plan_id)
        if isinstance(result, Found):
            return result.obj
        if isinstance(result, LookupFailed):
            raise result.error

        amount = from_minor_units(amount_minor, currency)
        mode_tag = "-test" if self.gateway.config.is_test else ""
        product = self.gateway.create_product(
            name=(
                f"every {frequency_interval} {frequency_unit}(s) "
                f"{amount}{currency.lower()}{mode_tag}"
            ),
            type="service",
        )
        logger.info(f"Creating Stripe plan {plan_id}")
        try:
            return self.gateway.create_plan(
                id=plan_id,
                amount=amount_minor,
                currency=currency.lower(),
                interval=frequency_unit,
                interval_count=frequency_interval,
                product=product["id"],
            )
        except PaymentError as e:
            # Another request created the same plan between lookup and create.
            if e.code != "resource_already_exists":
                raise
            result = self.gateway.find_plan(plan_id)
            if isinstance(result, Found):
                logger.info(f"Stripe plan {plan_id} already existed, reusing it")
                return result.obj
            raise

    def start_subscription(self, request, customer):
        """Create the Stripe subscription for a recurring contribution.

        Raises MissingParameter for an incomplete request. Gateway errors
        and incomplete subscriptions come back as a SubscriptionResult with
        ok=False; the recurring contribution is marked Failed in that case.
        """
        if not request.frequency_unit:
            raise MissingParameter("frequency_unit is required")
        if not request.recurring_contribution_id:
            raise MissingParameter("recurring_contribution_id is required")
        if request.amount in (None, ""):
            raise MissingParameter("amount is required")

        recur = db.session.get(RecurringContribution, request.recurring_contribution_id)
        if recur is None:
            raise MissingParameter(
                f"Recurring contribution {request.recurring_contribution_id} not found"
            )

        currency = (request.currency or recur.currency).upper()
        interval = int(request.frequency_interval or 1)
        amount_minor = to_minor_units(request.amount, currency)
        customer_id = customer if isinstance(customer, str) else customer["id"]
        contribution = self._first_contribution(request, recur)

        now = self._now()
        receive_date = as_utc(request.receive_date)
        anchor = None
        if receive_date and receive_date > now:
            anchor = receive_date

        try:
            plan = self.find_or_create_plan(
                amount_minor, currency, request.frequency_unit, interval
            )
            params = {
                "customer": customer_id,
                "items": [{"plan": plan["id"]}],
                "proration_behavior": "none",
                "off_session": True,
                "expand": ["latest_invoice.payment_intent"],
                "metadata": {"recurring_contribution_id": str(recur.id)},
            }
            if request.payment_method_id:
                params["default_payment_method"] = request.payment_method_id
            if request.description:
                params["description"] = request.description
            if anchor:
                params["billing_cycle_anchor"] = int(anchor.timestamp())
            subscription = self.gateway.create_subscription(**params)
        except PaymentError as e:
            logger.info(f"Subscription for recur {recur.id} failed: {e.detail}")
            ledger.upsert_intent_record(
                None,
                self.gateway.config.processor_id,
                "failed",
                contribution_id=contribution.id if contribution else None,
                description=f"{e.detail};{request.description or ''}"[:255],
            )
            self._fail_recur(recur, e.detail)
            return SubscriptionResult(
                ok=False, status="failed",
                message=e.message_for(staff=self.engine.staff),
            )

        start = receive_date or now
        next_scheduled, cycle_day, end_date = schedule(
            start, request.frequency_unit, interval, request.installments
        )
        ledger.update_recur(
            recur,
            processor_id=self.gateway.config.processor_id,
            subscription_reference=subscription["id"],
            latest_order_reference=subscription["id"],
            auto_renew=True,
            frequency_unit=request.frequency_unit,
            frequency_interval=interval,
            installments=request.installments,
            start_date=start,
            next_scheduled_date=next_scheduled,
            cycle_day=cycle_day,
            end_date=end_date,
            status=subscription_status_to_ledger_status(subscription["status"]),
        )

        result = SubscriptionResult(
            ok=True,
            status=subscription["status"],
            subscription_id=subscription["id"],
        )

        if subscription["status"] == "incomplete":
            self._reconcile_first_invoice(subscription, recur, contribution, result)
            self._fail_recur(recur, f"Subscription {subscription['id']} is incomplete")
            result.ok = False
            result.message = PAYMENT_FAILED_MESSAGE
            return result

        self._reconcile_first_invoice(subscription, recur, contribution, result)
        ledger.log_ledger_audit("recur.started", {
            "subscription_id": subscription["id"],
            "plan_id": plan["id"],
            "next_scheduled_date": next_scheduled.isoformat(),
        }, recurring_contribution_id=recur.id)
        return result

    def _first_contribution(self, request, recur):
        if request.contribution_id:
            return db.session.get(Contribution, request.contribution_id)
        return ledger.latest_contribution_for_recur(recur)

    def _fail_recur(self, recur, reason):
        ledger.update_recur(
            recur, status="Failed", failure_count=(recur.failure_count or 0) + 1
        )
        ledger.log_ledger_audit(
            "recur.failed", {"reason": reason}, recurring_contribution_id=recur.id
        )

    def _reconcile_first_invoice(self, subscription, recur, contribution, result):
        """Carry the first invoice's intent and charge onto the first contribution."""
        processor_id = self.gateway.config.processor_id
        invoice = subscription.get("latest_invoice")
        if isinstance(invoice, str):
            invoice = self.gateway.retrieve_invoice(invoice, expand=["payment_intent"])

        if not invoice:
            # Delayed start: no invoice until the anchor date. The
            # subscription ID stands in as order reference until then.
            pending = subscription.get("pending_setup_intent")
            pending_id = pending if isinstance(pending, str) else (pending or {}).get("id")
            ledger.upsert_intent_record(
                pending_id or subscription["id"],
                processor_id,
                "requires_payment_method" if pending_id else subscription["status"],
                contribution_id=contribution.id if contribution else None,
                description=f"Subscription {subscription['id']}",
                subscription=True,
            )
            if contribution:
                contribution.order_reference = subscription["id"]
                db.session.flush()
            return

        result.invoice_id = invoice["id"]
        ledger.update_recur(recur, latest_order_reference=invoice["id"])
        if contribution:
            contribution.order_reference = invoice["id"]
            db.session.flush()

        intent = invoice.get("payment_intent")
        if isinstance(intent, str):
            intent = self.gateway.retrieve_payment_intent(intent)
        if not intent:
            return

        result.intent_id = intent["id"]
        ledger.upsert_intent_record(
            intent["id"],
            processor_id,
            intent["status"],
            contribution_id=contribution.id if contribution else None,
            description=f"Invoice {invoice['id']}",
            subscription=True,
        )

        if intent["status"] == "requires_action":
            result.client_secret = intent.get("client_secret")
        if intent["status"] != "succeeded":
            return

        charge_id, fee = self.engine.charge_details(intent)
        result.trxn_id = charge_id
        result.fee_amount = fee
        if contribution and charge_id:
            ledger.complete_contribution(
                contribution, charge_id, fee_amount=fee,
                order_reference=invoice["id"],
            )
