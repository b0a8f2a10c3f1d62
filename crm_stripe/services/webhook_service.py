"""Webhook router: Stripe events -> ledger transitions.

Responsible for:
- Verifying signatures (when the processor has a signing secret), or
  re-fetching the event from Stripe when it has none
- Queueing every delivery in webhook_events before processing
- Deduplicating redeliveries of the same Stripe event ID
- Matching events to contributions (charge -> invoice -> subscription)
- Applying the per-event transitions
- Replaying stored events and re-fetching events from Stripe
- Keeping the Stripe webhook endpoint registration in sync

Every handler runs inside a savepoint: a failure rolls back the
handler's writes but keeps the queue row with status "error".
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app

from crm_stripe.extensions import db
from crm_stripe.models.contribution import Contribution
from crm_stripe.models.processor import PaymentProcessor
from crm_stripe.models.webhook_event import WebhookEvent
from crm_stripe.services import ledger
from crm_stripe.services.amounts import from_minor_units
from crm_stripe.services.errors import (
    GatewayRequestInvalid,
    RefundAlreadyApplied,
    WebhookSignatureInvalid,
)
from crm_stripe.services.event_fields import extract_fields
from crm_stripe.services.gateway import gateway_for_processor
from crm_stripe.services.intent_service import charge_fee
from crm_stripe.services.reconciliation import add_interval

logger = logging.getLogger(__name__)

# Registered on the Stripe webhook endpoint.
ENABLED_EVENTS = [
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "charge.failed",
    "charge.refunded",
    "charge.succeeded",
    "customer.subscription.updated",
    "customer.subscription.deleted",
]

# Processed when delivered (endpoints configured by hand may send these too).
HANDLED_EVENTS = ENABLED_EVENTS + [
    "invoice.finalized",
    "charge.captured",
]


@dataclass
class Outcome:
    status: str  # applied | duplicate | unhandled | error
    message: str = ""
    queue_id: int = None
    retry: bool = False  # only for errors still under the attempt cap


def _already_updated(contribution):
    # Another request moved the contribution between our read and our update.
    return (
        f"Contribution {contribution.id} was already updated by another request "
        f"(now {contribution.status})"
    )


def contribution_from_intent_record(fields, event):
    """Default unmatched hook: follow the payment intent to its intent record."""
    intent_id = fields.get("payment_intent_id")
    if not intent_id:
        return None
    record = ledger.get_intent_record(intent_id)
    if record and record.contribution_id:
        return db.session.get(Contribution, record.contribution_id)
    return None


class WebhookRouter:
    """Processes Stripe events for one payment processor."""

    def __init__(self, processor, gateway=None, unmatched_hook=None, config=None):
        self.processor = processor
        self.gateway = gateway or gateway_for_processor(processor)
        self.unmatched_hook = unmatched_hook or contribution_from_intent_record
        self.config = config if config is not None else current_app.config

        self._handlers = {
            "invoice.payment_succeeded": self._invoice_payment_succeeded,
            "invoice.payment_failed": self._invoice_payment_failed,
            "invoice.finalized": self._invoice_finalized,
            "charge.succeeded": self._charge_succeeded,
            "charge.captured": self._charge_succeeded,
            "charge.failed": self._charge_failed,
            "charge.refunded": self._charge_refunded,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
        }

    # ──────────────────────────────────────────────
    # Intake
    # ──────────────────────────────────────────────

    def receive(self, payload, sig_header=None):
        """Verify, queue and process one delivery.

        Raises WebhookSignatureInvalid for a bad signature or body, or for an
        unsigned delivery naming an event Stripe does not have; nothing is
        queued in that case.
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        if self.gateway.config.webhook_secret:
            if not sig_header:
                raise WebhookSignatureInvalid("Missing Stripe-Signature header")
            event = self.gateway.construct_event(payload, sig_header)
        else:
            # No signing secret: the body only names the event. The copy
            # fetched from Stripe with the processor's key is what gets
            # queued and applied.
            try:
                claimed = json.loads(payload)
            except ValueError as e:
                raise WebhookSignatureInvalid(f"Unparseable webhook body: {e}")
            if not isinstance(claimed, dict) or not claimed.get("id"):
                raise WebhookSignatureInvalid("Webhook body is not a Stripe event")
            event = self._fetch_event(claimed["id"])
            payload = json.dumps(event)

        if not event.get("id") or not event.get("type"):
            raise WebhookSignatureInvalid("Webhook body is not a Stripe event")

        row = self.queue(event, payload, verified=True)
        return self.process(row, event)

    def _fetch_event(self, event_id):
        """Authoritative copy of an event, fetched with the processor's API key.

        An ID Stripe does not know is treated like a bad signature. Other
        gateway errors propagate so the delivery is retried.
        """
        try:
            return self.gateway.retrieve_event(event_id)
        except GatewayRequestInvalid as e:
            raise WebhookSignatureInvalid(
                f"Event {event_id} could not be fetched from Stripe: {e.detail}"
            )

    def queue(self, event, payload, verified):
        row = WebhookEvent(
            processor_id=self.processor.id,
            event_id=event["id"],
            trigger=event["type"],
            payload=payload,
            verified=verified,
            status="new",
        )
        db.session.add(row)
        db.session.flush()
        return row

    def process(self, row, event=None):
        """Run a queued event through dedup, type filter and its handler."""
        if event is None:
            event = json.loads(row.payload)

        prior = (
            WebhookEvent.query
            .filter(
                WebhookEvent.processor_id == row.processor_id,
                WebhookEvent.event_id == row.event_id,
                WebhookEvent.id < row.id,
                WebhookEvent.status != "error",
            )
            .order_by(WebhookEvent.id)
            .first()
        )
        if prior:
            logger.info(
                f"Duplicate webhook event {row.event_id}: queue item {row.id} "
                f"repeats {prior.id}, skipping"
            )
            return self._finish(row, "duplicate", f"Duplicate of queue item {prior.id}")

        handler = self._handlers.get(row.trigger)
        if row.trigger not in HANDLED_EVENTS or handler is None:
            return self._finish(row, "unhandled", f"Event type {row.trigger} is not handled")

        try:
            with db.session.begin_nested():
                fields = extract_fields(event)
                status, message = handler(fields, event)
        except Exception as e:
            logger.error(
                f"Error handling {row.trigger} ({row.event_id}, queue item {row.id}): {e}",
                exc_info=True,
            )
            outcome = self._finish(row, "error", str(e))
            outcome.retry = self._attempts(row) < self.config.get("WEBHOOK_MAX_ATTEMPTS", 5)
            return outcome

        return self._finish(row, status, message)

    def _finish(self, row, status, message):
        row.status = status
        row.message = message
        row.processed_at = datetime.now(timezone.utc)
        db.session.flush()
        return Outcome(status=status, message=message, queue_id=row.id)

    def _attempts(self, row):
        return WebhookEvent.query.filter_by(
            processor_id=row.processor_id, event_id=row.event_id, status="error"
        ).count()

    # ──────────────────────────────────────────────
    # Matching
    # ──────────────────────────────────────────────

    def _match(self, fields, event, allow_recur_template=False):
        """Find the contribution for an event, or None after the unmatched hook.

        With allow_recur_template, an invoice for a known subscription that
        matches no contribution (a new cycle) is matched to the latest
        contribution of that series, used as the template for the repeat.
        """
        contribution, tier = ledger.find_contribution(
            charge_id=fields.get("charge_id"),
            invoice_id=fields.get("invoice_id"),
            subscription_id=fields.get("subscription_id"),
        )
        if contribution:
            logger.debug(f"{fields['event_id']} matched contribution {contribution.id} by {tier}")
            return contribution

        if allow_recur_template:
            recur = ledger.find_recur_by_subscription(fields.get("subscription_id"))
            if recur:
                template = ledger.latest_contribution_for_recur(recur)
                if template:
                    return template

        contribution = self.unmatched_hook(fields, event)
        if contribution is None and self.config.get("STRIPE_IPN_DEBUG"):
            logger.info(
                f"Processor {self.processor.id}: no contribution for {fields['event_type']} "
                f"{fields['event_id']} (charge={fields.get('charge_id')} "
                f"invoice={fields.get('invoice_id')} sub={fields.get('subscription_id')})"
            )
        return contribution

    def _recur_for(self, contribution, fields):
        if contribution is not None and contribution.recurring_contribution is not None:
            return contribution.recurring_contribution
        return ledger.find_recur_by_subscription(fields.get("subscription_id"))

    @staticmethod
    def _unmatched(fields):
        return "unhandled", f"No contribution found for {fields['event_type']} {fields['event_id']}"

    # ──────────────────────────────────────────────
    # Invoice handlers
    # ──────────────────────────────────────────────

    def _invoice_payment_succeeded(self, fields, event):
        contribution = self._match(fields, event, allow_recur_template=True)
        if contribution is None:
            return self._unmatched(fields)

        recur = self._recur_for(contribution, fields)
        charge_id = fields.get("charge_id")
        fee = None
        if charge_id:
            charge_id, fee = charge_fee(self.gateway, charge_id)
        trxn_id = charge_id or fields["invoice_id"]

        if contribution.status == "Pending":
            if ledger.complete_contribution(
                contribution, trxn_id, fee_amount=fee,
                order_reference=fields["invoice_id"],
                receive_date=fields.get("receive_date"),
            ):
                message = f"Contribution {contribution.id} completed"
            else:
                message = _already_updated(contribution)
        elif contribution.trxn_id != trxn_id:
            if recur is None:
                return "unhandled", f"Invoice {fields['invoice_id']} has no recurring contribution"
            repeat = ledger.repeat_contribution(
                recur, contribution, "Completed",
                trxn_id=trxn_id,
                order_reference=fields["invoice_id"],
                total_amount=fields.get("amount_paid"),
                fee_amount=fee,
                receive_date=fields.get("receive_date"),
            )
            if recur.next_scheduled_date:
                recur.next_scheduled_date = add_interval(
                    recur.next_scheduled_date,
                    recur.frequency_unit,
                    recur.frequency_interval,
                )
            message = f"Contribution {repeat.id} created for a new cycle"
        else:
            message = f"Contribution {contribution.id} already completed"

        if recur is not None:
            ledger.update_recur(
                recur,
                failure_count=0,
                status="In Progress",
                latest_order_reference=fields["invoice_id"],
            )
        return "applied", message

    def _invoice_payment_failed(self, fields, event):
        contribution = self._match(fields, event, allow_recur_template=True)
        if contribution is None:
            return self._unmatched(fields)

        if (
            contribution.order_reference == fields["invoice_id"]
            and contribution.status == "Failed"
        ):
            return "applied", f"Failure of invoice {fields['invoice_id']} already recorded"

        recur = self._recur_for(contribution, fields)
        if contribution.status == "Pending":
            if not ledger.fail_contribution(
                contribution,
                note=f"Invoice {fields['invoice_id']} payment failed",
                trxn_id=fields.get("charge_id"),
                order_reference=fields["invoice_id"],
            ):
                return "applied", _already_updated(contribution)
            message = f"Contribution {contribution.id} failed"
        else:
            if recur is None:
                return "unhandled", f"Invoice {fields['invoice_id']} has no recurring contribution"
            repeat = ledger.repeat_contribution(
                recur, contribution, "Failed",
                trxn_id=fields.get("charge_id"),
                order_reference=fields["invoice_id"],
                total_amount=fields.get("amount"),
            )
            message = f"Failed contribution {repeat.id} created for a new cycle"

        if recur is not None:
            ledger.update_recur(
                recur,
                failure_count=(recur.failure_count or 0) + 1,
                status="Failed",
                latest_order_reference=fields["invoice_id"],
            )
        return "applied", message

    def _invoice_finalized(self, fields, event):
        """Swap the interim subscription reference for the first invoice ID."""
        contribution, tier = ledger.find_contribution(
            invoice_id=fields.get("invoice_id"),
            subscription_id=fields.get("subscription_id"),
        )
        if contribution is None:
            return self._unmatched(fields)
        if tier != "subscription" or contribution.status != "Pending":
            return "unhandled", f"Contribution {contribution.id} already has its invoice"

        contribution.order_reference = fields["invoice_id"]
        recur = self._recur_for(contribution, fields)
        if recur is not None:
            recur.latest_order_reference = fields["invoice_id"]
        db.session.flush()
        return "applied", f"Contribution {contribution.id} linked to {fields['invoice_id']}"

    # ──────────────────────────────────────────────
    # Charge handlers
    # ──────────────────────────────────────────────

    def _charge_succeeded(self, fields, event):
        if not fields.get("captured"):
            return "unhandled", f"Charge {fields['charge_id']} is not captured yet"

        contribution = self._match(fields, event)
        if contribution is None:
            return self._unmatched(fields)
        if contribution.status != "Pending":
            return "applied", f"Contribution {contribution.id} is already {contribution.status}"

        charge_id, fee = charge_fee(self.gateway, event["data"]["object"])
        if not ledger.complete_contribution(
            contribution, charge_id, fee_amount=fee,
            receive_date=fields.get("receive_date"),
        ):
            return "applied", _already_updated(contribution)
        return "applied", f"Contribution {contribution.id} completed"

    def _charge_failed(self, fields, event):
        contribution, _ = ledger.find_contribution(charge_id=fields.get("charge_id"))
        if contribution is None:
            # Nothing recorded against this charge yet.
            return "unhandled", f"No contribution for charge {fields.get('charge_id')}"

        note = f"{fields.get('failure_code') or ''} : {fields.get('failure_message') or ''}"
        ledger.record_failure_note(contribution, note)
        if contribution.status == "Pending":
            if not ledger.fail_contribution(contribution, note=note):
                return "applied", _already_updated(contribution)
        return "applied", f"Failure recorded on contribution {contribution.id}"

    def _charge_refunded(self, fields, event):
        # Cancelling an uncaptured intent also sends charge.refunded.
        if not fields.get("captured"):
            return "unhandled", f"Charge {fields['charge_id']} was never captured"

        contribution, _ = ledger.find_contribution(
            charge_id=fields["charge_id"], invoice_id=fields.get("invoice_id")
        )
        if contribution is None:
            contribution = self.unmatched_hook(fields, event)
        if contribution is None:
            return self._unmatched(fields)

        refunds = self.gateway.list_refunds(charge=fields["charge_id"], limit=100)
        # Stripe lists newest first; record them in the order they happened.
        listed = sorted(refunds.get("data") or [], key=lambda r: r.get("created") or 0)
        if not listed:
            raise ValueError(f"Stripe returned no refund for charge {fields['charge_id']}")
        currency = fields.get("currency") or contribution.currency

        recorded = []
        with ledger.contribution_lock(contribution.id):
            for refund in listed:
                if refund.get("status") in ("failed", "canceled"):
                    continue
                try:
                    ledger.record_refund(
                        contribution,
                        refund["id"],
                        from_minor_units(refund["amount"], currency),
                        charge_id=fields["charge_id"],
                        reason=refund.get("reason"),
                        refund_date=datetime.fromtimestamp(refund["created"], tz=timezone.utc)
                        if refund.get("created") else None,
                    )
                except RefundAlreadyApplied as e:
                    logger.debug(e.detail)
                    continue
                recorded.append(refund["id"])

        if not recorded:
            return "applied", f"Refunds for charge {fields['charge_id']} already recorded"
        return "applied", (
            f"Refund {', '.join(recorded)} recorded on contribution {contribution.id}"
        )

    # ──────────────────────────────────────────────
    # Subscription handlers
    # ──────────────────────────────────────────────

    def _subscription_recur(self, fields, event):
        recur = ledger.find_recur_by_subscription(fields.get("subscription_id"))
        if recur is not None:
            return recur
        contribution = self._match(fields, event)
        if contribution is not None:
            return contribution.recurring_contribution
        return None

    def _subscription_deleted(self, fields, event):
        recur = self._subscription_recur(fields, event)
        if recur is None:
            return self._unmatched(fields)
        if ledger.cancel_recur(recur, reason="Subscription deleted at Stripe"):
            return "applied", f"Recurring contribution {recur.id} cancelled"
        return "applied", f"Recurring contribution {recur.id} already cancelled"

    def _subscription_updated(self, fields, event):
        if not fields.get("previous_plan_id"):
            return "unhandled", "Not a plan change"

        recur = self._subscription_recur(fields, event)
        if recur is None:
            return self._unmatched(fields)

        ledger.update_recur(
            recur,
            amount=fields["plan_amount"],
            frequency_unit=fields["frequency_unit"],
            frequency_interval=fields["frequency_interval"],
            auto_renew=True,
        )
        current = ledger.latest_contribution_for_recur(recur)
        if current is not None:
            current.total_amount = fields["plan_amount"]
            db.session.flush()

        ledger.log_ledger_audit("recur.plan_changed", {
            "previous_plan_id": fields["previous_plan_id"],
            "plan_id": fields["plan_id"],
            "amount": str(fields["plan_amount"]),
        }, recurring_contribution_id=recur.id)
        return "applied", f"Recurring contribution {recur.id} moved to plan {fields['plan_id']}"


# ──────────────────────────────────────────────
# Replay
# ──────────────────────────────────────────────

def router_for_processor_id(processor_id, **kwargs):
    processor = db.session.get(PaymentProcessor, processor_id)
    if processor is None:
        return None
    return WebhookRouter(processor, **kwargs)


def replay_event(queue_id, router=None):
    """Re-run a stored webhook event through the full pipeline."""
    row = db.session.get(WebhookEvent, queue_id)
    if row is None:
        raise ValueError(f"No webhook queue item {queue_id}")
    if router is None:
        router = router_for_processor_id(row.processor_id)
    logger.info(f"Replaying queue item {row.id} ({row.trigger} {row.event_id})")
    return router.process(row)


def replay_events(queue_ids, router=None):
    """Replay several queue items; each one's outcome is independent."""
    outcomes = []
    for queue_id in queue_ids:
        try:
            outcomes.append(replay_event(queue_id, router=router))
        except ValueError as e:
            logger.warning(str(e))
            outcomes.append(Outcome(status="error", message=str(e), queue_id=queue_id))
    return outcomes


def replay_from_gateway(event_id, processor, router=None):
    """Fetch an event from Stripe by ID, queue it and process it.

    A copy fetched with the processor's API key is authentic, so the row
    is stored as verified.
    """
    router = router or WebhookRouter(processor)
    event = router.gateway.retrieve_event(event_id)
    payload = json.dumps(event)
    row = router.queue(event, payload, verified=True)
    return router.process(row, event)


# ──────────────────────────────────────────────
# Endpoint registration
# ──────────────────────────────────────────────

def webhook_url(processor, base_url=None):
    base_url = base_url or current_app.config["APP_BASE_URL"]
    return f"{base_url.rstrip('/')}/stripe/webhooks/{processor.id}"


def ensure_webhook_endpoint(processor, gateway=None, url=None):
    """Make sure Stripe sends our events to this app.

    Creates the endpoint if missing, updates its event list if it drifted,
    and recreates it when its API version differs (Stripe cannot change
    the version of an existing endpoint). A new endpoint's signing secret
    is stored on the processor.

    Returns "created", "updated", "recreated" or "ok".
    """
    gateway = gateway or gateway_for_processor(processor)
    url = url or webhook_url(processor)
    api_version = gateway.config.api_version

    endpoints = gateway.list_webhook_endpoints(limit=100)
    existing = [ep for ep in endpoints.get("data", []) if ep.get("url") == url]

    action = "created"
    if existing:
        endpoint = existing[0]
        if endpoint.get("api_version") and endpoint["api_version"] != api_version:
            gateway.delete_webhook_endpoint(endpoint["id"])
            action = "recreated"
        elif set(endpoint.get("enabled_events") or []) != set(ENABLED_EVENTS):
            gateway.modify_webhook_endpoint(endpoint["id"], enabled_events=ENABLED_EVENTS)
            logger.info(f"Updated webhook endpoint {endpoint['id']} events for processor {processor.id}")
            return "updated"
        else:
            return "ok"

    endpoint = gateway.create_webhook_endpoint(
        url=url,
        enabled_events=ENABLED_EVENTS,
        api_version=api_version,
        connect=False,
    )
    if endpoint.get("secret"):
        processor.webhook_secret = endpoint["secret"]
        db.session.flush()
    logger.info(f"Webhook endpoint {endpoint['id']} {action} for processor {processor.id} at {url}")
    return action
