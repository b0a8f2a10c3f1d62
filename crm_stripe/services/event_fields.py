"""Normalized fields from a Stripe event payload.

Charges, invoices and subscriptions name the same ideas differently
(``amount`` vs ``amount_due``, ``id`` vs ``charge``). Each object type
has one mapper here; handlers only ever read the normalized dict.
Nothing in this module touches the database or the network.
"""

from datetime import datetime, timezone

from crm_stripe.services.amounts import from_minor_units
from crm_stripe.services.reconciliation import (
    charge_status_to_ledger_status,
    invoice_status_to_ledger_status,
    subscription_status_to_ledger_status,
)


def _ts(value):
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _id(value):
    """An expandable field holds either an ID or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _upper(value):
    return value.upper() if value else None


def charge_fields(charge):
    currency = _upper(charge.get("currency"))
    return {
        "charge_id": charge.get("id"),
        "invoice_id": _id(charge.get("invoice")),
        "payment_intent_id": _id(charge.get("payment_intent")),
        "balance_transaction_id": _id(charge.get("balance_transaction")),
        "amount": from_minor_units(charge.get("amount"), currency),
        "amount_refunded": from_minor_units(charge.get("amount_refunded") or 0, currency),
        "currency": currency,
        "refunded": bool(charge.get("refunded")),
        "captured": bool(charge.get("captured")),
        "failure_code": charge.get("failure_code"),
        "failure_message": charge.get("failure_message"),
        "receive_date": _ts(charge.get("created")),
        "status": charge.get("status"),
        "status_id": charge_status_to_ledger_status(
            charge.get("status"),
            captured=bool(charge.get("captured")),
            refunded=bool(charge.get("refunded")),
        ),
    }


def invoice_fields(invoice):
    currency = _upper(invoice.get("currency"))
    paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
    return {
        "charge_id": _id(invoice.get("charge")),
        "invoice_id": invoice.get("id"),
        "subscription_id": _id(invoice.get("subscription")),
        "payment_intent_id": _id(invoice.get("payment_intent")),
        "amount": from_minor_units(invoice.get("amount_due"), currency),
        "amount_paid": from_minor_units(invoice.get("amount_paid"), currency),
        "amount_remaining": from_minor_units(invoice.get("amount_remaining"), currency),
        "currency": currency,
        "receive_date": _ts(paid_at or invoice.get("created")),
        "status_id": invoice_status_to_ledger_status(invoice.get("paid")),
        "description": invoice.get("description"),
    }


def _subscription_plan(subscription):
    plan = subscription.get("plan")
    if plan:
        return plan
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("plan") or items[0].get("price") or {}
    return {}


def subscription_fields(subscription):
    plan = _subscription_plan(subscription)
    recurring = plan.get("recurring") or {}  # Price objects nest interval here
    currency = _upper(plan.get("currency"))
    anchor = _ts(subscription.get("billing_cycle_anchor"))
    return {
        "subscription_id": subscription.get("id"),
        "plan_id": plan.get("id"),
        "plan_name": plan.get("nickname") or plan.get("name"),
        "plan_amount": from_minor_units(
            plan.get("amount", plan.get("unit_amount")), currency
        ),
        "frequency_unit": plan.get("interval") or recurring.get("interval"),
        "frequency_interval": int(
            plan.get("interval_count") or recurring.get("interval_count") or 1
        ),
        "currency": currency,
        "plan_start": _ts(subscription.get("start_date") or subscription.get("start")),
        "cycle_day": anchor.day if anchor else None,
        "status": subscription.get("status"),
        "status_id": subscription_status_to_ledger_status(subscription.get("status")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
    }


MAPPERS = {
    "charge": charge_fields,
    "invoice": invoice_fields,
    "subscription": subscription_fields,
}


def extract_fields(event):
    """Return the normalized field dict for a Stripe event (dict-like).

    Unknown object types still get the common fields, so a handler can
    log what it could not use.
    """
    data = event.get("data") or {}
    obj = data.get("object") or {}
    object_type = obj.get("object")

    mapper = MAPPERS.get(object_type)
    fields = mapper(obj) if mapper else {}

    previous = data.get("previous_attributes") or {}
    fields.update({
        "object_type": object_type,
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "customer_id": _id(obj.get("customer")),
        "previous_plan_id": _id(previous.get("plan")),
    })
    return fields
