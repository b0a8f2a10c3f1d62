"""Import existing Stripe subscriptions and charges onto the ledger.

For payments Stripe took before (or outside) this integration:
  - import_charge: one invoice charge -> Contribution, plus its Payment
    when the invoice is paid
  - import_subscription: one subscription -> RecurringContribution, plus
    every charge already paid on it
  - import_subscriptions: one page of the account's subscriptions, each
    contact found through the customer mapping

Re-running an import skips whatever is already recorded. Like the other
services, nothing here commits.
"""

import logging
from dataclasses import dataclass, field

from crm_stripe.extensions import db
from crm_stripe.models.contact import Contact, CustomerMapping
from crm_stripe.models.contribution import Contribution, RecurringContribution
from crm_stripe.services import ledger
from crm_stripe.services.customer_service import find_mapping
from crm_stripe.services.errors import ImportRejected, PaymentError
from crm_stripe.services.event_fields import invoice_fields, subscription_fields
from crm_stripe.services.intent_service import charge_fee

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "Stripe: imported"


@dataclass
class SubscriptionImport:
    subscription_id: str
    customer_id: str = None
    recurring_contribution_id: int = None
    created: bool = False
    contribution_ids: list = field(default_factory=list)


@dataclass
class ImportFailure:
    subscription_id: str
    customer_id: str = None
    reason: str = ""


@dataclass
class ImportBatch:
    imported: list = field(default_factory=list)  # SubscriptionImport
    skipped: list = field(default_factory=list)  # subscription IDs already on the ledger
    errors: list = field(default_factory=list)  # ImportFailure
    continue_after: str = None  # pass as starting_after for the next page


def _object_id(value):
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _contact(contact_id):
    contact = db.session.get(Contact, contact_id) if contact_id else None
    if contact is None:
        raise ImportRejected(f"Contact {contact_id} not found")
    return contact


def _customer_mapping(customer_id, processor_id):
    return CustomerMapping.query.filter_by(
        gateway_customer_id=customer_id, processor_id=processor_id
    ).first()


def _link_customer(contact, customer_id, processor_id):
    """Make sure the Stripe customer maps to this contact, adding the mapping if new."""
    mapping = _customer_mapping(customer_id, processor_id)
    if mapping is not None:
        if mapping.contact_id != contact.id:
            raise ImportRejected(
                f"Stripe customer {customer_id} belongs to contact {mapping.contact_id}, "
                f"not contact {contact.id}"
            )
        return mapping

    existing = find_mapping(contact.id, processor_id)
    if existing is not None:
        raise ImportRejected(
            f"Contact {contact.id} already has Stripe customer "
            f"{existing.gateway_customer_id}, not {customer_id}"
        )
    mapping = CustomerMapping(
        contact_id=contact.id,
        processor_id=processor_id,
        gateway_customer_id=customer_id,
    )
    db.session.add(mapping)
    db.session.flush()
    return mapping


# ──────────────────────────────────────────────
# Charges
# ──────────────────────────────────────────────

def import_charge(gateway, charge_id, contact_id, contribution_id=None, source=None):
    """Record one Stripe invoice charge as a contribution.

    An existing contribution (given, or found by charge / invoice ID) is
    updated rather than duplicated. A paid invoice completes the
    contribution with the charge's fee. Raises ImportRejected when the
    charge has no invoice or belongs to a subscription not imported yet.
    """
    charge = gateway.retrieve_charge(charge_id)
    invoice_id = _object_id(charge.get("invoice"))
    if not invoice_id:
        raise ImportRejected(f"Charge {charge_id} has no invoice, it cannot be imported")
    fields = invoice_fields(gateway.retrieve_invoice(invoice_id))

    recur = None
    if fields["subscription_id"]:
        recur = ledger.find_recur_by_subscription(fields["subscription_id"])
        if recur is None:
            raise ImportRejected(
                f"Charge {charge_id} belongs to subscription {fields['subscription_id']}, "
                f"which has not been imported"
            )

    if contribution_id:
        contribution = db.session.get(Contribution, contribution_id)
        if contribution is None:
            raise ImportRejected(f"Contribution {contribution_id} not found")
    else:
        contribution, _ = ledger.find_contribution(charge_id=charge_id, invoice_id=invoice_id)

    if contribution is None:
        contact = _contact(contact_id)
        contribution = Contribution(
            contact_id=contact.id,
            recurring_contribution_id=recur.id if recur else None,
            processor_id=gateway.config.processor_id,
            status="Pending",
            total_amount=fields["amount"],
            currency=fields["currency"],
            order_reference=invoice_id,
            description=(fields["description"] or source or IMPORT_SOURCE)[:255],
            receive_date=fields["receive_date"],
            is_test=gateway.config.is_test,
        )
        db.session.add(contribution)
        db.session.flush()
        ledger.log_ledger_audit("contribution.imported", {
            "charge_id": charge_id,
            "invoice_id": invoice_id,
        }, contribution_id=contribution.id,
            recurring_contribution_id=contribution.recurring_contribution_id)
    elif contribution.status == "Pending":
        contribution.total_amount = fields["amount"]
        contribution.receive_date = fields["receive_date"]
        if not contribution.order_reference:
            contribution.order_reference = invoice_id
        db.session.flush()

    if fields["status_id"] == "Completed" and contribution.status == "Pending":
        _, fee = charge_fee(gateway, charge)
        ledger.complete_contribution(
            contribution, charge_id, fee_amount=fee,
            order_reference=invoice_id,
            receive_date=fields["receive_date"],
        )
    logger.info(f"Imported charge {charge_id} as contribution {contribution.id}")
    return contribution


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

def import_subscription(gateway, subscription_id, contact_id):
    """Create (or reuse) the recurring contribution for a Stripe subscription.

    The subscription is fetched again from Stripe. Its customer must map
    to the given contact, or be unmapped (the mapping is then created).
    Every paid invoice charge of the subscription not yet on the ledger
    is imported with import_charge().
    """
    subscription = gateway.retrieve_subscription(subscription_id)
    customer_id = _object_id(subscription.get("customer"))
    processor_id = gateway.config.processor_id
    contact = _contact(contact_id)
    _link_customer(contact, customer_id, processor_id)

    result = SubscriptionImport(subscription_id=subscription_id, customer_id=customer_id)

    recur = ledger.find_recur_by_subscription(subscription_id)
    if recur is None:
        fields = subscription_fields(subscription)
        if not fields["frequency_unit"] or fields["plan_amount"] is None:
            raise ImportRejected(f"Subscription {subscription_id} has no plan to import")
        recur = RecurringContribution(
            contact_id=contact.id,
            processor_id=processor_id,
            amount=fields["plan_amount"],
            currency=fields["currency"],
            frequency_unit=fields["frequency_unit"],
            frequency_interval=fields["frequency_interval"],
            start_date=fields["plan_start"],
            cycle_day=fields["cycle_day"],
            status=fields["status_id"],
            auto_renew=True,
            subscription_reference=subscription_id,
            latest_order_reference=subscription_id,
            is_test=gateway.config.is_test,
        )
        db.session.add(recur)
        db.session.flush()
        ledger.log_ledger_audit("recur.imported", {
            "subscription_id": subscription_id,
            "customer_id": customer_id,
        }, recurring_contribution_id=recur.id)
        result.created = True
    elif recur.contact_id != contact.id:
        raise ImportRejected(
            f"Subscription {subscription_id} is already recurring contribution "
            f"{recur.id} of contact {recur.contact_id}"
        )
    result.recurring_contribution_id = recur.id

    invoices = gateway.list_invoices(
        customer=customer_id, subscription=subscription_id, limit=100
    )
    for invoice in sorted(invoices.get("data") or [], key=lambda i: i.get("created") or 0):
        if _object_id(invoice.get("subscription")) != subscription_id:
            continue
        charge_id = _object_id(invoice.get("charge"))
        if not charge_id:
            continue
        existing, _ = ledger.find_contribution(charge_id=charge_id)
        if existing is not None:
            continue
        contribution = import_charge(gateway, charge_id, contact.id)
        result.contribution_ids.append(contribution.id)
        ledger.update_recur(recur, latest_order_reference=invoice["id"])

    return result


def import_subscriptions(gateway, limit=100, starting_after=None):
    """Import one page of the account's subscriptions, whatever their status.

    Subscriptions already on the ledger are skipped. A subscription whose
    customer is not mapped to a contact, or whose import fails, is listed
    in errors and the rest of the page carries on.
    """
    params = {"limit": limit, "status": "all"}
    if starting_after:
        params["starting_after"] = starting_after
    page = gateway.list_subscriptions(**params)

    batch = ImportBatch()
    for subscription in page.get("data") or []:
        subscription_id = subscription["id"]
        batch.continue_after = subscription_id
        if ledger.find_recur_by_subscription(subscription_id) is not None:
            batch.skipped.append(subscription_id)
            continue

        customer_id = _object_id(subscription.get("customer"))
        mapping = _customer_mapping(customer_id, gateway.config.processor_id)
        if mapping is None:
            batch.errors.append(ImportFailure(subscription_id, customer_id, "Customer not found"))
            continue

        try:
            with db.session.begin_nested():
                batch.imported.append(
                    import_subscription(gateway, subscription_id, mapping.contact_id)
                )
        except PaymentError as e:
            logger.warning(f"Import of subscription {subscription_id} failed: {e.detail}")
            batch.errors.append(ImportFailure(subscription_id, customer_id, e.detail))

    logger.info(
        f"Subscription import: {len(batch.imported)} imported, "
        f"{len(batch.skipped)} skipped, {len(batch.errors)} failed"
    )
    return batch
