"""Ledger service: contribution, recurring contribution and intent record writes.

Responsible for:
- Matching Stripe objects to contributions (charge, invoice, subscription)
- Completing / failing contributions with status-guarded updates
- Repeat contributions for subsequent subscription cycles
- Recording refunds as negative payments
- Upserting IntentRecord rows keyed by the Stripe intent ID
- The per-contribution advisory lock

All functions flush but never commit; the caller owns the transaction.
"""

import logging
import threading
import zlib
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError

from crm_stripe.extensions import db
from crm_stripe.models.audit import AuditEvent
from crm_stripe.models.contribution import (
    Contribution,
    Payment,
    RecurringContribution,
)
from crm_stripe.models.intent import IntentRecord
from crm_stripe.services.errors import RefundAlreadyApplied
from crm_stripe.services.reconciliation import net_amount

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 30

_local_locks = {}
_local_locks_guard = threading.Lock()


def _utcnow():
    return datetime.now(timezone.utc)


def log_ledger_audit(action, metadata=None, contribution_id=None,
                     recurring_contribution_id=None):
    """Log a ledger audit event (system-initiated, no actor)."""
    event = AuditEvent(
        contribution_id=contribution_id,
        recurring_contribution_id=recurring_contribution_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


# ──────────────────────────────────────────────
# Locking
# ──────────────────────────────────────────────

@contextmanager
def contribution_lock(contribution_id):
    """Hold the advisory lock for one contribution.

    PostgreSQL gets a transaction-scoped advisory lock (released on
    commit/rollback). Other databases fall back to a process-local lock,
    which serializes threads of one worker only.
    """
    name = f"data.contribute.contribution.{contribution_id}"

    if db.session.get_bind().dialect.name == "postgresql":
        db.session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": zlib.crc32(name.encode())},
        )
        yield
        return

    with _local_locks_guard:
        lock = _local_locks.setdefault(name, threading.Lock())
    acquired = lock.acquire(timeout=LOCK_TIMEOUT_SECONDS)
    if not acquired:
        logger.warning(f"Could not acquire lock {name}, continuing without it")
    try:
        yield
    finally:
        if acquired:
            lock.release()


# ──────────────────────────────────────────────
# Matching
# ──────────────────────────────────────────────

def find_contribution(charge_id=None, invoice_id=None, subscription_id=None):
    """Find the contribution a Stripe object refers to.

    Tries, in order: the charge ID as trxn_id (one-off payments), the
    invoice ID as order reference (recurring, invoice issued), then the
    subscription ID as order reference (recurring, no invoice yet).

    Returns (contribution, tier) or (None, None).
    """
    if charge_id:
        contribution = (
            Contribution.query.filter_by(trxn_id=charge_id)
            .order_by(Contribution.id.desc())
            .first()
        )
        if contribution:
            return contribution, "charge"

    if invoice_id:
        contribution = (
            Contribution.query.filter_by(order_reference=invoice_id)
            .order_by(Contribution.id.desc())
            .first()
        )
        if contribution:
            return contribution, "invoice"

    if subscription_id:
        contribution = (
            Contribution.query.filter_by(order_reference=subscription_id)
            .order_by(Contribution.id.desc())
            .first()
        )
        if contribution:
            return contribution, "subscription"

    return None, None


def find_recur_by_subscription(subscription_id):
    if not subscription_id:
        return None
    return RecurringContribution.query.filter_by(
        subscription_reference=subscription_id
    ).first()


def latest_contribution_for_recur(recur):
    """Most recent contribution in a recurring series, or None."""
    return (
        Contribution.query.filter_by(recurring_contribution_id=recur.id)
        .order_by(Contribution.id.desc())
        .first()
    )


# ──────────────────────────────────────────────
# Contribution transitions
# ──────────────────────────────────────────────

def _guarded_update(contribution, from_status, values):
    """Apply values only if the row still has from_status.

    A concurrent writer that got there first turns this into a no-op.
    Returns True when this call made the transition.
    """
    updated = (
        Contribution.query
        .filter_by(id=contribution.id, status=from_status)
        .update(values, synchronize_session=False)
    )
    db.session.refresh(contribution)
    return bool(updated)


def complete_contribution(contribution, trxn_id, fee_amount=None,
                          order_reference=None, receive_date=None):
    """Mark a Pending contribution Completed and record its payment.

    Returns False (and writes nothing) if the contribution is no longer
    Pending.
    """
    values = {
        "status": "Completed",
        "trxn_id": trxn_id,
        "modified_at": _utcnow(),
    }
    if fee_amount is not None:
        values["fee_amount"] = fee_amount
        values["net_amount"] = net_amount(
            contribution.total_amount, fee_amount, contribution.currency
        )
    if order_reference:
        values["order_reference"] = order_reference
    if receive_date:
        values["receive_date"] = receive_date

    if not _guarded_update(contribution, "Pending", values):
        logger.info(
            f"Contribution {contribution.id} is {contribution.status}, not completing"
        )
        return False

    db.session.add(Payment(
        contribution_id=contribution.id,
        trxn_id=trxn_id,
        total_amount=contribution.total_amount,
        fee_amount=fee_amount,
        order_reference=contribution.order_reference,
        trxn_date=receive_date or _utcnow(),
    ))
    db.session.flush()

    log_ledger_audit("contribution.completed", {
        "trxn_id": trxn_id,
        "order_reference": contribution.order_reference,
        "fee_amount": str(fee_amount) if fee_amount is not None else None,
    }, contribution_id=contribution.id,
        recurring_contribution_id=contribution.recurring_contribution_id)
    return True


def fail_contribution(contribution, note=None, trxn_id=None,
                      order_reference=None):
    """Mark a Pending contribution Failed. Returns False if it was not Pending."""
    values = {"status": "Failed", "modified_at": _utcnow()}
    if trxn_id:
        values["trxn_id"] = trxn_id
    if order_reference:
        values["order_reference"] = order_reference

    if not _guarded_update(contribution, "Pending", values):
        logger.info(
            f"Contribution {contribution.id} is {contribution.status}, not failing"
        )
        return False

    log_ledger_audit("contribution.failed", {
        "note": note,
        "trxn_id": trxn_id,
    }, contribution_id=contribution.id,
        recurring_contribution_id=contribution.recurring_contribution_id)
    return True


def record_failure_note(contribution, note):
    log_ledger_audit("contribution.failure_note", {"note": note},
                     contribution_id=contribution.id)


def repeat_contribution(recur, template, status, trxn_id=None,
                        order_reference=None, total_amount=None,
                        fee_amount=None, receive_date=None):
    """Create the contribution for a subsequent cycle of a recurring series.

    ``template`` is the previous contribution in the series (may be None);
    when present it becomes original_contribution_id and supplies the
    contact, processor and description.
    """
    currency = (template.currency if template else recur.currency)
    total = Decimal(total_amount) if total_amount is not None else (
        template.total_amount if template else recur.amount
    )

    contribution = Contribution(
        contact_id=template.contact_id if template else recur.contact_id,
        recurring_contribution_id=recur.id,
        original_contribution_id=template.id if template else None,
        processor_id=template.processor_id if template else recur.processor_id,
        status=status,
        total_amount=total,
        fee_amount=fee_amount,
        net_amount=net_amount(total, fee_amount, currency),
        currency=currency,
        trxn_id=trxn_id,
        order_reference=order_reference,
        description=template.description if template else None,
        receive_date=receive_date or _utcnow(),
        is_test=recur.is_test,
    )
    db.session.add(contribution)
    db.session.flush()

    if status == "Completed":
        db.session.add(Payment(
            contribution_id=contribution.id,
            trxn_id=trxn_id,
            total_amount=total,
            fee_amount=fee_amount,
            order_reference=order_reference,
            trxn_date=contribution.receive_date,
        ))
        db.session.flush()

    log_ledger_audit("contribution.repeated", {
        "status": status,
        "trxn_id": trxn_id,
        "order_reference": order_reference,
        "original_contribution_id": contribution.original_contribution_id,
    }, contribution_id=contribution.id, recurring_contribution_id=recur.id)
    return contribution


# ──────────────────────────────────────────────
# Refunds
# ──────────────────────────────────────────────

def refunded_total(contribution):
    """Sum of refunds already recorded on a contribution, as a positive Decimal."""
    total = (
        db.session.query(func.coalesce(func.sum(Payment.total_amount), 0))
        .filter(
            Payment.contribution_id == contribution.id,
            Payment.total_amount < 0,
        )
        .scalar()
    )
    return -Decimal(str(total))


def record_refund(contribution, refund_id, amount, charge_id=None,
                  reason=None, refund_date=None):
    """Record a refund as a negative payment on the contribution.

    Raises RefundAlreadyApplied if a payment with this refund ID exists.
    The caller must hold contribution_lock().
    """
    existing = Payment.query.filter_by(
        contribution_id=contribution.id, trxn_id=refund_id
    ).first()
    if existing:
        raise RefundAlreadyApplied(
            f"Refund {refund_id} already recorded on contribution {contribution.id}"
        )

    original = None
    if charge_id:
        original = Payment.query.filter(
            Payment.contribution_id == contribution.id,
            Payment.trxn_id == charge_id,
            Payment.total_amount > 0,
        ).first()

    payment = Payment(
        contribution_id=contribution.id,
        trxn_id=refund_id,
        total_amount=-Decimal(amount),
        order_reference=contribution.order_reference,
        trxn_result_code=reason,
        cancelled_payment_id=original.id if original else None,
        trxn_date=refund_date or _utcnow(),
    )
    db.session.add(payment)
    db.session.flush()

    if refunded_total(contribution) >= contribution.total_amount:
        contribution.status = "Refunded"
    else:
        contribution.status = "Partially Refunded"
    db.session.flush()

    log_ledger_audit("contribution.refunded", {
        "refund_id": refund_id,
        "amount": str(amount),
        "reason": reason,
        "status": contribution.status,
    }, contribution_id=contribution.id)
    return payment


# ──────────────────────────────────────────────
# Recurring contributions
# ──────────────────────────────────────────────

def update_recur(recur, **fields):
    for key, value in fields.items():
        setattr(recur, key, value)
    db.session.flush()
    return recur


def cancel_recur(recur, reason=None):
    """Cancel a recurring contribution. Cancelling twice is a no-op."""
    if recur.status == "Cancelled":
        return False
    recur.status = "Cancelled"
    recur.cancelled_at = _utcnow()
    recur.auto_renew = False
    db.session.flush()
    log_ledger_audit("recur.cancelled", {
        "subscription_reference": recur.subscription_reference,
        "reason": reason,
    }, recurring_contribution_id=recur.id)
    return True


# ──────────────────────────────────────────────
# Intent records
# ──────────────────────────────────────────────

def get_intent_record(gateway_intent_id):
    return IntentRecord.query.filter_by(gateway_intent_id=gateway_intent_id).first()


def _apply_intent_fields(record, status, contribution_id, description,
                         referrer, extra_data, subscription=False):
    record.status = status
    if contribution_id:
        record.contribution_id = contribution_id
    if description:
        record.description = description
    if extra_data:
        record.extra_data = extra_data[:255]
    # Referrer is the page the payment started from; keep the first one.
    if referrer and not record.referrer:
        record.referrer = referrer[:1024]

    flags = [f for f in (record.flags or []) if f != IntentRecord.FLAG_NO_CONTRIBUTION]
    if not record.contribution_id:
        flags.append(IntentRecord.FLAG_NO_CONTRIBUTION)
    if subscription and IntentRecord.FLAG_SUBSCRIPTION not in flags:
        flags.append(IntentRecord.FLAG_SUBSCRIPTION)
    record.flags = flags


def upsert_intent_record(gateway_intent_id, processor_id, status,
                         contribution_id=None, description=None,
                         referrer=None, extra_data=None, subscription=False):
    """Create or update the IntentRecord for a Stripe intent ID.

    subscription=True marks the record as belonging to a Stripe
    subscription; the flag is never removed once set.

    Two requests racing to insert the same intent both end up updating
    the single row: the loser's insert fails on the unique key inside a
    savepoint and it falls back to updating.
    """
    record = None
    if gateway_intent_id:
        record = get_intent_record(gateway_intent_id)

    if record is None:
        record = IntentRecord(
            gateway_intent_id=gateway_intent_id,
            processor_id=processor_id,
            flags=[],
        )
        _apply_intent_fields(record, status, contribution_id, description,
                             referrer, extra_data, subscription)
        try:
            with db.session.begin_nested():
                db.session.add(record)
            return record
        except IntegrityError:
            logger.info(f"IntentRecord {gateway_intent_id} inserted concurrently, updating")
            record = get_intent_record(gateway_intent_id)

    _apply_intent_fields(record, status, contribution_id, description,
                         referrer, extra_data, subscription)
    db.session.flush()
    return record


def count_failed_intents(extra_data, since):
    """Failed intent attempts with the same diagnostic fingerprint since a time."""
    if not extra_data:
        return 0
    return IntentRecord.query.filter(
        IntentRecord.status == "failed",
        IntentRecord.extra_data == extra_data[:255],
        IntentRecord.created_at >= since,
    ).count()
