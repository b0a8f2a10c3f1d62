"""Housekeeping for intent records.

Two sweeps, run from `flask process-stripe` on a schedule:
  - delete intent records in a terminal state older than N days
  - cancel intents still open at Stripe after M minutes ("abandoned")

Both keep going past individual failures and report counts.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_

from crm_stripe.extensions import db
from crm_stripe.models.intent import IntentRecord
from crm_stripe.models.processor import PaymentProcessor
from crm_stripe.services.errors import PaymentError
from crm_stripe.services.gateway import gateway_for_processor

logger = logging.getLogger(__name__)


def delete_old_intent_records(older_than_days, now=None):
    """Delete terminal intent records created more than N days ago.

    Returns the number of rows deleted.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=older_than_days)

    deleted = (
        IntentRecord.query
        .filter(IntentRecord.status.in_(IntentRecord.TERMINAL_STATUSES))
        .filter(IntentRecord.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.flush()
    logger.info(f"Deleted {deleted} intent record(s) older than {older_than_days} days")
    return deleted


def cancel_abandoned_intents(older_than_minutes, now=None,
                             gateway_factory=gateway_for_processor):
    """Cancel open Stripe intents whose record is older than M minutes.

    Only standalone PaymentIntents and SetupIntents are swept. Records
    keyed by a subscription ID, or flagged as belonging to a subscription,
    are left alone: Stripe drives those intents through the subscription.

    A 400 or 404 from Stripe means the intent is already canceled or gone,
    so the record is marked canceled either way. Other errors leave the
    record for the next run.

    Returns the number of records marked canceled.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=older_than_minutes)

    records = (
        IntentRecord.query
        .filter(IntentRecord.status.notin_(IntentRecord.TERMINAL_STATUSES))
        .filter(or_(
            IntentRecord.gateway_intent_id.startswith("pi_", autoescape=True),
            IntentRecord.gateway_intent_id.startswith("seti_", autoescape=True),
        ))
        .filter(IntentRecord.created_at < cutoff)
        .order_by(IntentRecord.id)
        .all()
    )
    # flags is JSON, so the subscription check is done here rather than in SQL.
    records = [r for r in records if not r.is_subscription]

    gateways = {}
    canceled = 0
    for record in records:
        gateway = gateways.get(record.processor_id)
        if gateway is None:
            processor = db.session.get(PaymentProcessor, record.processor_id)
            if processor is None:
                logger.warning(
                    f"Intent record {record.id}: processor {record.processor_id} not found"
                )
                continue
            gateway = gateways[record.processor_id] = gateway_factory(processor)

        try:
            gateway.cancel_intent(
                record.gateway_intent_id, cancellation_reason="abandoned"
            )
        except PaymentError as e:
            logger.error(
                f"Unable to cancel intent {record.gateway_intent_id}: {e.detail}"
            )
            if e.http_status not in (400, 404):
                continue

        record.status = "canceled"
        canceled += 1

    db.session.flush()
    logger.info(f"Canceled {canceled} abandoned intent(s) older than {older_than_minutes} minutes")
    return canceled


def process_stripe(delete_old_days=90, cancel_incomplete_minutes=60, now=None,
                   gateway_factory=gateway_for_processor):
    """Run both sweeps. A value of 0 (or None) disables that sweep."""
    results = {"deleted": 0, "canceled": 0}
    if delete_old_days:
        results["deleted"] = delete_old_intent_records(delete_old_days, now=now)
    if cancel_incomplete_minutes:
        results["canceled"] = cancel_abandoned_intents(
            cancel_incomplete_minutes, now=now, gateway_factory=gateway_factory
        )
    return results
