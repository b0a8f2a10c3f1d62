"""Webhooks blueprint: /stripe/webhooks/<processor_id>

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, jsonify, request

from crm_stripe.extensions import db
from crm_stripe.models.processor import PaymentProcessor
from crm_stripe.services.errors import PaymentError, WebhookSignatureInvalid
from crm_stripe.services.webhook_service import WebhookRouter

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks/<int:processor_id>", methods=["POST"])
def stripe_webhook(processor_id):
    """Receive and process one Stripe webhook delivery.

    1. Look up the processor named in the URL (its secret verifies the body;
       without one the event is fetched from Stripe by ID)
    2. Verify, queue and process via WebhookRouter
    3. 200 for every authenticated event, whatever it did; 400 for a bad
       signature or body; 500 only for an error Stripe should retry

    CSRF is exempted for this blueprint in create_app().
    """
    processor = db.session.get(PaymentProcessor, processor_id)
    if processor is None or not processor.is_active:
        logger.warning(f"Webhook for unknown or inactive processor {processor_id}")
        return jsonify({"error": "Unknown processor"}), 404

    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    try:
        outcome = WebhookRouter(processor).receive(payload, sig_header)
    except WebhookSignatureInvalid as e:
        db.session.rollback()
        logger.warning(f"Webhook verification failed for processor {processor_id}: {e.detail}")
        return jsonify({"error": e.user_message}), 400
    except PaymentError as e:
        # Stripe could not be reached to fetch the event; let it redeliver.
        db.session.rollback()
        logger.error(f"Webhook for processor {processor_id} not processed: {e.detail}")
        return jsonify({"error": "Temporary failure, please retry"}), 500

    # The queue row (and any ledger writes) are kept even for errors.
    db.session.commit()

    if outcome.status == "error" and outcome.retry:
        logger.error(f"Webhook processing failed: {outcome.message}")
        return jsonify({"error": outcome.message}), 500
    return jsonify({"status": outcome.status, "message": outcome.message}), 200
