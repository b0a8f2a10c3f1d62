"""Intents blueprint: /stripe/intents/process, /stripe/intents/pay

The synchronous processing entry points used by payment forms. /process
takes a payment method (new payment), a payment intent (confirm/capture)
or a setup request and returns what the browser has to do next. /pay
takes payment for a Pending contribution, one-off or recurring.
"""

import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from crm_stripe.extensions import db, limiter
from crm_stripe.models.processor import PaymentProcessor
from crm_stripe.services.errors import MissingParameter, PaymentError
from crm_stripe.services.gateway import gateway_for_processor
from crm_stripe.services.intent_service import IntentEngine, IntentRequest
from crm_stripe.services.payment_service import PaymentRequest, process_payment

logger = logging.getLogger(__name__)

intents_bp = Blueprint("intents", __name__, url_prefix="/stripe/intents")


def _bool(value):
    if isinstance(value, str):
        return value.lower() in ("1", "true", "yes")
    return bool(value)


def _intent_request(data):
    return IntentRequest(
        payment_method_id=data.get("paymentMethodID") or None,
        payment_intent_id=data.get("paymentIntentID") or None,
        amount=data.get("amount"),
        currency=data.get("currency"),
        customer_id=data.get("customerID") or None,
        capture=_bool(data.get("capture", False)),
        description=data.get("description"),
        contribution_id=data.get("contributionID") or None,
        extra_data=data.get("extraData"),
        referrer=request.referrer,
        ip_address=request.remote_addr,
        receipt_email=data.get("receiptEmail"),
    )


def _active_processor(data):
    processor_id = data.get("processorID")
    processor = db.session.get(PaymentProcessor, processor_id) if processor_id else None
    if processor is None or not processor.is_active:
        logger.warning(f"Payment request for unknown processor {processor_id!r}")
        return None
    return processor


@intents_bp.route("/process", methods=["POST"])
@limiter.limit(lambda: current_app.config["INTENT_RATE_LIMIT"])
def process_intent():
    """Create / confirm / capture a payment or setup intent.

    400 "Bad request" when the processor or amount is missing, otherwise
    200 with one of: requires_action, requires_payment_method, success,
    error.
    """
    data = request.get_json(silent=True) or {}

    processor = _active_processor(data)
    if processor is None:
        return jsonify({"error": {"message": MissingParameter.user_message}}), 400

    engine = IntentEngine(gateway_for_processor(processor))
    try:
        result = engine.process_intent(
            _intent_request(data), setup=_bool(data.get("setup", False))
        )
    except PaymentError as e:
        # Caller mistakes only (missing amount, malformed amount)
        db.session.rollback()
        logger.info(f"Rejected intent request for processor {processor.id}: {e.detail}")
        return jsonify({"error": {"message": e.user_message}}), 400

    db.session.commit()
    return jsonify(result.to_response()), 200


def _payment_request(data):
    receive_date = data.get("receiveDate") or None
    if receive_date:
        try:
            receive_date = datetime.fromisoformat(receive_date)
        except (TypeError, ValueError):
            raise MissingParameter(f"receiveDate is not an ISO date: {receive_date!r}")
    return PaymentRequest(
        contribution_id=data.get("contributionID") or None,
        payment_method_id=data.get("paymentMethodID") or None,
        payment_intent_id=data.get("paymentIntentID") or None,
        email=data.get("email") or None,
        description=data.get("description"),
        receive_date=receive_date,
        extra_data=data.get("extraData"),
        referrer=request.referrer,
        ip_address=request.remote_addr,
    )


@intents_bp.route("/pay", methods=["POST"])
@limiter.limit(lambda: current_app.config["INTENT_RATE_LIMIT"])
def pay_contribution():
    """Pay a Pending contribution: one-off charge or first installment.

    The contact's Stripe customer is found or created first. 400 for a
    missing or unpayable contribution, otherwise 200 with the same
    response shapes as /process.
    """
    data = request.get_json(silent=True) or {}

    processor = _active_processor(data)
    if processor is None:
        return jsonify({"error": {"message": MissingParameter.user_message}}), 400

    try:
        result = process_payment(gateway_for_processor(processor), _payment_request(data))
    except PaymentError as e:
        db.session.rollback()
        logger.info(f"Rejected payment request for processor {processor.id}: {e.detail}")
        return jsonify({"error": {"message": e.user_message}}), 400

    db.session.commit()
    return jsonify(result.to_response()), 200
