"""Intent engine: drives a PaymentIntent or SetupIntent to a result.

Responsible for:
- Creating intents (manual capture, card kept for off-session use)
- Confirming / capturing an intent the browser already created
- Recording every attempt in intent_records, failed ones included
- Fraud and card-testing signals on declines
- Fee and charge ID for succeeded intents
- Linking the outcome to the contribution being paid

Gateway errors are caught here and converted to an IntentResult; the
caller only ever sees PaymentError subclasses for its own mistakes
(MissingParameter, InvalidAmount).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from flask import current_app

from crm_stripe.extensions import db
from crm_stripe.models.contribution import Contribution
from crm_stripe.services import ledger
from crm_stripe.services.amounts import to_minor_units
from crm_stripe.services.errors import (
    GatewayDeclined,
    MissingParameter,
    PaymentError,
    is_fraud_decline,
)
from crm_stripe.services.fraud import NullFraudSignal
from crm_stripe.services.reconciliation import (
    INTENT_SUCCESS_STATUSES,
    fee_from_balance_transaction,
)

logger = logging.getLogger(__name__)

PAYMENT_FAILED_MESSAGE = "Payment failed."

SETUP_OK_STATUSES = (
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
    "canceled",
    "succeeded",
)


@dataclass
class IntentRequest:
    """One call into the engine, as received from the processing endpoint."""

    payment_method_id: str = None
    payment_intent_id: str = None
    amount: object = None  # decimal amount in major units, e.g. "12.34"
    currency: str = None
    customer_id: str = None
    capture: bool = False
    description: str = None
    contribution_id: int = None
    extra_data: str = None  # fingerprint for fraud correlation (IP, email)
    referrer: str = None
    ip_address: str = None
    receipt_email: str = None


@dataclass
class IntentResult:
    ok: bool
    status: str = None
    intent_id: str = None
    client_secret: str = None
    message: str = ""
    kind: str = "payment"
    trxn_id: str = None  # charge ID, once known
    fee_amount: Decimal = None
    next_action: dict = field(default=None, repr=False)

    def to_response(self) -> dict:
        """JSON body for the processing endpoint."""
        if self.kind == "setup":
            if not self.ok:
                return {"error": {"message": self.message}}
            return {
                "success": True,
                "setupIntent": {
                    "id": self.intent_id,
                    "status": self.status,
                    "client_secret": self.client_secret,
                    "next_action": self.next_action,
                },
            }

        if self.status == "requires_action":
            return {
                "requires_action": True,
                "paymentIntentClientSecret": self.client_secret,
            }
        if self.status == "requires_payment_method":
            return {
                "requires_payment_method": True,
                "paymentIntentClientSecret": self.client_secret,
            }
        if self.ok:
            return {"success": True, "paymentIntent": {"id": self.intent_id}}
        return {"error": {"message": self.message}}


def _charge_of(intent):
    """The charge behind an intent: latest_charge, or the legacy charges list."""
    charge = intent.get("latest_charge")
    if charge:
        return charge
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0] if charges else None


def charge_fee(gateway, charge):
    """Return (charge_id, fee_amount) for a Stripe charge (ID or object).

    The fee is None when the charge has no balance transaction yet
    (declined, or not captured).
    """
    if not charge:
        return None, None
    if isinstance(charge, str):
        charge = gateway.retrieve_charge(charge)

    balance_transaction = charge.get("balance_transaction")
    if not balance_transaction:
        return charge["id"], None
    if isinstance(balance_transaction, str):
        balance_transaction = gateway.retrieve_balance_transaction(balance_transaction)

    fee = fee_from_balance_transaction(
        balance_transaction, (charge.get("currency") or "").upper()
    )
    return charge["id"], fee


class IntentEngine:
    """Drives one processor's payment and setup intents."""

    def __init__(self, gateway, fraud_signal=None, config=None, staff=False):
        self.gateway = gateway
        self.fraud_signal = fraud_signal or NullFraudSignal()
        self.config = config if config is not None else current_app.config
        self.staff = staff

    @property
    def processor_id(self):
        return self.gateway.config.processor_id

    # ──────────────────────────────────────────────
    # Payment intents
    # ──────────────────────────────────────────────

    def process_payment_intent(self, request):
        """Create, confirm or capture a PaymentIntent.

        Returns an IntentResult. Raises MissingParameter / InvalidAmount
        for malformed requests before anything is sent to Stripe.
        """
        if not request.payment_intent_id:
            if request.amount in (None, "") or not request.currency:
                raise MissingParameter("amount and currency are required")
            creation_params = self._creation_params(request)

        self._check_failed_attempts(request)

        try:
            if request.payment_intent_id:
                intent = self._confirm_existing(request)
            else:
                intent = self.gateway.create_payment_intent(**creation_params)
        except PaymentError as e:
            return self._record_failure(request, e)

        ledger.upsert_intent_record(
            intent["id"],
            self.processor_id,
            intent["status"],
            contribution_id=request.contribution_id,
            description=request.description,
            referrer=request.referrer,
            extra_data=request.extra_data,
        )

        result = self._payment_result(intent)
        if intent["status"] == "succeeded":
            self._settle(intent, result, request.contribution_id)
        return result

    def _creation_params(self, request):
        params = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency.lower(),
            # Authorise now, capture once the contribution is saved.
            "capture_method": "manual",
            # Keep the card for off-session recurring charges.
            "setup_future_usage": "off_session",
        }
        if request.payment_method_id:
            params["payment_method"] = request.payment_method_id
            params["confirm"] = True
            params["confirmation_method"] = "manual"
        else:
            params["confirm"] = False
            params["confirmation_method"] = "automatic"
        if request.customer_id:
            params["customer"] = request.customer_id
        if request.description:
            params["description"] = request.description
        return params

    def _confirm_existing(self, request):
        intent = self.gateway.retrieve_payment_intent(request.payment_intent_id)
        # The browser creates the intent before the contact has a customer.
        if (
            request.customer_id
            and not intent.get("customer")
            and intent["status"] not in ("succeeded", "canceled")
        ):
            intent = self.gateway.update_payment_intent(
                intent["id"], customer=request.customer_id
            )
        if intent["status"] == "requires_confirmation":
            intent = self.gateway.confirm_payment_intent(intent["id"])
        if request.capture and intent["status"] == "requires_capture":
            intent = self.gateway.capture_payment_intent(intent["id"])

        # Only now: setting it before confirmation makes Stripe send the
        # receipt twice.
        if (
            self.config.get("STRIPE_ONEOFF_RECEIPT")
            and request.receipt_email
            and not intent.get("receipt_email")
            and intent["status"] in INTENT_SUCCESS_STATUSES
        ):
            intent = self.gateway.update_payment_intent(
                intent["id"], receipt_email=request.receipt_email
            )
        return intent

    def _payment_result(self, intent):
        status = intent["status"]
        result = IntentResult(
            ok=False,
            status=status,
            intent_id=intent["id"],
            next_action=intent.get("next_action"),
        )

        if status == "requires_action":
            result.ok = True
            result.client_secret = intent.get("client_secret")
        elif status in ("requires_capture", "requires_confirmation", "succeeded"):
            result.ok = True
        elif status == "requires_payment_method":
            result.client_secret = intent.get("client_secret")
            result.message = self._failure_message(intent.get("last_payment_error"))
        else:
            result.message = self._failure_message(intent.get("last_payment_error"))
        return result

    def _failure_message(self, last_error):
        if self.staff and last_error and last_error.get("message"):
            return f"Payment failed: {last_error['message']}"
        return PAYMENT_FAILED_MESSAGE

    def _settle(self, intent, result, contribution_id):
        """Fill in charge ID and fee for a succeeded intent and complete the contribution."""
        charge_id, fee = self.charge_details(intent)
        result.trxn_id = charge_id
        result.fee_amount = fee

        if not contribution_id or not charge_id:
            return
        contribution = db.session.get(Contribution, contribution_id)
        if contribution and contribution.status == "Pending":
            ledger.complete_contribution(contribution, charge_id, fee_amount=fee)

    def charge_details(self, intent):
        """Return (charge_id, fee_amount) for a succeeded intent.

        A failure to read the fee is logged and leaves the fee unset: the
        payment itself has already gone through.
        """
        try:
            return charge_fee(self.gateway, _charge_of(intent))
        except PaymentError as e:
            logger.warning(
                f"Could not read charge/fee for intent {intent.get('id')}: {e.detail}"
            )
            charge = _charge_of(intent)
            if isinstance(charge, str):
                return charge, None
            return (charge or {}).get("id"), None

    # ──────────────────────────────────────────────
    # Setup intents
    # ──────────────────────────────────────────────

    def process_setup_intent(self, request):
        """Create and confirm a SetupIntent for off-session use."""
        params = {
            "confirm": True,
            "payment_method_types": ["card"],
            "usage": "off_session",
        }
        if request.description:
            params["description"] = request.description
        if request.payment_method_id:
            params["payment_method"] = request.payment_method_id
        if request.customer_id:
            params["customer"] = request.customer_id

        try:
            intent = self.gateway.create_setup_intent(**params)
        except PaymentError as e:
            result = self._record_failure(request, e)
            result.kind = "setup"
            return result

        ledger.upsert_intent_record(
            intent["id"],
            self.processor_id,
            intent["status"],
            contribution_id=request.contribution_id,
            description=request.description,
            referrer=request.referrer,
            extra_data=request.extra_data,
        )

        result = IntentResult(
            ok=intent["status"] in SETUP_OK_STATUSES,
            status=intent["status"],
            intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            next_action=intent.get("next_action"),
            kind="setup",
        )
        if intent.get("last_setup_error"):
            result.ok = False
            result.message = self._failure_message(intent["last_setup_error"])
        elif not result.ok:
            result.message = PAYMENT_FAILED_MESSAGE
        return result

    def process_intent(self, request, setup=False):
        if setup:
            return self.process_setup_intent(request)
        return self.process_payment_intent(request)

    # ──────────────────────────────────────────────
    # Failures and fraud
    # ──────────────────────────────────────────────

    def _check_failed_attempts(self, request):
        """Raise a fraud signal when the same fingerprint keeps failing."""
        if not request.extra_data:
            return
        since = datetime.now(timezone.utc) - timedelta(
            hours=self.config.get("FRAUD_WINDOW_HOURS", 2)
        )
        failed = ledger.count_failed_intents(request.extra_data, since)
        if failed > self.config.get("FRAUD_FAILED_ATTEMPT_THRESHOLD", 5):
            logger.warning(
                f"{failed} failed payment attempts for the same details in the "
                f"last {self.config.get('FRAUD_WINDOW_HOURS', 2)}h (processor {self.processor_id})"
            )
            self.fraud_signal.fraud(
                request.ip_address,
                f"Repeated failed payment attempts: {request.extra_data}"[:255],
            )

    def _record_failure(self, request, error):
        """Persist a failed attempt and convert the error to a result."""
        logger.info(
            f"Payment intent failed for processor {self.processor_id}: "
            f"{type(error).__name__} {error.detail}"
        )
        ledger.upsert_intent_record(
            request.payment_intent_id,
            self.processor_id,
            "failed",
            contribution_id=request.contribution_id,
            description=f"{error.detail};{request.description or ''}"[:255],
            referrer=request.referrer,
            extra_data=request.extra_data,
        )

        if isinstance(error, GatewayDeclined):
            if is_fraud_decline(error):
                self.fraud_signal.fraud(request.ip_address, "Card declined as fraudulent")
            else:
                self.fraud_signal.declined_card(request.ip_address, "Card declined")

        # Every decline gets the same message whichever signal fired.
        return IntentResult(
            ok=False,
            status="failed",
            intent_id=request.payment_intent_id,
            message=error.message_for(staff=self.staff),
        )
