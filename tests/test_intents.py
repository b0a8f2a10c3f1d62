"""Tests for the intent engine and the /stripe/intents/process endpoint.

Covers:
- New payment with a payment method (created, confirmed, manual capture)
- 3-D Secure (requires_action) and requires_payment_method responses
- Confirm + capture of an existing intent, receipt email after capture
- Succeeded intent completes the contribution with charge ID and fee
- Declines: generic message, fraud vs declined-card signal, failed record
- Repeated failures from the same fingerprint raise a fraud signal
- Intent record upsert is idempotent per intent ID
- Setup intents
- HTTP: bad requests, per-processor API key, JSON shapes
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from crm_stripe.extensions import db
from crm_stripe.models.contribution import Contribution, Payment
from crm_stripe.models.intent import IntentRecord
from crm_stripe.services import ledger
from crm_stripe.services.errors import (
    DECLINED_MESSAGE,
    GatewayDeclined,
    GatewayRequestInvalid,
    MissingParameter,
)
from crm_stripe.services.fraud import FraudSignal
from crm_stripe.services.intent_service import (
    PAYMENT_FAILED_MESSAGE,
    IntentEngine,
    IntentRequest,
)


def _succeeded_intent(intent_id="pi_ok", charge_id="ch_ok", fee=35):
    return {
        "id": intent_id,
        "status": "succeeded",
        "client_secret": f"{intent_id}_secret",
        "latest_charge": {
            "id": charge_id,
            "currency": "usd",
            "balance_transaction": {"fee": fee, "currency": "usd"},
        },
    }


@pytest.fixture
def fraud_signal():
    return MagicMock(spec=FraudSignal)


@pytest.fixture
def engine(gateway, fraud_signal):
    return IntentEngine(gateway, fraud_signal=fraud_signal)


class TestCreatePaymentIntent:

    def test_creation_params(self, engine, gateway):
        gateway.create_payment_intent.return_value = {
            "id": "pi_1", "status": "requires_capture",
        }
        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="12.34", currency="USD",
            customer_id="cus_1", description="Gift",
        ))

        params = gateway.create_payment_intent.call_args.kwargs
        assert params["amount"] == 1234
        assert params["currency"] == "usd"
        assert params["capture_method"] == "manual"
        assert params["setup_future_usage"] == "off_session"
        assert params["confirm"] is True
        assert params["confirmation_method"] == "manual"
        assert params["payment_method"] == "pm_1"
        assert params["customer"] == "cus_1"
        assert result.ok is True
        assert result.to_response() == {"success": True, "paymentIntent": {"id": "pi_1"}}

    def test_without_payment_method_is_not_confirmed(self, engine, gateway):
        gateway.create_payment_intent.return_value = {
            "id": "pi_2", "status": "requires_payment_method", "client_secret": "sec_2",
        }
        result = engine.process_payment_intent(IntentRequest(amount="5", currency="USD"))

        params = gateway.create_payment_intent.call_args.kwargs
        assert params["confirm"] is False
        assert params["confirmation_method"] == "automatic"
        assert result.ok is False
        assert result.to_response() == {
            "requires_payment_method": True,
            "paymentIntentClientSecret": "sec_2",
        }

    def test_requires_action_returns_client_secret(self, engine, gateway):
        gateway.create_payment_intent.return_value = {
            "id": "pi_3", "status": "requires_action", "client_secret": "sec_3",
            "next_action": {"type": "use_stripe_sdk"},
        }
        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="20", currency="USD",
        ))
        assert result.to_response() == {
            "requires_action": True,
            "paymentIntentClientSecret": "sec_3",
        }

    def test_missing_amount_rejected_before_stripe(self, engine, gateway):
        with pytest.raises(MissingParameter) as exc:
            engine.process_payment_intent(IntentRequest(payment_method_id="pm_1", currency="USD"))
        assert exc.value.user_message == "Bad request"
        gateway.create_payment_intent.assert_not_called()

    def test_succeeded_completes_contribution(self, engine, gateway, seed_data):
        gateway.create_payment_intent.return_value = _succeeded_intent()
        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="25.00", currency="USD",
            contribution_id=seed_data["oneoff_id"],
        ))

        assert result.ok is True
        assert result.trxn_id == "ch_ok"
        assert result.fee_amount == Decimal("0.35")

        contribution = db.session.get(Contribution, seed_data["oneoff_id"])
        assert contribution.status == "Completed"
        assert contribution.trxn_id == "ch_ok"
        assert contribution.fee_amount == Decimal("0.35")
        assert contribution.net_amount == Decimal("24.65")
        assert Payment.query.filter_by(contribution_id=contribution.id).count() == 1

        record = IntentRecord.query.filter_by(gateway_intent_id="pi_ok").one()
        assert record.status == "succeeded"
        assert record.contribution_id == contribution.id
        assert IntentRecord.FLAG_NO_CONTRIBUTION not in record.flags

    def test_fee_lookup_failure_does_not_fail_payment(self, engine, gateway, seed_data):
        intent = _succeeded_intent()
        intent["latest_charge"]["balance_transaction"] = "txn_1"
        gateway.create_payment_intent.return_value = intent
        gateway.retrieve_balance_transaction.side_effect = GatewayRequestInvalid("boom")

        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="25.00", currency="USD",
            contribution_id=seed_data["oneoff_id"],
        ))
        assert result.ok is True
        assert result.fee_amount is None
        assert db.session.get(Contribution, seed_data["oneoff_id"]).status == "Completed"


class TestConfirmExisting:

    def test_confirm_capture_then_receipt(self, engine, gateway):
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_5", "status": "requires_confirmation",
        }
        gateway.confirm_payment_intent.return_value = {
            "id": "pi_5", "status": "requires_capture",
        }
        gateway.capture_payment_intent.return_value = {
            "id": "pi_5", "status": "succeeded", "receipt_email": None,
            "latest_charge": {"id": "ch_5", "currency": "usd", "balance_transaction": None},
        }
        gateway.update_payment_intent.return_value = {
            "id": "pi_5", "status": "succeeded", "receipt_email": "jane@example.org",
            "latest_charge": {"id": "ch_5", "currency": "usd", "balance_transaction": None},
        }

        result = engine.process_payment_intent(IntentRequest(
            payment_intent_id="pi_5", capture=True, receipt_email="jane@example.org",
        ))

        gateway.confirm_payment_intent.assert_called_once_with("pi_5")
        gateway.capture_payment_intent.assert_called_once_with("pi_5")
        gateway.update_payment_intent.assert_called_once_with(
            "pi_5", receipt_email="jane@example.org"
        )
        gateway.create_payment_intent.assert_not_called()
        assert result.ok is True
        assert result.trxn_id == "ch_5"
        assert result.fee_amount is None

    def test_no_capture_when_not_requested(self, engine, gateway):
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_6", "status": "requires_capture",
        }
        result = engine.process_payment_intent(IntentRequest(payment_intent_id="pi_6"))

        gateway.capture_payment_intent.assert_not_called()
        gateway.update_payment_intent.assert_not_called()
        assert result.ok is True
        assert result.status == "requires_capture"


class TestDeclines:

    def test_decline_returns_generic_message(self, engine, gateway, fraud_signal):
        gateway.create_payment_intent.side_effect = GatewayDeclined(
            "req_1;Your card has insufficient funds.",
            error_body={"decline_code": "insufficient_funds"},
        )
        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="10", currency="USD",
            ip_address="203.0.113.5", extra_data="203.0.113.5",
        ))

        assert result.ok is False
        assert result.to_response() == {"error": {"message": DECLINED_MESSAGE}}
        fraud_signal.declined_card.assert_called_once()
        fraud_signal.fraud.assert_not_called()

        record = IntentRecord.query.filter_by(status="failed").one()
        assert record.gateway_intent_id is None
        assert "insufficient funds" in record.description
        assert IntentRecord.FLAG_NO_CONTRIBUTION in record.flags

    def test_fraudulent_decline_signals_fraud_with_same_message(self, engine, gateway, fraud_signal):
        gateway.create_payment_intent.side_effect = GatewayDeclined(
            "req_2;Your card was declined.",
            error_body={"decline_code": "fraudulent"},
        )
        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="10", currency="USD",
            ip_address="203.0.113.5",
        ))

        assert result.message == DECLINED_MESSAGE
        fraud_signal.fraud.assert_called_once()
        fraud_signal.declined_card.assert_not_called()

    def test_radar_block_signals_fraud(self, engine, gateway, fraud_signal):
        gateway.create_payment_intent.side_effect = GatewayDeclined(
            "req_3;Your card was declined.",
            error_body={"payment_intent": {"charges": {"data": [
                {"outcome": {"type": "blocked"}},
            ]}}},
        )
        engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="10", currency="USD",
        ))
        fraud_signal.fraud.assert_called_once()

    def test_staff_see_detail(self, gateway, fraud_signal):
        gateway.create_payment_intent.side_effect = GatewayDeclined("req_4;Card expired")
        engine = IntentEngine(gateway, fraud_signal=fraud_signal, staff=True)
        result = engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="10", currency="USD",
        ))
        assert result.message == "req_4;Card expired"

    def test_canceled_intent_is_payment_failed(self, engine, gateway):
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_7", "status": "canceled",
            "last_payment_error": {"message": "Card expired"},
        }
        result = engine.process_payment_intent(IntentRequest(payment_intent_id="pi_7"))
        assert result.ok is False
        assert result.message == PAYMENT_FAILED_MESSAGE

    def test_repeated_failures_raise_fraud_signal(self, engine, gateway, fraud_signal, seed_data):
        for _ in range(6):
            db.session.add(IntentRecord(
                processor_id=seed_data["processor_id"],
                status="failed",
                extra_data="198.51.100.7",
                flags=[],
            ))
        db.session.flush()
        gateway.create_payment_intent.return_value = {"id": "pi_8", "status": "requires_capture"}

        engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="10", currency="USD",
            ip_address="198.51.100.7", extra_data="198.51.100.7",
        ))
        fraud_signal.fraud.assert_called_once()
        assert fraud_signal.fraud.call_args.args[0] == "198.51.100.7"

    def test_old_failures_are_ignored(self, engine, gateway, fraud_signal, seed_data):
        old = datetime.now(timezone.utc) - timedelta(hours=5)
        for _ in range(6):
            db.session.add(IntentRecord(
                processor_id=seed_data["processor_id"],
                status="failed",
                extra_data="198.51.100.8",
                flags=[],
                created_at=old,
            ))
        db.session.flush()
        gateway.create_payment_intent.return_value = {"id": "pi_9", "status": "requires_capture"}

        engine.process_payment_intent(IntentRequest(
            payment_method_id="pm_1", amount="10", currency="USD",
            extra_data="198.51.100.8",
        ))
        fraud_signal.fraud.assert_not_called()


class TestIntentRecordUpsert:

    def test_upsert_is_idempotent(self, seed_data):
        ledger.upsert_intent_record("pi_dup", seed_data["processor_id"], "requires_action",
                                    referrer="https://example.org/donate")
        ledger.upsert_intent_record("pi_dup", seed_data["processor_id"], "succeeded",
                                    contribution_id=seed_data["oneoff_id"],
                                    referrer="https://example.org/other")

        records = IntentRecord.query.filter_by(gateway_intent_id="pi_dup").all()
        assert len(records) == 1
        assert records[0].status == "succeeded"
        assert records[0].contribution_id == seed_data["oneoff_id"]
        assert records[0].referrer == "https://example.org/donate"
        assert IntentRecord.FLAG_NO_CONTRIBUTION not in records[0].flags

    def test_unlinked_record_is_flagged(self, seed_data):
        record = ledger.upsert_intent_record("pi_nc", seed_data["processor_id"], "requires_action")
        assert record.flags == [IntentRecord.FLAG_NO_CONTRIBUTION]

    def test_extra_data_truncated(self, seed_data):
        record = ledger.upsert_intent_record(
            "pi_long", seed_data["processor_id"], "failed", extra_data="x" * 400
        )
        assert len(record.extra_data) == 255


class TestSetupIntent:

    def test_setup_intent_success(self, engine, gateway):
        gateway.create_setup_intent.return_value = {
            "id": "seti_1", "status": "succeeded", "client_secret": "seti_sec",
        }
        result = engine.process_intent(
            IntentRequest(payment_method_id="pm_1", customer_id="cus_1"), setup=True
        )

        params = gateway.create_setup_intent.call_args.kwargs
        assert params["confirm"] is True
        assert params["usage"] == "off_session"
        assert params["payment_method_types"] == ["card"]
        response = result.to_response()
        assert response["success"] is True
        assert response["setupIntent"]["id"] == "seti_1"
        assert response["setupIntent"]["client_secret"] == "seti_sec"
        assert IntentRecord.query.filter_by(gateway_intent_id="seti_1").count() == 1

    def test_setup_intent_error(self, engine, gateway):
        gateway.create_setup_intent.return_value = {
            "id": "seti_2", "status": "requires_payment_method",
            "last_setup_error": {"message": "Card declined"},
        }
        result = engine.process_intent(IntentRequest(payment_method_id="pm_1"), setup=True)
        assert result.to_response() == {"error": {"message": PAYMENT_FAILED_MESSAGE}}


class TestProcessEndpoint:
    """HTTP tests for POST /stripe/intents/process."""

    def test_unknown_processor_is_bad_request(self, client, seed_data):
        resp = client.post("/stripe/intents/process", json={
            "processorID": 9999, "amount": "10", "currency": "USD",
        })
        assert resp.status_code == 400
        assert resp.get_json() == {"error": {"message": "Bad request"}}

    def test_missing_amount_is_bad_request(self, client, seed_data):
        resp = client.post("/stripe/intents/process", json={
            "processorID": seed_data["processor_id"], "paymentMethodID": "pm_1",
            "currency": "USD",
        })
        assert resp.status_code == 400
        assert resp.get_json() == {"error": {"message": "Bad request"}}

    @patch("crm_stripe.services.gateway.stripe.PaymentIntent.create")
    def test_new_payment_uses_processor_key(self, mock_create, client, seed_data, app):
        mock_create.return_value = {"id": "pi_http", "status": "requires_action",
                                    "client_secret": "pi_http_secret"}

        resp = client.post("/stripe/intents/process", json={
            "processorID": seed_data["processor_id"],
            "paymentMethodID": "pm_card_visa",
            "amount": "12.34",
            "currency": "USD",
            "contributionID": seed_data["oneoff_id"],
        })

        assert resp.status_code == 200
        assert resp.get_json() == {
            "requires_action": True,
            "paymentIntentClientSecret": "pi_http_secret",
        }
        kwargs = mock_create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_signed"
        assert kwargs["stripe_version"] == app.config["STRIPE_API_VERSION"]
        assert kwargs["amount"] == 1234

        with app.app_context():
            record = IntentRecord.query.filter_by(gateway_intent_id="pi_http").one()
            assert record.status == "requires_action"
            assert record.contribution_id == seed_data["oneoff_id"]

    @patch("crm_stripe.services.gateway.stripe.SetupIntent.create")
    def test_setup_request(self, mock_create, client, seed_data):
        mock_create.return_value = {"id": "seti_http", "status": "requires_action",
                                    "client_secret": "seti_secret",
                                    "next_action": {"type": "use_stripe_sdk"}}

        resp = client.post("/stripe/intents/process", json={
            "processorID": seed_data["processor_id"],
            "paymentMethodID": "pm_card_visa",
            "setup": True,
        })

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["setupIntent"]["id"] == "seti_http"
