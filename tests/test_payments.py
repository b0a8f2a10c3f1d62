"""Tests for paying a Pending contribution (service and /stripe/intents/pay).

Covers:
- The contact's Stripe customer is found or created before any charge
- One-off: new payment method is created then captured, with the customer
- One-off: an intent created by the browser gets the customer set
- Recurring: card attached to the customer, subscription started with
  the series' terms, first contribution completed
- Gateway errors before the charge come back as a failed result
- Caller mistakes (missing / non-Pending contribution) are rejected
- HTTP end to end with the processor's API key
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from crm_stripe.extensions import db
from crm_stripe.models.contact import CustomerMapping
from crm_stripe.models.contribution import Contribution, Payment, RecurringContribution
from crm_stripe.models.intent import IntentRecord
from crm_stripe.services.errors import (
    ContributionNotPayable,
    GatewayConnectionFailed,
    GatewayDeclined,
    MissingParameter,
)
from crm_stripe.services.gateway import Found
from crm_stripe.services.intent_service import IntentEngine, IntentResult
from crm_stripe.services.payment_service import PaymentRequest, process_payment
from crm_stripe.services.recur_service import SubscriptionResult

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _captured(intent_id, charge_id, fee=103):
    return {
        "id": intent_id,
        "status": "succeeded",
        "customer": "cus_1",
        "receipt_email": "jane@example.org",
        "latest_charge": {
            "id": charge_id,
            "currency": "usd",
            "balance_transaction": {"fee": fee, "currency": "usd"},
        },
    }


@pytest.fixture
def engine(gateway):
    return IntentEngine(gateway)


@pytest.fixture
def new_series(seed_data):
    recur = RecurringContribution(
        contact_id=seed_data["contact_id"],
        amount=Decimal("10.00"),
        currency="USD",
        frequency_unit="month",
        frequency_interval=1,
        installments=12,
        status="Pending",
        is_test=True,
    )
    db.session.add(recur)
    db.session.flush()
    first = Contribution(
        contact_id=seed_data["contact_id"],
        recurring_contribution_id=recur.id,
        processor_id=seed_data["processor_id"],
        status="Pending",
        total_amount=Decimal("10.00"),
        currency="USD",
        description="Monthly gift",
    )
    db.session.add(first)
    db.session.flush()
    return recur, first


class TestOneOffPayment:

    def test_new_payment_method_is_created_then_captured(self, engine, gateway, seed_data):
        gateway.create_customer.return_value = {"id": "cus_1"}
        gateway.create_payment_intent.return_value = {"id": "pi_1", "status": "requires_capture"}
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_1", "status": "requires_capture", "customer": "cus_1",
        }
        gateway.capture_payment_intent.return_value = _captured("pi_1", "ch_1")

        result = process_payment(gateway, PaymentRequest(
            contribution_id=seed_data["oneoff_id"], payment_method_id="pm_1",
        ), engine=engine)

        assert isinstance(result, IntentResult)
        assert result.ok is True
        assert result.trxn_id == "ch_1"
        create = gateway.create_payment_intent.call_args.kwargs
        assert create["customer"] == "cus_1"
        assert create["amount"] == 2500
        assert create["payment_method"] == "pm_1"
        gateway.capture_payment_intent.assert_called_once_with("pi_1")
        gateway.update_payment_intent.assert_not_called()

        oneoff = db.session.get(Contribution, seed_data["oneoff_id"])
        assert oneoff.status == "Completed"
        assert oneoff.trxn_id == "ch_1"
        assert oneoff.fee_amount == Decimal("1.03")
        mapping = CustomerMapping.query.filter_by(contact_id=seed_data["contact_id"]).one()
        assert mapping.gateway_customer_id == "cus_1"

    def test_browser_intent_gets_the_customer(self, engine, gateway, seed_data):
        db.session.add(CustomerMapping(
            contact_id=seed_data["contact_id"],
            processor_id=seed_data["processor_id"],
            gateway_customer_id="cus_1",
        ))
        db.session.flush()
        gateway.find_customer.return_value = Found({"id": "cus_1"})
        gateway.retrieve_payment_intent.return_value = {
            "id": "pi_browser", "status": "requires_confirmation", "customer": None,
        }
        gateway.update_payment_intent.return_value = {
            "id": "pi_browser", "status": "requires_confirmation", "customer": "cus_1",
        }
        gateway.confirm_payment_intent.return_value = {
            "id": "pi_browser", "status": "requires_capture", "customer": "cus_1",
        }
        gateway.capture_payment_intent.return_value = _captured("pi_browser", "ch_browser")

        result = process_payment(gateway, PaymentRequest(
            contribution_id=seed_data["oneoff_id"], payment_intent_id="pi_browser",
        ), engine=engine)

        assert result.ok is True
        gateway.create_customer.assert_not_called()
        gateway.create_payment_intent.assert_not_called()
        gateway.update_payment_intent.assert_called_once_with("pi_browser", customer="cus_1")
        assert db.session.get(Contribution, seed_data["oneoff_id"]).status == "Completed"

    def test_customer_failure_is_a_failed_result(self, engine, gateway, seed_data):
        gateway.create_customer.side_effect = GatewayConnectionFailed("req_1;timeout")

        result = process_payment(gateway, PaymentRequest(
            contribution_id=seed_data["oneoff_id"], payment_method_id="pm_1",
        ), engine=engine)

        assert result.ok is False
        assert result.status == "failed"
        assert "timeout" not in result.message
        gateway.create_payment_intent.assert_not_called()
        record = IntentRecord.query.filter_by(status="failed").one()
        assert record.contribution_id == seed_data["oneoff_id"]
        assert db.session.get(Contribution, seed_data["oneoff_id"]).status == "Pending"

    def test_completed_contribution_is_not_payable(self, engine, gateway, seed_data):
        with pytest.raises(ContributionNotPayable):
            process_payment(gateway, PaymentRequest(
                contribution_id=seed_data["first_contribution_id"], payment_method_id="pm_1",
            ), engine=engine)
        gateway.create_customer.assert_not_called()

    def test_nothing_to_pay_with(self, engine, gateway, seed_data):
        with pytest.raises(MissingParameter):
            process_payment(gateway, PaymentRequest(contribution_id=seed_data["oneoff_id"]),
                            engine=engine)
        with pytest.raises(MissingParameter):
            process_payment(gateway, PaymentRequest(payment_method_id="pm_1"), engine=engine)


class TestRecurringPayment:

    def _paid_subscription(self):
        return {
            "id": "sub_new",
            "status": "active",
            "latest_invoice": {
                "id": "in_new",
                "payment_intent": _captured("pi_sub", "ch_sub", fee=59),
            },
        }

    def test_starts_subscription_for_the_series(self, engine, gateway, new_series):
        recur, first = new_series
        gateway.create_customer.return_value = {"id": "cus_1"}
        gateway.find_plan.return_value = Found({"id": "every-1-month-1000-usd-test"})
        gateway.create_subscription.return_value = self._paid_subscription()

        result = process_payment(gateway, PaymentRequest(
            contribution_id=first.id, payment_method_id="pm_1",
        ), engine=engine, now=lambda: NOW)

        assert isinstance(result, SubscriptionResult)
        assert result.ok is True
        assert result.to_response() == {
            "success": True, "subscription": {"id": "sub_new", "status": "active"},
        }
        gateway.attach_payment_method.assert_called_once_with("pm_1", customer="cus_1")
        params = gateway.create_subscription.call_args.kwargs
        assert params["customer"] == "cus_1"
        assert params["default_payment_method"] == "pm_1"
        assert params["items"] == [{"plan": "every-1-month-1000-usd-test"}]
        assert params["description"] == "Monthly gift"

        assert recur.subscription_reference == "sub_new"
        assert recur.installments == 12
        first = db.session.get(Contribution, first.id)
        assert first.status == "Completed"
        assert first.trxn_id == "ch_sub"
        assert Payment.query.filter_by(contribution_id=first.id).count() == 1

    def test_requires_payment_method(self, engine, gateway, new_series):
        recur, first = new_series
        with pytest.raises(MissingParameter):
            process_payment(gateway, PaymentRequest(
                contribution_id=first.id, payment_intent_id="pi_1",
            ), engine=engine)
        gateway.create_customer.assert_not_called()

    def test_card_rejected_on_attach(self, engine, gateway, new_series):
        recur, first = new_series
        gateway.create_customer.return_value = {"id": "cus_1"}
        gateway.attach_payment_method.side_effect = GatewayDeclined("req_2;card_declined")

        result = process_payment(gateway, PaymentRequest(
            contribution_id=first.id, payment_method_id="pm_bad",
        ), engine=engine, now=lambda: NOW)

        assert isinstance(result, SubscriptionResult)
        assert result.ok is False
        assert result.to_response() == {"error": {"message": GatewayDeclined.user_message}}
        gateway.create_subscription.assert_not_called()
        assert recur.status == "Pending"


class TestPayEndpoint:
    """HTTP tests for POST /stripe/intents/pay."""

    @patch("crm_stripe.services.gateway.stripe.PaymentIntent.capture")
    @patch("crm_stripe.services.gateway.stripe.PaymentIntent.retrieve")
    @patch("crm_stripe.services.gateway.stripe.PaymentIntent.create")
    @patch("crm_stripe.services.gateway.stripe.Customer.create")
    def test_one_off_end_to_end(self, mock_customer, mock_create, mock_retrieve, mock_capture,
                                client, seed_data, app):
        mock_customer.return_value = {"id": "cus_http"}
        mock_create.return_value = {"id": "pi_http", "status": "requires_capture"}
        mock_retrieve.return_value = {
            "id": "pi_http", "status": "requires_capture", "customer": "cus_http",
        }
        mock_capture.return_value = _captured("pi_http", "ch_http")

        resp = client.post("/stripe/intents/pay", json={
            "processorID": seed_data["processor_id"],
            "contributionID": seed_data["oneoff_id"],
            "paymentMethodID": "pm_card_visa",
        })

        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "paymentIntent": {"id": "pi_http"}}
        assert mock_customer.call_args.kwargs["api_key"] == "sk_test_signed"
        assert mock_customer.call_args.kwargs["email"] == "jane@example.org"
        assert mock_create.call_args.kwargs["customer"] == "cus_http"

        with app.app_context():
            oneoff = db.session.get(Contribution, seed_data["oneoff_id"])
            assert oneoff.status == "Completed"
            assert oneoff.trxn_id == "ch_http"
            assert CustomerMapping.query.filter_by(gateway_customer_id="cus_http").count() == 1
            assert Payment.query.filter_by(trxn_id="ch_http").count() == 1

    def test_completed_contribution_is_bad_request(self, client, seed_data):
        resp = client.post("/stripe/intents/pay", json={
            "processorID": seed_data["processor_id"],
            "contributionID": seed_data["first_contribution_id"],
            "paymentMethodID": "pm_card_visa",
        })
        assert resp.status_code == 400
        assert resp.get_json() == {"error": {"message": ContributionNotPayable.user_message}}

    def test_bad_receive_date_is_bad_request(self, client, seed_data):
        resp = client.post("/stripe/intents/pay", json={
            "processorID": seed_data["processor_id"],
            "contributionID": seed_data["oneoff_id"],
            "paymentMethodID": "pm_card_visa",
            "receiveDate": "next tuesday",
        })
        assert resp.status_code == 400
        assert resp.get_json() == {"error": {"message": "Bad request"}}
