"""Tests for intent record housekeeping.

Covers:
- Old terminal records are deleted, recent or open ones are kept
- Abandoned open intents are cancelled at Stripe and marked canceled
- 400/404 from Stripe still marks the record canceled
- Other Stripe errors leave the record for the next run
- Subscription intents and subscription-keyed records are never cancelled
- process_stripe runs both sweeps; 0 disables a sweep
- The flask process-stripe command
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from crm_stripe.extensions import db
from crm_stripe.models.intent import IntentRecord
from crm_stripe.services import ledger
from crm_stripe.services.errors import GatewayConnectionFailed, GatewayRequestInvalid
from crm_stripe.services.housekeeping_service import (
    cancel_abandoned_intents,
    delete_old_intent_records,
    process_stripe,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _record(processor_id, intent_id, status, age):
    record = IntentRecord(
        gateway_intent_id=intent_id,
        processor_id=processor_id,
        status=status,
        flags=[],
        created_at=NOW - age,
    )
    db.session.add(record)
    db.session.flush()
    return record


@pytest.fixture
def factory(gateway):
    """gateway_factory that always hands back the shared gateway mock."""
    return lambda processor: gateway


class TestDeleteOldRecords:

    def test_deletes_only_old_terminal_records(self, seed_data):
        pid = seed_data["processor_id"]
        _record(pid, "pi_old_ok", "succeeded", timedelta(days=100))
        _record(pid, "pi_old_fail", "failed", timedelta(days=100))
        _record(pid, "pi_old_open", "requires_action", timedelta(days=100))
        _record(pid, "pi_new_ok", "succeeded", timedelta(days=10))

        deleted = delete_old_intent_records(90, now=NOW)

        assert deleted == 2
        remaining = {r.gateway_intent_id for r in IntentRecord.query.all()}
        assert remaining == {"pi_old_open", "pi_new_ok"}


class TestCancelAbandoned:

    def test_cancels_old_open_intents(self, seed_data, gateway, factory):
        pid = seed_data["processor_id"]
        old_pi = _record(pid, "pi_abandoned", "requires_payment_method", timedelta(hours=2))
        old_seti = _record(pid, "seti_abandoned", "requires_action", timedelta(hours=2))
        fresh = _record(pid, "pi_fresh", "requires_action", timedelta(minutes=5))
        done = _record(pid, "pi_done", "succeeded", timedelta(hours=2))

        canceled = cancel_abandoned_intents(60, now=NOW, gateway_factory=factory)

        assert canceled == 2
        gateway.cancel_intent.assert_any_call("pi_abandoned", cancellation_reason="abandoned")
        gateway.cancel_intent.assert_any_call("seti_abandoned", cancellation_reason="abandoned")
        assert old_pi.status == "canceled"
        assert old_seti.status == "canceled"
        assert fresh.status == "requires_action"
        assert done.status == "succeeded"

    def test_gone_at_stripe_still_marked(self, seed_data, gateway, factory):
        record = _record(seed_data["processor_id"], "pi_gone", "requires_action", timedelta(hours=2))
        gateway.cancel_intent.side_effect = GatewayRequestInvalid("No such intent", http_status=404)

        assert cancel_abandoned_intents(60, now=NOW, gateway_factory=factory) == 1
        assert record.status == "canceled"

    def test_other_errors_leave_record(self, seed_data, gateway, factory):
        record = _record(seed_data["processor_id"], "pi_flaky", "requires_action", timedelta(hours=2))
        gateway.cancel_intent.side_effect = GatewayConnectionFailed("timeout")

        assert cancel_abandoned_intents(60, now=NOW, gateway_factory=factory) == 0
        assert record.status == "requires_action"

    def test_subscription_records_are_left_alone(self, seed_data, gateway, factory):
        pid = seed_data["processor_id"]
        by_sub_id = _record(pid, "sub_delayed", "incomplete", timedelta(hours=2))
        sub_setup = ledger.upsert_intent_record(
            "seti_for_sub", pid, "requires_payment_method", subscription=True,
        )
        sub_setup.created_at = NOW - timedelta(hours=2)
        # A later update without the flag keeps it.
        ledger.upsert_intent_record("seti_for_sub", pid, "requires_payment_method")
        standalone = _record(pid, "pi_standalone", "requires_action", timedelta(hours=2))
        db.session.flush()

        canceled = cancel_abandoned_intents(60, now=NOW, gateway_factory=factory)

        assert canceled == 1
        gateway.cancel_intent.assert_called_once_with(
            "pi_standalone", cancellation_reason="abandoned"
        )
        assert standalone.status == "canceled"
        assert by_sub_id.status == "incomplete"
        assert sub_setup.is_subscription
        assert sub_setup.status == "requires_payment_method"


class TestProcessStripe:

    def test_runs_both_sweeps(self, seed_data, factory):
        pid = seed_data["processor_id"]
        _record(pid, "pi_old_ok", "succeeded", timedelta(days=100))
        _record(pid, "pi_abandoned", "requires_action", timedelta(hours=2))

        results = process_stripe(90, 60, now=NOW, gateway_factory=factory)
        assert results == {"deleted": 1, "canceled": 1}

    def test_zero_disables_sweep(self, seed_data, gateway, factory):
        pid = seed_data["processor_id"]
        _record(pid, "pi_old_ok", "succeeded", timedelta(days=100))
        _record(pid, "pi_abandoned", "requires_action", timedelta(hours=2))

        results = process_stripe(0, 60, now=NOW, gateway_factory=factory)
        assert results == {"deleted": 0, "canceled": 1}
        assert IntentRecord.query.filter_by(gateway_intent_id="pi_old_ok").count() == 1

        gateway.reset_mock()
        results = process_stripe(90, 0, now=NOW, gateway_factory=factory)
        assert results["canceled"] == 0
        gateway.cancel_intent.assert_not_called()


class TestProcessStripeCommand:

    @patch("crm_stripe.services.housekeeping_service.process_stripe")
    def test_cli_uses_config_defaults(self, mock_process, app, seed_data):
        mock_process.return_value = {"deleted": 3, "canceled": 1}
        runner = app.test_cli_runner()

        result = runner.invoke(args=["process-stripe"])

        assert result.exit_code == 0
        assert "Deleted: 3" in result.output
        mock_process.assert_called_once_with(
            delete_old_days=app.config["INTENT_RETENTION_DAYS"],
            cancel_incomplete_minutes=app.config["INTENT_ABANDON_MINUTES"],
        )

    @patch("crm_stripe.services.housekeeping_service.process_stripe")
    def test_cli_options(self, mock_process, app, seed_data):
        mock_process.return_value = {"deleted": 0, "canceled": 0}
        runner = app.test_cli_runner()

        runner.invoke(args=["process-stripe", "--delete-old-days", "0",
                            "--cancel-incomplete-minutes", "30"])

        mock_process.assert_called_once_with(delete_old_days=0, cancel_incomplete_minutes=30)
