import os
import logging

import click
from flask import Flask, jsonify

from crm_stripe.config import config_by_name
from crm_stripe.extensions import db, migrate, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from crm_stripe import models  # noqa: F401

    # --- Register blueprints ---
    from crm_stripe.blueprints.webhooks import webhooks_bp
    from crm_stripe.blueprints.intents import intents_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(intents_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": {"message": "Too many requests"}}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-processor")
    @click.option("--name", default="Stripe", help="Processor name")
    @click.option("--test/--live", "is_test", default=True, help="Test or live mode")
    def seed_processor(name, is_test):
        """Create a payment processor from STRIPE_* environment variables.

        Usage:
            flask seed-processor
            flask seed-processor --name "Stripe live" --live
        """
        from crm_stripe.models.processor import PaymentProcessor

        secret_key = os.environ.get("STRIPE_SECRET_KEY")
        if not secret_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return

        existing = PaymentProcessor.query.filter_by(name=name, is_test=is_test).first()
        if existing:
            click.echo(f"Processor already exists: {name} (id: {existing.id})")
            return

        processor = PaymentProcessor(
            name=name,
            secret_key=secret_key,
            publishable_key=os.environ.get("STRIPE_PUBLISHABLE_KEY"),
            webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            is_test=is_test,
        )
        db.session.add(processor)
        db.session.commit()

        base_url = app.config["APP_BASE_URL"]
        click.echo("")
        click.echo("=" * 60)
        click.echo("Payment processor created!")
        click.echo("=" * 60)
        click.echo(f"  Name:     {processor.name} (id: {processor.id})")
        click.echo(f"  Mode:     {'test' if is_test else 'live'}")
        click.echo(f"  Webhook:  {base_url}/stripe/webhooks/{processor.id}")
        click.echo("=" * 60)

    @app.cli.command("sync-webhooks")
    def sync_webhooks():
        """Create or update the Stripe webhook endpoint for every active processor."""
        from crm_stripe.models.processor import PaymentProcessor
        from crm_stripe.services.errors import PaymentError
        from crm_stripe.services.webhook_service import ensure_webhook_endpoint

        for processor in PaymentProcessor.query.filter_by(is_active=True).all():
            try:
                action = ensure_webhook_endpoint(processor)
                db.session.commit()
                click.echo(f"  {processor.name} (id: {processor.id}): {action}")
            except PaymentError as e:
                db.session.rollback()
                click.echo(f"  {processor.name} (id: {processor.id}): FAILED {e.detail}")

    @app.cli.command("replay-webhook")
    @click.argument("queue_ids", nargs=-1, type=int)
    @click.option("--event-id", default=None, help="Re-fetch this Stripe event ID instead.")
    @click.option("--processor-id", default=None, type=int, help="Processor for --event-id.")
    def replay_webhook(queue_ids, event_id, processor_id):
        """Replay stored webhook events, or re-fetch one from Stripe.

        Usage:
            flask replay-webhook 12 13 14
            flask replay-webhook --event-id evt_123 --processor-id 1
        """
        from crm_stripe.models.processor import PaymentProcessor
        from crm_stripe.services.webhook_service import (
            replay_events,
            replay_from_gateway,
        )

        if event_id:
            processor = db.session.get(PaymentProcessor, processor_id) if processor_id else None
            if processor is None:
                click.echo("ERROR: --processor-id is required with --event-id.")
                return
            outcomes = [replay_from_gateway(event_id, processor)]
        elif queue_ids:
            outcomes = replay_events(queue_ids)
        else:
            click.echo("Nothing to replay: pass queue IDs or --event-id.")
            return

        db.session.commit()
        for outcome in outcomes:
            click.echo(f"  queue item {outcome.queue_id}: {outcome.status} {outcome.message}")

    @app.cli.command("process-stripe")
    @click.option("--delete-old-days", default=None, type=int,
                  help="Delete finished intent records older than N days (0 disables).")
    @click.option("--cancel-incomplete-minutes", default=None, type=int,
                  help="Cancel open intents older than M minutes (0 disables).")
    def process_stripe_command(delete_old_days, cancel_incomplete_minutes):
        """Housekeeping: prune old intent records and cancel abandoned intents.

        Usage:
            flask process-stripe
            flask process-stripe --delete-old-days 0 --cancel-incomplete-minutes 30
        """
        from crm_stripe.services.housekeeping_service import process_stripe

        if delete_old_days is None:
            delete_old_days = app.config["INTENT_RETENTION_DAYS"]
        if cancel_incomplete_minutes is None:
            cancel_incomplete_minutes = app.config["INTENT_ABANDON_MINUTES"]

        results = process_stripe(
            delete_old_days=delete_old_days,
            cancel_incomplete_minutes=cancel_incomplete_minutes,
        )
        db.session.commit()
        click.echo(f"Deleted: {results['deleted']}  Canceled: {results['canceled']}")

    def _processor_or_none(processor_id):
        from crm_stripe.models.processor import PaymentProcessor

        processor = db.session.get(PaymentProcessor, processor_id)
        if processor is None:
            click.echo(f"ERROR: processor {processor_id} not found.")
        return processor

    @app.cli.command("import-subscription")
    @click.argument("subscription_id")
    @click.option("--contact-id", required=True, type=int, help="Contact the subscription belongs to.")
    @click.option("--processor-id", required=True, type=int, help="Processor holding the subscription.")
    def import_subscription_command(subscription_id, contact_id, processor_id):
        """Import one Stripe subscription and its paid charges.

        Usage:
            flask import-subscription sub_123 --contact-id 7 --processor-id 1
        """
        from crm_stripe.services.errors import PaymentError
        from crm_stripe.services.gateway import gateway_for_processor
        from crm_stripe.services.import_service import import_subscription

        processor = _processor_or_none(processor_id)
        if processor is None:
            return
        try:
            result = import_subscription(
                gateway_for_processor(processor), subscription_id, contact_id
            )
        except PaymentError as e:
            db.session.rollback()
            click.echo(f"ERROR: {e.detail}")
            return
        db.session.commit()
        action = "created" if result.created else "already present"
        click.echo(
            f"  {subscription_id}: recurring contribution {result.recurring_contribution_id} "
            f"({action}), {len(result.contribution_ids)} charge(s) imported"
        )

    @app.cli.command("import-subscriptions")
    @click.option("--processor-id", required=True, type=int, help="Processor to import from.")
    @click.option("--limit", default=100, type=int, help="Subscriptions per page.")
    @click.option("--starting-after", default=None, help="Resume after this subscription ID.")
    def import_subscriptions_command(processor_id, limit, starting_after):
        """Import one page of Stripe subscriptions for contacts we already know.

        Usage:
            flask import-subscriptions --processor-id 1
            flask import-subscriptions --processor-id 1 --starting-after sub_123
        """
        from crm_stripe.services.errors import PaymentError
        from crm_stripe.services.gateway import gateway_for_processor
        from crm_stripe.services.import_service import import_subscriptions

        processor = _processor_or_none(processor_id)
        if processor is None:
            return
        try:
            batch = import_subscriptions(
                gateway_for_processor(processor), limit=limit, starting_after=starting_after
            )
        except PaymentError as e:
            db.session.rollback()
            click.echo(f"ERROR: {e.detail}")
            return
        db.session.commit()

        for item in batch.imported:
            click.echo(f"  imported {item.subscription_id} -> {item.recurring_contribution_id}")
        for subscription_id in batch.skipped:
            click.echo(f"  skipped  {subscription_id}")
        for failure in batch.errors:
            click.echo(f"  FAILED   {failure.subscription_id} ({failure.customer_id}): {failure.reason}")
        if batch.continue_after:
            click.echo(f"Continue with --starting-after {batch.continue_after}")

    @app.cli.command("import-charge")
    @click.argument("charge_id")
    @click.option("--contact-id", required=True, type=int, help="Contact who paid the charge.")
    @click.option("--processor-id", required=True, type=int, help="Processor holding the charge.")
    @click.option("--contribution-id", default=None, type=int,
                  help="Existing contribution to link the charge to.")
    @click.option("--source", default=None, help="Description when the invoice has none.")
    def import_charge_command(charge_id, contact_id, processor_id, contribution_id, source):
        """Import one Stripe invoice charge as a contribution.

        Usage:
            flask import-charge ch_123 --contact-id 7 --processor-id 1
        """
        from crm_stripe.services.errors import PaymentError
        from crm_stripe.services.gateway import gateway_for_processor
        from crm_stripe.services.import_service import import_charge

        processor = _processor_or_none(processor_id)
        if processor is None:
            return
        try:
            contribution = import_charge(
                gateway_for_processor(processor), charge_id, contact_id,
                contribution_id=contribution_id, source=source,
            )
        except PaymentError as e:
            db.session.rollback()
            click.echo(f"ERROR: {e.detail}")
            return
        db.session.commit()
        click.echo(f"  {charge_id}: contribution {contribution.id} ({contribution.status})")
