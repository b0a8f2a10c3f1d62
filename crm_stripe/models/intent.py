"""Intent record model.

Tracks every Stripe PaymentIntent / SetupIntent we create or observe,
keyed by the Stripe intent ID. Failed creation attempts are recorded
too (with no intent ID) so repeated declines from the same source can
be correlated by the fraud guard.
"""

from datetime import datetime, timezone

from crm_stripe.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class IntentRecord(db.Model):
    __tablename__ = "intent_records"

    # Stripe statuses after which nothing more will happen to the intent.
    # "cancelled" is kept for rows written before we mirrored Stripe's spelling.
    TERMINAL_STATUSES = ["succeeded", "canceled", "cancelled", "failed"]

    # Set when the intent is not (yet) linked to a contribution.
    FLAG_NO_CONTRIBUTION = "NC"

    # Set when the intent belongs to a subscription invoice or setup. Stripe
    # owns those intents, so housekeeping must not cancel them.
    FLAG_SUBSCRIPTION = "SUB"

    id = db.Column(db.Integer, primary_key=True)
    gateway_intent_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # pi_... / seti_..., null for failed creation attempts
    processor_id = db.Column(
        db.Integer, db.ForeignKey("payment_processors.id"), nullable=False
    )
    status = db.Column(db.String(50), nullable=False)
    contribution_id = db.Column(
        db.Integer, db.ForeignKey("contributions.id"), nullable=True
    )
    flags = db.Column(db.JSON, default=list)
    description = db.Column(db.String(255), nullable=True)
    referrer = db.Column(db.String(1024), nullable=True)
    extra_data = db.Column(db.String(255), nullable=True, index=True)  # IP, email, error text
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_subscription(self):
        return self.FLAG_SUBSCRIPTION in (self.flags or [])

    def __repr__(self):
        return f"<IntentRecord {self.gateway_intent_id} ({self.status})>"
