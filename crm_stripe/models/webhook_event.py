"""Webhook event model (inbound queue + idempotency table).

Every delivery from Stripe is stored before it is processed. The
autoincrement ID is the sequence number: when several rows share a
Stripe event ID, only the lowest accepted one is ever applied and later
copies are marked duplicate. Rows stay around so events can be replayed.
"""

from datetime import datetime, timezone

from crm_stripe.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # -- Valid statuses --
    STATUSES = [
        "new",
        "applied",
        "duplicate",
        "unhandled",
        "error",
    ]

    id = db.Column(db.Integer, primary_key=True)  # sequence number
    processor_id = db.Column(
        db.Integer, db.ForeignKey("payment_processors.id"), nullable=False
    )
    event_id = db.Column(
        db.String(255), nullable=False, index=True
    )  # e.g. "evt_1Abc..."
    trigger = db.Column(
        db.String(255), nullable=False
    )  # e.g. "invoice.payment_succeeded"
    payload = db.Column(db.Text, nullable=False)  # raw JSON body
    verified = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(50), nullable=False, default="new")
    message = db.Column(db.Text, nullable=True)
    received_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookEvent {self.event_id} ({self.trigger}, {self.status})>"
