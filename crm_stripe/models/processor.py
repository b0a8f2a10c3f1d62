"""Payment processor model.

One row per configured Stripe account (live or test). The webhook URL
carries the processor ID so inbound events can be verified with the
right signing secret and re-fetched with the right API key.
"""

from datetime import datetime, timezone

from crm_stripe.extensions import db


class PaymentProcessor(db.Model):
    __tablename__ = "payment_processors"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    secret_key = db.Column(db.String(255), nullable=False)  # sk_live_... / sk_test_...
    publishable_key = db.Column(db.String(255), nullable=True)
    webhook_secret = db.Column(db.String(255), nullable=True)  # whsec_..., optional
    is_test = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        mode = "test" if self.is_test else "live"
        return f"<PaymentProcessor {self.name} ({mode})>"
