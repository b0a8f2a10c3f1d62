"""Audit event model.

Logs significant ledger actions (contribution completed, payment failed,
refund recorded, subscription cancelled, etc.) along with failure notes
from Stripe, for staff review and debugging.
"""

from datetime import datetime, timezone

from crm_stripe.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(db.Integer, primary_key=True)
    contribution_id = db.Column(
        db.Integer, db.ForeignKey("contributions.id"), nullable=True
    )
    recurring_contribution_id = db.Column(
        db.Integer, db.ForeignKey("recurring_contributions.id"), nullable=True
    )
    action = db.Column(db.String(255), nullable=False)  # e.g. "contribution.completed"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
