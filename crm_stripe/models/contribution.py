"""Contribution ledger models.

- Contribution: one expected or received payment. trxn_id holds the Stripe
  charge ID once paid; order_reference holds the Stripe invoice ID (or the
  subscription ID until the first invoice exists).
- Payment: a financial transaction recorded against a contribution
  (the captured charge, or a negative refund).
- RecurringContribution: the CRM side of a Stripe subscription.
  subscription_reference and latest_order_reference are kept apart so the
  subscription ID is never overwritten by an invoice ID.
"""

from datetime import datetime, timezone

from crm_stripe.extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class RecurringContribution(db.Model):
    __tablename__ = "recurring_contributions"

    # -- Valid statuses --
    STATUSES = [
        "Pending",
        "In Progress",
        "Overdue",
        "Failed",
        "Cancelled",
        "Completed",
    ]

    FREQUENCY_UNITS = ["day", "week", "month", "year"]

    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(
        db.Integer, db.ForeignKey("contacts.id"), nullable=False
    )
    processor_id = db.Column(
        db.Integer, db.ForeignKey("payment_processors.id"), nullable=True
    )
    amount = db.Column(db.Numeric(20, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    frequency_unit = db.Column(db.String(10), nullable=False, default="month")
    frequency_interval = db.Column(db.Integer, nullable=False, default=1)
    installments = db.Column(db.Integer, nullable=True)  # null = open-ended
    status = db.Column(db.String(50), nullable=False, default="Pending")
    failure_count = db.Column(db.Integer, nullable=False, default=0)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)
    subscription_reference = db.Column(
        db.String(255), nullable=True, index=True
    )  # sub_...
    latest_order_reference = db.Column(
        db.String(255), nullable=True
    )  # in_... (or sub_... until the first invoice is issued)
    cycle_day = db.Column(db.Integer, nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    next_scheduled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_test = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    modified_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    contributions = db.relationship(
        "Contribution",
        back_populates="recurring_contribution",
        lazy="dynamic",
        order_by="Contribution.id",
    )

    def __repr__(self):
        return f"<RecurringContribution {self.id} ({self.status})>"


class Contribution(db.Model):
    __tablename__ = "contributions"

    # -- Valid statuses --
    STATUSES = [
        "Pending",
        "Completed",
        "Failed",
        "Cancelled",
        "Refunded",
        "Partially Refunded",
    ]

    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(
        db.Integer, db.ForeignKey("contacts.id"), nullable=False
    )
    recurring_contribution_id = db.Column(
        db.Integer, db.ForeignKey("recurring_contributions.id"), nullable=True
    )
    original_contribution_id = db.Column(
        db.Integer, db.ForeignKey("contributions.id"), nullable=True
    )  # set on repeat transactions
    processor_id = db.Column(
        db.Integer, db.ForeignKey("payment_processors.id"), nullable=True
    )
    status = db.Column(db.String(50), nullable=False, default="Pending")
    total_amount = db.Column(db.Numeric(20, 2), nullable=False)
    fee_amount = db.Column(db.Numeric(20, 2), nullable=True)
    net_amount = db.Column(db.Numeric(20, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    trxn_id = db.Column(db.String(255), nullable=True, index=True)  # ch_...
    order_reference = db.Column(
        db.String(255), nullable=True, index=True
    )  # in_... or sub_...
    description = db.Column(db.String(255), nullable=True)
    receive_date = db.Column(db.DateTime(timezone=True), nullable=True)
    is_test = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    modified_at = db.Column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    contact = db.relationship("Contact", back_populates="contributions")
    recurring_contribution = db.relationship(
        "RecurringContribution", back_populates="contributions"
    )
    payments = db.relationship(
        "Payment",
        back_populates="contribution",
        lazy="dynamic",
        order_by="Payment.id",
    )

    def __repr__(self):
        return f"<Contribution {self.id} {self.total_amount} {self.currency} ({self.status})>"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    contribution_id = db.Column(
        db.Integer, db.ForeignKey("contributions.id"), nullable=False
    )
    trxn_id = db.Column(db.String(255), nullable=True, index=True)  # ch_... / re_...
    total_amount = db.Column(db.Numeric(20, 2), nullable=False)  # negative for refunds
    fee_amount = db.Column(db.Numeric(20, 2), nullable=True)
    order_reference = db.Column(db.String(255), nullable=True)
    trxn_result_code = db.Column(db.String(255), nullable=True)  # refund reason
    cancelled_payment_id = db.Column(
        db.Integer, db.ForeignKey("payments.id"), nullable=True
    )
    trxn_date = db.Column(db.DateTime(timezone=True), default=_utcnow)

    # --- Relationships ---
    contribution = db.relationship("Contribution", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.trxn_id} {self.total_amount}>"
