"""Contact models.

- Contact: minimal CRM contact (the donor / member being charged).
- CustomerMapping: links a contact to a Stripe customer ID, per processor.
  A deleted Stripe customer removes the mapping; it is never reused.
"""

from datetime import datetime, timezone

from crm_stripe.extensions import db


class Contact(db.Model):
    __tablename__ = "contacts"

    id = db.Column(db.Integer, primary_key=True)
    display_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # --- Relationships ---
    contributions = db.relationship(
        "Contribution", back_populates="contact", lazy="dynamic"
    )
    customer_mappings = db.relationship(
        "CustomerMapping",
        back_populates="contact",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Contact {self.display_name}>"


class CustomerMapping(db.Model):
    __tablename__ = "customer_mappings"

    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(
        db.Integer, db.ForeignKey("contacts.id"), nullable=False
    )
    processor_id = db.Column(
        db.Integer, db.ForeignKey("payment_processors.id"), nullable=False
    )
    gateway_customer_id = db.Column(db.String(255), nullable=False)  # cus_...
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        db.UniqueConstraint(
            "contact_id", "processor_id", name="uq_contact_processor"
        ),
    )

    # --- Relationships ---
    contact = db.relationship("Contact", back_populates="customer_mappings")

    def __repr__(self):
        return f"<CustomerMapping contact={self.contact_id} customer={self.gateway_customer_id}>"
