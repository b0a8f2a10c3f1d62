"""Customer mapping service.

One Stripe customer per (contact, processor). A mapping whose Stripe
customer was deleted or no longer exists is dropped and a fresh customer
is created; a stale customer ID is never reused.
"""

import logging

from crm_stripe.extensions import db
from crm_stripe.models.contact import CustomerMapping
from crm_stripe.services.gateway import Found, LookupFailed

logger = logging.getLogger(__name__)


def find_mapping(contact_id, processor_id):
    return CustomerMapping.query.filter_by(
        contact_id=contact_id, processor_id=processor_id
    ).first()


def delete_mapping(mapping):
    db.session.delete(mapping)
    db.session.flush()


def find_or_create_customer(contact, gateway, email=None):
    """Return the Stripe customer for a contact, creating it when needed.

    Raises a PaymentError if Stripe cannot be reached.
    """
    processor_id = gateway.config.processor_id
    mapping = find_mapping(contact.id, processor_id)

    if mapping:
        result = gateway.find_customer(mapping.gateway_customer_id)
        if isinstance(result, Found):
            return result.obj
        if isinstance(result, LookupFailed):
            raise result.error
        logger.info(
            f"Stripe customer {mapping.gateway_customer_id} for contact {contact.id} "
            f"is gone ({result.reason}), creating a new one"
        )
        delete_mapping(mapping)

    params = {
        "description": f"contact: {contact.display_name}",
        "metadata": {
            "contact_id": str(contact.id),
            "processor_id": str(processor_id),
        },
    }
    if email or contact.email:
        params["email"] = email or contact.email
    if contact.display_name:
        params["name"] = contact.display_name

    customer = gateway.create_customer(**params)

    db.session.add(CustomerMapping(
        contact_id=contact.id,
        processor_id=processor_id,
        gateway_customer_id=customer["id"],
    ))
    db.session.flush()
    logger.info(f"Created Stripe customer {customer['id']} for contact {contact.id}")
    return customer
