# Models package: import all models here so Alembic can discover them.

from crm_stripe.models.processor import PaymentProcessor  # noqa: F401
from crm_stripe.models.contact import Contact, CustomerMapping  # noqa: F401
from crm_stripe.models.contribution import (  # noqa: F401
    Contribution,
    Payment,
    RecurringContribution,
)
from crm_stripe.models.intent import IntentRecord  # noqa: F401
from crm_stripe.models.webhook_event import WebhookEvent  # noqa: F401
from crm_stripe.models.audit import AuditEvent  # noqa: F401
