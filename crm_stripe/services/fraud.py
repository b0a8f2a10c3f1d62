"""Fraud signal port.

The intent engine reports suspicious activity through a FraudSignal. A
firewall integration subclasses it; without one, NullFraudSignal logs
and does nothing else.
"""

import logging

logger = logging.getLogger(__name__)


class FraudSignal:
    """Receives fraud and card-testing reports from the intent engine."""

    def fraud(self, ip_address, reason):
        """Report a likely fraudulent payment attempt."""
        raise NotImplementedError

    def declined_card(self, ip_address, reason):
        """Report a plain decline (repeated ones suggest card testing)."""
        raise NotImplementedError


class NullFraudSignal(FraudSignal):

    def fraud(self, ip_address, reason):
        logger.warning(f"Fraud signal from {ip_address}: {reason}")

    def declined_card(self, ip_address, reason):
        logger.info(f"Declined card from {ip_address}: {reason}")
