"""Reconciliation rules shared by the intent, subscription and webhook paths.

Pure functions only (no DB, no Stripe calls), so the synchronous payment
path and the webhook path can never disagree about what a Stripe status
means on the ledger, how a fee is converted, or when the next
installment falls due.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from crm_stripe.services.amounts import currency_precision, round_amount

# ──────────────────────────────────────────────
# Status mapping
# ──────────────────────────────────────────────

CHARGE_STATUS_MAP = {
    "succeeded": "Completed",
    "pending": "Pending",
    "failed": "Failed",
}

SUBSCRIPTION_STATUS_MAP = {
    "active": "In Progress",
    "trialing": "In Progress",
    "past_due": "Overdue",
    "incomplete": "Pending",
    "canceled": "Cancelled",
    "unpaid": "Cancelled",
    "incomplete_expired": "Cancelled",
}

# PaymentIntent statuses that mean the money is (or will be) ours.
INTENT_SUCCESS_STATUSES = ("requires_capture", "succeeded")


def charge_status_to_ledger_status(status, captured=True, refunded=False):
    """Map a Stripe charge status to a contribution status.

    An uncaptured successful charge is still only authorised, so it stays
    Pending until capture.
    """
    if refunded:
        return "Refunded"
    ledger_status = CHARGE_STATUS_MAP.get(status, "Pending")
    if ledger_status == "Completed" and not captured:
        return "Pending"
    return ledger_status


def subscription_status_to_ledger_status(status):
    """Map a Stripe subscription status to a recurring contribution status."""
    return SUBSCRIPTION_STATUS_MAP.get(status, "Pending")


def invoice_status_to_ledger_status(paid):
    return "Completed" if paid else "Pending"


# ──────────────────────────────────────────────
# Fees
# ──────────────────────────────────────────────

def fee_from_balance_transaction(balance_transaction, charge_currency):
    """Work out the contribution fee from a Stripe balance transaction.

    Stripe reports the fee in minor units of the settlement currency. When
    the charge was made in another currency the fee is divided by the
    balance transaction's exchange rate. The result is always rounded to
    the settlement currency's precision: an unrounded fee would not match
    the contribution amount stored with fewer decimal places.
    """
    if not balance_transaction:
        return None

    fee = Decimal(balance_transaction.get("fee") or 0)
    settlement_currency = balance_transaction.get("currency") or charge_currency
    precision = currency_precision(settlement_currency)
    value = fee.scaleb(-precision)

    rate = balance_transaction.get("exchange_rate")
    if (
        rate
        and charge_currency
        and settlement_currency.upper() != charge_currency.upper()
    ):
        value = value / Decimal(str(rate))

    return round_amount(value, settlement_currency)


def net_amount(total_amount, fee_amount, currency):
    if total_amount is None:
        return None
    return round_amount(Decimal(total_amount) - Decimal(fee_amount or 0), currency)


# ──────────────────────────────────────────────
# Schedule arithmetic
# ──────────────────────────────────────────────

def as_utc(value):
    """Aware UTC datetime for a date, a naive datetime (taken as UTC) or an aware one.

    A plain date becomes midnight UTC of that day.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        if not isinstance(value, date):
            raise TypeError(f"Expected a date or datetime, got {value!r}")
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _add_months(dt, months):
    # Keep the day of month, or the last day if the target month is shorter.
    month = dt.month + months
    year = dt.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_interval(dt, unit, interval=1):
    """Advance a datetime by ``interval`` calendar units (day/week/month/year)."""
    interval = int(interval or 1)
    if unit == "day":
        return dt + timedelta(days=interval)
    if unit == "week":
        return dt + timedelta(weeks=interval)
    if unit == "month":
        return _add_months(dt, interval)
    if unit == "year":
        return _add_months(dt, 12 * interval)
    raise ValueError(f"Unknown frequency unit: {unit!r}")


def end_of_day(dt):
    return dt.replace(hour=23, minute=59, second=59, microsecond=0)


def schedule(start, unit, interval=1, installments=None):
    """Compute the billing schedule for a recurring contribution.

    Returns (next_scheduled_date, cycle_day, end_date). end_date is None
    for open-ended schedules, otherwise the last day of the final
    installment, inclusive through 23:59:59.
    """
    next_scheduled = add_interval(start, unit, interval)
    cycle_day = next_scheduled.day

    end_date = None
    if installments and int(installments) > 0:
        end_date = end_of_day(
            add_interval(start, unit, int(interval or 1) * int(installments))
        )

    return next_scheduled, cycle_day, end_date
