from __future__ import annotations

from datetime import date

from dateutil.relativedelta import relativedelta

from invoice_app.models import Invoice, RecurrencePeriod
from invoice_app.services.clock import utc_date


def falls_on_cadence(period: RecurrencePeriod, start: date, today: date) -> bool:
    """Whether ``today`` is an occurrence of a schedule anchored at ``start``.

    Monthly and yearly occurrences are always offset from ``start`` itself, so
    a schedule anchored on the 31st lands on each month's last day without
    drifting.
    """

    if today <= start:
        return False
    if period == RecurrencePeriod.DAILY:
        return True
    if period == RecurrencePeriod.WEEKLY:
        return (today - start).days % 7 == 0
    if period == RecurrencePeriod.MONTHLY:
        months = (today.year - start.year) * 12 + today.month - start.month
        return start + relativedelta(months=months) == today
    if period == RecurrencePeriod.YEARLY:
        return start + relativedelta(years=today.year - start.year) == today
    raise ValueError(f"Unsupported recurrence period: {period!r}")


def is_due(invoice: Invoice, today: date) -> bool:
    if not invoice.is_recurring:
        return False
    if invoice.recurrence_period is None or invoice.recurrence_end_date is None:
        return False
    if today > utc_date(invoice.recurrence_end_date):
        return False
    return falls_on_cadence(invoice.recurrence_period, utc_date(invoice.created_at), today)
