from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol


class InvoiceStatus(str, Enum):
    DRAFT = "Draft"
    PENDING = "Pending"
    PAID = "Paid"


class RecurrencePeriod(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class AddressFields(Protocol):
    street: str
    city: str
    post_code: str
    country: str


@dataclass
class Address:
    street: str
    city: str
    post_code: str
    country: str
    id: Optional[int] = None


@dataclass
class Item:
    name: str
    quantity: int
    price: Decimal
    invoice_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def total(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class Invoice:
    user_id: str
    frontend_id: str
    created_at: datetime
    payment_due: datetime
    description: str
    payment_terms: int
    client_name: str
    client_email: str
    status: InvoiceStatus
    total: Decimal = Decimal("0")
    sender_address_id: Optional[int] = None
    client_address_id: Optional[int] = None
    is_recurring: bool = False
    recurrence_period: Optional[RecurrencePeriod] = None
    recurrence_end_date: Optional[datetime] = None
    recurrence_count: int = 0
    inserted_at: Optional[datetime] = None
    id: Optional[str] = None

    # Navigation fields, populated only when a repository read asks for them.
    items: List[Item] = field(default_factory=list)
    sender_address: Optional[Address] = None
    client_address: Optional[Address] = None


@dataclass
class RecurringInvoice:
    invoice_id: str
    recurrence_date: date
    status: InvoiceStatus
    total: Decimal
    id: Optional[int] = None


INVOICE_GRAPH = ("items", "sender_address", "client_address")


def addresses_equal(new: AddressFields, current: AddressFields) -> bool:
    """Field-by-field value comparison of two addresses, ignoring identity."""

    return (
        new.street == current.street
        and new.city == current.city
        and new.post_code == current.post_code
        and new.country == current.country
    )


def sum_item_totals(items: List[Item]) -> Decimal:
    return sum((item.total for item in items), Decimal("0"))
