from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, computed_field

from invoice_app.models import Address, Invoice, InvoiceStatus, Item, RecurrencePeriod

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_TRANSITION = "invalid_transition"
    CONFLICT = "conflict"
    PERSISTENCE = "persistence"


class ServiceResponse(BaseModel, Generic[T]):
    """Uniform envelope returned by every invoice operation.

    ``error`` discriminates the outcome. It is set on failures and also on
    rejected status transitions, which are still reported with
    ``success=True``.
    """

    success: bool
    message: str
    result: Optional[T] = None
    error: Optional[ErrorKind] = None


def ok(message: str, result=None) -> ServiceResponse:
    return ServiceResponse(success=True, message=message, result=result)


def fail(error: ErrorKind, message: str) -> ServiceResponse:
    return ServiceResponse(success=False, message=message, error=error)


class AddressPayload(BaseModel):
    street: str
    city: str
    post_code: str
    country: str


class ItemPayload(BaseModel):
    name: str
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)


class InvoiceRequest(BaseModel):
    description: str = ""
    payment_terms: int = Field(default=0, ge=0)
    client_name: str
    client_email: str
    is_ready: bool = False
    created_at: Optional[str] = None
    sender_address: AddressPayload
    client_address: AddressPayload
    items: List[ItemPayload] = Field(default_factory=list)


class InvoiceCreateRequest(InvoiceRequest):
    is_recurring: bool = False
    recurrence_period: Optional[RecurrencePeriod] = None
    recurrence_end_date: Optional[str] = None


class AddressResponse(BaseModel):
    street: str
    city: str
    post_code: str
    country: str

    @classmethod
    def from_entity(cls, address: Address) -> "AddressResponse":
        return cls(
            street=address.street,
            city=address.city,
            post_code=address.post_code,
            country=address.country,
        )


class ItemResponse(BaseModel):
    name: str
    quantity: int
    price: Decimal
    total: Decimal

    @classmethod
    def from_entity(cls, item: Item) -> "ItemResponse":
        return cls(name=item.name, quantity=item.quantity, price=item.price, total=item.total)


class InvoiceResponse(BaseModel):
    id: str
    frontend_id: str
    created_at: datetime
    payment_due: datetime
    description: str
    payment_terms: int
    client_name: str
    client_email: str
    status: InvoiceStatus
    total: Decimal
    sender_address: Optional[AddressResponse] = None
    client_address: Optional[AddressResponse] = None
    items: List[ItemResponse] = Field(default_factory=list)
    is_recurring: bool = False
    recurrence_period: Optional[RecurrencePeriod] = None
    recurrence_end_date: Optional[datetime] = None
    recurrence_count: int = 0

    @classmethod
    def from_entity(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            id=invoice.id,
            frontend_id=invoice.frontend_id,
            created_at=invoice.created_at,
            payment_due=invoice.payment_due,
            description=invoice.description,
            payment_terms=invoice.payment_terms,
            client_name=invoice.client_name,
            client_email=invoice.client_email,
            status=invoice.status,
            total=invoice.total,
            sender_address=(
                AddressResponse.from_entity(invoice.sender_address)
                if invoice.sender_address
                else None
            ),
            client_address=(
                AddressResponse.from_entity(invoice.client_address)
                if invoice.client_address
                else None
            ),
            items=[ItemResponse.from_entity(item) for item in invoice.items],
            is_recurring=invoice.is_recurring,
            recurrence_period=invoice.recurrence_period,
            recurrence_end_date=invoice.recurrence_end_date,
            recurrence_count=invoice.recurrence_count,
        )


class PaginationParameters(BaseModel):
    page_number: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1)


class InvoicePage(BaseModel):
    items: List[InvoiceResponse]
    total_count: int
    page_number: int
    page_size: int
    total_pages: int

    @computed_field
    @property
    def has_previous(self) -> bool:
        return self.page_number > 1

    @computed_field
    @property
    def has_next(self) -> bool:
        return self.page_number < self.total_pages


class RecurringRunResult(BaseModel):
    run_date: str
    generated: int = 0
    skipped: int = 0
    frontend_ids: List[str] = Field(default_factory=list)
