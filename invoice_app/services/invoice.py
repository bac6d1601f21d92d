from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from invoice_app.models import (
    INVOICE_GRAPH,
    Address,
    Invoice,
    InvoiceStatus,
    Item,
    addresses_equal,
    sum_item_totals,
)
from invoice_app.schemas.invoice import (
    AddressPayload,
    ErrorKind,
    InvoiceCreateRequest,
    InvoicePage,
    InvoiceRequest,
    InvoiceResponse,
    ItemPayload,
    PaginationParameters,
    ServiceResponse,
    fail,
    ok,
)
from invoice_app.services.clock import Clock, SystemClock, utc_date
from invoice_app.services.identity import UserContext
from invoice_app.services.invoice_ids import InvoiceIdAllocator
from invoice_app.services.unit_of_work import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

# Source states from which a status change to the key is permitted.
_ALLOWED_SOURCES: Dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.PENDING: {InvoiceStatus.DRAFT},
    InvoiceStatus.PAID: {InvoiceStatus.PENDING},
}


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime; naive values are taken as UTC."""

    if value is None or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _address(payload: AddressPayload) -> Address:
    return Address(
        street=payload.street,
        city=payload.city,
        post_code=payload.post_code,
        country=payload.country,
    )


def _items(payloads: Sequence[ItemPayload]) -> List[Item]:
    return [Item(name=item.name, quantity=item.quantity, price=item.price) for item in payloads]


async def add_invoice_graph(
    uow: UnitOfWork,
    invoice: Invoice,
    items: Sequence[Item],
    *,
    sender_address: Address | None = None,
    client_address: Address | None = None,
) -> Invoice:
    """Insert a new invoice with its addresses and items inside ``uow``'s transaction.

    Addresses passed here are inserted and linked; otherwise the invoice keeps
    the address ids it already carries.
    """

    if sender_address is not None:
        await uow.addresses.add(sender_address)
        invoice.sender_address_id = sender_address.id
    if client_address is not None:
        await uow.addresses.add(client_address)
        invoice.client_address_id = client_address.id

    await uow.invoices.add(invoice)
    for item in items:
        item.id = None
        item.invoice_id = invoice.id
        await uow.items.add(item)

    invoice.items = list(items)
    invoice.sender_address = sender_address
    invoice.client_address = client_address
    return invoice


class InvoiceService:
    """Creation, edit, status transitions and deletion of a user's invoices.

    Every operation returns a :class:`ServiceResponse`. Expected failures are
    reported through ``error``; anything unexpected is logged, the open
    transaction is rolled back and a ``persistence`` failure is returned.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWorkFactory,
        id_allocator: InvoiceIdAllocator,
        *,
        clock: Clock | None = None,
        max_page_size: int = 50,
    ) -> None:
        self._unit_of_work = unit_of_work
        self._ids = id_allocator
        self._clock = clock or SystemClock()
        self._max_page_size = max_page_size

    async def create(self, user: UserContext, request: InvoiceCreateRequest) -> ServiceResponse:
        logger.info("Attempting to create new invoice for %s", user.display)
        now = self._clock.now()

        recurrence_end: Optional[datetime] = None
        if request.is_recurring:
            if request.recurrence_period is None:
                logger.warning("RecurrencePeriod is missing for a recurring invoice.")
                return fail(ErrorKind.VALIDATION, "RecurrencePeriod is required for a recurring invoice.")
            recurrence_end = parse_datetime(request.recurrence_end_date)
            if recurrence_end is None:
                logger.warning("Invalid or missing RecurrenceEndDate for a recurring invoice.")
                return fail(
                    ErrorKind.VALIDATION,
                    "Valid RecurrenceEndDate is required for a recurring invoice.",
                )

        created_at = now
        if request.created_at is not None and request.created_at.strip():
            parsed = parse_datetime(request.created_at)
            if parsed is None:
                logger.warning("Invalid date format received: %s", request.created_at)
                return fail(ErrorKind.VALIDATION, "Invalid date format provided.")
            if utc_date(parsed) < utc_date(now):
                logger.warning("Attempting to create an invoice with a past date: %s", request.created_at)
                return fail(ErrorKind.VALIDATION, "Cannot create an invoice with a date in the past.")
            created_at = parsed

        items = _items(request.items)
        try:
            frontend_id = await self._ids.allocate(user.user_id)
            invoice = Invoice(
                user_id=user.user_id,
                frontend_id=frontend_id,
                created_at=created_at,
                payment_due=created_at + timedelta(days=request.payment_terms),
                description=request.description,
                payment_terms=request.payment_terms,
                client_name=request.client_name,
                client_email=request.client_email,
                status=InvoiceStatus.PENDING if request.is_ready else InvoiceStatus.DRAFT,
                total=sum_item_totals(items),
                is_recurring=request.is_recurring,
                recurrence_period=request.recurrence_period if request.is_recurring else None,
                recurrence_end_date=recurrence_end,
                recurrence_count=0,
                inserted_at=now,
            )
            uow = self._unit_of_work()
            async with uow.transaction():
                await add_invoice_graph(
                    uow,
                    invoice,
                    items,
                    sender_address=_address(request.sender_address),
                    client_address=_address(request.client_address),
                )
        except Exception as exc:
            logger.exception("Error creating invoice")
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        logger.info("Invoice %s added successfully", frontend_id)
        return ok("Invoice successfully created", frontend_id)

    async def get(self, user: UserContext, invoice_id: str) -> ServiceResponse:
        logger.info("Attempting to retrieve invoice %s", invoice_id)
        try:
            invoice = await self._unit_of_work().invoices.get(invoice_id, include=INVOICE_GRAPH)
        except Exception as exc:
            logger.exception("Error getting invoice")
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        # Another user's invoice reads exactly like a missing one.
        if invoice is None or invoice.user_id != user.user_id:
            logger.warning("The invoice %s doesn't exist for user %s", invoice_id, user.display)
            return fail(ErrorKind.NOT_FOUND, "The invoice doesn't exist")

        return ok("Invoice successfully returned", InvoiceResponse.from_entity(invoice))

    async def _load_for_user(self, user: UserContext) -> List[Invoice]:
        invoices = await self._unit_of_work().invoices.list_for_user(user.user_id, include=INVOICE_GRAPH)
        invoices.sort(key=lambda invoice: (invoice.created_at, invoice.frontend_id))
        return invoices

    async def list_for_user(self, user: UserContext) -> ServiceResponse:
        logger.info("Attempting to retrieve all invoices for %s", user.display)
        try:
            invoices = await self._load_for_user(user)
        except Exception as exc:
            logger.exception("Error getting invoices for the user")
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        if not invoices:
            logger.warning("No invoices found for the user %s", user.display)
            return fail(ErrorKind.NOT_FOUND, "No invoices found")

        logger.info("Invoices retrieved for the user %s", user.display)
        return ok(
            "Invoices successfully returned",
            [InvoiceResponse.from_entity(invoice) for invoice in invoices],
        )

    async def list_page(self, user: UserContext, pagination: PaginationParameters) -> ServiceResponse:
        logger.info(
            "Attempting to retrieve page %s of invoices for %s",
            pagination.page_number,
            user.display,
        )
        page_size = min(pagination.page_size, self._max_page_size)
        try:
            invoices = await self._load_for_user(user)
        except Exception as exc:
            logger.exception("An error occurred while retrieving invoices for user %s", user.user_id)
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        start = (pagination.page_number - 1) * page_size
        page = InvoicePage(
            items=[InvoiceResponse.from_entity(invoice) for invoice in invoices[start:start + page_size]],
            total_count=len(invoices),
            page_number=pagination.page_number,
            page_size=page_size,
            total_pages=math.ceil(len(invoices) / page_size),
        )
        return ok("Invoices retrieved successfully.", page)

    async def edit(self, user: UserContext, invoice_id: str, request: InvoiceRequest) -> ServiceResponse:
        logger.info("Attempting to edit invoice %s", invoice_id)
        today = self._clock.today()

        requested_date: Optional[datetime] = None
        if request.created_at is not None and request.created_at.strip():
            requested_date = parse_datetime(request.created_at)
            if requested_date is None:
                logger.warning("Invalid date format received: %s", request.created_at)
                return fail(ErrorKind.VALIDATION, "Invalid date format provided.")

        uow = self._unit_of_work()
        try:
            async with uow.transaction():
                invoice = await uow.invoices.get(invoice_id, include=INVOICE_GRAPH)
                if invoice is None:
                    logger.warning("Invoice %s not found.", invoice_id)
                    return fail(ErrorKind.NOT_FOUND, "Invoice not found.")
                if invoice.user_id != user.user_id:
                    logger.warning("User %s does not have permission to edit invoice %s", user.user_id, invoice_id)
                    return fail(ErrorKind.UNAUTHORIZED, "Unauthorized to edit this invoice")
                if invoice.status == InvoiceStatus.PENDING:
                    logger.warning("Attempted to edit pending invoice %s.", invoice_id)
                    return fail(ErrorKind.CONFLICT, "Pending invoices cannot be edited.")
                if invoice.status == InvoiceStatus.PAID:
                    logger.warning("Attempted to edit paid invoice %s.", invoice_id)
                    return fail(ErrorKind.CONFLICT, "Paid invoices cannot be edited.")

                created_at = invoice.created_at
                if requested_date is not None and utc_date(requested_date) != utc_date(created_at):
                    if utc_date(requested_date) < today:
                        logger.warning("Attempting to move invoice %s to a past date: %s", invoice_id, request.created_at)
                        return fail(ErrorKind.VALIDATION, "Cannot move an invoice to a date in the past.")
                    created_at = requested_date

                await self._reconcile(uow, invoice, request, created_at)
        except Exception as exc:
            logger.exception("Error editing invoice %s.", invoice_id)
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        logger.info("Invoice %s updated successfully.", invoice_id)
        return ok("Invoice updated successfully.", True)

    async def _reconcile(
        self,
        uow: UnitOfWork,
        invoice: Invoice,
        request: InvoiceRequest,
        created_at: datetime,
    ) -> None:
        invoice.description = request.description
        invoice.payment_terms = request.payment_terms
        invoice.client_name = request.client_name
        invoice.client_email = request.client_email
        invoice.created_at = created_at
        invoice.payment_due = created_at + timedelta(days=request.payment_terms)
        invoice.status = InvoiceStatus.PENDING if request.is_ready else InvoiceStatus.DRAFT

        replaced: List[Address] = []
        current = invoice.sender_address
        if current is None or not addresses_equal(request.sender_address, current):
            address = await uow.addresses.add(_address(request.sender_address))
            invoice.sender_address_id, invoice.sender_address = address.id, address
            if current is not None:
                replaced.append(current)
        current = invoice.client_address
        if current is None or not addresses_equal(request.client_address, current):
            address = await uow.addresses.add(_address(request.client_address))
            invoice.client_address_id, invoice.client_address = address.id, address
            if current is not None:
                replaced.append(current)

        # Items are replaced wholesale, never diffed.
        await uow.items.delete_many(invoice.items)
        items = _items(request.items)
        for item in items:
            item.invoice_id = invoice.id
            await uow.items.add(item)
        invoice.items = items
        invoice.total = sum_item_totals(items)

        await uow.invoices.update(invoice)

        # Restrictive delete: fails if another invoice still points at the address.
        for address in replaced:
            await uow.addresses.delete(address)

    async def delete(self, user: UserContext, invoice_id: str) -> ServiceResponse:
        logger.info("Attempting to delete invoice %s for user %s", invoice_id, user.user_id)
        uow = self._unit_of_work()
        try:
            async with uow.transaction():
                invoice = await uow.invoices.get(invoice_id)
                if invoice is None:
                    logger.warning("Invoice %s not found", invoice_id)
                    return fail(ErrorKind.NOT_FOUND, "Invoice not found")
                if invoice.user_id != user.user_id:
                    logger.warning("User %s does not have permission to delete invoice %s", user.user_id, invoice_id)
                    return fail(ErrorKind.UNAUTHORIZED, "Unauthorized to delete this invoice")

                await uow.invoices.delete(invoice)
                for address_id in dict.fromkeys((invoice.sender_address_id, invoice.client_address_id)):
                    if address_id is None:
                        continue
                    if await uow.invoices.count_address_references(address_id):
                        logger.info("Address %s still referenced by other invoices; keeping it", address_id)
                        continue
                    address = await uow.addresses.get(address_id)
                    if address is not None:
                        await uow.addresses.delete(address)
        except Exception as exc:
            logger.exception("Error deleting invoice %s", invoice_id)
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        logger.info("Invoice %s deleted successfully", invoice_id)
        return ok("Invoice deleted successfully", True)

    async def mark_paid(self, user: UserContext, invoice_id: str) -> ServiceResponse:
        return await self._transition(user, invoice_id, InvoiceStatus.PAID)

    async def mark_pending(self, user: UserContext, invoice_id: str) -> ServiceResponse:
        return await self._transition(user, invoice_id, InvoiceStatus.PENDING)

    async def _transition(self, user: UserContext, invoice_id: str, target: InvoiceStatus) -> ServiceResponse:
        label = target.value.lower()
        logger.info("Marking invoice %s as %s", invoice_id, label)
        uow = self._unit_of_work()
        try:
            async with uow.transaction():
                invoice = await uow.invoices.get(invoice_id)
                if invoice is None:
                    logger.warning("Invoice %s not found.", invoice_id)
                    return fail(ErrorKind.NOT_FOUND, "Invoice not found.")
                if invoice.user_id != user.user_id:
                    logger.warning("User %s does not have permission to update invoice %s", user.user_id, invoice_id)
                    return fail(ErrorKind.UNAUTHORIZED, "Unauthorized to update this invoice")
                if invoice.status == target:
                    logger.info("Invoice %s is already marked as %s.", invoice_id, label)
                    return ok(f"Invoice is already marked as {label}.", True)
                if invoice.status not in _ALLOWED_SOURCES[target]:
                    logger.info(
                        "Invoice %s is %s and cannot be marked as %s.",
                        invoice_id,
                        invoice.status.value,
                        label,
                    )
                    return ServiceResponse(
                        success=True,
                        message="Invalid Operation.",
                        result=True,
                        error=ErrorKind.INVALID_TRANSITION,
                    )

                invoice.status = target
                await uow.invoices.update(invoice)
        except Exception as exc:
            logger.exception("Error marking invoice %s as %s.", invoice_id, label)
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        logger.info("Invoice %s marked as %s successfully.", invoice_id, label)
        return ok(f"Invoice marked as {label} successfully.", True)
