"""Scheduled generation of invoice instances from recurring invoices.

One run produces at most one instance per source invoice per calendar day.
The ``recurring_invoices`` ledger, keyed by ``(source invoice, date)``, makes
repeated runs on the same day no-ops. The whole run is one transaction: a
failure on any source invoice rolls back every instance generated so far.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from invoice_app.models import Invoice, InvoiceStatus, Item, RecurringInvoice
from invoice_app.schemas.invoice import ErrorKind, RecurringRunResult, ServiceResponse, fail, ok
from invoice_app.services.clock import Clock, SystemClock
from invoice_app.services.invoice import add_invoice_graph
from invoice_app.services.invoice_ids import InvoiceIdAllocator
from invoice_app.services.unit_of_work import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)


class RecurringInvoiceGenerator:
    def __init__(
        self,
        unit_of_work: UnitOfWorkFactory,
        id_allocator: InvoiceIdAllocator,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._unit_of_work = unit_of_work
        self._ids = id_allocator
        self._clock = clock or SystemClock()

    async def run(self, today: date | None = None) -> ServiceResponse:
        today = today or self._clock.today()
        logger.info("Starting to generate recurring invoices for %s", today)
        summary = RecurringRunResult(run_date=today.isoformat())

        uow = self._unit_of_work()
        try:
            async with uow.transaction():
                candidates = await uow.invoices.list_recurring_due(today)
                logger.info("%s recurring invoices due on %s", len(candidates), today)
                for source in candidates:
                    existing = await uow.recurring_invoices.find_for_date(source.id, today)
                    if existing is not None:
                        logger.info(
                            "Recurring invoice already exists for invoice %s on %s",
                            source.frontend_id,
                            today,
                        )
                        summary.skipped += 1
                        continue

                    try:
                        instance = await self._generate(uow, source, today)
                    except Exception:
                        logger.error("Error generating recurring invoice for invoice %s", source.frontend_id)
                        raise
                    summary.generated += 1
                    summary.frontend_ids.append(instance.frontend_id)
        except Exception as exc:
            logger.exception("Error during recurring invoice generation; run rolled back")
            return fail(ErrorKind.PERSISTENCE, f"An error occurred: {exc}")

        logger.info(
            "Recurring run for %s finished: %s generated, %s skipped",
            today,
            summary.generated,
            summary.skipped,
        )
        return ok("Recurring invoices generated successfully.", summary)

    async def _generate(self, uow: UnitOfWork, source: Invoice, today: date) -> Invoice:
        created_at = datetime.combine(today, time.min, tzinfo=timezone.utc)
        source_items = await uow.items.list_for_invoice(source.id)

        instance = Invoice(
            user_id=source.user_id,
            frontend_id=await self._ids.allocate(source.user_id),
            created_at=created_at,
            payment_due=created_at + timedelta(days=source.payment_terms),
            description=source.description,
            payment_terms=source.payment_terms,
            client_name=source.client_name,
            client_email=source.client_email,
            status=InvoiceStatus.PENDING,
            total=source.total,
            sender_address_id=source.sender_address_id,
            client_address_id=source.client_address_id,
            is_recurring=False,
            recurrence_count=0,
            inserted_at=self._clock.now(),
        )
        items = [Item(name=item.name, quantity=item.quantity, price=item.price) for item in source_items]
        await add_invoice_graph(uow, instance, items)

        await uow.recurring_invoices.add(
            RecurringInvoice(
                invoice_id=source.id,
                recurrence_date=today,
                status=InvoiceStatus.PENDING,
                total=source.total,
            )
        )
        source.recurrence_count += 1
        await uow.invoices.update(source)

        logger.info(
            "Recurring invoice %s generated from invoice %s",
            instance.frontend_id,
            source.frontend_id,
        )
        return instance
