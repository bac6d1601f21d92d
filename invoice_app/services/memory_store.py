from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from dataclasses import replace
from datetime import date
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, TypeVar

from invoice_app.models import Address, Invoice, Item, RecurringInvoice
from invoice_app.services.exceptions import IntegrityError, RestrictedDeleteError, TransactionError
from invoice_app.services.schedule import is_due
from invoice_app.services.unit_of_work import (
    AddressRepository,
    InvoiceRepository,
    ItemRepository,
    RecurringInvoiceRepository,
    UnitOfWork,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Tables = Dict[str, Dict[Any, Any]]


def _empty_tables() -> Tables:
    return {"invoices": {}, "items": {}, "addresses": {}, "recurring_invoices": {}}


class InMemoryDatabase:
    """Committed state shared by every unit of work opened against it.

    Transactions are serialized by ``lock``; key sequences are never rolled
    back, so aborted inserts leave gaps.
    """

    def __init__(self) -> None:
        self.tables: Tables = _empty_tables()
        self.lock = asyncio.Lock()
        self._sequences: Dict[str, itertools.count] = {
            "items": itertools.count(1),
            "addresses": itertools.count(1),
            "recurring_invoices": itertools.count(1),
        }

    def next_key(self, table: str) -> Any:
        if table == "invoices":
            return uuid.uuid4().hex
        return next(self._sequences[table])


class _MemoryRepository(Generic[T]):
    table: str = ""

    def __init__(self, uow: "InMemoryUnitOfWork") -> None:
        self._uow = uow

    @property
    def _rows(self) -> Dict[Any, T]:
        return self._uow.tables()[self.table]

    def _writable_rows(self) -> Dict[Any, T]:
        if not self._uow.in_transaction:
            raise TransactionError(f"Write to {self.table} outside of a transaction")
        return self._rows

    async def _yield(self) -> None:
        await asyncio.sleep(0)

    def _load(self, row: T, include: Sequence[str]) -> T:
        return copy.deepcopy(row)

    def _store(self, entity: T) -> T:
        return copy.deepcopy(entity)

    async def get(self, key: object, *, include: Sequence[str] = ()) -> Optional[T]:
        await self._yield()
        row = self._rows.get(key)
        return self._load(row, include) if row is not None else None

    async def get_all(self, *, include: Sequence[str] = ()) -> List[T]:
        await self._yield()
        return [self._load(row, include) for row in self._rows.values()]

    async def find(self, predicate: Callable[[T], bool], *, include: Sequence[str] = ()) -> List[T]:
        await self._yield()
        return [self._load(row, include) for row in self._rows.values() if predicate(row)]

    def _check_insert(self, rows: Dict[Any, T], entity: T) -> None:
        pass

    def _check_delete(self, entity: T) -> None:
        pass

    async def add(self, entity: T) -> T:
        await self._yield()
        rows = self._writable_rows()
        if entity.id is None:
            entity.id = self._uow.database.next_key(self.table)
        elif entity.id in rows:
            raise IntegrityError(f"{self.table} row {entity.id} already exists", constraint="primary_key")
        self._check_insert(rows, entity)
        rows[entity.id] = self._store(entity)
        return entity

    async def update(self, entity: T) -> T:
        await self._yield()
        rows = self._writable_rows()
        if entity.id not in rows:
            raise IntegrityError(f"{self.table} row {entity.id} not found", constraint="primary_key")
        rows[entity.id] = self._store(entity)
        return entity

    async def delete(self, entity: T) -> None:
        await self._yield()
        rows = self._writable_rows()
        if entity.id not in rows:
            raise IntegrityError(f"{self.table} row {entity.id} not found", constraint="primary_key")
        self._check_delete(entity)
        del rows[entity.id]

    async def delete_many(self, entities: Iterable[T]) -> None:
        for entity in list(entities):
            await self.delete(entity)


class MemoryInvoiceRepository(_MemoryRepository[Invoice], InvoiceRepository):
    table = "invoices"

    def _store(self, entity: Invoice) -> Invoice:
        # Only the row itself is persisted; owned items and addresses live in their own tables.
        return copy.deepcopy(
            replace(entity, items=[], sender_address=None, client_address=None)
        )

    def _load(self, row: Invoice, include: Sequence[str]) -> Invoice:
        invoice = copy.deepcopy(row)
        tables = self._uow.tables()
        if "items" in include:
            invoice.items = [
                copy.deepcopy(item)
                for item in tables["items"].values()
                if item.invoice_id == invoice.id
            ]
        if "sender_address" in include and invoice.sender_address_id is not None:
            address = tables["addresses"].get(invoice.sender_address_id)
            invoice.sender_address = copy.deepcopy(address)
        if "client_address" in include and invoice.client_address_id is not None:
            address = tables["addresses"].get(invoice.client_address_id)
            invoice.client_address = copy.deepcopy(address)
        return invoice

    def _check_insert(self, rows: Dict[Any, Invoice], entity: Invoice) -> None:
        for existing in rows.values():
            if existing.user_id == entity.user_id and existing.frontend_id == entity.frontend_id:
                raise IntegrityError(
                    f"Frontend id {entity.frontend_id} already issued to user {entity.user_id}",
                    constraint="ux_invoice_user_frontend_id",
                )
        addresses = self._uow.tables()["addresses"]
        for address_id in (entity.sender_address_id, entity.client_address_id):
            if address_id is not None and address_id not in addresses:
                raise IntegrityError(
                    f"Address {address_id} does not exist", constraint="fk_invoice_address"
                )

    async def update(self, entity: Invoice) -> Invoice:
        addresses = self._uow.tables()["addresses"]
        for address_id in (entity.sender_address_id, entity.client_address_id):
            if address_id is not None and address_id not in addresses:
                raise IntegrityError(
                    f"Address {address_id} does not exist", constraint="fk_invoice_address"
                )
        return await super().update(entity)

    async def delete(self, entity: Invoice) -> None:
        await super().delete(entity)
        items = self._writable_rows_of("items")
        for key in [key for key, item in items.items() if item.invoice_id == entity.id]:
            del items[key]

    def _writable_rows_of(self, table: str) -> Dict[Any, Any]:
        if not self._uow.in_transaction:
            raise TransactionError(f"Write to {table} outside of a transaction")
        return self._uow.tables()[table]

    async def list_for_user(self, user_id: str, *, include: Sequence[str] = ()) -> List[Invoice]:
        return await self.find(lambda invoice: invoice.user_id == user_id, include=include)

    async def list_recurring_due(self, today: date) -> List[Invoice]:
        return await self.find(lambda invoice: is_due(invoice, today))

    async def frontend_ids(self) -> List[tuple[str, str]]:
        await self._yield()
        return [(invoice.user_id, invoice.frontend_id) for invoice in self._rows.values()]

    async def count_address_references(self, address_id: int) -> int:
        await self._yield()
        return sum(
            (invoice.sender_address_id == address_id) + (invoice.client_address_id == address_id)
            for invoice in self._rows.values()
        )


class MemoryItemRepository(_MemoryRepository[Item], ItemRepository):
    table = "items"

    def _check_insert(self, rows: Dict[Any, Item], entity: Item) -> None:
        if entity.invoice_id not in self._uow.tables()["invoices"]:
            raise IntegrityError(
                f"Invoice {entity.invoice_id} does not exist", constraint="fk_item_invoice"
            )

    async def list_for_invoice(self, invoice_id: str) -> List[Item]:
        return await self.find(lambda item: item.invoice_id == invoice_id)


class MemoryAddressRepository(_MemoryRepository[Address], AddressRepository):
    table = "addresses"

    def _check_delete(self, entity: Address) -> None:
        for invoice in self._uow.tables()["invoices"].values():
            if entity.id in (invoice.sender_address_id, invoice.client_address_id):
                raise RestrictedDeleteError(
                    f"Address {entity.id} is still referenced by invoice {invoice.frontend_id}",
                    constraint="fk_invoice_address",
                )


class MemoryRecurringInvoiceRepository(_MemoryRepository[RecurringInvoice], RecurringInvoiceRepository):
    table = "recurring_invoices"

    def _check_insert(self, rows: Dict[Any, RecurringInvoice], entity: RecurringInvoice) -> None:
        for existing in rows.values():
            if (
                existing.invoice_id == entity.invoice_id
                and existing.recurrence_date == entity.recurrence_date
            ):
                raise IntegrityError(
                    f"Recurrence for invoice {entity.invoice_id} on {entity.recurrence_date} already recorded",
                    constraint="ux_recurring_invoice_date",
                )

    async def find_for_date(self, invoice_id: str, recurrence_date: date) -> Optional[RecurringInvoice]:
        matches = await self.find(
            lambda row: row.invoice_id == invoice_id and row.recurrence_date == recurrence_date
        )
        return matches[0] if matches else None


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of work over an :class:`InMemoryDatabase`.

    ``begin`` takes the database lock and copies the committed tables; all
    writes go to the copy, which replaces the committed tables on ``commit``
    and is dropped on ``rollback``.
    """

    def __init__(self, database: InMemoryDatabase) -> None:
        self.database = database
        self._working: Optional[Tables] = None
        self.invoices = MemoryInvoiceRepository(self)
        self.items = MemoryItemRepository(self)
        self.addresses = MemoryAddressRepository(self)
        self.recurring_invoices = MemoryRecurringInvoiceRepository(self)

    @property
    def in_transaction(self) -> bool:
        return self._working is not None

    def tables(self) -> Tables:
        return self._working if self._working is not None else self.database.tables

    async def begin(self) -> None:
        if self._working is not None:
            raise TransactionError("Transaction already in progress on this unit of work")
        await self.database.lock.acquire()
        self._working = copy.deepcopy(self.database.tables)

    async def commit(self) -> None:
        if self._working is None:
            raise TransactionError("No transaction to commit")
        try:
            self.database.tables = self._working
        finally:
            self._working = None
            self.database.lock.release()

    async def rollback(self) -> None:
        if self._working is None:
            return
        self._working = None
        self.database.lock.release()
        logger.debug("In-memory transaction rolled back")


_database: Optional[InMemoryDatabase] = None


def get_database() -> InMemoryDatabase:
    global _database
    if _database is None:
        _database = InMemoryDatabase()
    return _database


def reset_database() -> None:
    global _database
    _database = None


def memory_unit_of_work_factory(database: InMemoryDatabase | None = None) -> Callable[[], InMemoryUnitOfWork]:
    """Return a factory opening a fresh unit of work per call.

    Without an explicit ``database`` the process-wide one is resolved on each
    call, so ``reset_database`` takes effect for existing factories.
    """

    if database is not None:
        return lambda: InMemoryUnitOfWork(database)
    return lambda: InMemoryUnitOfWork(get_database())
