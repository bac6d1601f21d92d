"""Transactional repository contracts consumed by the invoice services.

A ``UnitOfWork`` groups writes to several repositories into one atomic
commit. Each logical operation creates its own instance through a factory;
instances are not shared between concurrent operations and transactions do
not nest.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

from invoice_app.models import Address, Invoice, Item, RecurringInvoice

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    @abstractmethod
    async def get(self, key: object, *, include: Sequence[str] = ()) -> Optional[T]:
        """Return a copy of the entity with ``key`` or ``None``."""

    @abstractmethod
    async def get_all(self, *, include: Sequence[str] = ()) -> List[T]:
        ...

    @abstractmethod
    async def add(self, entity: T) -> T:
        """Insert ``entity`` and return it with its key assigned."""

    @abstractmethod
    async def update(self, entity: T) -> T:
        ...

    @abstractmethod
    async def delete(self, entity: T) -> None:
        ...

    @abstractmethod
    async def delete_many(self, entities: Iterable[T]) -> None:
        ...


class InvoiceRepository(Repository[Invoice]):
    @abstractmethod
    async def list_for_user(self, user_id: str, *, include: Sequence[str] = ()) -> List[Invoice]:
        ...

    @abstractmethod
    async def list_recurring_due(self, today: date) -> List[Invoice]:
        """Return recurring invoices whose schedule produces an instance on ``today``."""

    @abstractmethod
    async def frontend_ids(self) -> List[tuple[str, str]]:
        """Return ``(user_id, frontend_id)`` for every persisted invoice."""

    @abstractmethod
    async def count_address_references(self, address_id: int) -> int:
        ...


class ItemRepository(Repository[Item]):
    @abstractmethod
    async def list_for_invoice(self, invoice_id: str) -> List[Item]:
        ...


class AddressRepository(Repository[Address]):
    pass


class RecurringInvoiceRepository(Repository[RecurringInvoice]):
    @abstractmethod
    async def find_for_date(self, invoice_id: str, recurrence_date: date) -> Optional[RecurringInvoice]:
        ...


class UnitOfWork(ABC):
    invoices: InvoiceRepository
    items: ItemRepository
    addresses: AddressRepository
    recurring_invoices: RecurringInvoiceRepository

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        ...

    @abstractmethod
    async def begin(self) -> None:
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["UnitOfWork"]:
        """Begin, commit on clean exit, roll back on any exception.

        ``BaseException`` is caught so that a cancelled task leaves no partial
        writes behind before the cancellation propagates.
        """

        await self.begin()
        try:
            yield self
        except BaseException:
            if self.in_transaction:
                logger.debug("Rolling back open transaction")
                await self.rollback()
            raise
        if self.in_transaction:
            await self.commit()


UnitOfWorkFactory = Callable[[], UnitOfWork]
