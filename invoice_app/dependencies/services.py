from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from invoice_app.config import Settings, get_settings
from invoice_app.services import InvoiceService, RecurringInvoiceGenerator
from invoice_app.services.clock import Clock, SystemClock
from invoice_app.services.identity import UserContext
from invoice_app.services.invoice_ids import InvoiceIdAllocator
from invoice_app.services.memory_store import memory_unit_of_work_factory
from invoice_app.services.unit_of_work import UnitOfWorkFactory


@lru_cache(maxsize=1)
def get_clock() -> Clock:
    return SystemClock()


@lru_cache(maxsize=1)
def get_unit_of_work_factory() -> UnitOfWorkFactory:
    return memory_unit_of_work_factory()


@lru_cache(maxsize=1)
def get_id_allocator_cached() -> InvoiceIdAllocator:
    settings = get_settings()
    return InvoiceIdAllocator(
        get_unit_of_work_factory(),
        prefix=settings.frontend_id_prefix,
        width=settings.frontend_id_width,
    )


def reset_dependencies() -> None:
    get_clock.cache_clear()
    get_unit_of_work_factory.cache_clear()
    get_id_allocator_cached.cache_clear()


def get_id_allocator() -> InvoiceIdAllocator:
    return get_id_allocator_cached()


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> UserContext:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing authenticated user")
    return UserContext(user_id=x_user_id.strip(), email=x_user_email)


def get_operator(
    user: UserContext = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> UserContext:
    """Identity allowed to trigger store-wide jobs by hand."""

    if user.user_id not in settings.operator_user_ids:
        raise HTTPException(status_code=403, detail="Operator access required")
    return user


def get_invoice_service(
    allocator: InvoiceIdAllocator = Depends(get_id_allocator),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
) -> InvoiceService:
    return InvoiceService(
        get_unit_of_work_factory(),
        allocator,
        clock=clock,
        max_page_size=settings.max_page_size,
    )


def get_recurring_generator(
    allocator: InvoiceIdAllocator = Depends(get_id_allocator),
    clock: Clock = Depends(get_clock),
) -> RecurringInvoiceGenerator:
    return RecurringInvoiceGenerator(get_unit_of_work_factory(), allocator, clock=clock)
