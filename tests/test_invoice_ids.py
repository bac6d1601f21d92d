import asyncio
import logging
import os
import sys
from datetime import datetime, timezone

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from invoice_app.models import Invoice, InvoiceStatus
from invoice_app.services.invoice_ids import InvoiceIdAllocator
from invoice_app.services.memory_store import InMemoryDatabase, InMemoryUnitOfWork, memory_unit_of_work_factory


CREATED = datetime(2024, 3, 15, tzinfo=timezone.utc)


async def _persist(database: InMemoryDatabase, user_id: str, *frontend_ids: str) -> None:
    uow = InMemoryUnitOfWork(database)
    async with uow.transaction():
        for frontend_id in frontend_ids:
            await uow.invoices.add(
                Invoice(
                    user_id=user_id,
                    frontend_id=frontend_id,
                    created_at=CREATED,
                    payment_due=CREATED,
                    description="",
                    payment_terms=0,
                    client_name="Thomas Wayne",
                    client_email="thomas@dc.com",
                    status=InvoiceStatus.DRAFT,
                )
            )


def test_format_and_parse() -> None:
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(InMemoryDatabase()), prefix="INV", width=5)

    assert allocator.format(1) == "INV-00001"
    assert allocator.format(123456) == "INV-123456"
    assert allocator.parse("INV-00042") == 42
    assert allocator.parse("RT3080") is None
    assert allocator.parse("") is None


def test_first_allocation_for_new_user_starts_at_one() -> None:
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(InMemoryDatabase()))

    assert asyncio.run(allocator.allocate("user-1")) == "INV-00001"
    assert allocator.cached("user-1") == 1


def test_uncached_user_is_seeded_from_storage() -> None:
    database = InMemoryDatabase()
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(database))

    async def scenario() -> str:
        await _persist(database, "user-1", "INV-00003", "INV-00007")
        return await allocator.allocate("user-1")

    assert asyncio.run(scenario()) == "INV-00008"


def test_counters_are_scoped_per_user() -> None:
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(InMemoryDatabase()))

    async def scenario() -> list:
        return [
            await allocator.allocate("user-1"),
            await allocator.allocate("user-2"),
            await allocator.allocate("user-1"),
        ]

    assert asyncio.run(scenario()) == ["INV-00001", "INV-00001", "INV-00002"]
    assert allocator.cached_users == 2


def test_concurrent_allocations_are_unique_and_dense() -> None:
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(InMemoryDatabase()))

    async def scenario() -> list:
        return await asyncio.gather(*(allocator.allocate("user-1") for _ in range(50)))

    issued = asyncio.run(scenario())

    assert len(set(issued)) == 50
    assert sorted(issued) == [f"INV-{n:05d}" for n in range(1, 51)]


def test_initialize_rebuilds_cache_and_skips_foreign_ids(caplog) -> None:
    database = InMemoryDatabase()
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(database))

    async def scenario() -> None:
        await _persist(database, "user-1", "INV-00002", "legacy-7")
        await _persist(database, "user-2", "INV-00011")
        await allocator.initialize()

    with caplog.at_level(logging.WARNING, logger="invoice_app.services.invoice_ids"):
        asyncio.run(scenario())

    assert allocator.cached("user-1") == 2
    assert allocator.cached("user-2") == 11
    assert "legacy-7" in caplog.text


def test_refresh_catches_up_with_storage() -> None:
    database = InMemoryDatabase()
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(database))

    async def scenario() -> str:
        await allocator.initialize()
        await allocator.allocate("user-1")
        # Another process wrote a later id behind this cache's back.
        await _persist(database, "user-1", "INV-00010")
        await allocator.refresh()
        return await allocator.allocate("user-1")

    assert asyncio.run(scenario()) == "INV-00011"


def test_refresh_never_lowers_a_counter() -> None:
    database = InMemoryDatabase()
    allocator = InvoiceIdAllocator(memory_unit_of_work_factory(database))

    async def scenario() -> str:
        await _persist(database, "user-1", "INV-00001")
        for _ in range(3):
            await allocator.allocate("user-1")
        # Allocations 2-4 were never persisted (rolled back or in flight).
        await allocator.refresh()
        return await allocator.allocate("user-1")

    assert asyncio.run(scenario()) == "INV-00005"
