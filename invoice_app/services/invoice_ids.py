"""User-scoped human-readable invoice identifiers.

``InvoiceIdAllocator`` keeps the last issued counter per user in memory. The
cache is seeded from persisted invoices at startup and refreshed
periodically; persisted invoices stay the source of truth, and the
``(user_id, frontend_id)`` uniqueness constraint in storage is the final
guard against duplicates.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from typing import DefaultDict, Dict, Iterable, Optional

from invoice_app.services.unit_of_work import UnitOfWorkFactory

logger = logging.getLogger(__name__)


class InvoiceIdAllocator:
    def __init__(
        self,
        unit_of_work: UnitOfWorkFactory,
        *,
        prefix: str = "INV",
        width: int = 5,
    ) -> None:
        self._unit_of_work = unit_of_work
        self._prefix = prefix
        self._width = width
        self._pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        self._counters: Dict[str, int] = {}
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def format(self, counter: int) -> str:
        return f"{self._prefix}-{counter:0{self._width}d}"

    def parse(self, frontend_id: str) -> Optional[int]:
        match = self._pattern.match(frontend_id or "")
        return int(match.group(1)) if match else None

    def cached(self, user_id: str) -> Optional[int]:
        return self._counters.get(user_id)

    @property
    def cached_users(self) -> int:
        return len(self._counters)

    async def _persisted_maxima(self) -> Dict[str, int]:
        uow = self._unit_of_work()
        pairs = await uow.invoices.frontend_ids()
        return self._maxima(pairs)

    def _maxima(self, pairs: Iterable[tuple[str, str]]) -> Dict[str, int]:
        maxima: Dict[str, int] = {}
        for user_id, frontend_id in pairs:
            counter = self.parse(frontend_id)
            if counter is None:
                logger.warning("Ignoring unparseable frontend id %s for user %s", frontend_id, user_id)
                continue
            maxima[user_id] = max(maxima.get(user_id, 0), counter)
        return maxima

    async def initialize(self) -> None:
        """Rebuild the cache from persisted invoices."""

        maxima = await self._persisted_maxima()
        self._counters = dict(maxima)
        logger.info("Invoice id cache initialized for %s users", len(maxima))

    async def refresh(self) -> None:
        """Reconcile the cache with persisted state.

        A user's counter never moves backwards: allocations that are still in
        flight (or were rolled back) stay burned.
        """

        maxima = await self._persisted_maxima()
        for user_id, persisted in maxima.items():
            async with self._locks[user_id]:
                current = self._counters.get(user_id, 0)
                if persisted > current:
                    logger.info(
                        "Invoice id cache for user %s behind storage (%s < %s)",
                        user_id,
                        current,
                        persisted,
                    )
                self._counters[user_id] = max(current, persisted)
        logger.debug("Invoice id cache refreshed for %s users", len(maxima))

    async def allocate(self, user_id: str) -> str:
        async with self._locks[user_id]:
            counter = self._counters.get(user_id)
            if counter is None:
                counter = await self._seed(user_id)
            counter += 1
            self._counters[user_id] = counter
        frontend_id = self.format(counter)
        logger.debug("Allocated invoice id %s for user %s", frontend_id, user_id)
        return frontend_id

    async def _seed(self, user_id: str) -> int:
        uow = self._unit_of_work()
        pairs = await uow.invoices.frontend_ids()
        seeded = self._maxima(pair for pair in pairs if pair[0] == user_id).get(user_id, 0)
        logger.info("Seeded invoice id counter for user %s at %s", user_id, seeded)
        return seeded
