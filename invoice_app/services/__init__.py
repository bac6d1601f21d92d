"""Service package public API definitions.

Service implementations are imported lazily on first attribute access so that
importing ``invoice_app.services.exceptions`` (or any other leaf module) does
not pull in the whole service graph.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

__all__ = [
    "InvoiceIdAllocator",
    "InvoiceService",
    "RecurringInvoiceGenerator",
]

_SERVICE_MODULES = {
    "InvoiceIdAllocator": "invoice_ids",
    "InvoiceService": "invoice",
    "RecurringInvoiceGenerator": "recurring",
}


def __getattr__(name: str) -> Any:
    if name not in _SERVICE_MODULES:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module = import_module(f".{_SERVICE_MODULES[name]}", __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .invoice import InvoiceService as InvoiceService
    from .invoice_ids import InvoiceIdAllocator as InvoiceIdAllocator
    from .recurring import RecurringInvoiceGenerator as RecurringInvoiceGenerator
