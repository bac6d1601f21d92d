# invoice_app/health.py
from fastapi import APIRouter, Depends

from invoice_app.dependencies.services import get_id_allocator
from invoice_app.services.invoice_ids import InvoiceIdAllocator

router = APIRouter()

@router.get("/health")
def health(allocator: InvoiceIdAllocator = Depends(get_id_allocator)):
    return {"ok": True, "id_cache_users": allocator.cached_users}
