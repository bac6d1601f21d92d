from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from invoice_app.config import Settings, get_settings
from invoice_app.dependencies.services import (
    get_current_user,
    get_invoice_service,
    get_operator,
    get_recurring_generator,
)
from invoice_app.schemas.invoice import (
    ErrorKind,
    InvoiceCreateRequest,
    InvoicePage,
    InvoiceRequest,
    InvoiceResponse,
    PaginationParameters,
    RecurringRunResult,
    ServiceResponse,
)
from invoice_app.services import InvoiceService, RecurringInvoiceGenerator
from invoice_app.services.identity import UserContext

router = APIRouter()

_STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PERSISTENCE: 500,
}


def _respond(response: Response, outcome: ServiceResponse, success_code: int = 200) -> ServiceResponse:
    if outcome.success:
        response.status_code = success_code
    else:
        response.status_code = _STATUS_CODES.get(outcome.error, 400)
    return outcome


@router.post("", response_model=ServiceResponse[str])
async def create_invoice(
    req: InvoiceCreateRequest,
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.create(user, req), success_code=201)


@router.get("", response_model=ServiceResponse[List[InvoiceResponse]])
async def list_invoices(
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.list_for_user(user))


@router.get("/paged", response_model=ServiceResponse[InvoicePage])
async def list_invoices_paged(
    response: Response,
    page_number: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1),
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
    settings: Settings = Depends(get_settings),
):
    pagination = PaginationParameters(
        page_number=page_number,
        page_size=page_size or settings.default_page_size,
    )
    return _respond(response, await service.list_page(user, pagination))


@router.post("/recurring/generate", response_model=ServiceResponse[RecurringRunResult])
async def generate_recurring_invoices(
    response: Response,
    operator: UserContext = Depends(get_operator),
    generator: RecurringInvoiceGenerator = Depends(get_recurring_generator),
):
    """Run today's recurring generation now instead of waiting for the scheduled job."""
    return _respond(response, await generator.run())


@router.get("/{invoice_id}", response_model=ServiceResponse[InvoiceResponse])
async def get_invoice(
    invoice_id: str,
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.get(user, invoice_id))


@router.put("/{invoice_id}", response_model=ServiceResponse[bool])
async def edit_invoice(
    invoice_id: str,
    req: InvoiceRequest,
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.edit(user, invoice_id, req))


@router.delete("/{invoice_id}", response_model=ServiceResponse[bool])
async def delete_invoice(
    invoice_id: str,
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.delete(user, invoice_id))


@router.patch("/{invoice_id}/paid", response_model=ServiceResponse[bool])
async def mark_invoice_paid(
    invoice_id: str,
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.mark_paid(user, invoice_id))


@router.patch("/{invoice_id}/pending", response_model=ServiceResponse[bool])
async def mark_invoice_pending(
    invoice_id: str,
    response: Response,
    user: UserContext = Depends(get_current_user),
    service: InvoiceService = Depends(get_invoice_service),
):
    return _respond(response, await service.mark_pending(user, invoice_id))
