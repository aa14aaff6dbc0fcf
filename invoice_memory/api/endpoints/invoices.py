import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field

from invoice_memory.api.dependencies import get_processor
from invoice_memory.application.use_cases.process_invoice import InvoiceProcessor
from invoice_memory.domain.exceptions import StoreUnavailable
from invoice_memory.domain.models import (
    CamelModel,
    DeliveryNote,
    HumanCorrection,
    Invoice,
    ProcessingResult,
    PurchaseOrder,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class ProcessRequest(CamelModel):
    invoice: Invoice
    purchase_orders: List[PurchaseOrder] = Field(default_factory=list)
    delivery_notes: List[DeliveryNote] = Field(default_factory=list)


class CorrectionRequest(CamelModel):
    invoice: Invoice
    correction: HumanCorrection
    prior_result: ProcessingResult


def _unavailable(e: StoreUnavailable) -> HTTPException:
    logger.error(f"❌ Store unavailable: {e}")
    return HTTPException(status_code=503, detail=f"Memory store unavailable: {e}")


@router.post("/process", response_model=ProcessingResult, response_model_by_alias=True)
def process_invoice(
    request: ProcessRequest,
    processor: InvoiceProcessor = Depends(get_processor),
):
    try:
        return processor.process_invoice(
            request.invoice, request.purchase_orders, request.delivery_notes
        )
    except StoreUnavailable as e:
        raise _unavailable(e)


@router.post("/corrections")
def apply_correction(
    request: CorrectionRequest,
    processor: InvoiceProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    try:
        updates = processor.apply_human_correction(
            request.invoice, request.correction, request.prior_result
        )
    except StoreUnavailable as e:
        raise _unavailable(e)
    return {"memoryUpdates": updates}


@router.get("/memory/stats")
def memory_stats(processor: InvoiceProcessor = Depends(get_processor)):
    try:
        return processor.get_memory_stats()
    except StoreUnavailable as e:
        raise _unavailable(e)


@router.delete("/memory")
def clear_memory(processor: InvoiceProcessor = Depends(get_processor)):
    try:
        removed = processor.clear_all_memory()
    except StoreUnavailable as e:
        raise _unavailable(e)
    return {"cleared": removed}


@router.get("/{invoice_id}")
def get_processed_invoice(
    invoice_id: str, processor: InvoiceProcessor = Depends(get_processor)
):
    try:
        record = processor.get_processing_history(invoice_id)
    except StoreUnavailable as e:
        raise _unavailable(e)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Invoice {invoice_id} not processed")
    return record


@router.get("/{invoice_id}/audit")
def get_audit_trail(
    invoice_id: str, processor: InvoiceProcessor = Depends(get_processor)
):
    try:
        return processor.get_audit_trail(invoice_id)
    except StoreUnavailable as e:
        raise _unavailable(e)
