import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from invoice_memory.application.services.decision_engine import DecisionEngine
from invoice_memory.application.services.learning_engine import LearningEngine
from invoice_memory.application.services.pattern_store import PatternStore
from invoice_memory.domain.exceptions import PatternWriteError, StoreUnavailable
from invoice_memory.domain.interfaces import AUDIT_TRAIL, PROCESSED_INVOICES, Store
from invoice_memory.domain.models import (
    DeliveryNote,
    HumanCorrection,
    Invoice,
    ProcessingResult,
    PurchaseOrder,
    utc_now,
)
from invoice_memory.infrastructure.audit import StoreAuditSink

logger = logging.getLogger(__name__)


class InvoiceProcessor:
    """Runs the process -> review -> learn loop over one store.

    Owns the ``processed_invoices`` record; everything else is delegated to
    the decision and learning engines.
    """

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utc_now
        self.pattern_store = PatternStore(store, clock=self.clock)
        self.audit_sink = StoreAuditSink(store, clock=self.clock)
        self.decision_engine = DecisionEngine(self.pattern_store, self.audit_sink)
        self.learning_engine = LearningEngine(self.pattern_store, self.audit_sink)

    def process_invoice(
        self,
        invoice: Invoice,
        purchase_orders: Optional[Sequence[PurchaseOrder]] = None,
        delivery_notes: Optional[Sequence[DeliveryNote]] = None,
    ) -> ProcessingResult:
        result = self.decision_engine.process_invoice(
            invoice, purchase_orders or [], delivery_notes or []
        )

        try:
            self.store.upsert(
                PROCESSED_INVOICES,
                {"invoice_id": invoice.invoice_id},
                {
                    "vendor": invoice.vendor,
                    "original_data": invoice.model_dump(by_alias=True, mode="json"),
                    "normalized_data": result.normalized_invoice.model_dump(
                        by_alias=True, mode="json"
                    ),
                    "proposed_corrections": list(result.proposed_corrections),
                    "requires_human_review": result.requires_human_review,
                    "reasoning": result.reasoning,
                    "confidence_score": result.confidence_score,
                    "processed_at": self.clock(),
                },
            )
        except StoreUnavailable as e:
            logger.error(f"❌ Could not record processed invoice {invoice.invoice_id}: {e}")
            raise PatternWriteError(
                f"Processed invoice {invoice.invoice_id} not stored: {e}"
            ) from e

        return result

    def apply_human_correction(
        self,
        invoice: Invoice,
        correction: HumanCorrection,
        prior_result: ProcessingResult,
    ) -> List[str]:
        updates = self.learning_engine.learn_from_correction(
            invoice, correction, prior_result
        )

        try:
            existing = self.store.get(
                PROCESSED_INVOICES, {"invoice_id": invoice.invoice_id}
            )
            if existing:
                self.store.upsert(
                    PROCESSED_INVOICES,
                    {"invoice_id": invoice.invoice_id},
                    {"final_decision": correction.final_decision},
                )
            else:
                logger.warning(
                    f"⚠️ {invoice.invoice_id} was never processed, final decision not stamped"
                )
        except StoreUnavailable as e:
            logger.error(f"❌ Could not stamp final decision on {invoice.invoice_id}: {e}")
            raise PatternWriteError(
                f"Final decision for {invoice.invoice_id} not stored: {e}"
            ) from e

        return updates

    def get_processing_history(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        rows = self.store.get(PROCESSED_INVOICES, {"invoice_id": invoice_id})
        return rows[0] if rows else None

    def get_audit_trail(self, invoice_id: str) -> List[Dict[str, Any]]:
        rows = self.store.get(AUDIT_TRAIL, {"invoice_id": invoice_id})
        return sorted(rows, key=lambda row: _sort_key(row.get("timestamp")))

    def get_memory_stats(self) -> Dict[str, Any]:
        return self.pattern_store.memory_stats()

    def clear_all_memory(self) -> Dict[str, int]:
        return self.pattern_store.clear_all()


def _sort_key(value: Any) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    return 0.0
