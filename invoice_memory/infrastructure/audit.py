import logging
from typing import Any, Callable, Dict, Optional
from datetime import datetime

from invoice_memory.domain.exceptions import StoreUnavailable
from invoice_memory.domain.interfaces import AUDIT_TRAIL, AuditSink, Store
from invoice_memory.domain.models import AuditEntry, utc_now

logger = logging.getLogger(__name__)


class StoreAuditSink(AuditSink):
    """Appends audit entries to the ``audit_trail`` collection.

    Fire-and-forget: a store failure is logged and the entry is still
    returned to the caller.
    """

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utc_now

    def record(
        self, invoice_id: str, step: str, operation: str, details: Dict[str, Any]
    ) -> AuditEntry:
        entry = AuditEntry(
            step=step, timestamp=self.clock(), operation=operation, details=details
        )
        try:
            self.store.insert(
                AUDIT_TRAIL,
                {
                    "invoice_id": invoice_id,
                    "step": entry.step,
                    "operation": entry.operation,
                    "details": entry.details,
                    "timestamp": entry.timestamp,
                },
            )
        except StoreUnavailable as e:
            logger.warning(f"⚠️ Audit entry {step}/{operation} for {invoice_id} not stored: {e}")
        return entry
