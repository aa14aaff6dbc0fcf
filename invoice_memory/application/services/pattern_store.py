import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from invoice_memory.application.services.confidence import (
    RECALL_CONFIDENCE_FLOOR,
    reinforced_confidence,
)
from invoice_memory.application.services.text_patterns import days_between
from invoice_memory.domain.exceptions import PatternWriteError, StoreUnavailable
from invoice_memory.domain.interfaces import (
    CORRECTION_MEMORY,
    PROCESSED_INVOICES,
    RESOLUTION_MEMORY,
    TABLES,
    VENDOR_MEMORY,
    Store,
)
from invoice_memory.domain.models import (
    CorrectionPattern,
    Invoice,
    ResolutionRecord,
    VendorPattern,
    utc_now,
)

logger = logging.getLogger(__name__)

RESOLUTION_HISTORY_LIMIT = 10
DUPLICATE_WINDOW_DAYS = 7

T = TypeVar("T", bound=BaseModel)


class PatternFamily(str, Enum):
    VENDOR = "vendor"
    CORRECTION = "correction"


_FAMILY_TABLES = {
    PatternFamily.VENDOR: (VENDOR_MEMORY, VendorPattern),
    PatternFamily.CORRECTION: (CORRECTION_MEMORY, CorrectionPattern),
}


class PatternStore:
    """Recall and persistence of learned patterns on top of a ``Store``.

    Reads degrade to empty results when the store fails; writes raise
    ``PatternWriteError``.

    The vendor-pattern upsert reads and then writes without a lock, so two
    concurrent learners for the same (vendor, pattern_type, pattern_key) can
    lose one update. Serialize writes per key in concurrent deployments.
    """

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # recall
    # ------------------------------------------------------------------

    def recall_vendor_patterns(
        self, vendor: str, pattern_type: Optional[str] = None
    ) -> List[VendorPattern]:
        filters = {"vendor": vendor}
        if pattern_type:
            filters["pattern_type"] = pattern_type

        rows = self._safe_get(VENDOR_MEMORY, filters)
        return self._ranked(self._load(VendorPattern, rows))

    def recall_correction_patterns(
        self, vendor: Optional[str] = None
    ) -> List[CorrectionPattern]:
        if vendor is None:
            rows = self._safe_get(CORRECTION_MEMORY)
        else:
            rows = self._safe_get(CORRECTION_MEMORY, {"vendor": vendor})
            rows += self._safe_get(CORRECTION_MEMORY, {"vendor": None})
        return self._ranked(self._load(CorrectionPattern, rows))

    def recall_resolution_history(
        self, vendor: str, issue_type: Optional[str] = None
    ) -> List[ResolutionRecord]:
        filters = {"vendor": vendor}
        if issue_type:
            filters["issue_type"] = issue_type

        records = self._load(ResolutionRecord, self._safe_get(RESOLUTION_MEMORY, filters))
        ordered = sorted(
            enumerate(records),
            key=lambda pair: (_timestamp(pair[1].created_at), pair[0]),
            reverse=True,
        )
        return [record for _, record in ordered[:RESOLUTION_HISTORY_LIMIT]]

    def detect_duplicate(self, invoice: Invoice) -> Optional[Invoice]:
        try:
            rows = self.store.get(PROCESSED_INVOICES, {"vendor": invoice.vendor})
        except StoreUnavailable as e:
            logger.warning(f"⚠️ Duplicate check skipped for {invoice.invoice_id}: {e}")
            return None

        for row in rows:
            if row.get("invoice_id") == invoice.invoice_id:
                continue
            try:
                existing = Invoice.model_validate(row.get("original_data") or {})
            except ValidationError:
                logger.warning(f"Skipping unreadable processed invoice {row.get('invoice_id')}")
                continue

            if existing.fields.invoice_number != invoice.fields.invoice_number:
                continue
            diff = days_between(invoice.fields.invoice_date, existing.fields.invoice_date)
            if diff is not None and abs(diff) <= DUPLICATE_WINDOW_DAYS:
                return existing

        return None

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def upsert_vendor_pattern(self, draft: VendorPattern) -> VendorPattern:
        key = {
            "vendor": draft.vendor,
            "pattern_type": draft.pattern_type,
            "pattern_key": draft.pattern_key,
        }
        now = self.clock()

        try:
            existing = self.store.get(VENDOR_MEMORY, key)
            if existing:
                current = existing[0]
                patch = {
                    "pattern_value": draft.pattern_value.model_dump(),
                    "confidence": draft.confidence,
                    "times_applied": (current.get("times_applied") or 0) + draft.times_applied,
                    "times_successful": (current.get("times_successful") or 0)
                    + draft.times_successful,
                    "times_failed": (current.get("times_failed") or 0) + draft.times_failed,
                    "last_applied_at": now,
                    "updated_at": now,
                }
                row = self.store.upsert(VENDOR_MEMORY, {"id": current["id"]}, patch)
                logger.info(
                    f"🔁 Merged vendor pattern {draft.pattern_type}/{draft.pattern_key} for {draft.vendor}"
                )
            else:
                row = self.store.insert(
                    VENDOR_MEMORY,
                    {**_draft_row(draft), "created_at": now, "updated_at": now},
                )
                logger.info(
                    f"🆕 Stored vendor pattern {draft.pattern_type}/{draft.pattern_key} for {draft.vendor}"
                )
        except StoreUnavailable as e:
            logger.error(f"❌ Could not store vendor pattern {key}: {e}")
            raise PatternWriteError(f"Vendor pattern {key} not stored: {e}") from e

        return VendorPattern.model_validate(row)

    def insert_correction_pattern(self, draft: CorrectionPattern) -> CorrectionPattern:
        now = self.clock()
        try:
            row = self.store.insert(
                CORRECTION_MEMORY,
                {**_draft_row(draft), "created_at": now, "updated_at": now},
            )
        except StoreUnavailable as e:
            logger.error(f"❌ Could not store correction pattern {draft.correction_type}: {e}")
            raise PatternWriteError(f"Correction pattern not stored: {e}") from e
        return CorrectionPattern.model_validate(row)

    def insert_resolution_record(self, draft: ResolutionRecord) -> ResolutionRecord:
        try:
            row = self.store.insert(
                RESOLUTION_MEMORY, {**_draft_row(draft), "created_at": self.clock()}
            )
        except StoreUnavailable as e:
            logger.error(f"❌ Could not store resolution for {draft.invoice_id}: {e}")
            raise PatternWriteError(f"Resolution record not stored: {e}") from e
        return ResolutionRecord.model_validate(row)

    def reinforce(
        self, pattern_id: str, family: Union[PatternFamily, str], successful: bool
    ) -> Optional[Union[VendorPattern, CorrectionPattern]]:
        """Nudge a pattern's confidence after it was confirmed or rejected.

        Success moves confidence a tenth of the way towards 1.0 (capped at
        0.95); failure subtracts 0.15 (floored at 0.1). Returns the updated
        pattern, or None when the id is unknown.
        """
        table, model = _FAMILY_TABLES[PatternFamily(family)]
        now = self.clock()

        try:
            rows = self.store.get(table, {"id": pattern_id})
            if not rows:
                logger.warning(f"⚠️ Cannot reinforce unknown {table} pattern {pattern_id}")
                return None

            current = rows[0]
            times_applied = (current.get("times_applied") or 0) + 1
            times_successful = (current.get("times_successful") or 0) + (1 if successful else 0)
            times_failed = (current.get("times_failed") or 0) + (0 if successful else 1)

            patch = {
                "confidence": reinforced_confidence(current["confidence"], successful),
                "times_applied": times_applied,
                "times_successful": times_successful,
                "times_failed": times_failed,
                "updated_at": now,
            }
            if table == VENDOR_MEMORY:
                patch["last_applied_at"] = now

            row = self.store.upsert(table, {"id": pattern_id}, patch)
        except StoreUnavailable as e:
            logger.error(f"❌ Could not reinforce {table} pattern {pattern_id}: {e}")
            raise PatternWriteError(f"Reinforcement of {pattern_id} not stored: {e}") from e

        return model.model_validate(row)

    def clear_all(self) -> Dict[str, int]:
        removed = {}
        try:
            for table in TABLES:
                removed[table] = self.store.delete(table)
        except StoreUnavailable as e:
            logger.error(f"❌ Memory reset failed: {e}")
            raise PatternWriteError(f"Memory reset failed: {e}") from e

        logger.warning(f"🧹 Cleared all memory: {removed}")
        return removed

    def memory_stats(self) -> Dict[str, Any]:
        vendor_memory = self.store.get(VENDOR_MEMORY)
        correction_memory = self.store.get(CORRECTION_MEMORY)
        resolution_memory = self.store.get(RESOLUTION_MEMORY)

        return {
            "vendorMemoryCount": len(vendor_memory),
            "correctionMemoryCount": len(correction_memory),
            "resolutionMemoryCount": len(resolution_memory),
            "vendorMemory": vendor_memory,
            "correctionMemory": correction_memory,
            "resolutionMemory": resolution_memory,
        }

    # ------------------------------------------------------------------

    def _safe_get(self, table: str, filters: Optional[Dict[str, Any]] = None):
        try:
            return self.store.get(table, filters)
        except StoreUnavailable as e:
            logger.warning(f"⚠️ Recall from {table} failed, continuing without it: {e}")
            return []

    @staticmethod
    def _load(model: Type[T], rows: List[Dict[str, Any]]) -> List[T]:
        loaded = []
        for row in rows:
            try:
                loaded.append(model.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {model.__name__} row {row.get('id')}: {e}")
        return loaded

    @staticmethod
    def _ranked(patterns: List[T]) -> List[T]:
        eligible = [p for p in patterns if p.confidence >= RECALL_CONFIDENCE_FLOOR]
        return sorted(eligible, key=lambda p: p.confidence, reverse=True)


def _draft_row(draft: BaseModel) -> Dict[str, Any]:
    return draft.model_dump(exclude={"id", "created_at", "updated_at", "last_applied_at"})


def _timestamp(value: Optional[datetime]) -> float:
    return value.timestamp() if value else 0.0
