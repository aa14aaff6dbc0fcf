import logging
from typing import Iterable, List, Optional

from invoice_memory.application.services.pattern_store import PatternStore
from invoice_memory.application.services.text_patterns import extract_skonto_terms
from invoice_memory.domain.exceptions import InvalidFieldPath
from invoice_memory.domain.field_paths import FieldPath
from invoice_memory.domain.interfaces import AuditSink
from invoice_memory.domain.models import (
    CURRENCY_FROM_TEXT_KEY,
    DISCOUNT_TERMS,
    FIELD_MAPPING,
    PO_MATCHING,
    SERVICE_DATE_KEY,
    SKONTO_KEY,
    SKU_KEY_PREFIX,
    SKU_MAPPING,
    TAX_BEHAVIOR,
    VAT_INCLUDED_KEY,
    CorrectionPattern,
    CurrencyFromText,
    DiscountTerms,
    FieldCorrection,
    HumanCorrection,
    Invoice,
    MatchByVendorDateItems,
    PoMatchingCondition,
    ProcessingResult,
    ResolutionRecord,
    ServiceDateMapping,
    SkuMapping,
    VatIncluded,
    VendorPattern,
)

logger = logging.getLogger(__name__)

SERVICE_DATE_LABEL = "Leistungsdatum"

SERVICE_DATE_CONFIDENCE = 0.7
VAT_INCLUDED_CONFIDENCE = 0.7
CURRENCY_CONFIDENCE = 0.6
PO_MATCHING_CONFIDENCE = 0.65
DISCOUNT_CONFIDENCE = 0.75
SKU_MAPPING_CONFIDENCE = 0.7

VAT_TOTAL_FIELDS = ("taxTotal", "grossTotal")


def categorize_issue(fields: Iterable[str]) -> str:
    """Pick one issue category for a correction batch; first match wins."""
    fields = list(fields)

    if any("tax" in f or "Total" in f for f in fields):
        return "tax_calculation"
    if SERVICE_DATE_KEY in fields:
        return "missing_field"
    if "currency" in fields:
        return "missing_field"
    if "poNumber" in fields:
        return "po_matching"
    if any("lineItems" in f for f in fields):
        return "line_item_mapping"
    return "general_correction"


class LearningEngine:
    """Turns a human correction batch into stored patterns.

    Every entry of the batch is tested against all rules, so one entry can
    teach more than one pattern. A resolution record is appended for each
    batch, even when nothing was learned.
    """

    def __init__(self, pattern_store: PatternStore, audit_sink: AuditSink):
        self.pattern_store = pattern_store
        self.audit_sink = audit_sink

    def learn_from_correction(
        self,
        invoice: Invoice,
        correction: HumanCorrection,
        prior_result: ProcessingResult,
    ) -> List[str]:
        updates: List[str] = []
        vendor = correction.vendor

        self.audit_sink.record(
            invoice.invoice_id,
            "learn",
            "processing_correction",
            {
                "vendor": vendor,
                "correctionCount": len(correction.corrections),
                "decision": correction.final_decision,
            },
        )

        for corr in correction.corrections:
            reason = (corr.reason or "").lower()

            if corr.field == SERVICE_DATE_KEY and corr.from_value is None:
                self._learn_service_date_mapping(invoice, corr)
                updates.append(f'Learned: {vendor} uses "{SERVICE_DATE_LABEL}" for serviceDate')

            if corr.field in VAT_TOTAL_FIELDS and "vat included" in reason:
                self._learn_vat_included(invoice)
                updates.append(f"Learned: {vendor} includes VAT in stated totals")

            if corr.field == "currency" and corr.from_value is None:
                self._learn_currency_recovery(invoice, corr)
                updates.append(f"Learned: {vendor} currency can be recovered from rawText")

            if corr.field == "poNumber" and corr.from_value is None:
                self._learn_po_matching(invoice)
                updates.append(f"Learned: PO matching pattern for {vendor}")

            if corr.field == "discountTerms" or "skonto" in reason:
                self._learn_discount_terms(invoice, corr)
                updates.append(f"Learned: {vendor} discount terms pattern")

            if self._learn_sku_mapping(invoice, corr):
                updates.append(f"Learned: SKU mapping for {vendor}")

        self.pattern_store.insert_resolution_record(
            ResolutionRecord(
                invoice_id=invoice.invoice_id,
                vendor=vendor,
                issue_type=categorize_issue(c.field for c in correction.corrections),
                issue_description=", ".join(c.field for c in correction.corrections),
                human_action=correction.final_decision,
                correction_applied=[
                    c.model_dump(by_alias=True, mode="json") for c in correction.corrections
                ],
                context={
                    "priorConfidence": prior_result.confidence_score,
                    "priorProposedCorrections": list(prior_result.proposed_corrections),
                },
            )
        )

        self.audit_sink.record(
            invoice.invoice_id,
            "learn",
            "stored_learnings",
            {"updateCount": len(updates), "updates": updates},
        )
        logger.info(f"🧠 Learned {len(updates)} pattern(s) from {invoice.invoice_id}")
        return updates

    def _store_vendor_pattern(
        self, invoice: Invoice, pattern_type: str, pattern_key: str, value, confidence: float
    ) -> VendorPattern:
        return self.pattern_store.upsert_vendor_pattern(
            VendorPattern(
                vendor=invoice.vendor,
                pattern_type=pattern_type,
                pattern_key=pattern_key,
                pattern_value=value,
                confidence=confidence,
                times_applied=0,
                times_successful=1,
                times_failed=0,
            )
        )

    def _learn_service_date_mapping(self, invoice: Invoice, corr: FieldCorrection) -> None:
        self._store_vendor_pattern(
            invoice,
            FIELD_MAPPING,
            SERVICE_DATE_KEY,
            ServiceDateMapping(source=SERVICE_DATE_LABEL, target=SERVICE_DATE_KEY, example=corr.to),
            SERVICE_DATE_CONFIDENCE,
        )

    def _learn_vat_included(self, invoice: Invoice) -> None:
        self._store_vendor_pattern(
            invoice, TAX_BEHAVIOR, VAT_INCLUDED_KEY, VatIncluded(), VAT_INCLUDED_CONFIDENCE
        )

    def _learn_currency_recovery(self, invoice: Invoice, corr: FieldCorrection) -> None:
        currency = str(corr.to) if corr.to is not None else None
        self._store_vendor_pattern(
            invoice,
            FIELD_MAPPING,
            CURRENCY_FROM_TEXT_KEY,
            CurrencyFromText(currency=currency),
            CURRENCY_CONFIDENCE,
        )

    def _learn_po_matching(self, invoice: Invoice) -> None:
        # global rule, recalled for every vendor
        self.pattern_store.insert_correction_pattern(
            CorrectionPattern(
                vendor=None,
                correction_type=PO_MATCHING,
                condition=PoMatchingCondition(missing_po=True, has_line_items=True),
                correction_action=MatchByVendorDateItems(max_days_diff=30),
                confidence=PO_MATCHING_CONFIDENCE,
                times_applied=0,
                times_successful=1,
                source_invoice_ids=[invoice.invoice_id],
            )
        )

    def _learn_discount_terms(self, invoice: Invoice, corr: FieldCorrection) -> None:
        terms = extract_skonto_terms(invoice.raw_text)
        if terms is None:
            terms = "" if corr.to is None else str(corr.to)

        self._store_vendor_pattern(
            invoice, DISCOUNT_TERMS, SKONTO_KEY, DiscountTerms(terms=terms), DISCOUNT_CONFIDENCE
        )

    def _learn_sku_mapping(self, invoice: Invoice, corr: FieldCorrection) -> bool:
        path = _sku_path(corr.field)
        if path is None or corr.to is None:
            return False

        items = invoice.fields.line_items
        item = items[path.index] if path.index < len(items) else None
        if item is None or not item.description:
            logger.debug(f"No described line item behind {corr.field}, SKU mapping skipped")
            return False

        sku = str(corr.to)
        self._store_vendor_pattern(
            invoice,
            SKU_MAPPING,
            f"{SKU_KEY_PREFIX}{sku}",
            SkuMapping(description=item.description, sku=sku),
            SKU_MAPPING_CONFIDENCE,
        )
        return True


def _sku_path(field: str) -> Optional[FieldPath]:
    try:
        path = FieldPath.parse(field)
    except InvalidFieldPath:
        return None

    if path.line_item_index() is None or path.item_attribute != "sku":
        return None
    return path
