import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from invoice_memory.application.services.confidence import (
    AUTO_ACCEPT_THRESHOLD,
    PO_MATCH_CONFIDENCE,
    ConfidenceAccumulator,
)
from invoice_memory.application.services.pattern_store import PatternStore
from invoice_memory.application.services.text_patterns import (
    days_between,
    find_currency,
    find_labelled_date,
    has_skonto_terms,
    mentions_vat_included,
    round_cents,
)
from invoice_memory.domain.field_paths import FieldPath
from invoice_memory.domain.interfaces import AuditSink
from invoice_memory.domain.models import (
    CURRENCY_FROM_TEXT_KEY,
    DISCOUNT_TERMS,
    FIELD_MAPPING,
    SERVICE_DATE_KEY,
    SKU_MAPPING,
    TAX_BEHAVIOR,
    VAT_INCLUDED_KEY,
    CorrectionPattern,
    CurrencyFromText,
    DeliveryNote,
    DiscountTerms,
    FieldEquals,
    Invoice,
    InvoiceFields,
    ProcessingResult,
    PurchaseOrder,
    ServiceDateMapping,
    SetField,
    SkuMapping,
    VatIncluded,
    VendorPattern,
)

logger = logging.getLogger(__name__)

PO_MATCH_WINDOW_DAYS = 30

# handler(invoice, pattern, result) -> reasoning line, or None when not applied
PatternHandler = Callable[[Invoice, VendorPattern, ProcessingResult], Optional[str]]


class DecisionEngine:
    """Normalizes one invoice with recalled patterns and decides on review.

    Steps run in a fixed order and each may append to the reasoning trace
    and add one confidence sample:

    1. duplicate short-circuit
    2. vendor patterns, dispatched on (pattern_type, pattern_key)
    3. purchase-order auto-match
    4. correction rules (vendor-specific and global)
    5-7. confidence aggregation, validity check, decision policy
    """

    def __init__(self, pattern_store: PatternStore, audit_sink: AuditSink):
        self.pattern_store = pattern_store
        self.audit_sink = audit_sink
        # (pattern_type, None) matches any pattern_key of that type
        self._handlers: Dict[tuple, PatternHandler] = {
            (FIELD_MAPPING, SERVICE_DATE_KEY): self._apply_service_date_mapping,
            (TAX_BEHAVIOR, VAT_INCLUDED_KEY): self._apply_vat_included,
            (FIELD_MAPPING, CURRENCY_FROM_TEXT_KEY): self._apply_currency_recovery,
            (DISCOUNT_TERMS, None): self._apply_discount_terms,
            (SKU_MAPPING, None): self._apply_sku_mapping,
        }

    def process_invoice(
        self,
        invoice: Invoice,
        purchase_orders: Optional[Sequence[PurchaseOrder]] = None,
        delivery_notes: Optional[Sequence[DeliveryNote]] = None,
    ) -> ProcessingResult:
        purchase_orders = list(purchase_orders or [])
        delivery_notes = list(delivery_notes or [])

        result = ProcessingResult(
            normalized_invoice=invoice.fields.model_copy(deep=True),
            confidence_score=invoice.confidence,
        )
        reasoning: List[str] = []
        confidence = ConfidenceAccumulator(invoice.confidence)

        logger.info(f"🔍 Processing {invoice.invoice_id} from {invoice.vendor}")
        self._audit(
            result,
            invoice,
            "recall",
            "start_processing",
            {
                "vendor": invoice.vendor,
                "invoiceNumber": invoice.fields.invoice_number,
                "purchaseOrders": len(purchase_orders),
                "deliveryNotes": len(delivery_notes),
            },
        )

        duplicate = self.pattern_store.detect_duplicate(invoice)
        if duplicate:
            result.requires_human_review = True
            result.confidence_score = 0.0
            result.reasoning = (
                f"DUPLICATE DETECTED: Invoice {invoice.fields.invoice_number} from "
                f"{invoice.vendor} appears to be a duplicate. Similar invoice already processed."
            )
            self._audit(
                result,
                invoice,
                "decide",
                "duplicate_detected",
                {"original": duplicate.invoice_id},
            )
            logger.warning(
                f"⚠️ {invoice.invoice_id} duplicates already processed {duplicate.invoice_id}"
            )
            return result

        self._apply_vendor_patterns(invoice, result, reasoning, confidence)

        if not result.normalized_invoice.po_number:
            matched_po = self.match_purchase_order(
                invoice.vendor, result.normalized_invoice, purchase_orders
            )
            if matched_po:
                result.normalized_invoice.po_number = matched_po.po_number
                result.proposed_corrections.append(f"Matched to PO: {matched_po.po_number}")
                reasoning.append(
                    f"Auto-matched to purchase order {matched_po.po_number} based on "
                    f"vendor, date proximity, and line items"
                )
                confidence.add(PO_MATCH_CONFIDENCE)

        self._apply_correction_patterns(invoice, result, reasoning, confidence)

        if result.proposed_corrections:
            self._audit(
                result,
                invoice,
                "apply",
                "corrections_applied",
                {
                    "count": len(result.proposed_corrections),
                    "corrections": list(result.proposed_corrections),
                },
            )

        result.confidence_score = confidence.score()
        issues = self.validation_issues(result.normalized_invoice)
        reasoning.append(self._decide(result, issues))
        result.reasoning = " | ".join(reasoning)

        self._audit(
            result,
            invoice,
            "decide",
            "final_decision",
            {
                "requiresReview": result.requires_human_review,
                "confidence": result.confidence_score,
                "corrections": len(result.proposed_corrections),
                "issues": issues,
            },
        )
        logger.info(
            f"📋 {invoice.invoice_id}: review={result.requires_human_review} "
            f"confidence={result.confidence_score:.2f}"
        )
        return result

    # ------------------------------------------------------------------
    # step 2: vendor patterns
    # ------------------------------------------------------------------

    def _apply_vendor_patterns(
        self,
        invoice: Invoice,
        result: ProcessingResult,
        reasoning: List[str],
        confidence: ConfidenceAccumulator,
    ) -> None:
        patterns = self.pattern_store.recall_vendor_patterns(invoice.vendor)
        self._audit(
            result,
            invoice,
            "recall",
            "vendor_memory",
            {"count": len(patterns), "patterns": [p.pattern_type for p in patterns]},
        )

        for pattern in patterns:
            handler = self._handlers.get(
                (pattern.pattern_type, pattern.pattern_key)
            ) or self._handlers.get((pattern.pattern_type, None))
            if handler is None:
                logger.debug(
                    f"No handler for {pattern.pattern_type}/{pattern.pattern_key}, skipping"
                )
                continue

            message = handler(invoice, pattern, result)
            if message:
                reasoning.append(f"{message} (confidence: {pattern.confidence:.2f})")
                confidence.add(pattern.confidence)

    def _apply_service_date_mapping(
        self, invoice: Invoice, pattern: VendorPattern, result: ProcessingResult
    ) -> Optional[str]:
        payload = pattern.pattern_value
        if not isinstance(payload, ServiceDateMapping):
            return _payload_mismatch(pattern)
        if result.normalized_invoice.service_date:
            return None

        service_date = find_labelled_date(invoice.raw_text, payload.source)
        if not service_date:
            return None

        result.normalized_invoice.service_date = service_date
        result.proposed_corrections.append(
            f"Set serviceDate from {payload.source}: {service_date}"
        )
        return f'Applied learned pattern: {pattern.pattern_key} from "{payload.source}"'

    def _apply_vat_included(
        self, invoice: Invoice, pattern: VendorPattern, result: ProcessingResult
    ) -> Optional[str]:
        if not isinstance(pattern.pattern_value, VatIncluded):
            return _payload_mismatch(pattern)
        if not mentions_vat_included(invoice.raw_text):
            return None

        fields = result.normalized_invoice
        net_total = fields.gross_total / (1 + fields.tax_rate)
        tax_total = fields.gross_total - net_total

        fields.net_total = round_cents(net_total)
        fields.tax_total = round_cents(tax_total)
        result.proposed_corrections.append(
            f"Recalculated VAT (included in total): "
            f"net={fields.net_total:.2f}, tax={fields.tax_total:.2f}"
        )
        return "Applied learned pattern: VAT already included in totals"

    def _apply_currency_recovery(
        self, invoice: Invoice, pattern: VendorPattern, result: ProcessingResult
    ) -> Optional[str]:
        if not isinstance(pattern.pattern_value, CurrencyFromText):
            return _payload_mismatch(pattern)
        if result.normalized_invoice.currency:
            return None

        currency = find_currency(invoice.raw_text)
        if not currency:
            return None

        result.normalized_invoice.currency = currency
        result.proposed_corrections.append(f"Recovered currency from text: {currency}")
        return f"Recovered currency from text: {currency}"

    def _apply_discount_terms(
        self, invoice: Invoice, pattern: VendorPattern, result: ProcessingResult
    ) -> Optional[str]:
        payload = pattern.pattern_value
        if not isinstance(payload, DiscountTerms):
            return _payload_mismatch(pattern)
        if not has_skonto_terms(invoice.raw_text):
            return None

        # the regex only gates; the vendor's stored wording is what gets written
        result.normalized_invoice.discount_terms = payload.terms
        result.proposed_corrections.append(f"Added discount terms: {payload.terms}")
        return f"Detected known discount pattern: {payload.terms}"

    def _apply_sku_mapping(
        self, invoice: Invoice, pattern: VendorPattern, result: ProcessingResult
    ) -> Optional[str]:
        payload = pattern.pattern_value
        if not isinstance(payload, SkuMapping):
            return _payload_mismatch(pattern)
        if not payload.description:
            return None

        known = payload.description.lower()
        applied = False
        for item in result.normalized_invoice.line_items:
            if item.sku or not item.description:
                continue

            described = item.description.lower()
            if known in described or described in known:
                item.sku = payload.sku
                result.proposed_corrections.append(
                    f'Mapped "{item.description}" to SKU {payload.sku}'
                )
                applied = True

        return f"Mapped description to SKU: {payload.sku}" if applied else None

    # ------------------------------------------------------------------
    # step 3: purchase orders
    # ------------------------------------------------------------------

    def match_purchase_order(
        self,
        vendor: str,
        fields: InvoiceFields,
        purchase_orders: Sequence[PurchaseOrder],
    ) -> Optional[PurchaseOrder]:
        """First vendor PO dated 0-30 days before the invoice sharing a SKU.

        Falls back to the vendor's only PO when exactly one exists.
        """
        vendor_pos = [po for po in purchase_orders if po.vendor == vendor]
        if not vendor_pos:
            return None

        invoice_skus = {item.sku for item in fields.line_items if item.sku}
        for po in vendor_pos:
            diff = days_between(fields.invoice_date, po.date)
            if diff is None or not 0 <= diff <= PO_MATCH_WINDOW_DAYS:
                continue
            if any(line.sku in invoice_skus for line in po.line_items):
                return po

        if len(vendor_pos) == 1:
            return vendor_pos[0]

        return None

    # ------------------------------------------------------------------
    # step 4: correction rules
    # ------------------------------------------------------------------

    def _apply_correction_patterns(
        self,
        invoice: Invoice,
        result: ProcessingResult,
        reasoning: List[str],
        confidence: ConfidenceAccumulator,
    ) -> None:
        rules = self.pattern_store.recall_correction_patterns(invoice.vendor)
        self._audit(result, invoice, "recall", "correction_memory", {"count": len(rules)})

        for rule in rules:
            if not self._apply_correction_rule(rule, result):
                continue

            reasoning.append(
                f"Applied correction pattern: {rule.correction_type} "
                f"(confidence: {rule.confidence:.2f})"
            )
            confidence.add(rule.confidence)

    def _apply_correction_rule(
        self, rule: CorrectionPattern, result: ProcessingResult
    ) -> bool:
        condition = rule.condition
        action = rule.correction_action
        if not isinstance(condition, FieldEquals) or not isinstance(action, SetField):
            return False

        fields = result.normalized_invoice
        try:
            if FieldPath.parse(condition.field).get(fields) != condition.value:
                return False
            FieldPath.parse(action.set_field).set(fields, action.value)
        except ValueError as e:
            logger.warning(f"⚠️ Correction rule {rule.id} not applicable: {e}")
            return False

        result.proposed_corrections.append(f"Set {action.set_field} to {action.value}")
        return True

    # ------------------------------------------------------------------
    # steps 6-7
    # ------------------------------------------------------------------

    @staticmethod
    def validation_issues(fields: InvoiceFields) -> List[str]:
        issues = []
        if not fields.currency:
            issues.append("missing currency")
        if not fields.invoice_number:
            issues.append("missing invoiceNumber")
        if not fields.invoice_date:
            issues.append("missing invoiceDate")
        if not fields.line_items:
            issues.append("no line items")
        return issues

    @staticmethod
    def _decide(result: ProcessingResult, issues: List[str]) -> str:
        score = result.confidence_score
        result.requires_human_review = True

        if score >= AUTO_ACCEPT_THRESHOLD and not issues and result.proposed_corrections:
            result.requires_human_review = False
            return (
                f"Confidence {score:.2f} exceeds threshold {AUTO_ACCEPT_THRESHOLD}. "
                f"Auto-accepted with learned corrections."
            )
        if issues:
            return "Flagged for review: Missing critical fields or validation issues detected."
        if not result.proposed_corrections:
            return "No learned patterns applied. Requires human review."
        return (
            f"Confidence {score:.2f} below threshold {AUTO_ACCEPT_THRESHOLD}. "
            f"Requires human review."
        )

    def _audit(
        self,
        result: ProcessingResult,
        invoice: Invoice,
        step: str,
        operation: str,
        details: Dict[str, Any],
    ) -> None:
        entry = self.audit_sink.record(invoice.invoice_id, step, operation, details)
        result.audit_trail.append(entry)


def _payload_mismatch(pattern: VendorPattern) -> None:
    logger.warning(
        f"Pattern {pattern.id} ({pattern.pattern_type}/{pattern.pattern_key}) "
        f"carries a {pattern.pattern_value.kind} payload, skipping"
    )
    return None
