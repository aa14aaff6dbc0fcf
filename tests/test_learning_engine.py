"""LearningEngine rule table, resolution records and issue categories."""

import pytest

from invoice_memory.application.services.learning_engine import LearningEngine, categorize_issue
from invoice_memory.application.services.pattern_store import PatternStore
from invoice_memory.domain.exceptions import PatternWriteError
from invoice_memory.domain.interfaces import AUDIT_TRAIL, CORRECTION_MEMORY, RESOLUTION_MEMORY, VENDOR_MEMORY
from invoice_memory.domain.models import (
    CurrencyFromText,
    DiscountTerms,
    FieldCorrection,
    HumanCorrection,
    LineItem,
    MatchByVendorDateItems,
    PoMatchingCondition,
    ProcessingResult,
    ServiceDateMapping,
    SkuMapping,
    VatIncluded,
)
from invoice_memory.infrastructure.audit import StoreAuditSink

VENDOR = "Supplier GmbH"


def correction_batch(*entries, decision="approved", invoice_id="INV-A-001"):
    return HumanCorrection(
        invoice_id=invoice_id,
        vendor=VENDOR,
        corrections=[FieldCorrection(**entry) for entry in entries],
        final_decision=decision,
    )


def prior(invoice, confidence=0.4, corrections=()):
    return ProcessingResult(
        normalized_invoice=invoice.fields,
        confidence_score=confidence,
        proposed_corrections=list(corrections),
    )


def vendor_patterns(pattern_store):
    return pattern_store.recall_vendor_patterns(VENDOR)


# ---------------------------------------------------------------------------
# rule table
# ---------------------------------------------------------------------------

def test_currency_correction_learns_recovery_pattern(learner, pattern_store, make_invoice):
    invoice = make_invoice(currency=None, raw_text="Total 2380.00 EUR")
    correction = correction_batch(
        {"field": "currency", "from": None, "to": "EUR", "reason": "Currency missing from extraction"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == ["Learned: Supplier GmbH currency can be recovered from rawText"]
    patterns = vendor_patterns(pattern_store)
    assert len(patterns) == 1
    pattern = patterns[0]
    assert (pattern.pattern_type, pattern.pattern_key) == ("field_mapping", "currency_from_text")
    assert isinstance(pattern.pattern_value, CurrencyFromText)
    assert pattern.pattern_value.currency == "EUR"
    assert pattern.confidence == 0.6
    assert (pattern.times_applied, pattern.times_successful, pattern.times_failed) == (0, 1, 0)

    history = pattern_store.recall_resolution_history(VENDOR)
    assert len(history) == 1
    assert history[0].issue_type == "missing_field"


def test_service_date_correction(learner, pattern_store, make_invoice):
    invoice = make_invoice(raw_text="Leistungsdatum: 15.01.2024")
    correction = correction_batch(
        {"field": "serviceDate", "from": None, "to": "2024-01-15", "reason": "Leistungsdatum"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == ['Learned: Supplier GmbH uses "Leistungsdatum" for serviceDate']
    pattern = vendor_patterns(pattern_store)[0]
    assert pattern.pattern_key == "serviceDate"
    assert pattern.pattern_value == ServiceDateMapping(
        source="Leistungsdatum", target="serviceDate", example="2024-01-15"
    )
    assert pattern.confidence == 0.7


def test_service_date_with_previous_value_is_not_learned(learner, pattern_store, make_invoice):
    invoice = make_invoice()
    correction = correction_batch(
        {"field": "serviceDate", "from": "2024-01-01", "to": "2024-01-15", "reason": "typo"}
    )

    assert learner.learn_from_correction(invoice, correction, prior(invoice)) == []
    assert vendor_patterns(pattern_store) == []


@pytest.mark.parametrize("field", ["taxTotal", "grossTotal"])
def test_vat_included_correction(learner, pattern_store, make_invoice, field):
    invoice = make_invoice()
    correction = correction_batch(
        {"field": field, "from": 2380.0, "to": 2400.0, "reason": "Prices are VAT included"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == ["Learned: Supplier GmbH includes VAT in stated totals"]
    pattern = vendor_patterns(pattern_store)[0]
    assert (pattern.pattern_type, pattern.pattern_key) == ("tax_behavior", "vat_included")
    assert pattern.pattern_value == VatIncluded()
    assert pattern_store.recall_resolution_history(VENDOR)[0].issue_type == "tax_calculation"


def test_vat_reason_required(learner, pattern_store, make_invoice):
    invoice = make_invoice()
    correction = correction_batch({"field": "taxTotal", "from": 1, "to": 2, "reason": "rounding"})

    assert learner.learn_from_correction(invoice, correction, prior(invoice)) == []


def test_po_correction_learns_global_rule(learner, pattern_store, store, make_invoice):
    invoice = make_invoice()
    correction = correction_batch(
        {"field": "poNumber", "from": None, "to": "PO-A-051", "reason": "Matched manually"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == ["Learned: PO matching pattern for Supplier GmbH"]
    rules = pattern_store.recall_correction_patterns("Any Vendor")
    assert len(rules) == 1
    learned = rules[0]
    assert learned.vendor is None
    assert learned.correction_type == "po_matching"
    assert learned.condition == PoMatchingCondition(missing_po=True, has_line_items=True)
    assert learned.correction_action == MatchByVendorDateItems(max_days_diff=30)
    assert learned.confidence == 0.65
    assert learned.source_invoice_ids == ["INV-A-001"]
    assert vendor_patterns(pattern_store) == []
    assert pattern_store.recall_resolution_history(VENDOR)[0].issue_type == "po_matching"


def test_discount_terms_taken_from_raw_text(learner, pattern_store, make_invoice):
    invoice = make_invoice(raw_text="Zahlung: 2% Skonto bei Zahlung innerhalb 10 days, netto 30")
    correction = correction_batch(
        {"field": "discountTerms", "from": None, "to": "2% skonto 10d", "reason": "terms missing"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == ["Learned: Supplier GmbH discount terms pattern"]
    pattern = vendor_patterns(pattern_store)[0]
    assert pattern.pattern_key == "skonto"
    assert pattern.pattern_value == DiscountTerms(terms="2% Skonto bei Zahlung innerhalb 10 days")
    assert pattern.confidence == 0.75


def test_discount_terms_fall_back_to_corrected_value(learner, pattern_store, make_invoice):
    invoice = make_invoice(raw_text="no terms printed")
    correction = correction_batch(
        {"field": "notes", "from": None, "to": "3% Skonto 14 days", "reason": "Skonto agreed"}
    )

    learner.learn_from_correction(invoice, correction, prior(invoice))

    assert vendor_patterns(pattern_store)[0].pattern_value.terms == "3% Skonto 14 days"


def test_sku_correction_maps_item_description(learner, pattern_store, make_invoice):
    invoice = make_invoice(
        line_items=[
            LineItem(sku="A-1", description="Bolt", qty=1, unit_price=1.0),
            LineItem(description="Premium Widget", qty=1, unit_price=1.0),
        ]
    )
    correction = correction_batch(
        {"field": "lineItems[1].sku", "from": None, "to": "WIDGET-001", "reason": "SKU missing"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == ["Learned: SKU mapping for Supplier GmbH"]
    pattern = vendor_patterns(pattern_store)[0]
    assert (pattern.pattern_type, pattern.pattern_key) == ("sku_mapping", "desc_to_sku_WIDGET-001")
    assert pattern.pattern_value == SkuMapping(description="Premium Widget", sku="WIDGET-001")
    assert pattern_store.recall_resolution_history(VENDOR)[0].issue_type == "line_item_mapping"


@pytest.mark.parametrize("field", ["lineItems[3].sku", "lineItems[0].sku"])
def test_sku_correction_skipped_without_described_item(learner, pattern_store, make_invoice, field):
    invoice = make_invoice(line_items=[LineItem(qty=1, unit_price=1.0)])
    correction = correction_batch({"field": field, "from": None, "to": "X-1", "reason": ""})

    assert learner.learn_from_correction(invoice, correction, prior(invoice)) == []
    assert vendor_patterns(pattern_store) == []


def test_one_entry_can_trigger_several_rules(learner, pattern_store, make_invoice):
    invoice = make_invoice(currency=None)
    correction = correction_batch(
        {"field": "currency", "from": None, "to": "EUR", "reason": "EUR per skonto agreement"}
    )

    updates = learner.learn_from_correction(invoice, correction, prior(invoice))

    assert updates == [
        "Learned: Supplier GmbH currency can be recovered from rawText",
        "Learned: Supplier GmbH discount terms pattern",
    ]
    assert {p.pattern_type for p in vendor_patterns(pattern_store)} == {
        "field_mapping",
        "discount_terms",
    }


def test_repeated_learning_merges_counters(learner, pattern_store, store, make_invoice):
    invoice = make_invoice(currency=None)
    correction = correction_batch({"field": "currency", "from": None, "to": "EUR", "reason": ""})

    learner.learn_from_correction(invoice, correction, prior(invoice))
    learner.learn_from_correction(invoice, correction, prior(invoice))

    assert len(store.get(VENDOR_MEMORY)) == 1
    assert vendor_patterns(pattern_store)[0].times_successful == 2
    assert len(store.get(RESOLUTION_MEMORY)) == 2


# ---------------------------------------------------------------------------
# resolution record and audit
# ---------------------------------------------------------------------------

def test_resolution_record_written_even_without_learning(learner, pattern_store, make_invoice):
    invoice = make_invoice()
    correction = correction_batch(
        {"field": "invoiceNumber", "from": "1NV-1", "to": "INV-1", "reason": "OCR"},
        {"field": "notes", "from": None, "to": "x", "reason": ""},
        decision="rejected",
    )

    updates = learner.learn_from_correction(
        invoice, correction, prior(invoice, 0.42, ["Set currency to EUR"])
    )

    assert updates == []
    record = pattern_store.recall_resolution_history(VENDOR)[0]
    assert record.issue_type == "general_correction"
    assert record.issue_description == "invoiceNumber, notes"
    assert record.human_action == "rejected"
    assert record.correction_applied[0] == {
        "field": "invoiceNumber",
        "from": "1NV-1",
        "to": "INV-1",
        "reason": "OCR",
    }
    assert record.context == {
        "priorConfidence": 0.42,
        "priorProposedCorrections": ["Set currency to EUR"],
    }


def test_learning_is_audited(learner, store, make_invoice):
    invoice = make_invoice(currency=None)
    correction = correction_batch({"field": "currency", "from": None, "to": "EUR", "reason": ""})

    learner.learn_from_correction(invoice, correction, prior(invoice))

    rows = store.get(AUDIT_TRAIL, {"invoice_id": "INV-A-001"})
    assert [(r["step"], r["operation"]) for r in rows] == [
        ("learn", "processing_correction"),
        ("learn", "stored_learnings"),
    ]
    assert rows[0]["details"] == {"vendor": VENDOR, "correctionCount": 1, "decision": "approved"}
    assert rows[1]["details"]["updateCount"] == 1


def test_write_failure_propagates(failing_store, make_invoice):
    learner = LearningEngine(PatternStore(failing_store), StoreAuditSink(failing_store))
    invoice = make_invoice(currency=None)
    correction = correction_batch({"field": "currency", "from": None, "to": "EUR", "reason": ""})

    with pytest.raises(PatternWriteError):
        learner.learn_from_correction(invoice, correction, prior(invoice))


# ---------------------------------------------------------------------------
# categorize_issue
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "fields, expected",
    [
        (["currency", "taxTotal"], "tax_calculation"),
        (["netTotal"], "tax_calculation"),
        (["taxRate"], "tax_calculation"),
        (["poNumber", "serviceDate"], "missing_field"),
        (["currency", "poNumber"], "missing_field"),
        (["lineItems[0].sku", "poNumber"], "po_matching"),
        (["lineItems[2].description"], "line_item_mapping"),
        (["invoiceNumber"], "general_correction"),
        ([], "general_correction"),
    ],
)
def test_categorize_issue_priority(fields, expected):
    assert categorize_issue(fields) == expected
