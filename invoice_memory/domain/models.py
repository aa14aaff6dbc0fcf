from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


AuditStep = Literal["recall", "apply", "decide", "learn"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# pattern_type / pattern_key vocabulary
FIELD_MAPPING = "field_mapping"
TAX_BEHAVIOR = "tax_behavior"
DISCOUNT_TERMS = "discount_terms"
SKU_MAPPING = "sku_mapping"

SERVICE_DATE_KEY = "serviceDate"
CURRENCY_FROM_TEXT_KEY = "currency_from_text"
VAT_INCLUDED_KEY = "vat_included"
SKONTO_KEY = "skonto"
SKU_KEY_PREFIX = "desc_to_sku_"

PO_MATCHING = "po_matching"


class CamelModel(BaseModel):
    """Models exchanged with the orchestrator use the camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LineItem(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, validate_assignment=True
    )

    sku: Optional[str] = None
    description: Optional[str] = None
    qty: float = 0.0
    unit_price: float = 0.0


class InvoiceFields(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, validate_assignment=True
    )

    invoice_number: str = ""
    invoice_date: str = ""
    service_date: Optional[str] = None
    currency: Optional[str] = None
    po_number: Optional[str] = None
    net_total: float = 0.0
    tax_rate: float = 0.0
    tax_total: float = 0.0
    gross_total: float = 0.0
    line_items: List[LineItem] = Field(default_factory=list)
    discount_terms: Optional[str] = None


class Invoice(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    invoice_id: str
    vendor: str
    fields: InvoiceFields
    confidence: float = Field(ge=0.0, le=1.0)
    raw_text: str = ""


class PurchaseOrderLine(CamelModel):
    sku: str
    qty: float = 0.0
    unit_price: float = 0.0


class PurchaseOrder(CamelModel):
    po_number: str
    vendor: str
    date: str
    line_items: List[PurchaseOrderLine] = Field(default_factory=list)


class DeliveryNoteLine(CamelModel):
    sku: str
    qty_delivered: float = 0.0


class DeliveryNote(CamelModel):
    dn_number: str
    vendor: str
    po_number: str
    date: str
    line_items: List[DeliveryNoteLine] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pattern payloads
# ---------------------------------------------------------------------------


class ServiceDateMapping(BaseModel):
    kind: Literal["service_date_mapping"] = "service_date_mapping"
    source: str
    target: str = SERVICE_DATE_KEY
    example: Optional[Any] = None


class CurrencyFromText(BaseModel):
    kind: Literal["currency_from_text"] = "currency_from_text"
    currency: Optional[str] = None
    pattern: str = "text_extraction"


class VatIncluded(BaseModel):
    kind: Literal["vat_included"] = "vat_included"
    behavior: str = "vat_already_included"
    indicators: List[str] = Field(default_factory=lambda: ["incl", "inkl", "included"])
    recalculation: str = "gross_to_net"


class DiscountTerms(BaseModel):
    kind: Literal["discount_terms"] = "discount_terms"
    terms: str
    detection: str = "rawText_pattern"


class SkuMapping(BaseModel):
    kind: Literal["sku_mapping"] = "sku_mapping"
    description: str
    sku: str


PatternValue = Annotated[
    Union[ServiceDateMapping, CurrencyFromText, VatIncluded, DiscountTerms, SkuMapping],
    Field(discriminator="kind"),
]


class FieldEquals(BaseModel):
    kind: Literal["field_equals"] = "field_equals"
    field: str
    value: Any = None


class PoMatchingCondition(BaseModel):
    kind: Literal["po_matching"] = "po_matching"
    missing_po: bool = True
    has_line_items: bool = True


class SetField(BaseModel):
    kind: Literal["set_field"] = "set_field"
    set_field: str
    value: Any = None


class MatchByVendorDateItems(BaseModel):
    kind: Literal["match_by_vendor_date_items"] = "match_by_vendor_date_items"
    strategy: str = "match_by_vendor_date_items"
    max_days_diff: int = 30


Condition = Annotated[
    Union[FieldEquals, PoMatchingCondition], Field(discriminator="kind")
]
CorrectionAction = Annotated[
    Union[SetField, MatchByVendorDateItems], Field(discriminator="kind")
]


def _infer_pattern_kind(pattern_type: str, pattern_key: str) -> Optional[str]:
    if pattern_type == FIELD_MAPPING:
        return {
            SERVICE_DATE_KEY: "service_date_mapping",
            CURRENCY_FROM_TEXT_KEY: "currency_from_text",
        }.get(pattern_key)
    return {
        TAX_BEHAVIOR: "vat_included",
        DISCOUNT_TERMS: "discount_terms",
        SKU_MAPPING: "sku_mapping",
    }.get(pattern_type)


def _with_kind(payload: Any, kind: Optional[str]) -> Any:
    if isinstance(payload, dict) and "kind" not in payload and kind:
        return {**payload, "kind": kind}
    return payload


# ---------------------------------------------------------------------------
# Memory records
# ---------------------------------------------------------------------------


class VendorPattern(BaseModel):
    id: Optional[str] = None
    vendor: str
    pattern_type: str
    pattern_key: str
    pattern_value: PatternValue
    confidence: float = Field(ge=0.0, le=1.0)
    times_applied: int = 0
    times_successful: int = 0
    times_failed: int = 0
    last_applied_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_untyped_payload(cls, data: Any) -> Any:
        if isinstance(data, dict):
            kind = _infer_pattern_kind(
                data.get("pattern_type", ""), data.get("pattern_key", "")
            )
            data = {**data, "pattern_value": _with_kind(data.get("pattern_value"), kind)}
        return data


class CorrectionPattern(BaseModel):
    id: Optional[str] = None
    vendor: Optional[str] = None
    correction_type: str
    condition: Condition
    correction_action: CorrectionAction
    confidence: float = Field(ge=0.0, le=1.0)
    times_applied: int = 0
    times_successful: int = 0
    times_failed: int = 0
    source_invoice_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_untyped_rule(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        condition = data.get("condition")
        if isinstance(condition, dict):
            condition = _with_kind(
                condition, "field_equals" if "field" in condition else "po_matching"
            )
        action = data.get("correction_action")
        if isinstance(action, dict):
            action = _with_kind(
                action,
                "set_field" if "set_field" in action else "match_by_vendor_date_items",
            )
        return {**data, "condition": condition, "correction_action": action}


class ResolutionRecord(BaseModel):
    id: Optional[str] = None
    invoice_id: str
    vendor: str
    issue_type: str
    issue_description: Optional[str] = None
    human_action: str
    correction_applied: List[Dict[str, Any]] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Processing cycle
# ---------------------------------------------------------------------------


class FieldCorrection(CamelModel):
    field: str
    from_value: Any = Field(default=None, alias="from")
    to: Any = None
    reason: str = ""


class HumanCorrection(CamelModel):
    invoice_id: str
    vendor: str
    corrections: List[FieldCorrection] = Field(default_factory=list)
    final_decision: str


class AuditEntry(CamelModel):
    step: AuditStep
    timestamp: datetime
    operation: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class ProcessingResult(CamelModel):
    normalized_invoice: InvoiceFields
    proposed_corrections: List[str] = Field(default_factory=list)
    requires_human_review: bool = True
    reasoning: str = ""
    confidence_score: float = 0.0
    memory_updates: List[str] = Field(default_factory=list)
    audit_trail: List[AuditEntry] = Field(default_factory=list)
