from datetime import datetime, timedelta, timezone

import pytest

from invoice_memory.application.services.decision_engine import DecisionEngine
from invoice_memory.application.services.learning_engine import LearningEngine
from invoice_memory.application.services.pattern_store import PatternStore
from invoice_memory.application.use_cases.process_invoice import InvoiceProcessor
from invoice_memory.domain.exceptions import StoreUnavailable
from invoice_memory.domain.interfaces import Store
from invoice_memory.domain.models import Invoice, InvoiceFields, LineItem
from invoice_memory.infrastructure.audit import StoreAuditSink
from invoice_memory.infrastructure.repositories.memory_store import InMemoryStore

VENDOR = "Supplier GmbH"


class TickingClock:
    """Returns a strictly increasing UTC time on every call."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


class FailingStore(Store):
    def get(self, table, filters=None):
        raise StoreUnavailable("connection refused")

    def upsert(self, table, key, patch):
        raise StoreUnavailable("connection refused")

    def insert(self, table, row):
        raise StoreUnavailable("connection refused")

    def delete(self, table, filters=None):
        raise StoreUnavailable("connection refused")


def build_invoice(
    invoice_id="INV-A-001",
    vendor=VENDOR,
    confidence=0.9,
    raw_text="",
    **overrides,
):
    fields = {
        "invoice_number": "INV-2024-001",
        "invoice_date": "2024-01-20",
        "currency": "EUR",
        "net_total": 2000.0,
        "tax_rate": 0.19,
        "tax_total": 380.0,
        "gross_total": 2380.0,
        "line_items": [
            LineItem(sku="WIDGET-001", description="Widget", qty=100, unit_price=20.0)
        ],
    }
    fields.update(overrides)
    return Invoice(
        invoice_id=invoice_id,
        vendor=vendor,
        fields=InvoiceFields(**fields),
        confidence=confidence,
        raw_text=raw_text,
    )


@pytest.fixture
def make_invoice():
    return build_invoice


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def pattern_store(store, clock):
    return PatternStore(store, clock=clock)


@pytest.fixture
def audit_sink(store, clock):
    return StoreAuditSink(store, clock=clock)


@pytest.fixture
def engine(pattern_store, audit_sink):
    return DecisionEngine(pattern_store, audit_sink)


@pytest.fixture
def learner(pattern_store, audit_sink):
    return LearningEngine(pattern_store, audit_sink)


@pytest.fixture
def processor(store, clock):
    return InvoiceProcessor(store, clock=clock)
