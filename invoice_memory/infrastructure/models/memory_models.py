from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Float,
    Text,
    Boolean,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
import uuid

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class RowMixin:
    # surrogate key; keeps rows in insertion order
    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, nullable=False, default=generate_uuid)

    def to_dict(self):
        return {
            column.name: getattr(self, column.name)
            for column in self.__table__.columns
            if column.name != "pk"
        }


class VendorMemory(RowMixin, Base):
    __tablename__ = "vendor_memory"
    __table_args__ = (
        UniqueConstraint("vendor", "pattern_type", "pattern_key", name="uq_vendor_pattern"),
    )

    vendor = Column(String, nullable=False, index=True)
    pattern_type = Column(String, nullable=False)
    pattern_key = Column(String, nullable=False)
    pattern_value = Column(JSON)
    confidence = Column(Float, nullable=False, default=0.5)
    times_applied = Column(Integer, default=0)
    times_successful = Column(Integer, default=0)
    times_failed = Column(Integer, default=0)
    last_applied_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class CorrectionMemory(RowMixin, Base):
    __tablename__ = "correction_memory"

    vendor = Column(String, index=True)
    correction_type = Column(String, nullable=False)
    condition = Column(JSON)
    correction_action = Column(JSON)
    confidence = Column(Float, nullable=False, default=0.5)
    times_applied = Column(Integer, default=0)
    times_successful = Column(Integer, default=0)
    times_failed = Column(Integer, default=0)
    source_invoice_ids = Column(JSON)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class ResolutionMemory(RowMixin, Base):
    __tablename__ = "resolution_memory"

    invoice_id = Column(String, nullable=False)
    vendor = Column(String, nullable=False, index=True)
    issue_type = Column(String, nullable=False)
    issue_description = Column(Text)
    human_action = Column(String)
    correction_applied = Column(JSON)
    context = Column(JSON)
    created_at = Column(DateTime(timezone=True))


class ProcessedInvoice(RowMixin, Base):
    __tablename__ = "processed_invoices"

    invoice_id = Column(String, nullable=False, unique=True)
    vendor = Column(String, nullable=False, index=True)
    original_data = Column(JSON)
    normalized_data = Column(JSON)
    proposed_corrections = Column(JSON)
    requires_human_review = Column(Boolean, default=True)
    reasoning = Column(Text)
    confidence_score = Column(Float)
    final_decision = Column(String)
    processed_at = Column(DateTime(timezone=True))


class AuditTrail(RowMixin, Base):
    __tablename__ = "audit_trail"

    invoice_id = Column(String, nullable=False, index=True)
    step = Column(String, nullable=False)
    operation = Column(String)
    details = Column(JSON)
    timestamp = Column(DateTime(timezone=True))


TABLE_MODELS = {
    model.__tablename__: model
    for model in (VendorMemory, CorrectionMemory, ResolutionMemory, ProcessedInvoice, AuditTrail)
}
