from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional


VENDOR_MEMORY = "vendor_memory"
CORRECTION_MEMORY = "correction_memory"
RESOLUTION_MEMORY = "resolution_memory"
PROCESSED_INVOICES = "processed_invoices"
AUDIT_TRAIL = "audit_trail"

TABLES = (
    VENDOR_MEMORY,
    CORRECTION_MEMORY,
    RESOLUTION_MEMORY,
    PROCESSED_INVOICES,
    AUDIT_TRAIL,
)


class Store(ABC):
    """Row store behind the pattern memory.

    Filters are equality matches; a ``None`` value matches a missing/NULL
    column. Rows come back in insertion order. Implementations raise
    ``StoreUnavailable`` when the backend fails.
    """

    @abstractmethod
    def get(
        self, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def upsert(
        self, table: str, key: Dict[str, Any], patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        pass


class AuditSink(ABC):
    @abstractmethod
    def record(
        self, invoice_id: str, step: str, operation: str, details: Dict[str, Any]
    ):
        """Append one audit entry. Must never raise."""
        pass
