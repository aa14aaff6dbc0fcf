import copy
import threading
import uuid
from typing import Any, Dict, List, Optional

from invoice_memory.domain.interfaces import Store, TABLES


class InMemoryStore(Store):
    """Process-local store for offline mode and tests.

    Rows are deep-copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in TABLES}
        self._lock = threading.Lock()

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        if table not in self.tables:
            raise ValueError(f"Unknown table: {table}")
        return self.tables[table]

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        return all(row.get(column) == value for column, value in (filters or {}).items())

    def get(
        self, table: str, filters: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(row)
                for row in self._rows(table)
                if self._matches(row, filters)
            ]

    def upsert(
        self, table: str, key: Dict[str, Any], patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        with self._lock:
            matched = [row for row in self._rows(table) if self._matches(row, key)]
            if not matched:
                row = {**key, **copy.deepcopy(patch)}
                row.setdefault("id", None)
                if not row["id"]:
                    row["id"] = str(uuid.uuid4())
                self._rows(table).append(row)
                return copy.deepcopy(row)

            for row in matched:
                row.update(copy.deepcopy(patch))
            return copy.deepcopy(matched[0])

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(row)
        if not record.get("id"):
            record["id"] = str(uuid.uuid4())
        with self._lock:
            self._rows(table).append(record)
        return copy.deepcopy(record)

    def delete(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            rows = self._rows(table)
            kept = [row for row in rows if not self._matches(row, filters)]
            removed = len(rows) - len(kept)
            self.tables[table] = kept
            return removed
