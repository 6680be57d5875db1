"""
Reference record store keyed by field id.

The pipeline writes one fully built record per run through `upsert`, so a
run abandoned before its persist step leaves the previous record intact.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from ..errors import PersistenceError

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    """Thread-safe in-memory implementation of the persistence collaborator."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._points: Dict[str, List[Dict[str, Any]]] = {}
        self._stale: set = set()
        self._lock = threading.Lock()

    def upsert(self, field_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Merge `record` into the stored record; repeated calls are idempotent."""
        if not field_id:
            raise PersistenceError("upsert requires a field id")
        with self._lock:
            merged = dict(self._records.get(field_id, {}))
            merged.update(copy.deepcopy(record))
            self._records[field_id] = merged
        logger.debug(f"[STORE] Upserted record for field {field_id}")
        return merged

    def delete_and_recreate(self, field_id: str, points: Sequence[Dict[str, Any]]) -> int:
        """Replace every NDVI point stored for the field."""
        with self._lock:
            self._points[field_id] = [dict(p) for p in points]
        return len(points)

    def mark_stale(self, field_id: str) -> None:
        """Flag dependent analyses of the field as needing recomputation."""
        with self._lock:
            self._stale.add(field_id)

    def get(self, field_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(field_id)
            return copy.deepcopy(record) if record is not None else None

    def points(self, field_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._points.get(field_id, []))

    def is_stale(self, field_id: str) -> bool:
        with self._lock:
            return field_id in self._stale
