"""In-process store for batch processing records, optionally mirrored to JSON."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from pydantic import ValidationError

from app.schemas import BatchRecord, BatchStatus
from settings import get_settings

logger = logging.getLogger(__name__)

_IN_FLIGHT = (BatchStatus.received, BatchStatus.processing)


class MockBatchTable:
    """Keyed by ``batch_id``; every read hands out a deep copy."""

    def __init__(self, persistence_path: Optional[Path] = None) -> None:
        self._records: Dict[str, BatchRecord] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._restore()

    def put_item(self, record: BatchRecord) -> None:
        with self._lock:
            self._records[record.batch_id] = record.model_copy(deep=True)
            self._persist()

    def get_item(self, batch_id: str) -> Optional[BatchRecord]:
        with self._lock:
            record = self._records.get(batch_id)
            return record.model_copy(deep=True) if record is not None else None

    def scan(self, status: Optional[BatchStatus] = None) -> List[BatchRecord]:
        """Return copies of stored records, oldest first, optionally by status."""
        with self._lock:
            records = sorted(self._records.values(), key=lambda record: record.received_at)
            return [
                record.model_copy(deep=True)
                for record in records
                if status is None or record.status is status
            ]

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            batch_id: record.model_dump(mode="json")
            for batch_id, record in self._records.items()
        }
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _restore(self) -> None:
        # Batches still in flight when the previous process stopped will
        # never finish; surface them as deferred so callers redeliver.
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            data = json.loads(self.persistence_path.read_text() or "{}")
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Batch results file unreadable; starting empty.",
                extra={"reason": str(self.persistence_path)},
            )
            return

        for batch_id, payload in data.items():
            try:
                record = BatchRecord.model_validate(payload)
            except ValidationError:
                logger.warning("Dropping unreadable batch record.", extra={"batch_id": batch_id})
                continue
            if record.status in _IN_FLIGHT:
                record = record.model_copy(
                    update={
                        "status": BatchStatus.deferred,
                        "detail": "Service restarted before the batch finished.",
                    }
                )
            self._records[batch_id] = record


@lru_cache
def build_default_batch_table(path: Optional[str] = None) -> MockBatchTable:
    settings = get_settings()
    table_path = settings.results_persistence_path if path is None else path
    return MockBatchTable(persistence_path=Path(table_path) if table_path else None)
