"""
Ledger persistence used by the import commit.

The orchestrator talks to a LedgerRepository; every call is scoped to one
owner id. Implementations raise PersistenceError when storage is unreachable.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError

from .errors import PersistenceError
from .models import LedgerRecord
from .utils import load_json, save_json

logger = logging.getLogger(__name__)


class InsertBatchResult(BaseModel):
    inserted_count: int = 0
    failed_records: List[LedgerRecord] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class LedgerRepository(Protocol):
    async def find_potential_duplicates(
        self, owner_id: str, candidates: Sequence[LedgerRecord]
    ) -> List[LedgerRecord]: ...

    async def insert_batch(
        self, owner_id: str, records: Sequence[LedgerRecord]
    ) -> InsertBatchResult: ...


def _same_day_entries(
    entries: Sequence[LedgerRecord], candidates: Sequence[LedgerRecord]
) -> List[LedgerRecord]:
    dates = {candidate.date for candidate in candidates}
    return [entry for entry in entries if entry.date in dates]


class InMemoryLedgerRepository:
    """Keeps ledger entries per owner in process memory."""

    def __init__(self):
        self.entries: Dict[str, List[LedgerRecord]] = defaultdict(list)

    async def find_potential_duplicates(
        self, owner_id: str, candidates: Sequence[LedgerRecord]
    ) -> List[LedgerRecord]:
        return _same_day_entries(self.entries[owner_id], candidates)

    async def insert_batch(
        self, owner_id: str, records: Sequence[LedgerRecord]
    ) -> InsertBatchResult:
        self.entries[owner_id].extend(record.model_copy() for record in records)
        return InsertBatchResult(inserted_count=len(records))


class JsonFileLedgerRepository:
    """
    Ledger stored as one JSON file keyed by owner id.

    The whole batch is written at once, so a batch either lands completely
    or fails completely. File access runs in a worker thread so the event
    loop is never blocked on disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._write_lock = threading.Lock()

    def _load_owner(self, owner_id: str) -> List[LedgerRecord]:
        data = load_json(self.path, {})
        entries = []
        for raw in data.get(owner_id, []):
            try:
                entries.append(LedgerRecord.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed ledger entry in %s", self.path)
        return entries

    def _append(self, owner_id: str, records: Sequence[LedgerRecord]) -> None:
        with self._write_lock:
            data = load_json(self.path, {})
            owner_entries = data.setdefault(owner_id, [])
            owner_entries.extend(record.model_dump(mode="json") for record in records)
            save_json(self.path, data)

    async def find_potential_duplicates(
        self, owner_id: str, candidates: Sequence[LedgerRecord]
    ) -> List[LedgerRecord]:
        try:
            entries = await asyncio.to_thread(self._load_owner, owner_id)
        except OSError as e:
            raise PersistenceError("Unable to check for duplicates.") from e
        return _same_day_entries(entries, candidates)

    async def insert_batch(
        self, owner_id: str, records: Sequence[LedgerRecord]
    ) -> InsertBatchResult:
        if not records:
            return InsertBatchResult()
        try:
            await asyncio.to_thread(self._append, owner_id, records)
        except OSError as e:
            logger.warning("Batch insert of %d records failed: %s", len(records), e)
            return InsertBatchResult(
                failed_records=list(records),
                errors=["Unable to save transactions. Please try again."],
            )
        return InsertBatchResult(inserted_count=len(records))
