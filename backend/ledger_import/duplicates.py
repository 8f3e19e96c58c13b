"""
Duplicate detection against existing ledger entries.

A record is a duplicate only when the date is equal, the amounts are within
AMOUNT_TOLERANCE of each other and the descriptions are equal ignoring case.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence

from pydantic import BaseModel, Field

from .models import LedgerRecord

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


class DuplicateCheck(BaseModel):
    duplicates: List[LedgerRecord] = Field(default_factory=list)
    unique: List[LedgerRecord] = Field(default_factory=list)


def is_duplicate(candidate: LedgerRecord, existing: LedgerRecord) -> bool:
    return (
        candidate.date == existing.date
        and abs(Decimal(candidate.amount) - Decimal(existing.amount)) <= AMOUNT_TOLERANCE
        and candidate.description.lower() == existing.description.lower()
    )


def check_duplicates(
    candidates: Sequence[LedgerRecord], existing_entries: Iterable[LedgerRecord]
) -> DuplicateCheck:
    """
    Split candidates into duplicates of existing entries and unique records.

    Existing entries are indexed by date, so only same-day entries are compared.
    """
    by_date: Dict[object, List[LedgerRecord]] = defaultdict(list)
    for entry in existing_entries or []:
        by_date[entry.date].append(entry)

    result = DuplicateCheck()
    for candidate in candidates:
        if any(is_duplicate(candidate, entry) for entry in by_date.get(candidate.date, ())):
            result.duplicates.append(candidate)
        else:
            result.unique.append(candidate)

    if result.duplicates:
        logger.info("%d of %d records already in the ledger", len(result.duplicates), len(candidates))
    return result
