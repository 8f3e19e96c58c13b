"""
Header-to-role mapping for statement columns.

Each role (date, amount, description) has a list of header synonyms. Roles
are resolved in that fixed order, left to right, and a column claimed by an
earlier role is not offered to a later one.
"""

import logging
from typing import Dict, List, Optional, Sequence

from .models import ColumnMapping

logger = logging.getLogger(__name__)

ROLE_ORDER = ("date", "amount", "description")

HEADER_SYNONYMS: Dict[str, List[str]] = {
    "date": [
        "date",
        "transaction date",
        "txn date",
        "value date",
        "posting date",
        "trans date",
    ],
    "amount": [
        "amount",
        "debit",
        "credit",
        "withdrawal",
        "deposit",
        "transaction amount",
        "txn amount",
    ],
    "description": [
        "description",
        "narration",
        "particulars",
        "details",
        "remarks",
        "transaction details",
        "memo",
    ],
}


def header_matches(header: str, role: str) -> bool:
    """True when the normalized header equals or contains a synonym for role."""
    return any(header == synonym or synonym in header for synonym in HEADER_SYNONYMS[role])


def detect_column_mapping(headers: Optional[Sequence[str]]) -> ColumnMapping:
    """
    Match header text against the synonym lists (case-insensitive).

    Args:
        headers: Column names from the header row

    Returns:
        ColumnMapping with zero-based indices, -1 for roles not found
    """
    if not headers:
        return ColumnMapping(missing_roles=set(ROLE_ORDER))

    normalized = [(header or "").strip().lower() for header in headers]
    indices = {role: -1 for role in ROLE_ORDER}
    claimed = set()

    for role in ROLE_ORDER:
        for i, header in enumerate(normalized):
            if i in claimed or not header:
                continue
            if header_matches(header, role):
                indices[role] = i
                claimed.add(i)
                break

    missing = {role for role in ROLE_ORDER if indices[role] == -1}
    if missing:
        logger.info("Columns not detected for roles: %s", ", ".join(sorted(missing)))

    return ColumnMapping(
        date_index=indices["date"],
        amount_index=indices["amount"],
        description_index=indices["description"],
        is_complete=not missing,
        missing_roles=missing,
    )


def ordered_missing_roles(mapping: ColumnMapping) -> List[str]:
    """Missing roles in resolution order, for user-facing messages."""
    return [role for role in ROLE_ORDER if role in mapping.missing_roles]
