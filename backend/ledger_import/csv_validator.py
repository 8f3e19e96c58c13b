"""
Row extraction and validation for parsed statement rows.

This module provides a CSVRowValidator class that pulls the date, amount and
description out of each row using a detected ColumnMapping, and checks that
each extracted transaction is importable.
"""

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from .models import CandidateTransaction, ColumnMapping, ParseDiagnostic, RawTransaction

logger = logging.getLogger(__name__)

# (regex, builder) pairs tried in order; the first structural match that
# builds a real calendar date wins.
DATE_FORMATS: List[Tuple[re.Pattern, Callable[[re.Match], date]]] = [
    # YYYY-MM-DD
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), lambda m: date(int(m[1]), int(m[2]), int(m[3]))),
    # DD/MM/YYYY
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), lambda m: date(int(m[3]), int(m[2]), int(m[1]))),
    # DD-MM-YYYY
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), lambda m: date(int(m[3]), int(m[2]), int(m[1]))),
    # MM/DD/YYYY, 1-2 digit month and day
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), lambda m: date(int(m[3]), int(m[1]), int(m[2]))),
    # YYYY/MM/DD
    (re.compile(r"^(\d{4})/(\d{2})/(\d{2})$"), lambda m: date(int(m[1]), int(m[2]), int(m[3]))),
]

_AMOUNT_NOISE = re.compile(r"[$€£₹,\s]")
_THOUSANDS_GROUP = re.compile(r"^[0-9]{3}(\.[0-9]+)?$")
# ASCII digits with an optional sign and decimal part, nothing else
_PLAIN_NUMBER = re.compile(r"^-?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)$")


class ExtractionResult(BaseModel):
    candidates: List[RawTransaction] = Field(default_factory=list)
    errors: List[ParseDiagnostic] = Field(default_factory=list)


class TransactionValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    parsed_date: Optional[date] = None
    parsed_amount: Optional[Decimal] = None


def parse_date(value: Optional[str]) -> Optional[date]:
    """
    Parse a date string using the supported formats.

    Args:
        value: Raw date text

    Returns:
        The parsed date, or None when no format yields a valid date
    """
    if not value or not isinstance(value, str):
        return None

    candidate = value.strip()
    for pattern, build in DATE_FORMATS:
        match = pattern.match(candidate)
        if not match:
            continue
        try:
            return build(match)
        except ValueError:
            # e.g. month 13; let a later format try
            continue
    return None


def _parse_number(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    cleaned = _AMOUNT_NOISE.sub("", str(value).strip())
    if not _PLAIN_NUMBER.match(cleaned):
        return None
    return Decimal(cleaned)


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse an amount, ignoring currency symbols and thousands separators.

    Returns:
        The amount when it is a finite number greater than zero, else None
    """
    amount = _parse_number(value)
    if amount is None or amount <= 0:
        return None
    return amount


def validate_transaction(transaction: Optional[RawTransaction]) -> TransactionValidation:
    """
    Check that a transaction has a parseable date, a positive amount and a
    non-blank description. Each failing check adds one row-numbered error.
    """
    if transaction is None:
        return TransactionValidation(valid=False, errors=["Invalid transaction data"])

    errors: List[str] = []
    row = transaction.source_row_number

    parsed_date = None
    if not transaction.date or not transaction.date.strip():
        errors.append(f"Row {row}: Missing date")
    else:
        parsed_date = parse_date(transaction.date)
        if parsed_date is None:
            errors.append(f"Row {row}: Invalid date format '{transaction.date}'")

    parsed_amount = None
    if not transaction.amount or not transaction.amount.strip():
        errors.append(f"Row {row}: Missing amount")
    else:
        parsed_amount = parse_amount(transaction.amount)
        if parsed_amount is None:
            number = _parse_number(transaction.amount)
            if number is not None and number <= 0:
                errors.append(f"Row {row}: Amount must be positive '{transaction.amount}'")
            else:
                errors.append(f"Row {row}: Invalid amount '{transaction.amount}'")

    if not transaction.description or not transaction.description.strip():
        errors.append(f"Row {row}: Missing description")

    if errors:
        logger.debug("Row %s failed validation: %s", row, errors)

    return TransactionValidation(
        valid=not errors,
        errors=errors,
        parsed_date=parsed_date,
        parsed_amount=parsed_amount,
    )


def rejoin_split_amount(row: Sequence[str], amount_index: int, column_count: int) -> List[str]:
    """
    Fold thousands groups back into the amount cell.

    An unquoted amount like $1,234.56 in a comma-delimited file arrives as
    "$1" and "234.56". While the row is longer than the header and the cell
    after the amount is a three-digit group, the two cells are merged.
    """
    cells = list(row)
    while (
        len(cells) > column_count
        and 0 <= amount_index < len(cells) - 1
        and cells[amount_index][-1:].isdigit()
        and _THOUSANDS_GROUP.match(cells[amount_index + 1])
    ):
        cells[amount_index] = f"{cells[amount_index]},{cells.pop(amount_index + 1)}"
    return cells


class CSVRowValidator:
    """
    Extracts and validates transactions from rows of one parsed file.

    The validator is initialized with the file's column mapping so every row
    is read from the same date, amount and description columns.
    """

    def __init__(
        self,
        mapping: ColumnMapping,
        has_header: bool = True,
        column_count: Optional[int] = None,
    ):
        self.mapping = mapping
        # +1 for 1-based numbering, +1 more when a header row precedes the data
        self.row_offset = 2 if has_header else 1
        # set for comma-delimited files so split amounts can be rejoined
        self.column_count = column_count

    @staticmethod
    def _cell(row: Sequence[str], index: int) -> str:
        if 0 <= index < len(row) and row[index] is not None:
            return row[index]
        return ""

    def extract_row(self, row: Sequence[str], row_index: int) -> RawTransaction:
        if self.column_count and len(row) > self.column_count:
            row = rejoin_split_amount(row, self.mapping.amount_index, self.column_count)
        return RawTransaction(
            date=self._cell(row, self.mapping.date_index),
            amount=self._cell(row, self.mapping.amount_index),
            description=self._cell(row, self.mapping.description_index),
            source_row_number=row_index + self.row_offset,
        )

    def extract_transactions(self, rows: Optional[Sequence[Sequence[str]]]) -> ExtractionResult:
        """
        Turn data rows into raw transactions.

        Args:
            rows: Parsed data rows, header excluded

        Returns:
            ExtractionResult; empty with one structural error when the
            mapping is incomplete
        """
        if rows is None:
            return ExtractionResult(errors=[ParseDiagnostic(row_index=0, message="No data provided")])

        if not self.mapping.is_complete:
            return ExtractionResult(
                errors=[ParseDiagnostic(row_index=0, message="Invalid column mapping")]
            )

        candidates = []
        errors = []
        for i, row in enumerate(rows):
            if row is None:
                errors.append(
                    ParseDiagnostic(row_index=i + self.row_offset, message="Invalid row data")
                )
                continue
            candidates.append(self.extract_row(row, i))

        return ExtractionResult(candidates=candidates, errors=errors)

    def build_candidate(self, transaction: RawTransaction) -> CandidateTransaction:
        """Validate a raw transaction; valid rows start out selected."""
        result = validate_transaction(transaction)
        return CandidateTransaction(
            **transaction.model_dump(),
            parsed_date=result.parsed_date,
            parsed_amount=result.parsed_amount,
            is_valid=result.valid,
            validation_errors=result.errors,
            is_selected=result.valid,
        )


def extract_transactions(
    rows: Optional[Sequence[Sequence[str]]],
    mapping: ColumnMapping,
    has_header: bool = True,
) -> ExtractionResult:
    """Module-level shortcut - creates a temporary validator."""
    return CSVRowValidator(mapping, has_header=has_header).extract_transactions(rows)
