# Data models for the ledger import pipeline
import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field


class ParseDiagnostic(BaseModel):
    row_index: int
    message: str


class ParsedTable(BaseModel):
    rows: List[List[str]] = Field(default_factory=list)
    header_row: Optional[List[str]] = None
    delimiter: str = ","
    diagnostics: List[ParseDiagnostic] = Field(default_factory=list)


class ColumnMapping(BaseModel):
    date_index: int = -1
    amount_index: int = -1
    description_index: int = -1
    is_complete: bool = False
    missing_roles: Set[str] = Field(default_factory=set)


class ClassificationMethod(str, Enum):
    CORRECTION = "correction"
    RULE = "rule"
    FALLBACK = "fallback"


class RawTransaction(BaseModel):
    date: str = ""
    amount: str = ""
    description: str = ""
    source_row_number: int = 1


class CandidateTransaction(RawTransaction):
    parsed_date: Optional[datetime.date] = None
    parsed_amount: Optional[Decimal] = None
    is_valid: bool = False
    validation_errors: List[str] = Field(default_factory=list)
    category: str = "Other"
    classification_confidence: float = 0.0
    classification_method: ClassificationMethod = ClassificationMethod.FALLBACK
    is_selected: bool = False


class ImportPhase(str, Enum):
    COLLECTING = "collecting"
    PARSING = "parsing"
    PREVIEWING = "previewing"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportSummary(BaseModel):
    total: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    selected_count: int = 0
    duplicate_count: int = 0
    selected_amount_sum: Decimal = Decimal("0")


class ImportSnapshot(BaseModel):
    """Read-only view of an import session handed to the UI."""

    phase: ImportPhase = ImportPhase.COLLECTING
    file_name: Optional[str] = None
    candidates: List[CandidateTransaction] = Field(default_factory=list)
    summary: ImportSummary = Field(default_factory=ImportSummary)
    progress_percent: int = 0
    last_error: Optional[str] = None
    can_retry: bool = False


class LedgerRecord(BaseModel):
    date: datetime.date
    amount: Decimal
    description: str
    category: str = "Other"


class CommitResult(BaseModel):
    success: bool
    imported: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[str] = Field(default_factory=list)
