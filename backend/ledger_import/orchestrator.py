"""
Import session state machine.

One ImportOrchestrator owns one import session for one owner:

    collecting -> parsing -> previewing -> committing -> completed | failed

Failures during collecting/parsing need a new file. A failed commit keeps
the candidates, selections and category edits so the user can retry.
Every await is tagged with the session generation; results that come back
after the session was closed or restarted are dropped.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence

from .classifier import VALID_CATEGORIES, CategoryClassifier
from .column_mapper import detect_column_mapping, ordered_missing_roles
from .csv_parser import parse_csv
from .csv_validator import CSVRowValidator
from .duplicates import check_duplicates
from .errors import InvalidIntentError, PersistenceError
from .file_gate import UploadCandidate, unsupported_type_message, validate_file
from .langfuse_tracer import LangfuseTracer, get_tracer
from .models import (
    CandidateTransaction,
    ClassificationMethod,
    CommitResult,
    ImportPhase,
    ImportSnapshot,
    ImportSummary,
    LedgerRecord,
)
from .persistence import LedgerRepository

logger = logging.getLogger(__name__)

IMPORT_IN_PROGRESS = "Import already in progress"
ENCODING_ERROR = "File encoding error. Please ensure the file is UTF-8 encoded"
NO_TRANSACTIONS = "No transaction data found in the file."
READ_ERROR = "Unable to read file. Please try again."
UNEXPECTED_FILE_ERROR = "An unexpected error occurred while processing the file."
UNEXPECTED_COMMIT_ERROR = "An unexpected error occurred during import."


def sort_by_date_desc(candidates: Sequence[CandidateTransaction]) -> List[CandidateTransaction]:
    """Newest first, undated rows last; equal dates keep their input order."""
    return sorted(
        candidates,
        key=lambda c: (c.parsed_date is None, -c.parsed_date.toordinal() if c.parsed_date else 0),
    )


def calculate_summary(
    candidates: Sequence[CandidateTransaction], duplicate_count: int = 0
) -> ImportSummary:
    valid_count = sum(1 for c in candidates if c.is_valid)
    selected = [c for c in candidates if c.is_selected]
    amount_sum = sum(
        (c.parsed_amount for c in selected if c.is_valid and c.parsed_amount is not None),
        Decimal("0"),
    )
    return ImportSummary(
        total=len(candidates),
        valid_count=valid_count,
        invalid_count=len(candidates) - valid_count,
        selected_count=len(selected),
        duplicate_count=duplicate_count,
        selected_amount_sum=amount_sum,
    )


def format_date_for_db(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def missing_columns_message(roles: Sequence[str]) -> str:
    return (
        f"Missing required columns: {', '.join(roles)}. "
        "Please ensure your CSV has date, amount, and description columns."
    )


class ImportOrchestrator:
    """
    Drives one import session from file selection to commit.

    UI intents map to methods: select_file, toggle_row, select_all,
    set_category, commit and close. Each returns the new state (or a
    CommitResult); snapshot() returns a copy that callers may keep.
    """

    def __init__(
        self,
        owner_id: str,
        repository: LedgerRepository,
        classifier: Optional[CategoryClassifier] = None,
        tracer: Optional[LangfuseTracer] = None,
    ):
        self.owner_id = owner_id
        self.repository = repository
        self.classifier = classifier or CategoryClassifier()
        self.tracer = tracer or get_tracer()
        self._state = ImportSnapshot()
        self._file: Optional[UploadCandidate] = None
        self._generation = 0

    # -- state helpers -----------------------------------------------------

    @property
    def phase(self) -> ImportPhase:
        return self._state.phase

    def snapshot(self) -> ImportSnapshot:
        return self._state.model_copy(deep=True)

    def _reset(self) -> None:
        self._generation += 1
        self._file = None
        self._state = ImportSnapshot()

    def _is_stale(self, generation: int) -> bool:
        if generation != self._generation:
            logger.warning("Discarding result for closed import session %d", generation)
            return True
        return False

    def _fail(self, message: str, recoverable: bool = False) -> ImportSnapshot:
        logger.warning("Import failed during %s: %s", self._state.phase.value, message)
        if not recoverable:
            self._state.candidates = []
            self._state.summary = ImportSummary()
        self._state.phase = ImportPhase.FAILED
        self._state.last_error = message
        self._state.can_retry = recoverable
        return self.snapshot()

    def _refresh_summary(self) -> None:
        self._state.summary = calculate_summary(
            self._state.candidates, self._state.summary.duplicate_count
        )

    def _require_editable(self) -> None:
        state = self._state
        if state.phase == ImportPhase.COMMITTING:
            raise InvalidIntentError(IMPORT_IN_PROGRESS)
        if not (
            state.phase == ImportPhase.PREVIEWING
            or (state.phase == ImportPhase.FAILED and state.can_retry)
        ):
            raise InvalidIntentError("No transactions to edit")

    def _resume_preview(self) -> None:
        # an edit after a failed commit puts the session back into preview
        if self._state.phase == ImportPhase.FAILED:
            self._state.phase = ImportPhase.PREVIEWING
            self._state.last_error = None
            self._state.can_retry = False

    def _candidate_at(self, index: int) -> CandidateTransaction:
        if index < 0 or index >= len(self._state.candidates):
            raise InvalidIntentError("Invalid row index")
        return self._state.candidates[index]

    # -- file processing ---------------------------------------------------

    async def select_file(self, file: Optional[UploadCandidate]) -> ImportSnapshot:
        """
        Validate, parse, map, extract, validate and classify an upload.

        Args:
            file: The chosen upload

        Returns:
            Snapshot in phase previewing, or failed with a single message
        """
        if self._state.phase == ImportPhase.COMMITTING:
            raise InvalidIntentError(IMPORT_IN_PROGRESS)

        self._reset()
        generation = self._generation

        validation = validate_file(file)
        if not validation.valid:
            return self._fail(validation.error)

        self._file = file
        self._state.file_name = file.name
        self._state.phase = ImportPhase.PARSING
        self._state.progress_percent = 10
        logger.info("Processing %s upload %r (%d bytes)", validation.file_type, file.name, file.size)

        if validation.file_type != "csv":
            return self._fail(unsupported_type_message(validation.file_type))

        trace = self.tracer.create_trace(
            "import_file", user_id=self.owner_id, metadata={"file_name": file.name}
        )
        try:
            try:
                content = await file.read_text()
            except UnicodeDecodeError:
                if self._is_stale(generation):
                    return self.snapshot()
                return self._fail(ENCODING_ERROR)
            except OSError:
                logger.warning("Reading %r failed", file.name, exc_info=True)
                if self._is_stale(generation):
                    return self.snapshot()
                return self._fail(READ_ERROR)
            if self._is_stale(generation):
                return self.snapshot()
            self._state.progress_percent = 30
            return self._build_preview(content, trace)
        except Exception:
            logger.exception("Unexpected error while processing %r", file.name)
            if self._is_stale(generation):
                return self.snapshot()
            return self._fail(UNEXPECTED_FILE_ERROR)
        finally:
            self.tracer.end_trace(trace)

    def _build_preview(self, content: str, trace) -> ImportSnapshot:
        table = parse_csv(content)
        self.tracer.add_span(
            trace,
            "parse",
            output_text=f"{len(table.rows)} rows",
            metadata={"delimiter": table.delimiter, "diagnostics": len(table.diagnostics)},
        )
        if table.diagnostics and not table.rows:
            return self._fail(f"Unable to parse CSV: {table.diagnostics[0].message}")

        mapping = detect_column_mapping(table.header_row)
        self.tracer.add_span(trace, "map_columns", metadata=mapping.model_dump(mode="json"))
        if not mapping.is_complete:
            return self._fail(missing_columns_message(ordered_missing_roles(mapping)))
        self._state.progress_percent = 50

        column_count = None
        if table.header_row and table.delimiter == ",":
            column_count = len(table.header_row)
        validator = CSVRowValidator(
            mapping, has_header=table.header_row is not None, column_count=column_count
        )
        extraction = validator.extract_transactions(table.rows)
        self.tracer.add_span(trace, "extract", output_text=f"{len(extraction.candidates)} transactions")
        if not extraction.candidates:
            return self._fail(NO_TRANSACTIONS)
        self._state.progress_percent = 60

        candidates = [validator.build_candidate(raw) for raw in extraction.candidates]
        self._state.progress_percent = 70

        candidates = self.classifier.classify_batch(candidates)
        self.tracer.add_span(
            trace,
            "classify",
            metadata={
                method.value: sum(1 for c in candidates if c.classification_method == method)
                for method in ClassificationMethod
            },
        )
        self._state.progress_percent = 90

        self._state.candidates = sort_by_date_desc(candidates)
        self._refresh_summary()
        self._state.phase = ImportPhase.PREVIEWING
        self._state.progress_percent = 100
        self._state.last_error = None
        summary = self._state.summary
        logger.info(
            "Preview ready: %d transactions, %d valid, %d invalid",
            summary.total,
            summary.valid_count,
            summary.invalid_count,
        )
        return self.snapshot()

    # -- preview edits -----------------------------------------------------

    def toggle_row(self, index: int) -> ImportSnapshot:
        """Flip selection of one row; invalid rows stay unselected."""
        self._require_editable()
        candidate = self._candidate_at(index)
        self._resume_preview()
        if candidate.is_valid:
            candidate.is_selected = not candidate.is_selected
            self._refresh_summary()
        return self.snapshot()

    def select_all(self, selected: bool) -> ImportSnapshot:
        self._require_editable()
        self._resume_preview()
        for candidate in self._state.candidates:
            candidate.is_selected = bool(selected) and candidate.is_valid
        self._refresh_summary()
        return self.snapshot()

    def set_category(self, index: int, category: str) -> ImportSnapshot:
        """Override a row's category and remember it for future imports."""
        if category not in VALID_CATEGORIES:
            raise InvalidIntentError(f"Unknown category: {category}")
        self._require_editable()
        candidate = self._candidate_at(index)
        self._resume_preview()
        candidate.category = category
        candidate.classification_method = ClassificationMethod.CORRECTION
        candidate.classification_confidence = 1.0
        self.classifier.record_correction(candidate.description, category)
        self._refresh_summary()
        return self.snapshot()

    # -- commit ------------------------------------------------------------

    def _to_record(self, candidate: CandidateTransaction) -> LedgerRecord:
        return LedgerRecord(
            date=candidate.parsed_date,
            amount=candidate.parsed_amount,
            description=candidate.description,
            category=candidate.category,
        )

    async def commit(self) -> CommitResult:
        """
        Import selected valid rows, skipping ones already in the ledger.

        A second call while a commit is in flight is rejected without
        touching the repository.
        """
        state = self._state
        if state.phase == ImportPhase.COMMITTING:
            return CommitResult(success=False, errors=[IMPORT_IN_PROGRESS])
        if not (
            state.phase == ImportPhase.PREVIEWING
            or (state.phase == ImportPhase.FAILED and state.can_retry)
        ):
            return CommitResult(success=False, errors=["No import is ready to commit"])

        generation = self._generation
        state.phase = ImportPhase.COMMITTING
        state.progress_percent = 0
        state.last_error = None
        state.can_retry = False

        selected = [c for c in state.candidates if c.is_valid and c.is_selected]
        if not selected:
            state.phase = ImportPhase.PREVIEWING
            state.progress_percent = 100
            return CommitResult(success=True)

        state.progress_percent = 20
        records = [self._to_record(c) for c in selected]

        dates = [record.date for record in records]
        trace = self.tracer.create_trace(
            "commit_import",
            user_id=self.owner_id,
            metadata={
                "selected": len(records),
                "from_date": format_date_for_db(min(dates)),
                "to_date": format_date_for_db(max(dates)),
            },
        )
        try:
            return await self._submit(records, generation, trace)
        except Exception:
            logger.exception("Unexpected error while committing import")
            if not self._is_stale(generation):
                self._fail(UNEXPECTED_COMMIT_ERROR, recoverable=True)
            return CommitResult(success=False, errors=[UNEXPECTED_COMMIT_ERROR])
        finally:
            self.tracer.end_trace(trace)

    async def _submit(self, records: List[LedgerRecord], generation: int, trace) -> CommitResult:
        try:
            existing = await self.repository.find_potential_duplicates(self.owner_id, records)
        except PersistenceError as e:
            message = str(e) or "Unable to check for duplicates."
            if not self._is_stale(generation):
                self._fail(message, recoverable=True)
            return CommitResult(success=False, failed=len(records), errors=[message])
        if self._is_stale(generation):
            return CommitResult(success=False, errors=["Import session was closed"])

        check = check_duplicates(records, existing)
        duplicates = len(check.duplicates)
        self._state.summary.duplicate_count = duplicates
        self._state.progress_percent = 50
        if duplicates:
            logger.warning("Skipping %d duplicate transactions", duplicates)
        self.tracer.add_span(
            trace, "duplicate_check", metadata={"duplicates": duplicates, "unique": len(check.unique)}
        )

        if not check.unique:
            self._state.phase = ImportPhase.COMPLETED
            self._state.progress_percent = 100
            notes = [f"{duplicates} duplicate transactions skipped"] if duplicates else []
            return CommitResult(success=True, duplicates=duplicates, errors=notes)

        try:
            result = await self.repository.insert_batch(self.owner_id, check.unique)
        except PersistenceError as e:
            message = (
                f"Unable to save transactions ({e}). "
                "Nothing was imported; your selections are kept, so you can retry."
            )
            if not self._is_stale(generation):
                self._fail(message, recoverable=True)
            return CommitResult(
                success=False, failed=len(check.unique), duplicates=duplicates, errors=[message]
            )
        if self._is_stale(generation):
            return CommitResult(success=False, errors=["Import session was closed"])

        self._state.progress_percent = 100
        self.tracer.add_span(
            trace,
            "insert_batch",
            metadata={"inserted": result.inserted_count, "failed": len(result.failed_records)},
        )

        submitted = len(check.unique)
        failed = len(result.failed_records) or max(submitted - result.inserted_count, 0)
        if failed:
            if result.inserted_count:
                message = (
                    f"{result.inserted_count} of {submitted} transactions imported. {failed} failed. "
                    "Retrying will skip the transactions that were already imported."
                )
            else:
                message = (
                    f"None of the {submitted} transactions were imported. "
                    "Your selections are kept, so you can retry."
                )
            self._fail(message, recoverable=True)
            return CommitResult(
                success=False,
                imported=result.inserted_count,
                failed=failed,
                duplicates=duplicates,
                errors=result.errors or [message],
            )

        self._state.phase = ImportPhase.COMPLETED
        logger.info("Imported %d transactions, %d duplicates skipped", result.inserted_count, duplicates)
        return CommitResult(
            success=True, imported=result.inserted_count, duplicates=duplicates
        )

    # -- close -------------------------------------------------------------

    def close(self) -> ImportSnapshot:
        """Drop the file and all session data; in-flight results are ignored."""
        self._reset()
        return self.snapshot()
