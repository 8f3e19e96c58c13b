"""Tests for the import session state machine."""
import asyncio
from datetime import date
from decimal import Decimal

import pytest

from ledger_import import corrections
from ledger_import.classifier import CategoryClassifier
from ledger_import.corrections import CorrectionMap, JsonFileKeyValueStore
from ledger_import.errors import InvalidIntentError, PersistenceError
from ledger_import.file_gate import UploadCandidate
from ledger_import.models import ClassificationMethod, ImportPhase, LedgerRecord
from ledger_import.orchestrator import (
    IMPORT_IN_PROGRESS,
    READ_ERROR,
    UNEXPECTED_FILE_ERROR,
    ImportOrchestrator,
    calculate_summary,
    format_date_for_db,
    sort_by_date_desc,
)
from ledger_import.persistence import InMemoryLedgerRepository, InsertBatchResult

MIXED_CSV = """Date,Amount,Description
2024-02-10,-5.00,Refund
not-a-date,12.00,Mystery
2024-02-11,20.00,Cinema"""


def _csv(content, name="statement.csv"):
    return UploadCandidate.from_bytes(name, content.encode("utf-8"))


class BlockingLedger(InMemoryLedgerRepository):
    """Holds insert_batch until release is set."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.duplicate_checks = 0

    async def find_potential_duplicates(self, owner_id, candidates):
        self.duplicate_checks += 1
        return await super().find_potential_duplicates(owner_id, candidates)

    async def insert_batch(self, owner_id, records):
        await self.release.wait()
        return await super().insert_batch(owner_id, records)


class PartiallyFailingLedger(InMemoryLedgerRepository):
    """Rejects records whose description is in fail_descriptions."""

    def __init__(self, fail_descriptions):
        super().__init__()
        self.fail_descriptions = set(fail_descriptions)

    async def insert_batch(self, owner_id, records):
        saved = [r for r in records if r.description not in self.fail_descriptions]
        rejected = [r for r in records if r.description in self.fail_descriptions]
        self.entries[owner_id].extend(saved)
        return InsertBatchResult(
            inserted_count=len(saved),
            failed_records=rejected,
            errors=[f"Could not save '{r.description}'" for r in rejected],
        )


class UnreachableLedger(InMemoryLedgerRepository):
    def __init__(self):
        super().__init__()
        self.reachable = False

    async def find_potential_duplicates(self, owner_id, candidates):
        if not self.reachable:
            raise PersistenceError("Unable to check for duplicates.")
        return await super().find_potential_duplicates(owner_id, candidates)


class TestSelectFile:
    @pytest.mark.asyncio
    async def test_builds_preview(self, orchestrator, sample_upload):
        state = await orchestrator.select_file(sample_upload)

        assert state.phase == ImportPhase.PREVIEWING
        assert state.progress_percent == 100
        assert state.last_error is None
        assert state.file_name == "statement.csv"
        assert [c.description for c in state.candidates] == [
            "Starbucks Coffee",
            "Uber Trip",
            "Grocery Store",
        ]
        assert [c.category for c in state.candidates] == [
            "Food & Dining",
            "Transportation",
            "Shopping",
        ]
        assert all(c.is_selected for c in state.candidates)
        assert state.summary.total == 3
        assert state.summary.selected_count == 3
        assert state.summary.selected_amount_sum == Decimal("84.50")

    @pytest.mark.asyncio
    async def test_quoted_amount_with_thousands_separator(self, orchestrator):
        content = 'Date,Amount,Description\n2024-01-15,"$1,234.56",Coffee at Starbucks'
        state = await orchestrator.select_file(_csv(content))

        assert len(state.candidates) == 1
        candidate = state.candidates[0]
        assert candidate.is_valid
        assert candidate.parsed_amount == Decimal("1234.56")
        assert candidate.parsed_date == date(2024, 1, 15)
        assert candidate.category == "Food & Dining"
        assert candidate.classification_method == ClassificationMethod.RULE

    @pytest.mark.asyncio
    async def test_unquoted_amount_with_thousands_separator(self, orchestrator):
        content = "Date,Amount,Description\n2024-01-15,$1,234.56,Coffee at Starbucks"
        state = await orchestrator.select_file(_csv(content))

        assert state.phase == ImportPhase.PREVIEWING
        assert len(state.candidates) == 1
        candidate = state.candidates[0]
        assert candidate.is_valid
        assert candidate.parsed_amount == Decimal("1234.56")
        assert candidate.description == "Coffee at Starbucks"
        assert candidate.category == "Food & Dining"
        assert candidate.classification_method == ClassificationMethod.RULE

    @pytest.mark.asyncio
    async def test_semicolon_file(self, orchestrator):
        content = "date;amount;description\n2024-01-15;12,50;Lunch at cafe"
        state = await orchestrator.select_file(_csv(content))
        # comma is a thousands separator, not a decimal mark
        assert state.candidates[0].parsed_amount == Decimal("1250")

    @pytest.mark.asyncio
    async def test_invalid_rows_are_kept_but_unselected(self, orchestrator):
        state = await orchestrator.select_file(_csv(MIXED_CSV))

        assert state.phase == ImportPhase.PREVIEWING
        assert [c.description for c in state.candidates] == ["Cinema", "Refund", "Mystery"]
        assert [c.is_selected for c in state.candidates] == [True, False, False]
        assert state.candidates[1].validation_errors == ["Row 2: Amount must be positive '-5.00'"]
        assert state.candidates[2].validation_errors == ["Row 3: Invalid date format 'not-a-date'"]
        assert state.summary.valid_count == 1
        assert state.summary.invalid_count == 2
        assert state.summary.selected_amount_sum == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_corrections_apply_to_new_files(self, orchestrator, classifier):
        classifier.record_correction("xyz mart", "Shopping")
        state = await orchestrator.select_file(
            _csv("Date,Amount,Description\n2024-03-01,15.00,XYZ Mart Purchase")
        )
        assert state.candidates[0].category == "Shopping"
        assert state.candidates[0].classification_method == ClassificationMethod.CORRECTION

    @pytest.mark.asyncio
    async def test_gate_rejection(self, orchestrator):
        state = await orchestrator.select_file(_csv("a,b", name="statement.txt"))
        assert state.phase == ImportPhase.FAILED
        assert state.last_error == "Please select a supported file (CSV, PDF, PNG, or JPG)"
        assert state.can_retry is False

    @pytest.mark.asyncio
    async def test_no_file(self, orchestrator):
        state = await orchestrator.select_file(None)
        assert state.phase == ImportPhase.FAILED
        assert state.last_error == "No file selected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,label", [("statement.pdf", "PDF"), ("receipt.png", "Image")])
    async def test_pdf_and_images_are_not_parsed(self, orchestrator, name, label):
        state = await orchestrator.select_file(UploadCandidate.from_bytes(name, b"\x89binary"))
        assert state.phase == ImportPhase.FAILED
        assert state.last_error.startswith(f"{label} file detected.")
        assert state.candidates == []

    @pytest.mark.asyncio
    async def test_missing_columns(self, orchestrator):
        state = await orchestrator.select_file(_csv("Date,Reference\n2024-01-01,abc"))
        assert state.phase == ImportPhase.FAILED
        assert state.last_error.startswith("Missing required columns: amount, description.")
        assert state.candidates == []

    @pytest.mark.asyncio
    async def test_header_only(self, orchestrator):
        state = await orchestrator.select_file(_csv("Date,Amount,Description\n"))
        assert state.last_error == "No transaction data found in the file."

    @pytest.mark.asyncio
    async def test_blank_file(self, orchestrator):
        state = await orchestrator.select_file(_csv("\n \n"))
        assert state.last_error == "Unable to parse CSV: No data rows found"

    @pytest.mark.asyncio
    async def test_non_utf8_file(self, orchestrator):
        state = await orchestrator.select_file(UploadCandidate.from_bytes("s.csv", b"\xff\xfe\xfa"))
        assert state.phase == ImportPhase.FAILED
        assert "UTF-8" in state.last_error

    @pytest.mark.asyncio
    async def test_new_file_replaces_previous_session(self, orchestrator, sample_upload):
        await orchestrator.select_file(sample_upload)
        state = await orchestrator.select_file(_csv(MIXED_CSV, name="other.csv"))
        assert state.file_name == "other.csv"
        assert state.summary.total == 3
        assert state.candidates[0].description == "Cinema"

    @pytest.mark.asyncio
    async def test_stale_read_is_discarded(self, orchestrator, sample_upload):
        release = asyncio.Event()

        class SlowUpload(UploadCandidate):
            async def read_text(self):
                await release.wait()
                return await super().read_text()

        slow = SlowUpload(name="slow.csv", size=5, content=b"Date,Amount,Description\n2024-01-01,1,x")
        task = asyncio.create_task(orchestrator.select_file(slow))
        await asyncio.sleep(0)
        assert orchestrator.phase == ImportPhase.PARSING

        orchestrator.close()
        release.set()
        await task

        state = orchestrator.snapshot()
        assert state.phase == ImportPhase.COLLECTING
        assert state.candidates == []
        assert state.file_name is None


class TestPreviewEdits:
    @pytest.mark.asyncio
    async def test_toggle_row(self, orchestrator, sample_upload):
        await orchestrator.select_file(sample_upload)

        state = orchestrator.toggle_row(0)
        assert state.candidates[0].is_selected is False
        assert state.summary.selected_count == 2
        assert state.summary.selected_amount_sum == Decimal("80.00")

        state = orchestrator.toggle_row(0)
        assert state.candidates[0].is_selected is True
        assert state.summary.selected_count == 3

    @pytest.mark.asyncio
    async def test_toggle_invalid_row_is_noop(self, orchestrator):
        await orchestrator.select_file(_csv(MIXED_CSV))
        state = orchestrator.toggle_row(1)
        assert state.candidates[1].is_selected is False
        assert state.summary.selected_count == 1

    @pytest.mark.asyncio
    async def test_toggle_out_of_range(self, orchestrator, sample_upload):
        await orchestrator.select_file(sample_upload)
        with pytest.raises(InvalidIntentError, match="Invalid row index"):
            orchestrator.toggle_row(3)
        with pytest.raises(InvalidIntentError):
            orchestrator.toggle_row(-1)

    @pytest.mark.asyncio
    async def test_select_all_only_affects_valid_rows(self, orchestrator):
        await orchestrator.select_file(_csv(MIXED_CSV))

        state = orchestrator.select_all(False)
        assert state.summary.selected_count == 0

        state = orchestrator.select_all(True)
        assert [c.is_selected for c in state.candidates] == [True, False, False]
        assert state.summary.selected_count == 1

    @pytest.mark.asyncio
    async def test_set_category_records_correction(self, orchestrator, classifier, sample_upload):
        await orchestrator.select_file(sample_upload)

        state = orchestrator.set_category(2, "Food & Dining")

        grocery = state.candidates[2]
        assert grocery.description == "Grocery Store"
        assert grocery.category == "Food & Dining"
        assert grocery.classification_method == ClassificationMethod.CORRECTION
        assert classifier.classify("grocery store").category == "Food & Dining"

    @pytest.mark.asyncio
    async def test_set_unknown_category(self, orchestrator, sample_upload):
        await orchestrator.select_file(sample_upload)
        with pytest.raises(InvalidIntentError):
            orchestrator.set_category(0, "Groceries")

    def test_edits_need_a_preview(self, orchestrator):
        with pytest.raises(InvalidIntentError):
            orchestrator.select_all(True)

    @pytest.mark.asyncio
    async def test_invariants_hold_after_edits(self, orchestrator):
        await orchestrator.select_file(_csv(MIXED_CSV))
        orchestrator.select_all(True)
        orchestrator.toggle_row(2)
        state = orchestrator.toggle_row(0)

        assert state.summary.selected_count == sum(c.is_selected for c in state.candidates)
        assert not any(c.is_selected and not c.is_valid for c in state.candidates)


class TestCommit:
    @pytest.mark.asyncio
    async def test_successful_commit(self, orchestrator, ledger, sample_upload):
        await orchestrator.select_file(sample_upload)
        orchestrator.toggle_row(2)

        result = await orchestrator.commit()

        assert result.success is True
        assert result.imported == 2
        assert result.duplicates == 0
        assert orchestrator.phase == ImportPhase.COMPLETED
        saved = ledger.entries["owner-1"]
        assert {r.description for r in saved} == {"Starbucks Coffee", "Uber Trip"}
        assert saved[0].date == date(2024, 1, 3)
        assert saved[0].category == "Food & Dining"

    @pytest.mark.asyncio
    async def test_duplicates_are_skipped(self, orchestrator, ledger, sample_upload):
        ledger.entries["owner-1"].append(
            LedgerRecord(date=date(2024, 1, 2), amount=Decimal("30.01"), description="uber trip")
        )
        await orchestrator.select_file(sample_upload)

        result = await orchestrator.commit()

        assert result.success is True
        assert result.imported == 2
        assert result.duplicates == 1
        assert orchestrator.snapshot().summary.duplicate_count == 1
        assert len(ledger.entries["owner-1"]) == 3

    @pytest.mark.asyncio
    async def test_amount_beyond_tolerance_is_not_a_duplicate(self, orchestrator, ledger):
        ledger.entries["owner-1"].append(
            LedgerRecord(date=date(2024, 1, 15), amount=Decimal("42.00"), description="Coffee at Starbucks")
        )
        await orchestrator.select_file(
            _csv("Date,Amount,Description\n2024-01-15,42.02,Coffee at Starbucks")
        )

        result = await orchestrator.commit()

        assert result.duplicates == 0
        assert result.imported == 1

    @pytest.mark.asyncio
    async def test_all_duplicates_completes(self, orchestrator, ledger):
        ledger.entries["owner-1"].append(
            LedgerRecord(date=date(2024, 1, 15), amount=Decimal("42.00"), description="Coffee")
        )
        await orchestrator.select_file(_csv("Date,Amount,Description\n2024-01-15,42.01,COFFEE"))

        result = await orchestrator.commit()

        assert result.success is True
        assert result.imported == 0
        assert result.errors == ["1 duplicate transactions skipped"]
        assert orchestrator.phase == ImportPhase.COMPLETED
        assert ledger.insert_calls == 0

    @pytest.mark.asyncio
    async def test_nothing_selected(self, orchestrator, ledger, sample_upload):
        await orchestrator.select_file(sample_upload)
        orchestrator.select_all(False)

        result = await orchestrator.commit()

        assert result.success is True
        assert result.imported == 0
        assert orchestrator.phase == ImportPhase.PREVIEWING
        assert ledger.duplicate_checks == 0

    @pytest.mark.asyncio
    async def test_commit_requires_preview(self, orchestrator, ledger):
        result = await orchestrator.commit()
        assert result.success is False
        assert ledger.duplicate_checks == 0

    @pytest.mark.asyncio
    async def test_second_commit_while_in_flight_is_rejected(self, classifier, sample_upload):
        ledger = BlockingLedger()
        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=classifier)
        await orchestrator.select_file(sample_upload)

        first = asyncio.create_task(orchestrator.commit())
        await asyncio.sleep(0)
        assert orchestrator.phase == ImportPhase.COMMITTING

        second = await orchestrator.commit()
        assert second.success is False
        assert second.errors == [IMPORT_IN_PROGRESS]
        assert ledger.duplicate_checks == 1

        with pytest.raises(InvalidIntentError):
            orchestrator.toggle_row(0)
        with pytest.raises(InvalidIntentError):
            await orchestrator.select_file(sample_upload)

        ledger.release.set()
        result = await first
        assert result.success is True
        assert result.imported == 3
        assert ledger.duplicate_checks == 1

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_session_for_retry(self, classifier, sample_upload):
        ledger = PartiallyFailingLedger({"Uber Trip"})
        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=classifier)
        before = await orchestrator.select_file(sample_upload)

        result = await orchestrator.commit()

        assert result.success is False
        assert result.imported == 2
        assert result.failed == 1
        assert result.errors == ["Could not save 'Uber Trip'"]
        state = orchestrator.snapshot()
        assert state.phase == ImportPhase.FAILED
        assert state.can_retry is True
        assert state.last_error.startswith("2 of 3 transactions imported. 1 failed.")
        assert state.candidates == before.candidates

        # rows stay editable, which puts the session back into preview
        state = orchestrator.toggle_row(0)
        assert state.phase == ImportPhase.PREVIEWING
        state = orchestrator.toggle_row(0)

        ledger.fail_descriptions.clear()
        retry = await orchestrator.commit()

        assert retry.success is True
        assert retry.imported == 1
        assert retry.duplicates == 2
        assert len(ledger.entries["owner-1"]) == 3

    @pytest.mark.asyncio
    async def test_total_insert_failure(self, classifier, sample_upload):
        ledger = PartiallyFailingLedger({"Uber Trip", "Grocery Store", "Starbucks Coffee"})
        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=classifier)
        await orchestrator.select_file(sample_upload)

        result = await orchestrator.commit()

        assert result.imported == 0
        assert result.failed == 3
        state = orchestrator.snapshot()
        assert state.phase == ImportPhase.FAILED
        assert state.last_error.startswith("None of the 3 transactions were imported.")
        assert len(state.candidates) == 3

    @pytest.mark.asyncio
    async def test_repository_error_is_recoverable(self, classifier, sample_upload):
        ledger = UnreachableLedger()
        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=classifier)
        await orchestrator.select_file(sample_upload)
        orchestrator.set_category(0, "Entertainment")

        result = await orchestrator.commit()

        assert result.success is False
        assert result.errors == ["Unable to check for duplicates."]
        state = orchestrator.snapshot()
        assert state.phase == ImportPhase.FAILED
        assert state.can_retry is True
        assert state.candidates[0].category == "Entertainment"

        ledger.reachable = True
        retry = await orchestrator.commit()
        assert retry.success is True
        assert retry.imported == 3
        assert ledger.entries["owner-1"][0].category == "Entertainment"

    @pytest.mark.asyncio
    async def test_close_during_commit_ignores_result(self, classifier, sample_upload):
        ledger = BlockingLedger()
        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=classifier)
        await orchestrator.select_file(sample_upload)

        task = asyncio.create_task(orchestrator.commit())
        await asyncio.sleep(0)
        orchestrator.close()
        ledger.release.set()
        result = await task

        assert result.success is False
        state = orchestrator.snapshot()
        assert state.phase == ImportPhase.COLLECTING
        assert state.candidates == []


class TestClose:
    @pytest.mark.asyncio
    async def test_close_resets_everything_but_corrections(self, orchestrator, classifier, sample_upload):
        await orchestrator.select_file(sample_upload)
        orchestrator.set_category(1, "Travel")

        state = orchestrator.close()

        assert state.phase == ImportPhase.COLLECTING
        assert state.candidates == []
        assert state.summary.total == 0
        assert state.file_name is None
        assert state.progress_percent == 0
        assert classifier.classify("Uber Trip").category == "Travel"


class TestHelpers:
    def _candidate(self, description, parsed_date):
        from ledger_import.models import CandidateTransaction

        return CandidateTransaction(description=description, parsed_date=parsed_date)

    def test_sort_is_descending_stable_and_nulls_last(self):
        items = [
            self._candidate("a", date(2024, 1, 1)),
            self._candidate("b", None),
            self._candidate("c", date(2024, 1, 5)),
            self._candidate("d", date(2024, 1, 1)),
            self._candidate("e", None),
        ]
        assert [c.description for c in sort_by_date_desc(items)] == ["c", "a", "d", "b", "e"]

    def test_summary_of_nothing(self):
        summary = calculate_summary([])
        assert summary.total == 0
        assert summary.selected_amount_sum == Decimal("0")

    def test_format_date_for_db(self):
        assert format_date_for_db(date(2024, 3, 7)) == "2024-03-07"
        assert format_date_for_db(None) == ""


class TestProcessingFailures:
    @pytest.mark.asyncio
    async def test_read_failure(self, orchestrator):
        class BrokenUpload(UploadCandidate):
            async def read_text(self):
                raise OSError("device not ready")

        state = await orchestrator.select_file(BrokenUpload(name="s.csv", size=10))

        assert state.phase == ImportPhase.FAILED
        assert state.last_error == READ_ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_leave_session_parsing(self, ledger, sample_upload):
        class ExplodingClassifier(CategoryClassifier):
            def classify_batch(self, transactions):
                raise RuntimeError("boom")

        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=ExplodingClassifier())

        state = await orchestrator.select_file(sample_upload)

        assert state.phase == ImportPhase.FAILED
        assert state.last_error == UNEXPECTED_FILE_ERROR
        assert state.candidates == []

        # a fresh file still works afterwards
        orchestrator.classifier = CategoryClassifier()
        assert (await orchestrator.select_file(sample_upload)).phase == ImportPhase.PREVIEWING


class TestLargeFiles:
    @pytest.mark.asyncio
    async def test_corrections_file_read_once_per_upload(self, ledger, tmp_path, monkeypatch):
        reads = []
        real_load_json = corrections.load_json

        def counting_load_json(path, default):
            reads.append(path)
            return real_load_json(path, default)

        monkeypatch.setattr(corrections, "load_json", counting_load_json)
        store = JsonFileKeyValueStore(tmp_path / "corrections.json")
        classifier = CategoryClassifier(CorrectionMap(store))
        classifier.record_correction("corner shop", "Shopping")
        orchestrator = ImportOrchestrator("owner-1", ledger, classifier=classifier)
        rows = "\n".join(f"2024-01-{(i % 28) + 1:02d},{i + 1}.00,Corner Shop {i}" for i in range(500))
        reads.clear()

        state = await orchestrator.select_file(_csv("Date,Amount,Description\n" + rows))

        assert state.summary.total == 500
        assert all(c.category == "Shopping" for c in state.candidates)
        assert len(reads) == 1
