"""
Document pipeline against the committing session factory.

The inline runner processes each job inside ``submit``, so results can be
asserted right after the call returns.
"""

from decimal import Decimal
from uuid import UUID

import pytest

from docledger_config import ConfigRegistry
from docledger_config.loader import parse_company
from docledger_kernel.db.engine import session_scope
from docledger_kernel.domain.documents import DocumentType, JobStatus, LineItem, SubmitStatus
from docledger_kernel.domain.duplicates import MatchType
from docledger_kernel.exceptions import (
    AlreadyPostedError,
    ApprovalRequiredError,
    InvalidJobTransitionError,
    JobNotFoundError,
    JobReferencedError,
    PolicyRejectedError,
    PostingAuthorityError,
)
from docledger_kernel.services.approval_service import ApprovalService
from docledger_kernel.services.audit_service import AuditService
from docledger_kernel.services.period_service import PeriodService
from docledger_kernel.utils.hashing import hash_file
from docledger_services.ports import DetectedReceipt, InMemoryObjectStore
from tests.conftest import FakeErp, FakeRateProvider, approve_request, make_classification

COMPANY = "acme"
PDF = b"%PDF-1.7 invoice F-1001"


def _receipt(**overrides):
    values = dict(
        doc_type=DocumentType.RECEIPT,
        supplier="Pressbyrån",
        total_amount=Decimal("400.00"),
        vat_amount=Decimal("80.00"),
        invoice_number=None,
        confidence=0.95,
        line_items=(LineItem("Kaffe och smörgås", Decimal("320.00"), Decimal("80.00"), "5831"),),
    )
    values.update(overrides)
    return make_classification(**values)


class RecordingRunner:
    """Keeps dispatched job ids without running them."""

    def __init__(self):
        self.dispatched: list[UUID] = []
        self.handler = None

    def bind(self, handler):
        self.handler = handler

    def dispatch(self, job_id):
        self.dispatched.append(job_id)


class FlakyObjectStore(InMemoryObjectStore):
    """Refuses uploads while ``fail`` is set."""

    fail = False

    def upload(self, company_id, file_name, content, mime_type):
        if self.fail:
            raise ConnectionError("object store unreachable")
        return super().upload(company_id, file_name, content, mime_type)


def _audit_actions(session_factory, clock, job_id):
    with session_scope(session_factory) as session:
        return {e.action for e in AuditService(session, clock).entries_for("document_job", job_id)}


class TestSubmit:
    def test_invoice_from_new_supplier_waits_for_approval(self, pipeline, fake_ocr, captured_logs):
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")

        assert result.status == SubmitStatus.QUEUED
        job = pipeline.get_job(result.job_id)
        assert job.status == JobStatus.READY
        assert job.requires_approval is True
        assert job.approval_request_id is not None
        assert job.mime_type == "application/pdf"
        assert job.file_ref.startswith("mem://acme/")
        assert job.classification.supplier == "Kontorsbolaget AB"
        assert job.metadata["decision_rule"] == "workflow_requires_approval"
        assert job.metadata["approval_evaluation"]["matched_rules"] == ["new_supplier"]
        assert job.warnings == ()
        assert fake_ocr.calls == ["invoice.pdf"]

        steps = [r["to_status"] for r in captured_logs() if r["message"] == "job_status_changed"]
        assert steps == ["uploading", "scanning", "ocr", "analyzing", "ready"]

    def test_content_released_after_processing(self, pipeline):
        pipeline.submit(COMPANY, PDF, "invoice.pdf")
        assert pipeline._contents == {}

    def test_empty_content_refused(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.submit(COMPANY, b"", "empty.pdf")

    def test_identical_file_is_blocked(self, pipeline):
        first = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        second = pipeline.submit(COMPANY, PDF, "invoice-copy.pdf")

        assert second.status == SubmitStatus.DUPLICATE_BLOCKED
        assert second.job_id is None
        assert second.duplicate.match_type == MatchType.FILE_HASH
        assert second.duplicate.matched_job_id == first.job_id
        assert second.duplicate.can_override is False
        assert len(pipeline.list_jobs(COMPANY)) == 1

    def test_request_id_makes_submit_idempotent(self, pipeline):
        first = pipeline.submit(COMPANY, PDF, "invoice.pdf", request_id="upload-1")
        replay = pipeline.submit(COMPANY, PDF, "invoice.pdf", request_id="upload-1")

        assert replay.job_id == first.job_id
        assert replay.status == SubmitStatus.QUEUED
        assert replay.message == "Already submitted"

    def test_possible_duplicate_hint_is_a_warning(self, pipeline, fake_classifier):
        pipeline.submit(COMPANY, PDF, "invoice.pdf")
        fake_classifier.classification = make_classification(invoice_number="F-2002", total_amount=Decimal("1255.00"))

        result = pipeline.submit(
            COMPANY, b"%PDF-1.7 other", "other.pdf",
            metadata={"supplier": "Kontorsbolaget AB", "amount": "1255.00", "invoice_date": "2024-01-02"},
        )

        assert result.status == SubmitStatus.DUPLICATE_WARNING
        assert result.job_id is not None


class TestAnalysisDuplicates:
    def test_same_invoice_number_in_new_file_fails_then_override_and_retry(self, ledger, pipeline):
        first = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        second = pipeline.submit(COMPANY, b"%PDF-1.7 rescanned", "rescan.pdf")

        failed = pipeline.get_job(second.job_id)
        assert failed.status == JobStatus.ERROR
        assert "Duplicate" in failed.error
        assert failed.metadata["duplicate"]["match_type"] == "invoice_number"

        ledger.register_duplicate_override(
            COMPANY, first.job_id, second.job_id, "Supplier re-sent the invoice", "anna",
        )
        retried = pipeline.retry_job(second.job_id)

        assert retried.status == JobStatus.READY
        assert retried.error is None
        assert retried.metadata["retry_count"] == 1

    def test_overridden_file_cannot_be_submitted_again(self, ledger, pipeline):
        rescan = b"%PDF-1.7 rescanned"
        first = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        second = pipeline.submit(COMPANY, rescan, "rescan.pdf")
        ledger.register_duplicate_override(
            COMPANY, first.job_id, second.job_id, "Supplier re-sent the invoice", "anna",
            new_file_hash=hash_file(rescan),
        )
        assert pipeline.retry_job(second.job_id).status == JobStatus.READY

        again = pipeline.submit(
            COMPANY, rescan, "rescan-again.pdf",
            metadata={"supplier": "Kontorsbolaget AB", "invoice_number": "F-1001"},
        )

        assert again.status == SubmitStatus.DUPLICATE_BLOCKED
        assert again.job_id is None
        assert again.duplicate.can_override is False


class TestStageFailures:
    def test_ocr_failure_then_retry(self, pipeline, fake_ocr):
        fake_ocr.fail = True
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")

        job = pipeline.get_job(result.job_id)
        assert job.status == JobStatus.ERROR
        assert "OCR engine unavailable" in job.error
        assert job.file_ref is not None

        fake_ocr.fail = False
        assert pipeline.retry_job(result.job_id).status == JobStatus.READY

    def test_failure_after_upload_releases_content(self, pipeline, fake_ocr):
        fake_ocr.fail = True
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")

        assert pipeline.get_job(result.job_id).file_ref is not None
        assert pipeline._contents == {}

        fake_ocr.fail = False
        assert pipeline.retry_job(result.job_id).status == JobStatus.READY

    def test_failed_upload_keeps_content_for_retry(self, make_ledger):
        store = FlakyObjectStore()
        pipeline = make_ledger(object_store=store).pipeline
        store.fail = True
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")

        job = pipeline.get_job(result.job_id)
        assert job.status == JobStatus.ERROR
        assert job.file_ref is None
        assert pipeline._contents == {result.job_id: PDF}

        store.fail = False
        assert pipeline.retry_job(result.job_id).status == JobStatus.READY
        assert pipeline._contents == {}
        assert len(store) == 1

    def test_blank_ocr_text_is_an_error(self, pipeline, fake_ocr):
        fake_ocr.text = "   "
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        assert "no text could be extracted" in pipeline.get_job(result.job_id).error

    def test_classifier_failure(self, pipeline, fake_classifier, captured_logs):
        fake_classifier.fail = True
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")

        job = pipeline.get_job(result.job_id)
        assert job.status == JobStatus.ERROR
        assert "model overloaded" in job.error
        assert job.metadata.get("scanned") is True
        assert any(r["message"] == "job_stage_failed" for r in captured_logs())

    def test_retry_only_from_error(self, pipeline):
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        with pytest.raises(InvalidJobTransitionError):
            pipeline.retry_job(result.job_id)

    def test_unknown_job(self, pipeline):
        with pytest.raises(JobNotFoundError):
            pipeline.get_job(UUID(int=0))


class TestAutoApproval:
    def test_small_receipt_is_posted_and_sent_to_erp(
        self, pipeline, fake_classifier, fake_erp, session_factory, deterministic_clock,
    ):
        fake_classifier.classification = _receipt()
        result = pipeline.submit(COMPANY, b"receipt bytes", "kvitto.pdf")

        job = pipeline.get_job(result.job_id)
        assert job.status == JobStatus.APPROVED
        assert job.voucher_number == "K2024-0001"
        assert job.requires_approval is False
        assert job.approval_request_id is None
        assert job.metadata["auto_approval"]["matched_rule"] == "rule-small-receipt"
        assert fake_erp.posted == [(COMPANY, "K2024-0001", "SUP-1")]
        assert _audit_actions(session_factory, deterministic_clock, job.id) == {
            "VOUCHER_POSTED", "JOB_AUTO_APPROVED",
        }

    def test_erp_failure_is_a_warning(self, make_ledger, fake_classifier):
        fake_classifier.classification = _receipt()
        pipeline = make_ledger(erp=FakeErp(fail_posting=True)).pipeline

        job = pipeline.get_job(pipeline.submit(COMPANY, b"receipt bytes", "kvitto.pdf").job_id)

        assert job.status == JobStatus.APPROVED
        assert job.warnings == ("ERP posting failed: ERP unreachable",)

    def test_closed_period_holds_auto_approval(
        self, pipeline, fake_classifier, session_factory, deterministic_clock,
    ):
        with session_scope(session_factory) as session:
            periods = PeriodService(session, deterministic_clock)
            periods.begin_closing(COMPANY, 2024, 1, "anna")
            periods.mark_closed(COMPANY, 2024, 1, "anna")
        fake_classifier.classification = _receipt()

        job = pipeline.get_job(pipeline.submit(COMPANY, b"receipt bytes", "kvitto.pdf").job_id)

        assert job.status == JobStatus.READY
        assert job.requires_approval is True
        assert job.voucher_number is None
        assert job.metadata["decision_rule"] == "period_not_writable"
        assert job.warnings[0].startswith("Auto-approval held")

    def test_auto_approval_disabled_per_company(self, make_ledger, fake_classifier):
        registry = ConfigRegistry()
        registry.register(parse_company(COMPANY, {"approval": {"enable_auto_approval": False}}))
        fake_classifier.classification = _receipt()
        pipeline = make_ledger(config=registry).pipeline

        job = pipeline.get_job(pipeline.submit(COMPANY, b"receipt bytes", "kvitto.pdf").job_id)

        assert job.status == JobStatus.READY
        assert job.requires_approval is False


class TestPolicyDecisions:
    def test_policy_rejection_needs_manual_handling(self, make_ledger):
        registry = ConfigRegistry()
        registry.register(parse_company(COMPANY, {
            "policy": {"rules": [{"name": "reject-office", "action": "REJECT", "supplier_pattern": "kontors"}]},
        }))
        pipeline = make_ledger(config=registry).pipeline

        job = pipeline.get_job(pipeline.submit(COMPANY, PDF, "invoice.pdf").job_id)

        assert job.status == JobStatus.READY
        assert job.requires_approval is True
        assert job.approval_request_id is None
        assert job.metadata["decision_rule"] == "policy_rejected"
        assert job.metadata["policy"]["matched_rule"] == "reject-office"


class TestCurrency:
    def test_foreign_invoice_converted_to_base_currency(self, make_ledger, fake_classifier):
        fake_classifier.classification = make_classification(
            currency="EUR",
            total_amount=Decimal("125.00"),
            vat_amount=Decimal("25.00"),
            line_items=(LineItem("Licens", Decimal("100.00"), Decimal("25.00"), "5420"),),
        )
        bank = FakeRateProvider(rates={("EUR", "SEK"): Decimal("11.00")})
        pipeline = make_ledger(rate_providers=[bank]).pipeline

        job = pipeline.get_job(pipeline.submit(COMPANY, PDF, "invoice.pdf").job_id)

        c = job.classification
        assert c.currency == "SEK"
        assert c.total_amount == Decimal("1375.00")
        assert c.original_currency == "EUR"
        assert c.original_amount == Decimal("125.00")
        assert c.exchange_rate_source == "fake-bank"


class TestSplit:
    def test_multi_receipt_image_is_split(self, pipeline, fake_classifier):
        fake_classifier.receipts = [
            DetectedReceipt(index=i, content=f"receipt {i}".encode(), description=f"Kvitto {i}")
            for i in range(3)
        ]
        for number in (1, 2, 3):
            fake_classifier.by_file[f"kvitton_receipt_{number}.jpg"] = _receipt(
                supplier=f"Butik {number}",
                total_amount=Decimal("100.00"),
                vat_amount=Decimal("20.00"),
                line_items=(LineItem("Parkering", Decimal("80.00"), Decimal("20.00"), "5611"),),
            )

        result = pipeline.submit(COMPANY, b"\xff\xd8 image", "kvitton.jpg")

        parent = pipeline.get_job(result.job_id)
        assert parent.status == JobStatus.SPLIT
        assert parent.split_info["receipt_count"] == 3
        children = [pipeline.get_job(UUID(i)) for i in parent.split_info["child_job_ids"]]
        assert [c.file_name for c in children] == [
            "kvitton_receipt_1.jpg", "kvitton_receipt_2.jpg", "kvitton_receipt_3.jpg",
        ]
        assert all(c.status == JobStatus.APPROVED for c in children)
        assert sorted(c.voucher_number for c in children) == ["K2024-0001", "K2024-0002", "K2024-0003"]
        assert children[0].metadata["parent_job_id"] == str(parent.id)

    def test_single_receipt_image_is_not_split(self, pipeline, fake_classifier):
        fake_classifier.receipts = [DetectedReceipt(index=0)]
        job = pipeline.get_job(pipeline.submit(COMPANY, b"\xff\xd8 image", "kvitto.jpg").job_id)

        assert job.status == JobStatus.READY
        assert job.split_info is None


class TestPosting:
    def test_approved_request_posts_once(self, pipeline, fake_erp, session_factory, deterministic_clock):
        job = pipeline.get_job(pipeline.submit(COMPANY, PDF, "invoice.pdf").job_id)
        approve_request(session_factory, deterministic_clock, job.approval_request_id)

        posted = pipeline.approve_job(job.id, "anna")

        assert posted.status == JobStatus.APPROVED
        assert posted.voucher_number == "A2024-0001"
        assert posted.requires_approval is False
        assert fake_erp.posted[0][1] == "A2024-0001"
        with pytest.raises(AlreadyPostedError):
            pipeline.approve_job(job.id, "anna")

    def test_open_request_blocks_posting_whatever_the_role(self, pipeline):
        job = pipeline.get_job(pipeline.submit(COMPANY, PDF, "invoice.pdf").job_id)

        with pytest.raises(ApprovalRequiredError) as exc:
            pipeline.approve_job(job.id, "erik", "executive")

        assert exc.value.status == "PENDING"
        assert exc.value.request_id == str(job.approval_request_id)
        unchanged = pipeline.get_job(job.id)
        assert unchanged.status == JobStatus.READY
        assert unchanged.voucher_number is None

    def test_rejected_request_blocks_posting(self, pipeline, session_factory, deterministic_clock):
        job = pipeline.get_job(pipeline.submit(COMPANY, PDF, "invoice.pdf").job_id)
        with session_scope(session_factory) as session:
            ApprovalService(session, deterministic_clock).reject(
                job.approval_request_id, "anna", "accountant", "wrong supplier",
            )

        with pytest.raises(ApprovalRequiredError) as exc:
            pipeline.approve_job(job.id, "anna", "accountant")

        assert exc.value.status == "REJECTED"
        assert pipeline.get_job(job.id).voucher_number is None

    def test_failed_job_cannot_be_posted(self, pipeline, fake_ocr):
        fake_ocr.fail = True
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")

        with pytest.raises(InvalidJobTransitionError):
            pipeline.approve_job(result.job_id, "anna", "accountant")


class TestDirectPosting:
    """Jobs that reached ``ready`` without an approval request."""

    @pytest.fixture
    def manual_pipeline(self, make_ledger):
        registry = ConfigRegistry()
        registry.register(parse_company(COMPANY, {"approval": {"enable_auto_approval": False}}))
        return make_ledger(config=registry).pipeline

    def test_accountant_posts_small_receipt(self, manual_pipeline, fake_classifier):
        fake_classifier.classification = _receipt()
        job = manual_pipeline.get_job(manual_pipeline.submit(COMPANY, b"receipt bytes", "kvitto.pdf").job_id)
        assert job.approval_request_id is None

        posted = manual_pipeline.approve_job(job.id, "anna", "accountant")

        assert posted.status == JobStatus.APPROVED
        assert posted.voucher_number == "K2024-0001"

    @pytest.mark.parametrize("role", [None, "system", "intern"])
    def test_posting_needs_at_least_an_accountant(self, manual_pipeline, fake_classifier, role):
        fake_classifier.classification = _receipt()
        job_id = manual_pipeline.submit(COMPANY, b"receipt bytes", "kvitto.pdf").job_id

        with pytest.raises(PostingAuthorityError) as exc:
            manual_pipeline.approve_job(job_id, "intern", role)

        assert exc.value.required_role == "accountant"
        assert manual_pipeline.get_job(job_id).voucher_number is None

    def test_amount_tier_sets_the_role(self, make_ledger, fake_classifier):
        registry = ConfigRegistry()
        registry.register(parse_company(COMPANY, {
            "policy": {"rules": [{"name": "reject-office", "action": "REJECT", "supplier_pattern": "kontors"}]},
        }))
        pipeline = make_ledger(config=registry).pipeline
        fake_classifier.classification = make_classification(
            total_amount=Decimal("250000.00"),
            vat_amount=Decimal("50000.00"),
            line_items=(LineItem("Kontorsmöbler", Decimal("200000.00"), Decimal("50000.00"), "5410"),),
        )
        job = pipeline.get_job(pipeline.submit(COMPANY, PDF, "invoice.pdf").job_id)
        assert job.approval_request_id is None

        with pytest.raises(PostingAuthorityError) as exc:
            pipeline.approve_job(job.id, "maria", "manager")
        assert exc.value.required_role == "executive"

        with pytest.raises(PolicyRejectedError) as exc:
            pipeline.approve_job(job.id, "erik", "executive")
        assert exc.value.rule == "reject-office"
        assert pipeline.get_job(job.id).status == JobStatus.READY


class TestDelete:
    def test_delete_unposted_job(self, make_ledger, session_factory, deterministic_clock):
        store = InMemoryObjectStore()
        pipeline = make_ledger(object_store=store).pipeline
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        assert len(store) == 1

        pipeline.delete_job(result.job_id, "anna")

        assert len(store) == 0
        with pytest.raises(JobNotFoundError):
            pipeline.get_job(result.job_id)
        assert _audit_actions(session_factory, deterministic_clock, result.job_id) == {"JOB_DELETED"}
        # the fingerprint went with the job
        assert pipeline.submit(COMPANY, PDF, "invoice.pdf").status == SubmitStatus.QUEUED

    def test_posted_job_cannot_be_deleted(self, pipeline, session_factory, deterministic_clock):
        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        approve_request(session_factory, deterministic_clock, pipeline.get_job(result.job_id).approval_request_id)
        pipeline.approve_job(result.job_id, "anna")

        with pytest.raises(JobReferencedError):
            pipeline.delete_job(result.job_id, "anna")


class TestResume:
    def test_resume_and_process_are_idempotent(self, make_ledger):
        runner = RecordingRunner()
        pipeline = make_ledger(runner=runner).pipeline

        result = pipeline.submit(COMPANY, PDF, "invoice.pdf")
        assert pipeline.get_job(result.job_id).status == JobStatus.QUEUED

        assert pipeline.resume_pending(COMPANY) == [result.job_id]
        assert runner.dispatched == [result.job_id, result.job_id]

        assert pipeline.process(result.job_id).status == JobStatus.READY
        assert pipeline.process(result.job_id).status == JobStatus.READY
        assert pipeline.resume_pending() == []
