"""
Pre-close checks and the close / lock / reopen lifecycle, driven through
the facade so documents arrive the way they do in production.
"""

from datetime import date
from decimal import Decimal

import pytest

from docledger_kernel.db.engine import session_scope
from docledger_kernel.domain.documents import DocumentType, JobStatus, LineItem
from docledger_kernel.domain.period import CheckStatus, PeriodAction, PeriodStatus
from docledger_kernel.exceptions import PeriodStateError
from docledger_kernel.models.bank import BankTransactionModel
from docledger_kernel.services.period_service import PeriodService
from tests.conftest import make_classification

COMPANY = "acme"


def _receipt(net="320.00", vat="80.00"):
    net, vat = Decimal(net), Decimal(vat)
    return make_classification(
        doc_type=DocumentType.RECEIPT,
        supplier="Pressbyrån",
        total_amount=net + vat,
        vat_amount=vat,
        invoice_number=None,
        confidence=0.95,
        line_items=(LineItem("Kaffe och smörgås", net, vat, "5831"),),
    )


@pytest.fixture
def posted_receipt(ledger, fake_classifier):
    fake_classifier.classification = _receipt()
    job = ledger.get_job(ledger.submit_document(COMPANY, b"receipt bytes", "kvitto.pdf").job_id)
    assert job.voucher_number == "K2024-0001"
    return job


class TestChecks:
    def test_clean_month_passes(self, ledger, posted_receipt):
        run = ledger.run_pre_close_checks(COMPANY, 2024, 1)

        assert [c.name for c in run.checks] == [
            "pending_documents",
            "voucher_sequence",
            "vat_reconciliation",
            "bank_reconciliation",
            "document_validation",
            "future_dates",
            "large_amounts",
        ]
        assert run.can_close
        vat = {c.name: c for c in run.checks}["vat_reconciliation"]
        assert Decimal(vat.details["vat_input"]) == Decimal("80")

    def test_checks_are_persisted(self, ledger, posted_receipt, session_factory, deterministic_clock):
        ledger.run_pre_close_checks(COMPANY, 2024, 1)

        with session_scope(session_factory) as session:
            latest = PeriodService(session, deterministic_clock).latest_checks(COMPANY, 2024, 1)
        assert {c.name for c in latest} >= {"pending_documents", "large_amounts"}

    def test_unapproved_document_blocks(self, ledger):
        ledger.submit_document(COMPANY, b"%PDF-1.7 invoice", "invoice.pdf")

        run = ledger.run_pre_close_checks(COMPANY, 2024, 1)

        (blocker,) = run.blockers
        assert blocker.name == "pending_documents"
        assert blocker.status == CheckStatus.FAILED
        assert blocker.details["by_status"] == {"ready": 1}

    def test_unmatched_bank_transaction_blocks(self, ledger, session_factory):
        with session_scope(session_factory) as session:
            session.add(BankTransactionModel(
                company_id=COMPANY, booking_date=date(2024, 1, 15), amount=Decimal("-400.00"),
            ))

        run = ledger.run_pre_close_checks(COMPANY, 2024, 1)

        assert [c.name for c in run.blockers] == ["bank_reconciliation"]
        assert Decimal(run.blockers[0].details["amount"]) == Decimal("-400")

    def test_other_month_is_unaffected(self, ledger):
        ledger.submit_document(COMPANY, b"%PDF-1.7 invoice", "invoice.pdf")
        assert ledger.run_pre_close_checks(COMPANY, 2024, 2).can_close


class TestClose:
    def test_close_builds_summary(self, ledger, posted_receipt, captured_logs):
        result = ledger.close_period(COMPANY, 2024, 1, "maria")

        assert result.success
        assert result.forced is False
        assert result.period.status == PeriodStatus.CLOSED
        assert result.period.closed_by == "maria"

        summary = ledger.period_summary(COMPANY, 2024, 1)
        assert summary.total_documents == 1
        assert summary.posted_documents == 1
        assert summary.total_receipt_amount == Decimal("400.00")
        assert summary.vat_input == Decimal("80.00")
        assert summary.account_totals == {"5831": Decimal("320.00")}
        assert summary.voucher_series == {"K": {"first": 1, "last": 1, "count": 1, "gaps": []}}

    def test_blocked_close_returns_to_open(self, ledger):
        ledger.submit_document(COMPANY, b"%PDF-1.7 invoice", "invoice.pdf")

        result = ledger.close_period(COMPANY, 2024, 1, "maria")

        assert not result.success
        assert [c.name for c in result.blockers] == ["pending_documents"]
        assert ledger.get_period(COMPANY, 2024, 1).status == PeriodStatus.OPEN
        assert [h.action for h in ledger.period_history(COMPANY, 2024, 1)][-1] == PeriodAction.CLOSE_BLOCKED

    def test_forced_close_records_failures(self, ledger, captured_logs):
        ledger.submit_document(COMPANY, b"%PDF-1.7 invoice", "invoice.pdf")

        result = ledger.close_period(COMPANY, 2024, 1, "cfo", force=True)

        assert result.success
        assert result.forced
        assert result.period.status == PeriodStatus.CLOSED
        assert any(r["message"] == "period_force_closed" for r in captured_logs())

    def test_closing_twice(self, ledger, posted_receipt):
        ledger.close_period(COMPANY, 2024, 1, "maria")

        again = ledger.close_period(COMPANY, 2024, 1, "maria")

        assert not again.success
        assert again.message.startswith("already_closed")

    def test_closed_period_refuses_postings(self, ledger, fake_classifier):
        ledger.close_period(COMPANY, 2024, 1, "maria")
        fake_classifier.classification = _receipt()

        job = ledger.get_job(ledger.submit_document(COMPANY, b"receipt bytes", "kvitto.pdf").job_id)

        assert job.status == JobStatus.READY
        assert job.voucher_number is None


class TestLockAndReopen:
    def test_lock_is_final(self, ledger, posted_receipt):
        ledger.close_period(COMPANY, 2024, 1, "maria")

        locked = ledger.lock_period(COMPANY, 2024, 1, "cfo")

        assert locked.period.status == PeriodStatus.LOCKED
        with pytest.raises(PeriodStateError):
            ledger.reopen_period(COMPANY, 2024, 1, "cfo", "late supplier invoice")

    def test_lock_requires_closed(self, ledger):
        ledger.get_period(COMPANY, 2024, 1)
        with pytest.raises(PeriodStateError):
            ledger.lock_period(COMPANY, 2024, 1, "cfo")

    def test_reopen_then_post(self, ledger, posted_receipt, fake_classifier):
        ledger.close_period(COMPANY, 2024, 1, "maria")

        reopened = ledger.reopen_period(COMPANY, 2024, 1, "maria", "late supplier invoice")

        assert reopened.period.status == PeriodStatus.OPEN
        fake_classifier.classification = _receipt(net="200.00", vat="50.00")
        job = ledger.get_job(ledger.submit_document(COMPANY, b"second receipt", "kvitto2.pdf").job_id)
        assert job.voucher_number == "K2024-0002"

    def test_reopen_requires_reason(self, ledger, posted_receipt):
        ledger.close_period(COMPANY, 2024, 1, "maria")
        with pytest.raises(ValueError):
            ledger.reopen_period(COMPANY, 2024, 1, "maria", "")
