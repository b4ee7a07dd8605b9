"""
Anomaly scoring tests.

detect_anomalies is pure: every test passes ``today`` explicitly and a
SupplierHistory built in the test.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from tests.conftest import make_classification
from docledger_engines import detect_anomalies
from docledger_kernel.domain.anomaly import (
    AnomalyType,
    Recommendation,
    Severity,
    SupplierHistory,
)
from docledger_kernel.domain.documents import DocumentType

TODAY = date(2024, 1, 10)  # Wednesday


def _history(count=5, average="1000", accounts=("6110",), dates=()):
    return SupplierHistory(
        total_invoices=count,
        average_amount=Decimal(average),
        typical_accounts=accounts,
        invoice_dates=dates,
        approved_count=count,
    )


def _types(report):
    return [a.type for a in report.anomalies]


def _clean(**overrides):
    values = dict(invoice_date=date(2024, 1, 9))
    values.update(overrides)
    return make_classification(**values)


class TestCleanDocument:
    def test_known_supplier_normal_invoice_has_no_anomalies(self):
        report = detect_anomalies(_clean(), _history(average="1250"), today=TODAY)

        assert report.anomalies == ()
        assert report.risk_score == 0
        assert report.recommendation == Recommendation.AUTO_APPROVE
        assert report.blocks_auto_approve is False
        assert report.highest_severity is None

    def test_empty_history_means_new_supplier(self):
        report = detect_anomalies(_clean(), None, today=TODAY)

        assert _types(report) == [AnomalyType.NEW_SUPPLIER]
        assert report.anomalies[0].severity == Severity.LOW

    def test_explicit_is_new_supplier_overrides_history(self):
        report = detect_anomalies(_clean(), None, today=TODAY, is_new_supplier=False)
        assert report.anomalies == ()


class TestAmountDetectors:
    def test_high_amount_medium_when_up_to_200_percent_over(self):
        c = _clean(total_amount=Decimal("2500"), vat_amount=Decimal("500"), line_items=())
        report = detect_anomalies(c, _history(average="1000"), today=TODAY)

        anomaly = report.anomalies[0]
        assert anomaly.type == AnomalyType.HIGH_AMOUNT
        assert anomaly.severity == Severity.MEDIUM
        assert anomaly.details["percentage_over"] == 150.0

    def test_high_amount_high_when_more_than_200_percent_over(self):
        c = _clean(total_amount=Decimal("3500"), vat_amount=Decimal("700"), line_items=())
        report = detect_anomalies(c, _history(average="1000"), today=TODAY)

        assert report.anomalies[0].type == AnomalyType.HIGH_AMOUNT
        assert report.anomalies[0].severity == Severity.HIGH
        assert report.blocks_auto_approve is True

    def test_high_amount_needs_three_earlier_documents(self):
        c = _clean(total_amount=Decimal("3500"), vat_amount=Decimal("700"), line_items=())
        report = detect_anomalies(c, _history(count=2, average="1000"), today=TODAY)
        assert AnomalyType.HIGH_AMOUNT not in _types(report)

    def test_low_amount(self):
        c = _clean(total_amount=Decimal("250"), vat_amount=Decimal("50"), line_items=())
        report = detect_anomalies(c, _history(average="1000"), today=TODAY)

        assert _types(report) == [AnomalyType.LOW_AMOUNT]
        assert report.anomalies[0].severity == Severity.LOW

    def test_new_supplier_medium_above_ten_thousand(self):
        c = _clean(total_amount=Decimal("12500"), vat_amount=Decimal("2500"), line_items=())
        report = detect_anomalies(c, None, today=TODAY)

        new = [a for a in report.anomalies if a.type == AnomalyType.NEW_SUPPLIER][0]
        assert new.severity == Severity.MEDIUM

    def test_round_amount(self):
        c = _clean(total_amount=Decimal("10000"), vat_amount=Decimal("2000"), line_items=())
        report = detect_anomalies(c, _history(average="10000"), today=TODAY)
        assert _types(report) == [AnomalyType.ROUND_AMOUNT]

    def test_round_amount_ignored_below_five_thousand(self):
        c = _clean(total_amount=Decimal("4000"), vat_amount=Decimal("800"), line_items=())
        report = detect_anomalies(c, _history(average="4000"), today=TODAY)
        assert AnomalyType.ROUND_AMOUNT not in _types(report)


class TestDateDetectors:
    def test_weekend_invoice(self):
        report = detect_anomalies(
            _clean(invoice_date=date(2024, 1, 6)), _history(average="1250"), today=TODAY,
        )
        assert _types(report) == [AnomalyType.WEEKEND_INVOICE]
        assert report.anomalies[0].details["weekday"] == "Saturday"

    @pytest.mark.parametrize("days, severity", [(3, Severity.MEDIUM), (8, Severity.HIGH)])
    def test_future_date(self, days, severity):
        d = TODAY + timedelta(days=days)
        # keep it on a weekday so only the future-date detector fires
        while d.weekday() >= 5:
            d += timedelta(days=1)
        report = detect_anomalies(_clean(invoice_date=d), _history(average="1250"), today=TODAY)

        future = [a for a in report.anomalies if a.type == AnomalyType.FUTURE_DATE][0]
        assert future.severity == severity

    def test_old_invoice_medium_then_high(self):
        medium = detect_anomalies(
            _clean(invoice_date=date(2023, 11, 1)), _history(average="1250"), today=TODAY,
        )
        high = detect_anomalies(
            _clean(invoice_date=date(2023, 6, 1)), _history(average="1250"), today=TODAY,
        )
        assert [a.severity for a in medium.anomalies if a.type == AnomalyType.OLD_INVOICE] == [Severity.MEDIUM]
        assert [a.severity for a in high.anomalies if a.type == AnomalyType.OLD_INVOICE] == [Severity.HIGH]

    def test_sixty_days_is_not_old(self):
        report = detect_anomalies(
            _clean(invoice_date=TODAY - timedelta(days=60)), _history(average="1250"), today=TODAY,
        )
        assert AnomalyType.OLD_INVOICE not in _types(report)

    def test_rapid_invoicing(self):
        history = _history(average="1250", dates=("2024-01-02", "2024-01-08", "2024-01-09"))
        report = detect_anomalies(_clean(), history, today=TODAY)

        assert _types(report) == [AnomalyType.RAPID_INVOICING]
        assert report.anomalies[0].details["days_between"] == 1


class TestDataQualityDetectors:
    def test_unusual_account(self):
        report = detect_anomalies(_clean(), _history(average="1250", accounts=("5010",)), today=TODAY)
        assert _types(report) == [AnomalyType.UNUSUAL_ACCOUNT]

    def test_unusual_vat(self):
        c = _clean(total_amount=Decimal("1200"), vat_amount=Decimal("200"), line_items=())
        report = detect_anomalies(c, _history(average="1200"), today=TODAY)
        assert _types(report) == [AnomalyType.UNUSUAL_VAT]

    @pytest.mark.parametrize("confidence, severity", [(0.6, Severity.MEDIUM), (0.4, Severity.HIGH)])
    def test_low_confidence(self, confidence, severity):
        report = detect_anomalies(_clean(confidence=confidence), _history(average="1250"), today=TODAY)
        assert [(a.type, a.severity) for a in report.anomalies] == [(AnomalyType.LOW_CONFIDENCE, severity)]

    def test_missing_data_high_when_more_than_two_fields(self):
        c = make_classification(
            supplier="", invoice_number=None, invoice_date=None, doc_type=DocumentType.INVOICE,
        )
        report = detect_anomalies(c, _history(average="1250"), today=TODAY)

        missing = [a for a in report.anomalies if a.type == AnomalyType.MISSING_DATA][0]
        assert missing.severity == Severity.HIGH
        assert missing.details["missing_fields"] == ["supplier", "invoice_date", "invoice_number"]

    def test_receipt_without_invoice_number_is_complete(self):
        c = _clean(doc_type=DocumentType.RECEIPT, invoice_number=None)
        report = detect_anomalies(c, _history(average="1250"), today=TODAY)
        assert AnomalyType.MISSING_DATA not in _types(report)


class TestScoring:
    def test_score_is_sum_of_weights_and_ordered_by_severity(self):
        # weekend LOW (5) + low confidence MEDIUM (15) + new supplier LOW (5)
        c = _clean(invoice_date=date(2024, 1, 6), confidence=0.6)
        report = detect_anomalies(c, None, today=TODAY)

        assert report.risk_score == 25
        assert report.anomalies[0].type == AnomalyType.LOW_CONFIDENCE
        assert report.highest_severity == Severity.MEDIUM
        assert report.recommendation == Recommendation.MANUAL_REVIEW
        assert report.blocks_auto_approve is False

    def test_score_is_capped_at_one_hundred(self):
        c = make_classification(
            supplier="",
            total_amount=Decimal("50000"),
            vat_amount=Decimal("3000"),
            invoice_number=None,
            invoice_date=date(2024, 3, 2),
            confidence=0.3,
            line_items=(),
        )
        report = detect_anomalies(c, None, today=TODAY)

        assert report.risk_score == 100
        assert report.recommendation == Recommendation.ESCALATE
        assert report.blocks_auto_approve is True

    def test_single_low_anomaly_auto_approves(self):
        report = detect_anomalies(_clean(), None, today=TODAY)
        assert report.risk_score == 5
        assert report.recommendation == Recommendation.AUTO_APPROVE

    def test_deterministic(self):
        c = _clean(invoice_date=date(2024, 1, 6), confidence=0.6)
        assert detect_anomalies(c, None, today=TODAY) == detect_anomalies(c, None, today=TODAY)

    def test_emits_engine_trace(self, captured_logs):
        detect_anomalies(_clean(), None, today=TODAY)

        traces = [r for r in captured_logs() if r["message"] == "ENGINE_TRACE"]
        assert traces[-1]["engine_name"] == "anomaly"
        assert len(traces[-1]["input_fingerprint"]) == 16
