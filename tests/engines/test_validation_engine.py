"""Structural validation and line correction."""

from datetime import date
from decimal import Decimal

import pytest

from docledger_engines import correct_line_items, validate_classification
from docledger_kernel.domain.documents import DocumentType, LineItem
from tests.conftest import make_classification

TODAY = date(2024, 1, 1)


class TestValidateClassification:
    def test_clean_invoice_passes(self):
        result = validate_classification(make_classification(), today=TODAY)

        assert result.passed is True
        assert result.is_valid is True
        assert result.codes == ()

    def test_missing_supplier_is_critical(self):
        result = validate_classification(make_classification(supplier="Okänd"), today=TODAY)

        assert "SUPPLIER_MISSING" in result.codes
        assert result.is_valid is False

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10")])
    def test_invalid_amount(self, amount):
        c = make_classification(total_amount=amount, vat_amount=Decimal("0"), line_items=())
        result = validate_classification(c, today=TODAY)

        assert "INVALID_AMOUNT" in result.codes
        assert result.is_valid is False

    def test_positive_credit_note_is_a_warning(self):
        c = make_classification(doc_type=DocumentType.CREDIT_NOTE)
        result = validate_classification(c, today=TODAY)

        assert "CREDIT_NOTE_POSITIVE_AMOUNT" in result.codes
        assert result.passed is True

    def test_vat_mismatch(self):
        c = make_classification(
            total_amount=Decimal("1250"),
            vat_amount=Decimal("200"),
            line_items=(LineItem("Konsult", Decimal("1050"), Decimal("200"), "6550"),),
        )
        result = validate_classification(c, today=TODAY)
        assert "VAT_MISMATCH" in result.codes

    def test_line_vat_mismatch(self):
        c = make_classification(
            line_items=(LineItem("Kontorsmaterial", Decimal("1200"), Decimal("50"), "6110"),),
        )
        result = validate_classification(c, today=TODAY)
        assert "LINE_VAT_MISMATCH" in result.codes

    def test_missing_invoice_date_is_critical(self):
        result = validate_classification(make_classification(invoice_date=None), today=TODAY)

        assert "INVALID_INVOICE_DATE" in result.codes
        assert result.is_valid is False

    def test_future_date_is_an_error_not_critical(self):
        c = make_classification(invoice_date=date(2024, 1, 5), due_date=date(2024, 2, 5))
        result = validate_classification(c, today=TODAY)

        assert "FUTURE_DATE" in result.codes
        assert result.passed is False
        assert result.is_valid is True

    def test_old_date_and_fiscal_year(self):
        c = make_classification(invoice_date=date(2021, 6, 1), due_date=date(2021, 7, 1))
        result = validate_classification(
            c, today=TODAY, fiscal_year=(date(2024, 1, 1), date(2024, 12, 31)),
        )

        assert "OLD_DATE" in result.codes
        assert "OUTSIDE_FISCAL_YEAR" in result.codes
        assert result.passed is True

    def test_due_before_invoice(self):
        c = make_classification(due_date=date(2023, 12, 1))
        result = validate_classification(c, today=TODAY)
        assert "DUE_BEFORE_INVOICE" in result.codes

    def test_no_line_items_is_a_warning(self):
        result = validate_classification(make_classification(line_items=()), today=TODAY)

        assert result.codes == ("NO_LINE_ITEMS",)
        assert result.passed is True

    def test_line_errors(self):
        c = make_classification(
            total_amount=Decimal("1250"),
            vat_amount=Decimal("250"),
            line_items=(
                LineItem("Okänt konto", Decimal("1000"), Decimal("250"), "61X"),
                LineItem("Noll", Decimal("0"), Decimal("0"), "6110"),
                LineItem("Minus", Decimal("-5"), Decimal("0"), "6110"),
            ),
        )
        result = validate_classification(c, today=TODAY)

        assert {"INVALID_LINE_ACCOUNT", "INVALID_LINE_AMOUNT", "NEGATIVE_LINE_AMOUNT"} <= set(result.codes)
        assert result.passed is False

    def test_line_sum_tolerance_is_one_percent(self):
        within = make_classification(
            line_items=(LineItem("Varor", Decimal("990"), Decimal("250"), "4010"),),
        )
        outside = make_classification(
            line_items=(LineItem("Varor", Decimal("900"), Decimal("250"), "4010"),),
        )

        assert "LINE_SUM_MISMATCH" not in validate_classification(within, today=TODAY).codes
        assert "LINE_SUM_MISMATCH" in validate_classification(outside, today=TODAY).codes

    def test_foreign_currency(self):
        result = validate_classification(make_classification(currency="EUR"), today=TODAY)
        assert "FOREIGN_CURRENCY" in result.codes

    def test_messages_carry_codes(self):
        result = validate_classification(make_classification(line_items=()), today=TODAY)
        assert result.messages() == ["NO_LINE_ITEMS: Document has no line items"]


class TestCorrectLineItems:
    def test_creates_default_line(self):
        c = make_classification(line_items=(), account=None)
        correction = correct_line_items(c, "4010")

        assert correction.changed is True
        (line,) = correction.classification.line_items
        assert line.net_amount == Decimal("1000.00")
        assert line.vat_amount == Decimal("250.00")
        assert line.account == "4010"
        assert correction.classification.line_total == c.total_amount

    def test_balanced_lines_are_untouched(self):
        c = make_classification()
        correction = correct_line_items(c)

        assert correction.changed is False
        assert correction.classification is c

    def test_small_difference_spread_and_balanced_exactly(self):
        c = make_classification(
            total_amount=Decimal("1000.00"),
            vat_amount=Decimal("200.00"),
            line_items=(
                LineItem("A", Decimal("333.33"), Decimal("66.67"), "6110"),
                LineItem("B", Decimal("333.33"), Decimal("66.67"), "6110"),
                LineItem("C", Decimal("180.00"), Decimal("50.00"), "6110"),
            ),
        )
        correction = correct_line_items(c)

        assert correction.changed is True
        assert correction.classification.line_total == Decimal("1000.00")
        assert correction.classification.line_sum_difference == 0
        # input untouched
        assert c.line_total == Decimal("1030.00")

    def test_large_difference_left_for_review(self):
        c = make_classification(
            line_items=(LineItem("Varor", Decimal("500"), Decimal("125"), "4010"),),
        )
        correction = correct_line_items(c)

        assert correction.changed is False
        assert correction.classification.line_total == Decimal("625")

    def test_negative_net_flipped_except_on_credit_notes(self):
        line = LineItem("Retur", Decimal("-1000.00"), Decimal("250.00"), "6110")
        invoice = make_classification(line_items=(line,))
        credit = make_classification(
            doc_type=DocumentType.CREDIT_NOTE,
            total_amount=Decimal("-750.00"),
            vat_amount=Decimal("250.00"),
            line_items=(line,),
        )

        fixed = correct_line_items(invoice)
        assert fixed.classification.line_items[0].net_amount == Decimal("1000.00")
        assert "Line 1: negative net amount flipped" in fixed.adjustments

        kept = correct_line_items(credit)
        assert kept.classification.line_items[0].net_amount == Decimal("-1000.00")
        assert kept.changed is False
