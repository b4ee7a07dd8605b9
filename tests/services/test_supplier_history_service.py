"""Per-supplier running aggregates."""

from datetime import date
from decimal import Decimal

import pytest

from docledger_kernel.services.supplier_history_service import SupplierHistoryService

COMPANY = "acme"


@pytest.fixture
def suppliers(session, deterministic_clock):
    return SupplierHistoryService(session, deterministic_clock)


class TestSupplierHistory:
    def test_unknown_supplier_is_new(self, suppliers):
        history = suppliers.history(COMPANY, "Kontorsbolaget AB")

        assert history.is_new
        assert suppliers.is_new(COMPANY, "Kontorsbolaget AB")

    def test_aggregates(self, suppliers):
        for amount, account, day in (("1000", "6110", 5), ("2000", "6110", 12), ("3000", "5410", 20)):
            suppliers.record_posting(
                COMPANY, "Kontorsbolaget AB", Decimal(amount), account, date(2024, 1, day),
            )

        history = suppliers.history(COMPANY, "KONTORSBOLAGET")

        assert history.total_invoices == 3
        assert history.approved_count == 3
        assert history.average_amount == Decimal("2000.00")
        assert history.min_amount == Decimal("1000")
        assert history.max_amount == Decimal("3000")
        assert history.std_deviation == Decimal("816.50")
        assert history.typical_accounts == ("6110", "5410")
        assert history.invoice_dates == ("2024-01-05", "2024-01-12", "2024-01-20")
        assert not suppliers.is_new(COMPANY, "Kontorsbolaget")

    def test_unapproved_postings_do_not_count_as_approved(self, suppliers):
        suppliers.record_posting(COMPANY, "Telia", Decimal("499"), "6212", None, approved=False)

        history = suppliers.history(COMPANY, "Telia")
        assert (history.total_invoices, history.approved_count) == (1, 0)

    def test_credit_amounts_use_absolute_value(self, suppliers):
        suppliers.record_posting(COMPANY, "Telia", Decimal("-200"), None, None)
        assert suppliers.history(COMPANY, "Telia").min_amount == Decimal("200")

    def test_blank_supplier_is_ignored(self, suppliers):
        suppliers.record_posting(COMPANY, "  ", Decimal("100"), "6110", None)
        assert suppliers.history(COMPANY, "  ").is_new

    def test_companies_are_isolated(self, suppliers):
        suppliers.record_posting(COMPANY, "Telia", Decimal("499"), "6212", None)
        assert suppliers.is_new("beta", "Telia")

    def test_erp_supplier_id(self, suppliers):
        assert suppliers.erp_supplier_id(COMPANY, "Telia") is None

        suppliers.set_erp_supplier_id(COMPANY, "Telia AB", "SUP-17")
        assert suppliers.erp_supplier_id(COMPANY, "telia") == "SUP-17"
