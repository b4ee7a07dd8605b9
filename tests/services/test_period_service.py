"""Accounting period lifecycle and the posting guard."""

from datetime import date

import pytest

from docledger_kernel.domain.period import (
    CheckStatus,
    PeriodAction,
    PeriodStatus,
    PreCloseCheck,
    month_bounds,
    period_key,
)
from docledger_kernel.exceptions import (
    PeriodNotFoundError,
    PeriodNotWritableError,
    PeriodStateError,
)
from docledger_kernel.services.period_service import PeriodService

COMPANY = "acme"


@pytest.fixture
def periods(session, deterministic_clock):
    return PeriodService(session, deterministic_clock)


def _close(periods, year=2024, month=1, actor="anna"):
    periods.begin_closing(COMPANY, year, month, actor)
    return periods.mark_closed(COMPANY, year, month, actor, summary={"documents": 0})


class TestHelpers:
    def test_period_key(self):
        assert period_key(2024, 3) == "2024-03"

    def test_month_bounds_wrap_year(self):
        assert month_bounds(2024, 12) == (date(2024, 12, 1), date(2025, 1, 1))
        assert month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 3, 1))


class TestLookup:
    def test_missing_period_counts_as_open(self, periods):
        assert periods.get(COMPANY, 2024, 1) is None
        assert periods.is_open(COMPANY, 2024, 1) is True

    def test_get_or_create_is_idempotent(self, periods):
        first = periods.get_or_create(COMPANY, 2024, 1)
        second = periods.get_or_create(COMPANY, 2024, 1)

        assert first.status == PeriodStatus.OPEN
        assert second == first
        assert [p.key for p in periods.all_periods(COMPANY)] == ["2024-01"]

    def test_creation_recorded_in_history(self, periods):
        periods.get_for_date(COMPANY, date(2024, 2, 14))

        (entry,) = periods.history(COMPANY, 2024, 2)
        assert entry.action == PeriodAction.PERIOD_CREATED
        assert entry.actor == "system"

    def test_history_of_unknown_period(self, periods):
        with pytest.raises(PeriodNotFoundError):
            periods.history(COMPANY, 2030, 1)


class TestPostingGuard:
    def test_open_period_is_writable(self, periods):
        period = periods.assert_writable(COMPANY, date(2024, 1, 15))

        assert period.key == "2024-01"
        assert period.is_writable

    @pytest.mark.parametrize("target", ["closing", "closed", "locked"])
    def test_non_open_period_refuses_postings(self, periods, target, captured_logs):
        periods.begin_closing(COMPANY, 2024, 1, "anna")
        if target in ("closed", "locked"):
            periods.mark_closed(COMPANY, 2024, 1, "anna")
        if target == "locked":
            periods.lock(COMPANY, 2024, 1, "anna")

        with pytest.raises(PeriodNotWritableError) as exc_info:
            periods.assert_writable(COMPANY, date(2024, 1, 31))

        assert exc_info.value.status == target.upper()
        assert exc_info.value.period_key == "2024-01"
        assert any(r["message"] == "period_not_writable" for r in captured_logs())

    def test_other_months_unaffected(self, periods):
        _close(periods)
        assert periods.assert_writable(COMPANY, date(2024, 2, 1)).status == PeriodStatus.OPEN


class TestTransitions:
    def test_close_records_actor_and_summary(self, periods, deterministic_clock):
        closed = _close(periods)

        assert closed.status == PeriodStatus.CLOSED
        assert closed.closed_by == "anna"
        assert closed.closed_at == deterministic_clock.now()
        assert closed.summary == {"documents": 0}
        assert periods.last_closed(COMPANY).key == "2024-01"

    def test_cancel_closing_returns_to_open(self, periods):
        periods.begin_closing(COMPANY, 2024, 1, "anna")
        reopened = periods.cancel_closing(COMPANY, 2024, 1, "anna", blockers=["unbooked_documents"])

        assert reopened.status == PeriodStatus.OPEN
        last = periods.history(COMPANY, 2024, 1)[-1]
        assert last.action == PeriodAction.CLOSE_BLOCKED
        assert last.details == {"blockers": ["unbooked_documents"]}

    def test_cannot_close_without_closing(self, periods):
        periods.get_or_create(COMPANY, 2024, 1)
        with pytest.raises(PeriodStateError):
            periods.mark_closed(COMPANY, 2024, 1, "anna")

    def test_transition_on_unknown_period(self, periods):
        with pytest.raises(PeriodNotFoundError):
            periods.lock(COMPANY, 2024, 1, "anna")

    def test_reopen_requires_reason(self, periods):
        _close(periods)
        with pytest.raises(ValueError):
            periods.reopen(COMPANY, 2024, 1, "maria", "   ")

    def test_reopen_clears_close_and_keeps_reason(self, periods, captured_logs):
        _close(periods)
        reopened = periods.reopen(COMPANY, 2024, 1, "maria", " late supplier invoice ")

        assert reopened.status == PeriodStatus.OPEN
        assert reopened.closed_at is None
        assert reopened.closed_by is None
        history = periods.history(COMPANY, 2024, 1)
        assert [h.action for h in history] == [
            PeriodAction.PERIOD_CREATED,
            PeriodAction.CLOSING_STARTED,
            PeriodAction.PERIOD_CLOSED,
            PeriodAction.PERIOD_REOPENED,
        ]
        assert history[-1].details == {"reason": "late supplier invoice"}
        assert any(r["message"] == "period_reopened" for r in captured_logs())

    def test_locked_is_final(self, periods, deterministic_clock):
        _close(periods)
        locked = periods.lock(COMPANY, 2024, 1, "cfo")

        assert locked.status == PeriodStatus.LOCKED
        assert locked.locked_by == "cfo"
        with pytest.raises(PeriodStateError):
            periods.reopen(COMPANY, 2024, 1, "cfo", "need to change something")
        with pytest.raises(PeriodStateError):
            periods.begin_closing(COMPANY, 2024, 1, "cfo")

    def test_open_periods(self, periods):
        periods.get_or_create(COMPANY, 2024, 2)
        _close(periods)

        assert [p.key for p in periods.open_periods(COMPANY)] == ["2024-02"]


class TestChecks:
    def test_latest_run_only(self, periods, deterministic_clock):
        periods.record_checks(COMPANY, 2024, 1, [
            PreCloseCheck("unbooked_documents", CheckStatus.FAILED, True, "2 unbooked"),
        ])
        deterministic_clock.advance(60)
        periods.record_checks(COMPANY, 2024, 1, [
            PreCloseCheck("unbooked_documents", CheckStatus.PASSED, True, "ok"),
            PreCloseCheck("vat_reconciliation", CheckStatus.WARNING, False, "diff 0.50", {"diff": "0.50"}),
        ])

        latest = {c.name: c for c in periods.latest_checks(COMPANY, 2024, 1)}

        assert set(latest) == {"unbooked_documents", "vat_reconciliation"}
        assert latest["unbooked_documents"].status == CheckStatus.PASSED
        assert latest["vat_reconciliation"].details == {"diff": "0.50"}

    def test_no_checks_yet(self, periods):
        assert periods.latest_checks(COMPANY, 2024, 1) == []
