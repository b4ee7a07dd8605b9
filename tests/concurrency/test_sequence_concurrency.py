"""
Voucher numbering under concurrent writers.

Numbers come from a locked counter row, so parallel postings must produce
a contiguous range with no duplicates.

Skip with: pytest -m "not slow_locks"
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from docledger_kernel.db.engine import session_scope
from docledger_kernel.services.sequence_service import SequenceService

pytestmark = pytest.mark.slow_locks

WORKERS = 8
PER_WORKER = 5


def _mint(session_factory, clock, company_id, count):
    numbers = []
    for _ in range(count):
        with session_scope(session_factory) as session:
            numbers.append(SequenceService(session, clock).next(company_id, "A", 2024).sequence)
    return numbers


class TestConcurrentNumbering:
    def test_no_duplicates_no_gaps(self, session_factory, deterministic_clock):
        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            futures = [
                pool.submit(_mint, session_factory, deterministic_clock, "acme", PER_WORKER)
                for _ in range(WORKERS)
            ]
            minted = [n for f in futures for n in f.result()]

        assert sorted(minted) == list(range(1, WORKERS * PER_WORKER + 1))

        with session_scope(session_factory) as session:
            validation = SequenceService(session, deterministic_clock).validate_sequence("acme", "A", 2024)
        assert validation.is_valid
        assert validation.count == WORKERS * PER_WORKER

    def test_companies_do_not_share_counters(self, session_factory, deterministic_clock):
        with ThreadPoolExecutor(max_workers=4) as pool:
            acme = pool.submit(_mint, session_factory, deterministic_clock, "acme", 5)
            beta = pool.submit(_mint, session_factory, deterministic_clock, "beta", 5)

            assert acme.result() == [1, 2, 3, 4, 5]
            assert beta.result() == [1, 2, 3, 4, 5]
