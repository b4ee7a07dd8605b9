"""Final status decision table: first matching row wins."""

import pytest

from docledger_engines import STATUS_TABLE, DecisionFacts, decide_status
from docledger_kernel.domain.documents import JobStatus


class TestDecideStatus:
    def test_row_order(self):
        assert [row.name for row in STATUS_TABLE] == [
            "policy_rejected",
            "policy_requires_approval",
            "validation_failed",
            "anomaly_blocks_auto_approve",
            "workflow_requires_approval",
            "rule_auto_approve",
        ]

    def test_nothing_set_is_ready_without_approval(self):
        name, outcome = decide_status(DecisionFacts())

        assert name == "default"
        assert outcome.status == JobStatus.READY
        assert outcome.requires_approval is False
        assert outcome.create_request is False

    @pytest.mark.parametrize(
        "facts, expected_name, create_request",
        [
            (DecisionFacts(policy_rejected=True, rule_auto_approve=True), "policy_rejected", False),
            (DecisionFacts(policy_requires_approval=True, validation_failed=True), "policy_requires_approval", True),
            (DecisionFacts(validation_failed=True, workflow_requires_approval=True), "validation_failed", False),
            (DecisionFacts(anomaly_blocks_auto_approve=True, workflow_requires_approval=True), "anomaly_blocks_auto_approve", False),
            (DecisionFacts(workflow_requires_approval=True, rule_auto_approve=True), "workflow_requires_approval", True),
        ],
    )
    def test_precedence(self, facts, expected_name, create_request):
        name, outcome = decide_status(facts)

        assert name == expected_name
        assert outcome.status == JobStatus.READY
        assert outcome.requires_approval is True
        assert outcome.create_request is create_request

    def test_rule_auto_approve(self):
        name, outcome = decide_status(DecisionFacts(rule_auto_approve=True))

        assert name == "rule_auto_approve"
        assert outcome.status == JobStatus.APPROVED
        assert outcome.requires_approval is False

    @pytest.mark.parametrize("blocker", ["has_warnings", "duplicate_warning"])
    def test_auto_approve_needs_a_clean_document(self, blocker):
        name, outcome = decide_status(DecisionFacts(rule_auto_approve=True, **{blocker: True}))

        assert name == "default"
        assert outcome.status == JobStatus.READY
