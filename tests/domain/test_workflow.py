"""
Tests for the invoice workflow state machine (``approval_kernel.domain.workflow``).

Invariants tested:
- PM-stage and final-stage tables produce the documented record/status pairs.
- The final-stage guard raises PmApprovalRequiredError whenever
  pm_approval is not APPROVED, whatever the invoice status.
- Terminal invoices refuse further decisions; repeats are no-ops.
- Unknown actions are rejected before any plan exists.
- Every planned write passes the consistency check.
"""

from datetime import datetime, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from approval_kernel.domain.dtos import (
    TERMINAL_STATUSES,
    ApprovalRecord,
    ApprovalState,
    InvoiceRecord,
    InvoiceStatus,
)
from approval_kernel.domain.workflow import (
    FINAL_STAGE_TABLE,
    PM_STAGE_TABLE,
    PROCESSING_TRANSITIONS,
    Stage,
    TransitionAction,
    assert_consistent,
    parse_action,
    plan_processing,
    plan_transition,
)
from approval_kernel.exceptions import (
    InconsistentStateError,
    InvalidActionError,
    PmApprovalRequiredError,
    TransitionNotAllowedError,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _invoice(status=InvoiceStatus.PENDING_APPROVAL, pm=ApprovalState.PENDING,
             admin=ApprovalState.PENDING) -> InvoiceRecord:
    return InvoiceRecord(
        id="inv-1",
        status=status,
        project="P1",
        pm_approval=ApprovalRecord(status=pm),
        admin_approval=ApprovalRecord(status=admin),
    )


def _plan(invoice, action, **kw):
    return plan_transition(
        invoice, action, actor_id="u-1", actor_role="PM", now=NOW, **kw,
    )


class TestParseAction:

    @pytest.mark.parametrize("raw", ["APPROVE", "approve", " request_info ", TransitionAction.ADMIN_REJECT])
    def test_accepts_enumerated(self, raw):
        assert isinstance(parse_action(raw), TransitionAction)

    @pytest.mark.parametrize("raw", ["ESCALATE", "", None, 3])
    def test_rejects_unknown(self, raw):
        with pytest.raises(InvalidActionError) as exc_info:
            parse_action(raw)
        assert "APPROVE" in exc_info.value.allowed

    def test_stage_restriction(self):
        with pytest.raises(InvalidActionError):
            parse_action("ADMIN_APPROVE", stage=Stage.PM)
        assert parse_action("REJECT", stage=Stage.PM) is TransitionAction.REJECT

    def test_audit_action_names(self):
        assert TransitionAction.APPROVE.audit_action == "PM_APPROVE"
        assert TransitionAction.REQUEST_INFO.audit_action == "PM_REQUEST_INFO"
        assert TransitionAction.ADMIN_APPROVE.audit_action == "ADMIN_APPROVE"


class TestPmStage:

    @pytest.mark.parametrize("action,record,status", [
        (TransitionAction.APPROVE, ApprovalState.APPROVED, InvoiceStatus.PM_APPROVED),
        (TransitionAction.REJECT, ApprovalState.REJECTED, InvoiceStatus.REJECTED),
        (TransitionAction.REQUEST_INFO, ApprovalState.INFO_REQUESTED, InvoiceStatus.INFO_REQUESTED),
    ])
    def test_table(self, action, record, status):
        plan = _plan(_invoice(), action, notes="looks fine")
        assert plan.new_status is status
        assert plan.changes["status"] is status
        written = plan.changes["pm_approval"]
        assert written.status is record
        assert written.approved_by == "u-1"
        assert written.approved_by_role == "PM"
        assert written.approved_at == NOW
        assert written.notes == "looks fine"
        assert "admin_approval" not in plan.changes

    def test_partial_update_only(self):
        plan = _plan(_invoice(), TransitionAction.APPROVE)
        assert set(plan.changes) == {"pm_approval", "status", "updated_at"}
        applied = plan.apply_to(_invoice())
        assert applied.project == "P1"
        assert applied.admin_approval.status is ApprovalState.PENDING

    def test_repeat_approve_is_noop(self):
        invoice = _invoice(InvoiceStatus.PM_APPROVED, pm=ApprovalState.APPROVED)
        plan = _plan(invoice, TransitionAction.APPROVE)
        assert plan.is_noop
        assert plan.changes == {}

    def test_repeat_request_info_is_not_noop(self):
        invoice = _invoice(InvoiceStatus.INFO_REQUESTED, pm=ApprovalState.INFO_REQUESTED)
        assert not _plan(invoice, TransitionAction.REQUEST_INFO).is_noop

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_refuses_change(self, status):
        invoice = _invoice(status, pm=ApprovalState.APPROVED, admin=ApprovalState.APPROVED)
        with pytest.raises(TransitionNotAllowedError) as exc_info:
            _plan(invoice, TransitionAction.REJECT)
        assert exc_info.value.from_status == status.value

    def test_reject_after_pm_approval_allowed(self):
        invoice = _invoice(InvoiceStatus.PM_APPROVED, pm=ApprovalState.APPROVED)
        plan = _plan(invoice, TransitionAction.REJECT)
        assert plan.new_status is InvoiceStatus.REJECTED


class TestFinalStage:

    @pytest.mark.parametrize("action,status", [
        (TransitionAction.ADMIN_APPROVE, InvoiceStatus.APPROVED),
        (TransitionAction.ADMIN_REJECT, InvoiceStatus.REJECTED),
    ])
    def test_table(self, action, status):
        invoice = _invoice(InvoiceStatus.PM_APPROVED, pm=ApprovalState.APPROVED)
        plan = _plan(invoice, action)
        assert plan.new_status is status
        assert plan.changes["admin_approval"].status is FINAL_STAGE_TABLE[action].record_status
        assert "pm_approval" not in plan.changes

    @given(
        status=st.sampled_from(list(InvoiceStatus)),
        pm=st.sampled_from([s for s in ApprovalState if s is not ApprovalState.APPROVED]),
        action=st.sampled_from([TransitionAction.ADMIN_APPROVE, TransitionAction.ADMIN_REJECT]),
    )
    def test_guard_fails_without_pm_approval(self, status, pm, action):
        invoice = _invoice(status, pm=pm)
        with pytest.raises(PmApprovalRequiredError) as exc_info:
            _plan(invoice, action)
        assert exc_info.value.pm_status == pm.value

    def test_repeat_admin_approve_is_noop(self):
        invoice = _invoice(InvoiceStatus.APPROVED, pm=ApprovalState.APPROVED,
                           admin=ApprovalState.APPROVED)
        assert _plan(invoice, TransitionAction.ADMIN_APPROVE).is_noop

    def test_admin_approve_on_rejected_refused(self):
        invoice = _invoice(InvoiceStatus.REJECTED, pm=ApprovalState.APPROVED,
                           admin=ApprovalState.REJECTED)
        with pytest.raises(TransitionNotAllowedError):
            _plan(invoice, TransitionAction.ADMIN_APPROVE)


class TestProcessing:

    def test_graph_covers_every_status(self):
        assert set(PROCESSING_TRANSITIONS) == set(InvoiceStatus)

    def test_paid_only_from_approved(self):
        sources = {s for s, targets in PROCESSING_TRANSITIONS.items()
                   if InvoiceStatus.PAID in targets}
        assert sources == {InvoiceStatus.APPROVED}

    def test_valid_edge(self):
        plan = plan_processing(
            _invoice(InvoiceStatus.DIGITIZING), InvoiceStatus.VERIFIED,
            actor_id="u-1", actor_role="Finance User", now=NOW,
        )
        assert plan.audit_action == "STATUS_VERIFIED"
        assert plan.changes["status"] is InvoiceStatus.VERIFIED

    def test_invalid_edge(self):
        with pytest.raises(TransitionNotAllowedError):
            plan_processing(
                _invoice(InvoiceStatus.RECEIVED), InvoiceStatus.PAID,
                actor_id="u-1", actor_role="Finance User", now=NOW,
            )

    def test_leaving_review_records_hil(self):
        plan = plan_processing(
            _invoice(InvoiceStatus.MATCH_DISCREPANCY), InvoiceStatus.PENDING_APPROVAL,
            actor_id="u-1", actor_role="Finance User", now=NOW, notes="PO matched",
        )
        assert plan.changes["hil_review"].status is ApprovalState.APPROVED
        assert plan.changes["hil_review"].notes == "PO matched"

    def test_resolving_info_request_resets_pm_record(self):
        plan = plan_processing(
            _invoice(InvoiceStatus.INFO_REQUESTED, pm=ApprovalState.INFO_REQUESTED),
            InvoiceStatus.PENDING_APPROVAL,
            actor_id="u-v", actor_role="Vendor", now=NOW, audit_action="INFO_PROVIDED",
        )
        assert plan.audit_action == "INFO_PROVIDED"
        assert plan.changes["pm_approval"] == ApprovalRecord.pending()


class TestConsistency:

    @given(
        status=st.sampled_from(list(InvoiceStatus)),
        pm=st.sampled_from(list(ApprovalState)),
        admin=st.sampled_from(list(ApprovalState)),
        action=st.sampled_from(list(TransitionAction)),
    )
    def test_every_planned_write_is_consistent(self, status, pm, admin, action):
        invoice = _invoice(status, pm=pm, admin=admin)
        try:
            plan = _plan(invoice, action)
        except (PmApprovalRequiredError, TransitionNotAllowedError):
            return
        if plan.is_noop:
            return
        updated = plan.apply_to(invoice)
        assert updated.status in set(InvoiceStatus)
        stage_table = PM_STAGE_TABLE if action.stage is Stage.PM else FINAL_STAGE_TABLE
        record = updated.pm_approval if action.stage is Stage.PM else updated.admin_approval
        assert record.status is stage_table[action].record_status
        assert updated.status is stage_table[action].invoice_status
        assert_consistent(updated)

    def test_pm_approved_without_record_is_inconsistent(self):
        with pytest.raises(InconsistentStateError):
            assert_consistent(_invoice(InvoiceStatus.PM_APPROVED))

    def test_approved_requires_both_records(self):
        with pytest.raises(InconsistentStateError):
            assert_consistent(_invoice(InvoiceStatus.APPROVED, pm=ApprovalState.APPROVED))
        assert_consistent(_invoice(
            InvoiceStatus.APPROVED, pm=ApprovalState.APPROVED, admin=ApprovalState.APPROVED,
        ))
