"""
Concurrency tests for invoice transitions.

Invariants tested:
- A PM decision and a final-stage decision racing on one invoice produce
  exactly one winner; the loser sees the committed state and fails.
- N identical concurrent decisions produce one applied result, N-1 no-ops,
  one audit entry and one event.
- The stored invoice is consistent after every race.

Threads start together on a Barrier.  The per-invoice lock and the row lock
serialize them; these tests only check the outcome.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from conftest import read_audit, read_invoice

from approval_kernel.domain.dtos import ApprovalState, InvoiceStatus
from approval_kernel.domain.workflow import assert_consistent
from approval_kernel.exceptions import (
    ApprovalKernelError,
    PmApprovalRequiredError,
    TransitionNotAllowedError,
)
from approval_kernel.services.keyed_lock import KeyedLock
from approval_services.orchestrator import ApprovalOrchestrator


def _race(calls):
    """Run every callable at once; return results or raised kernel errors."""
    barrier = Barrier(len(calls))

    def run(call):
        barrier.wait(timeout=10)
        try:
            return call()
        except ApprovalKernelError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


class TestPmVersusFinal:

    @pytest.mark.parametrize("round_", range(5))
    def test_exactly_one_winner(self, orchestrator, make_invoice, session_factory,
                                publisher, round_):
        invoice = make_invoice(InvoiceStatus.PM_APPROVED, pm_status=ApprovalState.APPROVED)

        pm_reject, admin_approve = _race([
            lambda: orchestrator.submit_transition("u-pm1", invoice.id, "REJECT"),
            lambda: orchestrator.submit_transition("u-admin", invoice.id, "ADMIN_APPROVE"),
        ])

        stored = read_invoice(session_factory, invoice.id)
        assert_consistent(stored)
        (entry,) = read_audit(session_factory, invoice.id)
        assert len(publisher.events) == 1

        if stored.status is InvoiceStatus.REJECTED:
            assert pm_reject.applied
            assert isinstance(admin_approve, PmApprovalRequiredError)
            assert entry.action == "PM_REJECT"
        else:
            assert stored.status is InvoiceStatus.APPROVED
            assert admin_approve.applied
            assert isinstance(pm_reject, TransitionNotAllowedError)
            assert entry.action == "ADMIN_APPROVE"


class TestIdenticalDecisions:

    def test_one_applied_rest_noop(self, orchestrator, make_invoice, session_factory,
                                   publisher):
        invoice = make_invoice()
        n = 8
        results = _race([
            lambda: orchestrator.submit_transition("u-pm1", invoice.id, "APPROVE")
        ] * n)

        assert not any(isinstance(r, Exception) for r in results)
        assert sum(r.applied for r in results) == 1
        assert all(r.new_status is InvoiceStatus.PM_APPROVED for r in results)
        assert len(read_audit(session_factory, invoice.id)) == 1
        assert len(publisher.events) == 1

    def test_orchestrators_sharing_a_lock(self, session_factory, clock, policy, users,
                                          make_invoice, publisher):
        """Two orchestrator instances in one process serialize on a shared lock."""
        locks = KeyedLock()
        first, second = (
            ApprovalOrchestrator(
                session_factory, clock=clock, policy=policy,
                publisher=publisher, locks=locks,
            )
            for _ in range(2)
        )
        invoice = make_invoice(InvoiceStatus.PM_APPROVED, pm_status=ApprovalState.APPROVED)

        results = _race([
            lambda: first.submit_transition("u-admin", invoice.id, "ADMIN_APPROVE"),
            lambda: second.submit_transition("u-fin", invoice.id, "ADMIN_APPROVE"),
        ])

        assert sum(r.applied for r in results) == 1
        assert len(read_audit(session_factory, invoice.id)) == 1
        assert len(locks) == 0
