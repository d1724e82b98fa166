"""
Invoice workflow state machine (``approval_kernel.domain.workflow``).

Responsibility
--------------
The canonical status graph, the PM-stage and final-stage transition tables,
the final-stage guard, and the status/approval-record consistency check.
Every function here takes the current ``InvoiceRecord`` and returns a
``TransitionPlan`` describing the write; nothing is applied in place.

Architecture position
---------------------
**Kernel domain layer** -- pure.  ZERO I/O.  Time and actor arrive as
arguments.

Invariants enforced
-------------------
* Validate-then-act: ``parse_action`` rejects unknown actions before any
  plan exists.
* Final-stage guard: ``ADMIN_APPROVE`` / ``ADMIN_REJECT`` raise
  ``PmApprovalRequiredError`` unless ``pm_approval.status == APPROVED`` on
  the record passed in (the caller passes the freshly locked row).
* Terminal statuses have no outgoing edges except ``Approved -> PAID``.
* Tables are exhaustive over ``TransitionAction``; checked at import time.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from approval_kernel.domain.dtos import (
    TERMINAL_STATUSES,
    ApprovalRecord,
    ApprovalState,
    InvoiceRecord,
    InvoiceStatus,
)
from approval_kernel.exceptions import (
    InconsistentStateError,
    InvalidActionError,
    PmApprovalRequiredError,
    TransitionNotAllowedError,
)


class Stage(str, Enum):
    """Pipeline stage an action belongs to."""

    PM = "pm"
    FINAL = "final"


class TransitionAction(str, Enum):
    """The enumerated transition set accepted by the orchestrator."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_INFO = "REQUEST_INFO"
    ADMIN_APPROVE = "ADMIN_APPROVE"
    ADMIN_REJECT = "ADMIN_REJECT"

    @property
    def stage(self) -> Stage:
        return ACTION_STAGE[self]

    @property
    def audit_action(self) -> str:
        if self.stage is Stage.PM:
            return f"PM_{self.value}"
        return self.value


ACTION_STAGE: Mapping[TransitionAction, Stage] = MappingProxyType({
    TransitionAction.APPROVE: Stage.PM,
    TransitionAction.REJECT: Stage.PM,
    TransitionAction.REQUEST_INFO: Stage.PM,
    TransitionAction.ADMIN_APPROVE: Stage.FINAL,
    TransitionAction.ADMIN_REJECT: Stage.FINAL,
})


@dataclass(frozen=True)
class StageOutcome:
    """Row of a transition table: the approval record status and the
    invoice status an action produces."""

    record_status: ApprovalState
    invoice_status: InvoiceStatus


PM_STAGE_TABLE: Mapping[TransitionAction, StageOutcome] = MappingProxyType({
    TransitionAction.APPROVE: StageOutcome(ApprovalState.APPROVED, InvoiceStatus.PM_APPROVED),
    TransitionAction.REJECT: StageOutcome(ApprovalState.REJECTED, InvoiceStatus.REJECTED),
    TransitionAction.REQUEST_INFO: StageOutcome(
        ApprovalState.INFO_REQUESTED, InvoiceStatus.INFO_REQUESTED,
    ),
})

FINAL_STAGE_TABLE: Mapping[TransitionAction, StageOutcome] = MappingProxyType({
    TransitionAction.ADMIN_APPROVE: StageOutcome(ApprovalState.APPROVED, InvoiceStatus.APPROVED),
    TransitionAction.ADMIN_REJECT: StageOutcome(ApprovalState.REJECTED, InvoiceStatus.REJECTED),
})

STAGE_TABLES: Mapping[Stage, Mapping[TransitionAction, StageOutcome]] = MappingProxyType({
    Stage.PM: PM_STAGE_TABLE,
    Stage.FINAL: FINAL_STAGE_TABLE,
})

# Record field each stage writes on the invoice
STAGE_RECORD_FIELD: Mapping[Stage, str] = MappingProxyType({
    Stage.PM: "pm_approval",
    Stage.FINAL: "admin_approval",
})


# Processing path (ingestion, review, payment).  PM/final-stage edges are
# governed by the tables above, not by this graph.
PROCESSING_TRANSITIONS: Mapping[InvoiceStatus, frozenset[InvoiceStatus]] = MappingProxyType({
    InvoiceStatus.RECEIVED: frozenset({InvoiceStatus.DIGITIZING}),
    InvoiceStatus.PENDING: frozenset({
        InvoiceStatus.DIGITIZING,
        InvoiceStatus.PENDING_APPROVAL,
    }),
    InvoiceStatus.DIGITIZING: frozenset({
        InvoiceStatus.VERIFIED,
        InvoiceStatus.VALIDATION_REQUIRED,
        InvoiceStatus.MATCH_DISCREPANCY,
    }),
    InvoiceStatus.VALIDATION_REQUIRED: frozenset({
        InvoiceStatus.VERIFIED,
        InvoiceStatus.PENDING_APPROVAL,
    }),
    InvoiceStatus.MATCH_DISCREPANCY: frozenset({
        InvoiceStatus.VERIFIED,
        InvoiceStatus.PENDING_APPROVAL,
    }),
    InvoiceStatus.VERIFIED: frozenset({InvoiceStatus.PENDING_APPROVAL}),
    InvoiceStatus.PENDING_APPROVAL: frozenset(),
    InvoiceStatus.PM_APPROVED: frozenset(),
    InvoiceStatus.INFO_REQUESTED: frozenset({InvoiceStatus.PENDING_APPROVAL}),
    InvoiceStatus.APPROVED: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.REJECTED: frozenset(),
    InvoiceStatus.PAID: frozenset(),
})

HIL_REVIEW_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.VALIDATION_REQUIRED,
    InvoiceStatus.MATCH_DISCREPANCY,
})


def _check_tables() -> None:
    for action in TransitionAction:
        owners = [stage for stage, table in STAGE_TABLES.items() if action in table]
        if owners != [ACTION_STAGE[action]]:
            raise RuntimeError(
                f"Transition tables must map {action.value} exactly once "
                f"under stage {ACTION_STAGE[action].value}"
            )
    missing = set(InvoiceStatus) - set(PROCESSING_TRANSITIONS)
    if missing:
        raise RuntimeError(
            f"Processing graph is missing statuses: {sorted(s.value for s in missing)}"
        )


_check_tables()


def parse_action(raw: object, stage: Stage | None = None) -> TransitionAction:
    """Resolve a caller-supplied action, or raise ``InvalidActionError``.

    With ``stage`` set, only that stage's actions are accepted.
    """
    allowed = tuple(
        a for a in TransitionAction if stage is None or a.stage is stage
    )
    if isinstance(raw, TransitionAction):
        action = raw
    elif isinstance(raw, str):
        try:
            action = TransitionAction(raw.strip().upper())
        except ValueError:
            raise InvalidActionError(raw, tuple(a.value for a in allowed)) from None
    else:
        raise InvalidActionError(raw, tuple(a.value for a in allowed))
    if action not in allowed:
        raise InvalidActionError(raw, tuple(a.value for a in allowed))
    return action


@dataclass(frozen=True)
class TransitionPlan:
    """The partial update a transition computes.

    ``changes`` holds only the fields that move; callers merge it into the
    stored record.  ``is_noop`` marks an idempotent repeat.
    """

    invoice_id: str
    audit_action: str
    previous_status: InvoiceStatus
    new_status: InvoiceStatus
    changes: Mapping[str, object]
    is_noop: bool = False

    def apply_to(self, invoice: InvoiceRecord) -> InvoiceRecord:
        return replace(invoice, **dict(self.changes))


def is_final_stage_ready(invoice: InvoiceRecord) -> bool:
    """Guard for the final stage."""
    return invoice.pm_approval.status is ApprovalState.APPROVED


def plan_transition(
    invoice: InvoiceRecord,
    action: TransitionAction,
    *,
    actor_id: str,
    actor_role: str,
    now: datetime,
    notes: str | None = None,
) -> TransitionPlan:
    """Compute the PM-stage or final-stage transition for ``invoice``.

    Raises:
        PmApprovalRequiredError: final-stage action while PM approval is
            not APPROVED.
        TransitionNotAllowedError: invoice is terminal and this is not an
            idempotent repeat.
    """
    stage = action.stage
    outcome = STAGE_TABLES[stage][action]
    record_field = STAGE_RECORD_FIELD[stage]
    current_record: ApprovalRecord = getattr(invoice, record_field)

    already_applied = (
        action is not TransitionAction.REQUEST_INFO
        and invoice.status is outcome.invoice_status
        and current_record.status is outcome.record_status
    )
    if already_applied:
        return TransitionPlan(
            invoice_id=invoice.id,
            audit_action=action.audit_action,
            previous_status=invoice.status,
            new_status=invoice.status,
            changes=MappingProxyType({}),
            is_noop=True,
        )

    if stage is Stage.FINAL and not is_final_stage_ready(invoice):
        raise PmApprovalRequiredError(invoice.id, invoice.pm_approval.status.value)

    if invoice.status in TERMINAL_STATUSES:
        raise TransitionNotAllowedError(
            invoice.id, invoice.status.value, outcome.invoice_status.value,
        )

    record = ApprovalRecord(
        status=outcome.record_status,
        approved_by=actor_id,
        approved_by_role=actor_role,
        approved_at=now,
        notes=notes or None,
    )
    return TransitionPlan(
        invoice_id=invoice.id,
        audit_action=action.audit_action,
        previous_status=invoice.status,
        new_status=outcome.invoice_status,
        changes=MappingProxyType({
            record_field: record,
            "status": outcome.invoice_status,
            "updated_at": now,
        }),
    )


def plan_processing(
    invoice: InvoiceRecord,
    new_status: InvoiceStatus,
    *,
    actor_id: str,
    actor_role: str,
    now: datetime,
    notes: str | None = None,
    audit_action: str | None = None,
) -> TransitionPlan:
    """Compute a processing-path move along ``PROCESSING_TRANSITIONS``.

    Leaving a review status records the human review on ``hil_review``;
    resolving an info request resets the PM record to PENDING.
    """
    if new_status not in PROCESSING_TRANSITIONS[invoice.status]:
        raise TransitionNotAllowedError(
            invoice.id, invoice.status.value, new_status.value,
        )

    changes: dict[str, object] = {"status": new_status, "updated_at": now}
    if invoice.status in HIL_REVIEW_STATUSES:
        changes["hil_review"] = ApprovalRecord(
            status=ApprovalState.APPROVED,
            approved_by=actor_id,
            approved_by_role=actor_role,
            approved_at=now,
            notes=notes or None,
        )
    if invoice.status is InvoiceStatus.INFO_REQUESTED:
        changes["pm_approval"] = ApprovalRecord.pending()

    return TransitionPlan(
        invoice_id=invoice.id,
        audit_action=audit_action or f"STATUS_{new_status.name}",
        previous_status=invoice.status,
        new_status=new_status,
        changes=MappingProxyType(changes),
    )


def assert_consistent(invoice: InvoiceRecord) -> None:
    """Raise ``InconsistentStateError`` if status and records disagree."""
    pm = invoice.pm_approval.status
    final = invoice.admin_approval.status
    status = invoice.status

    if status is InvoiceStatus.PM_APPROVED and pm is not ApprovalState.APPROVED:
        reason = f"PM approval is {pm.value}"
    elif status is InvoiceStatus.INFO_REQUESTED and pm is not ApprovalState.INFO_REQUESTED:
        reason = f"PM approval is {pm.value}"
    elif status in (InvoiceStatus.APPROVED, InvoiceStatus.PAID) and not (
        pm is ApprovalState.APPROVED and final is ApprovalState.APPROVED
    ):
        reason = f"PM approval is {pm.value}, final approval is {final.value}"
    elif status is InvoiceStatus.REJECTED and ApprovalState.REJECTED not in (pm, final):
        reason = "no approval record is REJECTED"
    else:
        return
    raise InconsistentStateError(invoice.id, status.value, reason)
