"""
approval_services.orchestrator -- the single entry point for invoice
status changes.

Responsibility:
    Receives a transition request, authenticates and authorizes the actor
    (folding live delegations into a PM's project scope), applies the
    workflow state machine to the freshly locked invoice, persists the
    partial update, raises the info-request message, appends the audit
    entry, commits, and only then publishes the status event.

Architecture position:
    Services layer.  Owns sessions and transactions; composes the kernel's
    pure domain (roles, permissions, delegation, workflow) with the kernel
    services (store, audit recorder) and an outbound ``EventPublisher``.

Invariants enforced:
    - Validate-then-act: unauthenticated callers, unknown actions and
      unknown recipient roles are rejected before any session opens.
    - Forbidden before load: a role that can never perform the action is
      refused before the invoice is read.
    - No time-of-check/time-of-use gap: the per-invoice lock is held and the
      row is read ``FOR UPDATE`` inside the same transaction as the write,
      so the final-stage guard always sees the committed PM decision.
    - Side effects in order: invoice write, then at most one message, then
      exactly one audit entry, then commit, then the event.  Any failure
      before commit rolls all three back.
    - An idempotent repeat writes nothing and publishes nothing.
    - Publishing never raises into the caller.

Failure modes:
    - UnauthenticatedError, InvalidActionError, ForbiddenError,
      InvoiceNotFoundError, PmApprovalRequiredError,
      TransitionNotAllowedError: caller-visible, nothing written.
    - PersistenceFailureError: the transaction is rolled back.
    - InconsistentStateError: a computed write disagreed with its approval
      records; rolled back.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from approval_config import get_active_policy
from approval_kernel.db.base import new_id
from approval_kernel.db.engine import session_scope
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.delegation import effective_actor
from approval_kernel.domain.dtos import (
    INVOICE_CURRENCY,
    ApprovalRecord,
    InvoiceDraft,
    InvoiceRecord,
    InvoiceStatus,
    Message,
    MessageType,
    SubmissionChannel,
    TransitionResult,
    UserRecord,
)
from approval_kernel.domain.events import (
    StatusEvent,
    StatusEventType,
    event_type_for,
    event_type_for_status,
)
from approval_kernel.domain.permissions import (
    ActionKind,
    PermissionEvaluator,
    PermissionPolicy,
)
from approval_kernel.domain.ports import EventPublisher, NullPublisher
from approval_kernel.domain.roles import CanonicalRole, is_canonical
from approval_kernel.domain.workflow import (
    Stage,
    TransitionAction,
    TransitionPlan,
    assert_consistent,
    parse_action,
    plan_processing,
    plan_transition,
)
from approval_kernel.exceptions import (
    ApprovalKernelError,
    ForbiddenError,
    InvalidActionError,
    InvoiceNotFoundError,
    TransitionNotAllowedError,
    UnauthenticatedError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.audit_recorder import AuditRecorder
from approval_kernel.services.keyed_lock import KeyedLock
from approval_kernel.services.store import SqlAlchemyStore

logger = get_logger("services.orchestrator")

TRACE_TYPE_INVOICE_TRANSITION = "INVOICE_TRANSITION"
OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_REJECTED = "rejected"

# Recipient role of an info request -> fallback display name
_INFO_RECIPIENTS: dict[CanonicalRole, str] = {
    CanonicalRole.VENDOR: "Vendor",
    CanonicalRole.FINANCE_USER: "Finance Manager",
    CanonicalRole.PROJECT_MANAGER: "Project Manager",
}

# Exits owned by resolve_info_request and mark_paid
_DEDICATED_EXITS: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.INFO_REQUESTED,
    InvoiceStatus.APPROVED,
})


@dataclass(frozen=True)
class _Outcome:
    """What one locked unit of work produced."""

    result: TransitionResult
    invoice: InvoiceRecord
    event_type: StatusEventType | None


def _role_label(role: CanonicalRole | str) -> str:
    return role.value if isinstance(role, CanonicalRole) else str(role)


class ApprovalOrchestrator:
    """
    Contract:
        Every public operation runs in its own transaction opened from
        ``session_factory`` and returns only after it committed.

    Non-goals:
        - Does NOT deliver notifications; it publishes ``StatusEvent``s.
        - Does NOT manage delegation records (``DelegationDirectory``).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Clock | None = None,
        policy: PermissionPolicy | None = None,
        publisher: EventPublisher | None = None,
        locks: KeyedLock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._evaluator = PermissionEvaluator(
            policy if policy is not None else get_active_policy()
        )
        self._publisher = publisher or NullPublisher()
        self._locks = locks or KeyedLock()

    @property
    def evaluator(self) -> PermissionEvaluator:
        return self._evaluator

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit_transition(
        self,
        actor_id: str | None,
        invoice_id: str,
        action: TransitionAction | str,
        notes: str | None = None,
        recipient_role: str | None = None,
    ) -> TransitionResult:
        """
        Apply a PM-stage or final-stage decision to an invoice.

        ``recipient_role`` only applies to REQUEST_INFO: Vendor (default,
        the submitter), Finance User (the finance reviewer on record,
        else the first active finance user) or PM (the invoice's assigned PM).

        Raises:
            UnauthenticatedError, InvalidActionError, ForbiddenError,
            InvoiceNotFoundError, PmApprovalRequiredError,
            TransitionNotAllowedError, PersistenceFailureError.
        """
        if not actor_id:
            raise UnauthenticatedError()
        parsed = parse_action(action)
        recipient = self._parse_recipient_role(recipient_role)

        def work(store: SqlAlchemyStore, actor: UserRecord, invoice: InvoiceRecord,
                 now: datetime) -> _Outcome:
            self._authorize_decision(store, actor, parsed, invoice, now)
            role = _role_label(self._evaluator.role_of(actor))
            plan = plan_transition(
                invoice, parsed,
                actor_id=actor.id, actor_role=role, now=now, notes=notes,
            )
            if plan.is_noop:
                return _Outcome(
                    result=TransitionResult(
                        invoice_id=invoice.id,
                        action=parsed.value,
                        previous_status=invoice.status,
                        new_status=invoice.status,
                        applied=False,
                    ),
                    invoice=invoice,
                    event_type=None,
                )
            updated = self._write(store, plan)
            message_id = None
            if parsed is TransitionAction.REQUEST_INFO:
                message_id = self._create_info_request(
                    store, actor, role, updated, notes, recipient, now,
                )
            self._audit(store, actor, plan, updated,
                        _decision_details(parsed, notes))
            return _Outcome(
                result=TransitionResult(
                    invoice_id=updated.id,
                    action=parsed.value,
                    previous_status=plan.previous_status,
                    new_status=updated.status,
                    message_id=message_id,
                ),
                invoice=updated,
                event_type=event_type_for(parsed),
            )

        capability = (
            self._evaluator.can_potentially_approve
            if parsed.stage is Stage.PM
            else lambda a: self._evaluator.allowed(a, ActionKind.FINALIZE_PAYMENT)
        )
        return self._run(
            actor_id, invoice_id, parsed.value, work,
            capability=capability,
            capability_action=(
                ActionKind.APPROVE_INVOICE if parsed.stage is Stage.PM
                else ActionKind.FINALIZE_PAYMENT
            ),
        )

    def submit_invoice(
        self,
        actor_id: str | None,
        draft: InvoiceDraft,
        channel: SubmissionChannel = SubmissionChannel.MANUAL,
    ) -> InvoiceRecord:
        """
        Create an invoice.  Manual submissions start at "Pending",
        automated ingestion at RECEIVED; all approval records start PENDING.
        """
        if not actor_id:
            raise UnauthenticatedError()
        invoice_id = draft.invoice_id or new_id()
        initial = (
            InvoiceStatus.RECEIVED if channel is SubmissionChannel.AUTOMATED
            else InvoiceStatus.PENDING
        )
        audit_action = "RECEIVED" if channel is SubmissionChannel.AUTOMATED else "SUBMIT"

        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id, action=audit_action):
            with self._locks.hold(invoice_id):
                with session_scope(self._session_factory) as session:
                    store = SqlAlchemyStore(session, self._clock)
                    actor = self._resolve_actor(store, actor_id)
                    self._evaluator.authorize(actor, ActionKind.SUBMIT_INVOICE)
                    existing = store.get_for_update(invoice_id)
                    if existing is not None:
                        raise TransitionNotAllowedError(
                            invoice_id, existing.status.value, initial.value,
                        )
                    now = self._clock.now()
                    pending = ApprovalRecord.pending()
                    created = store.upsert(invoice_id, {
                        "status": initial,
                        "submitted_by_user_id": actor.id,
                        "vendor_id": draft.vendor_id,
                        "vendor_name": draft.vendor_name,
                        "project": draft.project,
                        "assigned_pm": draft.assigned_pm,
                        "pm_approval": pending,
                        "admin_approval": pending,
                        "hil_review": pending,
                        "amount": draft.amount,
                        "currency": INVOICE_CURRENCY,
                        "invoice_number": draft.invoice_number,
                        "invoice_date": draft.invoice_date,
                        "created_at": now,
                        "updated_at": now,
                    })
                    role = _role_label(self._evaluator.role_of(actor))
                    details = (
                        f"Invoice {created.label} received via {channel.value} ingestion"
                        if channel is SubmissionChannel.AUTOMATED
                        else f"Invoice {created.label} submitted ({role})"
                    )
                    AuditRecorder(store, self._evaluator, self._clock).record(
                        invoice_id=invoice_id,
                        actor=actor,
                        action=audit_action,
                        details=details,
                        status=initial,
                    )
            logger.info(
                "invoice_submitted",
                extra={"channel": channel.value, "status": initial.value},
            )
            self._publish(created, StatusEventType.RECEIVED, actor_id)
        return created

    def advance_processing(
        self,
        actor_id: str | None,
        invoice_id: str,
        new_status: InvoiceStatus | str,
        notes: str | None = None,
    ) -> TransitionResult:
        """Move an invoice along the digitization / review path."""
        if not actor_id:
            raise UnauthenticatedError()
        target = self._parse_status(new_status)

        def work(store: SqlAlchemyStore, actor: UserRecord, invoice: InvoiceRecord,
                 now: datetime) -> _Outcome:
            if invoice.status in _DEDICATED_EXITS:
                raise TransitionNotAllowedError(
                    invoice.id, invoice.status.value, target.value,
                )
            plan = plan_processing(
                invoice, target,
                actor_id=actor.id,
                actor_role=_role_label(self._evaluator.role_of(actor)),
                now=now,
                notes=notes,
            )
            updated = self._write(store, plan)
            details = f"Status updated to {target.value}" + (f": {notes}" if notes else "")
            self._audit(store, actor, plan, updated, details)
            return self._applied(plan, updated, event_type_for_status(target))

        return self._run(
            actor_id, invoice_id, f"STATUS_{target.name}", work,
            capability=lambda a: self._evaluator.allowed(
                a, ActionKind.PROCESS_DISCREPANCIES,
            ),
            capability_action=ActionKind.PROCESS_DISCREPANCIES,
        )

    def resolve_info_request(
        self,
        actor_id: str | None,
        invoice_id: str,
        notes: str | None = None,
    ) -> TransitionResult:
        """Return an "Info Requested" invoice to PENDING_APPROVAL.

        Allowed for the invoice's submitter and for roles that process
        discrepancies.
        """
        if not actor_id:
            raise UnauthenticatedError()

        def work(store: SqlAlchemyStore, actor: UserRecord, invoice: InvoiceRecord,
                 now: datetime) -> _Outcome:
            is_submitter = bool(invoice.submitted_by_user_id) and (
                invoice.submitted_by_user_id == actor.id
            )
            if not is_submitter and not self._evaluator.allowed(
                actor, ActionKind.PROCESS_DISCREPANCIES,
            ):
                raise ForbiddenError(
                    actor_id=actor.id,
                    action="INFO_PROVIDED",
                    reason="only the submitter or finance can answer an info request",
                    resource_id=invoice.id,
                )
            if invoice.status is not InvoiceStatus.INFO_REQUESTED:
                raise TransitionNotAllowedError(
                    invoice.id, invoice.status.value,
                    InvoiceStatus.PENDING_APPROVAL.value,
                )
            plan = plan_processing(
                invoice, InvoiceStatus.PENDING_APPROVAL,
                actor_id=actor.id,
                actor_role=_role_label(self._evaluator.role_of(actor)),
                now=now,
                notes=notes,
                audit_action="INFO_PROVIDED",
            )
            updated = self._write(store, plan)
            details = "Requested information provided" + (f": {notes}" if notes else "")
            self._audit(store, actor, plan, updated, details)
            return self._applied(plan, updated, StatusEventType.PENDING_APPROVAL)

        return self._run(actor_id, invoice_id, "INFO_PROVIDED", work)

    def mark_paid(
        self,
        actor_id: str | None,
        invoice_id: str,
        notes: str | None = None,
    ) -> TransitionResult:
        """Release payment on an approved invoice."""
        if not actor_id:
            raise UnauthenticatedError()

        def work(store: SqlAlchemyStore, actor: UserRecord, invoice: InvoiceRecord,
                 now: datetime) -> _Outcome:
            self._evaluator.authorize(actor, ActionKind.FINALIZE_PAYMENT, invoice)
            plan = plan_processing(
                invoice, InvoiceStatus.PAID,
                actor_id=actor.id,
                actor_role=_role_label(self._evaluator.role_of(actor)),
                now=now,
                notes=notes,
                audit_action="MARK_PAID",
            )
            updated = self._write(store, plan)
            details = "Payment released" + (f": {notes}" if notes else "")
            self._audit(store, actor, plan, updated, details)
            return self._applied(plan, updated, StatusEventType.PAID)

        return self._run(
            actor_id, invoice_id, "MARK_PAID", work,
            capability=lambda a: self._evaluator.allowed(a, ActionKind.FINALIZE_PAYMENT),
            capability_action=ActionKind.FINALIZE_PAYMENT,
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _run(
        self,
        actor_id: str,
        invoice_id: str,
        action_name: str,
        work: Callable[[SqlAlchemyStore, UserRecord, InvoiceRecord, datetime], _Outcome],
        *,
        capability: Callable[[UserRecord], bool] | None = None,
        capability_action: ActionKind | None = None,
    ) -> TransitionResult:
        start = time.monotonic()
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id, action=action_name):
            try:
                with self._locks.hold(invoice_id):
                    with session_scope(self._session_factory) as session:
                        store = SqlAlchemyStore(session, self._clock)
                        actor = self._resolve_actor(store, actor_id)
                        if capability is not None and not capability(actor):
                            raise ForbiddenError(
                                actor_id=actor.id,
                                action=(capability_action or ActionKind.APPROVE_INVOICE).value,
                                reason=(
                                    f"role {_role_label(self._evaluator.role_of(actor))!r} "
                                    "is not permitted"
                                ),
                            )
                        invoice = store.get_for_update(invoice_id)
                        if invoice is None:
                            raise InvoiceNotFoundError(invoice_id)
                        outcome = work(store, actor, invoice, self._clock.now())
            except ApprovalKernelError as exc:
                self._trace(action_name, invoice_id, OUTCOME_REJECTED, start,
                            code=exc.code, reason=str(exc))
                raise

            result = outcome.result
            self._trace(
                action_name, invoice_id,
                OUTCOME_APPLIED if result.applied else OUTCOME_NOOP,
                start,
                from_status=result.previous_status.value,
                to_status=result.new_status.value,
            )
            if result.applied and outcome.event_type is not None:
                self._publish(outcome.invoice, outcome.event_type, actor_id)
            return result

    def _resolve_actor(self, store: SqlAlchemyStore, actor_id: str) -> UserRecord:
        actor = store.find_user(actor_id)
        if actor is None or not actor.is_active:
            raise UnauthenticatedError(actor_id)
        return actor

    def _authorize_decision(
        self,
        store: SqlAlchemyStore,
        actor: UserRecord,
        action: TransitionAction,
        invoice: InvoiceRecord,
        now: datetime,
    ) -> None:
        if action.stage is Stage.FINAL:
            self._evaluator.authorize(actor, ActionKind.FINALIZE_PAYMENT, invoice)
            return
        scoped = effective_actor(
            actor, store.find_delegators(actor.id), now, self._evaluator.normalizer,
        )
        if not self._evaluator.authorize_approval(scoped, invoice):
            raise ForbiddenError(
                actor_id=actor.id,
                action=ActionKind.APPROVE_INVOICE.value,
                reason=f"project {invoice.project!r} is outside the actor's scope",
                resource_id=invoice.id,
            )

    def _write(self, store: SqlAlchemyStore, plan: TransitionPlan) -> InvoiceRecord:
        updated = store.upsert(plan.invoice_id, plan.changes)
        assert_consistent(updated)
        return updated

    def _audit(
        self,
        store: SqlAlchemyStore,
        actor: UserRecord,
        plan: TransitionPlan,
        updated: InvoiceRecord,
        details: str,
    ) -> None:
        AuditRecorder(store, self._evaluator, self._clock).record(
            invoice_id=updated.id,
            actor=actor,
            action=plan.audit_action,
            details=details,
            status=updated.status,
        )

    @staticmethod
    def _applied(
        plan: TransitionPlan,
        updated: InvoiceRecord,
        event_type: StatusEventType | None,
    ) -> _Outcome:
        return _Outcome(
            result=TransitionResult(
                invoice_id=updated.id,
                action=plan.audit_action,
                previous_status=plan.previous_status,
                new_status=updated.status,
            ),
            invoice=updated,
            event_type=event_type,
        )

    # ------------------------------------------------------------------
    # Info-request message
    # ------------------------------------------------------------------

    def _parse_recipient_role(self, raw: str | None) -> CanonicalRole:
        if raw is None or raw == "":
            return CanonicalRole.VENDOR
        role = self._evaluator.normalizer.normalize(raw)
        if not isinstance(role, CanonicalRole) or role not in _INFO_RECIPIENTS:
            raise InvalidActionError(
                raw, tuple(r.value for r in _INFO_RECIPIENTS),
            )
        return role

    def _finance_recipient(
        self, store: SqlAlchemyStore, invoice: InvoiceRecord,
    ) -> str | None:
        # The reviewer who cleared the invoice, else the first active finance user
        reviewer = store.find_user(invoice.hil_review.approved_by)
        if reviewer is not None and reviewer.is_active:
            return reviewer.id
        for user in store.list_users():
            if is_canonical(
                self._evaluator.normalizer.normalize(user.role),
                CanonicalRole.FINANCE_USER,
            ):
                return user.id
        return None

    def _create_info_request(
        self,
        store: SqlAlchemyStore,
        actor: UserRecord,
        role: str,
        invoice: InvoiceRecord,
        notes: str | None,
        recipient_role: CanonicalRole,
        now: datetime,
    ) -> str | None:
        if recipient_role is CanonicalRole.VENDOR:
            recipient_id = invoice.submitted_by_user_id
        elif recipient_role is CanonicalRole.FINANCE_USER:
            recipient_id = self._finance_recipient(store, invoice)
        else:
            recipient_id = invoice.assigned_pm

        recipient = store.find_user(recipient_id)
        if recipient is None:
            logger.warning(
                "info_request_recipient_unresolved",
                extra={"recipient_role": recipient_role.value, "recipient_id": recipient_id},
            )
            return None

        message_id = new_id()
        store.create_message(Message(
            id=message_id,
            invoice_id=invoice.id,
            project_id=invoice.project,
            sender_id=actor.id,
            sender_name=actor.display_name,
            sender_role=role,
            recipient_id=recipient.id,
            recipient_name=recipient.name or _INFO_RECIPIENTS[recipient_role],
            subject=f"Info Request: Invoice {invoice.label}",
            content=notes or f"{role} requested more information regarding this invoice.",
            message_type=MessageType.INFO_REQUEST,
            thread_id=message_id,
            created_at=now,
        ))
        logger.info(
            "info_request_message_created",
            extra={"message_id": message_id, "recipient_id": recipient.id},
        )
        return message_id

    # ------------------------------------------------------------------
    # Events and tracing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_status(raw: InvoiceStatus | str) -> InvoiceStatus:
        if isinstance(raw, InvoiceStatus):
            return raw
        try:
            return InvoiceStatus(raw)
        except ValueError:
            try:
                return InvoiceStatus[str(raw).strip().upper()]
            except KeyError:
                raise InvalidActionError(
                    raw, tuple(s.value for s in InvoiceStatus),
                ) from None

    def _publish(
        self,
        invoice: InvoiceRecord,
        event_type: StatusEventType,
        actor_id: str | None,
    ) -> None:
        event = StatusEvent(
            invoice=invoice,
            event_type=event_type,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            correlation_id=LogContext.get_all().get("correlation_id"),
        )
        try:
            self._publisher.publish(event)
        except Exception:
            # The committed transition stands regardless of delivery
            logger.error(
                "event_publish_failed",
                extra={"event_type": event_type.value, "invoice_id": invoice.id},
                exc_info=True,
            )

    @staticmethod
    def _trace(
        action: str,
        invoice_id: str,
        outcome: str,
        start: float,
        **fields: object,
    ) -> None:
        record: dict[str, object] = {
            "trace_type": TRACE_TYPE_INVOICE_TRANSITION,
            "transition": action,
            "entity_id": invoice_id,
            "outcome": outcome,
            "duration_ms": round((time.monotonic() - start) * 1000, 3),
        }
        record.update(fields)
        if outcome == OUTCOME_REJECTED:
            logger.warning("transition_rejected", extra=record)
        else:
            logger.info("transition_" + outcome, extra=record)


def _decision_details(action: TransitionAction, notes: str | None) -> str:
    suffix = f": {notes}" if notes else ""
    if action.stage is Stage.PM:
        return f"PM {action.value.lower().replace('_', ' ')}{suffix}"
    verb = "approved" if action is TransitionAction.ADMIN_APPROVE else "rejected"
    return f"Admin {verb} invoice{suffix}"
