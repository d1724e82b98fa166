"""
approval_services.notifications -- best-effort status notifications.

Responsibility:
    ``StatusNotifier`` composes and sends one email per status event and
    records every attempt.  ``NotificationDispatcher`` is the orchestrator's
    ``EventPublisher``: it hands events to a thread pool so the caller
    never waits on delivery.  ``send_pending_approval_reminders`` nudges
    approvers about invoices sitting in an approval queue.

Architecture position:
    Services layer.  The transport is injected (``EmailTransport``); this
    module never opens a network connection itself.

Invariants enforced:
    - Delivery failure never propagates: it is logged as a
      ``NotificationFailureError`` and reported as ``DeliveryStatus.FAILED``.
      A failed submitter lookup is reported the same way.
    - Every send attempt, SENT or FAILED, writes one ``NotificationLogModel`` row
      in its own transaction.
    - Missing transport is warned about once per notifier.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from approval_config import NotificationSettings, get_notification_settings
from approval_kernel.db.engine import session_scope
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.dtos import InvoiceRecord, InvoiceStatus
from approval_kernel.domain.events import StatusEvent, StatusEventType
from approval_kernel.domain.ports import DeliveryStatus, EmailTransport, Notifier
from approval_kernel.exceptions import ApprovalKernelError, NotificationFailureError
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.store import SqlAlchemyStore

logger = get_logger("services.notifications")

_VENDOR_EVENTS = frozenset({
    StatusEventType.RECEIVED,
    StatusEventType.REJECTED,
    StatusEventType.PAID,
    StatusEventType.AWAITING_INFO,
})

_PM_STAGE_QUEUE = (InvoiceStatus.VERIFIED, InvoiceStatus.PENDING_APPROVAL)
_FINAL_STAGE_QUEUE = (InvoiceStatus.PM_APPROVED,)


@dataclass(frozen=True)
class OutboundEmail:
    recipient: str
    subject: str
    body: str


@dataclass(frozen=True)
class ReminderSummary:
    sent: int = 0
    skipped: int = 0


class StatusNotifier:
    """
    Email notifier for invoice status events.

    Contract:
        ``notify`` returns SENT or FAILED and never raises for a delivery
        problem.  The outcome is already logged; callers need not re-log.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: NotificationSettings | None = None,
        transport: EmailTransport | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_notification_settings()
        self._transport = transport
        self._clock = clock or SystemClock()
        self._warned = False
        self._warn_lock = threading.Lock()

    @property
    def settings(self) -> NotificationSettings:
        return self._settings

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    def compose(
        self,
        invoice: InvoiceRecord,
        event_type: StatusEventType,
        vendor_email: str | None = None,
    ) -> OutboundEmail:
        """Recipient, subject and body for one event."""
        s = self._settings
        vendor = invoice.vendor_name or "the vendor"
        recipient = s.finance_team_email
        subject = f"Invoice {invoice.label} Update: {event_type.value}"
        summary = f"Invoice {invoice.label} from {vendor} is now {event_type.value}."

        if event_type in _VENDOR_EVENTS and vendor_email:
            recipient = vendor_email
        elif event_type in _VENDOR_EVENTS:
            logger.warning(
                "vendor_email_not_found",
                extra={"invoice_id": invoice.id, "vendor_name": invoice.vendor_name},
            )

        if event_type is StatusEventType.RECEIVED:
            subject = f"Invoice received: {invoice.label}"
            body = (
                f"Your invoice {invoice.label} has been received and is being "
                "processed. You will be notified of any updates."
            )
        elif event_type is StatusEventType.PENDING_APPROVAL:
            recipient = s.pm_approver_email
            body = f"{summary} Action required: Please review and approve for payment."
        elif event_type is StatusEventType.REJECTED:
            body = f"{summary} Please check the vendor portal for details."
        elif event_type is StatusEventType.PAID:
            body = (
                f"{summary} Payment released. Expected arrival within 3-5 "
                "business days."
            )
        elif event_type is StatusEventType.AWAITING_INFO:
            body = (
                f"Additional information is requested for invoice {invoice.label}. "
                "Please log in to the vendor portal for details."
            )
        else:
            body = summary
        return OutboundEmail(
            recipient=recipient,
            subject=subject,
            body=f"{s.company_name}\n\n{body}",
        )

    def notify(
        self, invoice: InvoiceRecord, event_type: StatusEventType,
    ) -> DeliveryStatus:
        try:
            try:
                with session_scope(self._session_factory) as session:
                    store = SqlAlchemyStore(session, self._clock)
                    submitter = store.find_user(invoice.submitted_by_user_id)
            except (SQLAlchemyError, ApprovalKernelError) as exc:
                raise NotificationFailureError(
                    invoice.id, event_type.value, f"submitter lookup failed: {exc}",
                ) from exc
        except NotificationFailureError:
            logger.error(
                "notification_failed",
                extra={"invoice_id": invoice.id, "event_type": event_type.value},
                exc_info=True,
            )
            return DeliveryStatus.FAILED
        email = self.compose(
            invoice, event_type, submitter.email if submitter is not None else None,
        )
        return self.deliver(invoice.id, event_type, email)

    def deliver(
        self,
        invoice_id: str,
        event_type: StatusEventType,
        email: OutboundEmail,
    ) -> DeliveryStatus:
        """Send ``email`` and record the attempt."""
        status = DeliveryStatus.FAILED
        error: str | None = None

        if self._transport is None:
            error = "no email transport configured"
            with self._warn_lock:
                first = not self._warned
                self._warned = True
            if first:
                logger.warning(
                    "notification_transport_missing",
                    extra={"detail": "emails are skipped until a transport is configured"},
                )
        else:
            try:
                try:
                    self._transport.send(
                        sender=self._settings.from_email,
                        to=email.recipient,
                        subject=email.subject,
                        body=email.body,
                    )
                except Exception as exc:
                    raise NotificationFailureError(
                        invoice_id, event_type.value, str(exc),
                    ) from exc
                status = DeliveryStatus.SENT
                logger.info(
                    "notification_sent",
                    extra={
                        "invoice_id": invoice_id,
                        "event_type": event_type.value,
                        "recipient": email.recipient,
                    },
                )
            except NotificationFailureError as failure:
                error = failure.reason
                logger.error(
                    "notification_failed",
                    extra={"invoice_id": invoice_id, "event_type": event_type.value},
                    exc_info=True,
                )

        self._record(invoice_id, event_type, email, status, error)
        return status

    def _record(
        self,
        invoice_id: str,
        event_type: StatusEventType,
        email: OutboundEmail,
        status: DeliveryStatus,
        error: str | None,
    ) -> None:
        try:
            with session_scope(self._session_factory) as session:
                SqlAlchemyStore(session, self._clock).record_notification(
                    invoice_id=invoice_id,
                    event_type=event_type.value,
                    status=status.value,
                    recipient=email.recipient,
                    subject=email.subject,
                    error=error,
                )
        except Exception:
            logger.error(
                "notification_log_failed",
                extra={"invoice_id": invoice_id, "event_type": event_type.value},
                exc_info=True,
            )


class NotificationDispatcher:
    """
    ``EventPublisher`` that delivers on a background thread pool.

    ``publish`` returns as soon as the event is queued.  ``drain`` waits for
    everything queued so far (shutdown hooks and tests).
    """

    def __init__(self, notifier: Notifier, max_workers: int = 4):
        self._notifier = notifier
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify",
        )
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def publish(self, event: StatusEvent) -> None:
        future = self._executor.submit(self._deliver, event)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, event: StatusEvent) -> DeliveryStatus:
        invoice = event.invoice
        with LogContext.bind(
            correlation_id=event.correlation_id,
            actor_id=event.actor_id,
            invoice_id=invoice.id,
        ):
            try:
                try:
                    return self._notifier.notify(invoice, event.event_type)
                except Exception as exc:
                    raise NotificationFailureError(
                        invoice.id, event.event_type.value, str(exc),
                    ) from exc
            except NotificationFailureError:
                logger.error(
                    "notification_failed",
                    extra={"event_type": event.event_type.value},
                    exc_info=True,
                )
                return DeliveryStatus.FAILED

    def drain(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> NotificationDispatcher:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown(wait=True)


def send_pending_approval_reminders(notifier: StatusNotifier) -> ReminderSummary:
    """
    Remind approvers about invoices waiting in their queue.

    PM-stage invoices go to the PM approver address, "PM Approved" invoices
    to the finance team.  At most ``reminder_limit`` invoices per run.
    """
    settings = notifier.settings
    with session_scope(notifier.session_factory) as session:
        waiting = SqlAlchemyStore(session).list_invoices_by_status(
            _PM_STAGE_QUEUE + _FINAL_STAGE_QUEUE, limit=settings.reminder_limit,
        )

    sent = skipped = 0
    for invoice in waiting:
        vendor = invoice.vendor_name or "the vendor"
        if invoice.status in _PM_STAGE_QUEUE:
            email = OutboundEmail(
                recipient=settings.pm_approver_email,
                subject=f"Reminder: Invoice {invoice.label} awaiting PM approval",
                body=(
                    f"{settings.company_name}\n\nInvoice {invoice.label} from "
                    f"{vendor} is awaiting your approval."
                ),
            )
        else:
            email = OutboundEmail(
                recipient=settings.finance_team_email,
                subject=f"Reminder: Invoice {invoice.label} awaiting Finance approval",
                body=(
                    f"{settings.company_name}\n\nInvoice {invoice.label} has been "
                    "PM-approved and is awaiting Finance release."
                ),
            )
        status = notifier.deliver(invoice.id, StatusEventType.REMINDER, email)
        if status is DeliveryStatus.SENT:
            sent += 1
        else:
            skipped += 1

    logger.info("reminders_sent", extra={"sent": sent, "skipped": skipped})
    return ReminderSummary(sent=sent, skipped=skipped)
