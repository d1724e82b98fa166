"""
Tests for status notifications (``approval_services.notifications``).

Invariants tested:
- Vendor-facing events go to the submitter's email, falling back to the
  finance team; PENDING_APPROVAL goes to the PM approver address.
- Delivery problems, including a failed submitter lookup, are logged and
  reported as FAILED, never raised.
- Every send attempt writes one notification log row.
- The dispatcher delivers off the caller's thread and survives notifier errors.
- Reminders route by stage and respect reminder_limit.
"""

import pytest
from conftest import RecordingTransport
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from approval_config.schema import NotificationSettings
from approval_kernel.db.engine import session_scope
from approval_kernel.domain.dtos import ApprovalState, InvoiceRecord, InvoiceStatus
from approval_kernel.domain.events import StatusEvent, StatusEventType
from approval_kernel.domain.ports import DeliveryStatus, EventPublisher
from approval_kernel.models.notification import NotificationLogModel
from approval_kernel.services.store import SqlAlchemyStore
from approval_services import (
    ApprovalOrchestrator,
    NotificationDispatcher,
    OutboundEmail,
    StatusNotifier,
    send_pending_approval_reminders,
)

SETTINGS = NotificationSettings(company_name="Acme Corp")


@pytest.fixture
def notifier(session_factory, transport, clock, users):
    return StatusNotifier(session_factory, SETTINGS, transport, clock)


def _log_rows(session_factory):
    with session_scope(session_factory) as s:
        rows = s.execute(select(NotificationLogModel)).scalars().all()
        return [(r.invoice_id, r.event_type, r.status, r.error) for r in rows]


def _invoice(**kw):
    fields = {"id": "inv-42", "status": InvoiceStatus.PENDING_APPROVAL,
              "invoice_number": "INV-42", "vendor_name": "Acme Supplies"}
    fields.update(kw)
    return InvoiceRecord(**fields)


class TestCompose:

    def test_received_to_vendor(self, notifier):
        email = notifier.compose(_invoice(), StatusEventType.RECEIVED, "billing@acme.test")
        assert email.recipient == "billing@acme.test"
        assert email.subject == "Invoice received: INV-42"
        assert email.body.startswith("Acme Corp\n\n")
        assert "has been received and is being processed" in email.body

    def test_vendor_event_without_email_falls_back(self, notifier, captured_logs):
        email = notifier.compose(_invoice(), StatusEventType.PAID, None)
        assert email.recipient == SETTINGS.finance_team_email
        assert email.subject == "Invoice INV-42 Update: PAID"
        assert "Expected arrival within 3-5 business days." in email.body
        assert any(r["message"] == "vendor_email_not_found" for r in captured_logs())

    def test_pending_approval_to_pm_approver(self, notifier):
        email = notifier.compose(_invoice(), StatusEventType.PENDING_APPROVAL, "v@x.test")
        assert email.recipient == SETTINGS.pm_approver_email
        assert email.body.endswith("Action required: Please review and approve for payment.")

    def test_label_falls_back_to_id_suffix(self, notifier):
        email = notifier.compose(
            _invoice(id="abcdef123456", invoice_number=None),
            StatusEventType.REJECTED, "v@x.test",
        )
        assert email.subject == "Invoice 123456 Update: REJECTED"
        assert "Please check the vendor portal" in email.body


class TestDeliver:

    def test_notify_sends_to_submitter(self, notifier, transport, make_invoice,
                                       session_factory):
        invoice = make_invoice()
        assert notifier.notify(invoice, StatusEventType.AWAITING_INFO) is DeliveryStatus.SENT
        (sent,) = transport.sent
        assert sent["to"] == "billing@acme.test"
        assert sent["sender"] == SETTINGS.from_email
        assert _log_rows(session_factory) == [
            (invoice.id, "AWAITING_INFO", "SENT", None),
        ]

    def test_transport_failure_logged_not_raised(self, session_factory, clock, users,
                                                 make_invoice, captured_logs):
        notifier = StatusNotifier(
            session_factory, SETTINGS, RecordingTransport(fail=True), clock,
        )
        invoice = make_invoice()
        assert notifier.notify(invoice, StatusEventType.REJECTED) is DeliveryStatus.FAILED
        failures = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert len(failures) == 1
        assert failures[0]["exc_code"] == "NOTIFICATION_FAILURE"
        (row,) = _log_rows(session_factory)
        assert row[2] == "FAILED"
        assert row[3] == "smtp unreachable"

    def test_submitter_lookup_failure_reported_not_raised(self, notifier, transport,
                                                           make_invoice, session_factory,
                                                           captured_logs, monkeypatch):
        invoice = make_invoice()

        def _lost(self, user_id):
            raise OperationalError("SELECT", {}, Exception("connection lost"))

        monkeypatch.setattr(SqlAlchemyStore, "find_user", _lost)
        assert notifier.notify(invoice, StatusEventType.PAID) is DeliveryStatus.FAILED
        monkeypatch.undo()

        assert transport.sent == []
        (failure,) = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert failure["exc_code"] == "NOTIFICATION_FAILURE"
        assert failure["invoice_id"] == invoice.id
        assert _log_rows(session_factory) == []

    def test_missing_transport_warns_once(self, session_factory, clock, users,
                                          captured_logs):
        notifier = StatusNotifier(session_factory, SETTINGS, None, clock)
        email = OutboundEmail("a@b.test", "s", "b")
        for _ in range(3):
            assert notifier.deliver("inv-1", StatusEventType.PAID, email) is (
                DeliveryStatus.FAILED
            )
        warnings = [
            r for r in captured_logs() if r["message"] == "notification_transport_missing"
        ]
        assert len(warnings) == 1
        assert len(_log_rows(session_factory)) == 3


class _ExplodingNotifier:
    def notify(self, invoice, event_type):
        raise RuntimeError("template missing")


class TestDispatcher:

    def test_is_event_publisher(self, notifier):
        with NotificationDispatcher(notifier) as dispatcher:
            assert isinstance(dispatcher, EventPublisher)

    def test_delivers_after_transition(self, session_factory, clock, policy, users,
                                       make_invoice, notifier, transport):
        with NotificationDispatcher(notifier, max_workers=2) as dispatcher:
            orchestrator = ApprovalOrchestrator(
                session_factory, clock=clock, policy=policy, publisher=dispatcher,
            )
            invoice = make_invoice()
            orchestrator.submit_transition("u-pm1", invoice.id, "REJECT")
            dispatcher.drain(timeout=10)
        (sent,) = transport.sent
        assert sent["to"] == "billing@acme.test"
        assert sent["subject"] == f"Invoice {invoice.label} Update: REJECTED"

    def test_notifier_error_is_contained(self, captured_logs):
        with NotificationDispatcher(_ExplodingNotifier()) as dispatcher:
            dispatcher.publish(StatusEvent(
                invoice=_invoice(), event_type=StatusEventType.PAID,
                correlation_id="corr-1",
            ))
            dispatcher.drain(timeout=10)
        failures = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert len(failures) == 1
        assert failures[0]["correlation_id"] == "corr-1"
        assert failures[0]["invoice_id"] == "inv-42"


class TestReminders:

    def _seed(self, make_invoice):
        return {
            "verified": make_invoice(InvoiceStatus.VERIFIED),
            "pending": make_invoice(InvoiceStatus.PENDING_APPROVAL),
            "pm_approved": make_invoice(
                InvoiceStatus.PM_APPROVED, pm_status=ApprovalState.APPROVED,
            ),
            "approved": make_invoice(
                InvoiceStatus.APPROVED, pm_status=ApprovalState.APPROVED,
                admin_status=ApprovalState.APPROVED,
            ),
        }

    def test_routes_by_stage(self, notifier, transport, make_invoice):
        seeded = self._seed(make_invoice)
        summary = send_pending_approval_reminders(notifier)
        assert (summary.sent, summary.skipped) == (3, 0)

        by_subject = {m["subject"]: m["to"] for m in transport.sent}
        label = seeded["pm_approved"].label
        assert by_subject[f"Reminder: Invoice {label} awaiting Finance approval"] == (
            SETTINGS.finance_team_email
        )
        assert by_subject[
            f"Reminder: Invoice {seeded['verified'].label} awaiting PM approval"
        ] == SETTINGS.pm_approver_email
        assert not any(seeded["approved"].label in s for s in by_subject)

    def test_limit(self, session_factory, transport, clock, users, make_invoice):
        self._seed(make_invoice)
        notifier = StatusNotifier(
            session_factory, NotificationSettings(reminder_limit=2), transport, clock,
        )
        assert send_pending_approval_reminders(notifier).sent == 2

    def test_skipped_without_transport(self, session_factory, clock, users, make_invoice):
        self._seed(make_invoice)
        notifier = StatusNotifier(session_factory, SETTINGS, None, clock)
        summary = send_pending_approval_reminders(notifier)
        assert (summary.sent, summary.skipped) == (0, 3)
