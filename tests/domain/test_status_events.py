"""Tests for status event mapping (``approval_kernel.domain.events``)."""

import pytest

from approval_kernel.domain.dtos import InvoiceStatus
from approval_kernel.domain.events import (
    StatusEventType,
    event_type_for,
    event_type_for_status,
)
from approval_kernel.domain.ports import (
    EmailTransport,
    EventPublisher,
    Notifier,
    NullPublisher,
)
from approval_kernel.domain.workflow import TransitionAction


class TestEventMapping:

    @pytest.mark.parametrize("action,event", [
        (TransitionAction.APPROVE, StatusEventType.PENDING_APPROVAL),
        (TransitionAction.REJECT, StatusEventType.REJECTED),
        (TransitionAction.REQUEST_INFO, StatusEventType.AWAITING_INFO),
        (TransitionAction.ADMIN_APPROVE, StatusEventType.PAID),
        (TransitionAction.ADMIN_REJECT, StatusEventType.REJECTED),
    ])
    def test_action_events(self, action, event):
        assert event_type_for(action) is event

    def test_status_events(self):
        assert event_type_for_status(InvoiceStatus.PENDING) is StatusEventType.RECEIVED
        assert event_type_for_status(InvoiceStatus.PAID) is StatusEventType.PAID
        assert event_type_for_status(InvoiceStatus.DIGITIZING) is None


class TestPorts:

    def test_null_publisher_satisfies_protocol(self):
        assert isinstance(NullPublisher(), EventPublisher)

    def test_protocols_are_structural(self):
        class Mailer:
            def send(self, *, sender, to, subject, body):
                pass

        assert isinstance(Mailer(), EmailTransport)
        assert not isinstance(Mailer(), Notifier)
