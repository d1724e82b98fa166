"""
Pytest fixtures for the approval pipeline test suite.

Provides:
- A fresh database per test (SQLite file under tmp_path, or DATABASE_URL)
- A DeterministicClock shared by every service under test
- Seeded users covering each canonical role
- Recording doubles for the event publisher and the email transport

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL.  When unset every test gets its own
  SQLite file, which keeps the suite hermetic.
"""

import json
import logging
import os
import threading
from collections.abc import Callable, Generator
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import Session, sessionmaker

from approval_config import get_active_policy
from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.dtos import (
    ApprovalRecord,
    ApprovalState,
    InvoiceRecord,
    InvoiceStatus,
    UserRecord,
)
from approval_kernel.domain.events import StatusEvent
from approval_kernel.domain.permissions import PermissionPolicy
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.services.store import SqlAlchemyStore
from approval_services.orchestrator import ApprovalOrchestrator

# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.submit_transition(...)
            logs = captured_logs()
            assert any(r["message"] == "transition_applied" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL row locks"
    )


def get_database_url(tmp_path) -> str:
    """DATABASE_URL if set, else a throwaway SQLite file."""
    return os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'approval.db'}"


@pytest.fixture
def db_engine(tmp_path):
    """Engine with a clean schema.  Dropped again at teardown."""
    eng = init_engine_from_url(get_database_url(tmp_path), pool_size=20)
    drop_tables(eng)
    create_tables(eng)
    yield eng
    drop_tables(eng)
    reset_engine()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker[Session]:
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """A plain session for store-level tests.  Rolled back at teardown."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def store(session, clock) -> SqlAlchemyStore:
    return SqlAlchemyStore(session, clock)


@pytest.fixture
def policy() -> PermissionPolicy:
    """The packaged policy.yaml."""
    return get_active_policy()


# =============================================================================
# Seed data
# =============================================================================

PROJECT_P1 = "P1"
PROJECT_P2 = "P2"


SEED_USERS = (
    UserRecord(id="u-admin", role="Admin", name="Asha Admin", email="admin@example.com"),
    UserRecord(id="u-fin", role="Finance User", name="Farah Finance", email="fin@example.com"),
    UserRecord(id="u-fin2", role="finance_user", name="Felix Finance", email="fin2@example.com"),
    UserRecord(
        id="u-pm1", role="PM", name="Priya PM",
        email="pm1@example.com", assigned_projects=frozenset({PROJECT_P1}),
    ),
    UserRecord(
        id="u-pm2", role="Project Manager", name="Paul PM",
        email="pm2@example.com", assigned_projects=frozenset({PROJECT_P2}),
    ),
    UserRecord(
        id="u-pm3", role="project-manager", name="Pia PM",
        email="pm3@example.com", assigned_projects=frozenset(),
    ),
    UserRecord(id="u-vendor", role="Vendor", name="Acme Supplies", email="billing@acme.test"),
    UserRecord(id="u-ghost", role="Auditor", name="Unknown Role"),
    UserRecord(id="u-inactive", role="Finance User", name="Gone", is_active=False),
)


@pytest.fixture
def users(session_factory) -> dict[str, UserRecord]:
    """Seed one user per role (plus odd cases) and return them by id."""
    with session_scope(session_factory) as s:
        st = SqlAlchemyStore(s)
        created = {u.id: st.add_user(u) for u in SEED_USERS}
    return created


@pytest.fixture
def make_invoice(session_factory, clock) -> Callable[..., InvoiceRecord]:
    """
    Factory that writes an invoice straight through the store.

    Defaults to a P1 invoice awaiting PM approval, submitted by the vendor.
    """
    counter = {"n": 0}

    def _make(
        status: InvoiceStatus = InvoiceStatus.PENDING_APPROVAL,
        *,
        project: str | None = PROJECT_P1,
        pm_status: ApprovalState = ApprovalState.PENDING,
        admin_status: ApprovalState = ApprovalState.PENDING,
        submitted_by: str | None = "u-vendor",
        assigned_pm: str | None = "u-pm1",
        invoice_id: str | None = None,
    ) -> InvoiceRecord:
        counter["n"] += 1
        inv_id = invoice_id or f"inv-{counter['n']:04d}"
        now = clock.now()
        with session_scope(session_factory) as s:
            return SqlAlchemyStore(s, clock).upsert(inv_id, {
                "status": status,
                "project": project,
                "submitted_by_user_id": submitted_by,
                "assigned_pm": assigned_pm,
                "vendor_name": "Acme Supplies",
                "invoice_number": f"INV-{counter['n']:04d}",
                "amount": Decimal("12500.00"),
                "pm_approval": ApprovalRecord(status=pm_status),
                "admin_approval": ApprovalRecord(status=admin_status),
                "created_at": now,
                "updated_at": now,
            })

    return _make


# =============================================================================
# Collaborator doubles
# =============================================================================


class RecordingPublisher:
    """EventPublisher that keeps every event it is handed."""

    def __init__(self, fail: bool = False):
        self.events: list[StatusEvent] = []
        self.fail = fail
        self._lock = threading.Lock()

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            self.events.append(event)
        if self.fail:
            raise RuntimeError("publisher offline")


class RecordingTransport:
    """EmailTransport that records sends, or raises when ``fail`` is set."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail
        self._lock = threading.Lock()

    def send(self, *, sender: str, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise ConnectionError("smtp unreachable")
        with self._lock:
            self.sent.append({"sender": sender, "to": to, "subject": subject, "body": body})


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def orchestrator(session_factory, clock, policy, publisher, users) -> ApprovalOrchestrator:
    return ApprovalOrchestrator(
        session_factory, clock=clock, policy=policy, publisher=publisher,
    )


def read_invoice(session_factory, invoice_id: str) -> InvoiceRecord | None:
    with session_scope(session_factory) as s:
        return SqlAlchemyStore(s).get(invoice_id)


def read_audit(session_factory, invoice_id: str):
    with session_scope(session_factory) as s:
        return SqlAlchemyStore(s).audit_for_invoice(invoice_id)


def read_messages(session_factory, invoice_id: str):
    with session_scope(session_factory) as s:
        return SqlAlchemyStore(s).messages_for_invoice(invoice_id)
