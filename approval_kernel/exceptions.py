"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The calling layer has to tell "you lack permission" apart from "PM approval
is still pending" without parsing message strings.  Every error therefore:
  1. Has its own class (catch by type, not message)
  2. Carries a CODE class attribute (machine-readable, API-safe)
  3. Stores its context as attributes (not just a message string)

Example - WRONG way to handle errors:
    try:
        orchestrator.submit_transition(...)
    except Exception as e:
        if "PM approval" in str(e):  # FRAGILE - message might change
            show_pending_banner()

Example - RIGHT way (what this module enables):
    try:
        orchestrator.submit_transition(...)
    except PmApprovalRequiredError as e:
        api_response(code=e.code, invoice=e.invoice_id, pm_status=e.pm_status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ApprovalKernelError:

    ApprovalKernelError (base)
    |
    +-- UnauthenticatedError
    +-- ForbiddenError
    +-- NotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- UserNotFoundError
    +-- InvalidActionError
    +-- PreconditionFailedError
    |   +-- PmApprovalRequiredError
    |   +-- TransitionNotAllowedError
    +-- InvalidDelegationError
    +-- PersistenceFailureError
    +-- NotificationFailureError
    +-- ImmutabilityViolationError
    +-- InconsistentStateError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                    | When Raised                                | Caller-visible
------------------------|--------------------------------------------|---------------
UNAUTHENTICATED         | No actor, or actor id does not resolve     | yes
FORBIDDEN               | Permission or delegation check failed      | yes
INVOICE_NOT_FOUND       | Invoice id does not exist                  | yes
USER_NOT_FOUND          | Referenced (non-actor) user does not exist | yes
INVALID_ACTION          | Action outside the enumerated set          | yes
PM_APPROVAL_REQUIRED    | Final-stage action before PM approval      | yes
TRANSITION_NOT_ALLOWED  | Status graph has no such edge              | yes
INVALID_DELEGATION      | Self-delegation, bad duration              | yes
PERSISTENCE_FAILURE     | Store write failed; nothing was applied    | yes
NOTIFICATION_FAILURE    | Notifier failed; logged and swallowed      | no
IMMUTABILITY_VIOLATION  | UPDATE/DELETE on an audit entry            | no
INCONSISTENT_STATE      | Status disagrees with its approval records | no

Propagation: the first six short-circuit before any mutation.
PersistenceFailureError aborts the whole transaction (no audit or message
survives without the invoice write).  NotificationFailureError never reaches
the caller of a transition.
"""


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


class UnauthenticatedError(ApprovalKernelError):
    """No actor supplied, or the actor id does not resolve to a user."""

    code: str = "UNAUTHENTICATED"

    def __init__(self, actor_id: str | None = None):
        self.actor_id = actor_id
        if actor_id:
            super().__init__(f"Actor could not be authenticated: {actor_id}")
        else:
            super().__init__("Not authenticated")


class ForbiddenError(ApprovalKernelError):
    """The actor lacks permission for the requested action."""

    code: str = "FORBIDDEN"

    def __init__(
        self,
        actor_id: str,
        action: str,
        reason: str = "",
        resource_id: str | None = None,
    ):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        self.resource_id = resource_id
        target = f" on {resource_id}" if resource_id else ""
        detail = f": {reason}" if reason else ""
        super().__init__(f"Actor {actor_id} may not {action}{target}{detail}")


class NotFoundError(ApprovalKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class UserNotFoundError(NotFoundError):
    """User with given ID was not found."""

    code: str = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class InvalidActionError(ApprovalKernelError):
    """Requested action is not in the enumerated transition set."""

    code: str = "INVALID_ACTION"

    def __init__(self, action: object, allowed: tuple[str, ...] = ()):
        self.action = action
        self.allowed = allowed
        expected = f". Must be one of {', '.join(allowed)}" if allowed else ""
        super().__init__(f"Invalid action {action!r}{expected}")


class PreconditionFailedError(ApprovalKernelError):
    """A transition guard did not hold at the time of the request."""

    code: str = "PRECONDITION_FAILED"


class PmApprovalRequiredError(PreconditionFailedError):
    """
    Final-stage approval requested before the PM stage approved.

    Checked against the freshly locked invoice row, never a cached copy.
    """

    code: str = "PM_APPROVAL_REQUIRED"

    def __init__(self, invoice_id: str, pm_status: str):
        self.invoice_id = invoice_id
        self.pm_status = pm_status
        super().__init__(
            f"PM approval required before final approval of invoice "
            f"{invoice_id} (PM approval is {pm_status})"
        )


class TransitionNotAllowedError(PreconditionFailedError):
    """The status graph has no edge for this transition."""

    code: str = "TRANSITION_NOT_ALLOWED"

    def __init__(self, invoice_id: str, from_status: str, to_status: str):
        self.invoice_id = invoice_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invoice {invoice_id} cannot move from {from_status!r} "
            f"to {to_status!r}"
        )


class InvalidDelegationError(ApprovalKernelError):
    """Delegation request is malformed (self-delegation, bad duration)."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Invalid delegation for {user_id}: {reason}")


class PersistenceFailureError(ApprovalKernelError):
    """A store write failed.  The enclosing transaction is rolled back."""

    code: str = "PERSISTENCE_FAILURE"

    def __init__(self, operation: str, entity_id: str | None, reason: str):
        self.operation = operation
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Store {operation} failed for {entity_id}: {reason}")


class NotificationFailureError(ApprovalKernelError):
    """Notifier delivery failed.  Logged only, never caller-visible."""

    code: str = "NOTIFICATION_FAILURE"

    def __init__(self, invoice_id: str, event_type: str, reason: str):
        self.invoice_id = invoice_id
        self.event_type = event_type
        self.reason = reason
        super().__init__(
            f"Notification {event_type} for invoice {invoice_id} failed: {reason}"
        )


class ImmutabilityViolationError(ApprovalKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


class InconsistentStateError(ApprovalKernelError):
    """Invoice status disagrees with its approval sub-records."""

    code: str = "INCONSISTENT_STATE"

    def __init__(self, invoice_id: str, status: str, reason: str):
        self.invoice_id = invoice_id
        self.status = status
        self.reason = reason
        super().__init__(
            f"Invoice {invoice_id} in status {status!r} is inconsistent: {reason}"
        )
