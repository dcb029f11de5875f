"""Status vocabularies shared by the settlement state machines."""

from __future__ import annotations

# Assignment lifecycle
PENDING_START = "pending_start"
IN_PROGRESS = "in_progress"
PAUSE_REQUESTED = "pause_requested"
PAUSED = "paused"
SUBMITTED = "submitted"
OVERDUE = "overdue"
DISPUTE_OPENED = "dispute_opened"
ACCEPTED = "accepted"
CANCELLED_BY_CUSTOMER = "cancelled_by_customer"
REMOVED_AUTO = "removed_auto"

ASSIGNMENT_TERMINAL_STATUSES = frozenset({ACCEPTED, CANCELLED_BY_CUSTOMER, REMOVED_AUTO})
ASSIGNMENT_ACTIVE_STATUSES = frozenset(
    {PENDING_START, IN_PROGRESS, PAUSE_REQUESTED, PAUSED, SUBMITTED, OVERDUE, DISPUTE_OPENED}
)
DISPUTABLE_ASSIGNMENT_STATUSES = frozenset({IN_PROGRESS, OVERDUE, SUBMITTED})

# Contracts
CONTRACT_ACTIVE = "active"
CONTRACT_SUBMITTED = "submitted"
CONTRACT_REVISION_REQUESTED = "revision_requested"
CONTRACT_APPROVED = "approved"
CONTRACT_DISPUTED = "disputed"
CONTRACT_RESOLVED = "resolved"
CONTRACT_CANCELLED = "cancelled"

CONTRACT_TERMINAL_STATUSES = frozenset({CONTRACT_APPROVED, CONTRACT_RESOLVED, CONTRACT_CANCELLED})
CONTRACT_OPEN_STATUSES = frozenset(
    {CONTRACT_ACTIVE, CONTRACT_SUBMITTED, CONTRACT_REVISION_REQUESTED, CONTRACT_DISPUTED}
)

# Escrow
ESCROW_FROZEN = "frozen"
ESCROW_RELEASED = "released"
ESCROW_REFUNDED = "refunded"
ESCROW_SPLIT = "split"

# Tasks
TASK_OPEN = "open"
TASK_IN_PROGRESS = "in_progress"
TASK_REVIEW = "review"
TASK_DISPUTE = "dispute"
TASK_CLOSED = "closed"

# Disputes
DISPUTE_OPEN = "open"
DISPUTE_IN_REVIEW = "in_review"
DISPUTE_NEED_MORE_INFO = "need_more_info"
DISPUTE_DECIDED = "decided"
DISPUTE_CLOSED = "closed"

DISPUTE_ACTIVE_STATUSES = frozenset({DISPUTE_OPEN, DISPUTE_IN_REVIEW, DISPUTE_NEED_MORE_INFO})

# Violations
NO_START_VIOLATION = "no_start_12h"
NO_SUBMIT_VIOLATION = "no_submit_24h"
VIOLATION_TYPES = frozenset({NO_START_VIOLATION, NO_SUBMIT_VIOLATION})
