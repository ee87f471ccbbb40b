"""
Typed Exception Hierarchy for the Guarantee Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure in the guarantee lifecycle is scoped to a single Application's
transition attempt and must be rendered by a caller that never sees this
code.  Callers therefore catch by type and read structured attributes:

    try:
        orchestrator.perform("buyer", "pay_issuance_fee", request_id)
    except WrongStageError as e:
        show(f"Not yet payable (stage {e.stage})")
    except LedgerTimedOutError as e:
        orchestrator.reconcile(e.request_id)   # outcome unknown, ask the ledger

Each class has a CODE attribute (machine-readable, API-safe) and keeps its
context as attributes rather than only inside the message.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    GuaranteeKernelError (base)
    |
    +-- AuthorizationError
    |   +-- WrongRoleError
    |   |   +-- NotFinancierError
    |   +-- WrongStageError
    |   +-- AlreadyTransitionedError
    |
    +-- StageError
    |   +-- InvalidTransitionError
    |   +-- TerminalStageError
    |
    +-- VotingError
    |   +-- VotingClosedError
    |   +-- InvalidVoteError
    |
    +-- SettlementError
    |   +-- NegativeBalanceError
    |   +-- InvalidAmountError
    |
    +-- ConcurrencyError
    |   +-- StaleStageError
    |
    +-- LedgerError
    |   +-- LedgerRevertedError
    |   +-- LedgerTimedOutError
    |   +-- SubmissionPendingError
    |
    +-- RegistryError
    |   +-- ApplicationNotFoundError
    |   +-- ApplicationAlreadyExistsError
    |   +-- DraftNotFoundError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Authorization   | WRONG_ROLE                  | Role may not perform the action
                | NOT_FINANCIER               | Voter is not an allow-listed financier
                | WRONG_STAGE                 | Action not yet (or no longer) possible
                | ALREADY_TRANSITIONED        | Transition already happened
----------------|-----------------------------|-----------------------------------------
Stage           | INVALID_TRANSITION          | Requested stage delta is illegal
                | TERMINAL_STAGE              | No stage follows the current one
----------------|-----------------------------|-----------------------------------------
Voting          | VOTING_CLOSED               | Vote cast after the ballot finalized
                | INVALID_VOTE                | Decision missing or not approve/reject
----------------|-----------------------------|-----------------------------------------
Settlement      | NEGATIVE_BALANCE            | Guarantee amount exceeds trade value
                | INVALID_AMOUNT              | Amount is not a valid token amount
----------------|-----------------------------|-----------------------------------------
Concurrency     | STALE_STAGE                 | Compare-and-set lost to another writer
----------------|-----------------------------|-----------------------------------------
Ledger          | LEDGER_REVERTED             | Ledger rejected the operation
                | LEDGER_TIMED_OUT            | Outcome unknown (timeout or transport)
                | SUBMISSION_PENDING          | Same operation in flight or unresolved
----------------|-----------------------------|-----------------------------------------
Registry        | APPLICATION_NOT_FOUND       | No Application for the request id
                | APPLICATION_ALREADY_EXISTS  | Request id already registered
                | DRAFT_NOT_FOUND             | No draft certificate for the request
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Write to an approved draft or a
                |                             | terminal transaction record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Authorization and settlement errors are deterministic.  Retrying the
   same call yields the same error; nothing was written.

2. StaleStageError is recoverable locally: re-read the Application and
   re-authorize.

3. LedgerRevertedError / LedgerTimedOutError are user-visible.  The kernel
   never retries them on its own.  After a timeout, reconcile first; if the
   ledger still has no answer, retry explicitly with ``retry=True``.
"""


class GuaranteeKernelError(Exception):
    """
    Base exception for all guarantee kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "GUARANTEE_KERNEL_ERROR"


# Authorization exceptions


class AuthorizationError(GuaranteeKernelError):
    """Base exception for role authorization denials."""

    code: str = "AUTHORIZATION_ERROR"


class WrongRoleError(AuthorizationError):
    """The role (or acting party) may not perform the action."""

    code: str = "WRONG_ROLE"

    def __init__(self, role: str, action: str, reason: str | None = None):
        self.role = role
        self.action = action
        self.reason = reason
        message = f"Role '{role}' may not perform '{action}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NotFinancierError(WrongRoleError):
    """Voter address is not in the allow-listed financier set."""

    code: str = "NOT_FINANCIER"

    def __init__(self, voter_address: str):
        self.voter_address = voter_address
        super().__init__(
            "financier",
            "cast_vote",
            f"{voter_address} is not an allow-listed financier",
        )


class WrongStageError(AuthorizationError):
    """The action is not available at the Application's current stage."""

    code: str = "WRONG_STAGE"

    def __init__(self, action: str, stage: int | None, required: int | None):
        self.action = action
        self.stage = stage
        self.required = required
        super().__init__(
            f"Action '{action}' requires stage {required}, "
            f"application is at stage {stage}"
        )


class AlreadyTransitionedError(AuthorizationError):
    """The transition the action would perform has already happened."""

    code: str = "ALREADY_TRANSITIONED"

    def __init__(self, action: str, stage: int | None):
        self.action = action
        self.stage = stage
        super().__init__(
            f"Action '{action}' already performed (application at stage {stage})"
        )


# Stage model exceptions


class StageError(GuaranteeKernelError):
    """Base exception for stage model violations."""

    code: str = "STAGE_ERROR"


class InvalidTransitionError(StageError):
    """Requested stage delta is not in the transition table."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, from_stage: int, to_stage: int):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid stage transition {from_stage} -> {to_stage}")


class TerminalStageError(StageError):
    """No stage follows the given one."""

    code: str = "TERMINAL_STAGE"

    def __init__(self, stage: int):
        self.stage = stage
        super().__init__(f"Stage {stage} is terminal")


# Voting exceptions


class VotingError(GuaranteeKernelError):
    """Base exception for the financier vote."""

    code: str = "VOTING_ERROR"


class VotingClosedError(VotingError):
    """Vote submitted after the ballot was finalized."""

    code: str = "VOTING_CLOSED"

    def __init__(self, request_id: str, decision: str):
        self.request_id = request_id
        self.decision = decision
        super().__init__(
            f"Voting on {request_id} is closed (decision: {decision})"
        )


class InvalidVoteError(VotingError):
    """Vote decision is missing or not one of approve/reject."""

    code: str = "INVALID_VOTE"

    def __init__(self, request_id: str, decision: object):
        self.request_id = request_id
        self.decision = decision
        super().__init__(
            f"Invalid vote on {request_id}: {decision!r} is not approve or reject"
        )


# Settlement exceptions


class SettlementError(GuaranteeKernelError):
    """Base exception for settlement arithmetic."""

    code: str = "SETTLEMENT_ERROR"


class NegativeBalanceError(SettlementError):
    """Guarantee amount exceeds the trade value."""

    code: str = "NEGATIVE_BALANCE"

    def __init__(self, trade_value: str, guarantee_amount: str):
        self.trade_value = trade_value
        self.guarantee_amount = guarantee_amount
        super().__init__(
            f"Guarantee amount {guarantee_amount} exceeds trade value {trade_value}"
        )


class InvalidAmountError(SettlementError):
    """Value cannot be used as a token amount."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, value: str, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid amount {value!r}: {reason}")


# Concurrency exceptions


class ConcurrencyError(GuaranteeKernelError):
    """Base exception for concurrent modification."""

    code: str = "CONCURRENCY_ERROR"


class StaleStageError(ConcurrencyError):
    """
    Compare-and-set on current_stage lost.

    The stored stage no longer matches the caller's expectation.  Re-read
    and re-authorize instead of overwriting.
    """

    code: str = "STALE_STAGE"

    def __init__(self, request_id: str, expected: int, actual: int | None):
        self.request_id = request_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale stage for {request_id}: expected {expected}, found {actual}"
        )


# Ledger exceptions


class LedgerError(GuaranteeKernelError):
    """Base exception for ledger submission outcomes."""

    code: str = "LEDGER_ERROR"


class LedgerRevertedError(LedgerError):
    """The ledger rejected the operation.  Registry left unchanged."""

    code: str = "LEDGER_REVERTED"

    def __init__(self, request_id: str, operation_key: str, reason: str):
        self.request_id = request_id
        self.operation_key = operation_key
        self.reason = reason
        super().__init__(f"Ledger reverted {operation_key}: {reason}")


class LedgerTimedOutError(LedgerError):
    """
    No resolution within the caller's timeout, or the transport failed.

    The outcome is unknown; query the ledger before retrying, or retry
    explicitly once the ledger has no answer.  ``cause`` carries the
    transport error text when there was one.
    """

    code: str = "LEDGER_TIMED_OUT"

    def __init__(
        self,
        request_id: str,
        operation_key: str,
        timeout: float,
        cause: str | None = None,
    ):
        self.request_id = request_id
        self.operation_key = operation_key
        self.timeout = timeout
        self.cause = cause
        if cause:
            message = f"Ledger outcome of {operation_key} unknown: {cause}"
        else:
            message = f"Ledger did not resolve {operation_key} within {timeout}s"
        super().__init__(message)


class SubmissionPendingError(LedgerError):
    """An operation with the same key is in flight or unresolved."""

    code: str = "SUBMISSION_PENDING"

    def __init__(self, request_id: str, operation_key: str):
        self.request_id = request_id
        self.operation_key = operation_key
        super().__init__(
            f"Operation {operation_key} is pending; reconcile before retrying"
        )


# Registry exceptions


class RegistryError(GuaranteeKernelError):
    """Base exception for registry lookups."""

    code: str = "REGISTRY_ERROR"


class ApplicationNotFoundError(RegistryError):
    """No Application is registered under the request id."""

    code: str = "APPLICATION_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Application not found: {request_id}")


class ApplicationAlreadyExistsError(RegistryError):
    """The request id is already registered."""

    code: str = "APPLICATION_ALREADY_EXISTS"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Application already exists: {request_id}")


class DraftNotFoundError(RegistryError):
    """No draft certificate exists for the request id."""

    code: str = "DRAFT_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Draft certificate not found: {request_id}")


# Immutability exceptions


class ImmutabilityError(GuaranteeKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
