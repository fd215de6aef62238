"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
RULES
===============================================================================

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        store.record_entry(...)
    except InsufficientBalanceError as e:
        api_response(code=e.code, balance=str(e.balance), required=str(e.required))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- InvalidCurrencyError
    |   +-- InvalidEntryTypeError
    |   +-- AllocationMismatchError
    |   +-- InvalidCorrectionError
    |
    +-- ConfigurationError
    |   +-- ConfigurationMissingError
    |   +-- InvalidConfigurationError
    |
    +-- LedgerError
    |   +-- InsufficientBalanceError
    |   +-- LedgerEntryNotFoundError
    |
    +-- ApprovalError
    |   +-- NoApplicableChainError
    |   +-- DuplicatePendingApprovalError
    |   +-- NotPendingError
    |   +-- UnauthorizedError
    |   |   +-- SelfApprovalError
    |   +-- DuplicateDecisionError
    |   +-- ApprovalRequestNotFoundError
    |   +-- ApprovalChainNotFoundError
    |   +-- GuardBlockedError
    |   +-- ApprovalNotUsableError
    |   +-- ApprovalRequiredError
    |
    +-- AuditError
    |   +-- IntegrityCheckFailedError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- InfrastructureError
        +-- StoreUnavailableError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Validation and state-machine errors go straight back to the caller.
   Nothing in the kernel coerces a bad amount or a mismatched allocation
   into something acceptable.

2. Authorization errors carry the missing condition so callers can act:

    except NotPendingError as e:
        show(f"request already {e.status}")
    except UnauthorizedError as e:
        show(e.permitted_roles)

3. DuplicatePendingApprovalError carries the request that won the race.
   Callers await it instead of creating another one.

4. InfrastructureError subclasses are retryable (``retryable = True``);
   the orchestration layer decides the retry policy.

5. IntegrityCheckFailedError / AuditChainBrokenError mean the audit trail
   was altered outside the kernel. Investigate before continuing.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class LedgerKernelError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LEDGER_KERNEL_ERROR"
    retryable: bool = False


# Validation errors


class ValidationError(LedgerKernelError):
    """Base exception for input validation errors."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount is not a positive, finite decimal."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InvalidCurrencyError(ValidationError):
    """Currency code is not ISO 4217 or no conversion path exists."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str, reason: str = "not a valid ISO 4217 code"):
        self.currency = currency
        self.reason = reason
        super().__init__(f"Invalid currency {currency!r}: {reason}")


class InvalidEntryTypeError(ValidationError):
    """Entry type does not belong to the target ledger."""

    code: str = "INVALID_ENTRY_TYPE"

    def __init__(self, ledger: str, entry_type: str):
        self.ledger = ledger
        self.entry_type = entry_type
        super().__init__(f"Entry type {entry_type!r} is not valid on the {ledger} ledger")


class AllocationMismatchError(ValidationError):
    """Sum of sub-allocations differs from the entry amount beyond tolerance."""

    code: str = "ALLOCATION_MISMATCH"

    def __init__(
        self,
        amount: Decimal,
        allocated: Decimal,
        tolerance: Decimal,
        reason: str | None = None,
    ):
        self.amount = amount
        self.allocated = allocated
        self.difference = amount - allocated
        self.tolerance = tolerance
        self.reason = reason
        detail = reason or (
            f"allocations total {allocated} against entry amount {amount} "
            f"(difference {self.difference}, tolerance {tolerance})"
        )
        super().__init__(f"Allocation mismatch: {detail}")


class InvalidCorrectionError(ValidationError):
    """A reverse/reclass entry does not line up with the entry it corrects."""

    code: str = "INVALID_CORRECTION"

    def __init__(self, original_entry_id: str, reason: str):
        self.original_entry_id = original_entry_id
        self.reason = reason
        super().__init__(f"Invalid correction of entry {original_entry_id}: {reason}")


# Configuration errors


class ConfigurationError(LedgerKernelError):
    """Base exception for configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class ConfigurationMissingError(ConfigurationError):
    """A required runtime setting (rate, threshold) is absent or unusable."""

    code: str = "CONFIGURATION_MISSING"

    def __init__(self, key: str, category: str | None = None, reason: str = "not set"):
        self.key = key
        self.category = category
        self.reason = reason
        where = f"{category}/{key}" if category else key
        super().__init__(f"Required setting {where} is {reason}")


class InvalidConfigurationError(ConfigurationError):
    """Static configuration file failed validation."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, errors: list[str], source: str | None = None):
        self.errors = list(errors)
        self.source = source
        prefix = f"{source}: " if source else ""
        super().__init__(prefix + "; ".join(self.errors))


# Ledger errors


class LedgerError(LedgerKernelError):
    """Base exception for ledger store errors."""

    code: str = "LEDGER_ERROR"


class InsufficientBalanceError(LedgerError):
    """An outflow would drive the ledger balance negative."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(self, ledger: str, balance: Decimal, required: Decimal, currency: str):
        self.ledger = ledger
        self.balance = balance
        self.required = required
        self.shortfall = required - balance
        self.currency = currency
        super().__init__(
            f"Insufficient {ledger} balance: available {balance} {currency}, "
            f"required {required} {currency} (short {self.shortfall})"
        )


class LedgerEntryNotFoundError(LedgerError):
    """Ledger entry does not exist."""

    code: str = "LEDGER_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Ledger entry not found: {entry_id}")


# Approval errors


class ApprovalError(LedgerKernelError):
    """Base exception for approval workflow errors."""

    code: str = "APPROVAL_ERROR"


class NoApplicableChainError(ApprovalError):
    """No approval chain matches and the operation may not proceed without one."""

    code: str = "NO_APPLICABLE_CHAIN"

    def __init__(self, operation_type: str, amount: Decimal | None, requester_role: str | None):
        self.operation_type = operation_type
        self.amount = amount
        self.requester_role = requester_role
        super().__init__(
            f"No approval chain applies to {operation_type} "
            f"(amount={amount}, role={requester_role}) and the operation "
            f"is blocked without an approver"
        )


class DuplicatePendingApprovalError(ApprovalError):
    """An open request already exists for the entity; await it instead."""

    code: str = "DUPLICATE_PENDING_APPROVAL"

    def __init__(self, entity_type: str, entity_id: str, existing_request: Any = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.existing_request = existing_request
        self.existing_request_id = (
            str(existing_request.request_id) if existing_request is not None else None
        )
        super().__init__(
            f"An approval request is already open for {entity_type}/{entity_id}"
            + (f": {self.existing_request_id}" if self.existing_request_id else "")
        )


class NotPendingError(ApprovalError):
    """Request is no longer open for the attempted action."""

    code: str = "NOT_PENDING"

    def __init__(self, request_id: str, status: str, action: str = "decide"):
        self.request_id = request_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} approval request {request_id}: status is {status}")


class UnauthorizedError(ApprovalError):
    """Actor may not perform this approval action."""

    code: str = "UNAUTHORIZED"

    def __init__(
        self,
        actor_id: str,
        actor_role: str | None,
        reason: str,
        permitted_roles: tuple[str, ...] = (),
    ):
        self.actor_id = actor_id
        self.actor_role = actor_role
        self.reason = reason
        self.permitted_roles = tuple(permitted_roles)
        suffix = f" (permitted roles: {', '.join(self.permitted_roles)})" if self.permitted_roles else ""
        super().__init__(f"Actor {actor_id} ({actor_role}) is not authorized: {reason}{suffix}")


class SelfApprovalError(UnauthorizedError):
    """Requester tried to decide on their own request."""

    code: str = "SELF_APPROVAL"

    def __init__(self, actor_id: str, actor_role: str | None, request_id: str):
        self.request_id = request_id
        super().__init__(
            actor_id, actor_role,
            f"cannot decide on own approval request {request_id}",
        )


class DuplicateDecisionError(ApprovalError):
    """Approver has already decided on this request."""

    code: str = "DUPLICATE_DECISION"

    def __init__(self, request_id: str, actor_id: str):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} has already decided on approval request {request_id}")


class ApprovalRequestNotFoundError(ApprovalError):
    """Approval request does not exist."""

    code: str = "APPROVAL_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


class ApprovalChainNotFoundError(ApprovalError):
    """Approval chain does not exist."""

    code: str = "APPROVAL_CHAIN_NOT_FOUND"

    def __init__(self, chain_ref: str):
        self.chain_ref = chain_ref
        super().__init__(f"Approval chain not found: {chain_ref}")


class GuardBlockedError(ApprovalError):
    """An approval guard refused the operation before chain evaluation."""

    code: str = "GUARD_BLOCKED"

    def __init__(self, guard_name: str, operation_type: str, reason: str):
        self.guard_name = guard_name
        self.operation_type = operation_type
        self.reason = reason
        super().__init__(f"Guard {guard_name} blocked {operation_type}: {reason}")


class ApprovalNotUsableError(ApprovalError):
    """Approval cannot authorize this execution (consumed, expired, mismatched)."""

    code: str = "APPROVAL_NOT_USABLE"

    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Approval {request_id} cannot be used: {reason}")


class ApprovalRequiredError(ApprovalError):
    """The operation is gated and no usable approval was supplied.

    ``request`` is the pending request the gate created (or found); the
    caller retries the operation with its id once it is approved.
    """

    code: str = "APPROVAL_REQUIRED"

    def __init__(self, operation_type: str, entity_id: str, request: Any = None):
        self.operation_type = operation_type
        self.entity_id = entity_id
        self.request = request
        self.request_id = str(request.request_id) if request is not None else None
        super().__init__(
            f"{operation_type} for {entity_id} requires approval"
            + (f": request {self.request_id}" if self.request_id else "")
        )


# Audit errors


class AuditError(LedgerKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class IntegrityCheckFailedError(AuditError):
    """Audit entry content does not match its stored checksum."""

    code: str = "INTEGRITY_CHECK_FAILED"

    def __init__(self, audit_id: str, expected_checksum: str, actual_checksum: str):
        self.audit_id = audit_id
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum
        super().__init__(
            f"Audit entry {audit_id} failed integrity check: "
            f"computed {expected_checksum}, stored {actual_checksum}"
        )


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_id: str, expected_hash: str, actual_hash: str):
        self.audit_id = audit_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Immutability errors


class ImmutabilityError(LedgerKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Ledger entries, allocations, approval history and audit entries are
    append-only.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Infrastructure errors


class InfrastructureError(LedgerKernelError):
    """Base exception for store/infrastructure failures."""

    code: str = "INFRASTRUCTURE_ERROR"
    retryable: bool = True


class StoreUnavailableError(InfrastructureError):
    """The relational store could not complete the operation; retry later."""

    code: str = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Store unavailable during {operation}: {cause}")
