"""Custody-Engine exception hierarchy.

Four structural categories sit under ``CustodyError``; the HTTP layer maps
them onto status codes and callers use them to decide whether to retry.
Storage failures are not wrapped: ``sqlalchemy.exc.SQLAlchemyError``
propagates as-is.
"""


class CustodyError(Exception):
    """Base exception for all custody errors."""

    def __init__(self, message: str = "", code: str = "CUSTODY_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


# ── Categories ──


class NotFoundError(CustodyError):
    """A referenced vault, member, policy, escrow or participant is missing."""

    def __init__(self, message: str = "Resource not found", code: str = "NOT_FOUND"):
        super().__init__(message, code=code)


class ConflictError(CustodyError):
    """The request collides with an existing record or a state invariant."""

    def __init__(self, message: str = "Conflict", code: str = "CONFLICT"):
        super().__init__(message, code=code)


class UnauthorizedError(CustodyError):
    """The actor does not hold the role the operation requires."""

    def __init__(self, message: str = "Not authorized", code: str = "UNAUTHORIZED"):
        super().__init__(message, code=code)


class ValidationError(CustodyError):
    """Input violates a domain rule (amounts, identifiers, allocations)."""

    def __init__(self, message: str = "Invalid input", code: str = "VALIDATION_ERROR"):
        super().__init__(message, code=code)


# ── Not found ──


class VaultNotFoundError(NotFoundError):
    def __init__(self, message: str = "Vault not found"):
        super().__init__(message, code="VAULT_NOT_FOUND")


class MemberNotFoundError(NotFoundError):
    def __init__(self, message: str = "Member not found"):
        super().__init__(message, code="MEMBER_NOT_FOUND")


class PolicyNotFoundError(NotFoundError):
    def __init__(self, message: str = "Policy not found"):
        super().__init__(message, code="POLICY_NOT_FOUND")


class EscrowNotFoundError(NotFoundError):
    def __init__(self, message: str = "Escrow not found"):
        super().__init__(message, code="ESCROW_NOT_FOUND")


class ParticipantNotFoundError(NotFoundError):
    def __init__(self, message: str = "Participant not found"):
        super().__init__(message, code="PARTICIPANT_NOT_FOUND")


# ── Conflict / invariant ──


class DuplicateVaultError(ConflictError):
    """Raised when a vault with the same address+chain or uuid exists."""

    def __init__(self, message: str = "Vault already exists"):
        super().__init__(message, code="DUPLICATE_VAULT")


class ThresholdExceedsGuardianCountError(ConflictError):
    def __init__(self, message: str = "Threshold exceeds number of guardians"):
        super().__init__(message, code="THRESHOLD_EXCEEDS_GUARDIANS")


class CannotRemoveLastOwnerError(ConflictError):
    def __init__(self, message: str = "Cannot remove the last owner of a vault"):
        super().__init__(message, code="LAST_OWNER")


class EscrowNotApprovableError(ConflictError):
    def __init__(self, message: str = "Escrow cannot be approved in its current status"):
        super().__init__(message, code="NOT_APPROVABLE")


class InvalidTransitionError(ConflictError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    def __init__(self, message: str = "Invalid escrow status transition"):
        super().__init__(message, code="INVALID_TRANSITION")


class TimelockActiveError(ConflictError):
    def __init__(self, message: str = "Escrow timelock has not elapsed"):
        super().__init__(message, code="TIMELOCK_ACTIVE")


class ConcurrentModificationError(ConflictError):
    """Raised when optimistic retries are exhausted for a contended row."""

    def __init__(self, message: str = "Concurrent modification, retry the request"):
        super().__init__(message, code="CONCURRENT_MODIFICATION")


# ── Unauthorized ──


class NotAQualifiedApproverError(UnauthorizedError):
    def __init__(self, message: str = "Address is not a qualified approver for this escrow"):
        super().__init__(message, code="NOT_QUALIFIED_APPROVER")


# ── Validation ──


class InvalidAddressError(ValidationError):
    def __init__(self, message: str = "Invalid address"):
        super().__init__(message, code="INVALID_ADDRESS")


class InvalidChainIdError(ValidationError):
    def __init__(self, message: str = "Chain id must be a positive integer"):
        super().__init__(message, code="INVALID_CHAIN_ID")


class MalformedIdentifierError(ValidationError):
    def __init__(self, message: str = "Malformed canonical identifier"):
        super().__init__(message, code="MALFORMED_IDENTIFIER")


class InvalidRoleError(ValidationError):
    def __init__(self, message: str = "Unknown member role"):
        super().__init__(message, code="INVALID_ROLE")


class InvalidPolicyError(ValidationError):
    def __init__(self, message: str = "Invalid policy parameters"):
        super().__init__(message, code="INVALID_POLICY")


class InvalidAmountError(ValidationError):
    def __init__(self, message: str = "Amount must be a positive integer"):
        super().__init__(message, code="INVALID_AMOUNT")


class AmountOverflowError(ValidationError):
    def __init__(self, message: str = "Amount exceeds the 256-bit range"):
        super().__init__(message, code="AMOUNT_OVERFLOW")


class AllocationMismatchError(ValidationError):
    def __init__(self, message: str = "Participant allocations do not sum to the total amount"):
        super().__init__(message, code="ALLOCATION_MISMATCH")


class SpendingCapExceededError(ValidationError):
    def __init__(self, message: str = "Amount exceeds the policy spending cap"):
        super().__init__(message, code="SPENDING_CAP_EXCEEDED")


class OverpaymentError(ValidationError):
    def __init__(self, message: str = "Payment exceeds the participant allocation"):
        super().__init__(message, code="OVERPAYMENT")


class PartialPaymentNotAllowedError(ValidationError):
    def __init__(self, message: str = "Policy does not accept partial payments"):
        super().__init__(message, code="PARTIAL_PAYMENT_NOT_ALLOWED")
