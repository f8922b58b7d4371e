"""
CommitPay error types.

Specific exceptions for each guard in the commit-execute-reveal flow,
so callers can tell a logic error from a tamper signal or a declined
transfer.
"""


class CommitPayError(Exception):
    """Base error for all CommitPay operations."""
    pass


# Registry errors
class RegistryError(CommitPayError):
    """Base error for agent registration problems."""
    pass


class AlreadyRegisteredError(RegistryError):
    """Identity already has an agent record."""
    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"Agent already registered: {agent}")


class NotRegisteredError(RegistryError):
    """Caller is not a registered agent."""
    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"Agent not registered: {agent}")


# Commitment lifecycle errors
class CommitmentError(CommitPayError):
    """Base error for commitment state-machine violations."""
    def __init__(self, commitment_id: str, message: str):
        self.commitment_id = commitment_id
        super().__init__(message)


class CommitmentExistsError(CommitmentError):
    """Commitment identifier has already been used."""
    def __init__(self, commitment_id: str):
        super().__init__(commitment_id, f"Commitment already exists: {commitment_id}")


class CommitmentNotFoundError(CommitmentError):
    def __init__(self, commitment_id: str):
        super().__init__(commitment_id, f"Commitment not found: {commitment_id}")


class NotYourCommitmentError(CommitmentError):
    """Caller does not own the commitment."""
    def __init__(self, commitment_id: str, caller: str, owner: str):
        self.caller = caller
        self.owner = owner
        super().__init__(
            commitment_id,
            f"Commitment {commitment_id} belongs to {owner}, not {caller}",
        )


class AlreadyExecutedError(CommitmentError):
    def __init__(self, commitment_id: str):
        super().__init__(commitment_id, f"Commitment already executed: {commitment_id}")


class AlreadyRevealedError(CommitmentError):
    def __init__(self, commitment_id: str):
        super().__init__(commitment_id, f"Commitment already revealed: {commitment_id}")


# Integrity errors
class IntegrityError(CommitPayError):
    """Base error for tamper detection."""
    pass


class HashMismatchError(IntegrityError):
    """Revealed reasoning does not hash to the committed value."""
    def __init__(self, commitment_id: str, expected: str, actual: str):
        self.commitment_id = commitment_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Reasoning hash mismatch for {commitment_id}: committed {expected}, got {actual}"
        )


class AuditIntegrityError(IntegrityError):
    """Audit trail hash chain is broken."""
    pass


# Payment errors
class PaymentError(CommitPayError):
    """Base error for funds-movement failures."""
    pass


class TransferFailedError(PaymentError):
    """Payment gateway declined or failed the transfer; the call was rolled back."""
    def __init__(self, commitment_id: str, reason: str = "gateway reported failure"):
        self.commitment_id = commitment_id
        self.reason = reason
        super().__init__(f"Transfer failed for {commitment_id}: {reason}")


class InsufficientFundsError(PaymentError):
    """Payer balance or allowance does not cover the amount."""
    pass
