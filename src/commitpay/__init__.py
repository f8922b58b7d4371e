"""
CommitPay — Commit-reveal accountability for autonomous payments.

An agent commits to the hash of its justification before a transfer
executes, then reveals the text so anyone can verify it:
Commit → Execute → Reveal → Verify.
"""

__version__ = "0.1.0"

from .audit import AuditEvent, AuditTrail, EventType
from .gateway import DryRunGateway, HttpTransferGateway, LocalTokenGateway, PaymentGateway
from .ledger import CommitmentLedger
from .models import Agent, Commitment
from .payment import VerifiedPaymentExecutor, VerifiedPaymentResult
from .reasoning import PaymentReasoning, derive_commitment_id, hash_reasoning
from .verification import VerificationResult, check_reasoning, verify_commitment

__all__ = [
    "CommitmentLedger", "Agent", "Commitment",
    "VerificationResult", "verify_commitment", "check_reasoning",
    "PaymentReasoning", "hash_reasoning", "derive_commitment_id",
    "PaymentGateway", "LocalTokenGateway", "HttpTransferGateway", "DryRunGateway",
    "VerifiedPaymentExecutor", "VerifiedPaymentResult",
    "AuditTrail", "AuditEvent", "EventType",
]
