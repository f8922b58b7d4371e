"""
Verification of revealed reasoning.

Pure functions over a commitment record; anyone may call them. The
``verified`` flag re-derives the hash from the stored reasoning instead
of trusting the ``revealed`` flag alone.
"""

from __future__ import annotations

import hmac
from dataclasses import asdict, dataclass
from typing import Optional

from .models import Commitment
from .reasoning import ZERO_ADDRESS, hash_reasoning


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reasoning: str = ""
    agent: str = ZERO_ADDRESS
    recipient: str = ZERO_ADDRESS
    amount: int = 0
    executed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def hashes_match(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected.lower(), actual.lower())


def verify_commitment(commitment: Optional[Commitment]) -> VerificationResult:
    """Verify a ledger entry; an absent record yields an empty, unverified result."""
    if commitment is None:
        return VerificationResult(verified=False)
    verified = commitment.revealed and hashes_match(
        commitment.reasoning_hash, hash_reasoning(commitment.reasoning)
    )
    return VerificationResult(
        verified=verified,
        reasoning=commitment.reasoning,
        agent=commitment.agent,
        recipient=commitment.recipient,
        amount=commitment.amount,
        executed=commitment.executed,
    )


def check_reasoning(commitment: Optional[Commitment], candidate: str) -> tuple[bool, str]:
    """Test a candidate reasoning text against a commitment without revealing it."""
    if commitment is None:
        return False, "Commitment not found"
    if hashes_match(commitment.reasoning_hash, hash_reasoning(candidate)):
        return True, "Reasoning matches the committed hash"
    return False, "Hash mismatch: reasoning does not match what was committed"
