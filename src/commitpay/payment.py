"""
Verified payment execution.

Flow:
1. Canonicalize the structured reasoning and hash it
2. Commit the hash (the agent is now bound to this justification)
3. Execute the transfer through the gateway
4. Reveal the reasoning text
5. Verify the revealed text against the commitment
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import CommitPayError
from .ledger import CommitmentLedger
from .reasoning import PaymentReasoning, derive_commitment_id, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class VerifiedPaymentResult:
    """Result of a verified payment attempt."""

    success: bool
    commitment_id: Optional[str] = None
    reasoning_hash: Optional[str] = None
    executed: bool = False
    revealed: bool = False
    verified: bool = False
    reason: Optional[str] = None
    amount: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "commitment_id": self.commitment_id,
            "reasoning_hash": self.reasoning_hash,
            "executed": self.executed,
            "revealed": self.revealed,
            "verified": self.verified,
            "reason": self.reason,
            "amount": self.amount,
        }


class VerifiedPaymentExecutor:
    """Orchestrates commit → execute → reveal → verify for one payment."""

    def __init__(self, ledger: CommitmentLedger, atomic: bool = False):
        self.ledger = ledger
        # atomic=True commits and pays in a single ledger call
        self.atomic = atomic

    def execute(
        self,
        agent: str,
        reasoning: PaymentReasoning,
        commitment_id: Optional[str] = None,
        reveal: bool = True,
    ) -> VerifiedPaymentResult:
        agent = normalize_address(agent)
        text = reasoning.to_text()
        reasoning_hash = reasoning.reasoning_hash
        if commitment_id is None:
            nonce = self.ledger.get_agent(agent).commit_count
            commitment_id = derive_commitment_id(agent, nonce)

        result = VerifiedPaymentResult(
            success=False,
            commitment_id=commitment_id,
            reasoning_hash=reasoning_hash,
            amount=reasoning.amount,
        )

        try:
            if self.atomic:
                record = self.ledger.commit_and_execute(
                    agent, commitment_id, reasoning_hash, reasoning.recipient, reasoning.amount
                )
            else:
                record = self.ledger.commit(
                    agent, commitment_id, reasoning_hash, reasoning.recipient, reasoning.amount
                )
                record = self.ledger.execute(agent, record.commitment_id)
            result.commitment_id = record.commitment_id
            result.executed = record.executed

            if reveal:
                self.ledger.reveal(agent, record.commitment_id, text)
                result.revealed = True
                result.verified = self.ledger.verify(record.commitment_id).verified
        except CommitPayError as exc:
            logger.warning("Verified payment failed for %s: %s", commitment_id, exc)
            result.reason = f"{type(exc).__name__}: {exc}"
            return result

        result.success = result.executed and (result.verified or not reveal)
        if not result.success and result.reason is None:
            result.reason = "Revealed reasoning did not verify"
        return result
