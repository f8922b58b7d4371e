"""
Reasoning hashes and identifier normalization.

A reasoning hash is SHA-256 over the UTF-8 bytes of the justification
text, rendered as 0x-prefixed lower-case hex (32 bytes). Commitment
identifiers use the same fixed-width rendering.
"""

from __future__ import annotations

import hashlib
import json
import re
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .money import validate_amount


ZERO_HASH = "0x" + "0" * 64
ZERO_ADDRESS = "0x" + "0" * 40
COMMITMENT_ID_DOMAIN = b"commitpay:commitment:v1"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX32_RE = re.compile(r"^[a-fA-F0-9]{64}$")


def hash_reasoning(text: str) -> str:
    """Return the reasoning hash of ``text``."""
    return "0x" + hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid agent address: {address}")
    return "0x" + candidate[2:].lower()


def normalize_hex32(value: Any, field_name: str) -> str:
    """Normalize a 32-byte value given as hex (with or without 0x) or bytes."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"{field_name} must be 32 bytes")
        return "0x" + bytes(value).hex()
    candidate = str(value).strip()
    if candidate[:2] in ("0x", "0X"):
        candidate = candidate[2:]
    if not _HEX32_RE.match(candidate):
        raise ValueError(f"{field_name} must be 32-byte hex: {value}")
    return "0x" + candidate.lower()


def derive_commitment_id(agent: str, nonce: int) -> str:
    """Deterministic commitment identifier for an agent's n-th commitment."""
    if nonce < 0:
        raise ValueError("nonce must be >= 0")
    digest = hashlib.sha256()
    digest.update(COMMITMENT_ID_DOMAIN)
    digest.update(bytes.fromhex(normalize_address(agent)[2:]))
    digest.update(int(nonce).to_bytes(8, "big"))
    return "0x" + digest.hexdigest()


def random_commitment_id() -> str:
    return "0x" + secrets.token_hex(32)


@dataclass
class PaymentReasoning:
    """Structured justification for a payment decision."""

    reason: str
    recipient: str
    amount: int
    category: str = "general"
    confidence: int = 100
    decided_at: str = ""
    context: str = ""

    def __post_init__(self) -> None:
        self.recipient = normalize_address(self.recipient)
        validate_amount(self.amount)
        if not 0 <= int(self.confidence) <= 100:
            raise ValueError(f"confidence must be between 0 and 100: {self.confidence}")
        if not self.decided_at:
            self.decided_at = datetime.now(timezone.utc).isoformat(timespec="seconds")

    def to_text(self) -> str:
        """Canonical JSON rendering; this exact text is what gets committed."""
        payload = {
            "reason": self.reason,
            "recipient": self.recipient,
            "amount": self.amount,
            "category": self.category,
            "confidence": int(self.confidence),
            "decidedAt": self.decided_at,
            "context": self.context,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @property
    def reasoning_hash(self) -> str:
        return hash_reasoning(self.to_text())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_text(cls, text: str) -> PaymentReasoning:
        raw: Mapping[str, Any] = json.loads(text)
        return cls(
            reason=raw["reason"],
            recipient=raw["recipient"],
            amount=int(raw["amount"]),
            category=raw.get("category", "general"),
            confidence=int(raw.get("confidence", 100)),
            decided_at=raw.get("decidedAt", ""),
            context=raw.get("context", ""),
        )
