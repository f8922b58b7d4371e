"""Agent and commitment records held by the ledger."""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class Agent:
    """Snapshot of an agent's registration and lifetime statistics."""

    agent: str
    registered: bool = False
    commit_count: int = 0
    reveal_count: int = 0
    executed_count: int = 0
    total_moved: int = 0
    registered_at: int = 0

    @classmethod
    def unregistered(cls, agent: str) -> Agent:
        return cls(agent=agent)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Commitment:
    """One commit-execute-reveal record. Never deleted."""

    commitment_id: str
    agent: str
    reasoning_hash: str
    recipient: str
    amount: int
    committed_at: int
    executed_at: int = 0
    revealed_at: int = 0
    executed: bool = False
    revealed: bool = False
    reasoning: str = ""

    @property
    def state(self) -> str:
        if self.executed and self.revealed:
            return "executed+revealed"
        if self.revealed:
            return "revealed"
        if self.executed:
            return "executed"
        return "committed"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["state"] = self.state
        return d
