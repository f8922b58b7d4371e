"""
Payment gateway adapters.

The ledger never custodies funds. It calls ``move_funds`` exactly once per
executed commitment and treats anything other than ``True`` as a failed
transfer.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Protocol

import httpx

from .errors import InsufficientFundsError
from .money import validate_amount
from .reasoning import normalize_address
from .storage import atomic_write_text, default_home, ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)

GATEWAY_URL_ENV = "COMMITPAY_GATEWAY_URL"


class PaymentGateway(Protocol):
    def move_funds(self, payer: str, payee: str, amount: int) -> bool: ...


class LocalTokenGateway:
    """File-backed stand-in for a 6-decimal token contract.

    Payers must ``approve`` the ledger for at least the transfer amount
    before executing; each transfer consumes allowance like
    ``transferFrom`` would.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or default_home() / "token_state.json"
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".token.lock"
        ensure_private_file(self._lock_path)
        if not self.path.exists() or self.path.stat().st_size == 0:
            self._save_state({"balances": {}, "allowances": {}})

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_state(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _save_state(self, state: dict) -> None:
        atomic_write_text(self.path, json.dumps(state, indent=2, sort_keys=True))

    def mint(self, account: str, amount: int) -> int:
        account = normalize_address(account)
        validate_amount(amount)
        with self._lock():
            state = self._load_state()
            balances = state.setdefault("balances", {})
            balances[account] = int(balances.get(account, 0)) + amount
            self._save_state(state)
            return balances[account]

    def approve(self, owner: str, amount: int) -> None:
        """Allow the ledger to pull up to ``amount`` units from ``owner``."""
        owner = normalize_address(owner)
        validate_amount(amount)
        with self._lock():
            state = self._load_state()
            state.setdefault("allowances", {})[owner] = amount
            self._save_state(state)

    def allowance(self, owner: str) -> int:
        owner = normalize_address(owner)
        with self._lock():
            return int(self._load_state().get("allowances", {}).get(owner, 0))

    def balance_of(self, account: str) -> int:
        account = normalize_address(account)
        with self._lock():
            return int(self._load_state().get("balances", {}).get(account, 0))

    def transfer(self, payer: str, payee: str, amount: int) -> None:
        """Move ``amount`` from payer to payee or raise without side effects."""
        payer = normalize_address(payer)
        payee = normalize_address(payee)
        validate_amount(amount)
        with self._lock():
            state = self._load_state()
            balances = state.setdefault("balances", {})
            allowances = state.setdefault("allowances", {})
            balance = int(balances.get(payer, 0))
            allowed = int(allowances.get(payer, 0))
            if allowed < amount:
                raise InsufficientFundsError(f"Allowance {allowed} < {amount} for {payer}")
            if balance < amount:
                raise InsufficientFundsError(f"Balance {balance} < {amount} for {payer}")
            allowances[payer] = allowed - amount
            balances[payer] = balance - amount
            balances[payee] = int(balances.get(payee, 0)) + amount
            self._save_state(state)

    def move_funds(self, payer: str, payee: str, amount: int) -> bool:
        try:
            self.transfer(payer, payee, amount)
        except InsufficientFundsError as exc:
            logger.warning("Local transfer declined: %s", exc)
            return False
        return True


class HttpTransferGateway:
    """Delegates transfers to a remote funds-mover service.

    POSTs ``{"payer", "payee", "amount"}`` to ``<base_url>/transfers`` and
    expects ``{"success": true}`` back. Any transport error, non-2xx status
    or malformed body counts as a failed transfer.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url:
            raise ValueError("Gateway base URL is required")
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(timeout=timeout_seconds, headers=headers)

    @classmethod
    def from_env(cls) -> Optional[HttpTransferGateway]:
        url = os.getenv(GATEWAY_URL_ENV)
        if not url:
            return None
        return cls(url, api_key=os.getenv("COMMITPAY_GATEWAY_API_KEY"))

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def move_funds(self, payer: str, payee: str, amount: int) -> bool:
        body = {"payer": payer, "payee": payee, "amount": str(amount)}
        try:
            response = self._client.post(f"{self.base_url}/transfers", json=body)
        except httpx.HTTPError as exc:
            logger.warning("Gateway request failed: %s", exc)
            return False
        if response.status_code >= 300:
            logger.warning("Gateway rejected transfer (%d): %s", response.status_code, response.text[:200])
            return False
        try:
            return response.json().get("success") is True
        except (ValueError, AttributeError):
            logger.warning("Gateway returned malformed body")
            return False


class DryRunGateway:
    """Accepts every transfer without moving anything."""

    def __init__(self):
        self.transfers: list[tuple[str, str, int]] = []

    def move_funds(self, payer: str, payee: str, amount: int) -> bool:
        self.transfers.append((payer, payee, amount))
        return True
