"""
CommitPay CLI — Commit-reveal accountability for agent payments.

Commands:
    commitpay register             Register the agent identity
    commitpay commit               Commit a reasoning hash for a payment
    commitpay execute              Execute a committed payment
    commitpay commit-and-execute   Commit and pay in one atomic step
    commitpay reveal               Reveal committed reasoning
    commitpay verify               Verify revealed reasoning (anyone)
    commitpay pay                  Full verified payment flow
    commitpay stats / agents / list / audit / demo
"""

from __future__ import annotations

import json
import subprocess
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .audit import AuditTrail, EventType
from .errors import CommitPayError
from .gateway import DryRunGateway, HttpTransferGateway, LocalTokenGateway, PaymentGateway
from .ledger import CommitmentLedger
from .money import format_units, usdc_to_units
from .payment import VerifiedPaymentExecutor
from .reasoning import PaymentReasoning, derive_commitment_id, hash_reasoning
from .storage import default_home, ensure_private_dir


# ── Wiring ────────────────────────────────────────────────────────

def _home() -> Path:
    home = default_home()
    ensure_private_dir(home)
    return home


def _token() -> LocalTokenGateway:
    return LocalTokenGateway(_home() / "token_state.json")


def _gateway(dry_run: bool = False) -> PaymentGateway:
    if dry_run:
        return DryRunGateway()
    remote = HttpTransferGateway.from_env()
    return remote if remote is not None else _token()


def _audit() -> AuditTrail:
    return AuditTrail(_home() / "audit.jsonl")


@contextmanager
def _ledger(dry_run: bool = False) -> Iterator[CommitmentLedger]:
    gateway = _gateway(dry_run)
    try:
        yield CommitmentLedger(gateway, state_dir=_home(), audit=_audit())
    finally:
        if isinstance(gateway, HttpTransferGateway):
            gateway.close()


def _reader() -> CommitmentLedger:
    # Queries never reach the gateway.
    return CommitmentLedger(DryRunGateway(), state_dir=_home())


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _caller(agent_key: str, unsafe_allow_key_arg: bool) -> str:
    """Authenticate the caller: the agent is whoever holds the key."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("agent_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --agent-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)
    try:
        return Account.from_key(_resolve_private_key(agent_key)).address.lower()
    except Exception as exc:
        click.echo(f"❌ Failed to load agent key: {exc}", err=True)
        sys.exit(1)


def _units(amount: str) -> int:
    try:
        return usdc_to_units(amount)
    except Exception as exc:
        click.echo(f"❌ Invalid amount {amount!r}: {exc}", err=True)
        sys.exit(1)


def _fail(action: str, exc: Exception) -> None:
    click.echo(f"❌ {action} failed: {exc}", err=True)
    sys.exit(1)


def agent_key_options(f):
    f = click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --agent-key via argv (unsafe; can leak in shell/process history).",
    )(f)
    f = click.option(
        "--agent-key",
        prompt=True,
        hide_input=True,
        help="Agent's Ethereum private key (hex) or op:// reference",
    )(f)
    return f


def _commit_inputs(reasoning: Optional[str], reasoning_hash: Optional[str]) -> str:
    if reasoning is None and reasoning_hash is None:
        click.echo("❌ Provide --reasoning or --hash.", err=True)
        sys.exit(1)
    if reasoning is not None and reasoning_hash is not None:
        click.echo("❌ Use either --reasoning or --hash, not both.", err=True)
        sys.exit(1)
    return reasoning_hash if reasoning_hash is not None else hash_reasoning(reasoning)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """CommitPay — Commit-reveal accountability for agent payments."""
    pass


@main.command()
@agent_key_options
def register(agent_key: str, unsafe_allow_key_arg: bool):
    """Register the agent identity derived from the key."""
    caller = _caller(agent_key, unsafe_allow_key_arg)
    try:
        with _ledger() as ledger:
            agent = ledger.register_agent(caller)
    except CommitPayError as exc:
        _fail("Registration", exc)
    click.echo(f"✅ Agent registered: {agent.agent}")


def _commit_command(name: str, help_text: str, atomic: bool):
    @main.command(name, help=help_text)
    @agent_key_options
    @click.option("--recipient", required=True, help="Recipient address")
    @click.option("--amount", required=True, help="Amount in USDC (e.g. 12.50)")
    @click.option("--reasoning", default=None, help="Reasoning text to hash and commit")
    @click.option("--hash", "reasoning_hash", default=None, help="Pre-computed reasoning hash (0x + 64 hex)")
    @click.option("--commitment-id", default=None, help="32-byte id (default: derived from agent nonce)")
    def command(
        agent_key: str,
        unsafe_allow_key_arg: bool,
        recipient: str,
        amount: str,
        reasoning: Optional[str],
        reasoning_hash: Optional[str],
        commitment_id: Optional[str],
    ):
        caller = _caller(agent_key, unsafe_allow_key_arg)
        digest = _commit_inputs(reasoning, reasoning_hash)
        units = _units(amount)
        try:
            with _ledger() as ledger:
                cid = commitment_id or derive_commitment_id(caller, ledger.get_agent(caller).commit_count)
                if atomic:
                    record = ledger.commit_and_execute(caller, cid, digest, recipient, units)
                else:
                    record = ledger.commit(caller, cid, digest, recipient, units)
        except (CommitPayError, ValueError) as exc:
            _fail("Commit", exc)
        click.echo(f"✅ Committed: {record.commitment_id}")
        click.echo(f"   Hash:      {record.reasoning_hash}")
        click.echo(f"   Recipient: {record.recipient}")
        click.echo(f"   Amount:    {format_units(record.amount)}")
        if record.executed:
            click.echo(f"   Executed:  {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(record.executed_at))}")

    return command


commit = _commit_command("commit", "Commit a reasoning hash for a future payment.", atomic=False)
commit_and_execute = _commit_command(
    "commit-and-execute",
    "Commit a reasoning hash and execute the payment atomically.",
    atomic=True,
)


@main.command()
@click.argument("commitment_id")
@agent_key_options
def execute(commitment_id: str, agent_key: str, unsafe_allow_key_arg: bool):
    """Execute the payment for a commitment you own."""
    caller = _caller(agent_key, unsafe_allow_key_arg)
    try:
        with _ledger() as ledger:
            record = ledger.execute(caller, commitment_id)
    except (CommitPayError, ValueError) as exc:
        _fail("Execute", exc)
    click.echo(f"✅ Payment executed: {record.commitment_id}")
    click.echo(f"   {format_units(record.amount)} → {record.recipient}")


@main.command()
@click.argument("commitment_id")
@agent_key_options
@click.option("--reasoning", default=None, help="Reasoning text")
@click.option("--reasoning-file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Read reasoning text verbatim from a file")
def reveal(
    commitment_id: str,
    agent_key: str,
    unsafe_allow_key_arg: bool,
    reasoning: Optional[str],
    reasoning_file: Optional[str],
):
    """Reveal the reasoning behind a commitment you own."""
    caller = _caller(agent_key, unsafe_allow_key_arg)
    if reasoning_file is not None:
        reasoning = Path(reasoning_file).read_text(encoding="utf-8")
    if reasoning is None:
        click.echo("❌ Provide --reasoning or --reasoning-file.", err=True)
        sys.exit(1)
    try:
        with _ledger() as ledger:
            record = ledger.reveal(caller, commitment_id, reasoning)
    except (CommitPayError, ValueError) as exc:
        _fail("Reveal", exc)
    click.echo(f"✅ Reasoning revealed: {record.commitment_id}")


@main.command()
@click.argument("commitment_id")
@click.option("--reasoning", default=None, help="Check a candidate text without revealing it")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON")
def verify(commitment_id: str, reasoning: Optional[str], as_json: bool):
    """Verify a commitment's revealed reasoning against its committed hash."""
    ledger = _reader()
    if reasoning is not None:
        ok, message = ledger.check_reasoning(commitment_id, reasoning)
        click.echo(f"{'✅' if ok else '❌'} {message}")
        if not ok:
            sys.exit(1)
        return
    result = ledger.verify(commitment_id)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.verified:
        click.echo("✅ VERIFIED — reasoning matches the commitment")
        click.echo(f"   Agent:     {result.agent}")
        click.echo(f"   Recipient: {result.recipient}")
        click.echo(f"   Amount:    {format_units(result.amount)}")
        click.echo(f"   Executed:  {result.executed}")
        click.echo(f"   Reasoning: {result.reasoning}")
    else:
        click.echo("❌ Not verified (unknown, unrevealed, or mismatched)")
    if not result.verified:
        sys.exit(1)


@main.command()
@click.argument("agent")
def stats(agent: str):
    """Show an agent's lifetime accountability statistics."""
    info = _reader().get_agent(agent)
    click.echo(f"📊 Agent {info.agent}")
    click.echo(f"   Registered:  {info.registered}")
    click.echo(f"   Commits:     {info.commit_count}")
    click.echo(f"   Executed:    {info.executed_count}")
    click.echo(f"   Revealed:    {info.reveal_count}")
    click.echo(f"   Total moved: {format_units(info.total_moved)}")


@main.command()
@click.option("--offset", type=click.IntRange(min=0), default=0)
@click.option("--limit", type=click.IntRange(min=0), default=50)
def agents(offset: int, limit: int):
    """List registered agents in registration order."""
    ledger = _reader()
    click.echo(f"{ledger.agent_count()} registered agent(s)")
    for address in ledger.list_agents(offset, limit):
        click.echo(f"  {address}")


@main.command("list")
@click.option("--offset", type=click.IntRange(min=0), default=0)
@click.option("--limit", type=click.IntRange(min=0), default=20)
def list_commitments(offset: int, limit: int):
    """Page through commitments in creation order."""
    ledger = _reader()
    total = ledger.total_count()
    records = ledger.page_commitments(offset, limit)
    if not records:
        click.echo(f"No commitments in range (total {total}).")
        return
    click.echo(f"Commitments {offset}..{offset + len(records) - 1} of {total}:")
    for record in records:
        click.echo(f"  {record.commitment_id} [{record.state}] {format_units(record.amount)} → {record.recipient}")


@main.command("hash")
@click.argument("reasoning")
def hash_command(reasoning: str):
    """Print the reasoning hash of a text."""
    click.echo(hash_reasoning(reasoning))


@main.command()
@agent_key_options
@click.option("--recipient", required=True, help="Recipient address")
@click.option("--amount", required=True, help="Amount in USDC")
@click.option("--reason", required=True, help="Why this payment is being made")
@click.option("--category", default="general", help="Payment category")
@click.option("--confidence", type=click.IntRange(0, 100), default=100, help="Decision confidence 0-100")
@click.option("--context", default="", help="Invoice reference or other context")
@click.option("--atomic", is_flag=True, help="Commit and execute in one step")
@click.option("--dry-run", is_flag=True, help="Use a gateway that moves nothing")
def pay(
    agent_key: str,
    unsafe_allow_key_arg: bool,
    recipient: str,
    amount: str,
    reason: str,
    category: str,
    confidence: int,
    context: str,
    atomic: bool,
    dry_run: bool,
):
    """Commit reasoning, execute the payment, reveal, and verify."""
    caller = _caller(agent_key, unsafe_allow_key_arg)
    try:
        reasoning = PaymentReasoning(
            reason=reason,
            recipient=recipient,
            amount=_units(amount),
            category=category,
            confidence=confidence,
            context=context,
        )
    except ValueError as exc:
        _fail("Payment", exc)

    if dry_run:
        click.echo("🔍 DRY RUN — no funds will move")
    with _ledger(dry_run) as ledger:
        result = VerifiedPaymentExecutor(ledger, atomic=atomic).execute(caller, reasoning)

    if result.success:
        click.echo(f"✅ Verified payment {'simulated' if dry_run else 'completed'}!")
        click.echo(f"   Commitment: {result.commitment_id}")
        click.echo(f"   Hash:       {result.reasoning_hash}")
        click.echo(f"   Amount:     {format_units(result.amount)}")
        click.echo(f"   Verified:   {result.verified}")
    else:
        click.echo(f"❌ Payment failed: {result.reason}")
        sys.exit(1)


@main.command()
@click.argument("address")
@click.option("--amount", required=True, help="Amount in USDC to mint on the local token")
def fund(address: str, amount: str):
    """Mint local test tokens to an address."""
    try:
        balance = _token().mint(address, _units(amount))
    except ValueError as exc:
        _fail("Fund", exc)
    click.echo(f"✅ Funded {address}: balance {format_units(balance)}")


@main.command()
@agent_key_options
@click.option("--amount", required=True, help="Allowance in USDC")
def approve(agent_key: str, unsafe_allow_key_arg: bool, amount: str):
    """Allow the ledger to move up to AMOUNT of your local tokens."""
    caller = _caller(agent_key, unsafe_allow_key_arg)
    _token().approve(caller, _units(amount))
    click.echo(f"✅ Allowance for {caller}: {format_units(_token().allowance(caller))}")


@main.command()
@click.argument("address")
def balance(address: str):
    """Show an address's local token balance."""
    try:
        units = _token().balance_of(address)
    except ValueError as exc:
        _fail("Balance", exc)
    click.echo(f"{address}: {format_units(units)}")


@main.command()
@click.option("--agent", default=None, help="Filter by agent address")
@click.option("--commitment-id", default=None, help="Filter by commitment id")
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Number of events")
@click.option("--summary", "show_summary", is_flag=True, help="Show totals per event type instead of events")
def audit(agent: Optional[str], commitment_id: Optional[str], limit: int, show_summary: bool):
    """View the audit trail of ledger notifications."""
    trail = _audit()
    if show_summary:
        try:
            totals = trail.summary(agent=agent.lower() if agent else None)
        except CommitPayError as exc:
            _fail("Audit", exc)
        click.echo(f"📋 {totals['total_events']} event(s)")
        for event_type, count in sorted(totals["by_type"].items()):
            click.echo(f"   {event_type}: {count}")
        click.echo(f"   Total moved: {format_units(totals['total_moved'])}")
        return

    try:
        events = trail.read_events(
            commitment_id=commitment_id.lower() if commitment_id else None,
            agent=agent.lower() if agent else None,
            limit=limit,
        )
    except CommitPayError as exc:
        _fail("Audit", exc)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        amount = f" {format_units(event.amount)}" if event.amount is not None else ""
        target = f" {event.commitment_id[:18]}…" if event.commitment_id else ""
        click.echo(f"  {ts} {event.event_type}{target}{amount}")


@main.command()
def demo():
    """Run a full demo of the commit-execute-reveal-verify flow."""
    click.echo("🎬 CommitPay Demo — Verified Payment Flow")
    click.echo("=" * 50)

    home = _home() / "demo" / str(int(time.time() * 1000))
    ensure_private_dir(home)
    token = LocalTokenGateway(home / "token_state.json")
    audit_trail = AuditTrail(home / "audit.jsonl")
    ledger = CommitmentLedger(token, state_dir=home, audit=audit_trail)

    click.echo("\n1️⃣  Generating accounts...")
    agent = Account.create().address.lower()
    recipient = Account.create().address.lower()
    click.echo(f"   Agent:     {agent}")
    click.echo(f"   Recipient: {recipient}")

    click.echo("\n2️⃣  Registering agent and funding 1,000 USDC...")
    ledger.register_agent(agent)
    token.mint(agent, usdc_to_units(1000))
    token.approve(agent, usdc_to_units(100))

    reasoning = PaymentReasoning(
        reason="Monthly price-feed subscription; saves ~2h/day of manual collection.",
        recipient=recipient,
        amount=usdc_to_units(50),
        category="subscription",
        confidence=92,
        context="Invoice #2026-02-001",
    )
    click.echo("\n3️⃣  Commit → Execute → Reveal → Verify...")
    result = VerifiedPaymentExecutor(ledger).execute(agent, reasoning)
    click.echo(f"   {'✅' if result.success else '❌'} {result.commitment_id}")
    click.echo(f"   Hash:     {result.reasoning_hash}")
    click.echo(f"   Verified: {result.verified}")

    click.echo("\n4️⃣  Tamper attempt (reveal different reasoning)...")
    cid = derive_commitment_id(agent, ledger.get_agent(agent).commit_count)
    ledger.commit(agent, cid, hash_reasoning("real reason"), recipient, 1)
    try:
        ledger.reveal(agent, cid, "fake reason")
        click.echo("   ❌ Tampered reveal was accepted")
    except CommitPayError as exc:
        click.echo(f"   ✅ Rejected: {type(exc).__name__}")

    info = ledger.get_agent(agent)
    click.echo("\n5️⃣  Agent statistics...")
    click.echo(f"   Commits: {info.commit_count} | Executed: {info.executed_count} | Revealed: {info.reveal_count}")
    click.echo(f"   Moved:   {format_units(info.total_moved)}")
    click.echo(f"   Recipient balance: {format_units(token.balance_of(recipient))}")

    click.echo("\n6️⃣  Audit trail...")
    for event in audit_trail.read_events(agent=agent, limit=10):
        click.echo(f"   {event.event_type}")
    click.echo(f"   ({len(audit_trail.read_events(event_type=EventType.PAYMENT_EXECUTED))} payment(s) executed)")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Commit → Execute → Reveal → Verify")


if __name__ == "__main__":
    main()
