"""CLI command tests."""

import json
from pathlib import Path

import httpx
from click.testing import CliRunner
from eth_account import Account

from commitpay.cli import main
from commitpay.gateway import HttpTransferGateway
from commitpay.reasoning import derive_commitment_id, hash_reasoning


RECIPIENT = "0x1234567890123456789012345678901234567890"


def _base_env(tmp_path: Path) -> dict:
    return {
        "HOME": str(tmp_path),
        "COMMITPAY_HOME": str(tmp_path / "commitpay"),
        "COMMITPAY_AUDIT_HMAC_KEY": "cli-test-key",
        "COMMITPAY_GATEWAY_URL": None,
    }


def _key(account) -> str:
    return account.key.hex()


def test_rejects_raw_key_on_argv_without_unsafe(tmp_path):
    runner = CliRunner()
    agent = Account.create()

    result = runner.invoke(main, ["register", "--agent-key", _key(agent)], env=_base_env(tmp_path))

    assert result.exit_code != 0
    assert "Refusing --agent-key from argv" in result.output


def test_register_with_unsafe_key_arg(tmp_path):
    runner = CliRunner()
    agent = Account.create()
    env = _base_env(tmp_path)

    result = runner.invoke(
        main,
        ["register", "--agent-key", _key(agent), "--unsafe-allow-key-arg"],
        env=env,
    )
    assert result.exit_code == 0, result.output
    assert agent.address.lower() in result.output

    again = runner.invoke(
        main,
        ["register", "--agent-key", _key(agent), "--unsafe-allow-key-arg"],
        env=env,
    )
    assert again.exit_code != 0
    assert "already registered" in again.output.lower()


def test_full_flow_with_prompted_key(tmp_path):
    runner = CliRunner()
    agent = Account.create()
    address = agent.address.lower()
    env = _base_env(tmp_path)
    key_input = _key(agent) + "\n"
    cid = derive_commitment_id(address, 0)

    assert runner.invoke(main, ["register"], input=key_input, env=env).exit_code == 0
    assert runner.invoke(main, ["fund", address, "--amount", "100"], env=env).exit_code == 0
    assert runner.invoke(main, ["approve", "--amount", "50"], input=key_input, env=env).exit_code == 0

    commit = runner.invoke(
        main,
        ["commit", "--recipient", RECIPIENT, "--amount", "12.50", "--reasoning", "Buy widget"],
        input=key_input,
        env=env,
    )
    assert commit.exit_code == 0, commit.output
    assert cid in commit.output
    assert hash_reasoning("Buy widget") in commit.output

    execute = runner.invoke(main, ["execute", cid], input=key_input, env=env)
    assert execute.exit_code == 0, execute.output

    balance = runner.invoke(main, ["balance", RECIPIENT], env=env)
    assert "12.50 USDC" in balance.output

    not_yet = runner.invoke(main, ["verify", cid], env=env)
    assert not_yet.exit_code == 1

    check = runner.invoke(main, ["verify", cid, "--reasoning", "Buy widget"], env=env)
    assert check.exit_code == 0
    assert "matches" in check.output

    wrong = runner.invoke(main, ["reveal", cid, "--reasoning", "Sell widget"], input=key_input, env=env)
    assert wrong.exit_code != 0
    assert "Reveal failed" in wrong.output

    reveal = runner.invoke(main, ["reveal", cid, "--reasoning", "Buy widget"], input=key_input, env=env)
    assert reveal.exit_code == 0, reveal.output

    verify = runner.invoke(main, ["verify", cid, "--json"], env=env)
    assert verify.exit_code == 0
    payload = json.loads(verify.output)
    assert payload["verified"] is True
    assert payload["reasoning"] == "Buy widget"
    assert payload["amount"] == 12_500_000

    stats = runner.invoke(main, ["stats", address], env=env)
    assert "Commits:     1" in stats.output
    assert "Total moved: 12.50 USDC" in stats.output

    listing = runner.invoke(main, ["list"], env=env)
    assert cid in listing.output
    assert "executed+revealed" in listing.output

    agents = runner.invoke(main, ["agents"], env=env)
    assert "1 registered agent(s)" in agents.output

    audit = runner.invoke(main, ["audit", "--commitment-id", cid], env=env)
    assert "reasoning_committed" in audit.output
    assert "payment_executed" in audit.output
    assert "reasoning_revealed" in audit.output


def test_execute_someone_elses_commitment_fails(tmp_path):
    runner = CliRunner()
    owner, other = Account.create(), Account.create()
    env = _base_env(tmp_path)
    for account in (owner, other):
        runner.invoke(main, ["register"], input=_key(account) + "\n", env=env)
    cid = "0x" + "42" * 32
    runner.invoke(
        main,
        ["commit", "--recipient", RECIPIENT, "--amount", "1", "--reasoning", "r", "--commitment-id", cid],
        input=_key(owner) + "\n",
        env=env,
    )

    result = runner.invoke(main, ["execute", cid], input=_key(other) + "\n", env=env)

    assert result.exit_code != 0
    assert "Execute failed" in result.output


def test_commit_and_execute_declined_leaves_no_record(tmp_path):
    runner = CliRunner()
    agent = Account.create()
    env = _base_env(tmp_path)
    runner.invoke(main, ["register"], input=_key(agent) + "\n", env=env)

    result = runner.invoke(
        main,
        ["commit-and-execute", "--recipient", RECIPIENT, "--amount", "5", "--reasoning", "unfunded"],
        input=_key(agent) + "\n",
        env=env,
    )

    assert result.exit_code != 0
    listing = runner.invoke(main, ["list"], env=env)
    assert "total 0" in listing.output


def test_commit_requires_reasoning_or_hash(tmp_path):
    runner = CliRunner()
    agent = Account.create()

    result = runner.invoke(
        main,
        ["commit", "--recipient", RECIPIENT, "--amount", "1"],
        input=_key(agent) + "\n",
        env=_base_env(tmp_path),
    )

    assert result.exit_code != 0
    assert "Provide --reasoning or --hash" in result.output


def test_pay_dry_run(tmp_path):
    runner = CliRunner()
    agent = Account.create()
    env = _base_env(tmp_path)
    runner.invoke(main, ["register"], input=_key(agent) + "\n", env=env)

    result = runner.invoke(
        main,
        ["pay", "--recipient", RECIPIENT, "--amount", "3", "--reason", "Data feed", "--dry-run"],
        input=_key(agent) + "\n",
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert "DRY RUN" in result.output
    assert "Verified:   True" in result.output


def test_hash_command():
    result = CliRunner().invoke(main, ["hash", "Buy widget"])
    assert result.exit_code == 0
    assert result.output.strip() == hash_reasoning("Buy widget")


def test_demo(tmp_path):
    result = CliRunner().invoke(main, ["demo"], env=_base_env(tmp_path))
    assert result.exit_code == 0, result.output
    assert "Rejected: HashMismatchError" in result.output
    assert "Demo complete" in result.output
    assert "Verified: True" in result.output


def test_negative_paging_options_rejected(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)

    for args in (["list", "--offset", "-1"], ["list", "--limit", "-5"], ["agents", "--offset", "-2"]):
        result = runner.invoke(main, args, env=env)
        assert result.exit_code == 2
        assert "Invalid value" in result.output


def test_stats_for_malformed_identity_shows_unregistered(tmp_path):
    result = CliRunner().invoke(main, ["stats", "not-an-address"], env=_base_env(tmp_path))

    assert result.exit_code == 0
    assert "Registered:  False" in result.output


def test_http_gateway_closed_after_each_command(tmp_path, monkeypatch):
    runner = CliRunner()
    agent = Account.create()
    env = _base_env(tmp_path)
    clients = []

    def handler(request):
        return httpx.Response(200, json={"success": True})

    def from_env(cls):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        clients.append(client)
        return cls("http://mover.test", client=client)

    monkeypatch.setattr(HttpTransferGateway, "from_env", classmethod(from_env))

    assert runner.invoke(main, ["register"], input=_key(agent) + "\n", env=env).exit_code == 0
    result = runner.invoke(
        main,
        ["commit-and-execute", "--recipient", RECIPIENT, "--amount", "2", "--reasoning", "remote"],
        input=_key(agent) + "\n",
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert len(clients) == 2
    assert all(client.is_closed for client in clients)


def test_audit_summary(tmp_path):
    runner = CliRunner()
    agent = Account.create()
    env = _base_env(tmp_path)
    runner.invoke(main, ["register"], input=_key(agent) + "\n", env=env)
    runner.invoke(
        main,
        ["pay", "--recipient", RECIPIENT, "--amount", "3", "--reason", "Data feed", "--dry-run"],
        input=_key(agent) + "\n",
        env=env,
    )

    result = runner.invoke(main, ["audit", "--summary", "--agent", agent.address], env=env)

    assert result.exit_code == 0, result.output
    assert "4 event(s)" in result.output
    assert "payment_executed: 1" in result.output
    assert "Total moved: 3.00 USDC" in result.output
