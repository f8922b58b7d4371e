"""Tests for serialized writes under concurrency."""

from concurrent.futures import ThreadPoolExecutor

from eth_account import Account

from commitpay.errors import AlreadyExecutedError, AlreadyRevealedError, CommitmentExistsError
from commitpay.gateway import DryRunGateway, LocalTokenGateway
from commitpay.ledger import CommitmentLedger
from commitpay.reasoning import derive_commitment_id, hash_reasoning


CID = "0x" + "99" * 32


def test_concurrent_reveals_only_one_wins(tmp_path):
    ledger = CommitmentLedger(DryRunGateway(), state_dir=tmp_path)
    agent = Account.create().address.lower()
    ledger.register_agent(agent)
    ledger.commit(agent, CID, hash_reasoning("race"), Account.create().address, 1)

    def attempt(_):
        try:
            ledger.reveal(agent, CID, "race")
            return True
        except AlreadyRevealedError:
            return False

    with ThreadPoolExecutor(max_workers=16) as ex:
        outcomes = list(ex.map(attempt, range(40)))

    assert sum(outcomes) == 1
    assert ledger.get_agent(agent).reveal_count == 1


def test_concurrent_executes_move_funds_once(tmp_path):
    token = LocalTokenGateway(tmp_path / "token_state.json")
    ledger = CommitmentLedger(token, state_dir=tmp_path / "ledger")
    agent = Account.create().address.lower()
    recipient = Account.create().address.lower()
    ledger.register_agent(agent)
    token.mint(agent, 1_000)
    token.approve(agent, 1_000)
    ledger.commit(agent, CID, hash_reasoning("once"), recipient, 100)

    def attempt(_):
        try:
            ledger.execute(agent, CID)
            return True
        except AlreadyExecutedError:
            return False

    with ThreadPoolExecutor(max_workers=8) as ex:
        outcomes = list(ex.map(attempt, range(20)))

    assert sum(outcomes) == 1
    assert token.balance_of(recipient) == 100
    assert ledger.get_agent(agent).total_moved == 100


def test_concurrent_commits_all_indexed(tmp_path):
    ledger = CommitmentLedger(DryRunGateway(), state_dir=tmp_path)
    agent = Account.create().address.lower()
    recipient = Account.create().address.lower()
    ledger.register_agent(agent)
    ids = [derive_commitment_id(agent, i) for i in range(50)]

    def attempt(cid):
        ledger.commit(agent, cid, hash_reasoning(cid), recipient, 1)

    with ThreadPoolExecutor(max_workers=10) as ex:
        list(ex.map(attempt, ids))

    assert ledger.total_count() == 50
    assert sorted(ledger.page_ids(0, 50)) == sorted(ids)
    assert ledger.get_agent(agent).commit_count == 50


def test_concurrent_duplicate_commits_single_winner(tmp_path):
    ledger = CommitmentLedger(DryRunGateway(), state_dir=tmp_path)
    agents = [Account.create().address.lower() for _ in range(6)]
    for agent in agents:
        ledger.register_agent(agent)

    def attempt(agent):
        try:
            ledger.commit(agent, CID, hash_reasoning(agent), agents[0], 1)
            return True
        except CommitmentExistsError:
            return False

    with ThreadPoolExecutor(max_workers=6) as ex:
        outcomes = list(ex.map(attempt, agents))

    assert sum(outcomes) == 1
    assert ledger.total_count() == 1
