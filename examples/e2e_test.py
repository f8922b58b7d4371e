"""
End-to-end test: verified payment through the HTTP gateway.
"""

import sys
import tempfile
import threading
import time
from pathlib import Path

import httpx
import uvicorn
from eth_account import Account

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from gateway_server import app
from commitpay import (
    AuditTrail,
    CommitmentLedger,
    HttpTransferGateway,
    PaymentReasoning,
    VerifiedPaymentExecutor,
)
from commitpay.money import format_units, usdc_to_units

BASE_URL = "http://127.0.0.1:8403"


def run_server():
    uvicorn.run(app, host="127.0.0.1", port=8403, log_level="error")


def main():
    print("🚀 CommitPay E2E Test — Verified Payment over HTTP")
    print("=" * 55)
    print()

    print("1️⃣  Starting funds-mover server...")
    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()
    time.sleep(2)
    print(f"   ✅ Server running on {BASE_URL}")
    print()

    agent = Account.create().address.lower()
    recipient = Account.create().address.lower()
    http = httpx.Client(timeout=30)
    http.post(f"{BASE_URL}/fund", json={"account": agent, "amount": str(usdc_to_units(10))})
    print(f"2️⃣  Funded agent {agent} with 10 USDC")
    print()

    state = Path(tempfile.mkdtemp(prefix="commitpay-e2e-"))
    gateway = HttpTransferGateway(BASE_URL)
    ledger = CommitmentLedger(gateway, state_dir=state, audit=AuditTrail(state / "audit.jsonl"))
    ledger.register_agent(agent)

    print("3️⃣  Commit → Execute → Reveal → Verify...")
    reasoning = PaymentReasoning(
        reason="Pay for 1,000 inference calls used by the nightly batch job.",
        recipient=recipient,
        amount=usdc_to_units("2.5"),
        category="service",
        confidence=88,
    )
    result = VerifiedPaymentExecutor(ledger).execute(agent, reasoning)
    print()

    if result.success:
        print("   🎉 VERIFIED PAYMENT SUCCESSFUL!")
        print(f"   Commitment: {result.commitment_id}")
        print(f"   Hash:       {result.reasoning_hash}")
        received = int(http.get(f"{BASE_URL}/balances/{recipient}").json()["balance"])
        print(f"   Recipient balance: {format_units(received)}")
    else:
        print(f"   ❌ Payment failed: {result.reason}")

    print()
    print("=" * 55)
    gateway.close()
    http.close()


if __name__ == "__main__":
    main()
