"""
Minimal funds-mover service for HttpTransferGateway.

Backs POST /transfers with a LocalTokenGateway so the ledger can be
exercised over HTTP end to end.
"""

from pathlib import Path
import sys
import tempfile

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from commitpay.errors import InsufficientFundsError
from commitpay.gateway import LocalTokenGateway

app = FastAPI()

token = LocalTokenGateway(Path(tempfile.mkdtemp(prefix="commitpay-gw-")) / "token_state.json")


class TransferRequest(BaseModel):
    payer: str
    payee: str
    amount: str


class FundRequest(BaseModel):
    account: str
    amount: str


@app.get("/")
async def root():
    return {"status": "ok"}


@app.post("/fund")
async def fund(req: FundRequest):
    balance = token.mint(req.account, int(req.amount))
    token.approve(req.account, int(req.amount))
    return {"balance": str(balance)}


@app.get("/balances/{account}")
async def balance(account: str):
    return {"balance": str(token.balance_of(account))}


@app.post("/transfers")
async def transfers(req: TransferRequest):
    try:
        token.transfer(req.payer, req.payee, int(req.amount))
    except InsufficientFundsError as exc:
        return {"success": False, "error": str(exc)}
    return {"success": True}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8403)
