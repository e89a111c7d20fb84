"""
AgentWallet - a paying client for the agent chat endpoint.
===========================================================
Talks to /api/agent/chat and settles x402 quotes on its own:

1. Sends the user message (plus the running history)
2. On a `payment_required` reply, pays the quote through payForService
   on the advertised payment contract and waits for the receipt
3. Resubmits the SAME tool_call with the new paymentTx

Usage:
    from x402_agent.wallet_client import AgentWallet

    wallet = AgentWallet.from_env()
    reply = wallet.chat("validate cedula 123")
    print(reply["content"])
"""

import os
import sys
import time

import httpx
from web3 import Web3

from .config import DEFAULT_RPC_URL, load_environment
from .errors import LedgerError
from .ledger import PaymentContract, TransactionSender, connect, load_account

# --- CONFIGURATION ---
GATEWAY_URL = os.getenv("GATEWAY_URL", "http://localhost:3060")
MAX_PAYMENT_AVAX = os.getenv("WALLET_MAX_PAYMENT_AVAX", "0.05")  # hard cap per call


class PaymentRefused(Exception):
    """The quote is above the wallet's per-call cap or has no usable payee."""


class ContractPayer:
    """Pays a quote with a local key via payForService and waits for the receipt."""

    def __init__(self, w3, account, chain_id, confirmation_timeout=120):
        self.w3 = w3
        self.sender = TransactionSender(w3, account, chain_id, confirmation_timeout)

    @property
    def address(self):
        return self.sender.address

    def pay(self, receiver, service_id, request_id, amount_wei):
        contract = PaymentContract(self.w3, receiver)
        sent = contract.pay_for_service(self.sender, service_id, request_id, amount_wei)
        return sent.tx_hash


class AgentWallet:
    def __init__(self, payer, gateway_url=GATEWAY_URL, max_payment_wei=None, http_client=None, timeout=120.0):
        self.payer = payer
        self.gateway_url = gateway_url.rstrip("/")
        self.max_payment_wei = max_payment_wei
        self.history = []
        self._http = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_env(cls):
        load_environment()
        account = load_account(os.getenv("WALLET_PRIVATE_KEY"))
        if account is None:
            raise LedgerError("WALLET_PRIVATE_KEY is missing or invalid")
        w3 = connect(os.getenv("X402_RPC_URL", DEFAULT_RPC_URL))
        payer = ContractPayer(w3, account, int(os.getenv("X402_CHAIN_ID", "43113")))
        print(f"🔌 [WALLET] Using Gateway: {GATEWAY_URL} as {payer.address}")
        return cls(payer, max_payment_wei=Web3.to_wei(MAX_PAYMENT_AVAX, "ether"))

    def _post(self, body):
        resp = self._http.post(f"{self.gateway_url}/api/agent/chat", json=body)
        resp.raise_for_status()
        return resp.json()

    def pay_quote(self, quote):
        """Settle a payment_required quote; returns the transaction hash."""
        receiver = quote.get("receiver_address")
        if not receiver or not Web3.is_address(receiver):
            raise PaymentRefused("Quote has no valid receiver_address")

        amount_wei = int(quote.get("amountWei") or Web3.to_wei(quote["amount"], "ether"))
        if self.max_payment_wei is not None and amount_wei > self.max_payment_wei:
            raise PaymentRefused(
                f"Quote {Web3.from_wei(amount_wei, 'ether')} exceeds cap {Web3.from_wei(self.max_payment_wei, 'ether')}"
            )

        service_id = quote.get("serviceId") or quote.get("toolName") or "unknown"
        request_id = quote.get("requestId") or f"req_{int(time.time() * 1000)}"
        print(f"💸 [WALLET] Paying {Web3.from_wei(amount_wei, 'ether')} for {service_id} → {receiver}")
        tx_hash = self.payer.pay(receiver, service_id, request_id, amount_wei)
        print(f"✅ [WALLET] Payment confirmed: {tx_hash}")
        return tx_hash

    def chat(self, message, auto_pay=True):
        """
        Send one user message. When the agent asks for payment and auto_pay
        is on, pay and resubmit the quoted tool_call once.
        """
        body = {"message": message, "history": list(self.history)}
        reply = self._post(body)

        if reply.get("response_type") == "payment_required" and auto_pay and reply.get("tool_call"):
            quote = reply.get("payment_required") or {}
            tx_hash = self.pay_quote(quote)
            retry = {
                "message": "Payment complete. Please proceed.",
                "history": list(self.history),
                "tool_call": reply["tool_call"],
                "paymentTx": tx_hash,
                "paymentWallet": self.payer.address,
                "paymentAmount": quote.get("amount"),
            }
            reply = self._post(retry)

        self.history.append({"role": "user", "content": message})
        self.history.append({"role": "assistant", "content": reply.get("content", "")})
        return reply

    def close(self):
        self._http.close()


# === CLI Interface ===
if __name__ == "__main__":
    wallet = AgentWallet.from_env()

    print("🧠 x402 Agent Interface")
    print("=" * 50)

    if len(sys.argv) > 1:
        result = wallet.chat(" ".join(sys.argv[1:]))
        print(f"\n🤖 {result.get('content')}\n")
    else:
        print("\nType 'exit' to quit.\n")
        while True:
            try:
                user_input = input("🗣️ You: ").strip()
                if user_input.lower() in ["exit", "quit", "q"]:
                    break
                if not user_input:
                    continue
                result = wallet.chat(user_input)
                print(f"\n🤖 AI: {result.get('content')}\n")
                if result.get("proof"):
                    print(f"   🧾 Proof: {result['proof']}")
            except PaymentRefused as e:
                print(f"🛑 [WALLET] {e}")
            except (KeyboardInterrupt, EOFError):
                print("\n👋 Goodbye!")
                break
