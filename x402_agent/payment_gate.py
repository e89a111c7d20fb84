"""
Payment Gate - decides whether a paid tool call may proceed.

    allow   a presented transaction paid enough, to the right address, and
            had not been used before (it is consumed now)
    deny    no payment, or the payment failed verification; carries a quote
    bypass  the caller is a user paying with account credits

Pricing fails open onto a fallback rate. Verification fails closed: any
ledger error or malformed transaction is a denial.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

from .auth import UserIdentity
from .pricing import PaymentQuote

logger = logging.getLogger("PaymentGate")

ALLOW = "allow"
DENY = "deny"
BYPASS = "bypass"


@dataclass(frozen=True)
class GateDecision:
    outcome: str
    quote: Optional[PaymentQuote] = None
    payment: Optional[object] = None
    reason: Optional[str] = None

    @property
    def allowed(self):
        return self.outcome in (ALLOW, BYPASS)


def _same_address(a, b):
    if not a or not b:
        return False
    return a.lower() == b.lower()


def _short(tx_hash):
    return f"{tx_hash[:12]}..." if len(tx_hash) > 12 else tx_hash


class PaymentGate:
    def __init__(
        self,
        oracle,
        chain_reader,
        replay_guard,
        payment_target,
        chain_id,
        network_name="avalanche-fuji-testnet",
        default_price_usd=0.05,
    ):
        self.oracle = oracle
        self.chain_reader = chain_reader
        self.replay_guard = replay_guard
        self.payment_target = payment_target
        self.chain_id = chain_id
        self.network_name = network_name
        self.default_price_usd = default_price_usd

    def price_for(self, tool):
        if tool is not None and tool.estimated_cost_usd is not None:
            return tool.estimated_cost_usd
        return self.default_price_usd

    def quote_for(self, tool):
        return self.oracle.quote(self.price_for(tool))

    def check_payment(self, tool, tx_ref, identity):
        if isinstance(identity, UserIdentity):
            logger.info(f"🎫 [x402] Credits mode, payment bypassed for {tool.id if tool else 'request'}")
            return GateDecision(BYPASS)

        quote = self.quote_for(tool)

        if not tx_ref:
            logger.info(
                f"💳 [x402] 402 Payment Required for {tool.id if tool else 'request'}: "
                f"${quote.price_usd} (~{quote.amount_str} {quote.currency})"
            )
            return GateDecision(DENY, quote=quote)

        return self._verify(tx_ref.strip(), quote)

    def _verify(self, tx_hash, quote):
        if not self.payment_target:
            logger.error("❌ [x402] No payment target configured, refusing payment")
            return GateDecision(DENY, quote=quote, reason="Server payment address not configured.")

        if self.replay_guard.contains(tx_hash):
            logger.warning(f"🛑 [x402] Replay attempt with TX {_short(tx_hash)}")
            return GateDecision(DENY, quote=quote, reason="Payment transaction already used.")

        try:
            tx = self.chain_reader.get_payment_transaction(tx_hash)
        except Exception as e:
            logger.error(f"❌ [x402] Could not read TX {_short(tx_hash)}: {e}")
            return GateDecision(DENY, quote=quote, reason="Payment could not be verified.")

        if tx is None:
            logger.warning(f"⚠️  [x402] TX {_short(tx_hash)} not found on network")
            return GateDecision(DENY, quote=quote, reason="Transaction not found on network.")

        if not tx.confirmed:
            logger.warning(f"⚠️  [x402] TX {_short(tx_hash)} not confirmed yet")
            return GateDecision(DENY, quote=quote, reason="Transaction not confirmed.")

        if not _same_address(tx.to, self.payment_target):
            logger.warning(f"⚠️  [x402] Recipient mismatch: {tx.to} vs {self.payment_target}")
            return GateDecision(DENY, quote=quote, reason="Transaction recipient mismatch.")

        try:
            paid = int(tx.value_wei)
        except (TypeError, ValueError):
            return GateDecision(DENY, quote=quote, reason="Malformed transaction value.")

        if paid < quote.required_wei:
            logger.warning(
                f"⚠️  [x402] Insufficient amount. Received: {Web3.from_wei(paid, 'ether')}, "
                f"Required: {quote.amount_str}"
            )
            return GateDecision(
                DENY,
                quote=quote,
                reason=(
                    f"Insufficient payment (price may have updated): received "
                    f"{Web3.from_wei(paid, 'ether')} {quote.currency}, required {quote.amount_str} {quote.currency}."
                ),
            )

        # Consume before anything retryable happens downstream.
        if not self.replay_guard.compare_and_insert(tx_hash, context=tx.sender):
            logger.warning(f"🛑 [x402] TX {_short(tx_hash)} consumed by a concurrent request")
            return GateDecision(DENY, quote=quote, reason="Payment transaction already used.")

        logger.info(f"✅ [x402] Payment validated: {Web3.from_wei(paid, 'ether')} {quote.currency} from {tx.sender}")
        return GateDecision(ALLOW, quote=quote, payment=tx)

    def payment_details(self, decision, tool=None, endpoint=None):
        """The body a client needs to pay and retry (402 payload)."""
        details = {
            "error": "Payment Required",
            "receiver_address": self.payment_target,
            "chain_id": self.chain_id,
            "network": self.network_name,
            "requestId": f"req_{int(time.time() * 1000)}",
            "details": (
                "Send the amount to receiver_address (payForService on the payment contract) "
                "and retry with the transaction hash in paymentTx / x-payment-tx."
            ),
        }
        if decision.quote is not None:
            details.update(decision.quote.to_dict())
        if tool is not None:
            details["serviceId"] = tool.id
            details["toolName"] = tool.id
            details["endpoint"] = tool.url
        elif endpoint:
            details["endpoint"] = endpoint
        if decision.reason:
            details["reason"] = decision.reason
        return details
