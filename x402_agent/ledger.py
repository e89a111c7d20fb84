"""
Ledger access - web3 connection, payment transaction reads, the agent's
signing account and the x402 payment contract.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from .errors import ConfirmationTimeoutError, LedgerError

logger = logging.getLogger("Ledger")

PAYMENT_CONTRACT_ABI = [
    {
        "inputs": [
            {"name": "serviceId", "type": "string"},
            {"name": "requestId", "type": "string"}
        ],
        "name": "payForService",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "getBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "payer", "type": "address"},
            {"indexed": False, "name": "serviceId", "type": "string"},
            {"indexed": False, "name": "requestId", "type": "string"},
            {"indexed": False, "name": "amount", "type": "uint256"}
        ],
        "name": "PaymentReceived",
        "type": "event"
    }
]


def connect(rpc_url, timeout=15):
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def load_account(secret):
    """Signing account from a hex private key or a BIP-39 mnemonic phrase."""
    if not secret:
        return None
    key = secret.strip()
    try:
        if " " in key:
            Account.enable_unaudited_hdwallet_features()
            return Account.from_mnemonic(key)
        return Account.from_key(key)
    except Exception as e:
        logger.error(f"❌ [Ledger] Could not derive agent account: {e}")
        return None


def resolve_payment_target(contract_address, account):
    """The payment contract wins over the agent's raw wallet address."""
    if contract_address and Web3.is_address(contract_address):
        return Web3.to_checksum_address(contract_address)
    if account is not None:
        return account.address
    return None


@dataclass(frozen=True)
class PaymentTransaction:
    tx_hash: str
    sender: Optional[str]
    to: Optional[str]
    value_wei: int
    confirmed: bool


class ChainReader:
    """Read side used by the payment gate."""

    def __init__(self, w3):
        self.w3 = w3

    def get_payment_transaction(self, tx_hash):
        """Returns None when the transaction does not exist on the network."""
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        if tx is None:
            return None

        confirmed = False
        if tx.get("blockNumber") is not None:
            try:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
                confirmed = receipt is not None and receipt.get("status") == 1
            except TransactionNotFound:
                confirmed = False

        return PaymentTransaction(
            tx_hash=tx_hash,
            sender=tx.get("from"),
            to=tx.get("to"),
            value_wei=int(tx.get("value", 0)),
            confirmed=confirmed,
        )


@dataclass(frozen=True)
class SentTransaction:
    tx_hash: str
    receipt: dict


class TransactionSender:
    """
    Signs and submits contract calls with one local account, then waits for
    the receipt. A lock serializes nonce allocation.
    """

    def __init__(self, w3, account, chain_id, confirmation_timeout=120):
        self.w3 = w3
        self.account = account
        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self._nonce_lock = threading.Lock()

    @property
    def address(self):
        return self.account.address

    def send(self, contract_fn, value=0):
        """
        ContractLogicError (a revert seen during gas estimation) propagates
        so callers can map it to a domain error.
        """
        with self._nonce_lock:
            tx = contract_fn.build_transaction({
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                "chainId": self.chain_id,
                "value": value,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)

        hex_hash = Web3.to_hex(tx_hash)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)
        except TimeExhausted:
            raise ConfirmationTimeoutError(
                f"Transaction {hex_hash} not confirmed after {self.confirmation_timeout}s"
            )
        if receipt.get("status") != 1:
            raise LedgerError(f"Transaction {hex_hash} reverted")
        return SentTransaction(tx_hash=hex_hash, receipt=receipt)


class PaymentContract:
    def __init__(self, w3, address):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.contract = w3.eth.contract(address=self.address, abi=PAYMENT_CONTRACT_ABI)

    def pay_for_service(self, sender, service_id, request_id, amount_wei):
        fn = self.contract.functions.payForService(service_id, request_id)
        try:
            return sender.send(fn, value=amount_wei)
        except ContractLogicError as e:
            raise LedgerError(f"payForService reverted: {e}")

    def payments_by(self, payer, from_block=0):
        payer = Web3.to_checksum_address(payer)
        logs = self.contract.events.PaymentReceived.get_logs(
            from_block=from_block,
            argument_filters={"payer": payer},
        )
        return [
            {
                "payer": log["args"]["payer"],
                "serviceId": log["args"]["serviceId"],
                "requestId": log["args"]["requestId"],
                "amountWei": str(log["args"]["amount"]),
                "amount": str(Web3.from_wei(log["args"]["amount"], "ether")),
                "txHash": Web3.to_hex(log["transactionHash"]),
                "blockNumber": log["blockNumber"],
            }
            for log in logs
        ]
