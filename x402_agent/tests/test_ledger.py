from unittest.mock import MagicMock

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from x402_agent.erc8004 import ReputationRegistry, ValidationRegistry, keccak_text
from x402_agent.errors import ConfirmationTimeoutError, DuplicateTaskError, LedgerError
from x402_agent.ledger import ChainReader, TransactionSender, load_account, resolve_payment_target

from fakes import PAYER, PAYMENT_TARGET

TEST_KEY = "0x" + "11" * 32
TX = "0x" + "aa" * 32


def test_chain_reader_reports_confirmed_payment():
    w3 = MagicMock()
    w3.eth.get_transaction.return_value = {"from": PAYER, "to": PAYMENT_TARGET, "value": 5, "blockNumber": 10}
    w3.eth.get_transaction_receipt.return_value = {"status": 1}

    tx = ChainReader(w3).get_payment_transaction(TX)

    assert tx.sender == PAYER
    assert tx.value_wei == 5
    assert tx.confirmed is True


def test_chain_reader_pending_and_missing():
    w3 = MagicMock()
    w3.eth.get_transaction.return_value = {"from": PAYER, "to": PAYMENT_TARGET, "value": 5, "blockNumber": None}
    assert ChainReader(w3).get_payment_transaction(TX).confirmed is False

    w3.eth.get_transaction.side_effect = TransactionNotFound("nope")
    assert ChainReader(w3).get_payment_transaction(TX) is None


def test_load_account_accepts_key_and_rejects_garbage():
    account = load_account(TEST_KEY)
    assert account.address.startswith("0x")
    assert load_account("not-a-key") is None
    assert load_account("not a valid phrase") is None
    assert load_account(None) is None


def test_payment_contract_wins_over_wallet():
    account = load_account(TEST_KEY)
    assert resolve_payment_target(PAYMENT_TARGET.lower(), account) == PAYMENT_TARGET
    assert resolve_payment_target(None, account) == account.address
    assert resolve_payment_target("garbage", None) is None


def sender_with_receipt(receipt=None, wait_error=None):
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 3
    w3.eth.send_raw_transaction.return_value = bytes.fromhex("aa" * 32)
    if wait_error is not None:
        w3.eth.wait_for_transaction_receipt.side_effect = wait_error
    else:
        w3.eth.wait_for_transaction_receipt.return_value = receipt
    account = MagicMock()
    account.address = PAYER
    return TransactionSender(w3, account, 43113, confirmation_timeout=1), w3, account


def test_sender_signs_and_waits_for_receipt():
    sender, w3, account = sender_with_receipt({"status": 1})
    fn = MagicMock()

    sent = sender.send(fn, value=42)

    assert sent.tx_hash == TX
    built = fn.build_transaction.call_args[0][0]
    assert built["nonce"] == 3
    assert built["chainId"] == 43113
    assert built["value"] == 42
    account.sign_transaction.assert_called_once()


def test_sender_maps_timeout_and_revert():
    sender, _, _ = sender_with_receipt(wait_error=TimeExhausted("slow"))
    with pytest.raises(ConfirmationTimeoutError):
        sender.send(MagicMock())

    sender, _, _ = sender_with_receipt({"status": 0})
    with pytest.raises(LedgerError):
        sender.send(MagicMock())


def test_duplicate_task_revert_is_distinct_from_transport_errors():
    registry = ValidationRegistry(MagicMock(), PAYMENT_TARGET, sender=MagicMock())
    args = (7, "task-1", keccak_text("out"), keccak_text("proof"), "0x" + "00" * 20)

    registry.sender.send.side_effect = ContractLogicError("execution reverted: Task already validated")
    with pytest.raises(DuplicateTaskError):
        registry.record_validation(*args)

    registry.sender.send.side_effect = ContractLogicError("execution reverted: Not authorized")
    with pytest.raises(LedgerError) as excinfo:
        registry.record_validation(*args)
    assert not isinstance(excinfo.value, DuplicateTaskError)


def test_registry_without_signer_is_read_only():
    registry = ValidationRegistry(MagicMock(), PAYMENT_TARGET)
    assert registry.writable is False
    with pytest.raises(LedgerError):
        registry.record_validation(7, "t", keccak_text("a"), keccak_text("b"), "0x" + "00" * 20)
    assert ValidationRegistry(MagicMock(), "not-an-address").contract is None


def test_reputation_average_is_scaled_down():
    w3 = MagicMock()
    registry = ReputationRegistry(w3, PAYMENT_TARGET)
    registry.contract.functions.getReputationSummary.return_value.call.return_value = (3, 2, 450)
    assert registry.get_reputation(7) == {"totalFeedbacks": 3, "verifiedFeedbacks": 2, "averageRating": 4.5}
