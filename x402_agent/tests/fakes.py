"""In-memory stand-ins for the ledger, the validation registry and the model."""

from collections import defaultdict

import httpx
from web3 import Web3

from x402_agent.erc8004 import ValidationReceipt
from x402_agent.errors import DuplicateTaskError
from x402_agent.ledger import PaymentTransaction

PAYMENT_TARGET = Web3.to_checksum_address("0x" + "ab" * 20)
PAYER = Web3.to_checksum_address("0x" + "cd" * 20)
SERVICE_TOKEN = "svc-token"


def tx_hash(n):
    return "0x" + f"{n:064x}"


class FakeChainReader:
    def __init__(self):
        self.transactions = {}
        self.fail = None
        self.calls = 0

    def add(self, hash_, value_wei, to=PAYMENT_TARGET, sender=PAYER, confirmed=True):
        self.transactions[hash_] = PaymentTransaction(hash_, sender, to, value_wei, confirmed)

    def get_payment_transaction(self, hash_):
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        return self.transactions.get(hash_)


class FakeValidationRegistry:
    """Keeps one record per task id, like the on-chain registry."""

    def __init__(self, writable=True):
        self.writable = writable
        self.records = {}
        self.by_output = defaultdict(list)
        self.error = None
        self._next_id = 1

    def validations_for_output(self, output_hash):
        return list(self.by_output.get(output_hash, []))

    def record_validation(self, agent_token_id, task_id, output_hash, proof_hash, validator,
                          validation_type=0, is_valid=True, metadata_uri=""):
        if self.error is not None:
            raise self.error
        if task_id in self.records:
            raise DuplicateTaskError(task_id)
        validation_id = self._next_id
        self._next_id += 1
        self.records[task_id] = {
            "validationId": validation_id,
            "agentTokenId": agent_token_id,
            "outputHash": output_hash,
            "proofHash": proof_hash,
            "validator": validator,
            "validationType": validation_type,
            "isValid": is_valid,
        }
        self.by_output[output_hash].append(validation_id)
        return ValidationReceipt(tx_hash=tx_hash(10_000 + validation_id), validation_id=validation_id)


class FakeModel:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []
        self.images = []

    def generate(self, prompt, images=None):
        self.prompts.append(prompt)
        self.images.append(images)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class Upstream:
    """httpx.MockTransport handler that records requests and replays canned responses."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = {"data": {"valid": True}} if body is None else body
        self.requests = []
        self.fail = None

    def __call__(self, request):
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status, json=self.body)
        return httpx.Response(self.status, text=self.body)

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self))
