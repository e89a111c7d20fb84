"""
ERC-8004 registries: agent identity, reputation and validation records.

The identity and reputation registries are read-only from here. The
validation registry is written by the proof recorder; it keeps at most one
record per task id and rejects a second submission for the same task.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.logs import DISCARD

from .errors import DuplicateTaskError, LedgerError

logger = logging.getLogger("ERC8004")

ZERO_HASH = "0x" + "00" * 32

IDENTITY_REGISTRY_ABI = [
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "getAgentIdentity",
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "name", "type": "string"},
                {"name": "description", "type": "string"},
                {"name": "agentCardURI", "type": "string"},
                {"name": "capabilities", "type": "string[]"},
                {"name": "agentAddress", "type": "address"},
                {"name": "createdAt", "type": "uint256"},
                {"name": "active", "type": "bool"}
            ]
        }],
        "stateMutability": "view",
        "type": "function"
    }
]

REPUTATION_REGISTRY_ABI = [
    {
        "inputs": [{"name": "agentTokenId", "type": "uint256"}],
        "name": "getReputationSummary",
        "outputs": [
            {"name": "totalFeedbacks", "type": "uint256"},
            {"name": "verifiedFeedbacks", "type": "uint256"},
            {"name": "averageRating", "type": "uint256"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "agentTokenId", "type": "uint256"}],
        "name": "getAgentFeedbacks",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "feedbackId", "type": "uint256"}],
        "name": "getFeedback",
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "client", "type": "address"},
                {"name": "agentTokenId", "type": "uint256"},
                {"name": "rating", "type": "uint8"},
                {"name": "tags", "type": "string[]"},
                {"name": "comment", "type": "string"},
                {"name": "paymentProof", "type": "bytes32"},
                {"name": "timestamp", "type": "uint256"},
                {"name": "verified", "type": "bool"}
            ]
        }],
        "stateMutability": "view",
        "type": "function"
    }
]

VALIDATION_REGISTRY_ABI = [
    {
        "inputs": [
            {"name": "agentTokenId", "type": "uint256"},
            {"name": "taskId", "type": "string"},
            {"name": "outputHash", "type": "bytes32"},
            {"name": "proofHash", "type": "bytes32"},
            {"name": "validator", "type": "address"},
            {"name": "validationType", "type": "uint8"},
            {"name": "isValid", "type": "bool"},
            {"name": "metadataURI", "type": "string"}
        ],
        "name": "recordValidation",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "agentTokenId", "type": "uint256"}],
        "name": "getValidationStats",
        "outputs": [
            {"name": "totalValidations", "type": "uint256"},
            {"name": "validCount", "type": "uint256"},
            {"name": "invalidCount", "type": "uint256"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "taskId", "type": "string"}],
        "name": "getValidationByTask",
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "validationId", "type": "uint256"},
                {"name": "agentTokenId", "type": "uint256"},
                {"name": "taskId", "type": "string"},
                {"name": "outputHash", "type": "bytes32"},
                {"name": "proofHash", "type": "bytes32"},
                {"name": "validator", "type": "address"},
                {"name": "validationType", "type": "uint8"},
                {"name": "isValid", "type": "bool"},
                {"name": "metadataURI", "type": "string"},
                {"name": "timestamp", "type": "uint256"}
            ]
        }],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "outputHash", "type": "bytes32"}],
        "name": "getValidationsByOutput",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "validationId", "type": "uint256"},
            {"indexed": True, "name": "agentTokenId", "type": "uint256"},
            {"indexed": False, "name": "taskId", "type": "string"},
            {"indexed": False, "name": "outputHash", "type": "bytes32"}
        ],
        "name": "ValidationRecorded",
        "type": "event"
    }
]

DUPLICATE_MARKERS = ("already", "exists", "duplicate")


def keccak_text(text):
    return Web3.to_hex(Web3.keccak(text=text))


def _contract(w3, address, abi):
    if not address or not Web3.is_address(address):
        return None
    return w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)


class IdentityRegistry:
    def __init__(self, w3, address):
        self.contract = _contract(w3, address, IDENTITY_REGISTRY_ABI)

    def get_agent_identity(self, token_id):
        if self.contract is None:
            return None
        try:
            name, description, uri, capabilities, owner, created_at, active = (
                self.contract.functions.getAgentIdentity(int(token_id)).call()
            )
        except Exception as e:
            logger.error(f"❌ [ERC8004] Error getting agent identity: {e}")
            return None
        return {
            "name": name,
            "description": description,
            "agentCardURI": uri,
            "capabilities": list(capabilities),
            "agentAddress": owner,
            "createdAt": int(created_at),
            "active": bool(active),
        }


class ReputationRegistry:
    def __init__(self, w3, address):
        self.contract = _contract(w3, address, REPUTATION_REGISTRY_ABI)

    def get_reputation(self, token_id):
        if self.contract is None:
            return None
        try:
            total, verified, average = self.contract.functions.getReputationSummary(int(token_id)).call()
        except Exception as e:
            logger.error(f"❌ [ERC8004] Error getting reputation: {e}")
            return None
        return {
            "totalFeedbacks": int(total),
            "verifiedFeedbacks": int(verified),
            "averageRating": int(average) / 100,
        }

    def get_feedbacks(self, token_id):
        if self.contract is None:
            return []
        try:
            ids = self.contract.functions.getAgentFeedbacks(int(token_id)).call()
            feedbacks = []
            for feedback_id in ids:
                client, _, rating, tags, comment, proof, ts, verified = (
                    self.contract.functions.getFeedback(feedback_id).call()
                )
                feedbacks.append({
                    "id": str(feedback_id),
                    "client": client,
                    "rating": int(rating),
                    "tags": list(tags),
                    "comment": comment,
                    "verified": bool(verified),
                    "timestamp": datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat(),
                    "paymentProof": Web3.to_hex(proof),
                })
            return feedbacks
        except Exception as e:
            logger.error(f"❌ [ERC8004] Error getting agent feedbacks: {e}")
            return []


@dataclass(frozen=True)
class ValidationReceipt:
    tx_hash: str
    validation_id: Optional[int] = None


class ValidationRegistry:
    def __init__(self, w3, address, sender=None):
        self.contract = _contract(w3, address, VALIDATION_REGISTRY_ABI)
        self.sender = sender

    @property
    def writable(self):
        return self.contract is not None and self.sender is not None

    def record_validation(
        self,
        agent_token_id,
        task_id,
        output_hash,
        proof_hash,
        validator,
        validation_type=0,
        is_valid=True,
        metadata_uri="",
    ):
        if not self.writable:
            raise LedgerError("Validation registry not initialized")

        fn = self.contract.functions.recordValidation(
            int(agent_token_id),
            task_id,
            output_hash,
            proof_hash,
            Web3.to_checksum_address(validator),
            int(validation_type),
            bool(is_valid),
            metadata_uri,
        )
        try:
            sent = self.sender.send(fn)
        except ContractLogicError as e:
            message = str(e)
            if any(marker in message.lower() for marker in DUPLICATE_MARKERS):
                raise DuplicateTaskError(task_id, message)
            raise LedgerError(f"recordValidation reverted: {message}")

        validation_id = None
        events = self.contract.events.ValidationRecorded().process_receipt(sent.receipt, errors=DISCARD)
        if events:
            validation_id = int(events[0]["args"]["validationId"])
        return ValidationReceipt(tx_hash=sent.tx_hash, validation_id=validation_id)

    def get_validation_by_task(self, task_id):
        if self.contract is None:
            return None
        try:
            record = self.contract.functions.getValidationByTask(task_id).call()
        except ContractLogicError:
            return None
        validation_id, agent_id, stored_task, output_hash, proof_hash, validator, vtype, is_valid, uri, ts = record
        if not stored_task:
            return None
        return {
            "validationId": int(validation_id),
            "agentTokenId": int(agent_id),
            "taskId": stored_task,
            "outputHash": Web3.to_hex(output_hash),
            "proofHash": Web3.to_hex(proof_hash),
            "validator": validator,
            "validationType": int(vtype),
            "isValid": bool(is_valid),
            "metadataURI": uri,
            "timestamp": int(ts),
        }

    def validations_for_output(self, output_hash):
        if self.contract is None:
            return []
        return [int(v) for v in self.contract.functions.getValidationsByOutput(output_hash).call()]

    def get_validation_stats(self, token_id):
        if self.contract is None:
            return None
        try:
            total, valid, invalid = self.contract.functions.getValidationStats(int(token_id)).call()
        except Exception:
            return None
        return {"totalValidations": int(total), "validCount": int(valid), "invalidCount": int(invalid)}
