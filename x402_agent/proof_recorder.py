"""
Proof Recorder - notarizes successful tool executions on the validation
registry. Best effort: callers get a ProofOutcome, never an exception.
"""

import json
import time
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .config import ZERO_ADDRESS
from .erc8004 import keccak_text
from .errors import ConfirmationTimeoutError, DuplicateTaskError, LedgerError

logger = logging.getLogger("ProofRecorder")

RECORDED = "recorded"
SKIPPED = "skipped"
ERROR = "error"


@dataclass(frozen=True)
class ProofOutcome:
    status: str
    proof_id: Optional[str] = None
    task_id: Optional[str] = None
    output_hash: Optional[str] = None
    validation_id: Optional[int] = None
    reason: Optional[str] = None
    duplicate_task: bool = False

    def to_dict(self):
        return {
            "status": self.status,
            "proofId": self.proof_id,
            "taskId": self.task_id,
            "outputHash": self.output_hash,
            "validationId": self.validation_id,
            "reason": self.reason,
        }


def canonical_json(document):
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def new_task_id(tool_name, now=None):
    """<tool>_<unix ms>_<64 random bits>"""
    millis = int((now if now is not None else time.time()) * 1000)
    return f"{tool_name}_{millis}_{secrets.token_hex(8)}"


class ProofRecorder:
    def __init__(self, registry, agent_token_id, validator=ZERO_ADDRESS, clock=time.time):
        self.registry = registry
        self.agent_token_id = agent_token_id
        self.validator = validator
        self._clock = clock

    @property
    def enabled(self):
        return self.agent_token_id is not None and self.registry is not None

    def build_output(self, tool_name, args, result, payment_ref):
        return {
            "tool": tool_name,
            "args": args,
            "result": result,
            "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "paymentRef": payment_ref,
        }

    def record(self, tool_name, args, result, payment_ref=None):
        if not self.enabled:
            logger.info("ℹ️  [Proof] ERC8004 not configured, skipping")
            return ProofOutcome(SKIPPED, reason="on-chain identity not configured")
        if not getattr(self.registry, "writable", False):
            logger.warning("⚠️  [Proof] No agent signer available, skipping")
            return ProofOutcome(SKIPPED, reason="no signer")

        output = canonical_json(self.build_output(tool_name, args, result, payment_ref))
        output_hash = keccak_text(output)
        proof_hash = keccak_text(payment_ref) if payment_ref else output_hash
        task_id = new_task_id(tool_name, self._clock())

        try:
            if self.registry.validations_for_output(output_hash):
                logger.info(f"ℹ️  [Proof] Output {output_hash[:12]}... already notarized")
                return ProofOutcome(SKIPPED, task_id=task_id, output_hash=output_hash, reason="output already notarized")

            receipt = self.registry.record_validation(
                self.agent_token_id,
                task_id,
                output_hash,
                proof_hash,
                self.validator,
                0,
                True,
                "",
            )
        except DuplicateTaskError as e:
            logger.error(f"❌ [Proof] Task {task_id} already has a validation record: {e}")
            return ProofOutcome(ERROR, task_id=task_id, output_hash=output_hash, reason=str(e), duplicate_task=True)
        except ConfirmationTimeoutError as e:
            logger.error(f"⏱️  [Proof] Confirmation timeout: {e}")
            return ProofOutcome(ERROR, task_id=task_id, output_hash=output_hash, reason=str(e))
        except LedgerError as e:
            logger.error(f"❌ [Proof] Ledger error: {e}")
            return ProofOutcome(ERROR, task_id=task_id, output_hash=output_hash, reason=str(e))
        except Exception as e:
            logger.error(f"❌ [Proof] Validation proof error: {e}")
            return ProofOutcome(ERROR, task_id=task_id, output_hash=output_hash, reason=str(e))

        logger.info(f"🧾 [Proof] Validation proof {receipt.tx_hash} for task {task_id}")
        return ProofOutcome(
            RECORDED,
            proof_id=receipt.tx_hash,
            task_id=task_id,
            output_hash=output_hash,
            validation_id=receipt.validation_id,
        )
