"""
Conversation Orchestrator - one pass per user request:

    prompt -> model -> directive? -> parameter check -> payment gate
           -> dispatch -> proof -> reply

A directive the client resubmits after paying (tool_call) skips the model
entirely, so the paid call is exactly the one that was quoted.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .directive import coerce_directive, parse_directive
from .dispatcher import PAYMENT_REQUIRED, SUCCESS, PaymentContext
from .errors import ModelServiceError, UnknownToolError
from .intent import classify_intent, plain_reply_type
from .payment_gate import ALLOW
from .proof_recorder import RECORDED, ProofOutcome

logger = logging.getLogger("Orchestrator")


class State(str, Enum):
    IDLE = "idle"
    PROMPT_BUILT = "prompt_built"
    MODEL_RESPONDED = "model_responded"
    TOOL_CALL_DETECTED = "tool_call_detected"
    PLAIN_REPLY = "plain_reply"
    PAYMENT_GRANTED = "payment_granted"
    PAYMENT_DENIED = "payment_denied"
    DISPATCH_SUCCEEDED = "dispatch_succeeded"
    DISPATCH_FAILED = "dispatch_failed"
    PROOF_RECORDED = "proof_recorded"
    PROOF_SKIPPED = "proof_skipped"
    REPLIED_TO_USER = "replied_to_user"
    ABORTED = "aborted"


@dataclass
class ChatRequest:
    message: str = ""
    history: List[dict] = field(default_factory=list)
    payment_tx: Optional[str] = None
    payment_wallet: Optional[str] = None
    payment_amount: Optional[str] = None
    tool_call: Optional[dict] = None
    images: List[dict] = field(default_factory=list)


@dataclass
class AgentReply:
    content: str
    response_type: str = "documentation"
    tool_call: Optional[dict] = None
    payment_required: Optional[dict] = None
    data: Any = None
    proof: Optional[str] = None
    validation: Optional[dict] = None
    trace: List[State] = field(default_factory=list)

    @property
    def state(self):
        return self.trace[-1] if self.trace else State.IDLE

    def to_dict(self):
        body = {
            "role": "assistant",
            "content": self.content,
            "response_type": self.response_type,
            "state": self.state.value,
        }
        if self.tool_call is not None:
            body["tool_call"] = self.tool_call
        if self.payment_required is not None:
            body["payment_required"] = self.payment_required
        if self.data is not None:
            body["data"] = self.data
        if self.validation is not None:
            body["proof"] = self.proof
            body["validation"] = self.validation
        return body


class Orchestrator:
    def __init__(self, catalog, prompt_builder, model, gate, dispatcher, recorder):
        self.catalog = catalog
        self.prompt_builder = prompt_builder
        self.model = model
        self.gate = gate
        self.dispatcher = dispatcher
        self.recorder = recorder

    def handle(self, request, identity):
        trace = [State.IDLE]
        directive = None

        if request.tool_call is not None:
            directive = coerce_directive(request.tool_call)
            if directive is not None:
                logger.info(f"🔁 [Agent] Reusing resubmitted tool call: {directive.tool}")
                trace.append(State.TOOL_CALL_DETECTED)
            else:
                logger.warning("⚠️  [Agent] Resubmitted tool_call is malformed, asking the model instead")

        if directive is None:
            intent = classify_intent(request.message)
            logger.info(f"💬 [Agent] Processing ({intent}): {request.message[:50]!r}")
            prompt = self.prompt_builder.build(
                request.message,
                request.history,
                request.payment_tx,
                images=request.images,
                intent=intent,
            )
            trace.append(State.PROMPT_BUILT)
            try:
                text = self.model.generate(prompt, images=request.images or None)
            except ModelServiceError as e:
                trace.append(State.ABORTED)
                logger.error(f"❌ [Agent] Model failure, pass aborted: {e}")
                raise
            trace.append(State.MODEL_RESPONDED)

            directive = parse_directive(text)
            if directive is None:
                trace += [State.PLAIN_REPLY, State.REPLIED_TO_USER]
                return AgentReply(content=text, response_type=plain_reply_type(intent), trace=trace)
            logger.info(f"🛠️  [Agent] Tool call detected: {directive.tool}")
            trace.append(State.TOOL_CALL_DETECTED)

        return self._execute(directive, request, identity, trace)

    def _execute(self, directive, request, identity, trace):
        tool_call = directive.to_dict()
        tool = self.catalog.get(directive.tool)
        if tool is None:
            trace.append(State.ABORTED)
            logger.error(f"❌ [Agent] Unknown tool {directive.tool!r}, pass aborted")
            return AgentReply(
                content=f"I can't run `{directive.tool}`: it is not one of my available tools.",
                response_type="error",
                trace=trace,
            )

        missing = tool.missing_parameters(directive.args)
        if missing:
            trace += [State.PLAIN_REPLY, State.REPLIED_TO_USER]
            return AgentReply(
                content=f"To run {tool.id} I still need: {', '.join(missing)}.",
                response_type="missing_parameters",
                tool_call=tool_call,
                trace=trace,
            )

        decision = self.gate.check_payment(tool, request.payment_tx, identity)
        if not decision.allowed:
            trace += [State.PAYMENT_DENIED, State.REPLIED_TO_USER]
            content = "I need to perform a paid action. Please confirm payment."
            if decision.reason:
                content = f"{decision.reason} {content}"
            return AgentReply(
                content=content,
                response_type="payment_required",
                tool_call=tool_call,
                payment_required=self.gate.payment_details(decision, tool),
                trace=trace,
            )
        trace.append(State.PAYMENT_GRANTED)

        paid_tx = request.payment_tx if decision.outcome == ALLOW else None
        payment = None
        if paid_tx:
            payment = PaymentContext(
                tx_hash=paid_tx,
                wallet=request.payment_wallet,
                amount=request.payment_amount,
            )

        try:
            result = self.dispatcher.dispatch(tool.id, directive.args, identity, payment)
        except UnknownToolError as e:
            trace.append(State.ABORTED)
            return AgentReply(content=str(e), response_type="error", trace=trace)

        if result.status == PAYMENT_REQUIRED:
            if paid_tx:
                logger.warning(f"⚠️  [Agent] Upstream still asked for payment after TX {paid_tx[:12]}...")
            trace += [State.PAYMENT_DENIED, State.REPLIED_TO_USER]
            return AgentReply(
                content="I need to perform a paid action. Please confirm payment.",
                response_type="payment_required",
                tool_call=tool_call,
                payment_required=result.details,
                trace=trace,
            )

        if result.status != SUCCESS:
            trace += [State.DISPATCH_FAILED, State.REPLIED_TO_USER]
            return AgentReply(
                content=f"Sorry, the {tool.id} service failed: {result.error}",
                response_type="error",
                trace=trace,
            )
        trace.append(State.DISPATCH_SUCCEEDED)

        outcome = self._record_proof(tool.id, directive.args, result.data, paid_tx)
        trace.append(State.PROOF_RECORDED if outcome.status == RECORDED else State.PROOF_SKIPPED)
        trace.append(State.REPLIED_TO_USER)

        return AgentReply(
            content="Tool executed successfully.",
            response_type="api_execution",
            tool_call=tool_call,
            data=result.data,
            proof=outcome.proof_id,
            validation=outcome.to_dict(),
            trace=trace,
        )

    def _record_proof(self, tool_id, args, data, paid_tx):
        # Notarization never decides whether the user gets the result.
        try:
            return self.recorder.record(tool_id, args, data, paid_tx)
        except Exception as e:
            logger.error(f"❌ [Agent] Proof recording crashed: {e}")
            return ProofOutcome("error", reason=str(e))
