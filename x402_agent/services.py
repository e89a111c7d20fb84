"""
Service wiring - builds every stateful component once from Settings and
hands the set to the HTTP boundary. Tests build AgentServices directly with
fakes instead of calling build_services().
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from web3 import Web3

from .catalog import ToolCatalog
from .config import Settings
from .dispatcher import ToolDispatcher
from .erc8004 import IdentityRegistry, ReputationRegistry, ValidationRegistry
from .ledger import (
    ChainReader,
    PaymentContract,
    TransactionSender,
    connect,
    load_account,
    resolve_payment_target,
)
from .llm import GeminiClient
from .orchestrator import Orchestrator
from .payment_gate import PaymentGate
from .pricing import ExchangeRateCache, PriceOracle
from .prompt_builder import PromptBuilder
from .proof_recorder import ProofRecorder
from .replay_guard import open_replay_guard

logger = logging.getLogger("Services")

AGENT_IMAGE = "https://verifik.app/images/agent-avatar.png"
AGENT_HOMEPAGE = "https://verifik.app"


@dataclass
class AgentServices:
    settings: Settings
    catalog: ToolCatalog
    gate: PaymentGate
    dispatcher: ToolDispatcher
    orchestrator: Orchestrator
    recorder: ProofRecorder
    identity_registry: Optional[IdentityRegistry] = None
    reputation_registry: Optional[ReputationRegistry] = None
    payment_contract: Optional[PaymentContract] = None
    rate_cache: Optional[ExchangeRateCache] = None
    replay_guard: Any = None

    @property
    def payment_target(self):
        return self.gate.payment_target

    def agent_info(self):
        token_id = self.settings.agent_token_id
        if token_id is None or self.identity_registry is None:
            return None
        identity = self.identity_registry.get_agent_identity(token_id)
        reputation = feedbacks = None
        if self.reputation_registry is not None:
            reputation = self.reputation_registry.get_reputation(token_id)
            feedbacks = self.reputation_registry.get_feedbacks(token_id)
        return {"identity": identity, "reputation": reputation, "feedbacks": feedbacks or []}

    def agent_card(self):
        token_id = self.settings.agent_token_id
        if token_id is None or self.identity_registry is None:
            return None
        identity = self.identity_registry.get_agent_identity(token_id)
        if not identity:
            return None
        return {
            "name": identity["name"] or "Verifik AI Agent",
            "description": identity["description"] or "AI-powered identity validation agent using x402 protocol",
            "image": AGENT_IMAGE,
            "external_url": AGENT_HOMEPAGE,
            "attributes": [
                {"trait_type": "Agent Type", "value": "Identity Verification"},
                {"trait_type": "Protocol", "value": "x402"},
                {"trait_type": "Network", "value": self.settings.network_name},
                {"trait_type": "Status", "value": "Active" if identity["active"] else "Inactive"},
            ],
            "capabilities": identity["capabilities"] or [tool.id for tool in self.catalog],
            "agentAddress": identity["agentAddress"],
            "tokenId": token_id,
            "registryContract": self.settings.identity_registry,
            "network": self.settings.network_name,
            "chainId": self.settings.chain_id,
        }

    def payments_by(self, payer):
        if self.payment_contract is None or self.payment_contract.contract is None:
            return None
        return self.payment_contract.payments_by(payer)

    def close(self):
        self.dispatcher.close()
        model = self.orchestrator.model
        if hasattr(model, "close"):
            model.close()


def build_services(settings: Settings) -> AgentServices:
    catalog = ToolCatalog.load(settings.tools_manifest_path)
    logger.info(f"🧰 [Services] {len(catalog)} tools loaded from {settings.tools_manifest_path}")

    w3 = connect(settings.rpc_url)
    account = load_account(settings.wallet_private_key)
    if account is None:
        logger.warning("⚠️  [Services] No agent signing key, on-chain writes disabled")

    payment_target = resolve_payment_target(settings.contract_address, account)
    if payment_target is None:
        logger.warning("⚠️  [Services] No payment target configured, every payment will be denied")
    else:
        logger.info(f"💳 [Services] Payment target: {payment_target} (chain {settings.chain_id})")

    sender = None
    if account is not None:
        sender = TransactionSender(w3, account, settings.chain_id, settings.confirmation_timeout)

    rate_cache = ExchangeRateCache(
        settings.rate_feed_url,
        coin_id=settings.rate_feed_coin,
        refresh_seconds=settings.rate_refresh_seconds,
        timeout=settings.rate_fetch_timeout,
    )
    oracle = PriceOracle(
        rate_cache,
        fallback_rate=settings.fallback_rate_usd,
        decimals=settings.price_decimals,
        currency=settings.currency,
    )
    replay_guard = open_replay_guard(settings.replay_db_path)

    gate = PaymentGate(
        oracle,
        ChainReader(w3),
        replay_guard,
        payment_target,
        settings.chain_id,
        network_name=settings.network_name,
        default_price_usd=settings.default_price_usd,
    )
    dispatcher = ToolDispatcher(
        catalog,
        payment_target=payment_target,
        chain_id=settings.chain_id,
        timeout=settings.upstream_timeout,
    )
    model = GeminiClient(
        settings.gemini_api_key,
        model=settings.gemini_model,
        timeout=settings.model_timeout,
    )

    validation_registry = None
    if settings.validation_registry:
        validation_registry = ValidationRegistry(w3, settings.validation_registry, sender)
    recorder = ProofRecorder(validation_registry, settings.agent_token_id)
    if not recorder.enabled:
        logger.info("ℹ️  [Services] ERC8004 notarization disabled")

    orchestrator = Orchestrator(
        catalog,
        PromptBuilder(catalog, settings.history_window),
        model,
        gate,
        dispatcher,
        recorder,
    )

    return AgentServices(
        settings=settings,
        catalog=catalog,
        gate=gate,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        recorder=recorder,
        identity_registry=IdentityRegistry(w3, settings.identity_registry) if settings.identity_registry else None,
        reputation_registry=ReputationRegistry(w3, settings.reputation_registry) if settings.reputation_registry else None,
        payment_contract=PaymentContract(w3, settings.contract_address) if _is_address(settings.contract_address) else None,
        rate_cache=rate_cache,
        replay_guard=replay_guard,
    )


def _is_address(value):
    return bool(value) and Web3.is_address(value)
