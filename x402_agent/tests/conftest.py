import pytest

from x402_agent.catalog import ToolCatalog
from x402_agent.dispatcher import ToolDispatcher
from x402_agent.orchestrator import Orchestrator
from x402_agent.payment_gate import PaymentGate
from x402_agent.pricing import PriceOracle, StaticRate
from x402_agent.prompt_builder import PromptBuilder
from x402_agent.proof_recorder import ProofRecorder
from x402_agent.replay_guard import InMemoryReplayGuard

from fakes import PAYMENT_TARGET, FakeChainReader, FakeModel, FakeValidationRegistry, Upstream

MANIFEST = {
    "endpoints": [
        {
            "id": "cedula-validation",
            "url": "https://verifik.app/v2/co/cedula",
            "method": "GET",
            "priceUsd": 0.05,
            "parameters": [{"name": "id", "required": True}],
        },
        {
            "id": "document-ocr",
            "url": "https://verifik.app/v2/ocr/scan",
            "method": "POST",
            "priceUsd": 0.2,
            "parameters": [
                {"name": "image", "required": True},
                {"name": "documentType", "required": False},
            ],
        },
        {
            "id": "free-lookup",
            "url": "https://verifik.app/v2/status",
            "method": "GET",
        },
    ]
}


@pytest.fixture
def catalog():
    return ToolCatalog.from_manifest(MANIFEST)


@pytest.fixture
def chain():
    return FakeChainReader()


@pytest.fixture
def replay_guard():
    return InMemoryReplayGuard()


@pytest.fixture
def gate(chain, replay_guard):
    return PaymentGate(
        PriceOracle(StaticRate(40.0)),
        chain,
        replay_guard,
        PAYMENT_TARGET,
        43113,
        default_price_usd=0.05,
    )


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def dispatcher(catalog, upstream):
    return ToolDispatcher(catalog, payment_target=PAYMENT_TARGET, chain_id=43113, http_client=upstream.client())


@pytest.fixture
def registry():
    return FakeValidationRegistry()


@pytest.fixture
def recorder(registry):
    return ProofRecorder(registry, agent_token_id=7)


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def orchestrator(catalog, model, gate, dispatcher, recorder):
    return Orchestrator(catalog, PromptBuilder(catalog), model, gate, dispatcher, recorder)
