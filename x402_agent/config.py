"""
Configuration - environment driven settings for the x402 agent.

Values come from the process environment, optionally seeded from a .env
file (Docker mount first, then the project root for local development).
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger("Config")

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DOCKER_ENV_PATH = Path("/app/.env")

DEFAULT_RPC_URL = "https://api.avax-test.network/ext/bc/C/rpc"
DEFAULT_RATE_FEED_URL = "https://api.coingecko.com/api/v3/simple/price"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def load_environment(env_file=None):
    """Load a .env file into os.environ. Returns the path used, or None."""
    candidates = [Path(env_file)] if env_file else [DOCKER_ENV_PATH, PROJECT_ROOT / ".env"]
    for path in candidates:
        if path.exists():
            load_dotenv(dotenv_path=path, override=True)
            logger.info(f"✅ .env loaded from {path}")
            return path
    logger.info("ℹ️  No .env found, using process environment only")
    return None


def _get_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _get_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _get_str(name, default=None):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    environment: str = "DEVELOPMENT"
    port: int = 3060
    log_level: str = "INFO"

    # Upstream verification API
    verifier_api_url: str = "https://verifik.app"
    verifier_service_token: Optional[str] = None
    upstream_timeout: float = 30.0

    # Language model
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash-lite"
    model_timeout: float = 60.0

    # Ledger / x402
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = 43113
    network_name: str = "avalanche-fuji-testnet"
    wallet_private_key: Optional[str] = field(default=None, repr=False)
    contract_address: Optional[str] = None
    currency: str = "AVAX"

    # Pricing
    default_price_usd: float = 0.05
    fallback_rate_usd: float = 40.0
    price_decimals: int = 5
    rate_feed_url: str = DEFAULT_RATE_FEED_URL
    rate_feed_coin: str = "avalanche-2"
    rate_refresh_seconds: float = 60.0
    rate_fetch_timeout: float = 5.0

    replay_db_path: str = str(PROJECT_ROOT / ".agent" / "data" / "used_payments.db")

    # ERC-8004 registries
    identity_registry: Optional[str] = None
    reputation_registry: Optional[str] = None
    validation_registry: Optional[str] = None
    agent_token_id: Optional[int] = None
    confirmation_timeout: float = 120.0

    tools_manifest_path: str = str(PROJECT_ROOT / "tools_manifest.json")
    history_window: int = 10

    @classmethod
    def from_env(cls):
        token_id = _get_str("ERC8004_AGENT_TOKEN_ID")
        if token_id is not None and not token_id.isdigit():
            logger.warning(f"⚠️  Invalid ERC8004_AGENT_TOKEN_ID {token_id!r}, notarization disabled")
            token_id = None

        settings = cls(
            environment=_get_str("ENVIRONMENT", "DEVELOPMENT"),
            port=_get_int("PORT", 3060),
            log_level=_get_str("LOG_LEVEL", "INFO").upper(),
            verifier_api_url=_get_str("VERIFIER_API_URL", "https://verifik.app"),
            verifier_service_token=_get_str("VERIFIER_SERVICE_TOKEN"),
            upstream_timeout=_get_float("UPSTREAM_TIMEOUT_SECONDS", 30.0),
            gemini_api_key=_get_str("GEMINI_API_KEY"),
            gemini_model=_get_str("GEMINI_MODEL", "gemini-2.5-flash-lite"),
            model_timeout=_get_float("MODEL_TIMEOUT_SECONDS", 60.0),
            rpc_url=_get_str("X402_RPC_URL", DEFAULT_RPC_URL),
            chain_id=_get_int("X402_CHAIN_ID", 43113),
            network_name=_get_str("X402_NETWORK_NAME", "avalanche-fuji-testnet"),
            wallet_private_key=_get_str("X402_WALLET_PRIVATE_KEY"),
            contract_address=_get_str("X402_CONTRACT_ADDRESS"),
            currency=_get_str("X402_CURRENCY", "AVAX"),
            default_price_usd=_get_float("X402_DEFAULT_PRICE_USD", 0.05),
            fallback_rate_usd=_get_float("X402_FALLBACK_RATE_USD", 40.0),
            price_decimals=_get_int("X402_PRICE_DECIMALS", 5),
            rate_feed_url=_get_str("RATE_FEED_URL", DEFAULT_RATE_FEED_URL),
            rate_feed_coin=_get_str("RATE_FEED_COIN", "avalanche-2"),
            rate_refresh_seconds=_get_float("RATE_REFRESH_SECONDS", 60.0),
            rate_fetch_timeout=_get_float("RATE_FETCH_TIMEOUT_SECONDS", 5.0),
            replay_db_path=_get_str("REPLAY_DB_PATH", cls.replay_db_path),
            identity_registry=_get_str("ERC8004_IDENTITY_REGISTRY"),
            reputation_registry=_get_str("ERC8004_REPUTATION_REGISTRY"),
            validation_registry=_get_str("ERC8004_VALIDATION_REGISTRY"),
            agent_token_id=int(token_id) if token_id is not None else None,
            confirmation_timeout=_get_float("CONFIRMATION_TIMEOUT_SECONDS", 120.0),
            tools_manifest_path=_get_str("TOOLS_MANIFEST_PATH", cls.tools_manifest_path),
            history_window=_get_int("HISTORY_WINDOW", 10),
        )
        settings.validate()
        return settings

    def validate(self):
        if self.fallback_rate_usd <= 0:
            raise ConfigurationError("X402_FALLBACK_RATE_USD must be positive")
        if self.default_price_usd < 0:
            raise ConfigurationError("X402_DEFAULT_PRICE_USD must not be negative")
        if not 0 <= self.price_decimals <= 18:
            raise ConfigurationError("X402_PRICE_DECIMALS must be between 0 and 18")
        if self.history_window < 0:
            raise ConfigurationError("HISTORY_WINDOW must not be negative")

    @property
    def is_production(self):
        return self.environment.upper() == "PRODUCTION"

    @property
    def erc8004_enabled(self):
        return self.agent_token_id is not None and bool(self.validation_registry)
