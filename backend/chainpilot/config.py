"""
Configuration settings for the ChainPilot backend.
Loads from environment variables with validation.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


PLACEHOLDER_IMPLEMENTATION = "0x0000000000000000000000000000000000000001"
PLACEHOLDER_VERIFIER = "0x0000000000000000000000000000000000000002"
PLACEHOLDER_FACILITATOR_WALLET = "0x0000000000000000000000000000000000000003"
PLACEHOLDER_BATCH_EXECUTOR = "0x0000000000000000000000000000000000000004"

PLACEHOLDER_ADDRESSES = {
    PLACEHOLDER_IMPLEMENTATION,
    PLACEHOLDER_VERIFIER,
    PLACEHOLDER_FACILITATOR_WALLET,
    PLACEHOLDER_BATCH_EXECUTOR,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "ChainPilot"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    FRONTEND_URL: str = "http://localhost:3000"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./chainpilot.db"
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_TIMEOUT_SECONDS: float = 2.0

    # Facilitator (gas sponsor)
    FACILITATOR_PRIVATE_KEY: str | None = None
    ENABLED_NETWORKS: str = "bsc-testnet"

    # RPC endpoints
    BSC_TESTNET_RPC_URL: str = "https://data-seed-prebsc-1-s1.binance.org:8545"
    BSC_MAINNET_RPC_URL: str = "https://bsc-dataseed.binance.org"
    RPC_TIMEOUT_SECONDS: float = 15.0

    # Q402 contracts (placeholders until deployed)
    Q402_IMPLEMENTATION_TESTNET: str = PLACEHOLDER_IMPLEMENTATION
    Q402_IMPLEMENTATION_MAINNET: str = PLACEHOLDER_IMPLEMENTATION
    Q402_VERIFIER_TESTNET: str = PLACEHOLDER_VERIFIER
    Q402_VERIFIER_MAINNET: str = PLACEHOLDER_VERIFIER
    Q402_FACILITATOR_WALLET_TESTNET: str = PLACEHOLDER_FACILITATOR_WALLET
    Q402_FACILITATOR_WALLET_MAINNET: str = PLACEHOLDER_FACILITATOR_WALLET
    Q402_BATCH_EXECUTOR_TESTNET: str = PLACEHOLDER_BATCH_EXECUTOR
    Q402_BATCH_EXECUTOR_MAINNET: str = PLACEHOLDER_BATCH_EXECUTOR

    # Sign-to-pay requests
    REQUEST_TTL_SECONDS: int = 1200  # 20 minutes
    MAX_BATCH_OPERATIONS: int = 10
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 60

    # Gas sponsorship limits
    MAX_GAS_PRICE_GWEI: int = 20
    MAX_GAS_LIMIT: int = 5_000_000
    DAILY_GAS_BUDGET_WEI: int = 10**18  # 1 BNB
    PER_TX_MAX_GAS_WEI: int = 10**16  # 0.01 BNB
    MAX_REQUESTS_PER_MINUTE: int = 10
    MAX_REQUESTS_PER_ADDRESS: int = 100

    # Portfolio enrichment
    PORTFOLIO_MAX_CONCURRENCY: int = 5

    @property
    def enabled_networks(self) -> list[str]:
        return [n.strip() for n in self.ENABLED_NETWORKS.split(",") if n.strip()]

    def validate_production_settings(self):
        """Validate critical settings for production deployment."""
        if "bsc-mainnet" not in self.enabled_networks:
            return
        mainnet_contracts = [
            self.Q402_IMPLEMENTATION_MAINNET,
            self.Q402_VERIFIER_MAINNET,
            self.Q402_FACILITATOR_WALLET_MAINNET,
        ]
        if any(address in PLACEHOLDER_ADDRESSES for address in mainnet_contracts):
            raise ValueError(
                "bsc-mainnet is enabled but Q402 mainnet contracts are still placeholders. "
                "Set Q402_IMPLEMENTATION_MAINNET, Q402_VERIFIER_MAINNET and "
                "Q402_FACILITATOR_WALLET_MAINNET."
            )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings loader with production validation."""
    settings = Settings()
    if not settings.DEBUG:
        settings.validate_production_settings()
    return settings
