# security_oracle/core/config.py
from typing import Optional, Set
from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

LAMPORTS_PER_SOL = 1_000_000_000


class Settings(BaseSettings):
    PROJECT_NAME: str = "DeFi Security Oracle"
    SERVICE_VERSION: str = "3.0.0"
    PROVIDER_NAME: str = "KAMIYO"
    DOCUMENTATION_URL: str = "https://github.com/kamiyo-ai/risk-auditor"
    # Used to build absolute resource URLs; falls back to the request host
    PUBLIC_BASE_URL: Optional[str] = None

    # x402 payment settings
    PAYMENT_WALLET: str = ""
    PRICE_PER_REQUEST_SOL: float = 0.001
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    CHAIN_LOOKUP_TIMEOUT_SECONDS: float = 10.0
    VERIFICATION_TTL_SECONDS: int = 3600
    X402_AUDIT_LOG_PATH: Optional[str] = None

    # Exploit data sources
    DEFILLAMA_HACKS_URL: str = "https://api.llama.fi/hacks"
    EXPLOIT_FEED_URL: Optional[str] = None
    SOURCE_TIMEOUT_SECONDS: float = 8.0
    FETCH_DEADLINE_SECONDS: float = 15.0
    EXPLOIT_CACHE_TTL_SECONDS: int = 300
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_COOLDOWN_SECONDS: float = 60.0

    # Approval auditing
    ETHERSCAN_API_URL: str = "https://api.etherscan.io/v2/api"
    ETHERSCAN_API_KEY: Optional[str] = None
    APPROVAL_CACHE_TTL_SECONDS: int = 300
    SUSPICIOUS_SPENDERS: str = ""  # comma-separated addresses

    RATE_LIMIT_PER_MINUTE: int = 60

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def price_lamports(self) -> int:
        """Per-request price converted to lamports."""
        return sol_to_lamports(self.PRICE_PER_REQUEST_SOL)

    @property
    def suspicious_spenders(self) -> Set[str]:
        return parse_address_list(self.SUSPICIOUS_SPENDERS)


def sol_to_lamports(sol: float) -> int:
    """Convert SOL to lamports without float drift (0.001 -> 1000000)."""
    return int(round(float(sol) * LAMPORTS_PER_SOL))


def parse_address_list(value: Optional[str]) -> Set[str]:
    """Parse a comma-separated address list into a lower-cased set."""
    if not value or not value.strip():
        return set()
    return {item.strip().lower() for item in value.split(",") if item.strip()}


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
