# /txpipe/core/config.py
from typing import List
from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings


class ResourceLimitTable(BaseModel):
    """Gas limits per operation category.

    Local simulation is systematically wrong for L2 cost models, so the
    builder reads documented constants from here instead of estimating.
    Override per deployment with GAS_LIMITS='{"contract_call": 300000}'.
    """
    transfer: int = 21_000
    erc20_transfer: int = 65_000
    erc20_approve: int = 55_000
    contract_call: int = 200_000
    contract_deploy: int = 3_000_000

    def lookup(self, category: str) -> int | None:
        return getattr(self, category) if category in type(self).model_fields else None


class Settings(BaseSettings):
    # Signing
    EXECUTOR_PRIVATE_KEY: SecretStr | None = None
    SIGNER_URL: str | None = None  # remote signer; local key is used when unset
    SIGNER_ADDRESS: str | None = None
    SIGNER_TOKEN: SecretStr | None = None
    SIGNER_TIMEOUT: float = 5.0
    WARMUP_BACKOFF_SECONDS: float = 0.25

    # RPC endpoints
    RPC_URL_1: SecretStr | None = None
    RPC_URL_2: SecretStr | None = None
    RPC_URL_3: SecretStr | None = None
    rpc_urls: List[str] = []
    RPC_TIMEOUT: float = 10.0
    SYNC_SUBMIT: bool = False

    # Chain configuration
    chain_id: int = 8453
    TX_TYPE: str = "eip1559"

    # Sequencing
    NONCE_QUERY_TIMEOUT: float = 2.0

    # Submission / confirmation
    SUBMIT_MAX_ATTEMPTS: int = 3
    SUBMIT_BACKOFF_MIN: float = 0.2
    SUBMIT_BACKOFF_MAX: float = 2.0
    RECEIPT_POLL_INTERVAL: float = 1.0
    RECEIPT_TIMEOUT: float = 60.0

    # Fees and limits
    PRIORITY_FEE_WEI: int = 1_000_000
    BASE_FEE_MULTIPLIER: int = 2
    REPLACEMENT_FEE_BUMP: float = 0.125
    GAS_ESTIMATE_BUFFER: float = 1.2
    GAS_LIMITS: ResourceLimitTable = ResourceLimitTable()

    # Operational Settings
    LOG_LEVEL: str = "INFO"
    LOG_SIGNING_KEY: SecretStr | None = None
    SENTRY_DSN: SecretStr | None = None
    SESSION_DIR: str = "/tmp/txpipe_session"

    def get_rpc_urls(self) -> List[str]:
        """Numbered RPC_URL_n secrets first, then the plain rpc_urls list."""
        urls = [
            u.get_secret_value()
            for u in (self.RPC_URL_1, self.RPC_URL_2, self.RPC_URL_3)
            if u is not None
        ]
        return urls + [u for u in self.rpc_urls if u not in urls]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


try:
    settings = Settings()
except Exception as e:
    # Late import to avoid circular dependency only for logging the failure
    try:
        from txpipe.core.logger import get_logger
        get_logger("txpipe.config").critical("FAILED_TO_LOAD_SETTINGS", error=str(e))
    except Exception:
        print("FAILED_TO_LOAD_SETTINGS", e)
    raise SystemExit(1)
