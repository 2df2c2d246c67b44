# /txpipe/core/config_validator.py
# Run at startup to validate configs and secrets before any transaction is built.
from txpipe.core.config import Settings, settings
from txpipe.core.logger import log
from txpipe.core.types import TxType


def validate(cfg: Settings = settings):
    log.info("--- CONFIG VALIDATION START ---")
    errors = []

    if not cfg.get_rpc_urls():
        errors.append("Missing required configuration: RPC_URL_1 or rpc_urls")
    if cfg.SIGNER_URL:
        if not cfg.SIGNER_ADDRESS:
            errors.append("SIGNER_URL is set but SIGNER_ADDRESS is missing")
    elif not cfg.EXECUTOR_PRIVATE_KEY:
        errors.append("Missing required configuration: EXECUTOR_PRIVATE_KEY or SIGNER_URL")
    if cfg.TX_TYPE not in {t.value for t in TxType}:
        errors.append(f"Unsupported TX_TYPE: {cfg.TX_TYPE}")
    if cfg.SUBMIT_MAX_ATTEMPTS < 1:
        errors.append("SUBMIT_MAX_ATTEMPTS must be at least 1")

    if errors:
        for error in errors:
            log.critical(error)
        raise ValueError("System configuration is incomplete. Halting.")

    log.info("--- CONFIG VALIDATION PASSED ---")


if __name__ == "__main__":
    validate()
