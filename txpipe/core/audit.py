# /txpipe/core/audit.py
import asyncio
import hmac
import json
import os

import aiofiles

from txpipe.core.config import settings
from txpipe.core.logger import get_logger, sign_payload
from txpipe.core.types import AuditRecord

log = get_logger(__name__)


def default_audit_path() -> str:
    return os.path.join(settings.SESSION_DIR, "audit.log")


def verify_line(line: str) -> bool:
    """Check the HMAC suffix of one audit log line."""
    payload, _, sig = line.rstrip("\n").rpartition("|")
    return bool(payload) and hmac.compare_digest(sign_payload(payload), sig)


class AuditLog:
    """Append-only record of every submission attempt, one signed JSON line each."""

    def __init__(self, path: str | None = None):
        self.path = str(path) if path else default_audit_path()
        self._lock = asyncio.Lock()

    async def append(self, record: AuditRecord):
        # Serialize with deterministic key order to ensure reproducible signature.
        payload = json.dumps(record.model_dump(mode="json"), sort_keys=True)
        line = payload + "|" + sign_payload(payload) + "\n"
        try:
            async with self._lock:
                os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
                async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                    await f.write(line)
        except OSError as e:
            # Accountability only; a lost audit line never fails the submission.
            log.error("AUDIT_WRITE_FAILED", path=self.path, nonce=record.nonce, error=str(e))
