# /txpipe/adapters/signer.py
import asyncio
from typing import Protocol

import aiohttp
from eth_keys import keys
from eth_utils import to_bytes
from pydantic import BaseModel, ValidationError
from web3 import Web3

from txpipe.core.config import settings
from txpipe.core.errors import SigningError
from txpipe.core.logger import get_logger

log = get_logger(__name__)


class Signer(Protocol):
    address: str

    async def sign_digest(self, digest: bytes) -> bytes:
        """Return r(32) || s(32) || v(1) over a 32-byte digest."""
        ...


class LocalKeySigner:
    """Signs in-process with an eth_keys private key."""

    def __init__(self, private_key: str | bytes | None = None):
        if private_key is None:
            if not settings.EXECUTOR_PRIVATE_KEY:
                raise SigningError("No EXECUTOR_PRIVATE_KEY configured")
            private_key = settings.EXECUTOR_PRIVATE_KEY.get_secret_value()
        key_bytes = private_key if isinstance(private_key, bytes) else to_bytes(hexstr=private_key)
        self._key = keys.PrivateKey(key_bytes)
        self.address = self._key.public_key.to_checksum_address()
        log.info("LOCAL_SIGNER_INITIALIZED", address=self.address)

    async def sign_digest(self, digest: bytes) -> bytes:
        # ECDSA is CPU-bound; keep it off the event loop.
        signature = await asyncio.to_thread(self._key.sign_msg_hash, digest)
        return signature.to_bytes()


class RemoteSignatureResponse(BaseModel):
    signature: str


class RemoteSigner:
    """
    Talks to an HTTP signing service (HSM / KMS front). These are the signers
    with a real cold start: the first request per process pays for TLS setup
    and key unwrap, so the session is kept open across calls.
    """
    def __init__(self, url: str | None = None, address: str | None = None, timeout: float | None = None):
        self.url = (url or settings.SIGNER_URL or "").rstrip("/")
        if not self.url:
            raise SigningError("No SIGNER_URL configured")
        address = address or settings.SIGNER_ADDRESS
        if not address:
            raise SigningError("Remote signer needs SIGNER_ADDRESS")
        self.address = Web3.to_checksum_address(address)
        self.timeout = settings.SIGNER_TIMEOUT if timeout is None else timeout
        self.token = settings.SIGNER_TOKEN.get_secret_value() if settings.SIGNER_TOKEN else None
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._session = aiohttp.ClientSession(
                headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def sign_digest(self, digest: bytes) -> bytes:
        payload = {"address": self.address, "digest": "0x" + digest.hex()}
        try:
            async with self._get_session().post(f"{self.url}/sign", json=payload) as response:
                response.raise_for_status()
                body = RemoteSignatureResponse.model_validate(await response.json())
        except (aiohttp.ClientError, asyncio.TimeoutError, ValidationError) as e:
            log.error("REMOTE_SIGNER_FAILED", url=self.url, error=str(e) or type(e).__name__)
            raise SigningError(f"Remote signer failed: {e or type(e).__name__}") from e
        return to_bytes(hexstr=body.signature)

    async def close(self):
        if self._session is not None:
            await self._session.close()
