# /txpipe/core/signing.py
import asyncio

from eth_utils import keccak

from txpipe.core.config import settings
from txpipe.core.errors import MalformedDigestError, MalformedSignatureError, SigningError, WarmupFailedError
from txpipe.core.logger import SIGNING_SECONDS, WARMUPS, get_logger
from txpipe.core.types import SignatureTriple, SigningSessionState

log = get_logger(__name__)

WARMUP_DIGEST = keccak(b"txpipe-warmup")
DIGEST_LENGTH = 32
SIGNATURE_LENGTH = 65


def parse_signature(raw: bytes, chain_id: int | None = None) -> SignatureTriple:
    """Split r(32) || s(32) || v(1) into a triple.

    The recovery byte arrives as 0/1 or 27/28 depending on the signer and is
    normalized to 0/1. With a chain_id the EIP-155 value
    ``recovery + chain_id * 2 + 35`` is returned instead.
    """
    if len(raw) != SIGNATURE_LENGTH:
        raise MalformedSignatureError(f"Expected {SIGNATURE_LENGTH} signature bytes, got {len(raw)}")
    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    recovery = raw[64]
    if recovery in (27, 28):
        recovery -= 27
    elif recovery not in (0, 1):
        raise MalformedSignatureError(f"Unexpected recovery byte {recovery}")
    v = recovery + chain_id * 2 + 35 if chain_id is not None else recovery
    return SignatureTriple(r=r, s=s, v=v)


class SigningSession:
    """Pays the signer's first-use latency once, off the hot path.

    COLD -> WARMING -> WARM, or back to COLD when warmup fails twice.
    Concurrent ensure_warm() callers share one in-flight warmup task, and
    sign() calls made while WARMING wait for that task instead of starting
    their own cold call.
    """

    def __init__(self, signer, warmup_backoff: float | None = None):
        self.signer = signer
        self.warmup_backoff = settings.WARMUP_BACKOFF_SECONDS if warmup_backoff is None else warmup_backoff
        self.state = SigningSessionState.COLD
        self._warmup_task: asyncio.Task | None = None

    def _transition(self, expected: SigningSessionState, new: SigningSessionState):
        if self.state != expected:
            raise SigningError(f"Illegal signing session transition {self.state.value} -> {new.value}")
        log.debug("SIGNING_SESSION_STATE", before=self.state.value, after=new.value)
        self.state = new

    async def _sign_raw(self, digest: bytes) -> bytes:
        with SIGNING_SECONDS.time():
            return await self.signer.sign_digest(digest)

    async def _warm(self):
        last_error = None
        try:
            for attempt in (1, 2):
                try:
                    await self._sign_raw(WARMUP_DIGEST)
                except Exception as e:
                    last_error = e
                    WARMUPS.labels("failed").inc()
                    log.warning("SIGNER_WARMUP_FAILED", attempt=attempt, error=str(e))
                    if attempt == 1:
                        await asyncio.sleep(self.warmup_backoff)
                    continue
                WARMUPS.labels("ok").inc()
                self._transition(SigningSessionState.WARMING, SigningSessionState.WARM)
                log.info("SIGNER_WARM", attempt=attempt)
                return
            self._transition(SigningSessionState.WARMING, SigningSessionState.COLD)
            raise WarmupFailedError(f"Signer warmup failed twice: {last_error}") from last_error
        finally:
            self._warmup_task = None

    async def ensure_warm(self):
        if self.state == SigningSessionState.WARM:
            return
        if self._warmup_task is None:
            self._transition(SigningSessionState.COLD, SigningSessionState.WARMING)
            self._warmup_task = asyncio.ensure_future(self._warm())
        # shield: one caller giving up must not cancel everyone else's warmup
        await asyncio.shield(self._warmup_task)

    async def sign(self, digest: bytes, chain_id: int | None = None) -> SignatureTriple:
        if len(digest) != DIGEST_LENGTH:
            raise MalformedDigestError(f"Digest must be {DIGEST_LENGTH} bytes, got {len(digest)}")
        task = self._warmup_task
        if task is not None:
            try:
                await asyncio.shield(task)
            except WarmupFailedError:
                log.warning("SIGNING_UNCACHED", state=self.state.value)
        raw = await self._sign_raw(digest)
        return parse_signature(raw, chain_id)

    def reset(self):
        """Signer torn down: the next use pays the cold start again."""
        if self._warmup_task is not None:
            raise SigningError("Cannot reset while a warmup is in flight")
        self.state = SigningSessionState.COLD
