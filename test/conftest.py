import pytest

from txpipe.adapters.mock import MockEndpoint, MockSigner
from txpipe.core import codec
from txpipe.core.audit import AuditLog
from txpipe.core.builder import TransactionBuilder
from txpipe.core.config import settings
from txpipe.core.pipeline import TransactionPipeline
from txpipe.core.receipts import ReceiptTracker
from txpipe.core.submission import SubmissionClient
from txpipe.core.signing import SigningSession
from txpipe.core.types import TransactionRequest

CHAIN_ID = 8453
RECIPIENT = "0x000000000000000000000000000000000000dEaD"


@pytest.fixture(autouse=True)
def session_dir(tmp_path, monkeypatch):
    """Keep kill switch and audit files inside the test's tmp dir."""
    monkeypatch.setattr(settings, "SESSION_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def endpoint():
    return MockEndpoint()


@pytest.fixture
def signer():
    return MockSigner()


@pytest.fixture
def audit_log(tmp_path):
    return AuditLog(tmp_path / "audit.log")


@pytest.fixture
def builder():
    return TransactionBuilder(chain_id=CHAIN_ID, tx_type="eip1559", priority_fee=1_000_000)


@pytest.fixture
def submitter(endpoint, audit_log):
    return SubmissionClient(endpoint, audit_log=audit_log, max_attempts=3, backoff_min=0, backoff_max=0)


@pytest.fixture
def pipeline(endpoint, signer, builder, submitter):
    return TransactionPipeline(
        endpoint,
        signer,
        builder=builder,
        submitter=submitter,
        tracker=ReceiptTracker(endpoint, poll_interval=0.01),
        warmup_backoff=0,
    )


@pytest.fixture
def make_signed(endpoint, signer, builder):
    """Build and sign a transfer for the mock signer at the given nonce."""
    session = SigningSession(signer, warmup_backoff=0)

    async def _make(nonce: int = 0, value: int = 1):
        request = TransactionRequest(sender=signer.address, recipient=RECIPIENT, value=value, category="transfer")
        unsigned = builder.build(request, nonce, await endpoint.get_block_reference())
        sig = await session.sign(codec.signing_digest(unsigned), codec.chain_id_for_signature(unsigned))
        return codec.assemble(unsigned, sig)

    return _make
