import aiohttp
import pytest
from eth_utils import keccak
from web3 import Web3
from web3.exceptions import TransactionNotFound

from txpipe.adapters.endpoint import Web3Endpoint, classify_error, is_duplicate_submission
from txpipe.core.errors import EndpointRejection, EndpointTransportError
from txpipe.core.types import RejectionReason

RAW = b"\x02\xf8signed-bytes"


@pytest.mark.parametrize("message,reason", [
    ("nonce too low", RejectionReason.SEQUENCE_TOO_LOW),
    ("replacement transaction underpriced", RejectionReason.SEQUENCE_ALREADY_USED),
    ("insufficient funds for gas * price + value", RejectionReason.INSUFFICIENT_BALANCE),
    ("intrinsic gas too low", RejectionReason.RESOURCE_LIMIT_EXCEEDED),
    ("max fee per gas less than block base fee", RejectionReason.BLOCK_REFERENCE_EXPIRED),
    ("transaction underpriced", RejectionReason.BLOCK_REFERENCE_EXPIRED),
    ("rlp: expected input list", RejectionReason.MALFORMED),
    ("execution reverted", RejectionReason.UNKNOWN),
])
def test_classify_error(message, reason):
    assert classify_error(message) == reason
    assert classify_error(str({"code": -32000, "message": message.upper()})) == reason


def test_duplicate_detection():
    assert is_duplicate_submission("already known")
    assert is_duplicate_submission("ALREADY_EXISTS: known transaction: 0xabc")
    assert not is_duplicate_submission("nonce too low")


class FakeEth:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send_raw_transaction(self, raw):
        self.sent.append(raw)
        if self.error:
            raise self.error
        return keccak(raw)

    async def get_transaction_count(self, address, block):
        assert block == "pending"
        return 7

    async def get_block(self, ident):
        return {"number": 12, "hash": b"\x01" * 32, "baseFeePerGas": 5, "timestamp": 99}

    async def get_transaction_receipt(self, tx_hash):
        raise TransactionNotFound(f"Transaction with hash: {tx_hash} not found.")


class FakeProvider:
    def __init__(self, response):
        self.response = response

    async def make_request(self, method, params):
        assert method == "eth_sendRawTransactionSync"
        return self.response


class FakeW3:
    def __init__(self, error=None, response=None):
        self.eth = FakeEth(error)
        self.provider = FakeProvider(response)


def _endpoint(*fakes, sync_submit=False):
    endpoint = Web3Endpoint(rpc_urls=[f"http://127.0.0.1:{8545 + i}" for i in range(len(fakes))],
                            timeout=1, sync_submit=sync_submit)
    endpoint.providers = list(fakes)
    return endpoint


@pytest.mark.asyncio
async def test_send_returns_node_hash():
    endpoint = _endpoint(FakeW3())
    response = await endpoint.send_raw_transaction(RAW)
    assert response.tx_hash == Web3.to_hex(keccak(RAW))
    assert response.receipt is None


@pytest.mark.asyncio
async def test_node_error_becomes_classified_rejection():
    endpoint = _endpoint(FakeW3(error=ValueError({"code": -32000, "message": "nonce too low"})))
    with pytest.raises(EndpointRejection) as exc:
        await endpoint.send_raw_transaction(RAW)
    assert exc.value.reason == RejectionReason.SEQUENCE_TOO_LOW


@pytest.mark.asyncio
async def test_already_known_is_success():
    endpoint = _endpoint(FakeW3(error=ValueError({"code": -32000, "message": "already known"})))
    response = await endpoint.send_raw_transaction(RAW)
    assert response.tx_hash == Web3.to_hex(keccak(RAW))


@pytest.mark.asyncio
async def test_transport_error_fails_over():
    broken, healthy = FakeW3(error=aiohttp.ClientConnectionError("refused")), FakeW3()
    endpoint = _endpoint(broken, healthy)
    with pytest.raises(EndpointTransportError):
        await endpoint.send_raw_transaction(RAW)
    assert endpoint.idx == 1
    await endpoint.send_raw_transaction(RAW)
    assert healthy.eth.sent == [RAW]


@pytest.mark.asyncio
async def test_sync_submit_returns_receipt():
    receipt = {"transactionHash": "0x" + "ab" * 32, "status": "0x1"}
    endpoint = _endpoint(FakeW3(response={"jsonrpc": "2.0", "id": 1, "result": receipt}), sync_submit=True)
    response = await endpoint.send_raw_transaction(RAW)
    assert response.tx_hash == receipt["transactionHash"]
    assert response.receipt == receipt


@pytest.mark.asyncio
async def test_sync_submit_error_is_classified():
    error = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "insufficient funds"}}
    endpoint = _endpoint(FakeW3(response=error), sync_submit=True)
    with pytest.raises(EndpointRejection) as exc:
        await endpoint.send_raw_transaction(RAW)
    assert exc.value.reason == RejectionReason.INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_reads():
    endpoint = _endpoint(FakeW3())
    assert await endpoint.get_pending_nonce("0x19e7e376e7c213b7e7e7e46cc70a5dd086daff2a") == 7
    ref = await endpoint.get_block_reference()
    assert (ref.number, ref.base_fee, ref.timestamp) == (12, 5, 99)
    assert ref.hash == "0x" + "01" * 32
    assert await endpoint.get_receipt("0x" + "00" * 32) is None
